import warnings

import pytest
import torch

import adamopt
from adamopt import MissingVariableError, ParameterHandle, ShapeMismatchError
from tests.optimizer_test import MLP, store_from_module


@pytest.mark.cpu
@pytest.mark.parametrize(
    "kwargs, match",
    [
        (dict(lr=0.0), "learning rate"),
        (dict(lr=-1e-3), "learning rate"),
        (dict(lr=float("nan")), "learning rate"),
        (dict(lr=1e-3, beta1=0.0), "beta1"),
        (dict(lr=1e-3, beta1=1.0), "beta1"),
        (dict(lr=1e-3, beta2=1.5), "beta2"),
        (dict(lr=1e-3, beta2=float("nan")), "beta2"),
        (dict(lr=1e-3, eps=0.0), "epsilon"),
        (dict(lr=1e-3, eps=float("nan")), "epsilon"),
    ],
)
def test_invalid_hyperparameters(kwargs, match):
    with pytest.raises(ValueError, match=match):
        adamopt.Adam(**kwargs)


@pytest.mark.cpu
def test_defaults_and_initial_accumulators():
    opt = adamopt.Adam(1e-3)

    assert opt.defaults == dict(lr=1e-3, beta1=0.9, beta2=0.999, eps=1e-8, foreach=False)
    assert opt.acc_beta1 == 0.9
    assert opt.acc_beta2 == 0.999
    assert len(opt.state) == 0


@pytest.mark.cpu
def test_missing_variable_rejects_whole_batch():
    store = adamopt.VariableStore()
    w = store.register("w", torch.ones(2))
    opt = adamopt.Adam(1e-1, variable_store=store)

    with pytest.raises(MissingVariableError, match="nope"):
        opt.apply_gradients({"w": torch.ones(2), "nope": torch.ones(2)})

    torch.testing.assert_close(w.detach(), torch.ones(2))
    assert len(opt.state) == 0
    assert opt.acc_beta1 == 0.9


@pytest.mark.cpu
def test_shape_mismatch_rejects_whole_batch():
    store = adamopt.VariableStore()
    w = store.register("w", torch.ones(2))
    store.register("b", torch.ones(2, 3))
    opt = adamopt.Adam(1e-1, variable_store=store)

    # a (3,) gradient broadcasts against a (2, 3) variable, so shapes are compared explicitly
    with pytest.raises(ShapeMismatchError):
        opt.apply_gradients({"w": torch.ones(2), "b": torch.ones(3)})

    torch.testing.assert_close(w.detach(), torch.ones(2))
    assert ParameterHandle("w") not in opt.state
    assert opt.acc_beta2 == 0.999


@pytest.mark.cpu
def test_dispose_rejects_further_use():
    store = adamopt.VariableStore()
    store.register("w", torch.ones(2))
    opt = adamopt.Adam(1e-1, variable_store=store)
    opt.apply_gradients({"w": torch.ones(2)})

    opt.dispose()

    assert opt.disposed
    assert len(opt.state) == 0
    with pytest.raises(RuntimeError, match="disposed"):
        opt.apply_gradients({"w": torch.ones(2)})
    with pytest.raises(RuntimeError, match="disposed"):
        opt.minimize(lambda: store.lookup("w").sum())
    with pytest.raises(RuntimeError, match="disposed"):
        opt.before_batch(1, adamopt.TensorArrayMap(), adamopt.SummedTensorArrayMap())
    with pytest.raises(RuntimeError, match="disposed"):
        opt.moments("w")
    with pytest.raises(RuntimeError, match="disposed"):
        opt.state_dict()


@pytest.mark.cpu
def test_dispose_twice_only_warns():
    opt = adamopt.Adam(1e-1)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        opt.dispose()

    with pytest.warns(UserWarning, match="already been disposed"):
        opt.dispose()
    assert opt.disposed


@pytest.mark.cpu
def test_minimize_returns_cost_before_update():
    store = adamopt.VariableStore()
    x = store.register("x", torch.tensor([3.0, -2.0]))
    opt = adamopt.Adam(0.5, variable_store=store)

    cost = opt.minimize(lambda: x.square().sum(), return_cost=True)

    assert cost.item() == pytest.approx(13.0)
    assert not cost.requires_grad
    # first Adam step moves every coordinate by ~lr against the gradient sign
    torch.testing.assert_close(x.detach(), torch.tensor([2.5, -1.5]), atol=1e-5, rtol=0)
    assert opt.minimize(lambda: x.square().sum()) is None


@pytest.mark.cpu
def test_minimize_converges():
    store = adamopt.VariableStore()
    x = store.register("x", torch.tensor([3.0, -2.0, 0.5]))
    opt = adamopt.Adam(0.1, variable_store=store)

    for _ in range(500):
        opt.minimize(lambda: (x - 1.0).square().sum())

    torch.testing.assert_close(x.detach(), torch.ones(3), atol=1e-2, rtol=0)


@pytest.mark.cpu
def test_minimize_var_list_and_trainable():
    store = adamopt.VariableStore()
    a = store.register("a", torch.tensor([1.0]))
    b = store.register("b", torch.tensor([1.0]))
    frozen = store.register("frozen", torch.tensor([1.0]), trainable=False)
    opt = adamopt.Adam(0.1, variable_store=store)

    opt.minimize(lambda: (a * b * frozen).sum(), var_list=["a"])
    assert a.item() != 1.0
    assert b.item() == 1.0
    assert frozen.item() == 1.0

    opt.minimize(lambda: (a * b * frozen).sum())
    assert b.item() != 1.0
    assert frozen.item() == 1.0
    assert set(h.key for h in opt.state) == {"a", "b"}


@pytest.mark.cpu
def test_compute_gradients_errors():
    store = adamopt.VariableStore()
    a = store.register("a", torch.tensor([1.0, 2.0]))
    store.register("unused", torch.tensor([1.0]))
    opt = adamopt.Adam(0.1, variable_store=store)

    with pytest.raises(ValueError, match="scalar"):
        opt.compute_gradients(lambda: a * 2)
    with pytest.raises(ValueError, match="connection"):
        opt.compute_gradients(lambda: a.detach().sum(), var_list=["a"])
    with pytest.raises(MissingVariableError):
        opt.compute_gradients(lambda: a.sum(), var_list=["missing"])
    with pytest.raises(ValueError, match="no variables"):
        adamopt.Adam(0.1).compute_gradients(lambda: torch.tensor(1.0))

    _, grads = opt.compute_gradients(lambda: a.sum())
    assert set(grads) == {"a"}


@pytest.mark.cpu
def test_variable_store():
    store = adamopt.VariableStore()
    w = store.register("w", torch.zeros(2))
    idx = store.register("idx", torch.zeros(2, dtype=torch.long))

    assert w.requires_grad
    assert not idx.requires_grad
    assert "w" in store and "x" not in store
    assert list(store) == ["w", "idx"]
    assert len(store) == 2
    assert store["w"] is w
    with pytest.raises(ValueError, match="already registered"):
        store.register("w", torch.zeros(2))
    with pytest.raises(MissingVariableError):
        store.lookup("x")
    assert isinstance(MissingVariableError("x"), KeyError)
    assert isinstance(ShapeMismatchError("x"), ValueError)


@pytest.mark.cpu
def test_state_dict_round_trip_resumes_training():
    torch.manual_seed(0)
    model = MLP(8, 16, torch.device("cpu"), torch.float32)
    x = torch.randn(4, 8)
    loss_fn = lambda: model(x).square().mean()  # noqa: E731

    store = store_from_module(model)
    opt = adamopt.Adam(1e-2, variable_store=store)
    for _ in range(3):
        opt.minimize(loss_fn)
    checkpoint = opt.state_dict()
    saved_values = store.clone_values()

    opt.minimize(loss_fn)
    expected = store.clone_values()

    with torch.no_grad():
        for name, value in saved_values.items():
            store.lookup(name).copy_(value)
    resumed = adamopt.Adam(1e-2, variable_store=store)
    resumed.load_state_dict(checkpoint)
    assert resumed.acc_beta1 == pytest.approx(0.9**4)
    resumed.minimize(loss_fn)

    for name, value in expected.items():
        torch.testing.assert_close(store.lookup(name).detach(), value)


@pytest.mark.cpu
def test_load_state_dict_validation():
    store = adamopt.VariableStore()
    store.register("w", torch.ones(2))
    opt = adamopt.Adam(1e-2, variable_store=store)
    opt.apply_gradients({"w": torch.ones(2)})
    checkpoint = opt.state_dict()

    with pytest.raises(ValueError, match="beta1"):
        adamopt.Adam(1e-2, beta1=0.8, variable_store=store).load_state_dict(checkpoint)

    other = adamopt.VariableStore()
    other.register("w", torch.ones(3))
    with pytest.raises(ShapeMismatchError):
        adamopt.Adam(1e-2, variable_store=other).load_state_dict(checkpoint)
    with pytest.raises(MissingVariableError):
        adamopt.Adam(1e-2).load_state_dict(checkpoint)


@pytest.mark.cpu
def test_non_floating_variable_rejects_whole_batch():
    store = adamopt.VariableStore()
    w = store.register("w", torch.ones(2))
    store.register("idx", torch.zeros(2, dtype=torch.long))
    opt = adamopt.Adam(1e-1, variable_store=store)

    with pytest.raises(ValueError, match="idx"):
        opt.apply_gradients({"w": torch.ones(2), "idx": torch.ones(2)})
    with pytest.raises(ValueError, match="floating point"):
        opt.apply_gradients({"w": torch.ones(2, dtype=torch.long)})

    torch.testing.assert_close(w.detach(), torch.ones(2))
    assert len(opt.state) == 0
    assert opt.acc_beta1 == 0.9


@pytest.mark.cpu
def test_load_state_dict_replaces_named_state():
    store = adamopt.VariableStore()
    store.register("w", torch.ones(2))
    store.register("b", torch.ones(3))
    opt = adamopt.Adam(1e-2, variable_store=store)
    opt.apply_gradients({"w": torch.ones(2)})
    checkpoint = opt.state_dict()

    opt.apply_gradients({"w": torch.ones(2), "b": torch.ones(3)})
    opt.load_state_dict(checkpoint)

    assert set(h.key for h in opt.state) == {"w"}
    torch.testing.assert_close(opt.moments("w")[0], checkpoint["state"]["w"]["exp_avg"])
    assert opt.acc_beta1 == pytest.approx(0.9**2)
