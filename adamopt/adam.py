# Copyright (c) 2023-present Benjamin Warner
# SPDX-License-Identifier: MIT

# Based on PyTorch Optimizers
# PyTorch - PyTorch BSD-style license - Copyright (c) 2013-present PyTorch contributors

from collections.abc import Hashable, Iterable, Mapping
from typing import Any
from warnings import warn

import torch
from torch import Tensor
from torch.utils._foreach_utils import _group_tensors_by_device_and_dtype

from adamopt.graph import SummedTensorArrayMap, TensorArrayMap, VariableNode, scaled_array_add
from adamopt.optimizer import Optimizer
from adamopt.utils import MIN_TORCH_2_1, advance_power, debias
from adamopt.variables import ParameterHandle, ShapeMismatchError, VariableStore

__all__ = ["Adam", "adam"]


class Adam(Optimizer):
    """Adam optimizer for eager and graph execution.

    Keeps a first and second moment per parameter, created as zeros the first time a parameter is
    updated, and the power accumulators `acc_beta1 = beta1 ** t` and `acc_beta2 = beta2 ** t` used
    for bias correction. Every parameter in one update call is corrected with the same accumulator
    values, which then advance once.

    Args:
        lr: Learning rate
        beta1: Gradient moving average coefficient (default: 0.9)
        beta2: Squared gradient moving average coefficient (default: 0.999)
        eps: Added to denominator to improve numerical stability (default: 1e-8)
        variable_store: Store holding the named variables updated by `apply_gradients`. If
            unspecified, an empty store is created (default: None)
        variable_nodes: Graph-mode variable nodes to optimize. If unspecified, `before_batch`
            selects every trainable `VariableNode` in the session (default: None)
        foreach: Enables the foreach implementation for eager updates (default: False)
    """

    def __init__(
        self,
        lr: float,
        beta1: float = 0.9,
        beta2: float = 0.999,
        eps: float = 1e-8,
        variable_store: VariableStore | None = None,
        variable_nodes: Iterable[VariableNode] | None = None,
        foreach: bool = False,
    ):
        if not 0.0 < beta1 < 1.0:
            raise ValueError(f"Invalid beta1 parameter: {beta1=}")
        if not 0.0 < beta2 < 1.0:
            raise ValueError(f"Invalid beta2 parameter: {beta2=}")
        if not 0.0 < eps:
            raise ValueError(f"Invalid epsilon: {eps=}")
        if foreach and not MIN_TORCH_2_1:
            raise ValueError(f"foreach={foreach} requires PyTorch 2.1 or later. Set foreach=False or upgrade PyTorch.")

        defaults = dict(lr=lr, beta1=beta1, beta2=beta2, eps=eps, foreach=foreach)
        super().__init__(defaults, variable_store, variable_nodes)

        # acc_beta* hold beta* to the power t, the number of update calls plus one
        self.acc_beta1 = beta1
        self.acc_beta2 = beta2

    @property
    def beta1(self) -> float:
        return self.defaults["beta1"]

    @property
    def beta2(self) -> float:
        return self.defaults["beta2"]

    @property
    def eps(self) -> float:
        return self.defaults["eps"]

    def _init_state(self, handle: ParameterHandle, param: Tensor) -> dict[str, Tensor]:
        state = self.state.get(handle)
        if state is None:
            state = self.state[handle] = dict(
                exp_avg=torch.zeros_like(param, memory_format=torch.preserve_format),
                exp_avg_sq=torch.zeros_like(param, memory_format=torch.preserve_format),
            )
        return state

    def _advance_accumulators(self):
        self.acc_beta1 = advance_power(self.acc_beta1, self.beta1)
        self.acc_beta2 = advance_power(self.acc_beta2, self.beta2)

    def moments(self, key: Hashable) -> tuple[Tensor, Tensor]:
        """Returns the first and second moment for a variable name or graph `NodeOutput`.

        Raises `KeyError` if the parameter has not been updated yet.
        """
        self._check_not_disposed()
        state = self.state[ParameterHandle(key)]
        return state["exp_avg"], state["exp_avg_sq"]

    @torch.no_grad()
    def apply_gradients(self, gradients: Mapping[str, Tensor]):
        """Performs a single Adam step on the named variables in `gradients`.

        Raises `MissingVariableError`, `ShapeMismatchError` or `ValueError` before touching any state
        if a name is not in the variable store or a gradient cannot update its variable.

        Args:
            gradients: Mapping of variable name to gradient
        """
        self._check_not_disposed()

        variables = {name: self.variable_store.check_gradient(name, grad) for name, grad in gradients.items()}

        params, grads, exp_avgs, exp_avg_sqs = [], [], [], []
        for name, grad in gradients.items():
            param = variables[name]
            state = self._init_state(ParameterHandle(name), param)

            params.append(param)
            grads.append(grad)
            exp_avgs.append(state["exp_avg"])
            exp_avg_sqs.append(state["exp_avg_sq"])

        adam(
            params=params,
            grads=grads,
            exp_avgs=exp_avgs,
            exp_avg_sqs=exp_avg_sqs,
            lr=self.lr,
            beta1=self.beta1,
            beta2=self.beta2,
            eps=self.eps,
            acc_beta1=self.acc_beta1,
            acc_beta2=self.acc_beta2,
            foreach=self.defaults["foreach"],
        )

        self._advance_accumulators()

    def before_batch(
        self,
        batch_size: int,
        activations: TensorArrayMap,
        gradients: SummedTensorArrayMap,
        nodes: Iterable[Any] = (),
    ):
        super().before_batch(batch_size, activations, gradients, nodes)

        for node in self.variable_nodes:
            value = activations.get(node.output, skip_checks=True)
            self._init_state(ParameterHandle(node.output), node.data if value is None else value)

    @torch.no_grad()
    def after_batch(self, batch_size: int, activations: TensorArrayMap, gradients: SummedTensorArrayMap):
        """Applies one Adam step to every variable node from the gradients summed over the batch.

        New values are written to both `activations` and `node.data`. The summed gradients are
        reset afterwards so the next batch starts clean.
        """
        self._check_not_disposed()
        if self.c_graph is None:
            raise RuntimeError("after_batch was called before before_batch")

        try:
            self._update_variable_nodes(activations)
        finally:
            self._reset_variable_gradients()

    def _update_variable_nodes(self, activations: TensorArrayMap):
        updates = []
        for node in self.variable_nodes:
            gradient = self.variable_gradients.get(node.output, skip_checks=True)
            if gradient is None:
                warn(f"Variable node {node.name!r} received no gradient this batch and was not updated.", category=UserWarning)
                continue
            old_value = activations.get(node.output)
            if old_value.shape != gradient.shape:
                raise ShapeMismatchError(
                    f"Gradient for node {node.name!r} has shape {tuple(gradient.shape)} but the value has shape {tuple(old_value.shape)}"
                )
            updates.append((node, old_value, gradient))

        bias_correction1 = debias(self.acc_beta1)
        bias_correction2 = debias(self.acc_beta2)

        for node, old_value, gradient in updates:
            state = self.state[ParameterHandle(node.output)]

            new_first_moment = scaled_array_add(self.beta1, state["exp_avg"], 1 - self.beta1, gradient)
            new_second_moment = scaled_array_add(self.beta2, state["exp_avg_sq"], 1 - self.beta2, gradient.square())

            bias_corrected_first_moment = new_first_moment / bias_correction1
            bias_corrected_second_moment = new_second_moment / bias_correction2
            value = scaled_array_add(
                self.c_graph,
                bias_corrected_first_moment / bias_corrected_second_moment.sqrt().add_(self.eps),
                1,
                old_value,
            )
            activations.set(node.output, value)
            node.data = value

            state["exp_avg"] = new_first_moment
            state["exp_avg_sq"] = new_second_moment

        self._advance_accumulators()

    def state_dict(self) -> dict[str, Any]:
        """Returns the accumulators and the moments of named variables.

        Graph-node moments are keyed by session objects and are not included.
        """
        self._check_not_disposed()
        return dict(
            defaults=dict(self.defaults),
            acc_beta1=self.acc_beta1,
            acc_beta2=self.acc_beta2,
            state={
                handle.key: {k: v.detach().clone() for k, v in state.items()}
                for handle, state in self.state.items()
                if handle.is_named
            },
        )

    def load_state_dict(self, state_dict: dict[str, Any]):
        """Loads state created by `state_dict`. Every saved name must exist in the variable store.

        Args:
            state_dict: Optimizer state returned by `state_dict`
        """
        self._check_not_disposed()
        for key in ("beta1", "beta2"):
            if state_dict["defaults"][key] != self.defaults[key]:
                raise ValueError(
                    f"Loaded state has {key}={state_dict['defaults'][key]} but optimizer has {key}={self.defaults[key]}"
                )

        loaded = {}
        for name, saved in state_dict["state"].items():
            param = self.variable_store.lookup(name)
            for k, v in saved.items():
                if v.shape != param.shape:
                    raise ShapeMismatchError(
                        f"Saved {k} for {name!r} has shape {tuple(v.shape)} but the variable has shape {tuple(param.shape)}"
                    )
            loaded[ParameterHandle(name)] = {k: v.detach().clone().to(device=param.device, dtype=param.dtype) for k, v in saved.items()}

        for handle in [handle for handle in self.state if handle.is_named]:
            del self.state[handle]
        self.state.update(loaded)
        self.acc_beta1 = state_dict["acc_beta1"]
        self.acc_beta2 = state_dict["acc_beta2"]


def adam(
    params: list[Tensor],
    grads: list[Tensor],
    exp_avgs: list[Tensor],
    exp_avg_sqs: list[Tensor],
    *,
    lr: float,
    beta1: float,
    beta2: float,
    eps: float,
    acc_beta1: float,
    acc_beta2: float,
    foreach: bool = False,
):
    """Functional API to apply an Adam optimization step.

    See `adamopt.Adam` for more details. Updates `params`, `exp_avgs` and `exp_avg_sqs` in place and
    leaves the accumulators to the caller.

    Args:
        params: Parameters to update
        grads: Parameter gradients
        exp_avgs: Gradient moving averages
        exp_avg_sqs: Squared gradient moving averages
        lr: Learning rate
        beta1: Gradient moving average coefficient
        beta2: Squared gradient moving average coefficient
        eps: Added to denominator to improve numerical stability
        acc_beta1: `beta1 ** t` used for bias correction
        acc_beta2: `beta2 ** t` used for bias correction
        foreach: Enables the foreach implementation
    """
    bias_correction1 = debias(acc_beta1)
    bias_correction2 = debias(acc_beta2)

    if foreach:
        func = _foreach_adam
    else:
        func = _single_adam

    func(
        params,
        grads,
        exp_avgs,
        exp_avg_sqs,
        lr=lr,
        beta1=beta1,
        beta2=beta2,
        eps=eps,
        bias_correction1=bias_correction1,
        bias_correction2=bias_correction2,
    )


def _single_adam(
    params: list[Tensor],
    grads: list[Tensor],
    exp_avgs: list[Tensor],
    exp_avg_sqs: list[Tensor],
    *,
    lr: float,
    beta1: float,
    beta2: float,
    eps: float,
    bias_correction1: float,
    bias_correction2: float,
):
    for i, param in enumerate(params):
        _single_param_adam(
            param=param,
            grad=grads[i],
            exp_avg=exp_avgs[i],
            exp_avg_sq=exp_avg_sqs[i],
            lr=lr,
            beta1=beta1,
            beta2=beta2,
            eps=eps,
            bias_correction1=bias_correction1,
            bias_correction2=bias_correction2,
        )


def _single_param_adam(
    param: Tensor,
    grad: Tensor,
    exp_avg: Tensor,
    exp_avg_sq: Tensor,
    *,
    lr: float,
    beta1: float,
    beta2: float,
    eps: float,
    bias_correction1: float,
    bias_correction2: float,
):
    # update gradient moving averages
    exp_avg.mul_(beta1).add_(grad, alpha=1 - beta1)
    exp_avg_sq.mul_(beta2).addcmul_(grad, grad, value=1 - beta2)

    # Adam step with eps added outside the debiased square root
    denom = exp_avg_sq.div(bias_correction2).sqrt_().add_(eps)
    param.addcdiv_(exp_avg, denom, value=-lr / bias_correction1)


def _foreach_adam(
    params: list[Tensor],
    grads: list[Tensor],
    exp_avgs: list[Tensor],
    exp_avg_sqs: list[Tensor],
    *,
    lr: float,
    beta1: float,
    beta2: float,
    eps: float,
    bias_correction1: float,
    bias_correction2: float,
):
    if len(params) == 0:
        return

    grouped_tensors = _group_tensors_by_device_and_dtype([params, grads, exp_avgs, exp_avg_sqs])
    for (dev_params, dev_grads, dev_exp_avgs, dev_exp_avg_sqs), _ in grouped_tensors.values():
        # update gradient moving averages
        torch._foreach_mul_(dev_exp_avgs, beta1)
        torch._foreach_add_(dev_exp_avgs, dev_grads, alpha=1 - beta1)
        torch._foreach_mul_(dev_exp_avg_sqs, beta2)
        torch._foreach_addcmul_(dev_exp_avg_sqs, dev_grads, dev_grads, value=1 - beta2)

        # Adam denominator in a new buffer so the caller's gradients are untouched
        denoms = torch._foreach_div(dev_exp_avg_sqs, bias_correction2)
        torch._foreach_sqrt_(denoms)
        torch._foreach_add_(denoms, eps)

        # Adam step
        torch._foreach_addcdiv_(dev_params, dev_exp_avgs, denoms, value=-lr / bias_correction1)
