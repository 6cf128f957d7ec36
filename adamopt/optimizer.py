# Copyright (c) 2023-present Benjamin Warner
# SPDX-License-Identifier: MIT

from collections.abc import Callable, Iterable, Mapping
from typing import Any
from warnings import warn

import torch
from torch import Tensor

from adamopt.graph import SummedTensorArrayMap, TensorArrayMap, VariableNode
from adamopt.variables import ParameterHandle, VariableStore


class Optimizer:
    """Provides common functionality for adamopt optimizers in both eager and graph execution.

    Eager mode: call `apply_gradients` with a `name -> gradient` mapping, or `minimize` with a loss
    function. Graph mode: a session calls `before_batch`, `after_example` once per example, and
    `after_batch`.

    Per-parameter state lives in `self.state`, keyed by `ParameterHandle`.
    """

    def __init__(
        self,
        defaults: dict[str, Any],
        variable_store: VariableStore | None = None,
        variable_nodes: Iterable[VariableNode] | None = None,
    ):
        if not 0.0 < defaults["lr"]:
            raise ValueError(f"Invalid learning rate: lr={defaults['lr']}")

        self.defaults = defaults
        self.variable_store = variable_store if variable_store is not None else VariableStore()
        self.specified_variable_nodes = list(variable_nodes) if variable_nodes is not None else None
        self.state: dict[ParameterHandle, dict[str, Tensor]] = {}

        # graph mode, populated by before_batch
        self.variable_nodes: list[VariableNode] = []
        self.variable_gradients = SummedTensorArrayMap()
        self.c_graph: float | None = None

        self._disposed = False

    @property
    def lr(self) -> float:
        return self.defaults["lr"]

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _check_not_disposed(self):
        if self._disposed:
            raise RuntimeError(f"{type(self).__name__} has been disposed and can no longer be used")

    def apply_gradients(self, gradients: Mapping[str, Tensor]):
        """Updates the named variables in place from `gradients`.

        Args:
            gradients: Mapping of variable name to gradient. Every name must be registered in the
                variable store.
        """
        raise NotImplementedError

    def compute_gradients(
        self, loss_fn: Callable[[], Tensor], var_list: Iterable[str] | None = None
    ) -> tuple[Tensor, dict[str, Tensor]]:
        """Evaluates `loss_fn` and returns the loss and its gradients for the selected variables.

        Args:
            loss_fn: Callable returning a scalar loss computed from variables in the store
            var_list: Variable names to differentiate. If unspecified, uses every trainable
                variable in the store (default: None)
        """
        self._check_not_disposed()
        if var_list is None:
            variables = self.variable_store.trainable_variables
        else:
            variables = {name: self.variable_store.lookup(name) for name in var_list}
        if len(variables) == 0:
            raise ValueError("There are no variables to compute gradients for")

        with torch.enable_grad():
            loss = loss_fn()
            if loss.numel() != 1:
                raise ValueError(f"loss_fn must return a scalar, got a tensor of shape {tuple(loss.shape)}")
            if not loss.requires_grad:
                raise ValueError("Cannot find a connection between any variable and the result of loss_fn")
            names = [name for name, value in variables.items() if value.requires_grad]
            grads = torch.autograd.grad(loss, [variables[name] for name in names], allow_unused=True)

        gradients = {name: grad for name, grad in zip(names, grads) if grad is not None}
        if len(gradients) == 0:
            raise ValueError("Cannot find a connection between any variable and the result of loss_fn")
        return loss.detach(), gradients

    def minimize(
        self, loss_fn: Callable[[], Tensor], return_cost: bool = False, var_list: Iterable[str] | None = None
    ) -> Tensor | None:
        """Computes gradients of `loss_fn` and applies them in a single optimization step.

        Args:
            loss_fn: Callable returning a scalar loss computed from variables in the store
            return_cost: Return the loss value computed before the update (default: False)
            var_list: Variable names to update. If unspecified, updates every trainable variable
                in the store (default: None)
        """
        cost, gradients = self.compute_gradients(loss_fn, var_list)
        self.apply_gradients(gradients)
        return cost if return_cost else None

    def before_batch(
        self,
        batch_size: int,
        activations: TensorArrayMap,
        gradients: SummedTensorArrayMap,
        nodes: Iterable[Any] = (),
    ):
        """Prepares a graph-mode batch.

        Args:
            batch_size: Number of examples summed into each gradient. Scales the step size
            activations: Session map of node output to current value
            gradients: Session map of node output to per-example gradient
            nodes: Session nodes. Trainable `VariableNode`s are optimized unless `variable_nodes`
                was given at construction (default: ())
        """
        self._check_not_disposed()
        if batch_size <= 0:
            raise ValueError(f"Invalid batch size: {batch_size=}")

        # a failed or abandoned batch must not leak gradients into this one
        self._reset_variable_gradients()

        if self.specified_variable_nodes is not None:
            self.variable_nodes = self.specified_variable_nodes
        else:
            self.variable_nodes = [node for node in nodes if isinstance(node, VariableNode) and node.trainable]

        self.c_graph = -self.lr / batch_size

    def after_example(self, activations: TensorArrayMap, gradients: SummedTensorArrayMap):
        "Sums one example's gradients into the per-batch gradient map."
        self._check_not_disposed()
        for node in self.variable_nodes:
            gradient = gradients.get(node.output, skip_checks=True)
            if gradient is not None:
                self.variable_gradients.add(node.output, gradient)

    def after_batch(self, batch_size: int, activations: TensorArrayMap, gradients: SummedTensorArrayMap):
        "Applies the summed batch gradients to every variable node."
        raise NotImplementedError

    def _reset_variable_gradients(self):
        self.variable_gradients.dispose()
        self.variable_gradients = SummedTensorArrayMap()

    def dispose(self):
        """Releases optimizer state. Any later use raises `RuntimeError`.

        Calling `dispose` again only warns.
        """
        if self._disposed:
            warn(f"{type(self).__name__} has already been disposed.", category=UserWarning)
            return

        self.variable_gradients.dispose()
        self.state.clear()
        self.variable_nodes = []
        self.c_graph = None
        self._disposed = True
