# Copyright (c) 2023-present Benjamin Warner
# SPDX-License-Identifier: MIT

from __future__ import annotations

from collections.abc import Hashable, Iterator
from dataclasses import dataclass

import torch
from torch import Tensor

__all__ = ["MissingVariableError", "ParameterHandle", "ShapeMismatchError", "VariableStore"]


class MissingVariableError(KeyError):
    "A gradient was supplied for a variable name the store does not know about."


class ShapeMismatchError(ValueError):
    "A gradient does not have the same shape as the parameter it updates."


@dataclass(frozen=True)
class ParameterHandle:
    """Opaque key for per-parameter optimizer state.

    Wraps a variable name in eager mode or a graph `NodeOutput` in graph mode, so both execution
    modes share one moment-state mapping.
    """

    key: Hashable

    @property
    def is_named(self) -> bool:
        return isinstance(self.key, str)

    def __repr__(self) -> str:
        return f"ParameterHandle({self.key!r})"


class VariableStore:
    """Registry of named variables whose values are updated in place by optimizers."""

    def __init__(self):
        self._variables: dict[str, Tensor] = {}
        self._trainable: dict[str, bool] = {}

    def register(self, name: str, value: Tensor, trainable: bool = True) -> Tensor:
        """Registers `value` under `name` and returns it.

        Args:
            name: Unique variable name
            value: Tensor holding the variable's value. Updated in place, never replaced
            trainable: Whether `minimize` selects this variable by default (default: True)
        """
        if name in self._variables:
            raise ValueError(f"Variable {name!r} is already registered")
        if trainable and value.is_floating_point() and not value.requires_grad:
            value.requires_grad_(True)
        self._variables[name] = value
        self._trainable[name] = trainable
        return value

    def lookup(self, name: str) -> Tensor:
        try:
            return self._variables[name]
        except KeyError:
            raise MissingVariableError(f"Variable {name!r} is not registered in the variable store") from None

    def check_gradient(self, name: str, grad: Tensor) -> Tensor:
        """Returns the variable for `name`, raising if it cannot be updated from `grad`.

        Raises `MissingVariableError` for unknown names, `ShapeMismatchError` if the shapes differ,
        and `ValueError` for non floating point tensors or a gradient on another device.
        """
        value = self.lookup(name)
        if value.shape != grad.shape:
            raise ShapeMismatchError(
                f"Gradient for {name!r} has shape {tuple(grad.shape)} but the variable has shape {tuple(value.shape)}"
            )
        if not value.is_floating_point():
            raise ValueError(f"Variable {name!r} has dtype {value.dtype} and cannot be optimized")
        if not grad.is_floating_point():
            raise ValueError(f"Gradient for {name!r} has dtype {grad.dtype}, expected a floating point tensor")
        if grad.device != value.device:
            raise ValueError(f"Gradient for {name!r} is on {grad.device} but the variable is on {value.device}")
        return value

    @property
    def trainable_variables(self) -> dict[str, Tensor]:
        return {name: value for name, value in self._variables.items() if self._trainable[name]}

    def __contains__(self, name: object) -> bool:
        return name in self._variables

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables)

    def __len__(self) -> int:
        return len(self._variables)

    def __getitem__(self, name: str) -> Tensor:
        return self.lookup(name)

    def clone_values(self) -> dict[str, Tensor]:
        "Detached copies of every variable, useful for comparing values before and after a step."
        with torch.no_grad():
            return {name: value.detach().clone() for name, value in self._variables.items()}
