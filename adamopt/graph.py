# Copyright (c) 2023-present Benjamin Warner
# SPDX-License-Identifier: MIT

"""Minimal static-graph collaborators used by the graph-mode optimizer hooks.

A graph session owns the nodes and the per-batch maps. Values are keyed by a node's `NodeOutput`
rather than by name, so two nodes with the same name never share optimizer state.
"""

from __future__ import annotations

import torch
from torch import Tensor

__all__ = ["Node", "NodeOutput", "SummedTensorArrayMap", "TensorArrayMap", "VariableNode", "scaled_array_add"]


class NodeOutput:
    "Symbolic output of a graph node. Hashed by identity."

    def __init__(self, node: Node, shape: tuple[int, ...]):
        self.node = node
        self.shape = tuple(shape)

    def __repr__(self) -> str:
        return f"NodeOutput({self.node.name!r}, shape={self.shape})"


class Node:
    def __init__(self, name: str, shape: tuple[int, ...]):
        self.name = name
        self.output = NodeOutput(self, shape)


class VariableNode(Node):
    """Graph node holding a trainable value.

    `data` is rebound by optimizers after each batch, mirroring the activation map entry.
    """

    def __init__(self, name: str, data: Tensor, trainable: bool = True):
        super().__init__(name, tuple(data.shape))
        self.data = data
        self.trainable = trainable


class TensorArrayMap:
    "Maps node outputs to tensors for one graph session."

    def __init__(self):
        self._map: dict[NodeOutput, Tensor] = {}

    def set(self, output: NodeOutput, tensor: Tensor):
        self._map[output] = tensor

    def get(self, output: NodeOutput, skip_checks: bool = False) -> Tensor | None:
        if not skip_checks and output not in self._map:
            raise KeyError(f"{output!r} is not in the tensor array map")
        return self._map.get(output)

    def size(self) -> int:
        return len(self._map)

    def dispose(self):
        self._map.clear()


class SummedTensorArrayMap(TensorArrayMap):
    "A `TensorArrayMap` whose `add` sums into existing entries, used to accumulate per-example gradients."

    @torch.no_grad()
    def add(self, output: NodeOutput, tensor: Tensor):
        if output in self._map:
            self._map[output] = self._map[output] + tensor
        else:
            self._map[output] = tensor.detach().clone()


@torch.no_grad()
def scaled_array_add(c1: float | Tensor, a: Tensor, c2: float | Tensor, b: Tensor) -> Tensor:
    "Fused scale and add. Returns `c1 * a + c2 * b` as a new tensor."
    return torch.mul(a, c1).add_(torch.mul(b, c2))
