# Copyright (c) 2023-present Benjamin Warner
# SPDX-License-Identifier: MIT

import torch
from packaging.version import parse

MIN_TORCH_2_1 = parse(torch.__version__) >= parse("2.1")


def debias(acc_beta: float) -> float:
    """Adam-style debias correction. Returns `1 - beta ** t` given the power accumulator `beta ** t`."""
    return 1 - acc_beta


def advance_power(acc_beta: float, beta: float) -> float:
    """Advances a power accumulator from `beta ** t` to `beta ** (t + 1)`."""
    return acc_beta * beta
