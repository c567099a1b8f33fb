# bkmrz/tests/util.py
#
# Copyright (c) 2025-2026, The Bkmrz Contributors
#
# This file is part of bkmrz.
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""Functions intended to be shared across the test suite."""

from pathlib import Path

import tomli
from jax import numpy as jnp
from jax import random
from jaxtyping import Array, Bool, Float, Key

PYPROJECT = Path(__file__).parent.parent / 'pyproject.toml'


def get_version() -> str:
    """Read the bkmrz version from pyproject.toml."""
    with PYPROJECT.open('rb') as file:
        return tomli.load(file)['project']['version']


def get_old_python_str() -> str:
    """Read the oldest supported Python from pyproject.toml."""
    with PYPROJECT.open('rb') as file:
        return tomli.load(file)['project']['requires-python'].removeprefix('>=')


def true_function(Z: Float[Array, 'n M']) -> Float[Array, ' n']:
    """Quadratic exposure-response function depending only on the first exposure."""
    return 1.5 * jnp.square(Z[:, 0]) - 1


def simulate(
    key: Key[Array, ''], n: int, M: int, *, binary: bool, noise_sd: float = 0.5
) -> tuple[
    Float[Array, ' n'] | Bool[Array, ' n'],
    Float[Array, 'n M'],
    Float[Array, 'n 1'],
]:
    """
    Simulate data where only the first exposure has an effect.

    The linear predictor is ``true_function(Z) + 0.5 * X[:, 0]``. With
    `binary`, the outcome is its sign after adding standard normal noise,
    i.e., a probit model.
    """
    key_z, key_x, key_eps = random.split(key, 3)
    Z = random.normal(key_z, (n, M))
    X = random.normal(key_x, (n, 1))
    eta = true_function(Z) + 0.5 * X[:, 0]
    if binary:
        y = eta + random.normal(key_eps, (n,)) > 0
    else:
        y = eta + noise_sd * random.normal(key_eps, (n,))
    return y, Z, X
