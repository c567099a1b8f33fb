# bkmrz/tests/test_kernel.py
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

"""Test `bkmrz.kernel`."""

import pytest
from jax import numpy as jnp
from jax import random
from numpy.testing import assert_allclose, assert_array_equal

from bkmrz import kernel


@pytest.fixture
def exposures(keys):
    """A random design with 30 points and 4 exposures."""
    return random.normal(keys.pop(), (30, 4))


def test_symmetric_unit_diagonal(exposures, keys):
    """Check that the kernel is symmetric with ones on the diagonal."""
    r = random.uniform(keys.pop(), (4,), float, 0.1, 3)
    K = kernel.gaussian_kernel(exposures, r)
    assert_array_equal(K, K.T)
    assert_array_equal(jnp.diag(K), 1)
    assert jnp.all((K >= 0) & (K <= 1))


def test_explicit_formula(exposures):
    """Compare with a direct computation on a pair of points."""
    r = jnp.array([0.5, 1.0, 0.0, 2.0])
    K = kernel.gaussian_kernel(exposures, r)
    diff = exposures[3] - exposures[7]
    assert_allclose(K[3, 7], jnp.exp(-jnp.sum(r * jnp.square(diff))), rtol=1e-14)


def test_excluded_dimension_is_dropped(exposures):
    """Check that a zero bandwidth is the same as removing the column."""
    r = jnp.array([0.7, 0.0, 1.3, 0.0])
    K = kernel.gaussian_kernel(exposures, r)
    keep = jnp.array([0, 2])
    K_sub = kernel.gaussian_kernel(exposures[:, keep], r[keep])
    assert_allclose(K, K_sub, rtol=1e-14)


def test_cross_kernel_consistent(exposures, keys):
    """Check that the cross kernel of a set with itself is the kernel."""
    r = random.uniform(keys.pop(), (4,), float, 0.1, 3)
    assert_allclose(
        kernel.cross_kernel(exposures, exposures, r),
        kernel.gaussian_kernel(exposures, r),
        rtol=1e-14,
    )
    K = kernel.cross_kernel(exposures[:5], exposures, r)
    assert K.shape == (5, 30)


def test_update_distance(exposures, keys):
    """Check the rank-one update against a full recomputation."""
    D = kernel.squared_distances(exposures)
    r = random.uniform(keys.pop(), (4,), float, 0.1, 3)
    dist = kernel.weighted_distance(D, r)
    for m, r_new in [(0, 2.5), (2, 0.0), (3, 0.01)]:
        dist = kernel.update_distance(dist, D, m, r[m], r_new)
        r = r.at[m].set(r_new)
        assert_allclose(dist, kernel.weighted_distance(D, r), atol=1e-12)
    assert jnp.all(dist >= 0)


def test_huge_bandwidth(exposures):
    """Check that extreme bandwidths give the identity without overflow."""
    K = kernel.gaussian_kernel(exposures, jnp.full(4, 1e300))
    assert jnp.all(jnp.isfinite(K))
    assert_allclose(K, jnp.eye(30), atol=1e-300)
