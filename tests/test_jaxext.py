# bkmrz/tests/test_jaxext.py
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

"""Test `bkmrz.jaxext`."""

import numpy
import pytest
from jax import numpy as jnp
from jax import random
from numpy.testing import assert_allclose
from scipy.stats import ks_1samp, truncnorm

from bkmrz import jaxext


def different_keys(keya, keyb):
    """Return True iff two jax random keys are different."""
    return jnp.any(random.key_data(keya) != random.key_data(keyb)).item()


def test_split(keys):
    """Check that keys are popped in order, once, and reshaped on request."""
    key = keys.pop()
    ks = jaxext.split(key, 3)
    assert len(ks) == 3
    key1 = ks.pop()
    key2 = ks.pop()
    key3 = ks.pop()
    assert len(ks) == 0
    with pytest.raises(IndexError):
        ks.pop()

    assert different_keys(key1, key2)
    assert different_keys(key2, key3)
    assert different_keys(key1, key3)

    ks = jaxext.split(keys.pop(), 1)
    popped = ks.pop((2, 3))
    assert popped.shape == (2, 3)
    assert len(ks) == 0


def test_is_key(keys):
    """Check that only typed keys are recognized."""
    assert jaxext.is_key(keys.pop())
    assert not jaxext.is_key(jnp.zeros(2, jnp.uint32))
    assert not jaxext.is_key(0)


class TestTruncatedNormalOneSided:
    """Test `jaxext.truncated_normal_onesided`."""

    @pytest.mark.parametrize('bound', [-8.0, -1.0, 0.0, 2.0, 4.5, 6.0, 30.0])
    @pytest.mark.parametrize('upper', [False, True])
    def test_distribution(self, keys, bound, upper):
        """Check the samples against scipy's truncated normal."""
        nsamples = 2000
        x = jaxext.truncated_normal_onesided(
            keys.pop(), (nsamples,), jnp.bool_(upper), jnp.float64(bound)
        )
        if upper:
            dist = truncnorm(-numpy.inf, bound)
            assert jnp.all(x <= bound)
        else:
            dist = truncnorm(bound, numpy.inf)
            assert jnp.all(x >= bound)
        test = ks_1samp(x, dist.cdf)
        assert test.pvalue > 0.001

    def test_far_tail(self, keys):
        """Check that the samples stay close to the bound deep in the tail."""
        x = jaxext.truncated_normal_onesided(
            keys.pop(), (100,), jnp.bool_(False), jnp.float64(40)
        )
        assert jnp.all(jnp.isfinite(x))
        assert jnp.all((x >= 40) & (x < 40.5))
        x = jaxext.truncated_normal_onesided(
            keys.pop(), (100,), jnp.bool_(True), jnp.float64(-40)
        )
        assert jnp.all(jnp.isfinite(x))
        assert jnp.all((x <= -40) & (x > -40.5))

    def test_broadcast(self, keys):
        """Check mixed directions and bounds in a single call."""
        upper = jnp.array([True, False, True, False])
        bound = jnp.array([-3.0, 3.0, 7.0, -7.0])
        x = jaxext.truncated_normal_onesided(keys.pop(), (500, 4), upper, bound)
        assert x.shape == (500, 4)
        assert jnp.all(jnp.where(upper, x <= bound, x >= bound))


class TestCholWithJitter:
    """Test `jaxext.chol_with_jitter`."""

    def test_positive_definite(self, keys):
        """Check that a well conditioned matrix is decomposed almost exactly."""
        a = random.normal(keys.pop(), (10, 10))
        mat = a @ a.T + jnp.eye(10)
        chol, ok = jaxext.chol_with_jitter(mat)
        assert ok
        assert_allclose(chol @ chol.T, mat, rtol=1e-10, atol=1e-10)

    def test_singular(self):
        """Check that a rank-deficient matrix is rescued by the jitter."""
        mat = jnp.ones((20, 20))
        chol, ok = jaxext.chol_with_jitter(mat)
        assert ok
        assert jnp.all(jnp.isfinite(chol))
        assert_allclose(chol @ chol.T, mat, atol=1e-6)

    def test_indefinite(self):
        """Check that a negative definite matrix is reported as a failure."""
        _, ok = jaxext.chol_with_jitter(-jnp.eye(5))
        assert not ok

    def test_logdet(self, keys):
        """Check `logdet_from_chol` against numpy."""
        a = random.normal(keys.pop(), (6, 6))
        mat = a @ a.T + jnp.eye(6)
        chol, ok = jaxext.chol_with_jitter(mat)
        assert ok
        _, expected = jnp.linalg.slogdet(mat)
        assert_allclose(jaxext.logdet_from_chol(chol), expected, rtol=1e-10)
