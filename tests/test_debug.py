# bkmrz/tests/test_debug.py
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

"""Test `bkmrz.debug`."""

from dataclasses import replace

from jax import numpy as jnp
from numpy.testing import assert_array_equal

from bkmrz import debug, mcmcloop, mcmcstep
from tests.util import simulate


def run(keys, *, binary, num_chains=None):
    """Run a short MCMC with variable selection and return the main trace."""
    y, Z, X = simulate(keys.pop(), 40, 3, binary=binary)
    state = mcmcstep.init(y=y, Z=Z, X=X, varsel=True, num_chains=num_chains)
    _, _, trace = mcmcloop.run_mcmc(keys.pop(), state, 15, n_burn=5)
    return trace


def test_valid_trace(keys):
    """Check that the draws of an actual run pass all the checks."""
    for binary in (False, True):
        trace = run(keys, binary=binary)
        error = debug.check_trace(trace)
        assert error.shape == (15,)
        assert_array_equal(error, 0)


def test_detects_corruption(keys):
    """Check that invalid draws are flagged by the right check."""
    trace = run(keys, binary=False)
    trace = replace(
        trace,
        r=trace.r.at[3, 0].set(-1.0),
        sigma2=trace.sigma2.at[7].set(jnp.nan),
    )
    error = debug.check_trace(trace)
    assert 'check_bandwidths' in debug.describe_error(error[3])
    assert 'check_finite' in debug.describe_error(error[7])
    assert debug.describe_error(error[0]) == []


def test_distance_drift(keys):
    """Check that the cached distance is consistent at the end of a run."""
    y, Z, X = simulate(keys.pop(), 40, 3, binary=False)
    state = mcmcstep.init(y=y, Z=Z, X=X, varsel=True)
    state, _, _ = mcmcloop.run_mcmc(keys.pop(), state, 10)
    assert debug.distance_drift(state) < 1e-10
