# bkmrz/tests/conftest.py
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

"""Pytest configuration."""

import hashlib

import jax
import numpy
import pytest

from bkmrz.jaxext import split

jax.config.update('jax_enable_x64', True)
jax.config.update('jax_debug_key_reuse', True)
jax.config.update('jax_legacy_prng_key', 'error')
# jax_debug_nans stays off: failed Cholesky decompositions produce nans that
# the sampler detects and handles


@pytest.fixture
def keys(request) -> split:
    """
    Random keys for the test case, derived from its id.

    Take them with `keys.pop()`. All the fixtures used by a test case get the
    same object, so each key is handed out once.
    """
    # drop the xdist group suffix, to get the same keys with and without xdist
    nodeid = request.node.nodeid.partition('@')[0]
    digest = hashlib.sha256(nodeid.encode()).digest()
    seed = numpy.frombuffer(digest[:4], numpy.uint32).item()
    return split(jax.random.key(seed), 128)


def pytest_sessionstart(session: pytest.Session) -> None:  # noqa: ARG001
    """Print the jax device."""
    print(f'jax default device: {jax.devices()[0].device_kind}')  # noqa: T201
