# bkmrz/src/bkmrz/jaxext.py
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

"""Additions to jax."""

import math
from collections.abc import Sequence
from functools import partial

import jax
from jax import lax, random
from jax import numpy as jnp
from jax.scipy.special import ndtr, ndtri
from jaxtyping import Array, Bool, Float, Key

TAIL_CUTOFF: float = 5.0
"""Truncation depth, in standard deviations, beyond which
`truncated_normal_onesided` switches from inverse CDF to rejection sampling."""


def is_key(x: object) -> bool:
    """Determine if `x` is a jax random key."""
    return isinstance(x, jax.Array) and jnp.issubdtype(x.dtype, jax.dtypes.prng_key)


class split:
    """
    Split a key into `num` keys, to be consumed one at a time.

    Parameters
    ----------
    key
        The key to split.
    num
        The number of keys to split into.
    """

    _keys: Key[Array, ' num']
    _next: int

    def __init__(self, key: Key[Array, ''], num: int = 2):
        self._keys = random.split(key, num)
        self._next = 0

    def __len__(self) -> int:
        return self._keys.shape[0] - self._next

    def pop(self, shape: int | tuple[int, ...] = ()) -> Key[Array, '*']:
        """
        Pop one key, or an array of keys derived from it.

        Parameters
        ----------
        shape
            If empty (default), a single key is returned. Otherwise the popped
            key is split again into an array of keys with this shape.

        Returns
        -------
        The popped key(s).

        Raises
        ------
        IndexError
            If all the keys have already been used.
        """
        if not len(self):
            msg = 'No keys left to pop'
            raise IndexError(msg)
        key = self._keys[self._next]
        self._next += 1
        if not isinstance(shape, tuple):
            shape = (shape,)
        if shape:
            key = random.split(key, math.prod(shape)).reshape(shape)
        return key


def truncated_normal_onesided(
    key: Key[Array, ''],
    shape: Sequence[int],
    upper: Bool[Array, '*'],
    bound: Float[Array, '*'],
) -> Float[Array, '*']:
    """
    Sample from a one-sided truncated standard normal distribution.

    Parameters
    ----------
    key
        JAX random key.
    shape
        Shape of output array, broadcasted with other inputs.
    upper
        True for (-∞, bound], False for [bound, ∞).
    bound
        The truncation boundary.

    Returns
    -------
    Array of samples from the truncated normal distribution.

    Notes
    -----
    By symmetry the problem is reduced to sampling ``x >= a``. If the region
    contains the mode or ``a <= TAIL_CUTOFF``, the sample is obtained by
    inverting the CDF, always working on the side where the tail probability
    is small so that it does not cancel out against 1. Deeper in the tail, the
    probability underflows, so the exact exponential rejection sampler of [1]_
    is used instead.

    References
    ----------
    .. [1] Robert, Christian P. (1995). "Simulation of truncated normal
       variables". In: Statistics and Computing 5, pp. 121-125.
    """
    shape = jnp.broadcast_shapes(tuple(shape), upper.shape, bound.shape)
    upper = jnp.broadcast_to(upper, shape)
    bound = jnp.broadcast_to(bound, shape)
    keys = split(key)

    # sample x >= a, then flip the sign if the region was the left one
    a = jnp.where(upper, -bound, bound)
    sign = jnp.where(upper, -1, 1).astype(bound.dtype)

    u = random.uniform(keys.pop(), shape, bound.dtype)
    zero = jnp.zeros((), bound.dtype)
    one = jnp.ones((), bound.dtype)

    # a <= 0: u -> [Phi(a), 1)
    bulk = ndtr(a) + ndtr(-a) * u
    # a > 0: u -> (0, Phi(-a)], and x = -Phi^-1(.)
    tail = ndtr(-a) * (1 - u)
    p = jnp.where(a > 0, tail, bulk)
    p = jnp.clip(p, jnp.nextafter(zero, one), jnp.nextafter(one, zero))
    x = ndtri(p)
    x = jnp.where(a > 0, -x, x)

    deep = a > TAIL_CUTOFF
    x = jnp.where(deep, _normal_tail_rejection(keys.pop(), a, deep), x)
    return sign * x


def _normal_tail_rejection(
    key: Key[Array, ''], a: Float[Array, '*'], active: Bool[Array, '*']
) -> Float[Array, '*']:
    """Sample a standard normal truncated to [a, ∞), only where `active`."""
    # optimal exponential rate for the proposal a + Exp(alpha)
    a = jnp.where(active, a, 1)
    alpha = (a + jnp.sqrt(jnp.square(a) + 4)) / 2

    def cond(carry):
        _, _, done = carry
        return ~jnp.all(done)

    def body(carry):
        key, x, done = carry
        keys = split(key, 3)
        proposal = a + random.exponential(keys.pop(), a.shape, a.dtype) / alpha
        log_u = jnp.log(random.uniform(keys.pop(), a.shape, a.dtype))
        accept = ~done & (log_u <= -jnp.square(proposal - alpha) / 2)
        x = jnp.where(accept, proposal, x)
        return keys.pop(), x, done | accept

    _, x, _ = lax.while_loop(cond, body, (key, a, ~active))
    return x


@partial(jax.jit, static_argnames=('max_tries',))
def chol_with_jitter(
    mat: Float[Array, 'k k'], *, max_tries: int = 5
) -> tuple[Float[Array, 'k k'], Bool[Array, '']]:
    """
    Cholesky decomposition with diagonal jitter, retried on failure.

    The first attempt adds to the diagonal the Gershgorin bound on the rounding
    error of the decomposition. On each failure the jitter is multiplied by 10.

    Parameters
    ----------
    mat
        A symmetric positive semidefinite matrix.
    max_tries
        The maximum number of decompositions attempted.

    Returns
    -------
    chol : Float[Array, 'k k']
        The lower Cholesky factor of the jittered matrix. Not valid if `ok` is
        False.
    ok : Bool[Array, '']
        Whether the decomposition succeeded within `max_tries` attempts.
    """
    k = mat.shape[0]
    rho = jnp.max(jnp.sum(jnp.abs(mat), axis=1), initial=0)
    eps = jnp.finfo(mat.dtype).eps
    jitter = k * rho * eps + eps
    eye = jnp.eye(k, dtype=mat.dtype)

    def attempt(i):
        chol = jnp.linalg.cholesky(mat + (jitter * 10.0**i) * eye)
        return chol, jnp.all(jnp.isfinite(chol))

    def cond(carry):
        i, _, ok = carry
        return ~ok & (i < max_tries)

    def body(carry):
        i, _, _ = carry
        chol, ok = attempt(i)
        return i + 1, chol, ok

    chol, ok = attempt(0)
    _, chol, ok = lax.while_loop(cond, body, (1, chol, ok))
    return chol, ok


def logdet_from_chol(chol: Float[Array, 'k k']) -> Float[Array, '']:
    """Log-determinant of ``chol @ chol.T``."""
    return 2 * jnp.sum(jnp.log(jnp.diag(chol)))
