# bkmrz/src/bkmrz/posterior.py
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

"""Posterior prediction of the kernel machine function and of the outcome.

Each retained MCMC draw defines a Gaussian process for `h` conditioned on its
values at the observed exposures. The functions in this module compute the
conditional mean and variance at new exposures for every draw, then either
combine them across draws or push them through the outcome model.
"""

from functools import partial

import jax
from jax import lax, random
from jax import numpy as jnp
from jax.scipy.linalg import solve_triangular
from jax.scipy.special import ndtr
from jaxtyping import Array, Bool, Float, Int, Key, Real

from bkmrz.jaxext import chol_with_jitter
from bkmrz.kernel import (
    cross_squared_distances,
    kernel_from_distance,
    squared_distances,
    weighted_distance,
)
from bkmrz.mcmcloop import MainTrace


@partial(jax.jit, static_argnames=('max_tries',))
def conditional_function(
    trace: MainTrace,
    Z: Real[Array, 'n M'],
    Znew: Real[Array, 'm M'],
    *,
    max_tries: int = 5,
) -> tuple[Float[Array, 'ndpost m'], Float[Array, 'ndpost m'], Bool[Array, ' ndpost']]:
    """
    Compute the distribution of `h` at new exposures for each draw.

    Parameters
    ----------
    trace
        The retained MCMC draws, with a single leading trace axis.
    Z
        The exposures used to fit the model.
    Znew
        The new exposures.
    max_tries
        Passed to `chol_with_jitter`.

    Returns
    -------
    mean : Float[Array, 'ndpost m']
        The mean of ``h(Znew)`` conditional on ``h(Z)``, i.e.,
        ``K(Znew, Z) K^-1 h``.
    var : Float[Array, 'ndpost m']
        The variance of each ``h(Znew[i])``, i.e., ``lamda sigma2 (1 -
        diag(K(Znew, Z) K^-1 K(Z, Znew)))``.
    ok : Bool[Array, ' ndpost']
        Whether the factorization of the kernel matrix succeeded.
    """
    Z = jnp.asarray(Z, float)
    sqdist = squared_distances(Z)
    cross_sqdist = cross_squared_distances(jnp.asarray(Znew, float), Z)

    def conditional(draw):
        r, h, lamda, sigma2 = draw
        kernel = kernel_from_distance(weighted_distance(sqdist, r))
        chol, ok = chol_with_jitter(kernel, max_tries=max_tries)
        cross = kernel_from_distance(
            weighted_distance(cross_sqdist, r), symmetric=False
        )
        white_cross = solve_triangular(chol, cross.T, lower=True)
        white_h = solve_triangular(chol, h, lower=True)
        mean = white_cross.T @ white_h
        explained = jnp.sum(jnp.square(white_cross), axis=0)
        var = lamda * sigma2 * jnp.maximum(1 - explained, 0)
        return mean, var, ok

    draws = trace.r, trace.h, trace.lamda, trace.sigma2
    return lax.map(conditional, draws)


def _select(trace: MainTrace, sel: Int[Array, ' k'] | Bool[Array, ' ndpost'] | None):
    if sel is None:
        return trace
    return jax.tree.map(lambda x: x[sel], trace)


def _check_ok(ok: Bool[Array, ' ndpost']) -> None:
    if not jnp.all(ok):
        (bad,) = jnp.nonzero(~ok)
        msg = f'Cholesky decomposition of the kernel failed for draws {bad.tolist()}'
        raise FloatingPointError(msg)


def postmean_hnew(
    trace: MainTrace,
    Z: Real[Array, 'n M'],
    Znew: Real[Array, 'm M'],
    sel: Int[Array, ' k'] | Bool[Array, ' ndpost'] | None = None,
    *,
    max_tries: int = 5,
) -> tuple[Float[Array, ' m'], Float[Array, ' m']]:
    """
    Compute the posterior mean and standard error of `h` at new exposures.

    Parameters
    ----------
    trace
        The retained MCMC draws, with a single leading trace axis.
    Z
        The exposures used to fit the model.
    Znew
        The new exposures.
    sel
        Indices or boolean mask of the draws to use. If `None`, use all.
    max_tries
        Passed to `chol_with_jitter`.

    Returns
    -------
    mean : Float[Array, ' m']
        The posterior mean of ``h(Znew)``.
    se : Float[Array, ' m']
        The posterior standard deviation of ``h(Znew)``, combining the
        variance conditional on each draw and the variance across draws.

    Raises
    ------
    FloatingPointError
        If the kernel matrix of some draw can not be factorized.
    """
    trace = _select(trace, sel)
    means, variances, ok = conditional_function(trace, Z, Znew, max_tries=max_tries)
    _check_ok(ok)
    mean = jnp.mean(means, axis=0)
    se = jnp.sqrt(jnp.mean(variances, axis=0) + jnp.var(means, axis=0))
    return mean, se


def sample_response(
    key: Key[Array, ''],
    trace: MainTrace,
    Z: Real[Array, 'n M'],
    Znew: Real[Array, 'm M'],
    Xnew: Real[Array, 'm p'] | Real[Array, ' p'],
    *,
    binary: bool,
    sel: Int[Array, ' k'] | Bool[Array, ' ndpost'] | None = None,
    max_tries: int = 5,
) -> Float[Array, 'ndpost m']:
    """
    Compute posterior predictive draws on the outcome scale.

    Parameters
    ----------
    key
        A jax random key, used only for continuous outcomes.
    trace
        The retained MCMC draws, with a single leading trace axis.
    Z
        The exposures used to fit the model.
    Znew
        The new exposures.
    Xnew
        The covariates at the new points. If one-dimensional, the same values
        are used for all the points.
    binary
        Whether the outcome is binary.
    sel
        Indices or boolean mask of the draws to use. If `None`, use all.
    max_tries
        Passed to `chol_with_jitter`.

    Returns
    -------
    For binary outcomes, the probability that the outcome is 1 for each draw,
    with `h` integrated out given the draw. For continuous outcomes, a sample
    of the outcome for each draw.

    Raises
    ------
    FloatingPointError
        If the kernel matrix of some draw can not be factorized.
    """
    trace = _select(trace, sel)
    means, variances, ok = conditional_function(trace, Z, Znew, max_tries=max_tries)
    _check_ok(ok)
    Xnew = jnp.asarray(Xnew, float)
    if Xnew.ndim == 1:
        Xnew = jnp.broadcast_to(Xnew, (Znew.shape[0], Xnew.size))
    eta = means + trace.beta @ Xnew.T
    if binary:
        return ndtr(eta / jnp.sqrt(1 + variances))
    else:
        sd = jnp.sqrt(variances + trace.sigma2[:, None])
        return eta + sd * random.normal(key, eta.shape)
