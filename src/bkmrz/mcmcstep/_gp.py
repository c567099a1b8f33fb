# bkmrz/src/bkmrz/mcmcstep/_gp.py
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

"""Gaussian process computations shared by the MCMC stages.

With ``e = h + eps`` the residual after removing the covariates, the prior
``h ~ N(0, lamda sigma2 K)`` and the error ``eps ~ N(0, sigma2 I)``, the
marginal distribution of the residual is ``N(0, sigma2 V)``, ``V = I + lamda K``.
"""

import math

from equinox import Module, field
from jax import numpy as jnp
from jax import random
from jax.scipy.linalg import cho_solve, solve_triangular
from jax.scipy.special import betaln
from jax.scipy.stats import gamma
from jaxtyping import Array, Bool, Float, Key

from bkmrz.jaxext import chol_with_jitter, logdet_from_chol, split
from bkmrz.kernel import kernel_from_distance
from bkmrz.mcmcstep._state import Config

LOG_HALF = math.log(0.5)


class CollapsedLikelihood(Module):
    """
    The likelihood of the residual with `h` integrated out.

    Parameters
    ----------
    logdet
        ``log |V|``.
    quad
        ``e' V^-1 e``.
    ok
        Whether the factorization of `V` succeeded. If not, the other fields
        are not meaningful.
    n
        The number of observations.
    """

    logdet: Float[Array, '']
    quad: Float[Array, '']
    ok: Bool[Array, '']
    n: int = field(static=True)

    def loglik(self, sigma2: Float[Array, '']) -> Float[Array, '']:
        """The log likelihood up to a constant, ``-inf`` if not `ok`."""
        n = self.n
        value = -n / 2 * jnp.log(sigma2) - self.logdet / 2 - self.quad / (2 * sigma2)
        return jnp.where(self.ok & jnp.isfinite(value), value, -jnp.inf)


def collapsed_likelihood(
    resid: Float[Array, ' n'],
    dist: Float[Array, 'n n'],
    lamda: Float[Array, ''],
    *,
    max_tries: int,
) -> CollapsedLikelihood:
    """
    Compute the sufficient quantities of the collapsed likelihood.

    Parameters
    ----------
    resid
        The outcome minus the covariate contribution.
    dist
        The weighted squared distance defining the kernel.
    lamda
        The variance ratio of `h` to the error.
    max_tries
        Passed to `chol_with_jitter`.

    Returns
    -------
    An object holding ``log |V|`` and ``e' V^-1 e``.
    """
    n = resid.size
    kernel = kernel_from_distance(dist)
    chol, ok = chol_with_jitter(jnp.eye(n) + lamda * kernel, max_tries=max_tries)
    white = solve_triangular(chol, resid, lower=True)
    return CollapsedLikelihood(
        logdet=logdet_from_chol(chol), quad=white @ white, ok=ok, n=n
    )


def draw_function(
    key: Key[Array, ''],
    resid: Float[Array, ' n'],
    dist: Float[Array, 'n n'],
    lamda: Float[Array, ''],
    sigma2: Float[Array, ''],
    *,
    max_tries: int,
) -> tuple[Float[Array, ' n'], Bool[Array, '']]:
    """
    Sample `h` from its conditional posterior given the residual.

    Parameters
    ----------
    key
        A jax random key.
    resid
        The outcome minus the covariate contribution.
    dist
        The weighted squared distance defining the kernel.
    lamda
    sigma2
        The variance parameters.
    max_tries
        Passed to `chol_with_jitter`.

    Returns
    -------
    h : Float[Array, ' n']
        The sample.
    ok : Bool[Array, '']
        Whether the factorizations succeeded and the sample is finite.

    Notes
    -----
    A joint draw of ``(h, e)`` from the prior is corrected to condition on the
    observed residual: ``h = f + lamda K V^-1 (e - f - eps)`` with
    ``f ~ N(0, lamda sigma2 K)`` and ``eps ~ N(0, sigma2 I)``.
    """
    n = resid.size
    keys = split(key)
    kernel = kernel_from_distance(dist)
    chol_k, ok_k = chol_with_jitter(kernel, max_tries=max_tries)
    chol_v, ok_v = chol_with_jitter(jnp.eye(n) + lamda * kernel, max_tries=max_tries)

    prior_h = jnp.sqrt(lamda * sigma2) * (chol_k @ random.normal(keys.pop(), (n,)))
    prior_e = prior_h + jnp.sqrt(sigma2) * random.normal(keys.pop(), (n,))
    h = prior_h + lamda * (kernel @ cho_solve((chol_v, True), resid - prior_e))

    return h, ok_k & ok_v & jnp.all(jnp.isfinite(h))


def gamma_logpdf(
    x: Float[Array, '*'], mean: Float[Array, '*'], sd: Float[Array, '*']
) -> Float[Array, '*']:
    """Log density of the gamma distribution parametrized by mean and sd."""
    shape = jnp.square(mean / sd)
    return gamma.logpdf(x, shape, scale=jnp.square(sd) / mean)


def sample_gamma(
    key: Key[Array, ''], mean: Float[Array, ''], sd: Float[Array, '']
) -> Float[Array, '']:
    """Sample from the gamma distribution parametrized by mean and sd."""
    shape = jnp.square(mean / sd)
    return random.gamma(key, shape, dtype=shape.dtype) * jnp.square(sd) / mean


def log_prior_bandwidth(r: Float[Array, ''], config: Config) -> Float[Array, '']:
    """Log prior density of the bandwidth of an included exposure."""
    match config.r_prior:
        case 'gamma':
            return gamma_logpdf(r, config.mu_r, config.sigma_r)
        case 'unif':
            inside = (r >= config.r_a) & (r <= config.r_b)
            return jnp.where(inside, -jnp.log(config.r_b - config.r_a), -jnp.inf)
        case 'invunif':
            inv = 1 / r
            inside = (r > 0) & (inv >= config.r_a) & (inv <= config.r_b)
            logpdf = -jnp.log(config.r_b - config.r_a) - 2 * jnp.log(r)
            return jnp.where(inside, logpdf, -jnp.inf)
        case _:
            msg = f'unknown bandwidth prior {config.r_prior!r}'
            raise ValueError(msg)


def log_prior_inclusion(
    included: Bool[Array, ' M'], config: Config
) -> Float[Array, '']:
    """
    Log prior probability of a configuration of inclusion indicators.

    The indicators are independent Bernoulli given a common probability with a
    beta prior, which is integrated out.
    """
    num = jnp.sum(included)
    size = included.size
    return betaln(config.a_p0 + num, config.b_p0 + size - num) - betaln(
        config.a_p0, config.b_p0
    )
