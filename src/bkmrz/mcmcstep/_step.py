# bkmrz/src/bkmrz/mcmcstep/_step.py
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

"""Implement `step` and the stages of an MCMC iteration."""

from collections.abc import Callable
from dataclasses import replace

import jax
from jax import random
from jax import numpy as jnp
from jax.scipy.linalg import cho_solve, solve_triangular
from jaxtyping import Array, Bool, Key

from bkmrz.jaxext import chol_with_jitter, split, truncated_normal_onesided
from bkmrz.mcmcstep._gp import (
    collapsed_likelihood,
    draw_function,
    gamma_logpdf,
    sample_gamma,
)
from bkmrz.mcmcstep._selection import step_selection
from bkmrz.mcmcstep._state import Counts, Family, Stage, State

StageFunction = Callable[[Key[Array, ''], State], tuple[State, Bool[Array, '']]]


@jax.jit
def step(key: Key[Array, ''], state: State) -> State:
    """
    Do one MCMC step.

    Parameters
    ----------
    key
        A jax random key.
    state
        A BKMR mcmc state, as created by `init`, without chain axis.

    Returns
    -------
    The new BKMR mcmc state.

    Notes
    -----
    The stages listed in `Stage` are run in order. The first stage that fails
    is recorded in `State.error`; the following stages are run anyway, and the
    caller is expected to discard the state.
    """
    keys = split(key, len(Stage))
    state = replace(state, counts=Counts.zeros())
    for stage in Stage:
        subkey = keys.pop()
        if not _stage_applies(stage, state):
            continue
        state, ok = STAGES[stage](subkey, state)
        state = replace(
            state,
            error=jnp.where((state.error == 0) & ~ok, stage.value, state.error),
        )
    return state


def _stage_applies(stage: Stage, state: State) -> bool:
    match stage:
        case Stage.latent:
            return state.family == Family.binary
        case Stage.coefficients:
            return state.p > 0
        case _:
            return True


def step_latent(key: Key[Array, ''], state: State) -> tuple[State, Bool[Array, '']]:
    """
    MCMC-update the latent variable for binary regression.

    Parameters
    ----------
    key
        A jax random key.
    state
        A BKMR MCMC state.

    Returns
    -------
    state : State
        The updated BKMR MCMC state.
    ok : Bool[Array, '']
        Whether the new latent values are finite.
    """
    assert state.y.dtype == bool
    mean = state.h + state.X @ state.beta
    resid = truncated_normal_onesided(key, (), ~state.y, -mean)
    z = mean + resid
    return replace(state, z=z), jnp.all(jnp.isfinite(z))


def step_function(key: Key[Array, ''], state: State) -> tuple[State, Bool[Array, '']]:
    """MCMC-update `h` given the residual of the covariate regression."""
    h, ok = draw_function(
        key,
        state.target - state.X @ state.beta,
        state.dist,
        state.lamda,
        state.sigma2,
        max_tries=state.config.max_jitter_tries,
    )
    return replace(state, h=h), ok


def step_coefficients(
    key: Key[Array, ''], state: State
) -> tuple[State, Bool[Array, '']]:
    """
    MCMC-update the covariate coefficients given `h`.

    The full conditional is normal with precision ``X'X / sigma2 + P0`` and
    mean ``Q^-1 (X'(z - h) / sigma2 + P0 mu0)``, where ``P0`` and ``mu0`` are
    the prior precision and mean.
    """
    config = state.config
    resid = state.target - state.h
    prec = state.X.T @ state.X / state.sigma2 + config.beta_prior_prec
    chol, ok = chol_with_jitter(prec, max_tries=config.max_jitter_tries)
    rhs = (
        state.X.T @ resid / state.sigma2
        + config.beta_prior_prec @ config.beta_prior_mean
    )
    mean = cho_solve((chol, True), rhs)
    noise = solve_triangular(chol.T, random.normal(key, (state.p,)), lower=False)
    beta = mean + noise
    return replace(state, beta=beta), ok & jnp.all(jnp.isfinite(beta))


def step_hyperparameters(
    key: Key[Array, ''], state: State
) -> tuple[State, Bool[Array, '']]:
    """
    MCMC-update `lamda` and `sigma2`, then redraw `h`.

    Parameters
    ----------
    key
        A jax random key.
    state
        A BKMR MCMC state.

    Returns
    -------
    state : State
        The updated state.
    ok : Bool[Array, '']
        Whether all the updates produced finite values.

    Notes
    -----
    `lamda` is updated with a Metropolis-Hastings step, proposing from a gamma
    distribution with mean the current value and standard deviation
    `lamda_jump`. `sigma2` is drawn from its inverse gamma conditional with `h`
    integrated out. Both target the likelihood with `h` integrated out, so `h`
    is sampled again at the end to be consistent with the new values.
    """
    config = state.config
    keys = split(key, 4)
    resid = state.target - state.X @ state.beta
    max_tries = config.max_jitter_tries
    current = collapsed_likelihood(resid, state.dist, state.lamda, max_tries=max_tries)
    lamda = state.lamda
    sigma2 = state.sigma2
    counts = state.counts

    if config.update_lamda:
        new_lamda = sample_gamma(keys.pop(), lamda, config.lamda_jump)
        proposed = collapsed_likelihood(
            resid, state.dist, new_lamda, max_tries=max_tries
        )
        log_ratio = (
            proposed.loglik(sigma2)
            - current.loglik(sigma2)
            + gamma_logpdf(new_lamda, config.mu_lamda, config.sigma_lamda)
            - gamma_logpdf(lamda, config.mu_lamda, config.sigma_lamda)
            + gamma_logpdf(lamda, new_lamda, config.lamda_jump)
            - gamma_logpdf(new_lamda, lamda, config.lamda_jump)
        )
        log_u = jnp.log(random.uniform(keys.pop(), dtype=log_ratio.dtype))
        accept = proposed.ok & (new_lamda > 0) & (log_u < log_ratio)
        lamda = jnp.where(accept, new_lamda, lamda)
        current = jax.tree.map(lambda x, y: jnp.where(accept, x, y), proposed, current)
        counts = replace(
            counts,
            lamda_prop=jnp.ones((), jnp.int32),
            lamda_acc=accept.astype(jnp.int32),
        )

    if config.update_sigma2:
        # inverse gamma prior with shape a and scale b
        alpha = config.a_sigsq + state.n / 2
        scale = config.b_sigsq + current.quad / 2
        sigma2 = scale / random.gamma(keys.pop(), alpha, dtype=scale.dtype)

    state = replace(state, lamda=lamda, sigma2=sigma2, counts=counts)
    state, ok = step_function(keys.pop(), state)
    ok &= current.ok & jnp.isfinite(lamda) & jnp.isfinite(sigma2)
    return state, ok


STAGES: dict[Stage, StageFunction] = {
    Stage.latent: step_latent,
    Stage.function: step_function,
    Stage.coefficients: step_coefficients,
    Stage.selection: step_selection,
    Stage.hyperparameters: step_hyperparameters,
}
"""The function implementing each stage."""
