# bkmrz/src/bkmrz/mcmcstep/_selection.py
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

"""Metropolis-Hastings sweep over the exposure bandwidths and inclusion."""

from dataclasses import replace
from functools import partial

import jax
from equinox import Module
from jax import lax, random
from jax import numpy as jnp
from jaxtyping import Array, Bool, Float, Int32, Key

from bkmrz.jaxext import split
from bkmrz.kernel import update_distance, weighted_distance
from bkmrz.mcmcstep._gp import (
    LOG_HALF,
    CollapsedLikelihood,
    collapsed_likelihood,
    gamma_logpdf,
    log_prior_bandwidth,
    log_prior_inclusion,
    sample_gamma,
)
from bkmrz.mcmcstep._state import Bandwidths, Counts, State


class Proposal(Module):
    """
    A proposed change to the bandwidth of one exposure.

    Parameters
    ----------
    swap
        Whether the move flips the inclusion of the exposure (move type 2)
        instead of moving its bandwidth (move type 1).
    r
        The proposed bandwidth.
    included
        The proposed inclusion.
    log_trans_prior
        The log ratio of priors and proposal densities of the reverse and the
        forward move, excluding the likelihood.
    """

    swap: Bool[Array, '']
    r: Float[Array, '']
    included: Bool[Array, '']
    log_trans_prior: Float[Array, '']


def propose(
    key: Key[Array, ''], m: Int32[Array, ''], bandwidths: Bandwidths, state: State
) -> Proposal:
    """
    Propose a move on the bandwidth of exposure `m`.

    Parameters
    ----------
    key
        A jax random key.
    m
        The index of the exposure.
    bandwidths
        The current bandwidths.
    state
        The MCMC state, used for the configuration.

    Returns
    -------
    The proposed move.

    Notes
    -----
    An excluded exposure is always proposed to enter the model, with bandwidth
    drawn from a gamma distribution with mean `r_muprop` and standard deviation
    `r_jump2`. An included exposure is proposed to leave with probability 1/2
    and otherwise moves its bandwidth by a normal random walk with standard
    deviation ``r_jump[m]``. Without variable selection, only the random walk
    is used.
    """
    config = state.config
    keys = split(key, 3)
    r = bandwidths.r[m]
    included = bandwidths.included[m]

    if state.varsel:
        swap = jnp.where(included, random.bernoulli(keys.pop()), True)
    else:
        swap = jnp.zeros((), bool)

    r_walk = r + config.r_jump[m] * random.normal(keys.pop(), dtype=r.dtype)
    r_enter = sample_gamma(keys.pop(), config.r_muprop, config.r_jump2)

    new_included = jnp.where(swap, ~included, included)
    new_r = jnp.where(swap, jnp.where(included, r, r_enter), r_walk)

    # prior of the bandwidth, only for included exposures
    log_prior_new = jnp.where(new_included, log_prior_bandwidth(new_r, config), 0)
    log_prior_old = jnp.where(included, log_prior_bandwidth(r, config), 0)

    # prior of the inclusion indicators
    new_incl_vec = bandwidths.included.at[m].set(new_included)
    log_prior_incl = log_prior_inclusion(new_incl_vec, config) - log_prior_inclusion(
        bandwidths.included, config
    )

    # asymmetric proposal of the swap move
    def log_q_enter(x):
        return gamma_logpdf(x, config.r_muprop, config.r_jump2)

    log_trans = jnp.where(
        swap,
        jnp.where(included, log_q_enter(r) - LOG_HALF, LOG_HALF - log_q_enter(new_r)),
        0,
    )

    log_trans_prior = log_trans + log_prior_new - log_prior_old + log_prior_incl
    valid = ~new_included | (new_r > 0)

    return Proposal(
        swap=swap,
        r=new_r,
        included=new_included,
        log_trans_prior=jnp.where(valid, log_trans_prior, -jnp.inf),
    )


class _SweepCarry(Module):
    dist: Float[Array, 'n n']
    bandwidths: Bandwidths
    current: CollapsedLikelihood
    counts: Counts


def step_selection(key: Key[Array, ''], state: State) -> tuple[State, Bool[Array, '']]:
    """
    Update the bandwidths and inclusion of all exposures, one at a time.

    Each move is accepted or rejected with the likelihood of the residual with
    `h` integrated out. Proposals whose likelihood can not be computed are
    rejected.

    Parameters
    ----------
    key
        A jax random key.
    state
        A BKMR MCMC state.

    Returns
    -------
    state : State
        The updated state, with the move counters set.
    ok : Bool[Array, '']
        Whether the likelihood of the initial configuration could be computed.
    """
    resid = state.target - state.X @ state.beta
    loglik = partial(
        collapsed_likelihood,
        resid,
        lamda=state.lamda,
        max_tries=state.config.max_jitter_tries,
    )

    # resynchronize the distance to avoid accumulating rounding errors
    dist = weighted_distance(state.sqdist, state.bandwidths.effective())

    def sweep(carry: _SweepCarry, item) -> tuple[_SweepCarry, None]:
        m, key = item
        keys = split(key)
        bw = carry.bandwidths
        prop = propose(keys.pop(), m, bw, state)

        r_old = jnp.where(bw.included[m], bw.r[m], 0)
        r_new = jnp.where(prop.included, prop.r, 0)
        new_dist = update_distance(carry.dist, state.sqdist, m, r_old, r_new)
        proposed = loglik(new_dist)

        log_ratio = (
            proposed.loglik(state.sigma2)
            - carry.current.loglik(state.sigma2)
            + prop.log_trans_prior
        )
        log_u = jnp.log(random.uniform(keys.pop(), dtype=log_ratio.dtype))
        # NaN compares false, so it's a rejection
        accept = proposed.ok & (log_u < log_ratio)

        move = prop.swap.astype(jnp.int32)
        counts = carry.counts
        counts = replace(
            counts,
            move_prop=counts.move_prop.at[move].add(1),
            move_acc=counts.move_acc.at[move].add(accept.astype(jnp.int32)),
        )

        select = partial(jnp.where, accept)
        carry = _SweepCarry(
            dist=select(new_dist, carry.dist),
            bandwidths=Bandwidths(
                r=bw.r.at[m].set(select(prop.r, bw.r[m])),
                included=bw.included.at[m].set(select(prop.included, bw.included[m])),
            ),
            current=jax.tree.map(select, proposed, carry.current),
            counts=counts,
        )
        return carry, None

    carry = _SweepCarry(
        dist=dist,
        bandwidths=state.bandwidths,
        current=loglik(dist),
        counts=replace(
            state.counts,
            move_prop=jnp.zeros(2, jnp.int32),
            move_acc=jnp.zeros(2, jnp.int32),
        ),
    )
    ok = jnp.isfinite(carry.current.loglik(state.sigma2))

    items = jnp.arange(state.M), random.split(key, state.M)
    carry, _ = lax.scan(sweep, carry, items)

    state = replace(
        state, dist=carry.dist, bandwidths=carry.bandwidths, counts=carry.counts
    )
    return state, ok
