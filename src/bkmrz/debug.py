# bkmrz/src/bkmrz/debug.py
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

"""Debugging utilities. The entry points are `check_trace` and `describe_error`."""

from collections.abc import Callable

from jax import jit, vmap
from jax import numpy as jnp
from jaxtyping import Array, Bool, Float, UInt

from bkmrz.kernel import weighted_distance
from bkmrz.mcmcloop import MainTrace
from bkmrz.mcmcstep import State

check_functions = []


CheckFunc = Callable[[MainTrace], bool | Bool[Array, '']]


def check(func: CheckFunc) -> CheckFunc:
    """Add a function to a list of functions used to check MCMC draws.

    Use to decorate functions that check whether a draw is valid in some way.
    These functions are invoked automatically by `check_draw` and
    `check_trace`.

    Parameters
    ----------
    func
        The function to add to the list. It must accept a single-item
        `MainTrace` and return a boolean scalar that indicates if the draw is
        ok.

    Returns
    -------
    The function unchanged.
    """
    check_functions.append(func)
    return func


@check
def check_finite(draw: MainTrace) -> Bool[Array, '']:
    """Check that all the parameters are finite."""
    return (
        jnp.all(jnp.isfinite(draw.h))
        & jnp.all(jnp.isfinite(draw.beta))
        & jnp.all(jnp.isfinite(draw.r))
        & jnp.isfinite(draw.lamda)
        & jnp.isfinite(draw.sigma2)
    )


@check
def check_bandwidths(draw: MainTrace) -> Bool[Array, '']:
    """Check that bandwidths are positive if included and zero if excluded."""
    return jnp.all(jnp.where(draw.included, draw.r > 0, draw.r == 0))


@check
def check_variances(draw: MainTrace) -> Bool[Array, '']:
    """Check that the variance parameters are positive."""
    return (draw.lamda > 0) & (draw.sigma2 > 0)


@check
def check_counts(draw: MainTrace) -> Bool[Array, '']:
    """Check that acceptances do not exceed proposals."""
    return (
        jnp.all((draw.move_acc >= 0) & (draw.move_acc <= draw.move_prop))
        & (draw.lamda_acc >= 0)
        & (draw.lamda_acc <= draw.lamda_prop)
        & (draw.lamda_prop <= 1)
    )


@check
def check_one_move_per_exposure(draw: MainTrace) -> Bool[Array, '']:
    """Check that exactly one move is proposed per exposure per iteration."""
    return jnp.sum(draw.move_prop) == draw.r.size


def check_draw(draw: MainTrace) -> UInt[Array, '']:
    """Check the validity of a single MCMC draw.

    Use `describe_error` to parse the error code returned by this function.

    Parameters
    ----------
    draw
        A single item of the main trace.

    Returns
    -------
    An integer where each bit indicates whether a check failed.
    """
    error = jnp.uint32(0)
    for i, func in enumerate(check_functions):
        ok = jnp.bool_(func(draw))
        error |= (~ok).astype(jnp.uint32) << i
    return error


def describe_error(error: int | UInt[Array, '']) -> list[str]:
    """Describe the error code returned by `check_draw`.

    Parameters
    ----------
    error
        The error code returned by `check_draw`.

    Returns
    -------
    A list of the function names that implement the failed checks.
    """
    return [func.__name__ for i, func in enumerate(check_functions) if error & (1 << i)]


@jit
def check_trace(trace: MainTrace) -> UInt[Array, ' trace_length']:
    """Check the validity of a sequence of MCMC draws.

    Use `describe_error` to parse the error codes returned by this function.

    Parameters
    ----------
    trace
        The main trace of a single chain, or of merged chains.

    Returns
    -------
    An error code for each draw.
    """
    return vmap(check_draw)(trace)


@jit
def distance_drift(state: State) -> Float[Array, '']:
    """Measure how far the cached weighted distance is from a recomputation.

    Parameters
    ----------
    state
        An MCMC state without chain axis.

    Returns
    -------
    The maximum absolute difference between `state.dist` and the weighted
    distance computed from scratch with the current bandwidths.
    """
    exact = weighted_distance(state.sqdist, state.bandwidths.effective())
    return jnp.max(jnp.abs(state.dist - exact))
