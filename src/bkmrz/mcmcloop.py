# bkmrz/src/bkmrz/mcmcloop.py
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

"""Run the BKMR MCMC for many iterations and collect the draws.

`run_mcmc` drives the chain, and `make_default_callback` sets up the progress
output.
"""

from collections.abc import Callable
from dataclasses import replace
from functools import partial
from typing import Any, Protocol

import jax
import numpy
from equinox import Module
from jax import debug, lax, random, tree
from jax import numpy as jnp
from jaxtyping import Array, Bool, Float, Int32, Key, PyTree

from bkmrz import jaxext, mcmcstep
from bkmrz.mcmcstep import NumericalError, Stage, State


class BurninTrace(Module):
    """
    Diagnostics saved at each burn-in iteration.

    Parameters
    ----------
    sigma2
    lamda
        The variance parameters.
    included
        The inclusion indicators.
    move_prop
    move_acc
    lamda_prop
    lamda_acc
        The acceptance counters, see `bkmrz.mcmcstep.Counts`.
    """

    sigma2: Float[Array, '*trace_length']
    lamda: Float[Array, '*trace_length']
    included: Bool[Array, '*trace_length M']
    move_prop: Int32[Array, '*trace_length 2']
    move_acc: Int32[Array, '*trace_length 2']
    lamda_prop: Int32[Array, '*trace_length']
    lamda_acc: Int32[Array, '*trace_length']

    @classmethod
    def from_state(cls, state: State) -> 'BurninTrace':
        """Take the diagnostics out of a state."""
        counts = state.counts
        return cls(
            sigma2=state.sigma2,
            lamda=state.lamda,
            included=state.bandwidths.included,
            move_prop=counts.move_prop,
            move_acc=counts.move_acc,
            lamda_prop=counts.lamda_prop,
            lamda_acc=counts.lamda_acc,
        )


class MainTrace(BurninTrace):
    """
    Draws saved at each retained iteration.

    On top of the diagnostics of `BurninTrace`, holds the model parameters. The
    bandwidth `r` is the effective one, i.e., 0 for excluded exposures.
    """

    h: Float[Array, '*trace_length n']
    beta: Float[Array, '*trace_length p']
    r: Float[Array, '*trace_length M']

    @classmethod
    def from_state(cls, state: State) -> 'MainTrace':
        """Take the parameters and the diagnostics out of a state."""
        diagnostics = BurninTrace.from_state(state)
        return cls(
            h=state.h,
            beta=state.beta,
            r=state.bandwidths.effective(),
            **vars(diagnostics),
        )


class Callback(Protocol):
    """Signature of the `callback` argument of `run_mcmc`."""

    def __call__(
        self,
        *,
        key: Key[Array, ''],
        state: State,
        burnin: Bool[Array, ''],
        i_total: Int32[Array, ''],
        n_burn: Int32[Array, ''],
        n_save: Int32[Array, ''],
        n_skip: Int32[Array, ''],
        callback_state: PyTree,
    ) -> tuple[State, PyTree] | None:
        """
        Act on the chain after an iteration.

        Parameters
        ----------
        key
            A random key reserved to the callback.
        state
            The state produced by the iteration.
        burnin
            Whether the iteration is part of the burn-in.
        i_total
            The 0-based index of the iteration.
        n_burn
        n_save
        n_skip
            As passed to `run_mcmc`.
        callback_state
            The value returned by the previous call, or the one passed to
            `run_mcmc` on the first call.

        Returns
        -------
        `None` to leave everything as is, or a pair with the state to continue
        the chain from and the new callback state.

        Notes
        -----
        The callback is traced by jax, so its arguments are abstract arrays.
        Use `jax.debug` to act on the actual values.
        """
        ...


class _Carry(Module):
    state: State
    key: Key[Array, '']
    i_total: Int32[Array, '']
    error_iteration: Int32[Array, '*chains']
    burnin_trace: BurninTrace
    main_trace: MainTrace
    callback_state: PyTree


def run_mcmc(
    key: Key[Array, ''],
    state: State,
    n_save: int,
    *,
    n_burn: int = 0,
    n_skip: int = 1,
    inner_loop_length: int | None = None,
    callback: Callback | None = None,
    callback_state: PyTree = None,
    stop: Callable[[], bool] | None = None,
) -> tuple[State, BurninTrace, MainTrace]:
    """
    Run the BKMR MCMC.

    Parameters
    ----------
    key
        A jax random key.
    state
        The initial state, see `bkmrz.mcmcstep.init`. If it has a chain axis,
        the chains are advanced together with independent keys. The buffers of
        `state` are donated to the loop, so it can't be used after the call.
    n_save
        The number of draws to keep.
    n_burn
        The number of initial iterations whose draws are discarded.
    n_skip
        After the burn-in, one draw is kept every `n_skip` iterations.
    inner_loop_length
        The number of iterations in each compiled loop. Between compiled loops,
        control goes back to Python to check for errors and call `stop`. By
        default, all the iterations are done in a single loop.
    callback
        A function called after each iteration, see `Callback`.
    callback_state
        The initial state of `callback`.
    stop
        A function without arguments called between compiled loops. If it
        returns `True`, the run ends early and the traces are cut to the
        iterations completed.

    Returns
    -------
    state : State
        The state after the last iteration.
    burnin_trace : BurninTrace
        The diagnostics of the burn-in.
    main_trace : MainTrace
        The kept draws.

    Raises
    ------
    NumericalError
        If a stage fails in any chain. The iterations following the failure
        are skipped, and the error is raised at the end of the compiled loop.

    Notes
    -----
    There are ``n_burn + n_skip * n_save`` iterations. The draw kept from each
    group of `n_skip` iterations is the last one, so the final state is the
    last draw. The first axis of the traces runs over iterations, followed by
    the chain axis if present.
    """
    n_iters = n_burn + n_skip * n_save
    if inner_loop_length is None or inner_loop_length > n_iters:
        inner_loop_length = n_iters
    if inner_loop_length:
        n_outer = -(-n_iters // inner_loop_length)
    else:
        # run an empty loop anyway to return arrays produced by the same code
        n_outer = 1

    carry = _Carry(
        state=state,
        key=key,
        i_total=jnp.int32(0),
        error_iteration=jnp.full_like(state.error, -1),
        burnin_trace=_empty_trace(BurninTrace, state, n_burn),
        main_trace=_empty_trace(MainTrace, state, n_save),
        callback_state=callback_state,
    )
    lengths = jnp.int32(n_burn), jnp.int32(n_save), jnp.int32(n_skip)
    for i_outer in range(n_outer):
        carry = _run_inner_loop(carry, inner_loop_length, callback, *lengths)
        _raise_if_error(carry)
        if i_outer + 1 < n_outer and stop is not None and stop():
            break

    return _cut_traces(carry, n_burn, n_skip)


def _empty_trace(cls: type[BurninTrace], state: State, length: int) -> BurninTrace:
    """Allocate a trace of `length` draws taken from `state` by `cls`."""
    shapes = jax.eval_shape(cls.from_state, state)
    return tree.map(lambda x: jnp.zeros((length, *x.shape), x.dtype), shapes)


def _raise_if_error(carry: _Carry) -> None:
    """Raise `NumericalError` if a chain recorded a failure."""
    error = numpy.asarray(carry.state.error)
    if not error.any():
        return
    iteration = numpy.asarray(carry.error_iteration)
    if error.ndim == 0:
        raise NumericalError(Stage(error.item()), iteration.item())
    (failed,) = numpy.nonzero(error)
    # blame the chain that failed first
    chain = failed[numpy.argmin(iteration[failed])].item()
    raise NumericalError(Stage(error[chain].item()), iteration[chain].item(), chain)


def _cut_traces(
    carry: _Carry, n_burn: int, n_skip: int
) -> tuple[State, BurninTrace, MainTrace]:
    """Return the state and the traces limited to the completed iterations."""
    done = carry.i_total.item()
    burnin_length = min(done, n_burn)
    main_length = max(0, done - n_burn) // n_skip
    burnin_trace = tree.map(lambda x: x[:burnin_length], carry.burnin_trace)
    main_trace = tree.map(lambda x: x[:main_length], carry.main_trace)
    return carry.state, burnin_trace, main_trace


def _step_unless_failed(key: Key[Array, ''], state: State) -> State:
    """Do an MCMC step, or nothing if the state carries an error."""
    return lax.cond(
        state.error == 0, mcmcstep.step, lambda _, state: state, key, state
    )


def _step_chains(key: Key[Array, ''], state: State) -> State:
    """Do an MCMC step on all the chains."""
    if state.num_chains is None:
        return _step_unless_failed(key, state)
    keys = random.split(key, state.num_chains)
    single = replace(state, num_chains=None)
    axes = mcmcstep.chain_axes(single)
    single = jax.vmap(_step_unless_failed, in_axes=(0, axes), out_axes=axes)(
        keys, single
    )
    return replace(single, num_chains=state.num_chains)


def _set_item(trace: BurninTrace, index: Int32[Array, ''], item: BurninTrace):
    """Write `item` at `index` in the trace, unless `index` is out of bounds."""

    def set_leaf(x, value):
        if not x.shape[0]:
            # jax refuses to index an empty axis, even if the write is dropped
            return x
        return x.at[index].set(value, mode='drop')

    return tree.map(set_leaf, trace, item)


@partial(jax.jit, donate_argnums=(0,), static_argnums=(1, 2))
def _run_inner_loop(
    carry: _Carry,
    length: int,
    callback: Callback | None,
    n_burn: Int32[Array, ''],
    n_save: Int32[Array, ''],
    n_skip: Int32[Array, ''],
) -> _Carry:
    n_iters = n_burn + n_skip * n_save

    def iteration(carry: _Carry) -> _Carry:
        keys = jaxext.split(carry.key, 3)
        i = carry.i_total
        burnin = i < n_burn

        state = _step_chains(keys.pop(), carry.state)
        first_failure = (carry.error_iteration < 0) & (state.error != 0)
        error_iteration = jnp.where(first_failure, i, carry.error_iteration)

        callback_state = carry.callback_state
        if callback is not None:
            out = callback(
                key=keys.pop(),
                state=state,
                burnin=burnin,
                i_total=i,
                n_burn=n_burn,
                n_save=n_save,
                n_skip=n_skip,
                callback_state=callback_state,
            )
            if out is not None:
                state, callback_state = out

        # the index of the other trace is pushed out of bounds; in the main
        # phase each draw overwrites the previous one of the same group
        burnin_index = jnp.where(burnin, i, n_burn)
        main_index = jnp.where(burnin, n_save, (i - n_burn) // n_skip)
        return _Carry(
            state=state,
            key=keys.pop(),
            i_total=i + 1,
            error_iteration=error_iteration,
            burnin_trace=_set_item(
                carry.burnin_trace, burnin_index, BurninTrace.from_state(state)
            ),
            main_trace=_set_item(
                carry.main_trace, main_index, MainTrace.from_state(state)
            ),
            callback_state=callback_state,
        )

    def body(carry: _Carry, _) -> tuple[_Carry, None]:
        carry = lax.cond(carry.i_total < n_iters, iteration, lambda c: c, carry)
        return carry, None

    carry, _ = lax.scan(body, carry, length=length)
    return carry


def make_default_callback(
    *, dot_every: int | None = 1, report_every: int | None = 100
) -> dict[str, Any]:
    """
    Make the arguments of `run_mcmc` that turn on progress output.

    Parameters
    ----------
    dot_every
        Print a dot every `dot_every` iterations, `None` to disable.
    report_every
        Print a line with acceptance rates and number of included exposures
        every `report_every` iterations, `None` to disable.

    Returns
    -------
    A dictionary with keys `callback` and `callback_state`.

    Examples
    --------
    >>> run_mcmc(key, state, 1000, **make_default_callback(dot_every=None))
    """

    def period(every):
        return None if every is None else jnp.int32(every)

    return dict(
        callback=print_callback,
        callback_state=PrintCallbackState(period(dot_every), period(report_every)),
    )


class PrintCallbackState(Module):
    """The printing periods of `print_callback`, `None` if disabled."""

    dot_every: Int32[Array, ''] | None
    report_every: Int32[Array, ''] | None


def print_callback(
    *,
    state: State,
    burnin: Bool[Array, ''],
    i_total: Int32[Array, ''],
    n_burn: Int32[Array, ''],
    n_save: Int32[Array, ''],
    n_skip: Int32[Array, ''],
    callback_state: PrintCallbackState,
    **_,
) -> None:
    """Print progress, see `make_default_callback`."""
    dot_every = callback_state.dot_every
    report_every = callback_state.report_every

    def due(every):
        return (i_total + 1) % every == 0

    if dot_every is not None:
        lax.cond(due(dot_every), lambda: debug.callback(_print_dot), lambda: None)

    if report_every is not None:
        # sum the counters over the chains, if any
        counts = state.counts
        report = dict(
            newline=dot_every is not None,
            burnin=burnin,
            iteration=i_total + 1,
            n_iters=n_burn + n_skip * n_save,
            move_prop=counts.move_prop.reshape(-1, 2).sum(axis=0),
            move_acc=counts.move_acc.reshape(-1, 2).sum(axis=0),
            lamda_prop=jnp.sum(counts.lamda_prop),
            lamda_acc=jnp.sum(counts.lamda_acc),
            num_included=jnp.mean(
                jnp.sum(state.bandwidths.included, axis=-1, dtype=float)
            ),
            num_exposures=jnp.int32(state.M),
        )
        lax.cond(
            due(report_every),
            lambda: debug.callback(_print_report, **report),
            lambda: None,
        )


def _print_dot() -> None:
    # print because logging can't continue a line
    print('.', end='', flush=True)  # noqa: T201


def _rate(acc: int, prop: int) -> str:
    return f'{acc / prop:.0%}' if prop else 'n/d'


def _print_report(**report: Array) -> None:
    """Print a line of progress."""
    # bring everything to numpy first, operating on jax arrays in the callback
    # thread may deadlock with the main thread
    r = {k: numpy.asarray(v) for k, v in report.items()}
    move_prop, move_acc = r['move_prop'], r['move_acc']
    line = (
        f'It {r["iteration"].item()}/{r["n_iters"].item()} '
        f'move1 A={_rate(move_acc[0], move_prop[0])}, '
        f'move2 A={_rate(move_acc[1], move_prop[1])}, '
        f'lamda A={_rate(r["lamda_acc"].item(), r["lamda_prop"].item())}, '
        f'included={r["num_included"].item():.3g}/{r["num_exposures"].item()}'
    )
    if r['burnin']:
        line += ' (burnin)'
    if r['newline']:
        line = '\n' + line
    print(line)  # noqa: T201
