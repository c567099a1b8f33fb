# bkmrz/src/bkmrz/interface.py
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

"""Fit interface to the BKMR MCMC, modeled on the R package bkmr."""

from collections.abc import Callable, Mapping
from functools import cached_property
from typing import Any

from equinox import Module, field
from jax import numpy as jnp
from jax import random, tree
from jaxtyping import Array, Bool, Float, Int, Integer, Key, Real

from bkmrz import mcmcloop, mcmcstep, posterior
from bkmrz.jaxext import is_key
from bkmrz.mcmcstep import Family

FAMILY_ALIASES: dict[str, Family] = {
    'gaussian': Family.continuous,
    'continuous': Family.continuous,
    'binomial': Family.binary,
    'binary': Family.binary,
}
"""Accepted names of the `family` argument."""

CONTROL_PARAMS: frozenset[str] = frozenset(
    {
        'r_jump',
        'r_jump2',
        'r_muprop',
        'r_prior',
        'mu_r',
        'sigma_r',
        'r_a',
        'r_b',
        'a_p0',
        'b_p0',
        'lamda_jump',
        'mu_lamda',
        'sigma_lamda',
        'a_sigsq',
        'b_sigsq',
        'beta_prior_prec',
        'beta_prior_mean',
        'update_lamda',
        'update_sigma2',
    }
)
"""The keys accepted in `control_params`."""

STARTING_VALUES: frozenset[str] = frozenset(
    {'h', 'beta', 'sigma2', 'r', 'lamda', 'included'}
)
"""The keys accepted in `starting_values`."""

R_PRIORS = ('gamma', 'unif', 'invunif')


class Bkmr(Module):
    """
    Bayesian Kernel Machine Regression (BKMR).

    Regress `y` on the exposures `Z` and the covariates `X` with the model
    ``y = h(Z) + X beta + error``, where `h` has a Gaussian process prior with
    a Gaussian kernel with one bandwidth per exposure. Binary outcomes are
    modeled with a probit link. The inference is carried out with an MCMC.

    Parameters
    ----------
    y : array (n,)
        The outcome. For binary outcomes, either boolean or with values 0, 1.
    Z : array (n, M)
        The exposures.
    X : array (n, p), optional
        The covariates. If not specified, there are no covariates.
    iter : int, default 1000
        The total number of MCMC iterations, including burn-in.
    family : str, optional
        'gaussian' (alias 'continuous') or 'binomial' (alias 'binary'). If not
        specified, it's 'binomial' if `y` is boolean, 'gaussian' otherwise.
    varsel : bool, default False
        Whether to sample the inclusion of each exposure in the kernel.
    control_params : dict, optional
        Priors and proposal tuning, see `bkmrz.mcmcstep.Config`. Accepted keys:
        `r_jump` (standard deviation of the random walk on the bandwidths, move
        type 1, scalar or one per exposure), `r_jump2` and `r_muprop` (standard
        deviation and mean of the gamma proposal of the bandwidth of an exposure
        entering the model, move type 2), `r_prior` ('gamma', 'unif' or
        'invunif'), `mu_r`, `sigma_r`, `r_a`, `r_b`, `a_p0`, `b_p0`,
        `lamda_jump`, `mu_lamda`, `sigma_lamda`, `a_sigsq`, `b_sigsq`,
        `beta_prior_prec`, `beta_prior_mean`, `update_lamda`, `update_sigma2`.
        If the trace of `lamda` is stuck at a value much smaller than
        `lamda_jump`, reduce `lamda_jump` to the scale of `lamda`.
    starting_values : dict, optional
        Initial values of the MCMC. Accepted keys: `h`, `beta`, `sigma2`, `r`,
        `lamda`, `included`.
    nburn : int, optional
        The number of burn-in iterations. Default half of `iter`. Rounded such
        that the number of retained iterations is a multiple of `keepevery`.
    keepevery : int, default 1
        The thinning factor of the retained iterations.
    printevery : int or None, default 100
        The number of iterations between progress reports, `None` to disable.
    num_chains : int, optional
        The number of independent chains to run in parallel. The draws of all
        chains are concatenated, chain by chain. If not specified, one chain.
    seed : int or jax random key, default 0
        The seed of the random number generator.
    stop : callable, optional
        A function without arguments called every `printevery` iterations. If
        it returns `True`, the MCMC is interrupted, and the fit is built with
        the iterations done so far.
    max_jitter_tries : int, default 5
        The number of jittered Cholesky decompositions to attempt before
        declaring a numerical failure.

    Attributes
    ----------
    ndpost : int
        The number of retained draws.
    family : Family
        The outcome type.
    varsel : bool
        Whether variable selection was used.

    Raises
    ------
    ValueError
        If the inputs are not consistent, naming the offending argument.
    TypeError
        If the outcome type does not match `family`.
    bkmrz.mcmcstep.NumericalError
        If the MCMC fails.
    """

    _main_trace: mcmcloop.MainTrace
    _burnin_trace: mcmcloop.BurninTrace
    _Z: Float[Array, 'n M']
    family: Family = field(static=True)
    varsel: bool = field(static=True)
    ndpost: int = field(static=True)
    max_jitter_tries: int = field(static=True)

    def __init__(
        self,
        y: Real[Any, ' n'] | Bool[Any, ' n'],
        Z: Real[Any, 'n M'],
        X: Real[Any, 'n p'] | None = None,
        *,
        iter: int = 1000,  # noqa: A002, name as in bkmr
        family: str | None = None,
        varsel: bool = False,
        control_params: Mapping[str, Any] | None = None,
        starting_values: Mapping[str, Any] | None = None,
        nburn: int | None = None,
        keepevery: int = 1,
        printevery: int | None = 100,
        num_chains: int | None = None,
        seed: int | Integer[Array, ''] | Key[Array, ''] = 0,
        stop: Callable[[], bool] | None = None,
        max_jitter_tries: int = 5,
    ):
        y, Z, X = self._process_data(y, Z, X)
        family = self._process_family(family, y)
        if family == Family.binary:
            y = self._process_binary_outcome(y)
        n_burn, n_save = self._process_iterations(iter, nburn, keepevery)
        control_params = self._check_keys(
            control_params, CONTROL_PARAMS, 'control_params'
        )
        starting_values = self._check_keys(
            starting_values, STARTING_VALUES, 'starting_values'
        )
        self._check_control_params(control_params, Z.shape[1], X.shape[1])
        self._check_starting_values(starting_values, *Z.shape, X.shape[1], varsel)
        self._check_options(printevery, num_chains, max_jitter_tries)

        initial_state = mcmcstep.init(
            y=y,
            Z=Z,
            X=X,
            family=family,
            varsel=varsel,
            max_jitter_tries=max_jitter_tries,
            num_chains=num_chains,
            **starting_values,
            **control_params,
        )
        _, burnin_trace, main_trace = self._run_mcmc(
            initial_state, n_save, n_burn, keepevery, printevery, seed, stop
        )

        if num_chains is not None:
            burnin_trace = _merge_chains(burnin_trace)
            main_trace = _merge_chains(main_trace)

        self._main_trace = main_trace
        self._burnin_trace = burnin_trace
        self._Z = Z
        self.family = family
        self.varsel = varsel
        self.ndpost = main_trace.lamda.size
        self.max_jitter_tries = max_jitter_tries

    @staticmethod
    def _process_data(
        y, Z, X
    ) -> tuple[Array, Float[Array, 'n M'], Float[Array, 'n p']]:
        y = jnp.asarray(y)
        if y.ndim != 1:
            msg = f'y must be one-dimensional, got {y.shape=}'
            raise ValueError(msg)
        n = y.size

        Z = jnp.asarray(Z)
        if Z.ndim == 1:
            Z = Z[:, None]
        if Z.ndim != 2 or Z.shape[0] != n:
            msg = f'Z must have shape ({n}, M) to match y, got {Z.shape=}'
            raise ValueError(msg)
        if Z.shape[1] == 0:
            msg = 'Z must have at least one column'
            raise ValueError(msg)

        if X is None:
            X = jnp.zeros((n, 0))
        X = jnp.asarray(X)
        if X.ndim == 1:
            X = X[:, None]
        if X.ndim != 2 or X.shape[0] != n:
            msg = f'X must have shape ({n}, p) to match y, got {X.shape=}'
            raise ValueError(msg)

        for name, x in dict(y=y, Z=Z, X=X).items():
            if x.dtype != bool and not jnp.all(jnp.isfinite(x)):
                msg = f'{name} contains non-finite values'
                raise ValueError(msg)

        return y, Z.astype(float), X.astype(float)

    @staticmethod
    def _process_family(family: str | Family | None, y: Array) -> Family:
        if family is None:
            return Family.binary if y.dtype == bool else Family.continuous
        resolved = FAMILY_ALIASES.get(family)
        if resolved is None:
            msg = f'family={family!r} is not one of {sorted(FAMILY_ALIASES)}'
            raise ValueError(msg)
        if resolved == Family.continuous and y.dtype == bool:
            msg = f'family={family!r} requires a numeric y, got {y.dtype=}'
            raise TypeError(msg)
        return resolved

    @staticmethod
    def _process_binary_outcome(y: Array) -> Bool[Array, ' n']:
        if y.dtype == bool:
            return y
        if not jnp.all((y == 0) | (y == 1)):
            msg = 'y must contain only 0 and 1 for a binary outcome'
            raise ValueError(msg)
        return y.astype(bool)

    @staticmethod
    def _process_iterations(
        iter: int,  # noqa: A002
        nburn: int | None,
        keepevery: int,
    ) -> tuple[int, int]:
        """Return (n_burn, n_save)."""
        if iter < 1:
            msg = f'iter must be positive, got {iter=}'
            raise ValueError(msg)
        if keepevery < 1:
            msg = f'keepevery must be positive, got {keepevery=}'
            raise ValueError(msg)
        if nburn is None:
            nburn = iter // 2
        if not 0 <= nburn < iter:
            msg = f'nburn must be in [0, iter), got {nburn=}, {iter=}'
            raise ValueError(msg)
        n_save = (iter - nburn) // keepevery
        if n_save == 0:
            msg = f'no iterations retained with {iter=}, {nburn=}, {keepevery=}'
            raise ValueError(msg)
        return iter - keepevery * n_save, n_save

    @staticmethod
    def _check_keys(
        values: Mapping[str, Any] | None, allowed: frozenset[str], name: str
    ) -> dict[str, Any]:
        values = {} if values is None else dict(values)
        unknown = set(values) - allowed
        if unknown:
            msg = f'unknown keys in {name}: {sorted(unknown)}'
            raise ValueError(msg)
        return values

    @staticmethod
    def _check_control_params(
        control_params: dict[str, Any],
        M: int,  # noqa: N803
        p: int,
    ) -> None:
        r_prior = control_params.get('r_prior', 'gamma')
        if r_prior not in R_PRIORS:
            msg = f'control_params r_prior={r_prior!r} is not one of {R_PRIORS}'
            raise ValueError(msg)
        r_jump = jnp.asarray(control_params.get('r_jump', 0.1))
        if r_jump.shape not in ((), (M,)):
            msg = (
                f'control_params r_jump must be scalar or have length {M},'
                f' got {r_jump.shape=}'
            )
            raise ValueError(msg)
        if not jnp.all(r_jump > 0):
            msg = 'control_params r_jump must be positive'
            raise ValueError(msg)
        for name in ('r_jump2', 'r_muprop', 'lamda_jump', 'mu_r', 'sigma_r'):
            if name in control_params and not control_params[name] > 0:
                msg = f'control_params {name} must be positive'
                raise ValueError(msg)
        shapes = dict(beta_prior_prec=((), (p, p)), beta_prior_mean=((), (p,)))
        for name, allowed in shapes.items():
            if name not in control_params:
                continue
            shape = jnp.shape(control_params[name])
            if shape not in allowed:
                msg = (
                    f'control_params {name} must have shape'
                    f' {" or ".join(map(str, allowed))}, got {shape}'
                )
                raise ValueError(msg)

    @staticmethod
    def _check_starting_values(
        starting_values: dict[str, Any],
        n: int,
        M: int,  # noqa: N803
        p: int,
        varsel: bool,
    ) -> None:
        shapes = dict(
            h=((n,),),
            beta=((p,),),
            sigma2=((),),
            lamda=((),),
            r=((), (M,)),
            included=((), (M,)),
        )
        for name, value in starting_values.items():
            shape = jnp.shape(value)
            if shape not in shapes[name]:
                msg = (
                    f'starting_values {name} has shape {shape},'
                    f' expected one of {list(shapes[name])}'
                )
                raise ValueError(msg)

        # without selection all exposures are in the kernel
        included = starting_values.get('included', True) if varsel else True
        r = jnp.asarray(starting_values.get('r', 1.0))
        if not jnp.all((r > 0) | ~jnp.asarray(included, bool)):
            msg = 'starting_values r must be positive for included exposures'
            raise ValueError(msg)

    @staticmethod
    def _check_options(
        printevery: int | None, num_chains: int | None, max_jitter_tries: int
    ) -> None:
        if printevery is not None and printevery < 1:
            msg = f'printevery must be positive or None, got {printevery=}'
            raise ValueError(msg)
        if num_chains is not None and num_chains < 1:
            msg = f'num_chains must be positive or None, got {num_chains=}'
            raise ValueError(msg)
        if max_jitter_tries < 1:
            msg = f'max_jitter_tries must be positive, got {max_jitter_tries=}'
            raise ValueError(msg)

    @staticmethod
    def _run_mcmc(
        mcmc_state: mcmcstep.State,
        n_save: int,
        n_burn: int,
        keepevery: int,
        printevery: int | None,
        seed: int | Integer[Array, ''] | Key[Array, ''],
        stop: Callable[[], bool] | None,
    ) -> tuple[mcmcstep.State, mcmcloop.BurninTrace, mcmcloop.MainTrace]:
        # prepare random generator seed
        if is_key(seed):
            key = jnp.copy(seed)
        else:
            key = random.key(seed)

        kw: dict = dict(
            n_burn=n_burn, n_skip=keepevery, inner_loop_length=printevery, stop=stop
        )
        if printevery is not None:
            kw.update(
                mcmcloop.make_default_callback(dot_every=None, report_every=printevery)
            )
        return mcmcloop.run_mcmc(key, mcmc_state, n_save, **kw)

    @property
    def h(self) -> Float[Array, 'ndpost n']:
        """The kernel machine function at the observed exposures."""
        return self._main_trace.h

    @property
    def beta(self) -> Float[Array, 'ndpost p']:
        """The covariate coefficients."""
        return self._main_trace.beta

    @property
    def r(self) -> Float[Array, 'ndpost M']:
        """The kernel bandwidths, 0 when the exposure is excluded."""
        return self._main_trace.r

    @property
    def included(self) -> Bool[Array, 'ndpost M']:
        """Whether each exposure is in the kernel."""
        return self._main_trace.included

    @property
    def lamda(self) -> Float[Array, ' ndpost']:
        """The variance of `h` relative to the error variance."""
        return self._main_trace.lamda

    @property
    def sigma2(self) -> Float[Array, ' ndpost']:
        """The error variance, 1 for binary outcomes."""
        return self._main_trace.sigma2

    @cached_property
    def pips(self) -> Float[Array, ' M']:
        """The posterior inclusion probability of each exposure."""
        return jnp.mean(self.included, axis=0, dtype=float)

    @cached_property
    def acceptance_rates(self) -> dict[str, Float[Array, '']]:
        """
        The acceptance rates of the Metropolis-Hastings moves.

        The rates are computed over all iterations, including burn-in. The keys
        are 'move1' (random walk on the bandwidths), 'move2' (change of
        inclusion) and 'lamda'. A rate is NaN if no such move was proposed.
        """
        traces = self._burnin_trace, self._main_trace

        def total(name):
            return sum(jnp.sum(getattr(t, name), axis=0) for t in traces)

        move_prop = total('move_prop')
        move_acc = total('move_acc')

        def rate(acc, prop):
            return jnp.where(prop > 0, acc / jnp.maximum(prop, 1), jnp.nan)

        return dict(
            move1=rate(move_acc[0], move_prop[0]),
            move2=rate(move_acc[1], move_prop[1]),
            lamda=rate(total('lamda_acc'), total('lamda_prop')),
        )

    def summary(
        self, quantiles: tuple[float, ...] = (0.025, 0.5, 0.975)
    ) -> dict[str, dict[str, Float[Array, '*']]]:
        """
        Summarize the posterior of the parameters.

        Parameters
        ----------
        quantiles
            The posterior quantiles to compute.

        Returns
        -------
        A dictionary indexed by parameter name ('beta', 'sigma2', 'lamda', 'r',
        'pip'), of dictionaries with keys 'mean', 'sd' and one key per
        quantile, e.g., 'q0.025'. 'pip' only has the mean.
        """
        params = dict(beta=self.beta, sigma2=self.sigma2, lamda=self.lamda, r=self.r)
        if self.family == Family.binary:
            del params['sigma2']
        out = {}
        for name, draws in params.items():
            stats = dict(mean=jnp.mean(draws, axis=0), sd=jnp.std(draws, axis=0))
            q = jnp.quantile(draws, jnp.asarray(quantiles), axis=0)
            stats.update({f'q{level}': value for level, value in zip(quantiles, q)})
            out[name] = stats
        out['pip'] = dict(mean=self.pips)
        return out

    def postmean_hnew(
        self,
        Znew: Real[Any, 'm M'],  # noqa: N803
        sel: Int[Any, ' k'] | Bool[Any, ' ndpost'] | None = None,
    ) -> tuple[Float[Array, ' m'], Float[Array, ' m']]:
        """
        Compute the posterior mean and standard error of `h` at new exposures.

        Parameters
        ----------
        Znew
            The new exposures.
        sel
            Indices or boolean mask of the retained draws to use. If `None`,
            use all.

        Returns
        -------
        mean : Float[Array, ' m']
            The posterior mean of `h` at `Znew`.
        se : Float[Array, ' m']
            The posterior standard deviation of `h` at `Znew`.
        """
        Znew = self._process_new_exposures(Znew)
        return posterior.postmean_hnew(
            self._main_trace,
            self._Z,
            Znew,
            _asarray_or_none(sel),
            max_tries=self.max_jitter_tries,
        )

    def sample_response(
        self,
        key: Key[Array, ''],
        Znew: Real[Any, 'm M'],  # noqa: N803
        Xnew: Real[Any, 'm p'] | Real[Any, ' p'] | None = None,
        sel: Int[Any, ' k'] | Bool[Any, ' ndpost'] | None = None,
    ) -> Float[Array, 'ndpost m']:
        """
        Compute posterior predictive draws on the outcome scale.

        Parameters
        ----------
        key
            A jax random key.
        Znew
            The new exposures.
        Xnew
            The covariates at the new points, or a single value for all of them.
            If not specified, the covariates are set to zero.
        sel
            Indices or boolean mask of the retained draws to use. If `None`,
            use all.

        Returns
        -------
        For a binary outcome, the probability of 1 for each draw. For a
        continuous outcome, a sample of the outcome for each draw.
        """
        Znew = self._process_new_exposures(Znew)
        p = self._main_trace.beta.shape[-1]
        Xnew = jnp.zeros(p) if Xnew is None else jnp.asarray(Xnew, float)
        if Xnew.shape not in ((p,), (Znew.shape[0], p)):
            msg = (
                f'Xnew must have shape ({p},) or ({Znew.shape[0]}, {p}),'
                f' got {Xnew.shape=}'
            )
            raise ValueError(msg)
        return posterior.sample_response(
            key,
            self._main_trace,
            self._Z,
            Znew,
            Xnew,
            binary=self.family == Family.binary,
            sel=_asarray_or_none(sel),
            max_tries=self.max_jitter_tries,
        )

    def _process_new_exposures(self, Znew) -> Float[Array, 'm M']:
        Znew = jnp.asarray(Znew, float)
        M = self._Z.shape[1]
        if Znew.ndim == 1 and M == 1:
            Znew = Znew[:, None]
        if Znew.ndim != 2 or Znew.shape[1] != M:
            msg = f'Znew must have shape (m, {M}), got {Znew.shape=}'
            raise ValueError(msg)
        return Znew


def kmbayes(
    y: Real[Any, ' n'] | Bool[Any, ' n'],
    Z: Real[Any, 'n M'],  # noqa: N803
    X: Real[Any, 'n p'] | None = None,  # noqa: N803
    **kw,
) -> Bkmr:
    """
    Fit a Bayesian Kernel Machine Regression model.

    This is a shorthand for `Bkmr`, see there for the arguments.

    Returns
    -------
    The fitted model.
    """
    return Bkmr(y, Z, X, **kw)


def _merge_chains(trace: mcmcloop.BurninTrace) -> mcmcloop.BurninTrace:
    """Concatenate the chains of a trace, chain by chain."""

    def merge(x):
        x = jnp.swapaxes(x, 0, 1)
        return x.reshape(-1, *x.shape[2:])

    return tree.map(merge, trace)


def _asarray_or_none(x):
    return None if x is None else jnp.asarray(x)

