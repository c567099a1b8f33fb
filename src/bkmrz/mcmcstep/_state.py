# bkmrz/src/bkmrz/mcmcstep/_state.py
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

"""Module defining the BKMR MCMC state and initialization."""

from dataclasses import replace
from enum import Enum, IntEnum
from typing import Any, Literal

import jax
from equinox import Module, field
from jax import numpy as jnp
from jaxtyping import Array, Bool, Float, Int32, Real

from bkmrz import kernel


class Family(str, Enum):
    """Indicator of the outcome distribution."""

    continuous = 'continuous'
    binary = 'binary'


class Stage(IntEnum):
    """The named stages of an MCMC iteration, in execution order.

    The value is the code stored in `State.error` when the stage fails, 0 means
    no error.
    """

    latent = 1
    function = 2
    coefficients = 3
    selection = 4
    hyperparameters = 5


class NumericalError(FloatingPointError):
    """A fatal numerical failure during the MCMC.

    Parameters
    ----------
    stage
        The stage that failed.
    iteration
        The 0-based index of the iteration where the failure happened.
    chain
        The index of the failing chain, `None` if running a single chain.
    """

    def __init__(self, stage: Stage, iteration: int, chain: int | None = None):
        self.stage = stage
        self.iteration = iteration
        self.chain = chain
        where = '' if chain is None else f' of chain {chain}'
        super().__init__(
            f'numerical failure in stage {stage.name!r} at iteration {iteration}{where}'
        )


RPrior = Literal['gamma', 'unif', 'invunif']


class Bandwidths(Module):
    """
    Per-exposure kernel bandwidths with their inclusion indicators.

    Parameters
    ----------
    r
        The bandwidths. The value of an excluded dimension is not used.
    included
        Whether each exposure enters the kernel.
    """

    r: Float[Array, ' M']
    included: Bool[Array, ' M']

    def effective(self) -> Float[Array, ' M']:
        """The bandwidths with excluded dimensions set to zero."""
        return jnp.where(self.included, self.r, 0)


class Config(Module):
    """
    Priors and proposal tuning of the MCMC.

    Parameters
    ----------
    r_jump
        Standard deviation of the random walk on included bandwidths.
    r_jump2
    r_muprop
        Standard deviation and mean of the gamma proposal for the bandwidth of
        a dimension entering the model.
    r_prior
        The prior on included bandwidths.
    mu_r
    sigma_r
        Mean and standard deviation of the gamma prior on included bandwidths.
    r_a
    r_b
        The interval of the uniform prior on ``r`` (``unif``) or on ``1 / r``
        (``invunif``).
    a_p0
    b_p0
        Parameters of the beta prior on the inclusion probability.
    lamda_jump
        Standard deviation of the gamma proposal on `lamda`. The proposal is
        centered on the current `lamda`, so its shape is ``(lamda /
        lamda_jump)**2``: if `lamda_jump` is much larger than the typical
        `lamda`, most proposals round to 0 and are rejected, and `lamda` stops
        moving. Choose it on the scale of the posterior of `lamda`.
    mu_lamda
    sigma_lamda
        Mean and standard deviation of the gamma prior on `lamda`.
    a_sigsq
    b_sigsq
        Shape and scale of the inverse gamma prior on `sigma2`.
    beta_prior_prec
    beta_prior_mean
        Precision matrix and mean of the normal prior on the coefficients. A
        zero precision means a flat prior.
    update_lamda
    update_sigma2
        Whether `lamda` and `sigma2` are sampled or kept at their initial value.
    max_jitter_tries
        The number of jittered Cholesky decompositions to attempt before
        declaring failure.
    """

    r_jump: Float[Array, ' M']
    r_jump2: Float[Array, '']
    r_muprop: Float[Array, '']
    mu_r: Float[Array, '']
    sigma_r: Float[Array, '']
    r_a: Float[Array, '']
    r_b: Float[Array, '']
    a_p0: Float[Array, '']
    b_p0: Float[Array, '']
    lamda_jump: Float[Array, '']
    mu_lamda: Float[Array, '']
    sigma_lamda: Float[Array, '']
    a_sigsq: Float[Array, '']
    b_sigsq: Float[Array, '']
    beta_prior_prec: Float[Array, 'p p']
    beta_prior_mean: Float[Array, ' p']
    r_prior: RPrior = field(static=True)
    update_lamda: bool = field(static=True)
    update_sigma2: bool = field(static=True)
    max_jitter_tries: int = field(static=True)


class Counts(Module):
    """
    Proposal and acceptance counts of the last iteration.

    Parameters
    ----------
    move_prop
    move_acc
        The number of proposed and accepted bandwidth moves, indexed by move
        type (0 for the random walk, 1 for the inclusion swap).
    lamda_prop
    lamda_acc
        The number of proposed and accepted moves on `lamda`.
    """

    move_prop: Int32[Array, ' 2']
    move_acc: Int32[Array, ' 2']
    lamda_prop: Int32[Array, '']
    lamda_acc: Int32[Array, '']

    @classmethod
    def zeros(cls) -> 'Counts':
        """Make counters with everything set to zero."""
        return cls(
            move_prop=jnp.zeros(2, jnp.int32),
            move_acc=jnp.zeros(2, jnp.int32),
            lamda_prop=jnp.zeros((), jnp.int32),
            lamda_acc=jnp.zeros((), jnp.int32),
        )


class State(Module):
    """
    Represents the MCMC state of BKMR.

    Parameters
    ----------
    y
        The outcome, boolean for binary regression.
    X
        The covariates. May have zero columns.
    sqdist
        The per-exposure squared distances between observations.
    dist
        The squared distance weighted by the effective bandwidths, kept
        consistent with `bandwidths`.
    z
        The latent continuous outcome of binary regression, `None` otherwise.
    h
        The kernel machine function at the observed exposures.
    beta
        The covariate coefficients.
    sigma2
        The error variance, fixed to 1 in binary regression.
    lamda
        The variance of `h` relative to `sigma2`, i.e., the prior of `h` is
        ``N(0, lamda * sigma2 * K)``.
    bandwidths
        The bandwidths and inclusion indicators.
    config
        The prior and proposal parameters.
    counts
        The acceptance counters of the last iteration.
    error
        The code of the first stage that failed, 0 if none, see `Stage`.
    family
        The outcome type.
    varsel
        Whether inclusion indicators are sampled.
    num_chains
        The number of independent chains, `None` for a single chain without
        chain axis.
    """

    y: Float[Array, ' n'] | Bool[Array, ' n']
    X: Float[Array, 'n p']
    sqdist: Float[Array, 'M n n']
    dist: Float[Array, '*chains n n']
    z: Float[Array, '*chains n'] | None
    h: Float[Array, '*chains n']
    beta: Float[Array, '*chains p']
    sigma2: Float[Array, '*chains']
    lamda: Float[Array, '*chains']
    bandwidths: Bandwidths
    config: Config
    counts: Counts
    error: Int32[Array, '*chains']
    family: Family = field(static=True)
    varsel: bool = field(static=True)
    num_chains: int | None = field(static=True)

    @property
    def target(self) -> Float[Array, '*chains n']:
        """The continuous outcome modeled as ``h + X beta + noise``."""
        return self.y if self.z is None else self.z

    @property
    def n(self) -> int:
        """The number of observations."""
        return self.y.shape[0]

    @property
    def M(self) -> int:  # noqa: N802
        """The number of exposures."""
        return self.sqdist.shape[0]

    @property
    def p(self) -> int:
        """The number of covariates."""
        return self.X.shape[1]


def chain_axes(state: State) -> State:
    """Make a `vmap` axes specification for a multichain state.

    The data and the configuration are shared across chains, everything else
    has the chain axis first.
    """
    axes = jax.tree.map(lambda _: 0, state)
    return replace(axes, y=None, X=None, sqdist=None, config=None)


def init(
    *,
    y: Real[Any, ' n'] | Bool[Any, ' n'],
    Z: Real[Any, 'n M'],
    X: Real[Any, 'n p'] | None = None,
    family: Family | str | None = None,
    varsel: bool = False,
    r: float | Real[Any, ' M'] = 1.0,
    included: bool | Bool[Any, ' M'] = True,
    lamda: float | Real[Any, ''] = 10.0,
    sigma2: float | Real[Any, ''] = 1.0,
    beta: Real[Any, ' p'] | None = None,
    h: Real[Any, ' n'] | None = None,
    r_jump: float | Real[Any, ' M'] = 0.1,
    r_jump2: float = 0.1,
    r_muprop: float = 1.0,
    r_prior: RPrior = 'gamma',
    mu_r: float = 5.0,
    sigma_r: float = 5.0,
    r_a: float = 0.0,
    r_b: float = 100.0,
    a_p0: float = 1.0,
    b_p0: float = 1.0,
    lamda_jump: float = 10.0,
    mu_lamda: float = 10.0,
    sigma_lamda: float = 10.0,
    a_sigsq: float = 0.001,
    b_sigsq: float = 0.001,
    beta_prior_prec: float | Real[Any, 'p p'] = 0.0,
    beta_prior_mean: float | Real[Any, ' p'] = 0.0,
    update_lamda: bool = True,
    update_sigma2: bool = True,
    max_jitter_tries: int = 5,
    num_chains: int | None = None,
) -> State:
    """
    Make a BKMR posterior sampling MCMC initial state.

    Parameters
    ----------
    y
        The outcome. If the data type is `bool`, the model is probit regression.
    Z
        The exposures, with observations along the first axis.
    X
        The covariates, with observations along the first axis. If not
        specified, there are no covariates.
    family
        The outcome type. If not specified, it's inferred from the dtype of `y`.
    varsel
        Whether to sample the inclusion of each exposure.
    r
    included
        The initial bandwidths and inclusion indicators, broadcast to the
        number of exposures. Without variable selection all exposures are
        always included, regardless of `included`.
    lamda
    sigma2
        The initial kernel variance ratio and error variance. `sigma2` is
        fixed to 1 in binary regression.
    beta
        The initial coefficients. If not specified, least squares estimates
        (continuous) or zeros (binary).
    h
        The initial kernel function values. Zero if not specified.
    r_jump
    r_jump2
    r_muprop
    r_prior
    mu_r
    sigma_r
    r_a
    r_b
    a_p0
    b_p0
    lamda_jump
    mu_lamda
    sigma_lamda
    a_sigsq
    b_sigsq
    beta_prior_prec
    beta_prior_mean
    update_lamda
    update_sigma2
    max_jitter_tries
        See `Config`. `beta_prior_prec` may be a scalar, in which case it's
        multiplied by the identity.
    num_chains
        If specified, the state variables get a leading axis of this length
        holding independent chains, all starting from the same values.

    Returns
    -------
    An initialized BKMR MCMC state.

    Raises
    ------
    ValueError
        If `family` is not recognized, or `y` does not match it.
    """
    # copy the inputs, because `run_mcmc` donates the buffers of the state
    y = jnp.array(y)
    Z = jnp.asarray(Z, float)
    n, M = Z.shape
    X = jnp.zeros((n, 0)) if X is None else jnp.array(X, float)
    p = X.shape[1]

    family = _init_family(family, y)
    if family == Family.binary:
        y = y.astype(bool)
        sigma2 = 1.0
        update_sigma2 = False
    else:
        y = y.astype(float)

    if not varsel:
        included = True
    bandwidths = Bandwidths(
        r=jnp.broadcast_to(jnp.array(r, float), (M,)),
        included=jnp.broadcast_to(jnp.array(included, bool), (M,)),
    )

    if beta is None:
        beta = _initial_beta(y, X, family)
    h = jnp.zeros(n) if h is None else jnp.array(h, float)

    beta_prior_prec = jnp.array(beta_prior_prec, float)
    if beta_prior_prec.ndim == 0:
        beta_prior_prec = beta_prior_prec * jnp.eye(p)

    sqdist = kernel.squared_distances(Z)
    state = State(
        y=y,
        X=X,
        sqdist=sqdist,
        dist=kernel.weighted_distance(sqdist, bandwidths.effective()),
        z=(
            jnp.where(y, 1.0, -1.0).astype(float)
            if family == Family.binary
            else None
        ),
        h=h,
        beta=jnp.array(beta, float),
        sigma2=jnp.array(sigma2, float),
        lamda=jnp.array(lamda, float),
        bandwidths=bandwidths,
        config=Config(
            r_jump=jnp.broadcast_to(jnp.array(r_jump, float), (M,)),
            r_jump2=jnp.array(r_jump2, float),
            r_muprop=jnp.array(r_muprop, float),
            mu_r=jnp.array(mu_r, float),
            sigma_r=jnp.array(sigma_r, float),
            r_a=jnp.array(r_a, float),
            r_b=jnp.array(r_b, float),
            a_p0=jnp.array(a_p0, float),
            b_p0=jnp.array(b_p0, float),
            lamda_jump=jnp.array(lamda_jump, float),
            mu_lamda=jnp.array(mu_lamda, float),
            sigma_lamda=jnp.array(sigma_lamda, float),
            a_sigsq=jnp.array(a_sigsq, float),
            b_sigsq=jnp.array(b_sigsq, float),
            beta_prior_prec=beta_prior_prec,
            beta_prior_mean=jnp.broadcast_to(
                jnp.array(beta_prior_mean, float), (p,)
            ),
            r_prior=r_prior,
            update_lamda=update_lamda,
            update_sigma2=update_sigma2,
            max_jitter_tries=max_jitter_tries,
        ),
        counts=Counts.zeros(),
        error=jnp.zeros((), jnp.int32),
        family=family,
        varsel=varsel,
        num_chains=None,
    )

    if num_chains is not None:
        axes = chain_axes(state)

        def add_chain_axis(axis, x):
            if axis is None:
                return x
            return jnp.broadcast_to(x, (num_chains, *x.shape))

        state = jax.tree.map(add_chain_axis, axes, state, is_leaf=lambda x: x is None)
        state = replace(state, num_chains=num_chains)

    return state


def _init_family(family: Family | str | None, y: Array) -> Family:
    if family is None:
        return Family.binary if y.dtype == bool else Family.continuous
    try:
        return Family(family)
    except ValueError:
        msg = f'{family=} is not one of {[f.value for f in Family]}'
        raise ValueError(msg) from None


def _initial_beta(
    y: Float[Array, ' n'] | Bool[Array, ' n'], X: Float[Array, 'n p'], family: Family
) -> Float[Array, ' p']:
    """Least squares coefficients for continuous outcomes, zeros for binary."""
    if family == Family.binary or X.shape[1] == 0:
        return jnp.zeros(X.shape[1])
    beta, *_ = jnp.linalg.lstsq(X, y)
    return beta
