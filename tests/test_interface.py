# bkmrz/tests/test_interface.py
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

"""Test the fit interface `bkmrz.kmbayes` and `bkmrz.Bkmr`."""

import jax
import pytest
from jax import numpy as jnp
from numpy.testing import assert_array_equal

import bkmrz
from bkmrz.mcmcstep import Family
from tests.util import simulate, true_function


@pytest.fixture
def continuous_data(keys):
    """Continuous outcome where only the first of 4 exposures matters."""
    return simulate(keys.pop(), 100, 4, binary=False)


@pytest.fixture
def binary_data(keys):
    """Binary outcome where only the first of 4 exposures matters."""
    return simulate(keys.pop(), 200, 4, binary=True)


def fit(data, keys, **kw):
    """Fit with a fixed seed and without progress output."""
    y, Z, X = data
    kw.setdefault('iter', 20)
    kw.setdefault('printevery', None)
    return bkmrz.kmbayes(y, Z, X, seed=keys.pop(), **kw)


class TestValidation:
    """Check that wrong inputs are rejected with a clear message."""

    def test_z_rows(self, continuous_data):
        """Check the number of rows of `Z`."""
        y, Z, X = continuous_data
        with pytest.raises(ValueError, match=r'Z must have shape'):
            bkmrz.kmbayes(y, Z[:-1], X)

    def test_x_rows(self, continuous_data):
        """Check the number of rows of `X`."""
        y, Z, X = continuous_data
        with pytest.raises(ValueError, match=r'X must have shape'):
            bkmrz.kmbayes(y, Z, X[:-1])

    def test_non_finite(self, continuous_data):
        """Check that missing values are rejected."""
        y, Z, X = continuous_data
        with pytest.raises(ValueError, match=r'Z contains non-finite'):
            bkmrz.kmbayes(y, Z.at[0, 0].set(jnp.nan), X)
        with pytest.raises(ValueError, match=r'y contains non-finite'):
            bkmrz.kmbayes(y.at[3].set(jnp.inf), Z, X)

    @pytest.mark.parametrize(
        ('kw', 'match'),
        [
            (dict(iter=0), r'iter must be positive'),
            (dict(iter=10, nburn=10), r'nburn'),
            (dict(iter=10, nburn=5, keepevery=6), r'no iterations retained'),
            (dict(keepevery=0), r'keepevery'),
            (dict(printevery=0), r'printevery'),
            (dict(num_chains=0), r'num_chains'),
            (dict(max_jitter_tries=0), r'max_jitter_tries'),
        ],
    )
    def test_iterations(self, continuous_data, kw, match):
        """Check the iteration counts and the options."""
        y, Z, X = continuous_data
        with pytest.raises(ValueError, match=match):
            bkmrz.kmbayes(y, Z, X, **kw)

    def test_family(self, continuous_data, binary_data):
        """Check the family names and their compatibility with `y`."""
        y, Z, X = continuous_data
        with pytest.raises(ValueError, match=r'family'):
            bkmrz.kmbayes(y, Z, X, family='poisson')
        with pytest.raises(ValueError, match=r'only 0 and 1'):
            bkmrz.kmbayes(y, Z, X, family='binomial')
        y, Z, X = binary_data
        with pytest.raises(TypeError, match=r'numeric y'):
            bkmrz.kmbayes(y, Z, X, family='gaussian')

    def test_unknown_keys(self, continuous_data):
        """Check that typos in the option dictionaries are caught."""
        y, Z, X = continuous_data
        with pytest.raises(ValueError, match=r'control_params.*r_jmp'):
            bkmrz.kmbayes(y, Z, X, control_params=dict(r_jmp=0.2))
        with pytest.raises(ValueError, match=r'starting_values.*lambda'):
            bkmrz.kmbayes(y, Z, X, starting_values=dict(lambda_=1))

    def test_control_params_values(self, continuous_data):
        """Check the values of the control parameters."""
        y, Z, X = continuous_data
        with pytest.raises(ValueError, match=r'r_prior'):
            bkmrz.kmbayes(y, Z, X, control_params=dict(r_prior='lognormal'))
        with pytest.raises(ValueError, match=r'r_jump'):
            bkmrz.kmbayes(y, Z, X, control_params=dict(r_jump=[0.1, 0.2]))
        with pytest.raises(ValueError, match=r'r_jump2 must be positive'):
            bkmrz.kmbayes(y, Z, X, control_params=dict(r_jump2=0))
        with pytest.raises(ValueError, match=r'control_params r_jump must be positive'):
            bkmrz.kmbayes(y, Z, X, control_params=dict(r_jump=-0.1))

    @pytest.mark.parametrize(
        ('name', 'value'),
        [
            ('beta_prior_prec', jnp.eye(3)),
            ('beta_prior_prec', jnp.ones(1)),
            ('beta_prior_mean', jnp.zeros(2)),
        ],
    )
    def test_coefficient_prior_shapes(self, continuous_data, name, value):
        """Check that the coefficient prior must match the number of covariates."""
        y, Z, X = continuous_data
        assert X.shape[1] == 1
        with pytest.raises(ValueError, match=rf'control_params {name} must have shape'):
            bkmrz.kmbayes(y, Z, X, control_params={name: value})

    def test_starting_values_shapes(self, continuous_data):
        """Check the shapes of the starting values."""
        y, Z, X = continuous_data
        with pytest.raises(ValueError, match=r'starting_values h'):
            bkmrz.kmbayes(y, Z, X, starting_values=dict(h=jnp.zeros(3)))
        with pytest.raises(ValueError, match=r'starting_values beta'):
            bkmrz.kmbayes(y, Z, X, starting_values=dict(beta=jnp.zeros(2)))

    def test_starting_bandwidths_positive(self, continuous_data):
        """Check that included exposures must start with a positive bandwidth."""
        y, Z, X = continuous_data
        r = jnp.array([1.0, 0.0, 1.0, 1.0])
        with pytest.raises(ValueError, match=r'starting_values r must be positive'):
            bkmrz.kmbayes(y, Z, X, starting_values=dict(r=r))
        with pytest.raises(ValueError, match=r'starting_values r must be positive'):
            bkmrz.kmbayes(
                y,
                Z,
                X,
                varsel=True,
                starting_values=dict(r=-1.0, included=[True, False, False, False]),
            )

    def test_excluded_bandwidths_unchecked(self, continuous_data, keys):
        """Check that an excluded exposure can start with any bandwidth."""
        r = jnp.array([1.0, 0.0, 1.0, 1.0])
        included = jnp.array([True, False, True, True])
        bkmr = fit(
            continuous_data,
            keys,
            varsel=True,
            starting_values=dict(r=r, included=included),
        )
        assert bkmr.ndpost == 10

    def test_new_exposures(self, continuous_data, keys):
        """Check the shape of the exposures passed to prediction methods."""
        bkmr = fit(continuous_data, keys)
        with pytest.raises(ValueError, match=r'Znew'):
            bkmr.postmean_hnew(jnp.zeros((5, 3)))
        with pytest.raises(ValueError, match=r'Xnew'):
            bkmr.sample_response(keys.pop(), jnp.zeros((5, 4)), jnp.zeros(2))


class TestFit:
    """Check the fitted object."""

    def test_shapes(self, continuous_data, keys):
        """Check the shapes of the posterior draws."""
        bkmr = fit(continuous_data, keys, iter=30, nburn=10, keepevery=2)
        assert bkmr.ndpost == 10
        assert bkmr.family == Family.continuous
        assert bkmr.h.shape == (10, 100)
        assert bkmr.beta.shape == (10, 1)
        assert bkmr.r.shape == (10, 4)
        assert bkmr.included.shape == (10, 4)
        assert bkmr.lamda.shape == (10,)
        assert bkmr.sigma2.shape == (10,)
        assert bkmr.pips.shape == (4,)

    def test_nburn_rounding(self, continuous_data, keys):
        """Check that the retained iterations are a multiple of `keepevery`."""
        bkmr = fit(continuous_data, keys, iter=21, nburn=4, keepevery=5)
        assert bkmr.ndpost == 3

    def test_no_covariates(self, continuous_data, keys):
        """Check a fit without `X`."""
        y, Z, _ = continuous_data
        bkmr = bkmrz.kmbayes(y, Z, iter=10, printevery=None, seed=keys.pop())
        assert bkmr.beta.shape == (5, 0)
        mean, se = bkmr.postmean_hnew(Z[:7])
        assert mean.shape == se.shape == (7,)

    def test_without_varsel_all_included(self, continuous_data, keys):
        """Check that without selection every exposure is always in."""
        bkmr = fit(continuous_data, keys)
        assert_array_equal(bkmr.pips, 1)
        assert jnp.all(bkmr.r > 0)
        assert jnp.isnan(bkmr.acceptance_rates['move2'])

    def test_starting_values(self, continuous_data, keys):
        """Check that fixed hyperparameters keep their starting value."""
        bkmr = fit(
            continuous_data,
            keys,
            starting_values=dict(lamda=2.5, sigma2=0.3),
            control_params=dict(update_lamda=False, update_sigma2=False),
        )
        assert_array_equal(bkmr.lamda, 2.5)
        assert_array_equal(bkmr.sigma2, 0.3)
        assert jnp.isnan(bkmr.acceptance_rates['lamda'])

    def test_seed(self, continuous_data):
        """Check that the same integer seed gives the same draws."""
        y, Z, X = continuous_data
        bkmr1 = bkmrz.kmbayes(y, Z, X, iter=10, printevery=None, seed=42)
        bkmr2 = bkmrz.kmbayes(y, Z, X, iter=10, printevery=None, seed=42)
        assert_array_equal(bkmr1.h, bkmr2.h)
        assert_array_equal(bkmr1.r, bkmr2.r)

    def test_chains(self, continuous_data, keys):
        """Check that chains are concatenated."""
        bkmr = fit(continuous_data, keys, iter=20, num_chains=3, varsel=True)
        assert bkmr.ndpost == 30
        assert bkmr.h.shape == (30, 100)
        assert bkmr.included.shape == (30, 4)

    def test_summary(self, continuous_data, keys):
        """Check the layout of the summary."""
        bkmr = fit(continuous_data, keys, varsel=True)
        summary = bkmr.summary()
        assert set(summary) == {'beta', 'sigma2', 'lamda', 'r', 'pip'}
        assert set(summary['r']) == {'mean', 'sd', 'q0.025', 'q0.5', 'q0.975'}
        assert summary['r']['mean'].shape == (4,)
        assert summary['beta']['q0.5'].shape == (1,)
        assert set(summary['pip']) == {'mean'}

    def test_summary_binary(self, binary_data, keys):
        """Check that the summary of a probit fit has no error variance."""
        bkmr = fit(binary_data, keys)
        assert bkmr.family == Family.binary
        assert 'sigma2' not in bkmr.summary()
        assert_array_equal(bkmr.sigma2, 1)

    def test_binary_from_integers(self, binary_data, keys):
        """Check that a 0/1 outcome is accepted with family='binomial'."""
        y, Z, X = binary_data
        bkmr = bkmrz.kmbayes(
            y.astype(int), Z, X, family='binomial', iter=10, printevery=None
        )
        assert bkmr.family == Family.binary

    def test_stop(self, continuous_data, keys):
        """Check that an interrupted fit keeps the draws done so far."""
        bkmr = fit(continuous_data, keys, iter=40, printevery=5, stop=lambda: True)
        assert bkmr.ndpost == 0
        bkmr = fit(
            continuous_data, keys, iter=40, nburn=0, printevery=5, stop=lambda: True
        )
        assert bkmr.ndpost == 5

    def test_progress_report(self, continuous_data, keys, capsys):
        """Check that `printevery` prints progress reports."""
        fit(continuous_data, keys, iter=10, printevery=5)
        jax.effects_barrier()
        out = capsys.readouterr().out
        assert 'It 5/10' in out
        assert '(burnin)' in out
        assert 'It 10/10' in out


class TestPrediction:
    """Check prediction methods."""

    def test_sample_response_continuous(self, continuous_data, keys):
        """Check the shape and finiteness of continuous predictive draws."""
        _, Z, _ = continuous_data
        bkmr = fit(continuous_data, keys)
        draws = bkmr.sample_response(keys.pop(), Z[:6], jnp.ones((6, 1)))
        assert draws.shape == (10, 6)
        assert jnp.all(jnp.isfinite(draws))

    def test_sample_response_binary(self, binary_data, keys):
        """Check that binary predictions are probabilities."""
        _, Z, _ = binary_data
        bkmr = fit(binary_data, keys)
        probs = bkmr.sample_response(keys.pop(), Z[:6], jnp.zeros(1))
        assert probs.shape == (10, 6)
        assert jnp.all((probs >= 0) & (probs <= 1))

    def test_sel(self, continuous_data, keys):
        """Check the selection of draws in prediction."""
        _, Z, _ = continuous_data
        bkmr = fit(continuous_data, keys)
        draws = bkmr.sample_response(keys.pop(), Z[:3], sel=jnp.arange(4))
        assert draws.shape == (4, 3)
        mean_all, _ = bkmr.postmean_hnew(Z[:3])
        mean_mask, _ = bkmr.postmean_hnew(Z[:3], sel=jnp.ones(bkmr.ndpost, bool))
        assert_array_equal(mean_all, mean_mask)

    def test_interpolation_at_data(self, continuous_data, keys):
        """Check that at the data points the prediction reproduces `h`."""
        _, Z, _ = continuous_data
        bkmr = fit(continuous_data, keys)
        mean, se = bkmr.postmean_hnew(Z)
        assert jnp.allclose(mean, jnp.mean(bkmr.h, axis=0), atol=1e-3)
        assert jnp.all(se >= 0)


class TestPosterior:
    """Check that the posterior finds the signal in simulated data."""

    def test_continuous_selection(self, continuous_data, keys):
        """Check the inclusion probabilities and the function estimate."""
        bkmr = fit(continuous_data, keys, iter=2000, varsel=True)
        assert bkmr.pips[0] > 0.9
        assert jnp.all(bkmr.pips[1:] < 0.3)

        Znew = jnp.zeros((21, 4)).at[:, 0].set(jnp.linspace(-2, 2, 21))
        mean, se = bkmr.postmean_hnew(Znew)
        truth = true_function(Znew)
        # h absorbs the intercept, so compare up to a constant
        corr = jnp.corrcoef(mean, truth)[0, 1]
        assert corr > 0.95
        assert jnp.all(se > 0)

        rates = bkmr.acceptance_rates
        for name in ('move1', 'move2', 'lamda'):
            assert 0 < rates[name] < 1

    def test_probit_selection(self, binary_data, keys):
        """Check the inclusion probabilities in probit regression."""
        bkmr = fit(binary_data, keys, iter=2000, varsel=True)
        assert bkmr.pips[0] > 0.8
        assert jnp.all(bkmr.pips[1:] < 0.3)

        Znew = jnp.zeros((21, 4)).at[:, 0].set(jnp.linspace(-2, 2, 21))
        mean, _ = bkmr.postmean_hnew(Znew)
        corr = jnp.corrcoef(mean, true_function(Znew))[0, 1]
        assert corr > 0.8

    def test_proposal_width_changes_acceptance(self, continuous_data, keys):
        """Check that the width of the entry proposal changes the swap acceptance."""
        narrow = fit(
            continuous_data,
            keys,
            iter=300,
            varsel=True,
            control_params=dict(r_jump2=0.1),
        )
        wide = fit(
            continuous_data,
            keys,
            iter=300,
            varsel=True,
            control_params=dict(r_jump2=10.0),
        )
        rate_narrow = narrow.acceptance_rates['move2']
        rate_wide = wide.acceptance_rates['move2']
        assert rate_narrow != rate_wide
        assert 0 < rate_narrow < 1
        assert 0 < rate_wide < 1
