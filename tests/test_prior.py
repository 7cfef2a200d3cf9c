"""Tests for prior specification: quantile solver, validation, density, sampling."""

from __future__ import annotations

import numpy as np
import numpy.testing as npt
import pytest
from scipy import stats

from oncomsm.domain.errors import InvalidPriorSpec
from oncomsm.domain.models import GroupParameters
from oncomsm.engine.prior import (
    define_srp_prior,
    log_prior_density,
    lognormal_from_quantiles,
    lognormal_quantile,
    sample_group_prior,
)


# =====================================================================
# Quantile solver
# =====================================================================


class TestLognormalFromQuantiles:
    """Closed-form log-normal fit to 5% / 95% quantiles."""

    def test_round_trip(self):
        q05 = np.array([1.0, 2.0, 0.5])
        q95 = np.array([10.0, 36.0, 1.5])
        mu, sigma = lognormal_from_quantiles(q05, q95)
        npt.assert_allclose(lognormal_quantile(mu, sigma, 0.05), q05, rtol=1e-10)
        npt.assert_allclose(lognormal_quantile(mu, sigma, 0.95), q95, rtol=1e-10)

    def test_median_is_geometric_mean(self):
        mu, _ = lognormal_from_quantiles(2.0, 8.0)
        npt.assert_allclose(np.exp(mu), 4.0, rtol=1e-12)

    def test_prior_quantiles_reproduced(self):
        prior = define_srp_prior(median_t_q05=(1, 2, 3), median_t_q95=(10, 20, 30))
        npt.assert_allclose(
            lognormal_quantile(prior.median_mu, prior.median_sigma, 0.95),
            [10.0, 20.0, 30.0],
            rtol=1e-10,
        )


# =====================================================================
# define_srp_prior
# =====================================================================


class TestDefineSrpPrior:
    """Construction and validation of group priors."""

    def test_defaults(self):
        prior = define_srp_prior()
        assert prior.p_mean == 0.5
        assert prior.median_t_q05 == (1.0, 1.0, 1.0)
        assert prior.shape_q95 == (1.1, 1.1, 1.1)
        assert prior.n_transitions == 3

    def test_beta_parameters(self):
        prior = define_srp_prior(p_mean=0.3, p_n=10)
        assert prior.p_alpha == pytest.approx(3.0)
        assert prior.p_beta == pytest.approx(7.0)

    def test_scalar_broadcast(self):
        prior = define_srp_prior(median_t_q05=2, median_t_q95=8)
        assert prior.median_t_q05 == (2.0, 2.0, 2.0)
        assert prior.median_t_q95 == (8.0, 8.0, 8.0)

    def test_is_immutable(self):
        prior = define_srp_prior()
        with pytest.raises(AttributeError):
            prior.p_mean = 0.1  # type: ignore[misc]

    @pytest.mark.parametrize(
        "kwargs, pattern",
        [
            ({"p_mean": 0.0}, "p_mean"),
            ({"p_mean": 1.2}, "p_mean"),
            ({"p_n": 0.0}, "p_n"),
            ({"eta": 1.5}, "eta"),
            ({"recruitment_rate": 0.0}, "recruitment_rate"),
            ({"median_t_q05": (1, 1), "median_t_q95": (2, 2)}, "3 values"),
            ({"shape_q05": (-1.0, 0.9, 0.9)}, "shape_q05"),
            ({"median_t_q05": (5, 1, 1), "median_t_q95": (4, 10, 10)}, r"median_t_q05\[0\]"),
            ({"shape_q05": 1.2, "shape_q95": 1.2}, "shape_q05"),
        ],
    )
    def test_invalid(self, kwargs, pattern):
        with pytest.raises(InvalidPriorSpec, match=pattern):
            define_srp_prior(**kwargs)

    def test_invalid_prior_is_value_error(self):
        with pytest.raises(ValueError):
            define_srp_prior(p_mean=-0.1)


# =====================================================================
# Density and sampling
# =====================================================================


class TestLogPriorDensity:
    """Prior log-density on the natural scale."""

    def test_matches_scipy_without_robustification(self):
        prior = define_srp_prior(p_mean=0.3, p_n=10, eta=0.0)
        params = GroupParameters(p=0.25, median=(2.0, 3.0, 4.0), shape=(0.9, 1.0, 1.1))
        expected = stats.beta.logpdf(0.25, 3.0, 7.0)
        for i in range(3):
            expected += stats.lognorm.logpdf(
                params.median[i], s=prior.median_sigma[i], scale=np.exp(prior.median_mu[i]),
            )
            expected += stats.lognorm.logpdf(
                params.shape[i], s=prior.shape_sigma[i], scale=np.exp(prior.shape_mu[i]),
            )
        assert log_prior_density(prior, params) == pytest.approx(expected, rel=1e-10)

    def test_uniform_component_keeps_tails_finite(self):
        prior = define_srp_prior(p_mean=0.1, p_n=200, eta=0.05)
        params = GroupParameters(p=0.999)
        assert np.isfinite(log_prior_density(prior, params))

    @pytest.mark.parametrize("p", [0.0, 1.0, -0.5])
    def test_outside_support(self, p):
        prior = define_srp_prior()
        assert log_prior_density(prior, GroupParameters(p=p)) == float("-inf")

    def test_nonpositive_median(self):
        prior = define_srp_prior()
        params = GroupParameters(median=(0.0, 1.0, 1.0))
        assert log_prior_density(prior, params) == float("-inf")


class TestSampleGroupPrior:
    """Direct prior draws."""

    def test_shapes(self):
        draws = sample_group_prior(define_srp_prior(), 50, np.random.default_rng(0))
        assert draws["p"].shape == (50,)
        assert draws["median"].shape == (50, 3)
        assert draws["shape"].shape == (50, 3)

    def test_moments(self):
        prior = define_srp_prior(
            p_mean=0.3, p_n=10, eta=0.0,
            median_t_q05=(1, 2, 3), median_t_q95=(10, 20, 30),
        )
        draws = sample_group_prior(prior, 20_000, np.random.default_rng(1))
        assert draws["p"].mean() == pytest.approx(0.3, abs=0.01)
        npt.assert_allclose(
            np.quantile(draws["median"], 0.05, axis=0), [1.0, 2.0, 3.0], rtol=0.05,
        )
        npt.assert_allclose(
            np.quantile(draws["median"], 0.95, axis=0), [10.0, 20.0, 30.0], rtol=0.05,
        )

    def test_pure_uniform(self):
        prior = define_srp_prior(p_mean=0.1, p_n=100, eta=1.0)
        draws = sample_group_prior(prior, 20_000, np.random.default_rng(2))
        assert draws["p"].mean() == pytest.approx(0.5, abs=0.02)

    def test_probabilities_strictly_inside_unit_interval(self):
        prior = define_srp_prior(p_mean=0.5, p_n=0.01)
        p = sample_group_prior(prior, 5_000, np.random.default_rng(3))["p"]
        assert np.all((p > 0.0) & (p < 1.0))
