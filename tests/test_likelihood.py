"""Tests for the interval-censored likelihood engine."""

from __future__ import annotations

import math

import numpy as np
import numpy.testing as npt
import pandas as pd
import pytest
from scipy import integrate, stats

from oncomsm.domain.errors import MalformedVisitData, NumericalInstability
from oncomsm.domain.models import GroupParameters
from oncomsm.engine.likelihood import (
    GroupData,
    gauss_legendre,
    graded_rule,
    group_log_likelihood,
    log_lik_censored_response,
    log_lik_censored_stable,
    log_lik_direct_progression,
    log_lik_response_progression,
    log_likelihood,
    subject_log_likelihood,
)
from oncomsm.engine.mstate import visits_to_mstate


def _weibulls(params: GroupParameters):
    """Frozen scipy distributions of the three transitions."""
    return [
        stats.weibull_min(c=k, scale=s) for k, s in zip(params.shape, params.scale)
    ]


def _arr(*values: float) -> np.ndarray:
    return np.array(values, dtype=np.float64)


# =====================================================================
# Quadrature
# =====================================================================


class TestGaussLegendre:
    """Quadrature rule on the unit interval."""

    def test_weights_sum_to_one(self):
        nodes, log_w = gauss_legendre(16)
        assert np.all((nodes > 0.0) & (nodes < 1.0))
        npt.assert_allclose(np.exp(log_w).sum(), 1.0, rtol=1e-12)

    def test_integrates_polynomial(self):
        nodes, log_w = gauss_legendre(8)
        npt.assert_allclose(np.sum(np.exp(log_w) * nodes**5), 1.0 / 6.0, rtol=1e-12)

    def test_invalid_order(self):
        with pytest.raises(ValueError, match="positive"):
            gauss_legendre(0)

    def test_graded_weights_sum_to_one(self):
        nodes, log_w = graded_rule(32)
        assert np.all(np.diff(nodes) > 0.0)
        assert nodes[0] > 0.0 and nodes[-1] < 1.0
        npt.assert_allclose(np.exp(log_w).sum(), 1.0, rtol=1e-10)

    @pytest.mark.parametrize("a", [0.3, 0.5, 2.0])
    def test_graded_endpoint_cusp(self, a):
        nodes, log_w = graded_rule(32)
        npt.assert_allclose(np.sum(np.exp(log_w) * (1.0 - nodes)**a), 1.0 / (1.0 + a), rtol=1e-8)
        npt.assert_allclose(np.sum(np.exp(log_w) * nodes**a), 1.0 / (1.0 + a), rtol=1e-8)


# =====================================================================
# Per-pattern contributions
# =====================================================================


class TestPatternContributions:
    """Closed forms and quadrature against scipy references."""

    def test_censored_stable_mixture_law(self, group_params):
        w1, w2, _ = _weibulls(group_params)
        c = _arr(0.5, 2.0, 7.0)
        expected = np.log(
            group_params.p * w1.sf(c) + (1 - group_params.p) * w2.sf(c)
        )
        npt.assert_allclose(log_lik_censored_stable(group_params, c), expected, rtol=1e-12)

    def test_censored_stable_at_zero(self, group_params):
        npt.assert_allclose(log_lik_censored_stable(group_params, _arr(0.0)), [0.0], atol=1e-12)

    def test_direct_progression_interval(self, group_params):
        _, w2, _ = _weibulls(group_params)
        lo, hi = _arr(0.0, 1.0, 3.0), _arr(2.0, 1.5, 9.0)
        expected = np.log((1 - group_params.p) * (w2.cdf(hi) - w2.cdf(lo)))
        npt.assert_allclose(
            log_lik_direct_progression(group_params, lo, hi), expected, rtol=1e-10,
        )

    def test_direct_progression_exact(self, group_params):
        _, w2, _ = _weibulls(group_params)
        expected = np.log(1 - group_params.p) + w2.logpdf(2.5)
        npt.assert_allclose(
            log_lik_direct_progression(group_params, _arr(2.5), _arr(2.5)), [expected], rtol=1e-10,
        )

    def test_censored_response_matches_quad(self, group_params):
        w1, _, w3 = _weibulls(group_params)
        r_min, r_max, c = 1.0, 3.0, 5.0
        ref, _ = integrate.quad(lambda u: w1.pdf(u) * w3.sf(c - u), r_min, r_max, epsabs=0, epsrel=1e-12)
        got = log_lik_censored_response(group_params, _arr(r_min), _arr(r_max), _arr(c))
        npt.assert_allclose(got, [np.log(group_params.p * ref)], rtol=1e-6)

    def test_response_progression_matches_quad(self, group_params):
        w1, _, w3 = _weibulls(group_params)
        r_min, r_max, p_min, p_max = 0.0, 2.0, 2.0, 5.0
        ref, _ = integrate.quad(
            lambda u: w1.pdf(u) * (w3.cdf(p_max - u) - w3.cdf(p_min - u)),
            r_min, r_max, epsabs=0, epsrel=1e-12,
        )
        got = log_lik_response_progression(
            group_params, _arr(r_min), _arr(r_max), _arr(p_min), _arr(p_max),
        )
        npt.assert_allclose(got, [np.log(group_params.p * ref)], rtol=1e-6)

    @pytest.mark.parametrize("shape_3", [0.3, 0.5])
    @pytest.mark.parametrize("r_max, p_max", [(8.0, 16.0), (2.0, 3.0), (1.0, 6.0)])
    def test_progression_bracket_starts_at_response_visit(self, shape_3, r_max, p_max):
        params = GroupParameters(p=0.4, median=(3.0, 4.0, 6.0), shape=(1.2, 1.0, shape_3))
        w1, _, w3 = _weibulls(params)
        ref, _ = integrate.quad(
            lambda u: w1.pdf(u) * (w3.cdf(p_max - u) - w3.cdf(r_max - u)),
            0.0, r_max, epsabs=0, epsrel=1e-10, limit=200,
        )
        got = log_lik_response_progression(
            params, _arr(0.0), _arr(r_max), _arr(r_max), _arr(p_max),
        )
        npt.assert_allclose(got, [np.log(0.4 * ref)], rtol=1e-6)

    @pytest.mark.parametrize("shape_3", [0.3, 0.5])
    def test_follow_up_ends_at_response_visit(self, shape_3):
        params = GroupParameters(p=0.4, median=(3.0, 4.0, 6.0), shape=(1.2, 1.0, shape_3))
        w1, _, w3 = _weibulls(params)
        ref, _ = integrate.quad(
            lambda u: w1.pdf(u) * w3.sf(4.0 - u), 2.0, 4.0, epsabs=0, epsrel=1e-10, limit=200,
        )
        got = log_lik_censored_response(params, _arr(2.0), _arr(4.0), _arr(4.0))
        npt.assert_allclose(got, [np.log(0.4 * ref)], rtol=1e-6)

    def test_singular_response_density(self):
        params = GroupParameters(p=0.5, median=(2.0, 4.0, 3.0), shape=(0.7, 1.0, 1.3))
        w1, _, w3 = _weibulls(params)
        ref, _ = integrate.quad(lambda u: w1.pdf(u) * w3.sf(4.0 - u), 0.0, 2.0, limit=200)
        got = log_lik_censored_response(params, _arr(0.0), _arr(2.0), _arr(4.0), order=64)
        npt.assert_allclose(got, [np.log(0.5 * ref)], rtol=1e-4)

    def test_exact_observations_collapse_to_densities(self, group_params):
        w1, _, w3 = _weibulls(group_params)
        got = log_lik_response_progression(
            group_params, _arr(2.0), _arr(2.0), _arr(5.0), _arr(5.0),
        )
        expected = np.log(group_params.p) + w1.logpdf(2.0) + w3.logpdf(3.0)
        npt.assert_allclose(got, [expected], rtol=1e-10)

    def test_narrow_interval_approaches_density(self, group_params):
        w1, _, w3 = _weibulls(group_params)
        eps = 1e-6
        got = log_lik_censored_response(
            group_params, _arr(2.0), _arr(2.0 + eps), _arr(6.0),
        )
        expected = np.log(group_params.p * eps) + w1.logpdf(2.0) + w3.logsf(4.0)
        npt.assert_allclose(got, [expected], rtol=1e-5)

    def test_exact_response_interval_progression(self, group_params):
        w1, _, w3 = _weibulls(group_params)
        got = log_lik_response_progression(
            group_params, _arr(1.5), _arr(1.5), _arr(3.0), _arr(4.0),
        )
        expected = (
            np.log(group_params.p) + w1.logpdf(1.5)
            + np.log(w3.cdf(2.5) - w3.cdf(1.5))
        )
        npt.assert_allclose(got, [expected], rtol=1e-10)


# =====================================================================
# Table-level evaluation
# =====================================================================


class TestLogLikelihood:
    """Subject contributions, additivity, and failure modes."""

    def test_additivity(self, model, visits, group_params):
        mstate = visits_to_mstate(visits, model)
        params = {"A": group_params, "B": group_params.replace(p=0.6)}
        per_subject = subject_log_likelihood(mstate, params)
        assert per_subject.shape == (5,)
        assert np.all(np.isfinite(per_subject))
        total = log_likelihood(mstate, params)
        npt.assert_allclose(total, per_subject.sum(), rtol=1e-12)
        split = log_likelihood(mstate.iloc[:2], params) + log_likelihood(mstate.iloc[2:], params)
        npt.assert_allclose(total, split, rtol=1e-12)

    def test_row_order_irrelevant(self, model, visits, group_params):
        mstate = visits_to_mstate(visits, model)
        shuffled = mstate.sample(frac=1.0, random_state=3).reset_index(drop=True)
        npt.assert_allclose(
            log_likelihood(shuffled, group_params), log_likelihood(mstate, group_params), rtol=1e-12,
        )

    def test_group_data_matches_table(self, model, visits, group_params):
        mstate = visits_to_mstate(visits, model)
        data = GroupData.from_mstate(mstate, "A")
        assert data.n_subjects == 3
        expected = log_likelihood(mstate[mstate["group_id"] == "A"], group_params)
        npt.assert_allclose(group_log_likelihood(data, group_params), expected, rtol=1e-12)

    def test_non_finite_returns_minus_inf(self, model, visits):
        mstate = visits_to_mstate(visits, model)
        certain_responder = GroupParameters(p=1.0)
        assert log_likelihood(mstate, certain_responder) == -math.inf
        data = GroupData.from_mstate(mstate, "B")
        assert group_log_likelihood(data, certain_responder) == -math.inf

    def test_strict_raises(self, model, visits):
        mstate = visits_to_mstate(visits, model)
        with pytest.raises(NumericalInstability, match="s4"):
            subject_log_likelihood(mstate, GroupParameters(p=1.0), strict=True)
        with pytest.raises(ArithmeticError):
            log_likelihood(mstate, GroupParameters(p=1.0), strict=True)

    def test_missing_columns(self, group_params):
        with pytest.raises(MalformedVisitData, match="lacks columns"):
            log_likelihood(pd.DataFrame({"subject_id": ["x"]}), group_params)

    def test_higher_order_agrees(self, model, visits, group_params):
        mstate = visits_to_mstate(visits, model)
        npt.assert_allclose(
            log_likelihood(mstate, group_params, order=16),
            log_likelihood(mstate, group_params, order=64),
            rtol=1e-6,
        )
