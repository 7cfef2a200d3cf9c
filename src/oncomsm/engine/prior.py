"""Prior specification for one trial arm.

Users describe their beliefs through quantiles (5% / 95%) of the median
transition times and Weibull shapes; these are converted in closed form
to log-normal hyperparameters.  The response probability follows a
robust mixture ``(1 - eta) * Beta(a, b) + eta * Uniform(0, 1)``.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Sequence

import numpy as np
from scipy import stats

from oncomsm.domain.errors import InvalidPriorSpec
from oncomsm.domain.models import N_TRANSITIONS, GroupParameters, GroupPrior

logger = logging.getLogger(__name__)

# Standard normal 95% quantile
_Z95: float = float(stats.norm.ppf(0.95))

_P_EPS = 1e-12


# ---------------------------------------------------------------------------
# Quantile -> log-normal solver
# ---------------------------------------------------------------------------

def lognormal_from_quantiles(
    q05: float | np.ndarray, q95: float | np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Solve for log-normal ``(mu, sigma)`` matching the 5% and 95% quantiles.

    ``mu = (ln q05 + ln q95) / 2`` and
    ``sigma = (ln q95 - ln q05) / (2 z)`` with ``z = Phi^-1(0.95)``.

    Parameters
    ----------
    q05, q95:
        Positive quantiles with ``q05 < q95`` (scalars or arrays).

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        Location and scale of the log-normal on the log scale.
    """
    lo = np.log(np.asarray(q05, dtype=np.float64))
    hi = np.log(np.asarray(q95, dtype=np.float64))
    return (lo + hi) / 2.0, (hi - lo) / (2.0 * _Z95)


def lognormal_quantile(mu: Any, sigma: Any, q: float) -> np.ndarray:
    """Quantile *q* of a log-normal with log-scale location/scale."""
    return np.exp(np.asarray(mu) + np.asarray(sigma) * stats.norm.ppf(q))


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _as_triple(name: str, value: float | Sequence[float]) -> tuple[float, float, float]:
    """Broadcast a scalar to one value per transition and check positivity."""
    arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if arr.size == 1:
        arr = np.repeat(arr, N_TRANSITIONS)
    if arr.ndim != 1 or arr.size != N_TRANSITIONS:
        raise InvalidPriorSpec(
            f"{name} must have {N_TRANSITIONS} values, got {arr.size}"
        )
    if not np.all(np.isfinite(arr)) or np.any(arr <= 0.0):
        raise InvalidPriorSpec(f"{name} must be positive and finite, got {arr.tolist()}")
    return tuple(float(v) for v in arr)  # type: ignore[return-value]


def _check_ordered(name: str, q05: tuple[float, ...], q95: tuple[float, ...]) -> None:
    for i, (lo, hi) in enumerate(zip(q05, q95)):
        if not lo < hi:
            raise InvalidPriorSpec(
                f"{name}_q05[{i}] must be strictly smaller than "
                f"{name}_q95[{i}] ({lo} >= {hi})"
            )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def define_srp_prior(
    p_mean: float = 0.5,
    p_n: float = 1.0,
    median_t_q05: float | Sequence[float] = (1.0, 1.0, 1.0),
    median_t_q95: float | Sequence[float] = (10.0, 10.0, 10.0),
    shape_q05: float | Sequence[float] = (0.9, 0.9, 0.9),
    shape_q95: float | Sequence[float] = (1.1, 1.1, 1.1),
    recruitment_rate: float = 1.0,
    eta: float = 0.05,
) -> GroupPrior:
    """Define the prior of one stable-response-progression group.

    Parameters
    ----------
    p_mean:
        Prior mean of the response probability, in (0, 1).
    p_n:
        Equivalent sample size of the Beta component, > 0.
    median_t_q05, median_t_q95:
        5% and 95% prior quantiles of the median time for the
        transitions stable->response, stable->progression and
        response->progression.  Scalars apply to all three.
    shape_q05, shape_q95:
        5% and 95% prior quantiles of the Weibull shape parameters.
        The default band is narrow around 1 (near-exponential).
    recruitment_rate:
        Poisson recruitment intensity (subjects per time unit), > 0.
    eta:
        Weight of the uniform robustification component, in [0, 1].

    Returns
    -------
    GroupPrior
        Frozen prior with both quantile inputs and solved hyperparameters.

    Raises
    ------
    InvalidPriorSpec
        When any constraint on the inputs is violated.
    """
    p_mean = float(p_mean)
    p_n = float(p_n)
    eta = float(eta)
    recruitment_rate = float(recruitment_rate)

    if not 0.0 < p_mean < 1.0:
        raise InvalidPriorSpec(f"p_mean must lie in (0, 1), got {p_mean}")
    if not (math.isfinite(p_n) and p_n > 0.0):
        raise InvalidPriorSpec(f"p_n must be positive, got {p_n}")
    if not 0.0 <= eta <= 1.0:
        raise InvalidPriorSpec(f"eta must lie in [0, 1], got {eta}")
    if not (math.isfinite(recruitment_rate) and recruitment_rate > 0.0):
        raise InvalidPriorSpec(
            f"recruitment_rate must be positive, got {recruitment_rate}"
        )

    m05 = _as_triple("median_t_q05", median_t_q05)
    m95 = _as_triple("median_t_q95", median_t_q95)
    s05 = _as_triple("shape_q05", shape_q05)
    s95 = _as_triple("shape_q95", shape_q95)
    _check_ordered("median_t", m05, m95)
    _check_ordered("shape", s05, s95)

    median_mu, median_sigma = lognormal_from_quantiles(m05, m95)
    shape_mu, shape_sigma = lognormal_from_quantiles(s05, s95)

    return GroupPrior(
        p_mean=p_mean,
        p_n=p_n,
        eta=eta,
        median_t_q05=m05,
        median_t_q95=m95,
        shape_q05=s05,
        shape_q95=s95,
        recruitment_rate=recruitment_rate,
        median_mu=tuple(float(v) for v in median_mu),
        median_sigma=tuple(float(v) for v in median_sigma),
        shape_mu=tuple(float(v) for v in shape_mu),
        shape_sigma=tuple(float(v) for v in shape_sigma),
    )


def log_prior_density(prior: GroupPrior, params: GroupParameters) -> float:
    """Log prior density of one group's parameters on the natural scale."""
    p = float(params.p)
    if not 0.0 < p < 1.0:
        return float("-inf")
    median = np.asarray(params.median, dtype=np.float64)
    shape = np.asarray(params.shape, dtype=np.float64)
    if np.any(median <= 0.0) or np.any(shape <= 0.0):
        return float("-inf")

    with np.errstate(divide="ignore"):
        log_beta = np.log1p(-prior.eta) + stats.beta.logpdf(
            p, prior.p_alpha, prior.p_beta,
        )
        log_unif = np.log(prior.eta)
    lp = float(np.logaddexp(log_beta, log_unif))

    log_m = np.log(median)
    log_k = np.log(shape)
    lp += float(np.sum(stats.norm.logpdf(log_m, prior.median_mu, prior.median_sigma) - log_m))
    lp += float(np.sum(stats.norm.logpdf(log_k, prior.shape_mu, prior.shape_sigma) - log_k))
    return lp


def sample_group_prior(
    prior: GroupPrior, n: int, rng: np.random.Generator,
) -> dict[str, np.ndarray]:
    """Draw *n* parameter sets directly from a group prior.

    Returns
    -------
    dict[str, np.ndarray]
        ``p`` with shape ``(n,)``; ``median`` and ``shape`` with shape
        ``(n, 3)``.
    """
    outlier = rng.random(n) < prior.eta
    p_beta = rng.beta(prior.p_alpha, prior.p_beta, size=n)
    p_unif = rng.uniform(0.0, 1.0, size=n)
    p = np.clip(np.where(outlier, p_unif, p_beta), _P_EPS, 1.0 - _P_EPS)
    median = np.exp(rng.normal(prior.median_mu, prior.median_sigma, size=(n, N_TRANSITIONS)))
    shape = np.exp(rng.normal(prior.shape_mu, prior.shape_sigma, size=(n, N_TRANSITIONS)))
    return {"p": p, "median": median, "shape": shape}
