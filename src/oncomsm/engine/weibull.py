"""Weibull transition-time family.

All functions are vectorised over numpy arrays and broadcast their
arguments.  Transition times are parameterised by median and shape; the
scale is implied by ``median = scale * ln(2) ** (1 / shape)``.
"""

from __future__ import annotations

import numpy as np

_LN2 = np.log(2.0)


def weibull_scale(median: np.ndarray | float, shape: np.ndarray | float) -> np.ndarray:
    """Scale parameter implied by a median and a shape."""
    return np.asarray(median, dtype=np.float64) / _LN2 ** (1.0 / np.asarray(shape, dtype=np.float64))


def cum_hazard(t: np.ndarray | float, scale: np.ndarray | float, shape: np.ndarray | float) -> np.ndarray:
    """Cumulative hazard ``H(t) = (t / scale) ** shape`` (0 for t <= 0)."""
    t = np.maximum(np.asarray(t, dtype=np.float64), 0.0)
    with np.errstate(over="ignore", divide="ignore"):
        return (t / scale) ** shape


def log_pdf(t: np.ndarray | float, scale: np.ndarray | float, shape: np.ndarray | float) -> np.ndarray:
    """Log density; ``-inf`` for negative times."""
    t = np.asarray(t, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        log_t = np.log(np.maximum(t, 0.0))
        log_scale = np.log(scale)
        out = (
            np.log(shape) - log_scale
            + (shape - 1.0) * (log_t - log_scale)
            - cum_hazard(t, scale, shape)
        )
    return np.where(t < 0.0, -np.inf, out)


def log_survival(t: np.ndarray | float, scale: np.ndarray | float, shape: np.ndarray | float) -> np.ndarray:
    """Log survival ``-H(t)``."""
    return -cum_hazard(t, scale, shape)


def log_cdf(t: np.ndarray | float, scale: np.ndarray | float, shape: np.ndarray | float) -> np.ndarray:
    """Log distribution function, stable for small *t*."""
    with np.errstate(divide="ignore"):
        return np.log(-np.expm1(-cum_hazard(t, scale, shape)))


def log_interval_probability(
    lower: np.ndarray | float, upper: np.ndarray | float,
    scale: np.ndarray | float, shape: np.ndarray | float,
) -> np.ndarray:
    """``log(F(upper) - F(lower))`` computed from the survival side.

    ``upper`` may be infinite; ``lower == upper`` yields ``-inf``.
    """
    h_lo = cum_hazard(lower, scale, shape)
    h_hi = cum_hazard(upper, scale, shape)
    with np.errstate(divide="ignore", invalid="ignore"):
        gap = np.where(np.isinf(h_hi), np.inf, h_hi - h_lo)
        return -h_lo + np.log(-np.expm1(-gap))


def quantile(q: np.ndarray | float, scale: np.ndarray | float, shape: np.ndarray | float) -> np.ndarray:
    """Inverse distribution function."""
    q = np.asarray(q, dtype=np.float64)
    return scale * (-np.log1p(-q)) ** (1.0 / np.asarray(shape, dtype=np.float64))


def sample(
    rng: np.random.Generator, scale: np.ndarray | float, shape: np.ndarray | float,
    size: int | tuple[int, ...] | None = None,
) -> np.ndarray:
    """Draw Weibull variates."""
    return np.asarray(scale) * rng.weibull(shape, size=size)


def sample_truncated(
    rng: np.random.Generator, lower: np.ndarray | float,
    scale: np.ndarray | float, shape: np.ndarray | float,
    size: int | tuple[int, ...] | None = None,
) -> np.ndarray:
    """Draw Weibull variates conditional on exceeding *lower*.

    Uses ``H(T) = H(lower) + E`` with ``E ~ Exp(1)``.
    """
    h = cum_hazard(lower, scale, shape) + rng.exponential(1.0, size=size)
    return np.asarray(scale) * h ** (1.0 / np.asarray(shape, dtype=np.float64))
