"""Summaries of parameter samples."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd

from oncomsm.domain.models import GroupParameters, ParameterSample
from oncomsm.engine import weibull
from oncomsm.engine.likelihood import log_integral_f1

logger = logging.getLogger(__name__)


def pfs_curve(params: GroupParameters, t: np.ndarray, order: int | None = None) -> np.ndarray:
    """Progression-free survival ``P(no progression by t)`` for one draw.

    ``S(t) = p [S1(t) + int_0^t f1(u) S3(t - u) du] + (1 - p) S2(t)``.
    """
    t = np.asarray(t, dtype=np.float64)
    scale, shape = params.scale, params.shape

    def log_g(u: np.ndarray) -> np.ndarray:
        return weibull.log_survival(t[:, None] - u, scale[2], shape[2])

    zeros = np.zeros_like(t)
    with np.errstate(divide="ignore"):
        log_responded = log_integral_f1(zeros, t, scale[0], shape[0], log_g, order)
    # the integral is empty at t = 0
    responded = np.where(t > 0.0, np.exp(log_responded), 0.0)
    s1 = np.exp(weibull.log_survival(t, scale[0], shape[0]))
    s2 = np.exp(weibull.log_survival(t, scale[1], shape[1]))
    return params.p * (s1 + responded) + (1.0 - params.p) * s2


def compute_pfs(
    parameter_sample: ParameterSample, t: Sequence[float] | np.ndarray, order: int | None = None,
) -> pd.DataFrame:
    """Progression-free survival curves for every draw and group.

    Returns
    -------
    pd.DataFrame
        Columns ``draw_index``, ``group_id``, ``t`` and ``pfs``.
    """
    t = np.asarray(t, dtype=np.float64)
    if t.ndim != 1 or np.any(t < 0) or not np.all(np.isfinite(t)):
        raise ValueError("t must be a 1-D array of finite, non-negative times")

    frames = []
    for draw_index in parameter_sample.draw_indices:
        for group_id, params in parameter_sample.get(int(draw_index)).items():
            frames.append(pd.DataFrame({
                "draw_index": int(draw_index),
                "group_id": group_id,
                "t": t,
                "pfs": pfs_curve(params, t, order),
            }))
    if not frames:
        return pd.DataFrame(columns=["draw_index", "group_id", "t", "pfs"])
    return pd.concat(frames, ignore_index=True)


def summarize_parameter_sample(
    parameter_sample: ParameterSample, probs: Sequence[float] = (0.05, 0.5, 0.95),
) -> pd.DataFrame:
    """Mean and quantiles of every parameter, per group.

    Quantile columns are named ``q05``, ``q50`` etc.
    """
    probs = [float(q) for q in probs]
    if any(not 0.0 <= q <= 1.0 for q in probs):
        raise ValueError(f"Quantile levels must lie in [0, 1], got {probs}")

    grouped = parameter_sample.frame.groupby(["group_id", "parameter"], sort=False)["value"]
    out = grouped.mean().rename("mean").to_frame()
    for q in probs:
        out[f"q{round(q * 100):02d}"] = grouped.quantile(q)
    return out.reset_index()
