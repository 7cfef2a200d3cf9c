"""Forward simulation of visit-level trial data.

Given parameter draws, subjects are recruited by a Poisson process,
their latent responder status and transition times are drawn, and a
regular visit schedule records the state at each visit.  Observation
only at visits induces interval censoring exactly as in real data.

Existing (interim) subjects can be continued conditionally on what has
been observed for them, see :func:`impute_trajectories`.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from oncomsm.config.settings import config_value
from oncomsm.domain.models import (
    CENSORED_RESPONSE,
    CENSORED_STABLE,
    STATES,
    GroupParameters,
    ParameterSample,
    SRPModel,
)
from oncomsm.engine import weibull
from oncomsm.engine.mstate import visits_to_mstate
from oncomsm.engine.prior import sample_group_prior
from oncomsm.engine.rng import Seed, make_rng

logger = logging.getLogger(__name__)

_MAX_REJECTION_ROUNDS = 1000

OUTPUT_COLUMNS = ("replicate", "subject_id", "group_id", "t", "state")


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

def simulate_recruitment(
    rate: float, n: int, rng: np.random.Generator, start: float = 0.0,
) -> np.ndarray:
    """Arrival times of *n* subjects of a Poisson process after *start*."""
    if rate <= 0:
        raise ValueError(f"Recruitment rate must be positive, got {rate}")
    return start + np.cumsum(rng.exponential(1.0 / rate, size=n))


def simulate_event_times(
    params: GroupParameters, n: int, rng: np.random.Generator,
) -> tuple[np.ndarray, np.ndarray]:
    """Response and progression times (since recruitment) of *n* subjects.

    Non-responders have a response time of ``nan``.
    """
    scale, shape = params.scale, params.shape
    responder = rng.random(n) < params.p
    t1 = weibull.sample(rng, scale[0], shape[0], n)
    t2 = weibull.sample(rng, scale[1], shape[1], n)
    t3 = weibull.sample(rng, scale[2], shape[2], n)
    t_response = np.where(responder, t1, np.nan)
    t_progression = np.where(responder, t1 + t3, t2)
    return t_response, t_progression


def _schedule_visits(
    subject_ids: np.ndarray,
    group_id: str,
    origin: np.ndarray,
    t_response: np.ndarray,
    t_progression: np.ndarray,
    spacing: float,
    limit: np.ndarray,
    first_visit: int,
) -> pd.DataFrame:
    """Visits at ``origin + k * spacing`` for ``k >= first_visit``.

    Event times are relative to *origin*.  The schedule stops at the
    first visit at or after progression and at *limit* (calendar).
    """
    with np.errstate(invalid="ignore"):
        k_progression = np.ceil(t_progression / spacing)
        k_limit = np.floor((limit - origin) / spacing)
    k_last = np.minimum(k_progression, k_limit)
    counts = np.maximum(k_last - first_visit + 1, 0).astype(np.int64)

    idx = np.repeat(np.arange(len(subject_ids)), counts)
    offsets = np.arange(counts.sum()) - np.repeat(np.cumsum(counts) - counts, counts)
    k = first_visit + offsets
    rel = k * spacing

    with np.errstate(invalid="ignore"):
        code = np.where(
            rel >= t_progression[idx], 2, np.where(rel >= t_response[idx], 1, 0),
        )
    return pd.DataFrame({
        "subject_id": subject_ids[idx],
        "group_id": group_id,
        "t": origin[idx] + rel,
        "state": np.asarray(STATES, dtype=object)[code],
    })


def _limits(
    t_recruitment: np.ndarray,
    now: float | None,
    trial_cutoff: float | None,
    max_follow_up: float | None,
) -> np.ndarray:
    limit = np.full(len(t_recruitment), math.inf)
    for bound in (now, trial_cutoff):
        if bound is not None:
            limit = np.minimum(limit, bound)
    if max_follow_up is not None:
        limit = np.minimum(limit, t_recruitment + max_follow_up)
    return limit


# ---------------------------------------------------------------------------
# Conditional continuation of observed subjects
# ---------------------------------------------------------------------------

def _sample_response_in_interval(
    params: GroupParameters,
    r_min: np.ndarray,
    r_max: np.ndarray,
    c: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """Response times in ``[r_min, r_max]`` given no progression by *c*.

    Rejection sampling: propose from ``f1`` truncated to the interval and
    accept with probability ``S3(c - u) / S3(c - r_max)``.
    """
    scale, shape = params.scale, params.shape
    h_lo = weibull.cum_hazard(r_min, scale[0], shape[0])
    h_hi = weibull.cum_hazard(r_max, scale[0], shape[0])
    width = -np.expm1(-(h_hi - h_lo))
    h3_ref = weibull.cum_hazard(c - r_max, scale[2], shape[2])

    out = r_min.astype(np.float64).copy()
    pending = np.flatnonzero(r_max > r_min)
    for _ in range(_MAX_REJECTION_ROUNDS):
        if pending.size == 0:
            break
        w = rng.random(pending.size) * width[pending]
        u = scale[0] * (h_lo[pending] - np.log1p(-w)) ** (1.0 / shape[0])
        log_accept = -(weibull.cum_hazard(c[pending] - u, scale[2], shape[2]) - h3_ref[pending])
        accept = np.log(rng.random(pending.size)) < log_accept
        out[pending] = u
        pending = pending[~accept]
    if pending.size:
        logger.warning(
            "Response-time rejection sampler did not converge for %d subjects; "
            "using last proposal", pending.size,
        )
    return out


def impute_trajectories(
    mstate: pd.DataFrame,
    group_id: str,
    params: GroupParameters,
    rng: np.random.Generator,
) -> pd.DataFrame:
    """Draw latent event times for censored subjects of one group.

    For subjects still stable at follow-up ``c`` the responder status is
    drawn from ``P(R = 1 | stable at c) = p S1(c) / (p S1(c) + (1 - p) S2(c))``
    and the sojourn from the Weibull truncated at ``c``.  For responders
    without progression the response time is drawn inside its interval
    and the progression time conditional on exceeding ``c``.

    Returns
    -------
    pd.DataFrame
        ``subject_id``, ``t_recruitment``, ``t_last`` (follow-up, relative),
        ``t_response`` and ``t_progression`` (relative to recruitment).
    """
    scale, shape = params.scale, params.shape
    block = mstate[mstate["group_id"] == group_id]

    stable = block[block["pattern"] == CENSORED_STABLE]
    c = stable["t_progression_min"].to_numpy(dtype=np.float64)
    with np.errstate(divide="ignore"):
        log_r = np.log(params.p) + weibull.log_survival(c, scale[0], shape[0])
        log_n = np.log1p(-params.p) + weibull.log_survival(c, scale[1], shape[1])
    prob_responder = np.exp(log_r - np.logaddexp(log_r, log_n))
    responder = rng.random(len(c)) < prob_responder
    t1 = weibull.sample_truncated(rng, c, scale[0], shape[0], len(c))
    t2 = weibull.sample_truncated(rng, c, scale[1], shape[1], len(c))
    t3 = weibull.sample(rng, scale[2], shape[2], len(c))
    stable_out = pd.DataFrame({
        "subject_id": stable["subject_id"].to_numpy(),
        "t_recruitment": stable["t_recruitment"].to_numpy(dtype=np.float64),
        "t_last": c,
        "t_response": np.where(responder, t1, np.nan),
        "t_progression": np.where(responder, t1 + t3, t2),
    })

    responded = block[block["pattern"] == CENSORED_RESPONSE]
    c = responded["t_progression_min"].to_numpy(dtype=np.float64)
    u = _sample_response_in_interval(
        params,
        responded["t_response_min"].to_numpy(dtype=np.float64),
        responded["t_response_max"].to_numpy(dtype=np.float64),
        c, rng,
    )
    t3 = weibull.sample_truncated(rng, c - u, scale[2], shape[2], len(c))
    responded_out = pd.DataFrame({
        "subject_id": responded["subject_id"].to_numpy(),
        "t_recruitment": responded["t_recruitment"].to_numpy(dtype=np.float64),
        "t_last": c,
        "t_response": u,
        "t_progression": u + t3,
    })
    frames = [f for f in (stable_out, responded_out) if len(f)]
    if not frames:
        return stable_out
    return pd.concat(frames, ignore_index=True)


# ---------------------------------------------------------------------------
# Predictive sampling
# ---------------------------------------------------------------------------

def _per_group(model: SRPModel, n_per_group: Any) -> dict[str, int]:
    """Normalise an int, sequence or mapping to ``{group_id: n}``."""
    if isinstance(n_per_group, Mapping):
        unknown = set(n_per_group) - set(model.group_ids)
        if unknown:
            raise ValueError(f"Unknown groups in n_per_group: {sorted(unknown)}")
        values = {g: int(n_per_group.get(g, 0)) for g in model.group_ids}
    elif isinstance(n_per_group, (int, np.integer)):
        values = {g: int(n_per_group) for g in model.group_ids}
    else:
        seq = list(n_per_group)
        if len(seq) != len(model):
            raise ValueError(
                f"n_per_group has {len(seq)} entries for {len(model)} groups"
            )
        values = {g: int(n) for g, n in zip(model.group_ids, seq)}
    if any(n < 0 for n in values.values()):
        raise ValueError(f"n_per_group must be non-negative, got {values}")
    return values


def _replicate_parameters(
    model: SRPModel,
    parameter_sample: ParameterSample | None,
    fixed_overrides: Mapping[str, Mapping[str, float]],
    rng: np.random.Generator,
) -> dict[str, GroupParameters]:
    if parameter_sample is None:
        params = {}
        for group_id, prior in model.items():
            draw = sample_group_prior(prior, 1, rng)
            params[group_id] = GroupParameters(
                p=float(draw["p"][0]),
                median=tuple(float(v) for v in draw["median"][0]),
                shape=tuple(float(v) for v in draw["shape"][0]),
            )
    else:
        draw_index = int(rng.choice(parameter_sample.draw_indices))
        params = parameter_sample.get(draw_index)
    for group_id, overrides in fixed_overrides.items():
        params[group_id] = params[group_id].replace(**dict(overrides))
    return params


def sample_predictive(
    model: SRPModel,
    parameter_sample: ParameterSample | None,
    n_per_group: int | Sequence[int] | Mapping[str, int],
    nsim: int = 1,
    visit_spacing: float | None = None,
    seed: Seed = 0,
    fixed_overrides: Mapping[str, Mapping[str, float]] | None = None,
    now: float | None = None,
    trial_cutoff: float | None = None,
    max_follow_up: float | None = None,
    recruitment_times: Mapping[str, Sequence[float]] | None = None,
    data: pd.DataFrame | None = None,
    data_cutoff: float | None = None,
) -> pd.DataFrame:
    """Simulate visit-level data for *nsim* replicate trials.

    Parameters
    ----------
    model:
        Model container.
    parameter_sample:
        Prior or posterior draws; each replicate uses one randomly chosen
        draw.  ``None`` draws fresh parameters from the prior.
    n_per_group:
        Final sample size per group (int for all groups, a sequence in
        group order, or a mapping).  With *data*, only the missing
        subjects are recruited.
    nsim:
        Number of replicate trials.
    visit_spacing:
        Time between visits (default from configuration).
    seed:
        Master seed; replicate ``r`` uses streams ``seed / r / ...``.
    fixed_overrides:
        ``{group_id: {parameter: value}}`` fixing parameters such as
        ``p`` or ``median_1`` instead of taking them from the draw.
    now, trial_cutoff:
        Calendar times after which no visit is recorded.
    max_follow_up:
        Maximal follow-up per subject since recruitment.
    recruitment_times:
        ``{group_id: times}`` fixing calendar entry of the new subjects.
    data:
        Interim visits to continue; existing subjects are continued
        conditionally on their observations.
    data_cutoff:
        Calendar time at which *data* was observed (default: its last
        visit).  New subjects are recruited after it.

    Returns
    -------
    pd.DataFrame
        Simulated visits with columns ``replicate``, ``subject_id``,
        ``group_id``, ``t`` and ``state``.
    """
    if nsim < 1:
        raise ValueError(f"nsim must be positive, got {nsim}")
    spacing = float(
        visit_spacing if visit_spacing is not None
        else config_value("simulation.visit_spacing", 1.0)
    )
    if not spacing > 0:
        raise ValueError(f"visit_spacing must be positive, got {spacing}")
    sizes = _per_group(model, n_per_group)
    fixed_overrides = dict(fixed_overrides or {})
    recruitment_times = dict(recruitment_times or {})
    for name, mapping in (("fixed_overrides", fixed_overrides),
                          ("recruitment_times", recruitment_times)):
        unknown = set(mapping) - set(model.group_ids)
        if unknown:
            raise ValueError(f"Unknown groups in {name}: {sorted(unknown)}")

    mstate = None
    if data is not None and len(data):
        if data_cutoff is None:
            data_cutoff = float(pd.to_numeric(data["t"]).max())
        mstate = visits_to_mstate(data, model, now=data_cutoff)

    frames = []
    for replicate in range(nsim):
        params = _replicate_parameters(
            model, parameter_sample, fixed_overrides, make_rng(seed, replicate),
        )
        for i, (group_id, prior) in enumerate(model.items()):
            rng = make_rng(seed, replicate, i + 1)
            group_frames = []
            n_observed = 0
            start = 0.0
            if mstate is not None:
                block = mstate[mstate["group_id"] == group_id]
                n_observed = len(block)
                start = float(data_cutoff)
                continued = impute_trajectories(mstate, group_id, params[group_id], rng)
                if len(continued):
                    t_rec = continued["t_recruitment"].to_numpy()
                    t_last = continued["t_last"].to_numpy()
                    group_frames.append(_schedule_visits(
                        continued["subject_id"].to_numpy(dtype=object), group_id,
                        t_rec + t_last,
                        continued["t_response"].to_numpy() - t_last,
                        continued["t_progression"].to_numpy() - t_last,
                        spacing,
                        _limits(t_rec, now, trial_cutoff, max_follow_up),
                        first_visit=1,
                    ))

            n_new = max(sizes[group_id] - n_observed, 0)
            if group_id in recruitment_times:
                t_rec = np.sort(np.asarray(recruitment_times[group_id], dtype=np.float64))
                if len(t_rec) != n_new:
                    raise ValueError(
                        f"recruitment_times[{group_id!r}] has {len(t_rec)} entries, "
                        f"expected {n_new}"
                    )
            else:
                t_rec = simulate_recruitment(prior.recruitment_rate, n_new, rng, start)
            if n_new:
                t_response, t_progression = simulate_event_times(params[group_id], n_new, rng)
                prefix = "sim-" if mstate is not None else ""
                ids = np.array(
                    [f"{prefix}{group_id}-{n_observed + j + 1:04d}" for j in range(n_new)],
                    dtype=object,
                )
                group_frames.append(_schedule_visits(
                    ids, group_id, t_rec, t_response, t_progression, spacing,
                    _limits(t_rec, now, trial_cutoff, max_follow_up), first_visit=0,
                ))

            for frame in group_frames:
                frames.append(frame.assign(replicate=replicate))

    if not frames:
        return pd.DataFrame({c: pd.Series(dtype=object) for c in OUTPUT_COLUMNS})
    out = pd.concat(frames, ignore_index=True)
    out["replicate"] = out["replicate"].astype(np.int64)
    logger.debug("Simulated %d visits over %d replicates", len(out), nsim)
    return out.loc[:, list(OUTPUT_COLUMNS)]
