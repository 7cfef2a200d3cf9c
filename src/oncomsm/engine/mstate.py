"""Visit-to-interval transformation.

Converts per-subject visit logs (state observed at discrete visit times)
into one interval-censored multi-state record per subject, and
re-censors such records at an interim analysis time ``now``.

Times in a visit table are calendar times since trial start.  The first
visit of a subject is its recruitment visit; interval bounds in the
resulting table are relative to it.
"""

from __future__ import annotations

import logging
import math

import numpy as np
import pandas as pd

from oncomsm.domain.errors import MalformedVisitData
from oncomsm.domain.models import (
    CENSORED_RESPONSE,
    CENSORED_STABLE,
    DIRECT_PROGRESSION,
    MSTATE_COLUMNS,
    PATTERNS,
    RESPONSE_PROGRESSION,
    STATE_ORDER,
    STATES,
    VISIT_COLUMNS,
    SRPModel,
)

logger = logging.getLogger(__name__)

_RESPONSE_CODE = STATE_ORDER["response"]
_PROGRESSION_CODE = STATE_ORDER["progression"]

# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def check_visits(visits: pd.DataFrame, model: SRPModel) -> pd.DataFrame:
    """Validate a visit table and return a cleaned, sorted copy.

    The returned table has an additional integer ``state_code`` column,
    is sorted by subject and time, and holds at most one visit per
    subject and time point (the most advanced state wins).

    Raises
    ------
    MalformedVisitData
        On missing columns, empty input, non-finite or negative times,
        unknown states or groups, subjects spanning several groups,
        backwards state changes, or a first visit that is not "stable".
    """
    if not isinstance(visits, pd.DataFrame):
        raise MalformedVisitData(
            f"Visits must be a pandas DataFrame, got {type(visits).__name__}"
        )
    missing = [c for c in VISIT_COLUMNS if c not in visits.columns]
    if missing:
        raise MalformedVisitData(f"Visit table lacks columns: {missing}")
    if len(visits) == 0:
        raise MalformedVisitData("Visit table contains no visits")

    df = visits.loc[:, list(VISIT_COLUMNS)].copy()
    df["subject_id"] = df["subject_id"].astype(str)
    df["group_id"] = df["group_id"].astype(str)
    try:
        df["t"] = pd.to_numeric(df["t"]).astype(np.float64)
    except (TypeError, ValueError) as exc:
        raise MalformedVisitData(f"Visit times must be numeric: {exc}") from exc

    bad_time = ~np.isfinite(df["t"].to_numpy())
    if bad_time.any():
        subject = df.loc[bad_time, "subject_id"].iloc[0]
        raise MalformedVisitData(f"Subject {subject!r} has a missing or non-finite visit time")
    negative = df["t"].to_numpy() < 0.0
    if negative.any():
        subject = df.loc[negative, "subject_id"].iloc[0]
        raise MalformedVisitData(f"Subject {subject!r} has a negative visit time")

    unknown_state = ~df["state"].isin(STATES)
    if unknown_state.any():
        values = sorted(df.loc[unknown_state, "state"].astype(str).unique())
        raise MalformedVisitData(f"Unknown states {values}; expected one of {list(STATES)}")
    unknown_group = ~df["group_id"].isin(model.group_ids)
    if unknown_group.any():
        values = sorted(df.loc[unknown_group, "group_id"].unique())
        raise MalformedVisitData(f"Groups {values} are not defined in the model")

    n_groups = df.groupby("subject_id", sort=False)["group_id"].nunique()
    if (n_groups > 1).any():
        subject = n_groups.index[n_groups > 1][0]
        raise MalformedVisitData(f"Subject {subject!r} is assigned to several groups")

    df["state_code"] = df["state"].map(STATE_ORDER).astype(np.int64)
    order = {s: i for i, s in enumerate(pd.unique(df["subject_id"]))}
    df["_order"] = df["subject_id"].map(order)
    df = df.sort_values(["_order", "t", "state_code"], kind="mergesort")
    # duplicates at one time point: keep the most advanced state
    df = df.drop_duplicates(subset=["subject_id", "t"], keep="last")

    codes = df["state_code"].to_numpy()
    same_subject = df["subject_id"].to_numpy()[1:] == df["subject_id"].to_numpy()[:-1]
    backwards = same_subject & (np.diff(codes) < 0)
    if backwards.any():
        subject = df["subject_id"].to_numpy()[1:][backwards][0]
        raise MalformedVisitData(
            f"Subject {subject!r} has non-monotonic states (e.g. progression -> response)"
        )
    first = df.groupby("subject_id", sort=False)["state_code"].first()
    if (first != 0).any():
        subject = first.index[first != 0][0]
        raise MalformedVisitData(f"Subject {subject!r}: first visit must be 'stable'")

    return df.drop(columns="_order").reset_index(drop=True)


# ---------------------------------------------------------------------------
# Transformation
# ---------------------------------------------------------------------------


def _subject_record(subject_id: str, group_id: str, t: np.ndarray, codes: np.ndarray) -> dict:
    """Build the uncensored multi-state record of one subject."""
    if t.size == 0:
        raise MalformedVisitData(f"Subject {subject_id!r} has no visits")
    rec = float(t[0])
    rel = t - rec

    response_idx = np.flatnonzero(codes == _RESPONSE_CODE)
    progression_idx = np.flatnonzero(codes == _PROGRESSION_CODE)
    last = float(rel[-1])
    inf = math.inf

    if response_idx.size:
        j = int(response_idx[0])
        r_min, r_max = float(rel[j - 1]), float(rel[j])
        if progression_idx.size:
            k = int(progression_idx[0])
            pattern = RESPONSE_PROGRESSION
            p_min, p_max = float(rel[k - 1]), float(rel[k])
        else:
            pattern = CENSORED_RESPONSE
            p_min, p_max = last, inf
    elif progression_idx.size:
        k = int(progression_idx[0])
        pattern = DIRECT_PROGRESSION
        p_min, p_max = float(rel[k - 1]), float(rel[k])
        r_min, r_max = p_max, inf
    else:
        pattern = CENSORED_STABLE
        r_min, r_max = last, inf
        p_min, p_max = last, inf

    return {
        "subject_id": subject_id,
        "group_id": group_id,
        "t_recruitment": rec,
        "pattern": pattern,
        "t_response_min": r_min,
        "t_response_max": r_max,
        "t_progression_min": p_min,
        "t_progression_max": p_max,
    }


def visits_to_mstate(
    visits: pd.DataFrame, model: SRPModel, now: float = math.inf,
) -> pd.DataFrame:
    """Convert visit records to interval-censored multi-state records.

    Parameters
    ----------
    visits:
        Table with columns ``subject_id``, ``group_id``, ``t``, ``state``.
    model:
        Model whose groups the visit table refers to.
    now:
        Calendar time of the analysis.  Information after ``now`` is
        discarded; subjects recruited after ``now`` are dropped.

    Returns
    -------
    pd.DataFrame
        One row per subject with the columns listed in
        :data:`~oncomsm.domain.models.MSTATE_COLUMNS`.

    Raises
    ------
    MalformedVisitData
        See :func:`check_visits`.
    """
    df = check_visits(visits, model)

    records = [
        _subject_record(
            str(subject_id), str(block["group_id"].iloc[0]),
            block["t"].to_numpy(dtype=np.float64),
            block["state_code"].to_numpy(),
        )
        for subject_id, block in df.groupby("subject_id", sort=False)
    ]
    mstate = pd.DataFrame.from_records(records, columns=list(MSTATE_COLUMNS))
    mstate = _sort_by_group(mstate, model)
    logger.debug("Transformed %d visits into %d multi-state records", len(df), len(mstate))
    if math.isinf(now) and now > 0:
        return mstate
    return censor_mstate(mstate, now)


def censor_mstate(mstate: pd.DataFrame, now: float) -> pd.DataFrame:
    """Re-censor multi-state records at calendar time *now*.

    A transition is kept as observed only if its interval closes no later
    than ``now``; otherwise it has not yet occurred and the record is
    right-censored at ``min(lower bound, now)``.  Applying a later cutoff
    after an earlier one gives the same result as the earlier cutoff
    alone.
    """
    missing = [c for c in MSTATE_COLUMNS if c not in mstate.columns]
    if missing:
        raise MalformedVisitData(f"Multi-state table lacks columns: {missing}")
    unknown = ~mstate["pattern"].isin(PATTERNS)
    if unknown.any():
        raise MalformedVisitData(
            f"Unknown patterns {sorted(mstate.loc[unknown, 'pattern'].unique())}"
        )

    now = float(now)
    c = now - mstate["t_recruitment"].to_numpy(dtype=np.float64)
    out = mstate.loc[c >= 0.0].copy()
    c = c[c >= 0.0]

    pattern = out["pattern"].to_numpy(dtype=object)
    r_min = out["t_response_min"].to_numpy(dtype=np.float64)
    r_max = out["t_response_max"].to_numpy(dtype=np.float64)
    p_min = out["t_progression_min"].to_numpy(dtype=np.float64)
    p_max = out["t_progression_max"].to_numpy(dtype=np.float64)

    has_response = np.isin(pattern, [CENSORED_RESPONSE, RESPONSE_PROGRESSION])
    has_progression = np.isin(pattern, [RESPONSE_PROGRESSION, DIRECT_PROGRESSION])
    response_seen = has_response & (r_max <= c)
    progression_seen = has_progression & (p_max <= c)

    to_censored_response = ~progression_seen & response_seen
    to_censored_stable = ~progression_seen & ~response_seen

    cens_response = np.minimum(p_min, c)
    cens_stable = np.where(has_response, np.minimum(r_min, c), np.minimum(p_min, c))

    new_pattern = pattern.copy()
    new_pattern[to_censored_response] = CENSORED_RESPONSE
    new_pattern[to_censored_stable] = CENSORED_STABLE

    new_r_min = np.where(to_censored_stable, cens_stable, r_min)
    new_r_max = np.where(to_censored_stable, math.inf, r_max)
    new_p_min = np.select(
        [to_censored_stable, to_censored_response], [cens_stable, cens_response], p_min,
    )
    new_p_max = np.where(to_censored_stable | to_censored_response, math.inf, p_max)

    out["pattern"] = new_pattern
    out["t_response_min"] = new_r_min
    out["t_response_max"] = new_r_max
    out["t_progression_min"] = new_p_min
    out["t_progression_max"] = new_p_max
    n_dropped = len(mstate) - len(out)
    if n_dropped:
        logger.debug("Dropped %d subjects recruited after t=%g", n_dropped, now)
    return out.reset_index(drop=True)


def _sort_by_group(mstate: pd.DataFrame, model: SRPModel) -> pd.DataFrame:
    """Order records by model group order, keeping subject order within groups."""
    rank = {g: i for i, g in enumerate(model.group_ids)}
    key = mstate["group_id"].map(rank)
    return (
        mstate.assign(_rank=key)
        .sort_values("_rank", kind="mergesort")
        .drop(columns="_rank")
        .reset_index(drop=True)
    )
