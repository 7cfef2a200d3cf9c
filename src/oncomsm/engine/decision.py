"""Decision-rule simulation over repeated simulated trials.

Parameters are drawn once, from the posterior given interim data or
from the prior.  Each replicate then picks a draw, simulates the
(remaining) cohort, hands the combined visits to a user decision
function and records its per-group verdict.  Replicate ``i`` derives
all its randomness from ``seed / i``, so the result does not depend on
the number of worker threads.
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from oncomsm.config.settings import config_value
from oncomsm.domain.errors import DecisionRuleError
from oncomsm.domain.models import VISIT_COLUMNS, ParameterSample, SRPModel
from oncomsm.domain.protocols import DecisionFunction, SamplerProtocol
from oncomsm.engine.mstate import check_visits
from oncomsm.engine.rng import Seed, child_seed
from oncomsm.engine.sampler import sample_posterior, sample_prior
from oncomsm.engine.simulation import sample_predictive

logger = logging.getLogger(__name__)

DECISION_COLUMNS = ("replicate", "group_id", "go")


# ---------------------------------------------------------------------------
# Verdict normalisation
# ---------------------------------------------------------------------------

def normalize_decision(result: Any, model: SRPModel) -> dict[str, bool]:
    """Turn a decision function result into ``{group_id: go}``.

    Accepts a DataFrame with ``group_id`` and ``go`` columns, a Series
    indexed by group, or a mapping.
    """
    if isinstance(result, pd.DataFrame):
        missing = [c for c in ("group_id", "go") if c not in result.columns]
        if missing:
            raise DecisionRuleError(f"Decision table lacks columns: {missing}")
        pairs = zip(result["group_id"].astype(str), result["go"])
    elif isinstance(result, pd.Series):
        pairs = ((str(k), v) for k, v in result.items())
    elif isinstance(result, Mapping):
        pairs = ((str(k), v) for k, v in result.items())
    else:
        raise DecisionRuleError(
            f"Decision function must return a DataFrame or mapping, got {type(result).__name__}"
        )

    verdict: dict[str, bool] = {}
    for group_id, go in pairs:
        if group_id not in model:
            raise DecisionRuleError(f"Decision for unknown group {group_id!r}")
        if group_id in verdict:
            raise DecisionRuleError(f"Several decisions for group {group_id!r}")
        if go is None or (isinstance(go, float) and math.isnan(go)):
            raise DecisionRuleError(f"Missing decision for group {group_id!r}")
        verdict[group_id] = bool(go)
    return verdict


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------

def _parameter_sample(
    model: SRPModel,
    data: pd.DataFrame | None,
    seed: Seed,
    now: float,
    sampler: SamplerProtocol | None,
    n_draws: int | None,
) -> ParameterSample:
    if data is None or len(data) == 0:
        return sample_prior(model, n_draws=n_draws, seed=seed)
    return sample_posterior(model, data, n_draws=n_draws, seed=seed, now=now, sampler=sampler)


def simulate_decision_rule(
    model: SRPModel,
    n_per_group: int | Sequence[int] | Mapping[str, int],
    decision_fn: DecisionFunction,
    data: pd.DataFrame | None = None,
    nsim: int = 100,
    seed: Seed = 0,
    n_workers: int | None = None,
    sampler: SamplerProtocol | None = None,
    now: float | None = None,
    n_draws: int | None = None,
    visit_spacing: float | None = None,
    trial_cutoff: float | None = None,
    max_follow_up: float | None = None,
    parameter_sample: ParameterSample | None = None,
) -> pd.DataFrame:
    """Evaluate *decision_fn* on *nsim* simulated trials.

    Parameters
    ----------
    model:
        Model container.
    n_per_group:
        Final sample size per group.
    decision_fn:
        Callable ``(model, visits) -> DataFrame(group_id, go) | Mapping``.
    data:
        Interim visits.  When given, parameters come from the posterior
        and only the remaining subjects are simulated.
    nsim:
        Number of replicates.
    seed:
        Master seed.
    n_workers:
        Worker threads (default from configuration).
    sampler:
        Sampler used for the posterior.
    now:
        Interim analysis time (default: last visit in *data*).
    n_draws:
        Size of the parameter sample replicates draw from.
    visit_spacing, trial_cutoff, max_follow_up:
        Passed to :func:`~oncomsm.engine.simulation.sample_predictive`.
    parameter_sample:
        Precomputed draws; skips prior or posterior sampling.

    Returns
    -------
    pd.DataFrame
        One row per replicate and group with columns ``replicate``,
        ``group_id`` and ``go``, ordered by replicate.

    Raises
    ------
    DecisionRuleError
        When a decision function fails or returns an unusable verdict.
        The first failing replicate aborts the loop.
    """
    if nsim < 1:
        raise ValueError(f"nsim must be positive, got {nsim}")
    n_workers = int(n_workers if n_workers is not None else config_value("decision.n_workers", 1))
    if n_workers < 1:
        raise ValueError(f"n_workers must be positive, got {n_workers}")

    interim = None
    if data is not None and len(data):
        interim = check_visits(data, model)
        if now is None:
            now = float(interim["t"].max())
        interim = interim.loc[interim["t"] <= now, list(VISIT_COLUMNS)].reset_index(drop=True)

    if parameter_sample is None:
        parameter_sample = _parameter_sample(
            model, interim, seed, now if now is not None else math.inf, sampler, n_draws,
        )

    def run_replicate(replicate: int) -> dict[str, bool]:
        simulated = sample_predictive(
            model,
            parameter_sample,
            n_per_group,
            nsim=1,
            visit_spacing=visit_spacing,
            seed=child_seed(seed, replicate),
            trial_cutoff=trial_cutoff,
            max_follow_up=max_follow_up,
            data=interim,
            data_cutoff=now,
        )
        visits = simulated.loc[:, list(VISIT_COLUMNS)]
        if interim is not None:
            visits = pd.concat([interim, visits], ignore_index=True)
        try:
            result = decision_fn(model, visits)
        except Exception as exc:
            raise DecisionRuleError(
                f"Decision function failed in replicate {replicate}: {exc}"
            ) from exc
        return normalize_decision(result, model)

    start = time.perf_counter()
    if n_workers == 1:
        verdicts = [run_replicate(i) for i in range(nsim)]
    else:
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            # map preserves submission order and re-raises the first failure
            verdicts = list(executor.map(run_replicate, range(nsim)))
    logger.info(
        "Evaluated decision rule on %d replicates in %.1fs (%d workers)",
        nsim, time.perf_counter() - start, n_workers,
    )

    rows = [
        {"replicate": replicate, "group_id": group_id, "go": verdict[group_id]}
        for replicate, verdict in enumerate(verdicts)
        for group_id in model.group_ids
        if group_id in verdict
    ]
    out = pd.DataFrame(rows, columns=list(DECISION_COLUMNS))
    out["replicate"] = out["replicate"].astype(np.int64)
    out["go"] = out["go"].astype(bool)
    return out


def go_probability(decisions: pd.DataFrame) -> pd.Series:
    """Fraction of replicates with a "go" verdict, per group."""
    return decisions.groupby("group_id", sort=False)["go"].mean().rename("p_go")
