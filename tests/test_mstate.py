"""Tests for the visit-to-interval transformation and re-censoring."""

from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from oncomsm.domain.errors import MalformedVisitData
from oncomsm.domain.models import (
    CENSORED_RESPONSE,
    CENSORED_STABLE,
    DIRECT_PROGRESSION,
    MSTATE_COLUMNS,
    RESPONSE_PROGRESSION,
)
from oncomsm.engine.mstate import censor_mstate, check_visits, visits_to_mstate

INF = math.inf


def _record(mstate: pd.DataFrame, subject_id: str) -> pd.Series:
    return mstate.set_index("subject_id").loc[subject_id]


def _visits(rows):
    return pd.DataFrame(rows, columns=["subject_id", "group_id", "t", "state"])


# =====================================================================
# visits_to_mstate
# =====================================================================


class TestVisitsToMstate:
    """Interval construction per subject."""

    def test_response_then_progression(self, single_model):
        visits = _visits([
            ("x", "A", 0.0, "stable"),
            ("x", "A", 2.0, "response"),
            ("x", "A", 5.0, "progression"),
        ])
        rec = _record(visits_to_mstate(visits, single_model), "x")
        assert rec["pattern"] == RESPONSE_PROGRESSION
        assert (rec["t_response_min"], rec["t_response_max"]) == (0.0, 2.0)
        assert (rec["t_progression_min"], rec["t_progression_max"]) == (2.0, 5.0)

    def test_all_patterns(self, model, visits):
        mstate = visits_to_mstate(visits, model)
        assert list(mstate.columns) == list(MSTATE_COLUMNS)
        assert list(mstate["subject_id"]) == ["s1", "s2", "s3", "s4", "s5"]

        s2 = _record(mstate, "s2")
        assert s2["pattern"] == CENSORED_STABLE
        assert (s2["t_response_min"], s2["t_response_max"]) == (3.0, INF)
        assert (s2["t_progression_min"], s2["t_progression_max"]) == (3.0, INF)

        s3 = _record(mstate, "s3")
        assert s3["pattern"] == CENSORED_RESPONSE
        assert (s3["t_response_min"], s3["t_response_max"]) == (0.0, 2.0)
        assert (s3["t_progression_min"], s3["t_progression_max"]) == (4.0, INF)

        s4 = _record(mstate, "s4")
        assert s4["pattern"] == DIRECT_PROGRESSION
        assert s4["t_recruitment"] == 1.0
        assert (s4["t_progression_min"], s4["t_progression_max"]) == (0.0, 2.0)
        assert (s4["t_response_min"], s4["t_response_max"]) == (2.0, INF)

        s5 = _record(mstate, "s5")
        assert s5["pattern"] == CENSORED_RESPONSE
        assert s5["t_recruitment"] == 2.0
        assert (s5["t_response_min"], s5["t_response_max"]) == (2.0, 4.0)

    def test_response_before_progression(self, model, visits):
        mstate = visits_to_mstate(visits, model)
        both = mstate[mstate["pattern"] == RESPONSE_PROGRESSION]
        assert np.all(both["t_response_max"] <= both["t_progression_min"])

    def test_groups_follow_model_order(self, model, visits):
        shuffled = visits.iloc[::-1].reset_index(drop=True)
        mstate = visits_to_mstate(shuffled, model)
        assert list(mstate["group_id"]) == ["A", "A", "A", "B", "B"]

    def test_unsorted_visits(self, single_model):
        visits = _visits([
            ("x", "A", 5.0, "progression"),
            ("x", "A", 0.0, "stable"),
            ("x", "A", 2.0, "response"),
        ])
        rec = _record(visits_to_mstate(visits, single_model), "x")
        assert rec["pattern"] == RESPONSE_PROGRESSION

    def test_duplicate_time_keeps_most_advanced_state(self, single_model):
        visits = _visits([
            ("x", "A", 0.0, "stable"),
            ("x", "A", 3.0, "stable"),
            ("x", "A", 3.0, "response"),
        ])
        rec = _record(visits_to_mstate(visits, single_model), "x")
        assert rec["pattern"] == CENSORED_RESPONSE
        assert (rec["t_response_min"], rec["t_response_max"]) == (0.0, 3.0)

    def test_single_stable_visit(self, single_model):
        visits = _visits([("x", "A", 4.0, "stable")])
        rec = _record(visits_to_mstate(visits, single_model), "x")
        assert rec["pattern"] == CENSORED_STABLE
        assert rec["t_recruitment"] == 4.0
        assert rec["t_progression_min"] == 0.0


# =====================================================================
# Validation
# =====================================================================


class TestCheckVisits:
    """Malformed input is rejected with MalformedVisitData."""

    def test_empty_table(self, single_model):
        with pytest.raises(MalformedVisitData, match="no visits"):
            visits_to_mstate(_visits([]), single_model)

    def test_not_a_dataframe(self, single_model):
        with pytest.raises(MalformedVisitData, match="DataFrame"):
            check_visits([("x", "A", 0.0, "stable")], single_model)

    def test_missing_columns(self, single_model):
        df = pd.DataFrame({"subject_id": ["x"], "t": [0.0]})
        with pytest.raises(MalformedVisitData, match="lacks columns"):
            check_visits(df, single_model)

    @pytest.mark.parametrize(
        "rows, pattern",
        [
            ([("x", "A", -1.0, "stable")], "negative"),
            ([("x", "A", float("nan"), "stable")], "non-finite"),
            ([("x", "A", 0.0, "dead")], "Unknown states"),
            ([("x", "Z", 0.0, "stable")], "not defined"),
            ([("x", "A", 0.0, "response")], "first visit"),
            (
                [("x", "A", 0.0, "stable"), ("x", "A", 1.0, "progression"),
                 ("x", "A", 2.0, "response")],
                "non-monotonic",
            ),
        ],
    )
    def test_invalid(self, single_model, rows, pattern):
        with pytest.raises(MalformedVisitData, match=pattern):
            visits_to_mstate(_visits(rows), single_model)

    def test_subject_in_two_groups(self, model):
        visits = _visits([("x", "A", 0.0, "stable"), ("x", "B", 1.0, "stable")])
        with pytest.raises(MalformedVisitData, match="several groups"):
            check_visits(visits, model)

    def test_adds_state_code(self, model, visits):
        checked = check_visits(visits, model)
        assert set(checked["state_code"]) == {0, 1, 2}
        assert len(checked) == len(visits)


# =====================================================================
# Re-censoring
# =====================================================================


class TestCensorMstate:
    """Interim cutoffs applied to multi-state records."""

    def test_interim_cutoff(self, model, visits):
        mstate = visits_to_mstate(visits, model, now=4.0)

        s1 = _record(mstate, "s1")
        assert s1["pattern"] == CENSORED_RESPONSE
        assert (s1["t_response_min"], s1["t_response_max"]) == (0.0, 2.0)
        assert (s1["t_progression_min"], s1["t_progression_max"]) == (2.0, INF)

        s4 = _record(mstate, "s4")
        assert s4["pattern"] == DIRECT_PROGRESSION

        s5 = _record(mstate, "s5")
        assert s5["pattern"] == CENSORED_STABLE
        assert (s5["t_progression_min"], s5["t_progression_max"]) == (2.0, INF)

    def test_equals_censoring_full_records(self, model, visits):
        full = visits_to_mstate(visits, model)
        for now in (0.5, 2.0, 3.0, 4.5, 10.0):
            pd.testing.assert_frame_equal(
                visits_to_mstate(visits, model, now=now), censor_mstate(full, now),
            )

    def test_drops_late_recruits(self, model, visits):
        mstate = visits_to_mstate(visits, model, now=0.5)
        assert list(mstate["subject_id"]) == ["s1", "s2", "s3"]
        assert set(mstate["pattern"]) == {CENSORED_STABLE}

    @pytest.mark.parametrize("now1, now2", [(10.0, 4.0), (4.0, 3.0), (5.0, 2.5), (3.0, 3.0)])
    def test_idempotent(self, model, visits, now1, now2):
        full = visits_to_mstate(visits, model)
        twice = censor_mstate(censor_mstate(full, now1), now2)
        pd.testing.assert_frame_equal(twice, censor_mstate(full, now2))

    def test_late_cutoff_changes_nothing(self, model, visits):
        full = visits_to_mstate(visits, model)
        pd.testing.assert_frame_equal(censor_mstate(full, 100.0), full)

    def test_unknown_pattern(self, model, visits):
        full = visits_to_mstate(visits, model)
        full.loc[0, "pattern"] = "lost"
        with pytest.raises(MalformedVisitData, match="Unknown patterns"):
            censor_mstate(full, 3.0)
