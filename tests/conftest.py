"""Shared pytest fixtures for the oncomsm test suite."""

from __future__ import annotations

import pandas as pd
import pytest

from oncomsm.config.settings import get_typed_config
from oncomsm.domain.models import GroupParameters, GroupPrior, SRPModel
from oncomsm.engine.model import create_srpmodel
from oncomsm.engine.prior import define_srp_prior


# ---------------------------------------------------------------------------
# Configuration isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch: pytest.MonkeyPatch):
    """Drop cached configuration and ONCOMSM_ overrides around every test."""
    import os

    for key in list(os.environ):
        if key.startswith("ONCOMSM_"):
            monkeypatch.delenv(key, raising=False)
    get_typed_config.cache_clear()
    yield
    get_typed_config.cache_clear()


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def prior_a() -> GroupPrior:
    """Group prior with mean response probability 0.3."""
    return define_srp_prior(
        p_mean=0.3,
        p_n=10,
        median_t_q05=(1.0, 2.0, 2.0),
        median_t_q95=(8.0, 16.0, 24.0),
    )


@pytest.fixture()
def prior_b() -> GroupPrior:
    """Group prior with mean response probability 0.5."""
    return define_srp_prior(p_mean=0.5, p_n=10)


@pytest.fixture()
def model(prior_a: GroupPrior, prior_b: GroupPrior) -> SRPModel:
    """Two-group model (A, B)."""
    return create_srpmodel(A=prior_a, B=prior_b)


@pytest.fixture()
def single_model(prior_a: GroupPrior) -> SRPModel:
    """One-group model (A)."""
    return create_srpmodel(A=prior_a)


@pytest.fixture()
def group_params() -> GroupParameters:
    """A plausible parameter draw."""
    return GroupParameters(p=0.4, median=(3.0, 4.0, 6.0), shape=(1.2, 1.0, 1.5))


# ---------------------------------------------------------------------------
# Visit data fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def visits() -> pd.DataFrame:
    """Visit table covering all four censoring patterns.

    ========  =====  ==========  ====================================
    subject   group  recruited   course
    ========  =====  ==========  ====================================
    s1        A      0           response at 2, progression at 5
    s2        A      0           stable through 3
    s3        A      0           response at 2, still responding at 4
    s4        B      1           progression at 3 (directly)
    s5        B      2           response at 6
    ========  =====  ==========  ====================================
    """
    rows = [
        ("s1", "A", 0.0, "stable"),
        ("s1", "A", 2.0, "response"),
        ("s1", "A", 5.0, "progression"),
        ("s2", "A", 0.0, "stable"),
        ("s2", "A", 1.5, "stable"),
        ("s2", "A", 3.0, "stable"),
        ("s3", "A", 0.0, "stable"),
        ("s3", "A", 2.0, "response"),
        ("s3", "A", 4.0, "response"),
        ("s4", "B", 1.0, "stable"),
        ("s4", "B", 3.0, "progression"),
        ("s5", "B", 2.0, "stable"),
        ("s5", "B", 4.0, "stable"),
        ("s5", "B", 6.0, "response"),
    ]
    return pd.DataFrame(rows, columns=["subject_id", "group_id", "t", "state"])
