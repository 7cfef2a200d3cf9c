"""Domain models for the oncology multi-state model.

All models are frozen dataclasses to enforce immutability.  Tables that
cross the package boundary (visits, interval records, parameter draws)
are pandas DataFrames; the dataclasses here wrap or describe them.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import numpy as np
import pandas as pd
import yaml


# ---------------------------------------------------------------------------
# Structural constants
# ---------------------------------------------------------------------------

STABLE = "stable"
RESPONSE = "response"
PROGRESSION = "progression"

STATES: tuple[str, ...] = (STABLE, RESPONSE, PROGRESSION)
STATE_ORDER: dict[str, int] = {state: i for i, state in enumerate(STATES)}

# Transition index -> (from, to).  Index 1 = stable->response,
# 2 = stable->progression, 3 = response->progression.
TRANSITIONS: dict[int, tuple[str, str]] = {
    1: (STABLE, RESPONSE),
    2: (STABLE, PROGRESSION),
    3: (RESPONSE, PROGRESSION),
}
N_TRANSITIONS = len(TRANSITIONS)

# Censoring patterns of a multi-state record
CENSORED_STABLE = "censored_stable"
CENSORED_RESPONSE = "censored_response"
RESPONSE_PROGRESSION = "response_progression"
DIRECT_PROGRESSION = "direct_progression"

PATTERNS: tuple[str, ...] = (
    CENSORED_STABLE,
    CENSORED_RESPONSE,
    RESPONSE_PROGRESSION,
    DIRECT_PROGRESSION,
)

VISIT_COLUMNS: tuple[str, ...] = ("subject_id", "group_id", "t", "state")
MSTATE_COLUMNS: tuple[str, ...] = (
    "subject_id",
    "group_id",
    "t_recruitment",
    "pattern",
    "t_response_min",
    "t_response_max",
    "t_progression_min",
    "t_progression_max",
)

PARAMETER_NAMES: tuple[str, ...] = (
    "p",
    "median_1", "median_2", "median_3",
    "shape_1", "shape_2", "shape_3",
    "scale_1", "scale_2", "scale_3",
)

_LN2 = math.log(2.0)


def _empty_dict() -> dict[str, Any]:
    """Return an empty dictionary."""
    return {}


# ---------------------------------------------------------------------------
# Priors and model container
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GroupPrior:
    """Hyperparameters of one trial arm.

    The user-facing quantile inputs are kept next to the solved
    log-normal ``(mu, sigma)`` pairs so that a prior can be displayed in
    the terms it was specified in.
    """

    p_mean: float = 0.5
    p_n: float = 1.0
    eta: float = 0.05
    median_t_q05: tuple[float, float, float] = (1.0, 1.0, 1.0)
    median_t_q95: tuple[float, float, float] = (10.0, 10.0, 10.0)
    shape_q05: tuple[float, float, float] = (0.9, 0.9, 0.9)
    shape_q95: tuple[float, float, float] = (1.1, 1.1, 1.1)
    recruitment_rate: float = 1.0
    median_mu: tuple[float, float, float] = (0.0, 0.0, 0.0)
    median_sigma: tuple[float, float, float] = (1.0, 1.0, 1.0)
    shape_mu: tuple[float, float, float] = (0.0, 0.0, 0.0)
    shape_sigma: tuple[float, float, float] = (1.0, 1.0, 1.0)

    @property
    def p_alpha(self) -> float:
        """First Beta shape parameter, ``p_mean * p_n``."""
        return self.p_mean * self.p_n

    @property
    def p_beta(self) -> float:
        """Second Beta shape parameter, ``(1 - p_mean) * p_n``."""
        return (1.0 - self.p_mean) * self.p_n

    @property
    def n_transitions(self) -> int:
        return len(self.median_mu)


@dataclass(frozen=True)
class SRPModel:
    """Stable-response-progression model over one or more named groups.

    Group order is the order of definition and is used for display and
    for every table the package produces.
    """

    group_ids: tuple[str, ...] = ()
    priors: tuple[GroupPrior, ...] = ()
    states: tuple[str, ...] = STATES

    def __len__(self) -> int:
        return len(self.group_ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self.group_ids)

    def __contains__(self, group_id: object) -> bool:
        return group_id in self.group_ids

    def __getitem__(self, group_id: str) -> GroupPrior:
        try:
            return self.priors[self.group_ids.index(group_id)]
        except ValueError:
            raise KeyError(f"Unknown group: {group_id!r}") from None

    def items(self) -> list[tuple[str, GroupPrior]]:
        """Return ``(group_id, prior)`` pairs in definition order."""
        return list(zip(self.group_ids, self.priors))

    def summary_frame(self) -> pd.DataFrame:
        """Tabulate the user-facing hyperparameters, one row per group."""
        rows = []
        for group_id, prior in self.items():
            row: dict[str, Any] = {
                "group_id": group_id,
                "p_mean": prior.p_mean,
                "p_n": prior.p_n,
                "eta": prior.eta,
                "recruitment_rate": prior.recruitment_rate,
            }
            for i in range(prior.n_transitions):
                row[f"median_t_{i + 1}"] = (
                    f"[{prior.median_t_q05[i]:g}, {prior.median_t_q95[i]:g}]"
                )
                row[f"shape_{i + 1}"] = (
                    f"[{prior.shape_q05[i]:g}, {prior.shape_q95[i]:g}]"
                )
            rows.append(row)
        return pd.DataFrame(rows)

    def __str__(self) -> str:
        header = f"SRPModel with {len(self)} group(s)"
        if not self.group_ids:
            return header
        return header + "\n" + self.summary_frame().to_string(index=False)


# ---------------------------------------------------------------------------
# Parameters and samples
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GroupParameters:
    """One parameter draw for one group."""

    p: float = 0.5
    median: tuple[float, float, float] = (1.0, 1.0, 1.0)
    shape: tuple[float, float, float] = (1.0, 1.0, 1.0)

    @property
    def scale(self) -> tuple[float, float, float]:
        """Weibull scale implied by median and shape."""
        return tuple(
            m / _LN2 ** (1.0 / k) for m, k in zip(self.median, self.shape)
        )  # type: ignore[return-value]

    def as_dict(self) -> dict[str, float]:
        """Flatten to the names used in parameter sample tables."""
        out = {"p": float(self.p)}
        scale = self.scale
        for i in range(N_TRANSITIONS):
            out[f"median_{i + 1}"] = float(self.median[i])
            out[f"shape_{i + 1}"] = float(self.shape[i])
            out[f"scale_{i + 1}"] = float(scale[i])
        return out

    def replace(self, **overrides: float) -> GroupParameters:
        """Return a copy with flat-named parameters overridden.

        ``overrides`` uses the table names, e.g. ``p=0.4, median_1=3.0``.
        Scales are derived and cannot be overridden.
        """
        p = float(overrides.pop("p", self.p))
        median = list(self.median)
        shape = list(self.shape)
        for key, value in overrides.items():
            kind, _, idx = key.partition("_")
            if kind not in ("median", "shape") or idx not in ("1", "2", "3"):
                raise KeyError(f"Cannot override parameter {key!r}")
            target = median if kind == "median" else shape
            target[int(idx) - 1] = float(value)
        return GroupParameters(p=p, median=tuple(median), shape=tuple(shape))

    @classmethod
    def from_dict(cls, values: dict[str, float]) -> GroupParameters:
        """Inverse of :meth:`as_dict` (scales are ignored)."""
        return cls(
            p=float(values["p"]),
            median=tuple(float(values[f"median_{i}"]) for i in (1, 2, 3)),
            shape=tuple(float(values[f"shape_{i}"]) for i in (1, 2, 3)),
        )


@dataclass(frozen=True)
class SamplerResult:
    """Raw output of a sampler run on the unconstrained scale."""

    draws: np.ndarray = field(default_factory=lambda: np.empty((0, 0)))
    n_divergent: int = 0
    n_chains: int = 1
    acceptance_rate: float = float("nan")
    rhat: np.ndarray = field(default_factory=lambda: np.empty(0))


@dataclass(frozen=True)
class ParameterSample:
    """Parameter draws in long format.

    ``frame`` has columns ``draw_index``, ``group_id``, ``parameter`` and
    ``value``.  ``source`` is ``"prior"`` or ``"posterior"``.
    """

    frame: pd.DataFrame
    source: str = "prior"
    n_divergent: int = 0
    n_chains: int = 1
    rhat: dict[str, float] = field(default_factory=_empty_dict)
    _wide: pd.DataFrame = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        wide = self.frame.pivot_table(
            index=["draw_index", "group_id"], columns="parameter",
            values="value", aggfunc="first", sort=True,
        )
        object.__setattr__(self, "_wide", wide)

    @property
    def n_draws(self) -> int:
        return int(self.frame["draw_index"].nunique())

    @property
    def group_ids(self) -> list[str]:
        return list(pd.unique(self.frame["group_id"]))

    def to_frame(self) -> pd.DataFrame:
        """Return a copy of the long-format table."""
        return self.frame.copy()

    def wide(self, group_id: str | None = None) -> pd.DataFrame:
        """One row per draw (and group), one column per parameter."""
        table = self._wide.reset_index()
        table.columns.name = None
        if group_id is not None:
            table = table[table["group_id"] == group_id].reset_index(drop=True)
        return table

    def get(self, draw_index: int) -> dict[str, GroupParameters]:
        """Return the parameters of every group for one draw."""
        block = self._wide.xs(draw_index, level="draw_index")
        return {
            str(group_id): GroupParameters.from_dict(row.to_dict())
            for group_id, row in block.iterrows()
        }

    @property
    def draw_indices(self) -> np.ndarray:
        return np.sort(self.frame["draw_index"].unique())


# ---------------------------------------------------------------------------
# Infrastructure configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AppConfig:
    """Layered configuration for sampling, quadrature and simulation.

    Layers are applied in order, later ones winning key by key while
    nested sections are merged:

      1. ``config/default.yaml``
      2. an optional overlay file
      3. environment variables prefixed with ``ONCOMSM_``
    """

    data: dict[str, Any] = field(default_factory=_empty_dict)

    @classmethod
    def load(
        cls,
        default_path: str | Path = "config/default.yaml",
        overlay_path: str | Path | None = None,
        env_prefix: str = "ONCOMSM_",
    ) -> AppConfig:
        """Build the configuration from its layers.

        Parameters
        ----------
        default_path:
            Base YAML file; a missing file contributes nothing.
        overlay_path:
            Optional YAML file merged over the base.
        env_prefix:
            Prefix of environment overrides.  ``ONCOMSM_SAMPLER__N_DRAWS=2000``
            sets ``sampler.n_draws``; values are parsed as YAML scalars.

        Raises
        ------
        ValueError
            When a configuration file does not hold a mapping.
        """
        layers = [_read_layer(default_path)]
        if overlay_path is not None:
            layers.append(_read_layer(overlay_path))
        layers.append(_environment_layer(env_prefix))

        merged: dict[str, Any] = {}
        for layer in layers:
            merged = _merge(merged, layer)
        return cls(data=merged)

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """Value at a dotted path such as ``sampler.n_draws``, else *default*."""
        node: Any = self.data
        for part in dotted_key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node


def _read_layer(path: str | Path) -> dict[str, Any]:
    path = Path(path)
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        content = yaml.safe_load(fh)
    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ValueError(
            f"Configuration file {path} must hold a mapping, got {type(content).__name__}"
        )
    return content


def _environment_layer(prefix: str) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(os.environ):
        if not key.startswith(prefix) or key == f"{prefix}CONFIG":
            continue
        *sections, leaf = key[len(prefix):].lower().split("__")
        node = layer
        for section in sections:
            node = node.setdefault(section, {})
        node[leaf] = _parse_scalar(os.environ[key])
    return layer


def _parse_scalar(text: str) -> Any:
    try:
        value = yaml.safe_load(text)
    except yaml.YAMLError:
        return text
    return text if isinstance(value, (dict, list)) or value is None else value


def _merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in overlay.items():
        current = out.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            out[key] = _merge(current, value)
        else:
            out[key] = value
    return out
