"""Model container construction.

:func:`create_srpmodel` assembles named group priors into an immutable
:class:`~oncomsm.domain.models.SRPModel`.  Models can also be read from a
YAML document with :func:`load_model_config`::

    groups:
      A:
        p_mean: 0.3
        p_n: 10
        median_t_q05: [1, 1, 2]
        median_t_q95: [6, 12, 24]
      B:
        p_mean: 0.4
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

import yaml

from oncomsm.domain.errors import InvalidPriorSpec
from oncomsm.domain.models import N_TRANSITIONS, STATES, GroupPrior, SRPModel
from oncomsm.engine.prior import define_srp_prior

logger = logging.getLogger(__name__)


def create_srpmodel(
    groups: Mapping[str, GroupPrior] | None = None, **group_priors: GroupPrior,
) -> SRPModel:
    """Create an immutable stable-response-progression model.

    Groups are passed either as keyword arguments (``A=prior_a``) or as a
    mapping; definition order is preserved.

    Raises
    ------
    InvalidPriorSpec
        If no group is given, a name is empty or repeated, or a value is
        not a :class:`GroupPrior` with three transitions.
    """
    pairs: list[tuple[str, Any]] = []
    if groups is not None:
        pairs.extend(groups.items())
    pairs.extend(group_priors.items())

    if not pairs:
        raise InvalidPriorSpec("A model requires at least one group")

    names: list[str] = []
    priors: list[GroupPrior] = []
    for name, prior in pairs:
        if not isinstance(name, str) or not name.strip():
            raise InvalidPriorSpec(f"Group names must be non-empty strings, got {name!r}")
        if name in names:
            raise InvalidPriorSpec(f"Duplicate group name: {name!r}")
        if not isinstance(prior, GroupPrior):
            raise InvalidPriorSpec(
                f"Group {name!r} must be a GroupPrior, got {type(prior).__name__}"
            )
        if prior.n_transitions != N_TRANSITIONS:
            raise InvalidPriorSpec(
                f"Group {name!r} defines {prior.n_transitions} transitions, "
                f"expected {N_TRANSITIONS}"
            )
        names.append(name)
        priors.append(prior)

    logger.debug("Created model with groups %s", names)
    return SRPModel(group_ids=tuple(names), priors=tuple(priors), states=STATES)


def format_model(model: SRPModel) -> str:
    """Render a tabular summary of the model (same as ``str(model)``)."""
    return str(model)


def load_model_config(path: str | Path) -> SRPModel:
    """Build a model from a YAML file with a top-level ``groups`` mapping.

    Each group entry holds keyword arguments of
    :func:`~oncomsm.engine.prior.define_srp_prior`; an empty entry uses
    the defaults.
    """
    with open(path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    groups = raw.get("groups")
    if not isinstance(groups, dict) or not groups:
        raise InvalidPriorSpec(f"{path}: expected a non-empty 'groups' mapping")

    priors: dict[str, GroupPrior] = {}
    for name, kwargs in groups.items():
        try:
            priors[str(name)] = define_srp_prior(**(kwargs or {}))
        except TypeError as exc:
            raise InvalidPriorSpec(f"{path}: group {name!r}: {exc}") from exc
    return create_srpmodel(priors)
