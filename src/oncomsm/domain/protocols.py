"""Protocol interfaces at the boundaries of the multi-state model.

Using :class:`typing.Protocol` enables structural subtyping -- a sampler
or decision rule does not need to inherit from these classes.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, runtime_checkable

import numpy as np
import pandas as pd

from oncomsm.domain.models import SamplerResult, SRPModel


@runtime_checkable
class LogDensityProtocol(Protocol):
    """Log-density over an unconstrained parameter vector."""

    @property
    def dim(self) -> int:
        """Number of unconstrained parameters."""
        ...

    def __call__(self, theta: np.ndarray) -> float:
        """Evaluate the log-density; ``-inf`` marks a rejected point."""
        ...

    def gradient(self, theta: np.ndarray) -> np.ndarray:
        """Gradient of the log-density with respect to *theta*."""
        ...

    def initial_point(self, rng: np.random.Generator, jitter: float = 0.1) -> np.ndarray:
        """Return a starting point for a chain."""
        ...


@runtime_checkable
class SamplerProtocol(Protocol):
    """Draw parameter vectors from a log-density.

    Implementations treat one call as a synchronous operation returning
    either a full :class:`SamplerResult` or raising.
    """

    def sample(
        self,
        log_density: LogDensityProtocol,
        seed: int | np.random.SeedSequence,
        n_draws: int,
        n_chains: int,
    ) -> SamplerResult:
        """Return *n_draws* draws pooled over *n_chains* chains.

        Parameters
        ----------
        log_density:
            Target log-density on the unconstrained scale.
        seed:
            Master seed; chain seeds are derived from it.
        n_draws:
            Total number of retained draws.
        n_chains:
            Number of independent chains.

        Returns
        -------
        SamplerResult
            Draws of shape ``(n_draws, log_density.dim)`` and diagnostics.
        """
        ...


@runtime_checkable
class DecisionFunction(Protocol):
    """User-supplied decision rule.

    Receives the model and the (possibly combined interim + simulated)
    visit table and returns a table with columns ``group_id`` and ``go``
    or a mapping ``group_id -> bool``.
    """

    def __call__(
        self, model: SRPModel, data: pd.DataFrame,
    ) -> pd.DataFrame | Mapping[str, Any]:
        ...
