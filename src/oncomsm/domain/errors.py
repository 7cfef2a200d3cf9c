"""Error taxonomy for the multi-state model.

Construction and data errors are raised at the boundary where they are
detected.  Numerical problems inside a single likelihood evaluation are
absorbed by the likelihood engine (reported as ``-inf``) unless strict
evaluation is requested.
"""

from __future__ import annotations


class OncomsmError(Exception):
    """Base class for all package errors."""


class InvalidPriorSpec(OncomsmError, ValueError):
    """Prior hyperparameters or model definition violate a constraint."""


class MalformedVisitData(OncomsmError, ValueError):
    """Subject-level visit records cannot be turned into interval records."""


class NumericalInstability(OncomsmError, ArithmeticError):
    """A log-density evaluation overflowed, underflowed or degenerated."""


class SamplingError(OncomsmError, RuntimeError):
    """The sampler failed to produce a usable parameter sample."""


class SamplingDivergence(UserWarning):
    """Fraction of divergent transitions exceeded the tolerated threshold.

    Issued through :func:`warnings.warn`; the returned sample carries the
    divergence count so callers can decide whether to trust it.
    """


class DecisionRuleError(OncomsmError, RuntimeError):
    """A decision function failed or returned an unusable verdict."""
