"""Domain layer -- models, errors, and protocols.

Re-exports all public domain types for convenient access::

    from oncomsm.domain import SRPModel, GroupPrior, MalformedVisitData
"""

from __future__ import annotations

from oncomsm.domain.errors import (
    DecisionRuleError,
    InvalidPriorSpec,
    MalformedVisitData,
    NumericalInstability,
    OncomsmError,
    SamplingDivergence,
    SamplingError,
)
from oncomsm.domain.models import (
    CENSORED_RESPONSE,
    CENSORED_STABLE,
    DIRECT_PROGRESSION,
    MSTATE_COLUMNS,
    PARAMETER_NAMES,
    PATTERNS,
    PROGRESSION,
    RESPONSE,
    RESPONSE_PROGRESSION,
    STABLE,
    STATES,
    TRANSITIONS,
    VISIT_COLUMNS,
    AppConfig,
    GroupParameters,
    GroupPrior,
    ParameterSample,
    SamplerResult,
    SRPModel,
)
from oncomsm.domain.protocols import (
    DecisionFunction,
    LogDensityProtocol,
    SamplerProtocol,
)

__all__ = [
    # Models
    "AppConfig",
    "GroupParameters",
    "GroupPrior",
    "ParameterSample",
    "SamplerResult",
    "SRPModel",
    # Constants
    "CENSORED_RESPONSE",
    "CENSORED_STABLE",
    "DIRECT_PROGRESSION",
    "MSTATE_COLUMNS",
    "PARAMETER_NAMES",
    "PATTERNS",
    "PROGRESSION",
    "RESPONSE",
    "RESPONSE_PROGRESSION",
    "STABLE",
    "STATES",
    "TRANSITIONS",
    "VISIT_COLUMNS",
    # Errors
    "DecisionRuleError",
    "InvalidPriorSpec",
    "MalformedVisitData",
    "NumericalInstability",
    "OncomsmError",
    "SamplingDivergence",
    "SamplingError",
    # Protocols
    "DecisionFunction",
    "LogDensityProtocol",
    "SamplerProtocol",
]
