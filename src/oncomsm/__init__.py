"""Bayesian semi-Markov multi-state models for early oncology trials.

Fits a three-state (stable, response, progression) model with Weibull
transition times to interval-censored visit data, and simulates trial
outcomes and decision rules from prior or posterior samples.
"""

from __future__ import annotations

__version__ = "0.1.0"

from oncomsm.engine import (  # noqa: E402
    compute_pfs,
    create_srpmodel,
    define_srp_prior,
    log_likelihood,
    sample_posterior,
    sample_predictive,
    sample_prior,
    simulate_decision_rule,
    summarize_parameter_sample,
    visits_to_mstate,
)

__all__ = [
    "__version__",
    "compute_pfs",
    "create_srpmodel",
    "define_srp_prior",
    "log_likelihood",
    "sample_posterior",
    "sample_predictive",
    "sample_prior",
    "simulate_decision_rule",
    "summarize_parameter_sample",
    "visits_to_mstate",
]
