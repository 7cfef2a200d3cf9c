"""Multi-state model engine -- priors, likelihood, sampling, and simulation.

This package implements the computational core:

- **Priors**: quantile-based log-normal priors for Weibull medians and
  shapes and a robust Beta mixture for the response probability.
- **Transformation**: visit logs to interval-censored multi-state
  records, with re-censoring at an interim analysis time.
- **Likelihood**: per-pattern interval-censored contributions with
  Gauss-Legendre quadrature over the unobserved response time.
- **Sampling**: prior draws and emcee ensemble posterior sampling.
- **Simulation**: prior/posterior predictive visit data, continuation of
  interim data, and decision-rule evaluation over replicate trials.
"""

from __future__ import annotations

from oncomsm.engine.decision import (
    go_probability,
    normalize_decision,
    simulate_decision_rule,
)
from oncomsm.engine.likelihood import (
    GroupData,
    group_log_likelihood,
    log_likelihood,
    subject_log_likelihood,
)
from oncomsm.engine.model import create_srpmodel, format_model, load_model_config
from oncomsm.engine.mstate import censor_mstate, check_visits, visits_to_mstate
from oncomsm.engine.prior import (
    define_srp_prior,
    lognormal_from_quantiles,
    lognormal_quantile,
    log_prior_density,
    sample_group_prior,
)
from oncomsm.engine.sampler import (
    EnsembleSampler,
    SRPLogDensity,
    chain_rhat,
    sample_posterior,
    sample_prior,
)
from oncomsm.engine.simulation import (
    impute_trajectories,
    sample_predictive,
    simulate_recruitment,
)
from oncomsm.engine.summary import compute_pfs, pfs_curve, summarize_parameter_sample

__all__ = [
    # Priors and model
    "define_srp_prior",
    "lognormal_from_quantiles",
    "lognormal_quantile",
    "log_prior_density",
    "sample_group_prior",
    "create_srpmodel",
    "format_model",
    "load_model_config",
    # Data transformation
    "check_visits",
    "visits_to_mstate",
    "censor_mstate",
    # Likelihood
    "GroupData",
    "group_log_likelihood",
    "log_likelihood",
    "subject_log_likelihood",
    # Sampling
    "EnsembleSampler",
    "SRPLogDensity",
    "sample_prior",
    "sample_posterior",
    "chain_rhat",
    # Simulation
    "simulate_recruitment",
    "sample_predictive",
    "impute_trajectories",
    "simulate_decision_rule",
    "normalize_decision",
    "go_probability",
    # Summaries
    "compute_pfs",
    "pfs_curve",
    "summarize_parameter_sample",
]
