"""Prior and posterior sampling.

Prior draws come directly from the group prior distributions.  Posterior
draws are obtained per group (groups share no parameters) through any
object satisfying :class:`~oncomsm.domain.protocols.SamplerProtocol`.
The default :class:`EnsembleSampler` runs :mod:`emcee` ensembles on the
unconstrained scale ``(logit p, log median_1..3, log shape_1..3)`` and
checks convergence with :func:`arviz.rhat`.
"""

from __future__ import annotations

import logging
import math
import time
import warnings

import arviz as az
import emcee
import numpy as np
import pandas as pd
from scipy.optimize import approx_fprime, minimize
from scipy.special import expit, logit

from oncomsm.config.settings import config_value
from oncomsm.domain.errors import SamplingDivergence, SamplingError
from oncomsm.domain.models import (
    N_TRANSITIONS,
    PARAMETER_NAMES,
    GroupParameters,
    GroupPrior,
    ParameterSample,
    SamplerResult,
    SRPModel,
)
from oncomsm.domain.protocols import LogDensityProtocol, SamplerProtocol
from oncomsm.engine import weibull
from oncomsm.engine.likelihood import GroupData, group_log_likelihood
from oncomsm.engine.mstate import censor_mstate, visits_to_mstate
from oncomsm.engine.prior import log_prior_density, sample_group_prior
from oncomsm.engine.rng import Seed, child_seed, make_rng

logger = logging.getLogger(__name__)

_DIM = 1 + 2 * N_TRANSITIONS
_PENALTY = 1e10
_MODE_BOX = 10.0
_RHAT_WARN = 1.05


# ---------------------------------------------------------------------------
# Log-density
# ---------------------------------------------------------------------------


class SRPLogDensity:
    """Unnormalised log-posterior of one group on the unconstrained scale.

    Without data this is the log prior (including the log-Jacobian of the
    transformation), so the same sampler can target prior or posterior.
    """

    parameter_names: tuple[str, ...] = (
        "logit_p",
        "log_median_1", "log_median_2", "log_median_3",
        "log_shape_1", "log_shape_2", "log_shape_3",
    )

    def __init__(
        self, prior: GroupPrior, data: GroupData | None = None, order: int | None = None,
    ) -> None:
        self.prior = prior
        self.data = data
        self.order = order

    @property
    def dim(self) -> int:
        return _DIM

    @staticmethod
    def to_parameters(theta: np.ndarray) -> GroupParameters:
        """Map an unconstrained vector to natural-scale parameters."""
        theta = np.asarray(theta, dtype=np.float64)
        with np.errstate(over="ignore"):
            return GroupParameters(
                p=float(expit(theta[0])),
                median=tuple(float(v) for v in np.exp(theta[1:4])),
                shape=tuple(float(v) for v in np.exp(theta[4:7])),
            )

    def __call__(self, theta: np.ndarray) -> float:
        theta = np.asarray(theta, dtype=np.float64)
        if not np.all(np.isfinite(theta)):
            return float("-inf")
        params = self.to_parameters(theta)
        lp = log_prior_density(self.prior, params)
        if not math.isfinite(lp):
            return float("-inf")
        # log-Jacobian of logit / log transforms
        lp += math.log(params.p) + math.log1p(-params.p) + float(np.sum(theta[1:]))
        if self.data is not None:
            lp += group_log_likelihood(self.data, params, self.order)
        return lp if math.isfinite(lp) else float("-inf")

    def gradient(self, theta: np.ndarray) -> np.ndarray:
        """Forward-difference gradient."""
        return approx_fprime(np.asarray(theta, dtype=np.float64), self, 1e-6)

    def initial_point(self, rng: np.random.Generator, jitter: float = 0.1) -> np.ndarray:
        """Prior centre (mean of p, log-normal locations) plus Gaussian jitter."""
        centre = np.concatenate([
            [logit(self.prior.p_mean)],
            np.asarray(self.prior.median_mu),
            np.asarray(self.prior.shape_mu),
        ])
        return centre + jitter * rng.normal(size=_DIM)


# ---------------------------------------------------------------------------
# Default sampler
# ---------------------------------------------------------------------------


def chain_rhat(chains: np.ndarray) -> np.ndarray:
    """Rank-normalised split R-hat per dimension.

    *chains* has shape ``(chains, draws, dim)``; fewer than four draws per
    chain give ``nan``.
    """
    chains = np.asarray(chains, dtype=np.float64)
    if chains.shape[1] < 4:
        return np.full(chains.shape[2], np.nan)
    return np.array([float(az.rhat(chains[:, :, j])) for j in range(chains.shape[2])])


class EnsembleSampler:
    """Affine-invariant ensemble sampler built on :mod:`emcee`.

    Every chain is an independent ``emcee.EnsembleSampler`` whose walkers
    start in a small ball around the posterior mode, located once per
    call with L-BFGS-B on the log-density gradient.  Retained draws are
    thinned and R-hat is computed across chains.  Stretch moves have no
    divergent transitions, so ``n_divergent`` is always 0.

    Parameters
    ----------
    n_warmup:
        Discarded ensemble steps per chain (default from configuration).
    n_walkers:
        Walkers per ensemble; raised to ``2 * dim`` if smaller.
    thin:
        Ensemble steps per retained walker position.
    init_jitter:
        Standard deviation of the initial ball around the mode.
    max_init_tries:
        Redraws of walkers with a non-finite log-density before failing.
    """

    def __init__(
        self,
        n_warmup: int | None = None,
        n_walkers: int | None = None,
        thin: int | None = None,
        init_jitter: float | None = None,
        max_init_tries: int = 100,
    ) -> None:
        self.n_warmup = int(
            n_warmup if n_warmup is not None else config_value("sampler.n_warmup", 500)
        )
        self.n_walkers = int(
            n_walkers if n_walkers is not None else config_value("sampler.n_walkers", 16)
        )
        self.thin = int(thin if thin is not None else config_value("sampler.thin", 10))
        self.init_jitter = float(
            init_jitter if init_jitter is not None else config_value("sampler.init_jitter", 0.1)
        )
        self.max_init_tries = max_init_tries
        if self.n_warmup < 0 or self.thin < 1 or not self.init_jitter > 0:
            raise ValueError(
                f"Invalid sampler settings: n_warmup={self.n_warmup}, thin={self.thin}, "
                f"init_jitter={self.init_jitter}"
            )

    def sample(
        self,
        log_density: LogDensityProtocol,
        seed: Seed,
        n_draws: int,
        n_chains: int,
    ) -> SamplerResult:
        if n_draws < 1 or n_chains < 1:
            raise SamplingError(
                f"n_draws and n_chains must be positive, got {n_draws}, {n_chains}"
            )
        dim = log_density.dim
        n_walkers = max(self.n_walkers, 2 * dim)
        per_chain = math.ceil(n_draws / n_chains)
        n_steps = math.ceil(per_chain / n_walkers) * self.thin

        mode = self.find_mode(log_density, make_rng(seed))
        chains = []
        acceptance = []
        for chain in range(n_chains):
            ensemble = emcee.EnsembleSampler(n_walkers, dim, log_density)
            ensemble.random_state = np.random.RandomState(
                np.random.MT19937(child_seed(seed, chain, 1))
            ).get_state()
            start = self._initial_walkers(log_density, mode, n_walkers, make_rng(seed, chain, 0))
            state = start
            if self.n_warmup:
                state = ensemble.run_mcmc(start, self.n_warmup, progress=False)
            ensemble.reset()
            ensemble.run_mcmc(state, n_steps, progress=False)
            positions = ensemble.get_chain(thin=self.thin)
            chains.append(positions.reshape(-1, dim)[:per_chain])
            acceptance.append(float(np.mean(ensemble.acceptance_fraction)))

        stacked = np.stack(chains)
        return SamplerResult(
            draws=stacked.reshape(-1, dim)[:n_draws],
            n_divergent=0,
            n_chains=n_chains,
            acceptance_rate=float(np.mean(acceptance)),
            rhat=chain_rhat(stacked),
        )

    @staticmethod
    def find_mode(log_density: LogDensityProtocol, rng: np.random.Generator) -> np.ndarray:
        """Maximise the log-density from the default starting point.

        Falls back to the starting point when the optimiser fails or does
        not improve on it.
        """
        start = log_density.initial_point(rng, 0.0)
        best, best_lp = start, log_density(start)
        if not math.isfinite(best_lp):
            return start

        def objective(theta: np.ndarray) -> float:
            value = log_density(theta)
            return -value if math.isfinite(value) else _PENALTY

        def jacobian(theta: np.ndarray) -> np.ndarray:
            grad = -np.asarray(log_density.gradient(theta), dtype=np.float64)
            return np.where(np.isfinite(grad), grad, 0.0)

        bounds = [(v - _MODE_BOX, v + _MODE_BOX) for v in start]
        try:
            res = minimize(
                objective, start, jac=jacobian, method="L-BFGS-B", bounds=bounds,
                options={"maxiter": 200},
            )
        except (ValueError, RuntimeError) as exc:
            logger.debug("Mode search failed (%s); starting at the prior centre", exc)
            return best
        lp = log_density(res.x)
        if math.isfinite(lp) and lp > best_lp:
            best = res.x
        return best

    def _initial_walkers(
        self,
        log_density: LogDensityProtocol,
        centre: np.ndarray,
        n_walkers: int,
        rng: np.random.Generator,
    ) -> np.ndarray:
        walkers = centre + self.init_jitter * rng.normal(size=(n_walkers, len(centre)))
        for _ in range(self.max_init_tries):
            bad = [i for i, theta in enumerate(walkers) if not math.isfinite(log_density(theta))]
            if not bad:
                return walkers
            walkers[bad] = centre + self.init_jitter * rng.normal(size=(len(bad), len(centre)))
        raise SamplingError(
            f"No finite log-density for all walkers in {self.max_init_tries} attempts"
        )


# ---------------------------------------------------------------------------
# Parameter sample assembly
# ---------------------------------------------------------------------------


def _long_frame(
    group_id: str, p: np.ndarray, median: np.ndarray, shape: np.ndarray,
) -> pd.DataFrame:
    n = len(p)
    scale = weibull.weibull_scale(median, shape)
    values = np.column_stack([p, median, shape, scale])
    wide = pd.DataFrame(values, columns=list(PARAMETER_NAMES))
    wide.insert(0, "draw_index", np.arange(n))
    wide.insert(1, "group_id", group_id)
    return wide.melt(
        id_vars=["draw_index", "group_id"], var_name="parameter", value_name="value",
    )


def _assemble(frames: list[pd.DataFrame]) -> pd.DataFrame:
    frame = pd.concat(frames, ignore_index=True)
    return frame.sort_values(["draw_index"], kind="mergesort").reset_index(drop=True)


def sample_prior(model: SRPModel, n_draws: int | None = None, seed: Seed = 0) -> ParameterSample:
    """Draw directly from the prior of every group.

    Each group uses its own stream ``seed / group index``.
    """
    if n_draws is None:
        n_draws = int(config_value("simulation.n_draws_prior", 1000))
    frames = []
    for i, (group_id, prior) in enumerate(model.items()):
        draws = sample_group_prior(prior, n_draws, make_rng(seed, i))
        frames.append(_long_frame(group_id, draws["p"], draws["median"], draws["shape"]))
    logger.debug("Drew %d prior samples for %d groups", n_draws, len(model))
    return ParameterSample(frame=_assemble(frames), source="prior")


def _as_mstate(model: SRPModel, data: pd.DataFrame, now: float) -> pd.DataFrame:
    if "pattern" in data.columns:
        return censor_mstate(data, now) if math.isfinite(now) else data
    return visits_to_mstate(data, model, now=now)


def sample_posterior(
    model: SRPModel,
    data: pd.DataFrame,
    n_draws: int | None = None,
    seed: Seed = 0,
    now: float = math.inf,
    n_chains: int | None = None,
    sampler: SamplerProtocol | None = None,
    max_divergence_fraction: float | None = None,
    order: int | None = None,
) -> ParameterSample:
    """Sample the posterior given visit data or multi-state records.

    Parameters
    ----------
    model:
        Model container.
    data:
        Visit table or multi-state table (detected by a ``pattern``
        column).  Groups without subjects are drawn from their prior.
    n_draws, n_chains:
        Retained draws and chains (defaults from configuration).
    seed:
        Master seed; group ``i`` uses ``seed / i``.
    now:
        Analysis time used to censor *data*.
    sampler:
        Sampler implementation (default :class:`EnsembleSampler`).
    max_divergence_fraction:
        Tolerated fraction of divergent draws before a
        :class:`SamplingDivergence` warning is issued.
    order:
        Quadrature order for the likelihood.

    Raises
    ------
    SamplingError
        When the sampler fails.
    """
    n_draws = int(n_draws if n_draws is not None else config_value("sampler.n_draws", 1000))
    n_chains = int(n_chains if n_chains is not None else config_value("sampler.n_chains", 4))
    if max_divergence_fraction is None:
        max_divergence_fraction = float(config_value("sampler.max_divergence_fraction", 0.10))
    sampler = sampler if sampler is not None else EnsembleSampler()

    mstate = _as_mstate(model, data, now)
    frames = []
    n_divergent = 0
    n_sampled = 0
    rhat: dict[str, float] = {}
    for i, (group_id, prior) in enumerate(model.items()):
        group_data = GroupData.from_mstate(mstate, group_id)
        if group_data.n_subjects == 0:
            logger.info("Group %s has no data; drawing from the prior", group_id)
            draws = sample_group_prior(prior, n_draws, make_rng(seed, i))
            frames.append(_long_frame(group_id, draws["p"], draws["median"], draws["shape"]))
            continue

        log_density = SRPLogDensity(prior, group_data, order)
        start = time.perf_counter()
        try:
            result = sampler.sample(log_density, child_seed(seed, i), n_draws, n_chains)
        except SamplingError:
            raise
        except Exception as exc:
            raise SamplingError(f"Sampler failed for group {group_id!r}: {exc}") from exc
        logger.info(
            "Sampled group %s (%d subjects) in %.1fs, acceptance %.2f",
            group_id, group_data.n_subjects, time.perf_counter() - start,
            result.acceptance_rate,
        )

        draws = np.asarray(result.draws)
        if draws.shape != (n_draws, log_density.dim) or not np.all(np.isfinite(draws)):
            raise SamplingError(
                f"Sampler returned invalid draws of shape {draws.shape} for group {group_id!r}"
            )
        with np.errstate(over="ignore"):
            frames.append(_long_frame(
                group_id, expit(draws[:, 0]), np.exp(draws[:, 1:4]), np.exp(draws[:, 4:7]),
            ))
        n_divergent += result.n_divergent
        n_sampled += n_draws
        for name, value in zip(log_density.parameter_names, np.atleast_1d(result.rhat)):
            rhat[f"{group_id}:{name}"] = float(value)

    if n_sampled and n_divergent / n_sampled > max_divergence_fraction:
        message = (
            f"{n_divergent} of {n_sampled} draws were divergent "
            f"(tolerated fraction {max_divergence_fraction:.2f})"
        )
        logger.warning("%s", message)
        warnings.warn(message, SamplingDivergence, stacklevel=2)
    poor = {k: v for k, v in rhat.items() if np.isfinite(v) and v > _RHAT_WARN}
    if poor:
        logger.warning("R-hat above %.2f for %s", _RHAT_WARN, sorted(poor))

    return ParameterSample(
        frame=_assemble(frames),
        source="posterior",
        n_divergent=n_divergent,
        n_chains=n_chains,
        rhat=rhat,
    )
