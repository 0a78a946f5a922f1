"""Bayesian consistency model for network meta-analysis.

Hierarchical model: ``mu[reference] = 0``, ``mu[t] ~ Normal(0, prior_sd²)``;
each contrast ``y_i ~ Normal(mu[b] - mu[a] + beta·(g[b] - g[a])·x_i + delta_i, se_i²)``
where ``g`` is 1 for every non-reference treatment and 0 for the reference,
so one slope is shared by all comparisons against the reference. Study
deviations are ``delta ~ Normal(0, tau²·S)`` and ``tau ~ Uniform(tau_min, tau_max)``.

Sampling is Metropolis-within-Gibbs with the study deviations integrated
out: ``(mu, beta) | tau`` is drawn from its multivariate normal full
conditional and ``tau`` by a random-walk Metropolis step whose scale is
tuned during burn-in. Chains are independent; iterations within a chain
are sequential.

References:
    - Dias S, Sutton AJ, Ades AE, Welton NJ. Med Decis Making 2013;33:607-617
    - Gelman A et al. Bayesian Data Analysis, 3rd ed., 2013 (split R-hat, ESS)
"""

from __future__ import annotations

import math
import warnings
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from netsynth.analysis.execution import CancellationToken, map_indexed
from netsynth.analysis.frequentist import NetworkDesign
from netsynth.analysis.network import EvidenceNetwork, resolve_reference
from netsynth.config import Settings, get_settings
from netsynth.exceptions import ConvergenceWarning
from netsynth.logging import get_logger, log_warning
from netsynth.models.results import PosteriorSample, SamplerDiagnostics

_logger = get_logger("bayesian")

TARGET_ACCEPTANCE = 0.44  # Optimal for one-dimensional random-walk Metropolis
ADAPT_INTERVAL = 50


@dataclass(frozen=True)
class SamplerProgress:
    """Progress report from one chain.

    ``running_mean`` holds the mean of retained draws so far for each
    treatment (reference included, always zero); empty during burn-in.
    """

    chain: int
    iteration: int
    total: int
    acceptance_rate: float
    tau: float
    running_mean: tuple[float, ...] = ()

    @property
    def fraction(self) -> float:
        return self.iteration / self.total if self.total else 1.0


ProgressCallback = Callable[[SamplerProgress], None]


@dataclass
class _ChainOutput:
    effects: np.ndarray  # (draws, treatments)
    tau: np.ndarray
    beta: Optional[np.ndarray]
    acceptance_rate: float


def split_r_hat(draws: np.ndarray) -> float:
    """Split potential scale reduction factor for draws of shape (chains, iterations)."""
    n_chains, n = draws.shape
    half = n // 2
    if half < 2:
        return float("nan")
    split = np.concatenate([draws[:, :half], draws[:, n - half :]], axis=0)
    chain_means = split.mean(axis=1)
    within = float(np.mean(split.var(axis=1, ddof=1)))
    between = half * float(np.var(chain_means, ddof=1))
    if within <= 0:
        return 1.0 if between <= 0 else float("inf")
    var_hat = (half - 1) / half * within + between / half
    return math.sqrt(var_hat / within)


def effective_sample_size(draws: np.ndarray) -> float:
    """Effective sample size across chains using Geyer's initial monotone sequence."""
    n_chains, n = draws.shape
    total = n_chains * n
    if n < 4:
        return float(total)

    centered = draws - draws.mean(axis=1, keepdims=True)
    spectrum = np.fft.rfft(centered, n=2 * n, axis=1)
    autocovariance = np.fft.irfft(spectrum * np.conj(spectrum), axis=1)[:, :n] / n

    chain_var = autocovariance[:, 0] * n / (n - 1)
    within = float(np.mean(chain_var))
    between = float(np.var(draws.mean(axis=1), ddof=1)) if n_chains > 1 else 0.0
    var_hat = (n - 1) / n * within + between
    if var_hat <= 0:
        return float(total)

    rho = 1 - (within - autocovariance.mean(axis=0)) / var_hat
    rho[0] = 1.0
    pair_sums = []
    t = 0
    while t + 1 < n:
        pair = rho[t] + rho[t + 1]
        if pair < 0:
            break
        pair_sums.append(pair)
        t += 2
    if not pair_sums:
        return float(total)
    pair_sums = np.minimum.accumulate(np.array(pair_sums))
    integrated_time = -1 + 2 * float(pair_sums.sum())
    integrated_time = max(integrated_time, 1 / math.log10(max(total, 10)))
    return total / integrated_time


class BayesianNMA:
    """Bayesian consistency model fit by Markov-chain sampling."""

    def __init__(
        self,
        n_chains: Optional[int] = None,
        n_iterations: Optional[int] = None,
        burn_in: Optional[int] = None,
        thin: Optional[int] = None,
        tau_prior_bounds: Optional[tuple[float, float]] = None,
        prior_sd: Optional[float] = None,
        rhat_threshold: Optional[float] = None,
        seed: Optional[int] = None,
        multiarm_correction: Optional[bool] = None,
        max_workers: Optional[int] = None,
        progress_every: int = 100,
        settings: Optional[Settings] = None,
    ):
        """Initialize the sampler.

        Args:
            n_chains: Independent chains (at least 2)
            n_iterations: Iterations per chain, including burn-in
            burn_in: Leading iterations discarded from each chain
            thin: Keep every ``thin``-th draw after burn-in
            tau_prior_bounds: (lower, upper) of the Uniform prior on tau
            prior_sd: SD of the Normal prior on treatment effects and beta
            rhat_threshold: R-hat above which results are flagged non-converged
            seed: Seed for reproducible chains
            multiarm_correction: Model within-study covariance of multi-arm contrasts
            max_workers: Run chains on a thread pool of this size
            progress_every: Iterations between progress callbacks
            settings: Defaults for unspecified arguments
        """
        settings = settings or get_settings()
        self.n_chains = n_chains or settings.bayes_chains
        self.n_iterations = n_iterations or settings.bayes_iterations
        self.burn_in = settings.bayes_burn_in if burn_in is None else burn_in
        self.thin = thin or settings.bayes_thin
        self.tau_prior_bounds = tau_prior_bounds or (0.0, settings.bayes_tau_max)
        self.prior_sd = prior_sd or settings.bayes_prior_sd
        self.rhat_threshold = rhat_threshold or settings.rhat_threshold
        self.seed = settings.bayes_seed if seed is None else seed
        self.multiarm_correction = (
            settings.multiarm_correction if multiarm_correction is None else multiarm_correction
        )
        self.max_workers = max_workers or settings.max_workers
        self.progress_every = max(1, progress_every)

        if self.n_chains < 2:
            raise ValueError("At least 2 chains are required to assess convergence")
        if not 0 <= self.burn_in < self.n_iterations:
            raise ValueError("Burn-in must be non-negative and shorter than the chain")
        if self.thin < 1:
            raise ValueError("Thinning interval must be at least 1")
        lower, upper = self.tau_prior_bounds
        if lower < 0 or upper <= lower:
            raise ValueError(f"Invalid tau prior bounds {self.tau_prior_bounds}")
        if len(range(self.burn_in, self.n_iterations, self.thin)) < 4:
            raise ValueError("Fewer than 4 retained draws per chain")

    def fit(
        self,
        network: EvidenceNetwork,
        reference_treatment: Optional[str] = None,
        covariate: Optional[Mapping[str, float]] = None,
        covariate_name: str = "covariate",
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> PosteriorSample:
        """Sample the posterior.

        Args:
            network: Connected evidence network
            reference_treatment: Treatment fixed at zero
            covariate: Study-level covariate (study id -> value) for meta-regression
            covariate_name: Display name of the covariate
            token: Cancellation token checked between iterations
            progress: Callback receiving ``SamplerProgress``; called from worker
                threads when chains run in parallel

        Returns:
            PosteriorSample with draws and convergence diagnostics

        Raises:
            EmptyNetworkError: No edges
            DisconnectedNetworkError: More than one component
            AnalysisCancelledError: The token was cancelled
            ValueError: A study has no covariate value
        """
        network.require_connected()
        reference = resolve_reference(network, reference_treatment)
        design = NetworkDesign(network, reference, self.multiarm_correction)

        Z = design.X
        if covariate is not None:
            missing = sorted({e.study_id for e in design.edges if e.study_id not in covariate})
            if missing:
                raise ValueError(f"No {covariate_name} value for studies: {', '.join(missing)}")
            x = np.array([float(covariate[e.study_id]) for e in design.edges])
            # Shared interaction: +x on edges from the reference, -x into it, 0 otherwise
            Z = np.column_stack([design.X, x * design.X.sum(axis=1)])

        seeds = np.random.SeedSequence(self.seed).spawn(self.n_chains)
        outputs = map_indexed(
            lambda chain: self._run_chain(
                chain, np.random.default_rng(seeds[chain]), design, Z,
                covariate is not None, token, progress,
            ),
            range(self.n_chains),
            max_workers=self.max_workers,
            token=token,
            operation="bayesian sampling",
        )

        chains = np.stack([out.effects for out in outputs])
        tau = np.stack([out.tau for out in outputs])
        beta = np.stack([out.beta for out in outputs]) if covariate is not None else None

        r_hat: dict[str, float] = {}
        effective: dict[str, float] = {}
        for i, treatment in enumerate(design.treatments):
            if treatment == reference:
                continue
            r_hat[treatment] = split_r_hat(chains[:, :, i])
            effective[treatment] = effective_sample_size(chains[:, :, i])
        r_hat["tau"] = split_r_hat(tau)
        effective["tau"] = effective_sample_size(tau)
        if beta is not None:
            r_hat["beta"] = split_r_hat(beta)
            effective["beta"] = effective_sample_size(beta)

        non_converged = sorted(
            name for name, value in r_hat.items()
            if not (math.isfinite(value) and value <= self.rhat_threshold)
        )
        notes: list[str] = []
        if non_converged:
            message = (
                f"R-hat above {self.rhat_threshold} for: {', '.join(non_converged)}; "
                "posterior not converged"
            )
            notes.append(message)
            log_warning(_logger, "fit", message, {"chains": self.n_chains})
            warnings.warn(message, ConvergenceWarning, stacklevel=2)

        diagnostics = SamplerDiagnostics(
            r_hat=r_hat,
            effective_size=effective,
            converged=not non_converged,
            rhat_threshold=self.rhat_threshold,
            acceptance_rate=tuple(out.acceptance_rate for out in outputs),
        )
        _logger.debug(
            f"Sampled {self.n_chains} chains x {chains.shape[1]} draws; "
            f"max R-hat {max(r_hat.values()):.3f}"
        )

        return PosteriorSample(
            treatments=design.treatments,
            reference_treatment=reference,
            chains=chains,
            tau=tau,
            diagnostics=diagnostics,
            beta=beta,
            covariate=covariate_name if covariate is not None else None,
            labels=dict(network.labels),
            warnings=tuple(notes),
        )

    def _log_likelihood(self, design: NetworkDesign, residuals: np.ndarray, tau: float) -> float:
        V = design.V0 + tau**2 * design.S
        try:
            lower = np.linalg.cholesky(V)
        except np.linalg.LinAlgError:
            return -math.inf
        solved = np.linalg.solve(lower, residuals)
        return -float(np.sum(np.log(np.diag(lower)))) - 0.5 * float(solved @ solved)

    def _draw_coefficients(
        self, design: NetworkDesign, Z: np.ndarray, tau: float, rng: np.random.Generator
    ) -> np.ndarray:
        W = design.inverse_covariance(tau**2)
        precision = Z.T @ W @ Z + np.eye(Z.shape[1]) / self.prior_sd**2
        lower = np.linalg.cholesky(precision)
        mean = np.linalg.solve(precision, Z.T @ W @ design.y)
        return mean + np.linalg.solve(lower.T, rng.standard_normal(Z.shape[1]))

    def _run_chain(
        self,
        chain: int,
        rng: np.random.Generator,
        design: NetworkDesign,
        Z: np.ndarray,
        has_covariate: bool,
        token: Optional[CancellationToken],
        progress: Optional[ProgressCallback],
    ) -> _ChainOutput:
        lower, upper = self.tau_prior_bounds
        n_params = len(design.parameters)
        columns = [design.treatments.index(t) for t in design.parameters]
        keep = range(self.burn_in, self.n_iterations, self.thin)
        n_keep = len(keep)

        effects = np.zeros((n_keep, len(design.treatments)))
        tau_draws = np.zeros(n_keep)
        beta_draws = np.zeros(n_keep) if has_covariate else None

        # Overdispersed start across chains
        tau = float(rng.uniform(lower, min(upper, lower + 2.0)))
        step = 0.1 * (upper - lower)
        accepted_total = accepted_window = 0
        kept = 0
        running_sum = np.zeros(len(design.treatments))

        for iteration in range(self.n_iterations):
            if token is not None:
                token.raise_if_cancelled("bayesian sampling")

            coefficients = self._draw_coefficients(design, Z, tau, rng)
            residuals = design.y - Z @ coefficients

            proposal = tau + step * rng.standard_normal()
            if lower < proposal < upper:
                log_ratio = self._log_likelihood(design, residuals, proposal) - self._log_likelihood(
                    design, residuals, tau
                )
                if math.log(rng.uniform()) < log_ratio:
                    tau = proposal
                    accepted_total += 1
                    accepted_window += 1

            if iteration < self.burn_in and (iteration + 1) % ADAPT_INTERVAL == 0:
                rate = accepted_window / ADAPT_INTERVAL
                step *= math.exp(rate - TARGET_ACCEPTANCE)
                step = min(max(step, 1e-4 * (upper - lower)), upper - lower)
                accepted_window = 0

            if iteration >= self.burn_in and (iteration - self.burn_in) % self.thin == 0:
                effects[kept, columns] = coefficients[:n_params]
                tau_draws[kept] = tau
                if beta_draws is not None:
                    beta_draws[kept] = coefficients[n_params]
                running_sum += effects[kept]
                kept += 1

            if progress is not None and (
                (iteration + 1) % self.progress_every == 0 or iteration + 1 == self.n_iterations
            ):
                progress(
                    SamplerProgress(
                        chain=chain,
                        iteration=iteration + 1,
                        total=self.n_iterations,
                        acceptance_rate=accepted_total / (iteration + 1),
                        tau=tau,
                        running_mean=tuple(running_sum / kept) if kept else (),
                    )
                )

        return _ChainOutput(
            effects=effects,
            tau=tau_draws,
            beta=beta_draws,
            acceptance_rate=accepted_total / self.n_iterations,
        )
