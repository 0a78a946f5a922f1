"""Frequentist consistency model for network meta-analysis.

Pools study contrasts into one consistent vector of treatment effects by
weighted least squares on the network's reduced incidence matrix, with
fixed- or random-effects weighting.

All calculations include audit trails for full traceability of results.

References:
    - Rücker G. Res Synth Methods 2012;3:312-324 (graph-theoretical NMA)
    - Jackson D, White IR, Riley RD. Stat Med 2012;31:3805-3820
      (multivariate DerSimonian-Laird)
    - Higgins JPT, Thompson SG. Stat Med 2002;21:1539-1558 (I² statistic)
    - Viechtbauer W. J Educ Behav Stat 2005;30:261-293 (REML/ML for tau²)
"""

from __future__ import annotations

import math
import uuid
import warnings
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from scipy import stats

from netsynth.analysis.network import EvidenceNetwork, resolve_reference
from netsynth.config import Settings, get_settings
from netsynth.exceptions import ConvergenceWarning, HeterogeneityWarning
from netsynth.logging import get_logger, log_warning
from netsynth.models.network import CanonicalEdge, ModelKind, TauEstimator
from netsynth.models.results import Heterogeneity, PooledResult
from netsynth.traceability import AuditTrail

_logger = get_logger("frequentist")


@dataclass
class _Fit:
    """Weighted least-squares solution for one value of tau²."""

    coefficients: np.ndarray  # Effects of non-reference treatments
    covariance: np.ndarray
    weights: np.ndarray  # Inverse edge covariance
    residuals: np.ndarray
    q_statistic: float


def within_study_structure(edges: list[CanonicalEdge]) -> np.ndarray:
    """Between-study variance structure of the edges (multiples of tau²).

    Each contrast carries variance tau²; two contrasts of the same study
    share half of it with the sign implied by their common arms.
    """
    m = len(edges)
    structure = np.eye(m)
    for i in range(m):
        for j in range(i + 1, m):
            ei, ej = edges[i], edges[j]
            if ei.study_id != ej.study_id:
                continue
            value = 0.5 * (
                (ei.treatment_a == ej.treatment_a)
                + (ei.treatment_b == ej.treatment_b)
                - (ei.treatment_a == ej.treatment_b)
                - (ei.treatment_b == ej.treatment_a)
            )
            structure[i, j] = structure[j, i] = value
    return structure


def sampling_covariance(edges: list[CanonicalEdge], correct_multiarm: bool) -> np.ndarray:
    """Sampling covariance of the edges.

    Diagonal ``se²``; contrasts of one study against the same baseline arm
    covary by that arm's variance when ``correct_multiarm`` is set.
    """
    m = len(edges)
    covariance = np.diag([edge.variance for edge in edges])
    if not correct_multiarm:
        return covariance
    for i in range(m):
        for j in range(i + 1, m):
            ei, ej = edges[i], edges[j]
            if (
                ei.study_id == ej.study_id
                and ei.baseline_treatment is not None
                and ei.baseline_treatment == ej.baseline_treatment
            ):
                value = ei.baseline_sign() * ej.baseline_sign() * ei.baseline_variance
                covariance[i, j] = covariance[j, i] = value
    return covariance


class NetworkDesign:
    """Design matrix and covariance components of an evidence network.

    Columns of the design matrix are the non-reference treatments; the row
    of edge ``a -> b`` has +1 at ``b`` and -1 at ``a``.
    """

    def __init__(
        self,
        network: EvidenceNetwork,
        reference: str,
        correct_multiarm: bool = True,
    ):
        self.edges = list(network.edges)
        self.treatments = network.treatments
        self.reference = reference
        self.parameters = [t for t in self.treatments if t != reference]
        column = {t: i for i, t in enumerate(self.parameters)}

        m, p = len(self.edges), len(self.parameters)
        self.X = np.zeros((m, p))
        for row, edge in enumerate(self.edges):
            if edge.treatment_b in column:
                self.X[row, column[edge.treatment_b]] = 1.0
            if edge.treatment_a in column:
                self.X[row, column[edge.treatment_a]] = -1.0

        self.y = np.array([edge.effect for edge in self.edges])
        self.multiarm = any(
            count > 1 for count in _study_edge_counts(self.edges).values()
        )
        self.V0 = sampling_covariance(self.edges, correct_multiarm)
        self.S = within_study_structure(self.edges) if correct_multiarm else np.eye(m)

    @property
    def df(self) -> int:
        return len(self.edges) - len(self.parameters)

    def inverse_covariance(self, tau_squared: float) -> np.ndarray:
        V = self.V0 + tau_squared * self.S
        try:
            lower_inv = np.linalg.inv(np.linalg.cholesky(V))
            return lower_inv.T @ lower_inv
        except np.linalg.LinAlgError:
            log_warning(
                _logger,
                "inverse_covariance",
                "edge covariance not positive definite; using independent edges",
                {"edges": len(self.edges)},
            )
            return np.diag(1.0 / np.diag(V))

    def solve(self, tau_squared: float = 0.0) -> _Fit:
        W = self.inverse_covariance(tau_squared)
        information = self.X.T @ W @ self.X
        covariance = np.linalg.inv(information)
        coefficients = covariance @ self.X.T @ W @ self.y
        residuals = self.y - self.X @ coefficients
        q_statistic = float(residuals @ W @ residuals)
        return _Fit(coefficients, covariance, W, residuals, max(q_statistic, 0.0))

    def projection(self, W: np.ndarray) -> np.ndarray:
        """``P = W - W X (X'WX)^-1 X'W``."""
        WX = W @ self.X
        return W - WX @ np.linalg.inv(self.X.T @ WX) @ WX.T

    def full_effects(self, fit: _Fit) -> tuple[np.ndarray, np.ndarray]:
        """Effects and covariance over all treatments (reference fixed at zero)."""
        n = len(self.treatments)
        index = [self.treatments.index(t) for t in self.parameters]
        effects = np.zeros(n)
        covariance = np.zeros((n, n))
        effects[index] = fit.coefficients
        covariance[np.ix_(index, index)] = fit.covariance
        return effects, covariance


def _study_edge_counts(edges: list[CanonicalEdge]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for edge in edges:
        counts[edge.study_id] = counts.get(edge.study_id, 0) + 1
    return counts


def _issue(
    message: str,
    category: type[Warning],
    notes: list[str],
    audit: Optional[AuditTrail] = None,
    emit: bool = True,
) -> None:
    notes.append(message)
    if audit is not None:
        audit.add_warning(message)
    if emit:
        log_warning(_logger, "fit", message)
        warnings.warn(message, category, stacklevel=3)
    else:
        _logger.debug(message)


class FrequentistNMA:
    """Fixed- and random-effects consistency model with audit trails.

    References:
        - Rücker G. Res Synth Methods 2012;3:312-324
        - DerSimonian R, Laird N. Controlled Clin Trials 1986;7:177-188
    """

    def __init__(
        self,
        model_kind: Union[ModelKind, str] = ModelKind.RANDOM,
        tau_estimator: Union[TauEstimator, str, None] = None,
        confidence_level: Optional[float] = None,
        multiarm_correction: Optional[bool] = None,
        max_iterations: Optional[int] = None,
        tolerance: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the model.

        Args:
            model_kind: Fixed- or random-effects weighting
            tau_estimator: DL (closed form), REML or ML (iterative)
            confidence_level: Confidence level for intervals
            multiarm_correction: Model within-study covariance of multi-arm contrasts
            max_iterations: Maximum steps for iterative tau² estimators
            tolerance: Convergence tolerance for iterative tau² estimators
            settings: Defaults for unspecified arguments
        """
        settings = settings or get_settings()
        self.model_kind = ModelKind(model_kind)
        self.tau_estimator = TauEstimator(tau_estimator or settings.tau_estimator)
        self.confidence_level = confidence_level or settings.confidence_level
        self.multiarm_correction = (
            settings.multiarm_correction if multiarm_correction is None else multiarm_correction
        )
        self.max_iterations = max_iterations or settings.tau_max_iterations
        self.tolerance = tolerance or settings.tau_tolerance

    def fit(
        self,
        network: EvidenceNetwork,
        reference_treatment: Optional[str] = None,
        tau_squared: Optional[float] = None,
        excluded_studies: tuple[str, ...] = (),
        emit_warnings: bool = True,
    ) -> PooledResult:
        """Fit the consistency model.

        Args:
            network: Connected evidence network
            reference_treatment: Zero point of the effect scale (default: first
                treatment in canonical order)
            tau_squared: Use this between-study variance instead of estimating it
                (random effects only)
            excluded_studies: Studies removed upstream, recorded on the result
            emit_warnings: Issue warnings through `warnings` and the logger; when
                false they are only attached to the result

        Returns:
            PooledResult with effect/SE matrices, heterogeneity and audit trail

        Raises:
            EmptyNetworkError: No edges
            DisconnectedNetworkError: More than one component
            UnknownTreatmentError: Reference treatment not in the network
        """
        network.require_connected()
        reference = resolve_reference(network, reference_treatment)
        design = NetworkDesign(network, reference, self.multiarm_correction)
        notes: list[str] = []

        audit = AuditTrail(
            calculation_id=str(uuid.uuid4())[:8],
            calculation_type="network_meta_analysis",
            method_name=(
                f"random_effects ({self.tau_estimator.value})"
                if self.model_kind == ModelKind.RANDOM
                else "fixed_effect"
            ),
            method_reference="Rücker G. Res Synth Methods 2012;3:312-324",
            confidence_level=self.confidence_level,
        )
        audit.add_step(
            step_name="design",
            description="Build reduced incidence design matrix",
            formula="X[e, b] = +1, X[e, a] = -1; reference column dropped",
            inputs={"edges": len(design.edges), "treatments": len(design.treatments)},
            output={"reference": reference, "df": design.df},
            output_name="design",
        )

        if design.multiarm and not self.multiarm_correction:
            log_warning(
                _logger,
                "fit",
                "multi-arm contrasts treated as independent",
                {"studies": network.study_count},
            )

        # Heterogeneity from the fixed-effect fit
        fixed_fit = design.solve(0.0)
        df = design.df
        q_statistic = fixed_fit.q_statistic
        if df > 0:
            q_p_value = float(stats.chi2.sf(q_statistic, df))
            i_squared = max(0.0, (q_statistic - df) / q_statistic) * 100 if q_statistic > 0 else 0.0
        else:
            q_p_value = 1.0
            i_squared = 0.0
            _issue(
                "No redundant evidence (df <= 0): heterogeneity cannot be estimated, tau² fixed at 0",
                HeterogeneityWarning,
                notes,
                audit,
                emit_warnings,
            )

        audit.add_step(
            step_name="heterogeneity",
            description="Cochran's Q from fixed-effect residuals, I²",
            formula="Q = rᵀWr; df = edges - (treatments - 1); I² = max(0, (Q-df)/Q) × 100",
            inputs={"df": df},
            output={"q_statistic": q_statistic, "q_p_value": q_p_value, "i_squared": i_squared},
            output_name="heterogeneity",
        )

        tau2, converged, iterations, estimator = 0.0, True, 0, None
        if self.model_kind == ModelKind.RANDOM:
            if tau_squared is not None:
                tau2, estimator = max(0.0, float(tau_squared)), "fixed"
            elif df > 0:
                estimator = self.tau_estimator.value
                tau2, converged, iterations = self.estimate_tau_squared(design, fixed_fit)
                if not converged:
                    _issue(
                        f"{estimator} tau² estimation did not converge in "
                        f"{self.max_iterations} iterations",
                        ConvergenceWarning,
                        notes,
                        audit,
                        emit_warnings,
                    )
            audit.add_step(
                step_name="tau_squared",
                description="Between-study variance",
                formula="DL: τ² = max(0, (Q - df) / tr(P₀S)); REML/ML: Fisher scoring",
                inputs={"estimator": estimator, "q_statistic": q_statistic, "df": df},
                output={"tau_squared": tau2, "converged": converged, "iterations": iterations},
                output_name="tau_squared",
            )

        final_fit = design.solve(tau2) if tau2 > 0 else fixed_fit
        effects, covariance = design.full_effects(final_fit)
        effect_matrix = effects[:, None] - effects[None, :]
        variances = np.diag(covariance)
        se_matrix = np.sqrt(
            np.clip(variances[:, None] + variances[None, :] - 2 * covariance, 0.0, None)
        )

        audit.add_step(
            step_name="pooled_effects",
            description="Weighted least squares treatment effects relative to the reference",
            formula="d = (XᵀWX)⁻¹XᵀWy; Cov(d) = (XᵀWX)⁻¹; W = (V₀ + τ²S)⁻¹",
            inputs={"tau_squared": tau2},
            output={
                t: {"effect": float(effects[i]), "se": float(math.sqrt(max(variances[i], 0.0)))}
                for i, t in enumerate(design.treatments)
            },
            output_name="relative_effects",
        )

        heterogeneity = Heterogeneity(
            q_statistic=q_statistic,
            df=df,
            q_p_value=q_p_value,
            tau_squared=tau2,
            i_squared=i_squared,
            tau_estimator=estimator,
            converged=converged,
            iterations=iterations,
        )

        _logger.debug(
            f"Fitted {self.model_kind.value} model: {len(design.treatments)} treatments, "
            f"{len(design.edges)} edges, Q={q_statistic:.3f}, tau2={tau2:.4f}"
        )

        return PooledResult(
            treatments=design.treatments,
            reference_treatment=reference,
            effect_matrix=effect_matrix,
            se_matrix=se_matrix,
            model_kind=self.model_kind,
            heterogeneity=heterogeneity,
            k=network.study_count,
            n_edges=len(design.edges),
            excluded_studies=tuple(excluded_studies),
            confidence_level=self.confidence_level,
            labels=dict(network.labels),
            warnings=tuple(notes),
            audit_trail=audit.to_dict(),
        )

    def estimate_tau_squared(
        self, design: NetworkDesign, fixed_fit: _Fit
    ) -> tuple[float, bool, int]:
        """Estimate tau² with the configured estimator.

        Returns:
            Tuple of (tau_squared, converged, iterations)
        """
        trace = float(np.trace(design.projection(fixed_fit.weights) @ design.S))
        if trace > 0:
            tau2_dl = max(0.0, (fixed_fit.q_statistic - design.df) / trace)
        else:
            tau2_dl = 0.0

        if self.tau_estimator == TauEstimator.DERSIMONIAN_LAIRD:
            return tau2_dl, True, 0

        restricted = self.tau_estimator == TauEstimator.REML
        tau2 = tau2_dl
        for iteration in range(1, self.max_iterations + 1):
            W = design.inverse_covariance(tau2)
            P = design.projection(W)
            Py = P @ design.y
            if restricted:
                PS = P @ design.S
            else:
                PS = W @ design.S
            score = 0.5 * (float(Py @ design.S @ Py) - float(np.trace(PS)))
            information = 0.5 * float(np.trace(PS @ PS))
            if information <= 0:
                return tau2, True, iteration
            updated = max(0.0, tau2 + score / information)
            if abs(updated - tau2) <= self.tolerance * max(1.0, tau2):
                return updated, True, iteration
            tau2 = updated
        return tau2, False, self.max_iterations
