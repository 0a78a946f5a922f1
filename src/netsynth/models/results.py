"""Result models for network meta-analysis.

All results are immutable values: numpy arrays held by them are copied and
marked read-only on construction. Each exposes ``to_dict()`` returning plain
JSON-serializable primitives for report and plotting collaborators.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np
from scipy import stats

from netsynth.exceptions import UnknownTreatmentError
from netsynth.models.network import Direction, ModelKind, normalize_treatment


def _frozen(values: Any) -> np.ndarray:
    array = np.array(values, dtype=float, copy=True)
    array.setflags(write=False)
    return array


def _float_or_none(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return float(value)


@dataclass(frozen=True)
class ConfidenceInterval:
    """Confidence (or credible) interval."""

    lower: float
    upper: float
    level: float = 0.95

    def to_dict(self) -> dict[str, float]:
        return {"lower": self.lower, "upper": self.upper, "level": self.level}


@dataclass(frozen=True)
class Heterogeneity:
    """Heterogeneity statistics for a network fit."""

    q_statistic: float  # Cochran's Q from the fixed-effect fit
    df: int  # edges - (treatments - 1)
    q_p_value: float  # P-value for Q test
    tau_squared: float  # Between-study variance
    i_squared: float  # I² statistic (0-100%)
    tau_estimator: Optional[str] = None
    converged: bool = True
    iterations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "q_statistic": self.q_statistic,
            "df": self.df,
            "q_p_value": self.q_p_value,
            "tau_squared": self.tau_squared,
            "i_squared": self.i_squared,
            "tau_estimator": self.tau_estimator,
            "converged": self.converged,
            "iterations": self.iterations,
        }


@dataclass(frozen=True)
class PooledResult:
    """Pooled relative treatment effects from a consistency-model fit.

    ``effect_matrix[i, j]`` is the effect of treatment ``i`` relative to
    treatment ``j`` (``d_i - d_j``); ``se_matrix`` holds the matching
    standard errors.
    """

    treatments: tuple[str, ...]
    reference_treatment: str
    effect_matrix: np.ndarray
    se_matrix: np.ndarray
    model_kind: ModelKind
    heterogeneity: Heterogeneity
    k: int
    n_edges: int
    excluded_studies: tuple[str, ...] = ()
    confidence_level: float = 0.95
    labels: dict[str, str] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()
    audit_trail: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "effect_matrix", _frozen(self.effect_matrix))
        object.__setattr__(self, "se_matrix", _frozen(self.se_matrix))

    def index(self, treatment: str) -> int:
        key = normalize_treatment(treatment)
        try:
            return self.treatments.index(key)
        except ValueError:
            raise UnknownTreatmentError(key) from None

    def label(self, treatment: str) -> str:
        return self.labels.get(treatment, treatment)

    def effect(self, treatment: str, versus: Optional[str] = None) -> float:
        """Effect of ``treatment`` relative to ``versus`` (default: the reference)."""
        j = self.index(versus if versus is not None else self.reference_treatment)
        return float(self.effect_matrix[self.index(treatment), j])

    def se(self, treatment: str, versus: Optional[str] = None) -> float:
        j = self.index(versus if versus is not None else self.reference_treatment)
        return float(self.se_matrix[self.index(treatment), j])

    def confidence_interval(
        self, treatment: str, versus: Optional[str] = None
    ) -> ConfidenceInterval:
        z_crit = stats.norm.ppf(1 - (1 - self.confidence_level) / 2)
        effect = self.effect(treatment, versus)
        se = self.se(treatment, versus)
        return ConfidenceInterval(
            lower=effect - z_crit * se,
            upper=effect + z_crit * se,
            level=self.confidence_level,
        )

    def prediction_interval(
        self, treatment: str, versus: Optional[str] = None
    ) -> ConfidenceInterval:
        """Interval for the effect in a new study: ``effect ± z·sqrt(se² + tau²)``."""
        z_crit = stats.norm.ppf(1 - (1 - self.confidence_level) / 2)
        effect = self.effect(treatment, versus)
        spread = math.sqrt(self.se(treatment, versus) ** 2 + self.heterogeneity.tau_squared)
        return ConfidenceInterval(
            lower=effect - z_crit * spread,
            upper=effect + z_crit * spread,
            level=self.confidence_level,
        )

    def p_value(self, treatment: str, versus: Optional[str] = None) -> float:
        """Two-sided z-test p-value for the relative effect."""
        se = self.se(treatment, versus)
        if se <= 0:
            return 1.0
        z = self.effect(treatment, versus) / se
        return float(2 * (1 - stats.norm.cdf(abs(z))))

    def relative_effects(self) -> list[dict[str, Any]]:
        """Effects of every treatment relative to the reference."""
        rows = []
        for treatment in self.treatments:
            if treatment == self.reference_treatment:
                continue
            ci = self.confidence_interval(treatment)
            rows.append(
                {
                    "treatment": treatment,
                    "label": self.label(treatment),
                    "effect": self.effect(treatment),
                    "se": self.se(treatment),
                    "ci_lower": ci.lower,
                    "ci_upper": ci.upper,
                    "p_value": self.p_value(treatment),
                }
            )
        return rows

    def to_dict(self) -> dict[str, Any]:
        return {
            "treatments": list(self.treatments),
            "labels": dict(self.labels),
            "reference_treatment": self.reference_treatment,
            "model_kind": self.model_kind.value,
            "effect_matrix": self.effect_matrix.tolist(),
            "se_matrix": self.se_matrix.tolist(),
            "relative_effects": self.relative_effects(),
            "heterogeneity": self.heterogeneity.to_dict(),
            "k": self.k,
            "n_edges": self.n_edges,
            "excluded_studies": list(self.excluded_studies),
            "confidence_level": self.confidence_level,
            "warnings": list(self.warnings),
            "audit_trail": self.audit_trail,
        }


@dataclass(frozen=True)
class PosteriorSummary:
    """Point summary of one posterior quantity."""

    mean: float
    sd: float
    lower: float  # 2.5% quantile
    upper: float  # 97.5% quantile

    def to_dict(self) -> dict[str, float]:
        return {"mean": self.mean, "sd": self.sd, "lower": self.lower, "upper": self.upper}


@dataclass(frozen=True)
class SamplerDiagnostics:
    """Convergence diagnostics for a posterior sample."""

    r_hat: dict[str, float]
    effective_size: dict[str, float]
    converged: bool
    rhat_threshold: float = 1.1
    acceptance_rate: tuple[float, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "r_hat": {k: _float_or_none(v) for k, v in self.r_hat.items()},
            "effective_size": {k: _float_or_none(v) for k, v in self.effective_size.items()},
            "converged": self.converged,
            "rhat_threshold": self.rhat_threshold,
            "acceptance_rate": list(self.acceptance_rate),
        }


@dataclass(frozen=True)
class PosteriorSample:
    """Posterior draws from the Bayesian consistency model.

    ``chains`` has shape ``(n_chains, n_draws, n_treatments)`` and holds each
    treatment's effect relative to the reference (whose column is zero).
    ``tau`` has shape ``(n_chains, n_draws)``.
    """

    treatments: tuple[str, ...]
    reference_treatment: str
    chains: np.ndarray
    tau: np.ndarray
    diagnostics: SamplerDiagnostics
    beta: Optional[np.ndarray] = None
    covariate: Optional[str] = None
    labels: dict[str, str] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "chains", _frozen(self.chains))
        object.__setattr__(self, "tau", _frozen(self.tau))
        if self.beta is not None:
            object.__setattr__(self, "beta", _frozen(self.beta))

    @property
    def n_chains(self) -> int:
        return int(self.chains.shape[0])

    @property
    def n_draws(self) -> int:
        """Total retained draws across chains."""
        return int(self.chains.shape[0] * self.chains.shape[1])

    @property
    def treatment_effects(self) -> np.ndarray:
        """Pooled draws, shape ``(iteration, treatment)``."""
        return self.chains.reshape(-1, len(self.treatments))

    @property
    def between_study_variance(self) -> np.ndarray:
        return (self.tau**2).reshape(-1)

    def index(self, treatment: str) -> int:
        key = normalize_treatment(treatment)
        try:
            return self.treatments.index(key)
        except ValueError:
            raise UnknownTreatmentError(key) from None

    def relative_effect_draws(self, treatment: str, versus: Optional[str] = None) -> np.ndarray:
        draws = self.treatment_effects
        j = self.index(versus if versus is not None else self.reference_treatment)
        return draws[:, self.index(treatment)] - draws[:, j]

    @staticmethod
    def _summarize(draws: np.ndarray) -> PosteriorSummary:
        lower, upper = np.quantile(draws, [0.025, 0.975])
        return PosteriorSummary(
            mean=float(np.mean(draws)),
            sd=float(np.std(draws, ddof=1)) if draws.size > 1 else 0.0,
            lower=float(lower),
            upper=float(upper),
        )

    def summary(self) -> dict[str, PosteriorSummary]:
        """Mean, SD and 95% credible interval per treatment (vs reference), tau and beta."""
        result = {
            t: self._summarize(self.relative_effect_draws(t))
            for t in self.treatments
            if t != self.reference_treatment
        }
        result["tau"] = self._summarize(self.tau.reshape(-1))
        if self.beta is not None:
            result["beta"] = self._summarize(self.beta.reshape(-1))
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "treatments": list(self.treatments),
            "labels": dict(self.labels),
            "reference_treatment": self.reference_treatment,
            "n_chains": self.n_chains,
            "n_draws": self.n_draws,
            "covariate": self.covariate,
            "summary": {k: v.to_dict() for k, v in self.summary().items()},
            "diagnostics": self.diagnostics.to_dict(),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class NodeSplitEstimate:
    """Direct vs indirect evidence for one treatment pair (effect of b vs a)."""

    treatment_a: str
    treatment_b: str
    estimable: bool
    n_direct_studies: int = 0
    direct_estimate: Optional[float] = None
    direct_se: Optional[float] = None
    indirect_estimate: Optional[float] = None
    indirect_se: Optional[float] = None
    difference: Optional[float] = None
    difference_se: Optional[float] = None
    z_statistic: Optional[float] = None
    p_value: Optional[float] = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "treatment_a": self.treatment_a,
            "treatment_b": self.treatment_b,
            "estimable": self.estimable,
            "n_direct_studies": self.n_direct_studies,
            "direct_estimate": self.direct_estimate,
            "direct_se": self.direct_se,
            "indirect_estimate": self.indirect_estimate,
            "indirect_se": self.indirect_se,
            "difference": self.difference,
            "difference_se": self.difference_se,
            "z_statistic": self.z_statistic,
            "p_value": self.p_value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class NodeSplitResult:
    """Node-splitting results for every directly compared pair."""

    model_kind: ModelKind
    tau_squared: float
    splits: tuple[NodeSplitEstimate, ...]

    @property
    def estimable(self) -> list[NodeSplitEstimate]:
        return [s for s in self.splits if s.estimable]

    def inconsistent(self, alpha: float = 0.05) -> list[NodeSplitEstimate]:
        """Pairs whose direct and indirect estimates differ at level ``alpha``."""
        return [s for s in self.estimable if s.p_value is not None and s.p_value < alpha]

    def get(self, treatment_a: str, treatment_b: str) -> Optional[NodeSplitEstimate]:
        pair = tuple(sorted((normalize_treatment(treatment_a), normalize_treatment(treatment_b))))
        for split in self.splits:
            if (split.treatment_a, split.treatment_b) == pair:
                return split
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_kind": self.model_kind.value,
            "tau_squared": self.tau_squared,
            "splits": [s.to_dict() for s in self.splits],
        }


@dataclass(frozen=True)
class TreatmentRank:
    """Rank of one treatment."""

    treatment: str
    score: float  # P-score (frequentist) or SUCRA (Bayesian), 0-1
    rank: int
    mean_rank: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "treatment": self.treatment,
            "score": self.score,
            "rank": self.rank,
            "mean_rank": self.mean_rank,
        }


@dataclass(frozen=True)
class RankingResult:
    """Treatment ranking with pairwise win probabilities.

    ``win_probabilities[i, j]`` is the probability that treatment ``i`` is
    better than treatment ``j``; the diagonal is zero.
    """

    treatments: tuple[str, ...]
    direction: Direction
    method: str  # "p_score" or "sucra"
    ranks: tuple[TreatmentRank, ...]
    win_probabilities: np.ndarray
    rank_probabilities: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "win_probabilities", _frozen(self.win_probabilities))
        if self.rank_probabilities is not None:
            object.__setattr__(self, "rank_probabilities", _frozen(self.rank_probabilities))

    def _index(self, treatment: str) -> int:
        key = normalize_treatment(treatment)
        try:
            return self.treatments.index(key)
        except ValueError:
            raise UnknownTreatmentError(key) from None

    def score(self, treatment: str) -> float:
        key = normalize_treatment(treatment)
        for entry in self.ranks:
            if entry.treatment == key:
                return entry.score
        raise UnknownTreatmentError(key)

    def probability_better(self, treatment: str, other: str) -> float:
        return float(self.win_probabilities[self._index(treatment), self._index(other)])

    @property
    def order(self) -> list[str]:
        return [entry.treatment for entry in self.ranks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "treatments": list(self.treatments),
            "direction": self.direction.value,
            "method": self.method,
            "ranks": [r.to_dict() for r in self.ranks],
            "win_probabilities": self.win_probabilities.tolist(),
            "rank_probabilities": (
                self.rank_probabilities.tolist() if self.rank_probabilities is not None else None
            ),
        }


@dataclass(frozen=True)
class LeaveOneOutEntry:
    """Network re-fit with one study removed."""

    excluded_study: str
    estimable: bool
    effects: dict[str, float] = field(default_factory=dict)
    standard_errors: dict[str, float] = field(default_factory=dict)
    tau_squared: Optional[float] = None
    i_squared: Optional[float] = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "excluded_study": self.excluded_study,
            "estimable": self.estimable,
            "effects": dict(self.effects),
            "standard_errors": dict(self.standard_errors),
            "tau_squared": self.tau_squared,
            "i_squared": self.i_squared,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class LeaveOneOutResult:
    """Leave-one-study-out sensitivity analysis."""

    reference_treatment: str
    model_kind: ModelKind
    entries: tuple[LeaveOneOutEntry, ...]

    @property
    def failures(self) -> list[LeaveOneOutEntry]:
        return [e for e in self.entries if not e.estimable]

    def get(self, study_id: str) -> Optional[LeaveOneOutEntry]:
        for entry in self.entries:
            if entry.excluded_study == study_id:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference_treatment": self.reference_treatment,
            "model_kind": self.model_kind.value,
            "entries": [e.to_dict() for e in self.entries],
        }


@dataclass(frozen=True)
class CumulativeEntry:
    """Network fit after adding one more study in the stated order."""

    step: int
    added_study: str
    studies: tuple[str, ...]
    estimable: bool
    effects: dict[str, float] = field(default_factory=dict)
    standard_errors: dict[str, float] = field(default_factory=dict)
    tau_squared: Optional[float] = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "added_study": self.added_study,
            "studies": list(self.studies),
            "estimable": self.estimable,
            "effects": dict(self.effects),
            "standard_errors": dict(self.standard_errors),
            "tau_squared": self.tau_squared,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class CumulativeResult:
    """Cumulative (sequential) meta-analysis."""

    reference_treatment: str
    model_kind: ModelKind
    entries: tuple[CumulativeEntry, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference_treatment": self.reference_treatment,
            "model_kind": self.model_kind.value,
            "entries": [e.to_dict() for e in self.entries],
        }
