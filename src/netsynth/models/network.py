"""Data models for evidence networks.

Treatments, arm-level and contrast-level study records, canonical edges, and
the enumerations that select effect measures and model kinds.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from netsynth.exceptions import DegenerateEdgeError

_SEPARATORS = re.compile(r"[\s_]+")


def normalize_treatment(name: str) -> str:
    """Normalize a treatment identifier for comparison.

    Strips surrounding whitespace, collapses runs of whitespace and
    underscores to a single space, and casefolds, so ``"Drug A"``,
    ``" drug_a "`` and ``"DRUG  A"`` all map to ``"drug a"``.
    """
    normalized = _SEPARATORS.sub(" ", str(name).strip()).casefold()
    if not normalized:
        raise DegenerateEdgeError(f"Treatment identifier {name!r} is empty")
    return normalized


class EffectMeasure(str, Enum):
    """Type of effect measure."""

    MEAN_DIFFERENCE = "mean_difference"
    STANDARDIZED_MEAN_DIFFERENCE = "standardized_mean_difference"
    RATIO_OF_MEANS = "ratio_of_means"
    ODDS_RATIO = "odds_ratio"
    RISK_RATIO = "risk_ratio"
    RISK_DIFFERENCE = "risk_difference"

    @property
    def is_log_scale(self) -> bool:
        """Whether effects are pooled on the log scale."""
        return self in (
            EffectMeasure.RATIO_OF_MEANS,
            EffectMeasure.ODDS_RATIO,
            EffectMeasure.RISK_RATIO,
        )


class ModelKind(str, Enum):
    """Consistency model weighting."""

    FIXED = "fixed"
    RANDOM = "random"


class TauEstimator(str, Enum):
    """Between-study variance estimator for random-effects models."""

    DERSIMONIAN_LAIRD = "DL"
    REML = "REML"
    ML = "ML"


class Direction(str, Enum):
    """Which end of the effect scale is beneficial."""

    SMALLER_IS_BETTER = "smaller_is_better"
    LARGER_IS_BETTER = "larger_is_better"


@dataclass(frozen=True)
class ArmRecord:
    """Summary statistics for one arm of one study."""

    study_id: str
    treatment: str
    n: int
    mean: Optional[float] = None
    sd: Optional[float] = None
    events: Optional[int] = None


@dataclass(frozen=True)
class StudyRecord:
    """One observed comparison: effect of ``treatment_b`` relative to ``treatment_a``.

    ``baseline_treatment`` and ``baseline_variance`` describe the arm shared by
    the contrasts of a multi-arm study, when known, so that their sampling
    covariance can be modelled.
    """

    study_id: str
    treatment_a: str
    treatment_b: str
    effect: float
    std_error: float
    baseline_treatment: Optional[str] = None
    baseline_variance: Optional[float] = None


@dataclass(frozen=True)
class CanonicalEdge:
    """A study contrast with its treatments in canonical (lexicographic) order."""

    study_id: str
    treatment_a: str
    treatment_b: str
    effect: float
    std_error: float
    baseline_treatment: Optional[str] = None
    baseline_variance: Optional[float] = None

    @property
    def variance(self) -> float:
        return self.std_error**2

    @property
    def pair(self) -> tuple[str, str]:
        return (self.treatment_a, self.treatment_b)

    def touches(self, treatment: str) -> bool:
        return treatment in (self.treatment_a, self.treatment_b)

    def baseline_sign(self) -> int:
        """Sign with which the baseline arm's sampling error enters ``effect``.

        ``effect = mean_b - mean_a``: the baseline enters with -1 when it is
        ``treatment_a``, +1 when it is ``treatment_b`` and 0 otherwise.
        """
        if self.baseline_treatment == self.treatment_a:
            return -1
        if self.baseline_treatment == self.treatment_b:
            return 1
        return 0


def canonicalize(record: Union[StudyRecord, CanonicalEdge]) -> CanonicalEdge:
    """Place a record's treatments in canonical order, negating the effect on swap.

    Idempotent: canonicalizing a canonical edge returns an equal edge.

    Raises:
        DegenerateEdgeError: self-comparison, non-positive or non-finite SE,
            or non-finite effect
    """
    treatment_a = normalize_treatment(record.treatment_a)
    treatment_b = normalize_treatment(record.treatment_b)
    study_id = str(record.study_id).strip()

    if treatment_a == treatment_b:
        raise DegenerateEdgeError(
            f"Study {study_id} compares treatment '{treatment_a}' with itself"
        )
    if record.std_error is None or not math.isfinite(record.std_error) or record.std_error <= 0:
        raise DegenerateEdgeError(
            f"Study {study_id} ({treatment_a} vs {treatment_b}) has non-positive "
            f"standard error {record.std_error}"
        )
    if record.effect is None or not math.isfinite(record.effect):
        raise DegenerateEdgeError(
            f"Study {study_id} ({treatment_a} vs {treatment_b}) has non-finite effect"
        )

    effect = float(record.effect)
    if treatment_a > treatment_b:
        treatment_a, treatment_b = treatment_b, treatment_a
        effect = -effect

    baseline = (
        normalize_treatment(record.baseline_treatment)
        if record.baseline_treatment is not None
        else None
    )
    baseline_variance = record.baseline_variance
    if baseline is None or baseline_variance is None or baseline_variance <= 0:
        baseline, baseline_variance = None, None

    return CanonicalEdge(
        study_id=study_id,
        treatment_a=treatment_a,
        treatment_b=treatment_b,
        effect=effect,
        std_error=float(record.std_error),
        baseline_treatment=baseline,
        baseline_variance=baseline_variance,
    )
