"""Effect-measure formulas for arm-level contrasts.

Each ``EffectMeasure`` is bound to one formula object when an analysis is
configured; the Contrast Builder then calls that object for every arm pair.

References:
    - Cochrane Handbook Chapter 6 (Choosing effect measures)
    - Hedges LV. J Educ Stat 1981;6:107-128 (small-sample correction)
    - Friedrich JO, Adhikari NK, Beyene J. BMC Med Res Methodol 2008;8:32
      (ratio of means)
    - Sweeting MJ, Sutton AJ, Lambert PC. Stat Med 2004;23:1351-1375
      (continuity correction)
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Union

from netsynth.models.network import ArmRecord, EffectMeasure
from netsynth.traceability import DEFAULT_PRECISION


@dataclass(frozen=True)
class ContrastEstimate:
    """Effect of an arm relative to the baseline arm of the same study."""

    effect: float
    std_error: float
    baseline_variance: float  # Sampling variance contributed by the baseline arm


class ContrastFormula(ABC):
    """Computes a contrast between two arms on one effect-measure scale."""

    measure: EffectMeasure
    required_fields: tuple[str, ...] = ()

    def check(self, arm: ArmRecord) -> None:
        """Raise ``ValueError`` if the arm lacks the data this measure needs."""
        missing = [name for name in self.required_fields if getattr(arm, name) is None]
        if missing:
            raise ValueError(
                f"Study {arm.study_id} arm '{arm.treatment}' missing {', '.join(missing)} "
                f"for {self.measure.value}"
            )
        if arm.n is None or arm.n <= 0:
            raise ValueError(f"Study {arm.study_id} arm '{arm.treatment}' has no participants")

    @abstractmethod
    def contrast(self, arm: ArmRecord, baseline: ArmRecord) -> ContrastEstimate:
        """Effect of ``arm`` relative to ``baseline``."""


class MeanDifferenceFormula(ContrastFormula):
    measure = EffectMeasure.MEAN_DIFFERENCE
    required_fields = ("mean", "sd")

    def contrast(self, arm: ArmRecord, baseline: ArmRecord) -> ContrastEstimate:
        var_arm = arm.sd**2 / arm.n
        var_base = baseline.sd**2 / baseline.n
        return ContrastEstimate(
            effect=arm.mean - baseline.mean,
            std_error=math.sqrt(var_arm + var_base),
            baseline_variance=var_base,
        )


class StandardizedMeanDifferenceFormula(ContrastFormula):
    """Hedges' g using the pooled SD of the two arms.

    The baseline variance share is approximated by ``1 / n_baseline``, the
    baseline term of the large-sample variance of g.
    """

    measure = EffectMeasure.STANDARDIZED_MEAN_DIFFERENCE
    required_fields = ("mean", "sd")

    def contrast(self, arm: ArmRecord, baseline: ArmRecord) -> ContrastEstimate:
        n1, n2 = arm.n, baseline.n
        if n1 + n2 <= 2:
            raise ValueError(f"Study {arm.study_id} has too few participants for SMD")

        pooled_sd = math.sqrt(((n1 - 1) * arm.sd**2 + (n2 - 1) * baseline.sd**2) / (n1 + n2 - 2))
        if pooled_sd <= 0:
            raise ValueError(f"Study {arm.study_id} has zero pooled SD")

        cohens_d = (arm.mean - baseline.mean) / pooled_sd
        correction = 1 - (3 / (4 * (n1 + n2 - 2) - 1))
        hedges_g = cohens_d * correction
        se = math.sqrt(((n1 + n2) / (n1 * n2)) + (hedges_g**2 / (2 * (n1 + n2))))

        return ContrastEstimate(effect=hedges_g, std_error=se, baseline_variance=1 / n2)


class RatioOfMeansFormula(ContrastFormula):
    """Log ratio of means: ``log(m1 / m0)``, delta-method variance."""

    measure = EffectMeasure.RATIO_OF_MEANS
    required_fields = ("mean", "sd")

    def contrast(self, arm: ArmRecord, baseline: ArmRecord) -> ContrastEstimate:
        if arm.mean <= 0 or baseline.mean <= 0:
            raise ValueError(f"Study {arm.study_id} ratio of means requires positive means")
        var_arm = arm.sd**2 / (arm.n * arm.mean**2)
        var_base = baseline.sd**2 / (baseline.n * baseline.mean**2)
        return ContrastEstimate(
            effect=math.log(arm.mean) - math.log(baseline.mean),
            std_error=math.sqrt(var_arm + var_base),
            baseline_variance=var_base,
        )


def _corrected_cells(arm: ArmRecord, baseline: ArmRecord) -> tuple[float, float, float, float]:
    """Events and totals for both arms, continuity-corrected if any cell is zero."""
    if arm.events > arm.n or baseline.events > baseline.n or arm.events < 0 or baseline.events < 0:
        raise ValueError(f"Study {arm.study_id} has events outside [0, n]")

    cells = [arm.events, arm.n - arm.events, baseline.events, baseline.n - baseline.events]
    if any(c == 0 for c in cells):
        cc = DEFAULT_PRECISION.CONTINUITY_CORRECTION
        return arm.events + cc, arm.n + 2 * cc, baseline.events + cc, baseline.n + 2 * cc
    return float(arm.events), float(arm.n), float(baseline.events), float(baseline.n)


class OddsRatioFormula(ContrastFormula):
    """Log odds ratio as a difference of arm log-odds."""

    measure = EffectMeasure.ODDS_RATIO
    required_fields = ("events",)

    def contrast(self, arm: ArmRecord, baseline: ArmRecord) -> ContrastEstimate:
        e1, n1, e0, n0 = _corrected_cells(arm, baseline)
        var_arm = 1 / e1 + 1 / (n1 - e1)
        var_base = 1 / e0 + 1 / (n0 - e0)
        effect = math.log(e1 / (n1 - e1)) - math.log(e0 / (n0 - e0))
        return ContrastEstimate(
            effect=effect,
            std_error=math.sqrt(var_arm + var_base),
            baseline_variance=var_base,
        )


class RiskRatioFormula(ContrastFormula):
    """Log risk ratio as a difference of arm log-risks."""

    measure = EffectMeasure.RISK_RATIO
    required_fields = ("events",)

    def contrast(self, arm: ArmRecord, baseline: ArmRecord) -> ContrastEstimate:
        e1, n1, e0, n0 = _corrected_cells(arm, baseline)
        var_arm = 1 / e1 - 1 / n1
        var_base = 1 / e0 - 1 / n0
        return ContrastEstimate(
            effect=math.log(e1 / n1) - math.log(e0 / n0),
            std_error=math.sqrt(var_arm + var_base),
            baseline_variance=var_base,
        )


class RiskDifferenceFormula(ContrastFormula):
    """Risk difference; variances use corrected cells when a cell is zero."""

    measure = EffectMeasure.RISK_DIFFERENCE
    required_fields = ("events",)

    def contrast(self, arm: ArmRecord, baseline: ArmRecord) -> ContrastEstimate:
        e1, n1, e0, n0 = _corrected_cells(arm, baseline)
        p1, p0 = e1 / n1, e0 / n0
        var_arm = p1 * (1 - p1) / n1
        var_base = p0 * (1 - p0) / n0
        return ContrastEstimate(
            effect=arm.events / arm.n - baseline.events / baseline.n,
            std_error=math.sqrt(var_arm + var_base),
            baseline_variance=var_base,
        )


_FORMULAS: dict[EffectMeasure, ContrastFormula] = {
    formula.measure: formula
    for formula in (
        MeanDifferenceFormula(),
        StandardizedMeanDifferenceFormula(),
        RatioOfMeansFormula(),
        OddsRatioFormula(),
        RiskRatioFormula(),
        RiskDifferenceFormula(),
    )
}


def resolve_measure(measure: Union[EffectMeasure, str]) -> ContrastFormula:
    """Resolve an effect measure to its formula.

    Raises:
        ValueError: If the measure is not recognized
    """
    try:
        return _FORMULAS[EffectMeasure(measure)]
    except ValueError:
        valid = [m.value for m in EffectMeasure]
        raise ValueError(f"Unsupported effect measure: {measure}. Valid measures: {valid}")
