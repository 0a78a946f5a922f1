"""Contrast builder: arm-level summaries to pairwise study contrasts."""

from collections.abc import Iterable
from typing import Optional, Union

from netsynth.analysis.measures import ContrastFormula, resolve_measure
from netsynth.exceptions import DegenerateEdgeError, InsufficientArmsError
from netsynth.logging import get_logger
from netsynth.models.network import ArmRecord, EffectMeasure, StudyRecord, normalize_treatment

_logger = get_logger("contrasts")


class ContrastBuilder:
    """Converts arm-level records into one contrast per non-baseline arm.

    The baseline arm of a study is the reference treatment when the study
    includes it, otherwise the arm whose normalized treatment sorts first.
    """

    def __init__(
        self,
        effect_measure: Union[EffectMeasure, str],
        reference_treatment: Optional[str] = None,
    ):
        """Initialize the builder.

        Args:
            effect_measure: Scale of the contrasts (required, never inferred)
            reference_treatment: Preferred baseline arm
        """
        self.formula: ContrastFormula = resolve_measure(effect_measure)
        self.effect_measure = self.formula.measure
        self.reference_treatment = (
            normalize_treatment(reference_treatment) if reference_treatment else None
        )

    def build(self, arms: Iterable[ArmRecord]) -> list[StudyRecord]:
        """Build contrasts for every study, preserving first-seen study order.

        Raises:
            InsufficientArmsError: A study has fewer than two arms
            DegenerateEdgeError: A study lists the same treatment twice
            ValueError: An arm lacks the data the effect measure needs
        """
        studies: dict[str, list[ArmRecord]] = {}
        for arm in arms:
            studies.setdefault(str(arm.study_id).strip(), []).append(arm)

        records: list[StudyRecord] = []
        for study_id, study_arms in studies.items():
            records.extend(self.build_study(study_id, study_arms))

        _logger.debug(
            f"Built {len(records)} {self.effect_measure.value} contrasts from {len(studies)} studies"
        )
        return records

    def build_study(self, study_id: str, arms: list[ArmRecord]) -> list[StudyRecord]:
        """Build the contrasts of a single study against its baseline arm."""
        if len(arms) < 2:
            raise InsufficientArmsError(study_id, len(arms))

        keyed: dict[str, ArmRecord] = {}
        for arm in arms:
            key = normalize_treatment(arm.treatment)
            if key in keyed:
                raise DegenerateEdgeError(f"Study {study_id} lists treatment '{key}' more than once")
            self.formula.check(arm)
            keyed[key] = arm

        baseline_key = self.select_baseline(list(keyed))
        baseline = keyed[baseline_key]

        records = []
        for key, arm in keyed.items():
            if key == baseline_key:
                continue
            estimate = self.formula.contrast(arm, baseline)
            records.append(
                StudyRecord(
                    study_id=study_id,
                    treatment_a=baseline_key,
                    treatment_b=key,
                    effect=estimate.effect,
                    std_error=estimate.std_error,
                    baseline_treatment=baseline_key if len(keyed) > 2 else None,
                    baseline_variance=estimate.baseline_variance if len(keyed) > 2 else None,
                )
            )
        return records

    def select_baseline(self, treatments: list[str]) -> str:
        if self.reference_treatment in treatments:
            return self.reference_treatment
        return min(treatments)
