"""Leave-one-study-out and cumulative re-fits of the consistency model.

Each iteration is independent: a failure (a removal that disconnects the
network, too few studies, or a missing reference treatment) is recorded as
a non-estimable entry and the loop continues.
"""

import logging
from collections.abc import Mapping
from typing import Any, Callable, Optional, Union

from netsynth.analysis.execution import CancellationToken, map_indexed
from netsynth.analysis.frequentist import FrequentistNMA
from netsynth.analysis.network import EvidenceNetwork, resolve_reference
from netsynth.config import Settings, get_settings
from netsynth.exceptions import NonEstimableError
from netsynth.logging import get_logger, log_failure
from netsynth.models.network import ModelKind, TauEstimator
from netsynth.models.results import (
    CumulativeEntry,
    CumulativeResult,
    LeaveOneOutEntry,
    LeaveOneOutResult,
    PooledResult,
)

_logger = get_logger("robustness")

OrderKey = Union[Mapping[str, Any], Callable[[str], Any], None]


def _effects(fit: PooledResult) -> tuple[dict[str, float], dict[str, float]]:
    reference = fit.reference_treatment
    others = [t for t in fit.treatments if t != reference]
    return {t: fit.effect(t) for t in others}, {t: fit.se(t) for t in others}


class RobustnessAnalyzer:
    """Sensitivity analyses that re-fit the network on subsets of studies."""

    def __init__(
        self,
        model_kind: Union[ModelKind, str] = ModelKind.RANDOM,
        tau_estimator: Union[TauEstimator, str, None] = None,
        multiarm_correction: Optional[bool] = None,
        max_workers: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.model = FrequentistNMA(
            model_kind=model_kind,
            tau_estimator=tau_estimator,
            multiarm_correction=multiarm_correction,
            settings=settings,
        )
        self.max_workers = max_workers or settings.max_workers

    def _refit(
        self,
        subset: EvidenceNetwork,
        reference: str,
        minimum_studies: int,
        excluded: tuple[str, ...] = (),
    ) -> PooledResult:
        if subset.study_count < minimum_studies:
            raise NonEstimableError(
                f"{subset.study_count} studies remain; at least {minimum_studies} required"
            )
        if not subset.contains(reference):
            raise NonEstimableError(f"reference treatment '{reference}' not in remaining network")
        if not subset.is_connected:
            raise NonEstimableError(
                f"remaining network has {len(subset.connected_components())} components"
            )
        return self.model.fit(
            subset,
            reference_treatment=reference,
            excluded_studies=excluded,
            emit_warnings=False,
        )

    def leave_one_out(
        self,
        network: EvidenceNetwork,
        reference_treatment: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> LeaveOneOutResult:
        """Re-fit the network once per study with that study's contrasts removed.

        Raises:
            EmptyNetworkError: No edges
            DisconnectedNetworkError: The full network has more than one component
            AnalysisCancelledError: The token was cancelled
        """
        network.require_connected()
        reference = resolve_reference(network, reference_treatment)

        def exclude(study_id: str) -> LeaveOneOutEntry:
            try:
                fit = self._refit(
                    network.without_studies([study_id]),
                    reference,
                    minimum_studies=2,
                    excluded=(study_id,),
                )
            except NonEstimableError as e:
                log_failure(
                    _logger, "leave_one_out", e, {"excluded": study_id}, level=logging.INFO
                )
                return LeaveOneOutEntry(excluded_study=study_id, estimable=False, reason=e.reason)

            effects, standard_errors = _effects(fit)
            return LeaveOneOutEntry(
                excluded_study=study_id,
                estimable=True,
                effects=effects,
                standard_errors=standard_errors,
                tau_squared=fit.heterogeneity.tau_squared,
                i_squared=fit.heterogeneity.i_squared,
            )

        entries = map_indexed(
            exclude,
            network.studies,
            max_workers=self.max_workers,
            token=token,
            operation="leave-one-out analysis",
        )
        _logger.debug(
            f"Leave-one-out: {sum(e.estimable for e in entries)}/{len(entries)} estimable"
        )
        return LeaveOneOutResult(
            reference_treatment=reference,
            model_kind=self.model.model_kind,
            entries=tuple(entries),
        )

    @staticmethod
    def order_studies(studies: tuple[str, ...], order_key: OrderKey = None) -> list[str]:
        """Order studies by a key mapping or callable; alphabetical by default.

        Raises:
            ValueError: A mapping key lacks a value for some study
        """
        if order_key is None:
            return sorted(studies)
        if isinstance(order_key, Mapping):
            missing = [s for s in studies if s not in order_key]
            if missing:
                raise ValueError(f"No ordering value for studies: {', '.join(sorted(missing))}")
            return sorted(studies, key=lambda s: (order_key[s], s))
        return sorted(studies, key=lambda s: (order_key(s), s))

    def cumulative(
        self,
        network: EvidenceNetwork,
        order_key: OrderKey = None,
        reference_treatment: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> CumulativeResult:
        """Add studies one at a time in the given order, re-fitting after each.

        Args:
            network: Full evidence network
            order_key: Study -> sortable value (e.g. publication year) as a
                mapping or callable; alphabetical by study id when omitted
            reference_treatment: Zero point of the effect scale
            token: Cancellation token checked between steps

        Raises:
            EmptyNetworkError: No edges
            DisconnectedNetworkError: The full network has more than one component
            AnalysisCancelledError: The token was cancelled
        """
        network.require_connected()
        reference = resolve_reference(network, reference_treatment)
        ordered = self.order_studies(network.studies, order_key)

        def step(position: int) -> CumulativeEntry:
            included = tuple(ordered[: position + 1])
            try:
                fit = self._refit(network.restricted_to(included), reference, minimum_studies=1)
            except NonEstimableError as e:
                log_failure(
                    _logger, "cumulative", e, {"step": position + 1}, level=logging.INFO
                )
                return CumulativeEntry(
                    step=position + 1,
                    added_study=ordered[position],
                    studies=included,
                    estimable=False,
                    reason=e.reason,
                )

            effects, standard_errors = _effects(fit)
            return CumulativeEntry(
                step=position + 1,
                added_study=ordered[position],
                studies=included,
                estimable=True,
                effects=effects,
                standard_errors=standard_errors,
                tau_squared=fit.heterogeneity.tau_squared,
            )

        entries = map_indexed(
            step,
            range(len(ordered)),
            max_workers=self.max_workers,
            token=token,
            operation="cumulative analysis",
        )
        return CumulativeResult(
            reference_treatment=reference,
            model_kind=self.model.model_kind,
            entries=tuple(entries),
        )
