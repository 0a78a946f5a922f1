"""Node-splitting: direct versus indirect evidence for each compared pair.

References:
    - Dias S, Welton NJ, Caldwell DM, Ades AE. Stat Med 2010;29:932-944
    - König J, Krahn U, Binder H. Stat Med 2013;32:5414-5429
"""

import logging
import math
from typing import Optional, Union

from scipy import stats

from netsynth.analysis.execution import CancellationToken, map_indexed
from netsynth.analysis.frequentist import FrequentistNMA
from netsynth.analysis.network import EvidenceNetwork
from netsynth.config import Settings, get_settings
from netsynth.exceptions import NonEstimableError
from netsynth.logging import get_logger, log_failure
from netsynth.models.network import ModelKind, TauEstimator, normalize_treatment
from netsynth.models.results import NodeSplitEstimate, NodeSplitResult

_logger = get_logger("nodesplit")


class NodeSplitter:
    """Compares direct and indirect estimates for every directly compared pair.

    The between-study variance of the full network is used for both the
    direct and the indirect pooling, so the two estimates are on a common
    footing.
    """

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

    def network_tau_squared(self, network: EvidenceNetwork) -> float:
        if self.model.model_kind == ModelKind.FIXED:
            return 0.0
        return self.model.fit(network, emit_warnings=False).heterogeneity.tau_squared

    def split(
        self,
        network: EvidenceNetwork,
        treatment_a: str,
        treatment_b: str,
        tau_squared: Optional[float] = None,
    ) -> NodeSplitEstimate:
        """Split the evidence on one pair (effect of the later treatment vs the earlier).

        Raises:
            NonEstimableError: No direct evidence, or no indirect path once the
                direct edges are removed
        """
        a, b = sorted((normalize_treatment(treatment_a), normalize_treatment(treatment_b)))
        direct = network.direct_edges(a, b)
        if not direct:
            raise NonEstimableError(f"no direct evidence for {a} vs {b}")

        indirect_network = network.without_pair(a, b)
        if not (
            indirect_network.contains(a)
            and indirect_network.contains(b)
            and indirect_network.has_path(a, b)
        ):
            raise NonEstimableError(f"no indirect evidence for {a} vs {b}")

        if tau_squared is None:
            tau_squared = self.network_tau_squared(network)

        # Direct: inverse-variance pooling of the pair's own contrasts
        weights = [1 / (edge.variance + tau_squared) for edge in direct]
        total_weight = sum(weights)
        direct_estimate = sum(w * e.effect for w, e in zip(weights, direct)) / total_weight
        direct_se = math.sqrt(1 / total_weight)

        # Indirect: every other path between the pair
        indirect_fit = self.model.fit(
            indirect_network,
            reference_treatment=a,
            tau_squared=tau_squared if self.model.model_kind == ModelKind.RANDOM else None,
            emit_warnings=False,
        )
        indirect_estimate = indirect_fit.effect(b, a)
        indirect_se = indirect_fit.se(b, a)

        difference = direct_estimate - indirect_estimate
        difference_se = math.sqrt(direct_se**2 + indirect_se**2)
        z_statistic = difference / difference_se
        p_value = float(2 * stats.norm.sf(abs(z_statistic)))

        return NodeSplitEstimate(
            treatment_a=a,
            treatment_b=b,
            estimable=True,
            n_direct_studies=len({e.study_id for e in direct}),
            direct_estimate=direct_estimate,
            direct_se=direct_se,
            indirect_estimate=indirect_estimate,
            indirect_se=indirect_se,
            difference=difference,
            difference_se=difference_se,
            z_statistic=z_statistic,
            p_value=p_value,
        )

    def split_all(
        self,
        network: EvidenceNetwork,
        token: Optional[CancellationToken] = None,
    ) -> NodeSplitResult:
        """Split every directly compared pair; non-estimable pairs are reported, not raised.

        Raises:
            EmptyNetworkError: No edges
            DisconnectedNetworkError: More than one component
        """
        network.require_connected()
        tau_squared = self.network_tau_squared(network)

        def split_pair(pair: tuple[str, str]) -> NodeSplitEstimate:
            try:
                return self.split(network, pair[0], pair[1], tau_squared=tau_squared)
            except NonEstimableError as e:
                log_failure(
                    _logger,
                    "node_split",
                    e,
                    {"pair": f"{pair[0]} vs {pair[1]}"},
                    level=logging.INFO,
                )
                return NodeSplitEstimate(
                    treatment_a=pair[0],
                    treatment_b=pair[1],
                    estimable=False,
                    n_direct_studies=len({x.study_id for x in network.direct_edges(*pair)}),
                    reason=e.reason,
                )

        splits = map_indexed(
            split_pair,
            network.compared_pairs(),
            max_workers=self.max_workers,
            token=token,
            operation="node splitting",
        )
        return NodeSplitResult(
            model_kind=self.model.model_kind,
            tau_squared=tau_squared,
            splits=tuple(splits),
        )
