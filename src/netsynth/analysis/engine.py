"""Network meta-analysis engine.

Runs the pipeline from raw records to report artifacts: contrasts, evidence
network, consistency model, inconsistency checks, ranking and robustness
re-fits, all driven by one ``AnalysisConfig``.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Optional, Union

from netsynth.analysis.bayesian import BayesianNMA, ProgressCallback
from netsynth.analysis.contrasts import ContrastBuilder
from netsynth.analysis.execution import CancellationToken
from netsynth.analysis.frequentist import FrequentistNMA
from netsynth.analysis.network import EvidenceNetwork
from netsynth.analysis.nodesplit import NodeSplitter
from netsynth.analysis.ranking import RankingEngine
from netsynth.analysis.report import league_table, summarize
from netsynth.analysis.robustness import OrderKey, RobustnessAnalyzer
from netsynth.config import AnalysisConfig, Settings, get_settings
from netsynth.logging import configure_from_settings, get_logger
from netsynth.models.network import ArmRecord, StudyRecord
from netsynth.models.results import (
    CumulativeResult,
    LeaveOneOutResult,
    NodeSplitResult,
    PooledResult,
    PosteriorSample,
    RankingResult,
)

_logger = get_logger("engine")

Record = Union[StudyRecord, ArmRecord]


@dataclass(frozen=True)
class NetworkAnalysisReport:
    """All artifacts of one analysis run."""

    config: AnalysisConfig
    network: EvidenceNetwork
    pooled: PooledResult
    ranking: RankingResult
    node_split: NodeSplitResult
    leave_one_out: LeaveOneOutResult
    cumulative: CumulativeResult
    summary: str
    posterior: Optional[PosteriorSample] = None
    posterior_ranking: Optional[RankingResult] = None

    def league_table(self, exponentiate: bool = False) -> dict[str, dict[str, str]]:
        return league_table(self.pooled, self.config.effect_measure, exponentiate)

    def to_dict(self) -> dict[str, Any]:
        return {
            "effect_measure": self.config.effect_measure.value,
            "direction": self.config.direction.value,
            "network": self.network.to_dict(),
            "pooled": self.pooled.to_dict(),
            "ranking": self.ranking.to_dict(),
            "node_split": self.node_split.to_dict(),
            "leave_one_out": self.leave_one_out.to_dict(),
            "cumulative": self.cumulative.to_dict(),
            "posterior": self.posterior.to_dict() if self.posterior else None,
            "posterior_ranking": (
                self.posterior_ranking.to_dict() if self.posterior_ranking else None
            ),
            "league_table": self.league_table(),
            "summary": self.summary,
        }


class NetworkMetaAnalysisEngine:
    """Facade over the network meta-analysis pipeline."""

    def __init__(
        self,
        config: AnalysisConfig,
        settings: Optional[Settings] = None,
        max_workers: Optional[int] = None,
        configure_logging: bool = False,
    ):
        """Initialize the engine.

        Args:
            config: Per-run analysis configuration
            settings: Environment defaults (tau² iterations, sampler settings)
            max_workers: Thread pool size for per-study / per-pair loops
            configure_logging: Apply the settings' log level and format
        """
        self.config = config
        self.settings = settings or get_settings()
        self.max_workers = max_workers or self.settings.max_workers
        if configure_logging:
            configure_from_settings(self.settings)

    def _model(self) -> FrequentistNMA:
        return FrequentistNMA(
            model_kind=self.config.model_kind,
            tau_estimator=self.config.tau_estimator,
            confidence_level=self.config.confidence_level,
            multiarm_correction=self.config.multiarm_correction,
            settings=self.settings,
        )

    def build_network(self, records: Iterable[Record]) -> EvidenceNetwork:
        """Build the evidence network from study contrasts and/or arm-level data.

        Arm records are converted to contrasts with the configured effect
        measure; study records are taken as already on that scale.
        """
        contrasts: list[StudyRecord] = []
        arms: list[ArmRecord] = []
        for record in records:
            if isinstance(record, ArmRecord):
                arms.append(record)
            elif isinstance(record, StudyRecord):
                contrasts.append(record)
            else:
                raise TypeError(f"Expected StudyRecord or ArmRecord, got {type(record).__name__}")

        if arms:
            builder = ContrastBuilder(self.config.effect_measure, self.config.reference_treatment)
            contrasts.extend(builder.build(arms))
        return EvidenceNetwork.from_records(contrasts)

    def fit(self, network: EvidenceNetwork) -> PooledResult:
        return self._model().fit(network, reference_treatment=self.config.reference_treatment)

    def fit_bayesian(
        self,
        network: EvidenceNetwork,
        n_chains: Optional[int] = None,
        n_iterations: Optional[int] = None,
        burn_in: Optional[int] = None,
        seed: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> PosteriorSample:
        """Sample the Bayesian consistency model (meta-regression if a covariate is configured)."""
        sampler = BayesianNMA(
            n_chains=n_chains,
            n_iterations=n_iterations,
            burn_in=burn_in,
            tau_prior_bounds=self.config.tau_prior_bounds,
            seed=seed,
            multiarm_correction=self.config.multiarm_correction,
            max_workers=self.max_workers,
            settings=self.settings,
        )
        return sampler.fit(
            network,
            reference_treatment=self.config.reference_treatment,
            covariate=self.config.covariate,
            covariate_name=self.config.covariate_name,
            token=token,
            progress=progress,
        )

    def node_split(
        self, network: EvidenceNetwork, token: Optional[CancellationToken] = None
    ) -> NodeSplitResult:
        splitter = NodeSplitter(
            model_kind=self.config.model_kind,
            tau_estimator=self.config.tau_estimator,
            multiarm_correction=self.config.multiarm_correction,
            max_workers=self.max_workers,
            settings=self.settings,
        )
        return splitter.split_all(network, token=token)

    def rank(self, result: Union[PooledResult, PosteriorSample]) -> RankingResult:
        return RankingEngine(self.config.direction).rank(result)

    def _robustness(self) -> RobustnessAnalyzer:
        return RobustnessAnalyzer(
            model_kind=self.config.model_kind,
            tau_estimator=self.config.tau_estimator,
            multiarm_correction=self.config.multiarm_correction,
            max_workers=self.max_workers,
            settings=self.settings,
        )

    def leave_one_out(
        self, network: EvidenceNetwork, token: Optional[CancellationToken] = None
    ) -> LeaveOneOutResult:
        return self._robustness().leave_one_out(
            network, reference_treatment=self.config.reference_treatment, token=token
        )

    def cumulative(
        self,
        network: EvidenceNetwork,
        order_key: OrderKey = None,
        token: Optional[CancellationToken] = None,
    ) -> CumulativeResult:
        return self._robustness().cumulative(
            network,
            order_key=order_key,
            reference_treatment=self.config.reference_treatment,
            token=token,
        )

    def run(
        self,
        records: Iterable[Record],
        order_key: OrderKey = None,
        bayesian: bool = False,
        seed: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> NetworkAnalysisReport:
        """Run the complete analysis.

        Args:
            records: Study contrasts and/or arm-level records
            order_key: Study ordering for the cumulative analysis
            bayesian: Also sample the Bayesian model and rank by SUCRA
            seed: Sampler seed
            token: Cancellation token shared by every stage
            progress: Sampler progress callback

        Returns:
            NetworkAnalysisReport with every artifact and the summary text

        Raises:
            EmptyNetworkError: No usable contrasts
            DisconnectedNetworkError: The network has more than one component
            AnalysisCancelledError: The token was cancelled
        """
        network = self.build_network(records)
        network.require_connected()
        _logger.info(
            f"Analysing {network.study_count} studies, {len(network.treatments)} treatments "
            f"({self.config.effect_measure.value}, {self.config.model_kind.value} effects)"
        )

        pooled = self.fit(network)
        ranking = self.rank(pooled)
        node_split = self.node_split(network, token=token)
        loo = self.leave_one_out(network, token=token)
        cumulative = self.cumulative(network, order_key=order_key, token=token)

        posterior = posterior_ranking = None
        if bayesian:
            posterior = self.fit_bayesian(network, seed=seed, token=token, progress=progress)
            posterior_ranking = self.rank(posterior)

        summary = summarize(
            pooled,
            effect_measure=self.config.effect_measure,
            ranking=ranking,
            node_split=node_split,
        )
        return NetworkAnalysisReport(
            config=self.config,
            network=network,
            pooled=pooled,
            ranking=ranking,
            node_split=node_split,
            leave_one_out=loo,
            cumulative=cumulative,
            summary=summary,
            posterior=posterior,
            posterior_ranking=posterior_ranking,
        )
