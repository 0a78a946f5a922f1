"""Network meta-analysis: contrasts, evidence network, models and diagnostics."""

from netsynth.analysis.bayesian import BayesianNMA, SamplerProgress
from netsynth.analysis.contrasts import ContrastBuilder
from netsynth.analysis.engine import NetworkAnalysisReport, NetworkMetaAnalysisEngine
from netsynth.analysis.execution import CancellationToken
from netsynth.analysis.frequentist import FrequentistNMA
from netsynth.analysis.network import EvidenceNetwork
from netsynth.analysis.nodesplit import NodeSplitter
from netsynth.analysis.ranking import RankingEngine
from netsynth.analysis.report import league_table, summarize
from netsynth.analysis.robustness import RobustnessAnalyzer

__all__ = [
    "BayesianNMA",
    "CancellationToken",
    "ContrastBuilder",
    "EvidenceNetwork",
    "FrequentistNMA",
    "NetworkAnalysisReport",
    "NetworkMetaAnalysisEngine",
    "NodeSplitter",
    "RankingEngine",
    "RobustnessAnalyzer",
    "SamplerProgress",
    "league_table",
    "summarize",
]
