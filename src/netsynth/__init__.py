"""netsynth - Network meta-analysis evidence-synthesis engine."""

from netsynth.analysis.engine import NetworkAnalysisReport, NetworkMetaAnalysisEngine
from netsynth.analysis.network import EvidenceNetwork
from netsynth.config import AnalysisConfig
from netsynth.models.network import ArmRecord, StudyRecord

__version__ = "0.1.0"
__all__ = [
    "AnalysisConfig",
    "ArmRecord",
    "EvidenceNetwork",
    "NetworkAnalysisReport",
    "NetworkMetaAnalysisEngine",
    "StudyRecord",
]
