"""Models package."""

from netsynth.models.network import (
    ArmRecord,
    CanonicalEdge,
    Direction,
    EffectMeasure,
    ModelKind,
    StudyRecord,
    TauEstimator,
    canonicalize,
    normalize_treatment,
)
from netsynth.models.results import (
    ConfidenceInterval,
    CumulativeEntry,
    CumulativeResult,
    Heterogeneity,
    LeaveOneOutEntry,
    LeaveOneOutResult,
    NodeSplitEstimate,
    NodeSplitResult,
    PooledResult,
    PosteriorSample,
    PosteriorSummary,
    RankingResult,
    SamplerDiagnostics,
    TreatmentRank,
)

__all__ = [
    "ArmRecord",
    "CanonicalEdge",
    "ConfidenceInterval",
    "CumulativeEntry",
    "CumulativeResult",
    "Direction",
    "EffectMeasure",
    "Heterogeneity",
    "LeaveOneOutEntry",
    "LeaveOneOutResult",
    "ModelKind",
    "NodeSplitEstimate",
    "NodeSplitResult",
    "PooledResult",
    "PosteriorSample",
    "PosteriorSummary",
    "RankingResult",
    "SamplerDiagnostics",
    "StudyRecord",
    "TauEstimator",
    "TreatmentRank",
    "canonicalize",
    "normalize_treatment",
]
