"""Exceptions and warnings raised by the network meta-analysis engine."""


class NetworkAnalysisError(Exception):
    """Base exception for network meta-analysis errors."""

    def __init__(self, message: str = "Network analysis failed"):
        self.message = message
        super().__init__(self.message)


class DegenerateEdgeError(NetworkAnalysisError):
    """Raised for a self-comparison or a non-positive standard error."""

    pass


class InsufficientArmsError(NetworkAnalysisError):
    """Raised when a study has fewer than two arms."""

    def __init__(self, study_id: str, n_arms: int):
        self.study_id = study_id
        self.n_arms = n_arms
        super().__init__(f"Study {study_id} has {n_arms} arm(s); at least 2 are required")


class EmptyNetworkError(NetworkAnalysisError):
    """Raised when pooling is requested on a network without edges."""

    def __init__(self, message: str = "Evidence network has no comparisons"):
        super().__init__(message)


class DisconnectedNetworkError(NetworkAnalysisError):
    """Raised when pooling is requested on a network with more than one component."""

    def __init__(self, components: list[set[str]]):
        self.components = components
        parts = "; ".join("{" + ", ".join(sorted(c)) + "}" for c in components)
        super().__init__(f"Evidence network has {len(components)} components: {parts}")


class NonEstimableError(NetworkAnalysisError):
    """Raised when a node-split or robustness iteration cannot be estimated."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Not estimable: {reason}")


class UnknownTreatmentError(NetworkAnalysisError):
    """Raised when a treatment is not part of the network."""

    def __init__(self, treatment: str):
        self.treatment = treatment
        super().__init__(f"Treatment '{treatment}' is not in the evidence network")


class AnalysisCancelledError(NetworkAnalysisError):
    """Raised when a long-running fit is cancelled between iterations."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} was cancelled")


class NetworkAnalysisWarning(UserWarning):
    """Base warning for results that are returned but should be inspected."""

    pass


class ConvergenceWarning(NetworkAnalysisWarning):
    """Sampler R-hat above threshold, or tau² iteration out of steps."""

    pass


class HeterogeneityWarning(NetworkAnalysisWarning):
    """Heterogeneity cannot be estimated (no redundant evidence)."""

    pass
