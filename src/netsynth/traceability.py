"""Number formatting, precision, and traceability utilities.

Provides centralized configuration for numerical precision and audit trails
so that every pooled estimate can be traced back to its inputs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PrecisionConfig:
    """Configuration for number formatting precision.

    References:
        - Cochrane Handbook 10.12.1 recommends 2 decimal places for SMD
        - APA 7th edition recommends p-values to 3 decimals (< 0.001)
    """

    # P-values: 4 decimals, minimum threshold 0.0001
    p_value_decimals: int = 4
    p_value_min_threshold: float = 0.0001

    # Effect sizes: 2-3 decimals depending on scale
    effect_size_decimals: int = 2
    log_effect_decimals: int = 3  # For log(OR), log(RR), log(ROM)

    ci_decimals: int = 2

    # Heterogeneity statistics
    i_squared_decimals: int = 1  # Percentage (0.0-100.0)
    tau_squared_decimals: int = 4  # Small variance values
    q_statistic_decimals: int = 2

    # Ranking scores (P-score, SUCRA)
    score_decimals: int = 3

    # Heterogeneity interpretation thresholds
    # Reference: Higgins JPT, Thompson SG. BMJ 2002;327:557-560
    I_SQUARED_LOW: float = 25.0
    I_SQUARED_MODERATE: float = 50.0
    I_SQUARED_HIGH: float = 75.0

    # Continuity correction for zero cells in 2x2 tables
    # Reference: Sweeting MJ, et al. Stat Med 2004;23:1351-1375
    CONTINUITY_CORRECTION: float = 0.5

    def format_p_value(self, value: float) -> str:
        """Format a p-value (e.g., "0.0234" or "< 0.0001")."""
        if value < self.p_value_min_threshold:
            return f"< {self.p_value_min_threshold}"
        return f"{value:.{self.p_value_decimals}f}"

    def format_effect(self, value: float, is_log_scale: bool = False) -> str:
        decimals = self.log_effect_decimals if is_log_scale else self.effect_size_decimals
        return f"{value:.{decimals}f}"

    def format_ci(self, lower: float, upper: float, is_log_scale: bool = False) -> str:
        """Format a confidence interval (e.g., "[1.23, 4.56]")."""
        decimals = self.log_effect_decimals if is_log_scale else self.ci_decimals
        return f"[{lower:.{decimals}f}, {upper:.{decimals}f}]"

    def format_i_squared(self, value: float) -> str:
        return f"{value:.{self.i_squared_decimals}f}%"

    def format_tau_squared(self, value: float) -> str:
        return f"{value:.{self.tau_squared_decimals}f}"

    def format_q(self, value: float) -> str:
        return f"{value:.{self.q_statistic_decimals}f}"

    def format_score(self, value: float) -> str:
        return f"{value:.{self.score_decimals}f}"

    def interpret_i_squared(self, value: float) -> str:
        """Interpret I² value according to Cochrane guidelines.

        Reference:
            Higgins JPT, Thompson SG, Deeks JJ, Altman DG. BMJ 2003;327:557-560
        """
        if value < self.I_SQUARED_LOW:
            return "low heterogeneity"
        elif value < self.I_SQUARED_MODERATE:
            return "moderate heterogeneity"
        elif value < self.I_SQUARED_HIGH:
            return "substantial heterogeneity"
        else:
            return "considerable heterogeneity"


# Global default precision configuration
DEFAULT_PRECISION = PrecisionConfig()


@dataclass
class CalculationStep:
    """A single step in a calculation with traceability information."""

    step_name: str
    description: str
    formula: str
    inputs: dict[str, Any]
    output: Any
    output_name: str
    timestamp: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "step_name": self.step_name,
            "description": self.description,
            "formula": self.formula,
            "inputs": self.inputs,
            "output": self.output,
            "output_name": self.output_name,
            "timestamp": self.timestamp,
        }


@dataclass
class AuditTrail:
    """Audit trail for statistical calculations.

    Provides full traceability of how each number was calculated,
    including formulas, inputs, and intermediate steps.
    """

    calculation_id: str
    calculation_type: str  # e.g., "network_meta_analysis", "node_split"
    method_name: str  # e.g., "random_effects", "fixed_effect"
    method_reference: str = ""  # Academic reference for the method
    software_version: str = "netsynth"
    confidence_level: float = 0.95
    steps: list[CalculationStep] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)

    def add_step(
        self,
        step_name: str,
        description: str,
        formula: str,
        inputs: dict[str, Any],
        output: Any,
        output_name: str,
    ) -> None:
        """Add a calculation step to the audit trail.

        Args:
            step_name: Short name for the step
            description: Human-readable description
            formula: Mathematical formula
            inputs: Input values used
            output: Result of the calculation
            output_name: Name of the output variable
        """
        self.steps.append(
            CalculationStep(
                step_name=step_name,
                description=description,
                formula=formula,
                inputs=inputs,
                output=output,
                output_name=output_name,
            )
        )

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "calculation_id": self.calculation_id,
            "calculation_type": self.calculation_type,
            "method_name": self.method_name,
            "method_reference": self.method_reference,
            "software_version": self.software_version,
            "confidence_level": self.confidence_level,
            "steps": [step.to_dict() for step in self.steps],
            "warnings": self.warnings,
            "created_at": self.created_at,
        }
