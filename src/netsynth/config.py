"""Configuration management for netsynth."""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Literal, Optional, Union

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from netsynth.models.network import (
    Direction,
    EffectMeasure,
    ModelKind,
    TauEstimator,
    normalize_treatment,
)


class Settings(BaseSettings):
    """Engine defaults loaded from environment variables (``NETSYNTH_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="NETSYNTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Frequentist model
    confidence_level: float = Field(default=0.95, gt=0, lt=1)
    tau_estimator: TauEstimator = TauEstimator.DERSIMONIAN_LAIRD
    tau_max_iterations: int = Field(default=100, ge=1)  # Fisher scoring steps for REML/ML
    tau_tolerance: float = Field(default=1e-8, gt=0)
    multiarm_correction: bool = True

    # Parallel execution of node-split / robustness loops / chains (1 = sequential)
    max_workers: int = Field(default=1, ge=1)

    # Bayesian sampler
    bayes_chains: int = Field(default=4, ge=2)
    bayes_iterations: int = Field(default=5000, ge=1)  # Per chain, including burn-in
    bayes_burn_in: int = Field(default=1000, ge=0)
    bayes_thin: int = Field(default=1, ge=1)
    bayes_prior_sd: float = Field(default=10.0, gt=0)  # Normal prior SD for effects and beta
    bayes_tau_max: float = Field(default=5.0, gt=0)  # Upper bound of Uniform(0, tau_max) prior
    bayes_seed: Optional[int] = None
    rhat_threshold: float = Field(default=1.1, gt=1)

    # Logging
    log_level: str = "WARNING"
    log_format: Literal["standard", "json"] = "standard"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# =============================================================================
# Per-run Analysis Configuration
# =============================================================================


@dataclass(frozen=True)
class AnalysisConfig:
    """Configuration for one network meta-analysis run.

    Resolved once before the engine is invoked; every stage reads from it
    and none mutates it.

    Attributes:
        effect_measure: Scale on which contrasts are pooled (required)
        reference_treatment: Treatment all effects are expressed against;
            the first treatment in canonical order when omitted
        model_kind: Fixed- or random-effects weighting
        tau_estimator: Between-study variance estimator (random effects)
        tau_prior_bounds: (lower, upper) of the Uniform prior on tau
        covariate: Study-level covariate values for Bayesian meta-regression
        covariate_name: Display name of the covariate
        direction: Whether small or large effects are beneficial
        confidence_level: Confidence level for intervals
        multiarm_correction: Model covariance between contrasts of one study
    """

    effect_measure: EffectMeasure
    reference_treatment: Optional[str] = None
    model_kind: ModelKind = ModelKind.RANDOM
    tau_estimator: TauEstimator = TauEstimator.DERSIMONIAN_LAIRD
    tau_prior_bounds: tuple[float, float] = (0.0, 5.0)
    covariate: Optional[dict[str, float]] = field(default=None, hash=False)
    covariate_name: str = "covariate"
    direction: Direction = Direction.SMALLER_IS_BETTER
    confidence_level: float = 0.95
    multiarm_correction: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "effect_measure", validate_effect_measure(self.effect_measure))
        object.__setattr__(self, "model_kind", validate_model_kind(self.model_kind))
        object.__setattr__(self, "tau_estimator", TauEstimator(self.tau_estimator))
        object.__setattr__(self, "direction", Direction(self.direction))
        if self.reference_treatment is not None:
            object.__setattr__(
                self, "reference_treatment", normalize_treatment(self.reference_treatment)
            )
        lower, upper = self.tau_prior_bounds
        if lower < 0 or upper <= lower:
            raise ValueError(
                f"Invalid tau prior bounds {self.tau_prior_bounds}: need 0 <= lower < upper"
            )
        if not 0 < self.confidence_level < 1:
            raise ValueError(f"Confidence level must be in (0, 1), got {self.confidence_level}")

    @classmethod
    def from_settings(
        cls,
        effect_measure: Union[EffectMeasure, str],
        settings: Optional[Settings] = None,
        **overrides,
    ) -> "AnalysisConfig":
        """Build a configuration using environment defaults where not overridden."""
        settings = settings or get_settings()
        values = {
            "tau_estimator": settings.tau_estimator,
            "tau_prior_bounds": (0.0, settings.bayes_tau_max),
            "confidence_level": settings.confidence_level,
            "multiarm_correction": settings.multiarm_correction,
        }
        values.update(overrides)
        return cls(effect_measure=effect_measure, **values)


def validate_effect_measure(measure: Union[EffectMeasure, str]) -> EffectMeasure:
    """Validate and normalize an effect measure.

    Raises:
        ValueError: If the measure is not recognized
    """
    if isinstance(measure, EffectMeasure):
        return measure
    try:
        return EffectMeasure(str(measure).strip().lower())
    except ValueError:
        valid = [m.value for m in EffectMeasure]
        raise ValueError(f"Invalid effect measure '{measure}'. Must be one of: {', '.join(valid)}")


def validate_model_kind(kind: Union[ModelKind, str]) -> ModelKind:
    """Validate and normalize a model kind.

    Raises:
        ValueError: If the kind is not recognized
    """
    if isinstance(kind, ModelKind):
        return kind
    try:
        return ModelKind(str(kind).strip().lower())
    except ValueError:
        valid = [k.value for k in ModelKind]
        raise ValueError(f"Invalid model kind '{kind}'. Must be one of: {', '.join(valid)}")
