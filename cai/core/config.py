from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..schemas.enums import (
    FeatureFactor,
    FusionStrategy,
    PipelineStage,
    PlanStrategy,
    ProcessingMode,
    ResponseFormat,
    SubsystemKind,
)


def check_thresholds(thresholds: Sequence[float]) -> tuple[float, float, float]:
    """Validate the ascending routing thresholds (T1 < T2 < T3, each within [0, 1])."""
    values = tuple(float(value) for value in thresholds)
    if len(values) != 3:
        raise ValueError(f"Expected exactly three routing thresholds, got {len(values)}")
    if any(value < 0.0 or value > 1.0 for value in values):
        raise ValueError(f"Routing thresholds must lie within [0, 1]: {values}")
    if not all(lower < upper for lower, upper in zip(values, values[1:])):
        raise ValueError(f"Routing thresholds must be strictly increasing: {values}")
    return values  # type: ignore[return-value]


class FactorWeight(BaseModel):
    model_config = ConfigDict(frozen=True)

    weight: float = Field(..., ge=0.0, description="Relative weight before renormalization.")
    enabled: bool = Field(True, description="Disabled factors are dropped and the rest renormalized.")
    inverted: bool = Field(False, description="Contribute 1 - value, so a high value lowers processing intensity.")


def _default_factors() -> dict[FeatureFactor, FactorWeight]:
    return {
        FeatureFactor.COMPLEXITY: FactorWeight(weight=0.3),
        FeatureFactor.CONTEXT: FactorWeight(weight=0.2),
        FeatureFactor.URGENCY: FactorWeight(weight=0.15, inverted=True),
        FeatureFactor.RESOURCE_AVAILABILITY: FactorWeight(weight=0.15),
        FeatureFactor.HISTORICAL_PERFORMANCE: FactorWeight(weight=0.2),
    }


class ModeProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    subsystems: list[SubsystemKind] = Field(..., min_length=1)
    strategy: PlanStrategy
    weights: dict[SubsystemKind, float] = Field(
        default_factory=dict,
        description="Fusion weight per subsystem; missing entries default to an equal share.",
    )

    @model_validator(mode="after")
    def _check_subsystems(self) -> "ModeProfile":
        if len(set(self.subsystems)) != len(self.subsystems):
            raise ValueError("Mode profile lists a subsystem more than once")
        if any(weight < 0.0 for weight in self.weights.values()):
            raise ValueError("Mode profile weights must be non-negative")
        return self


def _default_profiles() -> dict[ProcessingMode, ModeProfile]:
    return {
        ProcessingMode.COGNITIVE_ONLY: ModeProfile(
            subsystems=[SubsystemKind.COGNITIVE_BRAIN],
            strategy=PlanStrategy.SEQUENTIAL,
        ),
        ProcessingMode.RAG_FOCUSED: ModeProfile(
            subsystems=[SubsystemKind.RAG, SubsystemKind.COGNITIVE_BRAIN],
            strategy=PlanStrategy.SEQUENTIAL,
            weights={SubsystemKind.RAG: 0.6, SubsystemKind.COGNITIVE_BRAIN: 0.4},
        ),
        ProcessingMode.AGENT_COLLABORATIVE: ModeProfile(
            subsystems=[SubsystemKind.AGENT_COUNCIL, SubsystemKind.COGNITIVE_BRAIN],
            strategy=PlanStrategy.PARALLEL,
            weights={SubsystemKind.AGENT_COUNCIL: 0.6, SubsystemKind.COGNITIVE_BRAIN: 0.4},
        ),
        ProcessingMode.HYBRID_PROCESSING: ModeProfile(
            subsystems=[SubsystemKind.RAG, SubsystemKind.COGNITIVE_BRAIN, SubsystemKind.AGENT_COUNCIL],
            strategy=PlanStrategy.PIPELINE,
            weights={
                SubsystemKind.RAG: 0.25,
                SubsystemKind.COGNITIVE_BRAIN: 0.35,
                SubsystemKind.AGENT_COUNCIL: 0.4,
            },
        ),
    }


class RoutingSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_mode: ProcessingMode = Field(
        ProcessingMode.ADAPTIVE_ROUTING,
        description="Mode used when a request does not pin one; adaptive_routing enables live signals.",
    )
    factors: dict[FeatureFactor, FactorWeight] = Field(default_factory=_default_factors)
    thresholds: tuple[float, float, float] = Field(
        (0.3, 0.45, 0.6),
        description="Ascending score boundaries for rag_focused, agent_collaborative and hybrid_processing.",
    )
    profiles: dict[ProcessingMode, ModeProfile] = Field(default_factory=_default_profiles)
    high_load_threshold: float = Field(0.85, ge=0.0, le=1.0)
    confidence_margin: float = Field(0.15, gt=0.0, le=1.0)
    substitution_penalty: float = Field(0.1, ge=0.0, le=1.0)
    decision_cache_enabled: bool = Field(True)
    decision_cache_ttl_seconds: float = Field(300.0, ge=0.0)
    decision_cache_size: int = Field(512, ge=1)
    history_size: int = Field(1000, ge=1)

    @model_validator(mode="after")
    def _check_routing(self) -> "RoutingSettings":
        check_thresholds(self.thresholds)
        if ProcessingMode.ADAPTIVE_ROUTING in self.profiles:
            raise ValueError("adaptive_routing is a meta-mode and cannot carry a profile")
        missing = [mode.value for mode in ProcessingMode if mode.is_concrete and mode not in self.profiles]
        if missing:
            raise ValueError(f"Missing mode profiles: {missing}")
        return self


class OrchestrationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_concurrent: int = Field(3, ge=1, description="Upper bound on simultaneous subsystem calls per execution.")
    per_call_timeout_seconds: float = Field(20.0, gt=0.0)
    total_budget_seconds: float = Field(45.0, gt=0.0)
    retry_attempts: int = Field(2, ge=0, description="Retries after the first attempt for non-timeout errors.")
    base_backoff_seconds: float = Field(0.25, ge=0.0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_seconds: float = Field(4.0, ge=0.0)
    min_retry_window_seconds: float = Field(
        0.05,
        ge=0.0,
        description="Budget that must remain after the backoff sleep for a retry to be attempted.",
    )
    sequential_continue_on_error: bool = Field(False)
    load_capacity: int = Field(24, ge=1, description="In-flight calls that count as full load.")


class StageSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    subsystems: list[SubsystemKind] = Field(default_factory=list)
    timeout_seconds: float = Field(10.0, gt=0.0)


def _default_stages() -> dict[PipelineStage, StageSettings]:
    return {
        PipelineStage.PREPROCESSING: StageSettings(timeout_seconds=2.0),
        PipelineStage.ANALYSIS: StageSettings(subsystems=[SubsystemKind.RAG], timeout_seconds=12.0),
        PipelineStage.PROCESSING: StageSettings(subsystems=[SubsystemKind.COGNITIVE_BRAIN], timeout_seconds=15.0),
        PipelineStage.SYNTHESIS: StageSettings(subsystems=[SubsystemKind.AGENT_COUNCIL], timeout_seconds=15.0),
        PipelineStage.POSTPROCESSING: StageSettings(timeout_seconds=2.0),
    }


class PipelineSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    stages: dict[PipelineStage, StageSettings] = Field(default_factory=_default_stages)
    rollback_on_stage_failure: bool = Field(
        True,
        description="Halt the pipeline and withhold the failed stage from later stages.",
    )

    @model_validator(mode="after")
    def _check_stages(self) -> "PipelineSettings":
        seen: dict[SubsystemKind, PipelineStage] = {}
        for stage, config in self.stages.items():
            for kind in config.subsystems:
                if kind in seen:
                    raise ValueError(f"{kind.value} is assigned to both {seen[kind].value} and {stage.value}")
                seen[kind] = stage
        return self


def _default_confidences() -> dict[SubsystemKind, float]:
    return {
        SubsystemKind.AGENT_COUNCIL: 0.8,
        SubsystemKind.COGNITIVE_BRAIN: 0.7,
        SubsystemKind.RAG: 0.6,
    }


class SynthesisSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: FusionStrategy = Field(FusionStrategy.WEIGHTED_COMBINATION)
    hierarchy: list[SubsystemKind] = Field(
        default_factory=lambda: [SubsystemKind.AGENT_COUNCIL, SubsystemKind.COGNITIVE_BRAIN, SubsystemKind.RAG],
        description="Priority order consulted by hierarchical fusion (highest first).",
    )
    consensus_threshold: float = Field(0.6, ge=0.0, le=1.0)
    agreement_similarity: float = Field(0.3, ge=0.0, le=1.0)
    duplicate_similarity: float = Field(0.6, ge=0.0, le=1.0)
    min_sentence_length: int = Field(20, ge=1)
    min_contribution_weight: float = Field(0.1, ge=0.0, le=1.0)
    max_consensus_points: int = Field(5, ge=1)
    max_common_themes: int = Field(5, ge=0)
    max_response_length: int = Field(4000, ge=100)
    default_format: ResponseFormat = Field(ResponseFormat.MARKDOWN)
    source_attribution: bool = Field(True)
    completeness_threshold: float = Field(0.6, ge=0.0, le=1.0)
    bias_term_ratio: float = Field(0.05, ge=0.0, le=1.0)
    contradiction_similarity: float = Field(0.5, ge=0.0, le=1.0)
    default_confidences: dict[SubsystemKind, float] = Field(default_factory=_default_confidences)


class HealthSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    ttl_seconds: float = Field(300.0, gt=0.0, description="Age after which a subsystem health entry is stale.")
    smoothing: float = Field(0.3, gt=0.0, le=1.0, description="EWMA factor applied to each new outcome.")


class ObservabilitySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = Field(True)
    event_sink: Literal["logging", "buffered", "none"] = "logging"
    event_buffer_size: int = Field(1000, ge=1)


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    routing: RoutingSettings = Field(default_factory=RoutingSettings)  # type: ignore[arg-type]
    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)  # type: ignore[arg-type]
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)  # type: ignore[arg-type]
    synthesis: SynthesisSettings = Field(default_factory=SynthesisSettings)  # type: ignore[arg-type]
    health: HealthSettings = Field(default_factory=HealthSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="CAI_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        frozen=True,
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()


def reset_settings_cache() -> None:
    _get_cached_settings.cache_clear()
