from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..core.config import OrchestrationSettings, PipelineSettings
from ..schemas.enums import PIPELINE_STAGE_ORDER, PipelineStage, PlanStrategy, SubsystemKind
from ..subsystems.registry import SubsystemRegistry
from .exceptions import OrchestrationError
from .routing import RoutingDecision


@dataclass(slots=True, frozen=True)
class StageSpec:
    stage: PipelineStage
    subsystems: tuple[SubsystemKind, ...]
    timeout: float

    @property
    def passthrough(self) -> bool:
        return not self.subsystems


@dataclass(slots=True, frozen=True)
class ExecutionPlan:
    strategy: PlanStrategy
    subsystems: tuple[SubsystemKind, ...]
    max_concurrent: int
    per_call_timeout: float
    total_budget: float
    stop_on_error: bool
    stages: tuple[StageSpec, ...] = ()
    rollback_on_stage_failure: bool = False

    def stage_of(self, subsystem: SubsystemKind) -> PipelineStage | None:
        for spec in self.stages:
            if subsystem in spec.subsystems:
                return spec.stage
        return None

    def as_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "subsystems": [kind.value for kind in self.subsystems],
            "max_concurrent": self.max_concurrent,
            "per_call_timeout": self.per_call_timeout,
            "total_budget": self.total_budget,
            "stop_on_error": self.stop_on_error,
            "stages": [
                {"stage": spec.stage.value, "subsystems": [kind.value for kind in spec.subsystems], "timeout": spec.timeout}
                for spec in self.stages
            ],
        }


def build_execution_plan(
    decision: RoutingDecision,
    settings: OrchestrationSettings,
    pipeline: PipelineSettings,
    registry: SubsystemRegistry,
) -> ExecutionPlan:
    """Translate a routing decision into a validated plan or raise ``OrchestrationError``."""
    subsystems = tuple(decision.subsystems)
    if not subsystems:
        raise OrchestrationError(f"Routing decision for mode {decision.mode.value} selected no subsystems")
    if len(set(subsystems)) != len(subsystems):
        raise OrchestrationError(f"Duplicate subsystems in plan: {[kind.value for kind in subsystems]}")
    unknown = [kind.value for kind in subsystems if kind not in registry]
    if unknown:
        raise OrchestrationError(f"Plan references unregistered subsystems: {unknown}")

    stages: tuple[StageSpec, ...] = ()
    if decision.strategy is PlanStrategy.PIPELINE:
        stages = _pipeline_stages(subsystems, pipeline, default_timeout=settings.per_call_timeout_seconds)

    return ExecutionPlan(
        strategy=decision.strategy,
        subsystems=subsystems,
        max_concurrent=settings.max_concurrent,
        per_call_timeout=settings.per_call_timeout_seconds,
        total_budget=settings.total_budget_seconds,
        stop_on_error=decision.strategy is PlanStrategy.SEQUENTIAL and not settings.sequential_continue_on_error,
        stages=stages,
        rollback_on_stage_failure=pipeline.rollback_on_stage_failure,
    )


def _pipeline_stages(
    subsystems: tuple[SubsystemKind, ...],
    pipeline: PipelineSettings,
    *,
    default_timeout: float,
) -> tuple[StageSpec, ...]:
    selected = set(subsystems)
    assigned: set[SubsystemKind] = set()
    specs: list[StageSpec] = []
    for stage in PIPELINE_STAGE_ORDER:
        config = pipeline.stages.get(stage)
        kinds = [kind for kind in (config.subsystems if config else []) if kind in selected]
        assigned.update(kinds)
        timeout = config.timeout_seconds if config else default_timeout
        specs.append(StageSpec(stage=stage, subsystems=tuple(kinds), timeout=timeout))

    # Subsystems without a configured stage run with the processing stage.
    leftovers = tuple(kind for kind in subsystems if kind not in assigned)
    if leftovers:
        specs = [
            StageSpec(stage=spec.stage, subsystems=spec.subsystems + leftovers, timeout=spec.timeout)
            if spec.stage is PipelineStage.PROCESSING
            else spec
            for spec in specs
        ]
    return tuple(specs)


__all__ = ["ExecutionPlan", "StageSpec", "build_execution_plan"]
