from __future__ import annotations

import asyncio
from typing import Any, Iterable, Mapping, Sequence

from cai.core.config import OrchestrationSettings, PipelineSettings, StageSettings
from cai.orchestration.routing import FeatureVector, RoutingDecision
from cai.schemas.enums import (
    FeatureFactor,
    PipelineStage,
    PlanStrategy,
    ProcessingMode,
    SubsystemCapability,
    SubsystemKind,
)
from cai.schemas.requests import Request
from cai.subsystems.base import REQUIRED_CAPABILITIES, Deadline
from cai.subsystems.registry import SubsystemRegistry


class StubAdapter:
    """Adapter returning a fixed payload after an optional delay."""

    def __init__(
        self,
        kind: SubsystemKind,
        payload: Any = None,
        *,
        delay: float = 0.0,
        available: bool = True,
        capabilities: Iterable[SubsystemCapability] | None = None,
    ) -> None:
        self.kind = kind
        self.capabilities = frozenset(capabilities) if capabilities is not None else REQUIRED_CAPABILITIES[kind]
        self.payload = payload if payload is not None else {"content": f"{kind.value} answer.", "confidence": 0.8}
        self.delay = delay
        self.available = available
        self.calls = 0
        self.requests: list[Request] = []
        self.deadlines: list[Deadline] = []
        self.cancelled = False

    async def process(self, request: Request, deadline: Deadline) -> Any:
        self.calls += 1
        self.requests.append(request)
        self.deadlines.append(deadline)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return self.payload


class FailingAdapter(StubAdapter):
    """Adapter that raises on every call."""

    def __init__(self, kind: SubsystemKind, error: BaseException | None = None, **kwargs: Any) -> None:
        super().__init__(kind, **kwargs)
        self.error = error or RuntimeError(f"{kind.value} exploded")

    async def process(self, request: Request, deadline: Deadline) -> Any:
        await super().process(request, deadline)
        raise self.error


class FlakyAdapter(StubAdapter):
    """Adapter that fails ``failures`` times before succeeding."""

    def __init__(self, kind: SubsystemKind, failures: int, **kwargs: Any) -> None:
        super().__init__(kind, **kwargs)
        self.failures = failures

    async def process(self, request: Request, deadline: Deadline) -> Any:
        payload = await super().process(request, deadline)
        if self.calls <= self.failures:
            raise RuntimeError(f"{self.kind.value} transient failure {self.calls}")
        return payload


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))

    def named(self, event: str) -> list[dict[str, Any]]:
        return [fields for name, fields in self.events if name == event]


class FixedScorer:
    def __init__(self, factor: FeatureFactor, value: float | None | Exception) -> None:
        self.factor = factor
        self.value = value
        self.calls = 0

    def score(self, request: Request) -> float | None:  # noqa: ARG002
        self.calls += 1
        if isinstance(self.value, Exception):
            raise self.value
        return self.value


def build_registry(*adapters: Any) -> SubsystemRegistry:
    return SubsystemRegistry(adapters)


def fast_orchestration(**overrides: Any) -> OrchestrationSettings:
    values: dict[str, Any] = {
        "max_concurrent": 3,
        "per_call_timeout_seconds": 1.0,
        "total_budget_seconds": 2.0,
        "retry_attempts": 0,
        "base_backoff_seconds": 0.01,
        "backoff_multiplier": 2.0,
        "max_backoff_seconds": 0.1,
        "min_retry_window_seconds": 0.01,
    }
    values.update(overrides)
    return OrchestrationSettings(**values)


def fast_pipeline(timeouts: Mapping[PipelineStage, float] | None = None, **overrides: Any) -> PipelineSettings:
    timeouts = timeouts or {}
    stages = {
        PipelineStage.PREPROCESSING: StageSettings(timeout_seconds=timeouts.get(PipelineStage.PREPROCESSING, 0.5)),
        PipelineStage.ANALYSIS: StageSettings(
            subsystems=[SubsystemKind.RAG], timeout_seconds=timeouts.get(PipelineStage.ANALYSIS, 0.5)
        ),
        PipelineStage.PROCESSING: StageSettings(
            subsystems=[SubsystemKind.COGNITIVE_BRAIN], timeout_seconds=timeouts.get(PipelineStage.PROCESSING, 0.5)
        ),
        PipelineStage.SYNTHESIS: StageSettings(
            subsystems=[SubsystemKind.AGENT_COUNCIL], timeout_seconds=timeouts.get(PipelineStage.SYNTHESIS, 0.5)
        ),
        PipelineStage.POSTPROCESSING: StageSettings(timeout_seconds=timeouts.get(PipelineStage.POSTPROCESSING, 0.5)),
    }
    return PipelineSettings(stages=stages, **overrides)


def make_decision(
    strategy: PlanStrategy,
    subsystems: Sequence[SubsystemKind],
    *,
    weights: Mapping[SubsystemKind, float] | None = None,
    mode: ProcessingMode | None = None,
    request_id: str = "req-test",
) -> RoutingDecision:
    if weights is None:
        share = 1.0 / len(subsystems) if subsystems else 0.0
        weights = {kind: share for kind in subsystems}
    default_mode = {
        PlanStrategy.SEQUENTIAL: ProcessingMode.RAG_FOCUSED,
        PlanStrategy.PARALLEL: ProcessingMode.AGENT_COLLABORATIVE,
        PlanStrategy.PIPELINE: ProcessingMode.HYBRID_PROCESSING,
    }[strategy]
    features = FeatureVector(values={}, weights={}, neutral_factors=(), score=0.5)
    return RoutingDecision(
        mode=mode or default_mode,
        subsystems=tuple(subsystems),
        weights=dict(weights),
        confidence=0.8,
        features=features,
        requested_mode=mode or default_mode,
        strategy=strategy,
        request_id=request_id,
    )


def make_request(content: str = "Explain how the orchestration core works.", **kwargs: Any) -> Request:
    return Request(request_id=kwargs.pop("request_id", "req-test"), content=content, **kwargs)
