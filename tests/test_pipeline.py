from __future__ import annotations

import pytest

from cai.core.config import FactorWeight, ObservabilitySettings, RoutingSettings, Settings, SynthesisSettings
from cai.orchestration.exceptions import ConfigurationError, SynthesisError
from cai.orchestration.pipeline import ProcessingPipeline
from cai.schemas.enums import FeatureFactor, FusionStrategy, ProcessingMode, SubsystemKind
from cai.subsystems.base import CallableSubsystemAdapter
from cai.subsystems.registry import SubsystemRegistry
from tests.helpers.stubs import (
    FailingAdapter,
    FixedScorer,
    RecordingSink,
    StubAdapter,
    build_registry,
    fast_orchestration,
    fast_pipeline,
    make_request,
)

BRAIN = SubsystemKind.COGNITIVE_BRAIN
COUNCIL = SubsystemKind.AGENT_COUNCIL
RAG = SubsystemKind.RAG


def _settings(**overrides) -> Settings:
    values = {
        "environment": "test",
        "orchestration": fast_orchestration(),
        "pipeline": fast_pipeline(),
        "observability": ObservabilitySettings(event_sink="none"),
    }
    values.update(overrides)
    return Settings(**values)


def _scorers(value: float) -> list[FixedScorer]:
    return [FixedScorer(factor, value) for factor in FeatureFactor]


def _pipeline(*adapters, score: float = 0.1, sink=None, **overrides) -> ProcessingPipeline:
    adapters = adapters or (StubAdapter(BRAIN), StubAdapter(COUNCIL), StubAdapter(RAG))
    return ProcessingPipeline(
        build_registry(*adapters),
        settings=_settings(**overrides),
        sink=sink or RecordingSink(),
        scorers=_scorers(score),
    )


@pytest.mark.asyncio
async def test_simple_request_is_answered_by_cognitive_brain():
    pipeline = _pipeline()

    response = await pipeline.process(make_request())

    assert response.request_id == "req-test"
    assert "cognitive_brain answer." in response.content
    assert response.contributions == {BRAIN: pytest.approx(1.0)}
    assert not response.degraded


@pytest.mark.asyncio
async def test_complex_request_runs_every_subsystem_through_pipeline():
    sink = RecordingSink()
    pipeline = _pipeline(score=1.0, sink=sink)

    response = await pipeline.process(make_request())

    assert set(response.contributions) == {BRAIN, COUNCIL, RAG}
    assert [event["mode"] for event in sink.named("routing.decision")] == ["hybrid_processing"]
    assert [event["status"] for event in sink.named("orchestration.completed")] == ["completed"]
    assert len(sink.named("synthesis.quality")) == 1


@pytest.mark.asyncio
async def test_unavailable_adapter_triggers_mode_substitution():
    pipeline = _pipeline(
        StubAdapter(BRAIN),
        StubAdapter(COUNCIL, available=False),
        StubAdapter(RAG),
        score=1.0,
    )

    decision = pipeline.route(make_request())
    response = await pipeline.process(make_request())

    assert decision.mode is ProcessingMode.RAG_FOCUSED
    assert decision.substitutions[0].unavailable == (COUNCIL,)
    assert set(response.contributions) <= {BRAIN, RAG}


@pytest.mark.asyncio
async def test_callable_adapters_plug_into_the_pipeline():
    async def answer(request, deadline):
        return {"content": f"Handled {request.request_id} with {deadline.remaining() > 0}.", "confidence": 0.9}

    pipeline = _pipeline(CallableSubsystemAdapter(BRAIN, answer))

    response = await pipeline.process(make_request())

    assert "Handled req-test with True." in response.content


@pytest.mark.asyncio
async def test_all_subsystems_failing_surfaces_synthesis_error():
    pipeline = _pipeline(FailingAdapter(BRAIN))

    with pytest.raises(SynthesisError):
        await pipeline.process(make_request())

    assert pipeline.health.snapshot(BRAIN).success_rate == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_reload_swaps_components_for_new_requests():
    pipeline = _pipeline(score=1.0)
    before = pipeline.components

    pipeline.reload(_settings(synthesis=SynthesisSettings(strategy=FusionStrategy.HIERARCHICAL_FUSION)))
    response = await pipeline.process(make_request())

    assert pipeline.components is not before
    assert before.synthesizer.settings.strategy is FusionStrategy.WEIGHTED_COMBINATION
    assert response.strategy is FusionStrategy.HIERARCHICAL_FUSION


def test_reload_can_replace_the_registry():
    pipeline = _pipeline(StubAdapter(BRAIN))
    registry = SubsystemRegistry([StubAdapter(BRAIN), StubAdapter(RAG)])

    pipeline.reload(_settings(), registry=registry)

    assert pipeline.registry is registry
    assert RAG in pipeline.registry


def test_failed_reload_keeps_previous_components():
    pipeline = _pipeline()
    components = pipeline.components
    registry = pipeline.registry
    zero = {factor: FactorWeight(weight=0.0) for factor in FeatureFactor}

    with pytest.raises(ConfigurationError):
        pipeline.reload(
            _settings(routing=RoutingSettings(factors=zero)),
            registry=SubsystemRegistry([StubAdapter(BRAIN)]),
        )

    assert pipeline.components is components
    assert pipeline.registry is registry
