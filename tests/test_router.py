from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY

from cai.core.config import FactorWeight, RoutingSettings
from cai.orchestration.exceptions import ConfigurationError, RoutingError
from cai.orchestration.routing import Router, StaticSignals
from cai.schemas.enums import FeatureFactor, PlanStrategy, ProcessingMode, SubsystemKind, SubsystemStatus
from cai.schemas.requests import Request, RequestMetadata
from cai.services.health import SubsystemHealthTracker
from cai.services.scoring import HistoricalPerformanceScorer, ResourceAvailabilityScorer
from tests.helpers.stubs import FixedScorer, RecordingSink, make_request


def _scorers(default: float | None = None, **values: float | None | Exception) -> list[FixedScorer]:
    return [FixedScorer(factor, values.get(factor.value, default)) for factor in FeatureFactor]


def _router(*, scorers=None, signals=None, sink=None, clock=None, **settings) -> Router:
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return Router(
        settings=RoutingSettings(**settings),
        scorers=scorers if scorers is not None else _scorers(),
        signals=signals or StaticSignals(),
        sink=sink,
        **kwargs,
    )


def test_high_complexity_with_neutral_factors_routes_to_hybrid():
    router = _router(scorers=_scorers(complexity=0.9))

    decision = router.route(make_request())

    assert decision.features.score == pytest.approx(0.62)
    assert decision.mode is ProcessingMode.HYBRID_PROCESSING
    assert decision.strategy is PlanStrategy.PIPELINE
    assert decision.subsystems == (SubsystemKind.RAG, SubsystemKind.COGNITIVE_BRAIN, SubsystemKind.AGENT_COUNCIL)
    assert set(decision.features.neutral_factors) == set(FeatureFactor) - {FeatureFactor.COMPLEXITY}
    assert 0.0 <= decision.confidence <= 1.0


@pytest.mark.parametrize(
    ("score", "expected"),
    [
        (0.0, ProcessingMode.COGNITIVE_ONLY),
        (0.29, ProcessingMode.COGNITIVE_ONLY),
        (0.3, ProcessingMode.RAG_FOCUSED),
        (0.44, ProcessingMode.RAG_FOCUSED),
        (0.45, ProcessingMode.AGENT_COLLABORATIVE),
        (0.6, ProcessingMode.HYBRID_PROCESSING),
        (1.0, ProcessingMode.HYBRID_PROCESSING),
    ],
)
def test_threshold_boundaries_resolve_to_higher_intensity(score, expected):
    router = _router()

    assert router.mode_for_score(score) is expected


@pytest.mark.parametrize("thresholds", [(0.5, 0.4, 0.6), (0.3, 0.3, 0.6), (0.2, 0.5, 1.2)])
def test_invalid_thresholds_fail_at_construction(thresholds):
    with pytest.raises(ConfigurationError) as excinfo:
        Router(settings=RoutingSettings(), scorers=_scorers(), thresholds=thresholds)

    assert isinstance(excinfo.value, ValueError)


def test_negative_or_all_zero_weights_fail_at_construction():
    with pytest.raises(ConfigurationError):
        Router(settings=RoutingSettings(), scorers=_scorers(), factors={FeatureFactor.COMPLEXITY: -0.1})

    with pytest.raises(ConfigurationError):
        Router(
            settings=RoutingSettings(),
            scorers=_scorers(),
            factors={FeatureFactor.COMPLEXITY: 0.0, FeatureFactor.CONTEXT: 0.0},
        )


@pytest.mark.parametrize(
    "disabled",
    [
        (),
        (FeatureFactor.CONTEXT,),
        (FeatureFactor.URGENCY, FeatureFactor.RESOURCE_AVAILABILITY),
        (FeatureFactor.COMPLEXITY, FeatureFactor.CONTEXT, FeatureFactor.HISTORICAL_PERFORMANCE),
    ],
)
def test_active_weights_renormalize_to_one(disabled):
    factors = {
        factor: FactorWeight(weight=config.weight, enabled=factor not in disabled, inverted=config.inverted)
        for factor, config in RoutingSettings().factors.items()
    }
    router = _router(factors=factors)

    weights = router.weights
    assert sum(weights.values()) == pytest.approx(1.0)
    assert not set(disabled) & set(weights)

    decision = router.route(make_request())
    assert sum(decision.features.weights.values()) == pytest.approx(1.0)


@pytest.mark.parametrize("complexity", [0.0, 0.2, 0.5, 0.8, 1.0])
def test_resolved_mode_is_never_adaptive(complexity):
    router = _router(scorers=_scorers(default=0.3, complexity=complexity))

    decision = router.route(make_request())

    assert decision.mode is not ProcessingMode.ADAPTIVE_ROUTING
    assert decision.mode.is_concrete
    assert decision.requested_mode is ProcessingMode.ADAPTIVE_ROUTING


def test_preferred_concrete_mode_is_used_as_is():
    router = _router(scorers=_scorers(default=1.0))
    request = Request(content="Quick one", metadata=RequestMetadata(preferred_mode=ProcessingMode.COGNITIVE_ONLY))

    decision = router.route(request)

    assert decision.mode is ProcessingMode.COGNITIVE_ONLY
    assert decision.subsystems == (SubsystemKind.COGNITIVE_BRAIN,)
    assert decision.weights == {SubsystemKind.COGNITIVE_BRAIN: pytest.approx(1.0)}
    assert decision.substitutions == ()


def test_unavailable_subsystem_substitutes_next_capable_mode():
    availability = {
        SubsystemKind.COGNITIVE_BRAIN: True,
        SubsystemKind.RAG: True,
        SubsystemKind.AGENT_COUNCIL: False,
    }
    degraded_router = _router(scorers=_scorers(default=1.0), signals=StaticSignals(available=availability))
    healthy_router = _router(scorers=_scorers(default=1.0))

    decision = degraded_router.route(make_request())
    baseline = healthy_router.route(make_request())

    assert baseline.mode is ProcessingMode.HYBRID_PROCESSING
    assert decision.mode is ProcessingMode.RAG_FOCUSED
    assert decision.degraded
    [substitution] = decision.substitutions
    assert substitution.from_mode is ProcessingMode.HYBRID_PROCESSING
    assert substitution.to_mode is ProcessingMode.RAG_FOCUSED
    assert substitution.reason == "subsystem_unavailable"
    assert substitution.unavailable == (SubsystemKind.AGENT_COUNCIL,)
    assert decision.weights[SubsystemKind.RAG] == pytest.approx(0.6)
    assert decision.weights[SubsystemKind.COGNITIVE_BRAIN] == pytest.approx(0.4)
    assert decision.confidence == pytest.approx(baseline.confidence - 0.1)


def test_high_load_steps_down_one_mode():
    router = _router(scorers=_scorers(default=1.0), signals=StaticSignals(current_load=0.9))

    decision = router.route(make_request())

    assert decision.mode is ProcessingMode.AGENT_COLLABORATIVE
    assert [item.reason for item in decision.substitutions] == ["high_load"]


def test_no_available_mode_falls_back_to_cognitive_only_with_available_subsystems():
    availability = {kind: kind is SubsystemKind.RAG for kind in SubsystemKind}
    router = _router(scorers=_scorers(default=1.0), signals=StaticSignals(available=availability))

    decision = router.route(make_request())

    assert decision.mode is ProcessingMode.COGNITIVE_ONLY
    assert decision.subsystems == ()
    assert decision.substitutions[-1].reason == "no_mode_available"


def test_failing_or_unknown_scorer_counts_as_neutral():
    router = _router(scorers=_scorers(default=0.8, complexity=RuntimeError("boom"), context=None))

    features = router.compute_features(make_request())

    assert features.values[FeatureFactor.COMPLEXITY] == pytest.approx(0.5)
    assert features.values[FeatureFactor.CONTEXT] == pytest.approx(0.5)
    assert set(features.neutral_factors) == {FeatureFactor.COMPLEXITY, FeatureFactor.CONTEXT}
    assert features.neutral_weight_share == pytest.approx(0.5)


def test_missing_scorer_counts_as_neutral():
    router = _router(scorers=[FixedScorer(FeatureFactor.COMPLEXITY, 1.0)])

    features = router.compute_features(make_request())

    assert FeatureFactor.URGENCY in features.neutral_factors
    assert features.values[FeatureFactor.COMPLEXITY] == pytest.approx(1.0)


@pytest.mark.parametrize("content", [None, "", "   \n", {}])
def test_blank_content_raises_routing_error(content):
    router = _router()

    with pytest.raises(RoutingError):
        router.route(Request(content=content))


def test_mapping_content_is_routable():
    router = _router(scorers=_scorers(default=0.1))

    decision = router.route(Request(content={"question": "status?"}))

    assert decision.mode is ProcessingMode.COGNITIVE_ONLY


def test_feature_cache_reuses_vector_within_ttl():
    now = [100.0]
    scorers = _scorers(default=0.4)
    router = _router(scorers=scorers, clock=lambda: now[0], decision_cache_ttl_seconds=10.0)

    router.route(make_request(request_id="a"))
    router.route(make_request(request_id="b"))
    calls = {scorer.factor: scorer.calls for scorer in scorers}
    assert calls[FeatureFactor.COMPLEXITY] == calls[FeatureFactor.CONTEXT] == calls[FeatureFactor.URGENCY] == 1
    assert calls[FeatureFactor.RESOURCE_AVAILABILITY] == calls[FeatureFactor.HISTORICAL_PERFORMANCE] == 2

    now[0] += 11.0
    router.route(make_request(request_id="c"))
    assert {scorer.factor: scorer.calls for scorer in scorers}[FeatureFactor.COMPLEXITY] == 2

    stats = router.stats()
    assert stats["total_requests"] == 3
    assert stats["cache_hits"] == 1
    assert stats["mode_usage"] == {ProcessingMode.RAG_FOCUSED.value: 3}


def test_feature_cache_separates_different_metadata():
    scorers = _scorers(default=0.4)
    router = _router(scorers=scorers)

    router.route(make_request())
    router.route(make_request(metadata=RequestMetadata(priority="urgent")))

    assert all(scorer.calls == 2 for scorer in scorers)


def test_decision_event_and_metrics_are_recorded():
    sink = RecordingSink()
    labels = {"requested_mode": "adaptive_routing", "mode": "hybrid_processing"}
    before = REGISTRY.get_sample_value("cai_routing_decisions_total", labels) or 0.0
    router = _router(scorers=_scorers(default=1.0), sink=sink)

    decision = router.route(make_request())

    after = REGISTRY.get_sample_value("cai_routing_decisions_total", labels)
    assert after == pytest.approx(before + 1.0)
    [event] = sink.named("routing.decision")
    assert event["mode"] == decision.mode.value
    assert event["request_id"] == "req-test"
    assert event["subsystems"] == ["rag", "cognitive_brain", "agent_council"]


def test_clear_cache_forces_rescoring():
    scorers = _scorers(default=0.4)
    router = _router(scorers=scorers)

    router.route(make_request())
    router.clear_cache()
    router.route(make_request())

    assert all(scorer.calls == 2 for scorer in scorers)
    assert router.stats()["cache_size"] == 1


def test_non_adaptive_default_mode_still_follows_score():
    router = _router(scorers=_scorers(default=1.0), default_mode=ProcessingMode.COGNITIVE_ONLY)

    decision = router.route(make_request())

    assert decision.mode is ProcessingMode.HYBRID_PROCESSING
    assert decision.requested_mode is ProcessingMode.COGNITIVE_ONLY
    assert decision.substitutions == ()


def test_non_adaptive_default_mode_skips_live_signals():
    availability = {kind: kind is not SubsystemKind.AGENT_COUNCIL for kind in SubsystemKind}
    router = _router(
        scorers=_scorers(default=0.5),
        signals=StaticSignals(available=availability, current_load=0.95),
        default_mode=ProcessingMode.RAG_FOCUSED,
    )

    decision = router.route(make_request())

    assert decision.mode is ProcessingMode.AGENT_COLLABORATIVE
    assert not decision.degraded


def test_health_factors_are_read_fresh_for_cached_requests():
    tracker = SubsystemHealthTracker()
    scorers = [
        FixedScorer(FeatureFactor.COMPLEXITY, 0.4),
        FixedScorer(FeatureFactor.CONTEXT, 0.4),
        FixedScorer(FeatureFactor.URGENCY, 0.4),
        ResourceAvailabilityScorer(tracker),
        HistoricalPerformanceScorer(tracker),
    ]
    router = _router(scorers=scorers)

    first = router.route(make_request())
    for kind in SubsystemKind:
        for _ in range(5):
            tracker.record(kind, SubsystemStatus.TIMEOUT, 1.0)
    second = router.route(make_request())

    assert first.features.values[FeatureFactor.RESOURCE_AVAILABILITY] == pytest.approx(0.5)
    assert second.features.values[FeatureFactor.RESOURCE_AVAILABILITY] == pytest.approx(0.0)
    assert second.features.values[FeatureFactor.HISTORICAL_PERFORMANCE] == pytest.approx(0.0)
    assert FeatureFactor.RESOURCE_AVAILABILITY not in second.features.neutral_factors
    assert router.stats()["cache_hits"] == 1
    assert scorers[0].calls == 1


def test_deadline_urgency_is_rescored_for_cached_requests():
    scorers = _scorers(default=0.4)
    router = _router(scorers=scorers)
    deadline = datetime.now(timezone.utc) + timedelta(seconds=30)
    request = make_request(metadata=RequestMetadata(deadline=deadline))

    router.route(request)
    router.route(request)

    calls = {scorer.factor: scorer.calls for scorer in scorers}
    assert calls[FeatureFactor.COMPLEXITY] == 1
    assert calls[FeatureFactor.URGENCY] == 2


def test_history_keeps_most_recent_decisions():
    router = _router(scorers=_scorers(default=0.1), history_size=3)

    for index in range(5):
        router.route(make_request(f"question {index} " + "x" * 300, request_id=f"r{index}"))

    records = router.history()
    assert [record.decision.request_id for record in records] == ["r2", "r3", "r4"]
    assert [record.decision.request_id for record in router.history(limit=2)] == ["r3", "r4"]
    assert router.history(limit=0) == []
    assert len(records[0].preview) == 200
    assert records[-1].as_dict()["decision"]["mode"] == ProcessingMode.COGNITIVE_ONLY.value
    assert router.stats()["history_size"] == 3
