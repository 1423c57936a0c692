from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from cai.core.metrics import (
    mark_execution_completed,
    mark_execution_started,
    observe_subsystem_call,
    record_feature_cache,
    record_quality_check,
    record_routing_substitution,
    set_in_flight_calls,
)


def test_observe_subsystem_call_records_latency_and_count():
    labels = {"subsystem": "rag", "status": "success"}
    sum_before = REGISTRY.get_sample_value("cai_subsystem_call_latency_seconds_sum", labels) or 0.0
    count_before = REGISTRY.get_sample_value("cai_subsystem_calls_total", labels) or 0.0

    observe_subsystem_call(subsystem="rag", status="success", latency=0.75)

    assert REGISTRY.get_sample_value("cai_subsystem_call_latency_seconds_sum", labels) == pytest.approx(sum_before + 0.75)
    assert REGISTRY.get_sample_value("cai_subsystem_calls_total", labels) == pytest.approx(count_before + 1.0)


def test_execution_lifecycle_balances_active_gauge():
    labels = {"strategy": "parallel", "status": "completed"}
    active_before = REGISTRY.get_sample_value("cai_executions_active") or 0.0
    total_before = REGISTRY.get_sample_value("cai_executions_total", labels) or 0.0

    mark_execution_started()
    assert REGISTRY.get_sample_value("cai_executions_active") == pytest.approx(active_before + 1.0)
    mark_execution_completed(strategy="parallel", status="completed", latency=1.2)

    assert REGISTRY.get_sample_value("cai_executions_active") == pytest.approx(active_before)
    assert REGISTRY.get_sample_value("cai_executions_total", labels) == pytest.approx(total_before + 1.0)


def test_feature_cache_outcomes_are_labelled():
    before = REGISTRY.get_sample_value("cai_routing_feature_cache_total", {"outcome": "hit"}) or 0.0

    record_feature_cache(hit=True)

    assert REGISTRY.get_sample_value("cai_routing_feature_cache_total", {"outcome": "hit"}) == pytest.approx(before + 1.0)


def test_substitution_and_quality_counters_increment():
    substitution = {"from_mode": "hybrid_processing", "to_mode": "rag_focused", "reason": "subsystem_unavailable"}
    quality = {"check": "bias", "passed": "false"}
    substitution_before = REGISTRY.get_sample_value("cai_routing_substitutions_total", substitution) or 0.0
    quality_before = REGISTRY.get_sample_value("cai_quality_checks_total", quality) or 0.0

    record_routing_substitution(**substitution)
    record_quality_check(check="bias", passed=False)

    assert REGISTRY.get_sample_value("cai_routing_substitutions_total", substitution) == pytest.approx(
        substitution_before + 1.0
    )
    assert REGISTRY.get_sample_value("cai_quality_checks_total", quality) == pytest.approx(quality_before + 1.0)


def test_in_flight_gauge_never_goes_negative():
    set_in_flight_calls(-3)

    assert REGISTRY.get_sample_value("cai_subsystem_calls_in_flight") == pytest.approx(0.0)
