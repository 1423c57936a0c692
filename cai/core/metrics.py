from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

ROUTING_DECISIONS_TOTAL = Counter(
    "cai_routing_decisions_total",
    "Routing decisions grouped by requested and resolved processing mode",
    labelnames=("requested_mode", "mode"),
)

ROUTING_SUBSTITUTIONS_TOTAL = Counter(
    "cai_routing_substitutions_total",
    "Adaptive mode downgrades grouped by reason",
    labelnames=("from_mode", "to_mode", "reason"),
)

ROUTING_SCORE = Histogram(
    "cai_routing_score",
    "Weighted feature score computed per request",
    buckets=(0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

ROUTING_CACHE_TOTAL = Counter(
    "cai_routing_feature_cache_total",
    "Feature vector cache lookups grouped by outcome",
    labelnames=("outcome",),
)

ROUTING_NEUTRAL_FACTORS_TOTAL = Counter(
    "cai_routing_neutral_factors_total",
    "Feature factors that fell back to the neutral value",
    labelnames=("factor",),
)

SUBSYSTEM_CALL_LATENCY_SECONDS = Histogram(
    "cai_subsystem_call_latency_seconds",
    "Latency of subsystem adapter calls including retries",
    labelnames=("subsystem", "status"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
)

SUBSYSTEM_CALLS_TOTAL = Counter(
    "cai_subsystem_calls_total",
    "Subsystem call outcomes",
    labelnames=("subsystem", "status"),
)

SUBSYSTEM_RETRIES_TOTAL = Counter(
    "cai_subsystem_retries_total",
    "Retries scheduled or skipped for subsystem calls",
    labelnames=("subsystem", "outcome"),
)

SUBSYSTEM_IN_FLIGHT = Gauge(
    "cai_subsystem_calls_in_flight",
    "Subsystem calls currently awaiting an adapter",
)

EXECUTIONS_TOTAL = Counter(
    "cai_executions_total",
    "Orchestrator executions by plan strategy and final status",
    labelnames=("strategy", "status"),
)

EXECUTION_LATENCY_SECONDS = Histogram(
    "cai_execution_latency_seconds",
    "End-to-end orchestrator execution time",
    labelnames=("strategy",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 20, 30, 45, 60, 120, float("inf")),
)

EXECUTIONS_ACTIVE = Gauge(
    "cai_executions_active",
    "Orchestrator executions in flight",
)

STAGE_COMPLETIONS_TOTAL = Counter(
    "cai_pipeline_stage_completions_total",
    "Pipeline stage checkpoints grouped by outcome",
    labelnames=("stage", "outcome"),
)

SYNTHESIS_TOTAL = Counter(
    "cai_synthesis_total",
    "Synthesized responses by requested and applied fusion strategy",
    labelnames=("requested_strategy", "strategy"),
)

SYNTHESIS_FAILURES_TOTAL = Counter(
    "cai_synthesis_failures_total",
    "Synthesis attempts rejected because nothing succeeded",
)

SYNTHESIS_QUALITY_SCORE = Histogram(
    "cai_synthesis_quality_score",
    "Overall quality assessment of synthesized responses",
    buckets=(0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

QUALITY_FLAGS_TOTAL = Counter(
    "cai_quality_checks_total",
    "Quality check outcomes attached to final responses",
    labelnames=("check", "passed"),
)

EVENTS_DROPPED_TOTAL = Counter(
    "cai_observability_events_dropped_total",
    "Observability events dropped because the buffer was full",
)


def record_routing_decision(*, requested_mode: str, mode: str, score: float) -> None:
    ROUTING_DECISIONS_TOTAL.labels(requested_mode=requested_mode, mode=mode).inc()
    ROUTING_SCORE.observe(max(0.0, min(1.0, score)))


def record_routing_substitution(*, from_mode: str, to_mode: str, reason: str) -> None:
    ROUTING_SUBSTITUTIONS_TOTAL.labels(from_mode=from_mode, to_mode=to_mode, reason=reason).inc()


def record_feature_cache(*, hit: bool) -> None:
    ROUTING_CACHE_TOTAL.labels(outcome="hit" if hit else "miss").inc()


def increment_neutral_factor(*, factor: str) -> None:
    ROUTING_NEUTRAL_FACTORS_TOTAL.labels(factor=factor).inc()


def observe_subsystem_call(*, subsystem: str, status: str, latency: float) -> None:
    SUBSYSTEM_CALLS_TOTAL.labels(subsystem=subsystem, status=status).inc()
    SUBSYSTEM_CALL_LATENCY_SECONDS.labels(subsystem=subsystem, status=status).observe(max(0.0, latency))


def record_subsystem_retry(*, subsystem: str, outcome: str) -> None:
    SUBSYSTEM_RETRIES_TOTAL.labels(subsystem=subsystem, outcome=outcome).inc()


def set_in_flight_calls(count: int) -> None:
    SUBSYSTEM_IN_FLIGHT.set(max(0, count))


def mark_execution_started() -> None:
    EXECUTIONS_ACTIVE.inc()


def mark_execution_completed(*, strategy: str, status: str, latency: float) -> None:
    EXECUTIONS_ACTIVE.dec()
    EXECUTIONS_TOTAL.labels(strategy=strategy, status=status).inc()
    EXECUTION_LATENCY_SECONDS.labels(strategy=strategy).observe(max(0.0, latency))


def record_stage_completion(*, stage: str, outcome: str) -> None:
    STAGE_COMPLETIONS_TOTAL.labels(stage=stage, outcome=outcome).inc()


def record_synthesis(*, requested_strategy: str, strategy: str, quality: float) -> None:
    SYNTHESIS_TOTAL.labels(requested_strategy=requested_strategy, strategy=strategy).inc()
    SYNTHESIS_QUALITY_SCORE.observe(quality)


def increment_synthesis_failure() -> None:
    SYNTHESIS_FAILURES_TOTAL.inc()


def record_quality_check(*, check: str, passed: bool) -> None:
    QUALITY_FLAGS_TOTAL.labels(check=check, passed=str(passed).lower()).inc()


def increment_dropped_event() -> None:
    EVENTS_DROPPED_TOTAL.inc()
