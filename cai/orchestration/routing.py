from __future__ import annotations

import hashlib
import json
import math
import time
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

from ..core.config import FactorWeight, RoutingSettings, check_thresholds, get_settings
from ..core.logging import get_logger
from ..core.metrics import (
    increment_neutral_factor,
    record_feature_cache,
    record_routing_decision,
    record_routing_substitution,
)
from ..schemas.enums import MODE_INTENSITY, FeatureFactor, PlanStrategy, ProcessingMode, SubsystemKind
from ..schemas.requests import Request
from ..services.events import NullEventSink, ObservabilitySink
from ..services.health import SubsystemHealthTracker
from ..services.scoring import FeatureScorer, default_scorers
from ..subsystems.registry import SubsystemRegistry
from .exceptions import ConfigurationError, RoutingError

logger = get_logger(name=__name__)

NEUTRAL_VALUE = 0.5
REQUEST_FACTORS = frozenset({FeatureFactor.COMPLEXITY, FeatureFactor.CONTEXT})
PREVIEW_LENGTH = 200


@dataclass(slots=True, frozen=True)
class FeatureVector:
    values: dict[FeatureFactor, float]
    weights: dict[FeatureFactor, float]
    neutral_factors: tuple[FeatureFactor, ...]
    score: float

    @property
    def neutral_weight_share(self) -> float:
        return sum(self.weights.get(factor, 0.0) for factor in self.neutral_factors)

    def as_dict(self) -> dict[str, Any]:
        return {
            "values": {factor.value: round(value, 4) for factor, value in self.values.items()},
            "weights": {factor.value: round(weight, 4) for factor, weight in self.weights.items()},
            "neutral_factors": [factor.value for factor in self.neutral_factors],
            "score": round(self.score, 4),
        }


@dataclass(slots=True, frozen=True)
class ModeSubstitution:
    from_mode: ProcessingMode
    to_mode: ProcessingMode
    reason: str
    unavailable: tuple[SubsystemKind, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "from_mode": self.from_mode.value,
            "to_mode": self.to_mode.value,
            "reason": self.reason,
            "unavailable": [kind.value for kind in self.unavailable],
        }


@dataclass(slots=True, frozen=True)
class RoutingDecision:
    mode: ProcessingMode
    subsystems: tuple[SubsystemKind, ...]
    weights: dict[SubsystemKind, float]
    confidence: float
    features: FeatureVector
    requested_mode: ProcessingMode
    strategy: PlanStrategy
    substitutions: tuple[ModeSubstitution, ...] = ()
    request_id: str | None = None

    @property
    def degraded(self) -> bool:
        return bool(self.substitutions)

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "mode": self.mode.value,
            "requested_mode": self.requested_mode.value,
            "strategy": self.strategy.value,
            "subsystems": [kind.value for kind in self.subsystems],
            "weights": {kind.value: round(weight, 4) for kind, weight in self.weights.items()},
            "confidence": round(self.confidence, 4),
            "features": self.features.as_dict(),
            "substitutions": [item.as_dict() for item in self.substitutions],
        }


@dataclass(slots=True, frozen=True)
class RoutingRecord:
    decision: RoutingDecision
    preview: str
    routed_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "preview": self.preview,
            "routed_at": self.routed_at.isoformat(),
            "decision": self.decision.as_dict(),
        }


class SystemSignals(Protocol):
    """Live inputs consulted by adaptive routing."""

    def availability(self) -> Mapping[SubsystemKind, bool]:
        ...

    def load(self) -> float:
        ...


@dataclass(slots=True)
class StaticSignals:
    available: Mapping[SubsystemKind, bool] = field(
        default_factory=lambda: {kind: True for kind in SubsystemKind}
    )
    current_load: float = 0.0

    def availability(self) -> Mapping[SubsystemKind, bool]:
        return self.available

    def load(self) -> float:
        return self.current_load


class RegistrySignals:
    """Availability from registered adapters, load from a callable (usually the orchestrator)."""

    def __init__(self, registry: SubsystemRegistry, *, load: Callable[[], float] | None = None) -> None:
        self._registry = registry
        self._load = load

    def availability(self) -> Mapping[SubsystemKind, bool]:
        return self._registry.availability()

    def load(self) -> float:
        if self._load is None:
            return 0.0
        return self._load()


class Router:
    """Score a request and choose the processing mode and subsystems that handle it."""

    def __init__(
        self,
        *,
        settings: RoutingSettings | None = None,
        scorers: Iterable[FeatureScorer] | None = None,
        signals: SystemSignals | None = None,
        sink: ObservabilitySink | None = None,
        health: SubsystemHealthTracker | None = None,
        thresholds: Sequence[float] | None = None,
        factors: Mapping[FeatureFactor, FactorWeight | float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or get_settings().routing
        try:
            self._thresholds = check_thresholds(thresholds if thresholds is not None else self._settings.thresholds)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        self._weights, self._inverted = self._resolve_weights(factors or self._settings.factors)

        tracker = health or SubsystemHealthTracker()
        chosen = list(scorers) if scorers is not None else list(default_scorers(tracker))
        self._scorers: dict[FeatureFactor, FeatureScorer] = {scorer.factor: scorer for scorer in chosen}
        self._signals: SystemSignals = signals or StaticSignals()
        self._sink: ObservabilitySink = sink or NullEventSink()
        self._clock = clock

        self._cache: OrderedDict[str, tuple[float, dict[FeatureFactor, float | None]]] = OrderedDict()
        self._history: deque[RoutingRecord] = deque(maxlen=self._settings.history_size)
        self._total = 0
        self._cache_hits = 0
        self._mode_usage: Counter[str] = Counter()
        self._substitution_count = 0

        logger.info(
            "router_initialized",
            thresholds=list(self._thresholds),
            weights={factor.value: round(weight, 4) for factor, weight in self._weights.items()},
            default_mode=self._settings.default_mode.value,
            scorers=sorted(factor.value for factor in self._scorers),
        )

    @property
    def thresholds(self) -> tuple[float, float, float]:
        return self._thresholds

    @property
    def weights(self) -> dict[FeatureFactor, float]:
        return dict(self._weights)

    @staticmethod
    def _resolve_weights(
        factors: Mapping[FeatureFactor, FactorWeight | float],
    ) -> tuple[dict[FeatureFactor, float], frozenset[FeatureFactor]]:
        raw: dict[FeatureFactor, float] = {}
        inverted: set[FeatureFactor] = set()
        for factor, config in factors.items():
            spec = config if isinstance(config, FactorWeight) else None
            weight = spec.weight if spec is not None else float(config)  # type: ignore[arg-type]
            if weight < 0 or math.isnan(weight):
                raise ConfigurationError(f"Factor weight for {FeatureFactor(factor).value} must be non-negative")
            if spec is not None and not spec.enabled:
                continue
            raw[FeatureFactor(factor)] = weight
            if spec is not None and spec.inverted:
                inverted.add(FeatureFactor(factor))
        total = sum(raw.values())
        if total <= 0:
            raise ConfigurationError("At least one enabled routing factor needs a positive weight")
        return {factor: weight / total for factor, weight in raw.items()}, frozenset(inverted)

    def route(self, request: Request) -> RoutingDecision:
        if not isinstance(request, Request):
            raise RoutingError(f"Expected a Request, got {type(request).__name__}")
        if request.is_blank:
            raise RoutingError("Request content is missing or blank")

        self._total += 1
        features = self._features_for(request)
        threshold_mode = self.mode_for_score(features.score)
        pinned = request.metadata.preferred_mode
        requested = pinned or self._settings.default_mode

        substitutions: tuple[ModeSubstitution, ...] = ()
        restrict: frozenset[SubsystemKind] | None = None
        concrete = pinned is not None and pinned.is_concrete
        if concrete:
            mode = pinned
        elif requested is ProcessingMode.ADAPTIVE_ROUTING:
            mode, substitutions, restrict = self._adapt(threshold_mode)
        else:
            mode = threshold_mode

        profile = self._settings.profiles[mode]
        subsystems = tuple(kind for kind in profile.subsystems if restrict is None or kind in restrict)
        weights = self._subsystem_weights(subsystems, profile.weights)
        confidence = self._confidence(features, concrete=concrete, substitutions=len(substitutions))

        decision = RoutingDecision(
            mode=mode,
            subsystems=subsystems,
            weights=weights,
            confidence=confidence,
            features=features,
            requested_mode=requested,
            strategy=profile.strategy,
            substitutions=substitutions,
            request_id=request.request_id,
        )
        self._record(decision, threshold_mode)
        self._history.append(
            RoutingRecord(
                decision=decision,
                preview=request.text[:PREVIEW_LENGTH],
                routed_at=datetime.now(timezone.utc),
            )
        )
        return decision

    def mode_for_score(self, score: float) -> ProcessingMode:
        for index, threshold in enumerate(self._thresholds):
            if score < threshold:
                return MODE_INTENSITY[index]
        return MODE_INTENSITY[-1]

    def compute_features(self, request: Request) -> FeatureVector:
        return self._combine(self._raw_values(request, self._weights))

    def _raw_values(
        self, request: Request, factors: Iterable[FeatureFactor]
    ) -> dict[FeatureFactor, float | None]:
        return {factor: self._score_factor(factor, request) for factor in factors}

    def _combine(self, raw: Mapping[FeatureFactor, float | None]) -> FeatureVector:
        values: dict[FeatureFactor, float] = {}
        neutral: list[FeatureFactor] = []
        score = 0.0
        for factor, weight in self._weights.items():
            value = raw.get(factor)
            if value is None:
                neutral.append(factor)
                increment_neutral_factor(factor=factor.value)
                value = NEUTRAL_VALUE
            values[factor] = value
            contribution = 1.0 - value if factor in self._inverted else value
            score += weight * contribution
        return FeatureVector(
            values=values,
            weights=dict(self._weights),
            neutral_factors=tuple(neutral),
            score=max(0.0, min(1.0, score)),
        )

    def _score_factor(self, factor: FeatureFactor, request: Request) -> float | None:
        scorer = self._scorers.get(factor)
        if scorer is None:
            logger.debug("router_scorer_missing", factor=factor.value)
            return None
        try:
            value = scorer.score(request)
        except Exception:  # noqa: BLE001 - a faulty scorer degrades to neutral
            logger.warning("router_scorer_failed", factor=factor.value, request_id=request.request_id, exc_info=True)
            return None
        if value is None:
            logger.debug("router_factor_unknown", factor=factor.value, request_id=request.request_id)
            return None
        value = float(value)
        if math.isnan(value):
            return None
        return max(0.0, min(1.0, value))

    @staticmethod
    def _cacheable(request: Request) -> frozenset[FeatureFactor]:
        if request.metadata.deadline is None:
            return REQUEST_FACTORS | {FeatureFactor.URGENCY}
        return REQUEST_FACTORS

    def _features_for(self, request: Request) -> FeatureVector:
        if not self._settings.decision_cache_enabled:
            return self.compute_features(request)
        request_factors = self._cacheable(request)
        cacheable = [factor for factor in self._weights if factor in request_factors]
        live = [factor for factor in self._weights if factor not in request_factors]
        key = self._cache_key(request)
        now = self._clock()
        cached = self._cache.get(key)
        if cached is not None and now - cached[0] <= self._settings.decision_cache_ttl_seconds:
            self._cache.move_to_end(key)
            self._cache_hits += 1
            record_feature_cache(hit=True)
            stored = cached[1]
        else:
            stored = self._raw_values(request, cacheable)
            self._cache[key] = (now, stored)
            self._cache.move_to_end(key)
            while len(self._cache) > self._settings.decision_cache_size:
                self._cache.popitem(last=False)
            record_feature_cache(hit=False)
        raw = dict(stored)
        raw.update(self._raw_values(request, live))
        return self._combine(raw)

    @staticmethod
    def _cache_key(request: Request) -> str:
        context = request.context
        material = {
            "text": request.text,
            "metadata": request.metadata.routing_key(),
            "history": bool(context.get("conversation_history") or context.get("history")),
            "documents": bool(context.get("documents")),
        }
        encoded = json.dumps(material, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def _adapt(
        self, mode: ProcessingMode
    ) -> tuple[ProcessingMode, tuple[ModeSubstitution, ...], frozenset[SubsystemKind] | None]:
        availability = self._signals.availability()
        load = self._signals.load()
        substitutions: list[ModeSubstitution] = []

        candidate = mode
        index = MODE_INTENSITY.index(candidate)
        if load >= self._settings.high_load_threshold and index > 0:
            lower = MODE_INTENSITY[index - 1]
            substitutions.append(ModeSubstitution(from_mode=candidate, to_mode=lower, reason="high_load"))
            candidate = lower

        unavailable = self._unavailable(candidate, availability)
        if not unavailable:
            return candidate, tuple(substitutions), None

        for lower in reversed(MODE_INTENSITY[: MODE_INTENSITY.index(candidate)]):
            if not self._unavailable(lower, availability):
                substitutions.append(
                    ModeSubstitution(
                        from_mode=candidate,
                        to_mode=lower,
                        reason="subsystem_unavailable",
                        unavailable=unavailable,
                    )
                )
                return lower, tuple(substitutions), None

        fallback = ProcessingMode.COGNITIVE_ONLY
        available = frozenset(kind for kind, ok in availability.items() if ok)
        substitutions.append(
            ModeSubstitution(
                from_mode=candidate,
                to_mode=fallback,
                reason="no_mode_available",
                unavailable=unavailable,
            )
        )
        logger.warning(
            "router_no_mode_available",
            requested=mode.value,
            unavailable=[kind.value for kind in unavailable],
        )
        return fallback, tuple(substitutions), available

    def _unavailable(
        self, mode: ProcessingMode, availability: Mapping[SubsystemKind, bool]
    ) -> tuple[SubsystemKind, ...]:
        profile = self._settings.profiles[mode]
        return tuple(kind for kind in profile.subsystems if not availability.get(kind, False))

    @staticmethod
    def _subsystem_weights(
        subsystems: Sequence[SubsystemKind], configured: Mapping[SubsystemKind, float]
    ) -> dict[SubsystemKind, float]:
        if not subsystems:
            return {}
        equal = 1.0 / len(subsystems)
        raw = {kind: float(configured.get(kind, equal)) for kind in subsystems}
        total = sum(raw.values())
        if total <= 0:
            return {kind: equal for kind in subsystems}
        return {kind: weight / total for kind, weight in raw.items()}

    def _confidence(self, features: FeatureVector, *, concrete: bool, substitutions: int) -> float:
        if concrete:
            distance_term = 1.0
        else:
            distance = min(abs(features.score - threshold) for threshold in self._thresholds)
            distance_term = min(1.0, distance / self._settings.confidence_margin)
        confidence = 0.5 + 0.5 * distance_term
        confidence *= 1.0 - 0.5 * features.neutral_weight_share
        confidence -= self._settings.substitution_penalty * substitutions
        return max(0.0, min(1.0, confidence))

    def _record(self, decision: RoutingDecision, threshold_mode: ProcessingMode) -> None:
        self._mode_usage[decision.mode.value] += 1
        self._substitution_count += len(decision.substitutions)
        record_routing_decision(
            requested_mode=decision.requested_mode.value,
            mode=decision.mode.value,
            score=decision.features.score,
        )
        for substitution in decision.substitutions:
            record_routing_substitution(
                from_mode=substitution.from_mode.value,
                to_mode=substitution.to_mode.value,
                reason=substitution.reason,
            )
        logger.info(
            "router_decision",
            request_id=decision.request_id,
            mode=decision.mode.value,
            threshold_mode=threshold_mode.value,
            requested_mode=decision.requested_mode.value,
            score=round(decision.features.score, 4),
            confidence=round(decision.confidence, 4),
            subsystems=[kind.value for kind in decision.subsystems],
            substitutions=len(decision.substitutions),
        )
        self._sink.emit("routing.decision", **decision.as_dict())

    def stats(self) -> dict[str, Any]:
        return {
            "total_requests": self._total,
            "cache_hits": self._cache_hits,
            "cache_size": len(self._cache),
            "mode_usage": dict(self._mode_usage),
            "substitutions": self._substitution_count,
            "history_size": len(self._history),
        }

    def history(self, limit: int = 50) -> list[RoutingRecord]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def clear_cache(self) -> None:
        self._cache.clear()


__all__ = [
    "FeatureVector",
    "ModeSubstitution",
    "RegistrySignals",
    "Router",
    "RoutingDecision",
    "RoutingRecord",
    "StaticSignals",
    "SystemSignals",
]
