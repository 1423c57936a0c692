from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol, Sequence

from ..core.logging import get_logger
from ..schemas.enums import FeatureFactor
from ..schemas.requests import Request
from .health import SubsystemHealthTracker
from .text import split_sentences, tokenize

logger = get_logger(name=__name__)

_QUESTION_WORDS = ("what", "how", "why", "when", "where", "who")
_COMPLEX_TERMS = ("analyze", "analyse", "compare", "evaluate", "synthesize", "integrate")
_URGENT_PATTERN = re.compile(r"\b(urgent|asap|immediately|quickly|fast)\b", re.IGNORECASE)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class FeatureScorer(Protocol):
    """Scores one routing factor for a request.

    Returns a value in [0, 1], or ``None`` when the factor cannot be assessed.
    """

    factor: FeatureFactor

    def score(self, request: Request) -> float | None:
        ...


@dataclass(slots=True, frozen=True)
class IntentRule:
    """Named set of patterns; a match lifts request complexity to at least ``complexity``."""

    name: str
    patterns: tuple[re.Pattern[str], ...]
    complexity: float
    confidence: float

    @classmethod
    def compile(cls, name: str, patterns: Iterable[str], *, complexity: float, confidence: float) -> "IntentRule":
        if not name:
            raise ValueError("Intent rule needs a name")
        compiled = tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)
        if not compiled:
            raise ValueError(f"Intent rule {name!r} needs at least one pattern")
        return cls(name=name, patterns=compiled, complexity=_clamp(complexity), confidence=_clamp(confidence))

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)


DEFAULT_INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule.compile(
        "knowledge_query",
        (
            r"\b(what is|what are|define|explain|describe)\b",
            r"\b(how to|how do|tutorial|guide)\b",
            r"\b(find|search|lookup|retrieve)\b",
        ),
        complexity=0.2,
        confidence=0.8,
    ),
    IntentRule.compile(
        "complex_reasoning",
        (
            r"\b(analy[sz]e|compare|evaluate|assess)\b",
            r"\b(why|because|reason|logic)\b",
            r"\b(solve|problem|solution|approach)\b",
        ),
        complexity=0.5,
        confidence=0.7,
    ),
    IntentRule.compile(
        "multi_step_task",
        (
            r"\b(plan|strategy|steps|process)\b",
            r"\b(coordinate|organi[sz]e|manage)\b",
            r"\b(multiple|several|various|different)\b",
        ),
        complexity=0.6,
        confidence=0.6,
    ),
    IntentRule.compile(
        "hybrid_task",
        (
            r"\bresearch and analy[sz]e\b",
            r"\bfind and explain\b",
            r"\b(comprehensive|detailed analysis)\b",
        ),
        complexity=0.9,
        confidence=0.9,
    ),
)


class IntentRules:
    """Ordered, mutable intent rule set; the most confident matching rule wins."""

    def __init__(self, rules: Iterable[IntentRule] = DEFAULT_INTENT_RULES) -> None:
        self._rules: dict[str, IntentRule] = {}
        for rule in rules:
            self.add(rule)

    @property
    def names(self) -> list[str]:
        return list(self._rules)

    def add(self, rule: IntentRule) -> None:
        self._rules[rule.name] = rule
        logger.debug("intent_rule_added", rule=rule.name, patterns=len(rule.patterns))

    def remove(self, name: str) -> bool:
        removed = self._rules.pop(name, None) is not None
        if removed:
            logger.debug("intent_rule_removed", rule=name)
        return removed

    def detect(self, text: str) -> IntentRule | None:
        best: IntentRule | None = None
        for rule in self._rules.values():
            if rule.matches(text) and (best is None or rule.confidence > best.confidence):
                best = rule
        return best


class ComplexityScorer:
    factor = FeatureFactor.COMPLEXITY

    def __init__(self, *, intents: IntentRules | None = None) -> None:
        self._intents = intents

    def score(self, request: Request) -> float | None:
        text = request.text
        if not text:
            return None
        heuristic = self._heuristic(text)
        if self._intents is None:
            return heuristic
        intent = self._intents.detect(text)
        if intent is None:
            return heuristic
        return max(heuristic, intent.complexity)

    @staticmethod
    def _heuristic(text: str) -> float:
        lowered = text.lower()
        words = set(tokenize(lowered))
        complexity = 0.0

        length = len(text)
        if length > 500:
            complexity += 0.3
        elif length > 200:
            complexity += 0.2
        elif length > 100:
            complexity += 0.1

        complexity += 0.1 * sum(1 for word in _QUESTION_WORDS if word in words)
        complexity += 0.2 * sum(1 for term in _COMPLEX_TERMS if term in lowered)

        sentences = split_sentences(text)
        if len(sentences) > 3:
            complexity += 0.2
        elif len(sentences) > 1:
            complexity += 0.1
        return _clamp(complexity)


class ContextScorer:
    """Richness of the surrounding context: history, documents, accuracy and multi-step hints."""

    factor = FeatureFactor.CONTEXT

    def score(self, request: Request) -> float | None:
        context = request.context
        metadata = request.metadata
        value = 0.0
        if _non_empty(context.get("conversation_history") or context.get("history")):
            value += 0.2
        if _non_empty(context.get("documents")):
            value += 0.3
        if metadata.multi_step:
            value += 0.3
        if metadata.accuracy == "high":
            value += 0.2
        return _clamp(value)


class UrgencyScorer:
    factor = FeatureFactor.URGENCY

    def __init__(self, *, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))

    def score(self, request: Request) -> float | None:
        metadata = request.metadata
        if metadata.urgency is not None:
            return _clamp(metadata.urgency)
        urgency = 0.0
        if _URGENT_PATTERN.search(request.text):
            urgency += 0.5
        if metadata.priority == "urgent":
            urgency += 0.3
        elif metadata.priority == "high":
            urgency += 0.15
        if metadata.deadline is not None:
            deadline = metadata.deadline
            if deadline.tzinfo is None:
                deadline = deadline.replace(tzinfo=timezone.utc)
            seconds_left = (deadline - self._now()).total_seconds()
            if seconds_left < 3600:
                urgency += 0.4
            elif seconds_left < 86400:
                urgency += 0.2
        return _clamp(urgency)


class ResourceAvailabilityScorer:
    """Share of recent calls that did not time out, read from the health cache."""

    factor = FeatureFactor.RESOURCE_AVAILABILITY

    def __init__(self, tracker: SubsystemHealthTracker) -> None:
        self._tracker = tracker

    def score(self, request: Request) -> float | None:  # noqa: ARG002
        return self._tracker.availability_score()


class HistoricalPerformanceScorer:
    factor = FeatureFactor.HISTORICAL_PERFORMANCE

    def __init__(self, tracker: SubsystemHealthTracker) -> None:
        self._tracker = tracker

    def score(self, request: Request) -> float | None:  # noqa: ARG002
        return self._tracker.performance_score()


def default_scorers(tracker: SubsystemHealthTracker) -> Sequence[FeatureScorer]:
    return (
        ComplexityScorer(intents=IntentRules()),
        ContextScorer(),
        UrgencyScorer(),
        ResourceAvailabilityScorer(tracker),
        HistoricalPerformanceScorer(tracker),
    )


def _non_empty(value: Any) -> bool:
    if value is None:
        return False
    try:
        return len(value) > 0
    except TypeError:
        return bool(value)


__all__ = [
    "DEFAULT_INTENT_RULES",
    "ComplexityScorer",
    "ContextScorer",
    "FeatureScorer",
    "HistoricalPerformanceScorer",
    "IntentRule",
    "IntentRules",
    "ResourceAvailabilityScorer",
    "UrgencyScorer",
    "default_scorers",
]
