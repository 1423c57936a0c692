from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from ..core.config import SynthesisSettings
from ..core.logging import get_logger
from ..schemas.enums import FusionStrategy, SubsystemKind
from ..services.text import extract_keywords, jaccard, split_sentences, word_set
from .normalize import NormalizedOutput

logger = get_logger(name=__name__)

BODY = "body"
ATTRIBUTED = "attributed"
SUPPLEMENT = "supplement"
CONSENSUS = "consensus"
THEMES = "themes"


@dataclass(slots=True, frozen=True)
class Segment:
    role: str
    text: str = ""
    subsystem: SubsystemKind | None = None
    label: str | None = None
    items: tuple[str, ...] = ()


@dataclass(slots=True)
class Agreement:
    content: str
    subsystems: tuple[SubsystemKind, ...]
    score: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "subsystems": [kind.value for kind in self.subsystems],
            "score": round(self.score, 4),
        }


@dataclass(slots=True)
class FusionOutcome:
    strategy: FusionStrategy
    segments: list[Segment]
    contributions: dict[SubsystemKind, float]
    confidence: float
    fallback_reason: str | None = None
    agreements: list[Agreement] = field(default_factory=list)

    @property
    def plain_text(self) -> str:
        parts: list[str] = []
        for segment in self.segments:
            if segment.items:
                parts.append("\n".join(segment.items))
            elif segment.text:
                parts.append(segment.text)
        return "\n\n".join(parts)


def _normalized_weights(outputs: Sequence[NormalizedOutput]) -> dict[SubsystemKind, float]:
    total = sum(output.weight for output in outputs)
    if total <= 0:
        share = 1.0 / len(outputs)
        return {output.subsystem: share for output in outputs}
    return {output.subsystem: output.weight / total for output in outputs}


def weighted_combination(outputs: Sequence[NormalizedOutput], settings: SynthesisSettings) -> FusionOutcome:
    """Concatenate attributed segments by renormalized decision weight."""
    candidates = [output for output in outputs if output.text]
    if not candidates:
        return FusionOutcome(FusionStrategy.WEIGHTED_COMBINATION, [], {}, 0.0)
    weights = _normalized_weights(candidates)
    included = [output for output in candidates if weights[output.subsystem] >= settings.min_contribution_weight]
    if not included:
        included = [max(candidates, key=lambda output: (weights[output.subsystem], -output.order))]
    included.sort(key=lambda output: (-weights[output.subsystem], output.order))

    kept = sum(weights[output.subsystem] for output in included)
    contributions = {output.subsystem: weights[output.subsystem] / kept for output in included}
    segments = [
        Segment(role=ATTRIBUTED, text=output.text, subsystem=output.subsystem, label=output.label)
        for output in included
    ]
    confidence = sum(contributions[output.subsystem] * output.confidence for output in included)
    return FusionOutcome(FusionStrategy.WEIGHTED_COMBINATION, segments, contributions, confidence)


def hierarchical_fusion(
    outputs: Sequence[NormalizedOutput],
    settings: SynthesisSettings,
    *,
    fallback_reason: str | None = None,
) -> FusionOutcome:
    """Use the highest-priority output as backbone and add only non-duplicate sentences from the rest."""
    candidates = [output for output in outputs if output.text]
    if not candidates:
        return FusionOutcome(FusionStrategy.HIERARCHICAL_FUSION, [], {}, 0.0, fallback_reason=fallback_reason)
    priority = {kind: index for index, kind in enumerate(settings.hierarchy)}
    ranked = sorted(
        candidates,
        key=lambda output: (priority.get(output.subsystem, len(priority)), -output.confidence, output.order),
    )
    backbone, rest = ranked[0], ranked[1:]
    seen = [word_set(sentence) for sentence in split_sentences(backbone.text)]

    characters: dict[SubsystemKind, int] = {backbone.subsystem: len(backbone.text)}
    additions: list[str] = []
    for output in rest:
        added: list[str] = []
        for sentence in split_sentences(output.text):
            words = word_set(sentence)
            if not words:
                continue
            if any(jaccard(words, existing) > settings.duplicate_similarity for existing in seen):
                continue
            seen.append(words)
            added.append(sentence)
        if added:
            characters[output.subsystem] = sum(len(sentence) for sentence in added)
            additions.extend(added)

    segments = [Segment(role=BODY, text=backbone.text, subsystem=backbone.subsystem, label=backbone.label)]
    if additions:
        segments.append(Segment(role=SUPPLEMENT, text=" ".join(additions), label="Additional Context"))

    total = sum(characters.values()) or 1
    contributions = {kind: count / total for kind, count in characters.items()}
    by_kind = {output.subsystem: output for output in candidates}
    confidence = sum(share * by_kind[kind].confidence for kind, share in contributions.items())
    return FusionOutcome(
        FusionStrategy.HIERARCHICAL_FUSION,
        segments,
        contributions,
        confidence,
        fallback_reason=fallback_reason,
    )


def find_agreements(outputs: Sequence[NormalizedOutput], settings: SynthesisSettings) -> list[Agreement]:
    """Sentence-level agreement across sources, each scored by the agreeing sources' weight times confidence."""
    weights = _normalized_weights(outputs)
    sentences = {
        output.subsystem: [
            (sentence, word_set(sentence))
            for sentence in split_sentences(output.text)
            if len(sentence) >= settings.min_sentence_length
        ]
        for output in outputs
    }
    agreements: list[Agreement] = []
    for output in outputs:
        for sentence, words in sentences[output.subsystem]:
            agreeing = [output]
            for other in outputs:
                if other.subsystem is output.subsystem:
                    continue
                if any(jaccard(words, candidate) > settings.agreement_similarity for _, candidate in sentences[other.subsystem]):
                    agreeing.append(other)
            if len(agreeing) < 2:
                continue
            if any(jaccard(words, word_set(existing.content)) > settings.duplicate_similarity for existing in agreements):
                continue
            score = sum(weights[item.subsystem] * item.confidence for item in agreeing)
            ordered = tuple(item.subsystem for item in sorted(agreeing, key=lambda item: item.order))
            agreements.append(Agreement(content=sentence, subsystems=ordered, score=min(1.0, score)))
    agreements.sort(key=lambda agreement: -agreement.score)
    return agreements[: settings.max_consensus_points]


def extract_common_themes(outputs: Sequence[NormalizedOutput], settings: SynthesisSettings) -> list[tuple[str, int]]:
    """Words longer than four characters shared by at least two sources, most widely shared first."""
    counts: dict[str, int] = {}
    for output in outputs:
        for word in extract_keywords(output.text, min_length=5):
            counts[word] = counts.get(word, 0) + 1
    needed = min(2, len(outputs))
    common = [(word, count) for word, count in counts.items() if count >= needed]
    common.sort(key=lambda item: -item[1])
    return common[: settings.max_common_themes]


def consensus_building(outputs: Sequence[NormalizedOutput], settings: SynthesisSettings) -> FusionOutcome:
    """Weighted vote over overlapping claims; falls back to hierarchical fusion when support is weak."""
    candidates = [output for output in outputs if output.text]
    if len(candidates) < 2:
        logger.info("synthesis_consensus_fallback", reason="insufficient_sources", sources=len(candidates))
        return hierarchical_fusion(candidates, settings, fallback_reason="insufficient_sources")

    agreements = find_agreements(candidates, settings)
    top = agreements[0].score if agreements else 0.0
    if top < settings.consensus_threshold:
        logger.info(
            "synthesis_consensus_fallback",
            reason="low_agreement",
            top_agreement=round(top, 4),
            threshold=settings.consensus_threshold,
        )
        return hierarchical_fusion(candidates, settings, fallback_reason="low_agreement")

    weights = _normalized_weights(candidates)
    participating = {kind for agreement in agreements for kind in agreement.subsystems}
    participating_total = sum(weights[kind] for kind in participating) or 1.0
    contributions = {
        output.subsystem: weights[output.subsystem] / participating_total
        for output in candidates
        if output.subsystem in participating
    }
    items = tuple(
        f"{agreement.content} ({len(agreement.subsystems)} sources agree)" for agreement in agreements
    )
    confidence = sum(agreement.score for agreement in agreements) / len(agreements)
    segments = [Segment(role=CONSENSUS, label="Consensus Points", items=items)]
    themes = extract_common_themes(candidates, settings)
    if themes:
        segments.append(
            Segment(role=THEMES, label="Common Themes", items=tuple(f"Common topic: {word}" for word, _ in themes))
        )
    return FusionOutcome(
        FusionStrategy.CONSENSUS_BUILDING,
        segments,
        contributions,
        confidence,
        agreements=agreements,
    )


def fuse(
    strategy: FusionStrategy,
    outputs: Sequence[NormalizedOutput],
    settings: SynthesisSettings,
) -> FusionOutcome:
    if strategy is FusionStrategy.CONSENSUS_BUILDING:
        return consensus_building(outputs, settings)
    if strategy is FusionStrategy.HIERARCHICAL_FUSION:
        return hierarchical_fusion(outputs, settings)
    return weighted_combination(outputs, settings)


__all__ = [
    "Agreement",
    "FusionOutcome",
    "Segment",
    "consensus_building",
    "extract_common_themes",
    "find_agreements",
    "fuse",
    "hierarchical_fusion",
    "weighted_combination",
]
