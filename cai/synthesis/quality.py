from __future__ import annotations

import re
from typing import Mapping, Sequence

from ..core.config import SynthesisSettings
from ..schemas.enums import SubsystemKind
from ..schemas.requests import Request
from ..schemas.responses import QualityAssessment, QualityFlag
from ..services.text import extract_keywords, jaccard, split_sentences, tokenize
from .fusion import THEMES, FusionOutcome

_NEGATIONS = frozenset({"not", "no", "never", "none", "cannot", "can't", "won't", "isn't", "aren't", "doesn't", "don't", "didn't", "wasn't", "shouldn't"})
_ABSOLUTIST = frozenset(
    {
        "always", "never", "everyone", "nobody", "obviously", "clearly", "undoubtedly", "definitely",
        "certainly", "absolutely", "totally", "completely", "unquestionably", "worst", "best", "everybody",
    }
)
_CODE_FENCE = re.compile(r"```")
_BOLD = re.compile(r"\*\*")
_LIST_ITEM = re.compile(r"^\s*(?:[-*\u2022]|\d+\.)\s", re.MULTILINE)


def _segment_sentences(outcome: FusionOutcome) -> list[list[str]]:
    groups: list[list[str]] = []
    for segment in outcome.segments:
        if segment.role == THEMES:
            continue
        if segment.items:
            groups.append(list(segment.items))
        elif segment.text:
            groups.append(split_sentences(segment.text))
    return groups


def check_consistency(outcome: FusionOutcome, settings: SynthesisSettings) -> QualityFlag:
    """Flag sentence pairs from different segments that match except for a negation."""
    groups = _segment_sentences(outcome)
    contradictions: list[tuple[str, str]] = []
    for index, left_group in enumerate(groups):
        for right_group in groups[index + 1 :]:
            for left in left_group:
                left_tokens = tokenize(left)
                left_negated = any(token in _NEGATIONS for token in left_tokens)
                left_core = {token for token in left_tokens if token not in _NEGATIONS}
                for right in right_group:
                    right_tokens = tokenize(right)
                    right_negated = any(token in _NEGATIONS for token in right_tokens)
                    if left_negated == right_negated:
                        continue
                    right_core = {token for token in right_tokens if token not in _NEGATIONS}
                    if jaccard(left_core, right_core) >= settings.contradiction_similarity:
                        contradictions.append((left, right))
    if not contradictions:
        return QualityFlag(check="consistency", passed=True, score=1.0)
    first = contradictions[0]
    return QualityFlag(
        check="consistency",
        passed=False,
        score=max(0.0, 1.0 - 0.25 * len(contradictions)),
        detail=f"{len(contradictions)} contradicting statement(s), e.g. {first[0]!r} vs {first[1]!r}",
    )


def check_completeness(content: str, request: Request, settings: SynthesisSettings) -> QualityFlag:
    words = set(tokenize(content))
    explicit = [aspect for aspect in request.metadata.aspects if aspect.strip()]
    if explicit:
        missing = [aspect for aspect in explicit if not _aspect_covered(aspect, words)]
        score = 1.0 - len(missing) / len(explicit)
        return QualityFlag(
            check="completeness",
            passed=not missing,
            score=score,
            detail=f"missing aspects: {missing}" if missing else "",
        )

    keywords = extract_keywords(request.text, limit=10)
    if not keywords:
        return QualityFlag(check="completeness", passed=True, score=1.0)
    covered = [keyword for keyword in keywords if keyword in words]
    score = len(covered) / len(keywords)
    missing = [keyword for keyword in keywords if keyword not in words]
    return QualityFlag(
        check="completeness",
        passed=score >= settings.completeness_threshold,
        score=score,
        detail=f"uncovered terms: {missing}" if missing else "",
    )


def _aspect_covered(aspect: str, words: set[str]) -> bool:
    terms = [term for term in tokenize(aspect) if len(term) > 2] or tokenize(aspect)
    return all(term in words for term in terms)


def check_bias(content: str, settings: SynthesisSettings) -> QualityFlag:
    tokens = tokenize(content)
    if not tokens:
        return QualityFlag(check="bias", passed=True, score=1.0)
    loaded = [token for token in tokens if token in _ABSOLUTIST]
    ratio = len(loaded) / len(tokens)
    limit = settings.bias_term_ratio
    if limit > 0:
        score = max(0.0, 1.0 - ratio / (2 * limit))
    else:
        score = 0.0 if loaded else 1.0
    return QualityFlag(
        check="bias",
        passed=ratio <= limit,
        score=score,
        detail=f"absolutist term ratio {ratio:.3f}" if loaded else "",
    )


def check_formatting(content: str, settings: SynthesisSettings) -> QualityFlag:
    problems: list[str] = []
    if not content.strip():
        problems.append("empty response")
    if len(content) > settings.max_response_length:
        problems.append(f"longer than {settings.max_response_length} characters")
    if len(_BOLD.findall(content)) % 2:
        problems.append("unbalanced emphasis markers")
    if len(_CODE_FENCE.findall(content)) % 2:
        problems.append("unterminated code fence")
    return QualityFlag(
        check="formatting",
        passed=not problems,
        score=1.0 - len(problems) / 4,
        detail="; ".join(problems),
    )


def check_degraded(succeeded: int, planned: int) -> QualityFlag:
    share = succeeded / planned if planned else 0.0
    return QualityFlag(
        check="degraded",
        passed=succeeded == planned,
        score=share,
        detail="" if succeeded == planned else f"{planned - succeeded} of {planned} subsystems did not succeed",
    )


def run_quality_checks(
    outcome: FusionOutcome,
    body: str,
    request: Request,
    settings: SynthesisSettings,
    *,
    succeeded: int,
    planned: int,
) -> list[QualityFlag]:
    """Advisory checks attached to the response; none of them block it."""
    return [
        check_consistency(outcome, settings),
        check_completeness(body, request, settings),
        check_bias(body, settings),
        check_formatting(body, settings),
        check_degraded(succeeded, planned),
    ]


def assess_coherence(content: str) -> float:
    sentences = split_sentences(content)
    if not sentences:
        return 0.0
    if len(sentences) == 1:
        return 0.8
    score = 0.5
    average = sum(len(sentence) for sentence in sentences) / len(sentences)
    if 20 < average < 200:
        score += 0.2
    if _BOLD.search(content) or _LIST_ITEM.search(content):
        score += 0.1
    return score


def assess_quality(
    content: str,
    flags: Sequence[QualityFlag],
    outcome: FusionOutcome,
    confidences: Mapping[SubsystemKind, float],
) -> QualityAssessment:
    """Score coherence, completeness, accuracy and relevance; ``overall`` is their mean."""
    completeness = next((flag.score for flag in flags if flag.check == "completeness"), 0.0)
    contributing = [confidences[kind] for kind in outcome.contributions if kind in confidences]
    accuracy = sum(contributing) / len(contributing) if contributing else 0.3
    relevance = outcome.confidence if outcome.contributions else 0.7
    scores = [assess_coherence(content), completeness, accuracy, relevance]
    scores = [max(0.0, min(1.0, score)) for score in scores]
    return QualityAssessment(
        coherence=scores[0],
        completeness=scores[1],
        accuracy=scores[2],
        relevance=scores[3],
        overall=sum(scores) / len(scores),
    )


__all__ = [
    "assess_coherence",
    "assess_quality",
    "check_bias",
    "check_completeness",
    "check_consistency",
    "check_degraded",
    "check_formatting",
    "run_quality_checks",
]

