from __future__ import annotations

import json
from typing import Iterable, Mapping

from ..core.config import SynthesisSettings
from ..schemas.enums import ResponseFormat, SubsystemKind
from ..schemas.requests import Request
from .fusion import ATTRIBUTED, CONSENSUS, SUPPLEMENT, THEMES, FusionOutcome, Segment
from .normalize import SUBSYSTEM_LABELS

SUPPORTED_FORMATS = (ResponseFormat.MARKDOWN, ResponseFormat.TEXT, ResponseFormat.JSON)
_SENTENCE_ENDINGS = (".", "!", "?")


def select_format(request: Request, settings: SynthesisSettings) -> ResponseFormat:
    """First accepted format the synthesizer supports, otherwise the configured default."""
    for candidate in request.metadata.accepted_formats:
        value = candidate.value if isinstance(candidate, ResponseFormat) else str(candidate).strip().lower()
        if value in {"md", "text/markdown"}:
            value = ResponseFormat.MARKDOWN.value
        elif value in {"plain", "text/plain"}:
            value = ResponseFormat.TEXT.value
        elif value == "application/json":
            value = ResponseFormat.JSON.value
        try:
            chosen = ResponseFormat(value)
        except ValueError:
            continue
        if chosen in SUPPORTED_FORMATS:
            return chosen
    return settings.default_format


def render_segment(segment: Segment, response_format: ResponseFormat) -> str:
    markdown = response_format is ResponseFormat.MARKDOWN
    if segment.role in (CONSENSUS, THEMES):
        header = f"**{segment.label}:**" if markdown else f"{segment.label}:"
        bullet = "-"
        return "\n".join([header, *(f"{bullet} {item}" for item in segment.items)])
    if segment.role == ATTRIBUTED and segment.label:
        prefix = f"**From {segment.label}:**" if markdown else f"From {segment.label}:"
        return f"{prefix} {segment.text}"
    if segment.role == SUPPLEMENT:
        header = f"**{segment.label}:**" if markdown else f"{segment.label}:"
        return f"{header}\n{segment.text}"
    return segment.text


def render_body(outcome: FusionOutcome, response_format: ResponseFormat, *, attribution: bool) -> str:
    parts: list[str] = []
    for segment in outcome.segments:
        if segment.role == ATTRIBUTED and not attribution:
            parts.append(segment.text)
        else:
            parts.append(render_segment(segment, response_format))
    return "\n\n".join(part for part in parts if part)


def truncate(content: str, max_length: int) -> str:
    """Cut at the last sentence boundary in the final fifth of the limit, else hard-cut with an ellipsis."""
    if len(content) <= max_length:
        return content
    window = content[:max_length]
    boundary = max(window.rfind(ending) for ending in _SENTENCE_ENDINGS)
    if boundary > max_length * 0.8:
        return window[: boundary + 1]
    return window[: max(0, max_length - 3)].rstrip() + "..."


def citation_lines(
    contributions: Mapping[SubsystemKind, float],
    confidences: Mapping[SubsystemKind, float],
    sources: Iterable[str],
) -> list[str]:
    lines: list[str] = []
    for kind in contributions:
        label = SUBSYSTEM_LABELS.get(kind, kind.value)
        confidence = confidences.get(kind, 0.0)
        lines.append(f"{label} (confidence: {confidence * 100:.1f}%)")
    lines.extend(sources)
    return lines


def render_citations(lines: list[str], response_format: ResponseFormat) -> str:
    if not lines:
        return ""
    header = "**Sources:**" if response_format is ResponseFormat.MARKDOWN else "Sources:"
    numbered = [f"{index}. {line}" for index, line in enumerate(lines, start=1)]
    return "\n\n" + "\n".join([header, *numbered])


def render_json(
    *,
    body: str,
    outcome: FusionOutcome,
    citations: list[str],
) -> str:
    document = {
        "content": body,
        "strategy": outcome.strategy.value,
        "segments": [
            {
                "role": segment.role,
                "subsystem": segment.subsystem.value if segment.subsystem else None,
                "label": segment.label,
                "text": segment.text,
                "items": list(segment.items),
            }
            for segment in outcome.segments
        ],
        "sources": citations,
    }
    return json.dumps(document, sort_keys=True, ensure_ascii=False)


__all__ = [
    "SUPPORTED_FORMATS",
    "citation_lines",
    "render_body",
    "render_citations",
    "render_json",
    "render_segment",
    "select_format",
    "truncate",
]
