from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from ..core.config import SynthesisSettings
from ..orchestration.state import ProcessingResult
from ..schemas.enums import SubsystemKind

TEXT_KEYS = ("content", "response", "answer", "summary", "consensus", "text")
MAX_DOCUMENTS = 3

SUBSYSTEM_LABELS: dict[SubsystemKind, str] = {
    SubsystemKind.AGENT_COUNCIL: "Agent Council",
    SubsystemKind.COGNITIVE_BRAIN: "Cognitive Brain",
    SubsystemKind.RAG: "Knowledge Retrieval",
}


@dataclass(slots=True, frozen=True)
class NormalizedOutput:
    subsystem: SubsystemKind
    text: str
    confidence: float
    weight: float
    order: int
    sources: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return SUBSYSTEM_LABELS.get(self.subsystem, self.subsystem.value)


def normalize_results(result: ProcessingResult, settings: SynthesisSettings) -> list[NormalizedOutput]:
    """Convert successful subsystem payloads into uniform text, confidence and weight records."""
    order = {kind: index for index, kind in enumerate(result.decision.subsystems)}
    outputs: list[NormalizedOutput] = []
    for item in result.successes:
        text, confidence, sources = _extract(item.payload)
        default = settings.default_confidences.get(item.subsystem, 0.5)
        outputs.append(
            NormalizedOutput(
                subsystem=item.subsystem,
                text=text.strip(),
                confidence=_clamp(confidence if confidence is not None else default),
                weight=max(0.0, float(result.decision.weights.get(item.subsystem, 0.0))),
                order=order.get(item.subsystem, len(order)),
                sources=sources,
            )
        )
    outputs.sort(key=lambda output: output.order)
    return outputs


def _extract(payload: Any) -> tuple[str, float | None, tuple[str, ...]]:
    if payload is None:
        return "", None, ()
    if isinstance(payload, str):
        return payload, None, ()
    if not isinstance(payload, Mapping):
        return str(payload), None, ()

    text = ""
    for key in TEXT_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            text = value
            break

    documents = payload.get("documents")
    document_texts: list[str] = []
    sources: list[str] = []
    if isinstance(documents, (list, tuple)):
        for document in documents[:MAX_DOCUMENTS]:
            body, title = _document(document)
            if body:
                document_texts.append(body)
            if title:
                sources.append(title)
    if not text and document_texts:
        text = "\n\n".join(document_texts)

    sources.extend(_source_names(payload.get("sources")))
    confidence = payload.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = None
    return text, confidence, tuple(dict.fromkeys(sources))


def _document(document: Any) -> tuple[str, str | None]:
    if isinstance(document, str):
        return document.strip(), None
    if isinstance(document, Mapping):
        body = document.get("content") or document.get("text") or ""
        title = document.get("title") or document.get("source") or document.get("id")
        return str(body).strip(), str(title) if title else None
    return "", None


def _source_names(raw: Any) -> Iterable[str]:
    if not isinstance(raw, (list, tuple)):
        return []
    names: list[str] = []
    for entry in raw:
        if isinstance(entry, str) and entry.strip():
            names.append(entry.strip())
        elif isinstance(entry, Mapping):
            name = entry.get("title") or entry.get("url") or entry.get("source") or entry.get("name")
            if name:
                names.append(str(name))
    return names


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


__all__ = ["NormalizedOutput", "SUBSYSTEM_LABELS", "normalize_results"]
