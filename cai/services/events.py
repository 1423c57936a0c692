from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..core.config import ObservabilitySettings
from ..core.logging import get_logger
from ..core.metrics import increment_dropped_event


@dataclass(slots=True)
class ObservabilityEvent:
    name: str
    fields: dict[str, Any] = field(default_factory=dict)
    emitted_at: float = field(default_factory=time.time)

    def as_dict(self) -> dict[str, Any]:
        return {"event": self.name, "emitted_at": self.emitted_at, **self.fields}


class ObservabilitySink(Protocol):
    """Fire-and-forget destination for structured core events. ``emit`` never blocks."""

    def emit(self, event: str, **fields: Any) -> None:
        ...


class NullEventSink:
    def emit(self, event: str, **fields: Any) -> None:  # noqa: ARG002
        return None


class LoggingEventSink:
    """Forward events to structlog under a dedicated logger."""

    def __init__(self, *, logger_name: str = "cai.events") -> None:
        self._logger = get_logger(name=logger_name)

    def emit(self, event: str, **fields: Any) -> None:
        self._logger.info(event.replace(".", "_"), **fields)


class BufferedEventSink:
    """Bounded in-memory queue drained by a consumer; overflow is dropped and counted."""

    def __init__(self, *, maxsize: int = 1000) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: asyncio.Queue[ObservabilityEvent] = asyncio.Queue(maxsize=maxsize)
        self._dropped = 0
        self._logger = get_logger(name=__name__)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, event: str, **fields: Any) -> None:
        try:
            self._queue.put_nowait(ObservabilityEvent(name=event, fields=fields))
        except asyncio.QueueFull:
            self._dropped += 1
            increment_dropped_event()
            if self._dropped == 1 or self._dropped % 100 == 0:
                self._logger.warning("observability_event_dropped", event=event, dropped=self._dropped)

    def drain(self) -> list[ObservabilityEvent]:
        events: list[ObservabilityEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    async def get(self) -> ObservabilityEvent:
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()


def build_event_sink(settings: ObservabilitySettings) -> ObservabilitySink:
    if settings.event_sink == "none":
        return NullEventSink()
    if settings.event_sink == "buffered":
        return BufferedEventSink(maxsize=settings.event_buffer_size)
    return LoggingEventSink()


__all__ = [
    "BufferedEventSink",
    "LoggingEventSink",
    "NullEventSink",
    "ObservabilityEvent",
    "ObservabilitySink",
    "build_event_sink",
]
