from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from .state import SubsystemResult


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Snapshot of the results completed so far within one execution."""

    sequence: int
    label: str
    completed: tuple[SubsystemResult, ...]
    created_at: float
    context: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "label": self.label,
            "completed": [result.subsystem.value for result in self.completed],
            "created_at": self.created_at,
        }


class CheckpointLog:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: list[Checkpoint] = []

    def record(
        self,
        label: str,
        completed: Iterable[SubsystemResult],
        *,
        context: dict[str, Any] | None = None,
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            sequence=len(self._entries),
            label=label,
            completed=tuple(completed),
            created_at=self._clock(),
            context=dict(context or {}),
        )
        self._entries.append(checkpoint)
        return checkpoint

    def latest(self) -> Checkpoint | None:
        return self._entries[-1] if self._entries else None

    def all(self) -> tuple[Checkpoint, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["Checkpoint", "CheckpointLog"]
