from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterable

from ..core.logging import get_logger
from ..schemas.enums import SubsystemKind, SubsystemStatus

logger = get_logger(name=__name__)


@dataclass(slots=True)
class SubsystemHealth:
    subsystem: SubsystemKind
    success_rate: float
    timeout_rate: float
    mean_latency: float
    samples: int
    updated_at: float

    def as_dict(self) -> dict[str, float | int | str]:
        return {
            "subsystem": self.subsystem.value,
            "success_rate": round(self.success_rate, 4),
            "timeout_rate": round(self.timeout_rate, 4),
            "mean_latency": round(self.mean_latency, 4),
            "samples": self.samples,
        }


class SubsystemHealthTracker:
    """Exponentially smoothed success/timeout rates per subsystem with a freshness TTL.

    Readers may see slightly stale values; entries older than ``ttl_seconds``
    are reported as unknown so routing falls back to neutral factors.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        smoothing: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if not 0.0 < smoothing <= 1.0:
            raise ValueError("smoothing must be within (0, 1]")
        self._ttl = ttl_seconds
        self._alpha = smoothing
        self._clock = clock
        self._entries: dict[SubsystemKind, SubsystemHealth] = {}

    def record(self, subsystem: SubsystemKind, status: SubsystemStatus, latency: float) -> None:
        if status is SubsystemStatus.SKIPPED:
            return
        success = 1.0 if status is SubsystemStatus.SUCCESS else 0.0
        timed_out = 1.0 if status is SubsystemStatus.TIMEOUT else 0.0
        now = self._clock()
        entry = self._entries.get(subsystem)
        if entry is None or now - entry.updated_at > self._ttl:
            self._entries[subsystem] = SubsystemHealth(
                subsystem=subsystem,
                success_rate=success,
                timeout_rate=timed_out,
                mean_latency=max(0.0, latency),
                samples=1,
                updated_at=now,
            )
            return
        alpha = self._alpha
        entry.success_rate += alpha * (success - entry.success_rate)
        entry.timeout_rate += alpha * (timed_out - entry.timeout_rate)
        entry.mean_latency += alpha * (max(0.0, latency) - entry.mean_latency)
        entry.samples += 1
        entry.updated_at = now

    def snapshot(self, subsystem: SubsystemKind) -> SubsystemHealth | None:
        entry = self._entries.get(subsystem)
        if entry is None:
            return None
        if self._clock() - entry.updated_at > self._ttl:
            logger.debug("subsystem_health_stale", subsystem=subsystem.value)
            return None
        return entry

    def fresh(self, subsystems: Iterable[SubsystemKind] | None = None) -> list[SubsystemHealth]:
        kinds = list(subsystems) if subsystems is not None else list(self._entries)
        entries = (self.snapshot(kind) for kind in kinds)
        return [entry for entry in entries if entry is not None]

    def availability_score(self, subsystems: Iterable[SubsystemKind] | None = None) -> float | None:
        entries = self.fresh(subsystems)
        if not entries:
            return None
        return sum(1.0 - entry.timeout_rate for entry in entries) / len(entries)

    def performance_score(self, subsystems: Iterable[SubsystemKind] | None = None) -> float | None:
        entries = self.fresh(subsystems)
        if not entries:
            return None
        return sum(entry.success_rate for entry in entries) / len(entries)

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["SubsystemHealth", "SubsystemHealthTracker"]
