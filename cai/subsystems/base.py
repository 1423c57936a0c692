from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, runtime_checkable

from ..schemas.enums import SubsystemCapability, SubsystemKind
from ..schemas.requests import Request

SubsystemPayload = str | Mapping[str, Any]

# Capability each subsystem kind has to declare on top of CANCELLATION.
REQUIRED_CAPABILITIES: dict[SubsystemKind, frozenset[SubsystemCapability]] = {
    SubsystemKind.COGNITIVE_BRAIN: frozenset({SubsystemCapability.REASONING, SubsystemCapability.CANCELLATION}),
    SubsystemKind.AGENT_COUNCIL: frozenset({SubsystemCapability.COLLABORATION, SubsystemCapability.CANCELLATION}),
    SubsystemKind.RAG: frozenset({SubsystemCapability.RETRIEVAL, SubsystemCapability.CANCELLATION}),
}


@dataclass(slots=True, frozen=True)
class Deadline:
    """Absolute expiry handed to adapters, measured on a monotonic clock."""

    expires_at: float
    clock: Callable[[], float] = field(default=time.monotonic, compare=False, repr=False)

    @classmethod
    def after(cls, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(expires_at=clock() + max(0.0, seconds), clock=clock)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0


@runtime_checkable
class SubsystemAdapter(Protocol):
    """Contract every processing subsystem exposes to the orchestration core.

    ``process`` must honour task cancellation and must not keep per-request
    state between calls. Failures are raised; the orchestrator records them.
    """

    kind: SubsystemKind
    capabilities: frozenset[SubsystemCapability]

    @property
    def available(self) -> bool:
        ...

    async def process(self, request: Request, deadline: Deadline) -> SubsystemPayload:
        ...


class CallableSubsystemAdapter:
    """Adapter wrapping a plain coroutine function."""

    def __init__(
        self,
        kind: SubsystemKind,
        handler: Callable[[Request, Deadline], Awaitable[SubsystemPayload]],
        *,
        capabilities: Iterable[SubsystemCapability] | None = None,
        available: bool = True,
    ) -> None:
        self.kind = SubsystemKind(kind)
        self.capabilities = (
            frozenset(capabilities) if capabilities is not None else REQUIRED_CAPABILITIES[self.kind]
        )
        self._handler = handler
        self._available = available

    @property
    def available(self) -> bool:
        return self._available

    def set_available(self, value: bool) -> None:
        self._available = bool(value)

    async def process(self, request: Request, deadline: Deadline) -> SubsystemPayload:
        return await self._handler(request, deadline)

    def __repr__(self) -> str:
        return f"CallableSubsystemAdapter(kind={self.kind.value!r}, available={self._available})"


def missing_capabilities(adapter: SubsystemAdapter) -> frozenset[SubsystemCapability]:
    required = REQUIRED_CAPABILITIES.get(adapter.kind, frozenset())
    return required - frozenset(adapter.capabilities)


__all__ = [
    "CallableSubsystemAdapter",
    "Deadline",
    "REQUIRED_CAPABILITIES",
    "SubsystemAdapter",
    "SubsystemPayload",
    "missing_capabilities",
]
