from __future__ import annotations

import asyncio


class CancellationToken:
    """Cooperative cancellation signal threaded through ``Orchestrator.execute``.

    The transport layer calls :meth:`cancel` (for example on client disconnect);
    the orchestrator stops outstanding calls and returns what already completed.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


__all__ = ["CancellationToken"]
