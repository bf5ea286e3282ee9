"""Cooperative cancellation handle shared by a run and its stream loop."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """One-shot cancellation flag.

    Stream loops poll ``cancelled`` once per wire event; ``wait()`` lets a
    coroutine block until cancellation is requested.
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> bool:
        """Request cancellation. Returns False if already requested."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()
