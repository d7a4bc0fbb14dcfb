"""Cooperative cancellation for workflow runs."""

import asyncio


class WorkflowCancelled(Exception):
    """Raised inside a run when its cancellation token fires."""


class CancellationToken:
    """One-shot cancellation signal threaded into every Agent Runner call.

    The underlying asyncio.Event is created lazily so a token can be built
    outside a running loop (e.g. in a dataclass default).
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self.reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise WorkflowCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        """Block until cancelled."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()
