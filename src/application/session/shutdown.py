"""Graceful shutdown - flush checkpoints of active sessions before exit."""

import asyncio
import signal
import sys
from collections.abc import Callable

import structlog

from src.application.session.manager import SessionManager

log = structlog.get_logger()


class ShutdownHandler:
    """Routes termination signals and unhandled errors to one checkpoint flush.

    handle_shutdown() is idempotent: the first trigger runs the flush, later
    triggers wait for it. Under uvicorn the FastAPI lifespan calls
    handle_shutdown() directly and install() is not needed.
    """

    def __init__(
        self,
        manager: SessionManager,
        *,
        timeout: float = 10.0,
        on_complete: Callable[[int], None] | None = None,
    ) -> None:
        self._manager = manager
        self._timeout = timeout
        self._on_complete = on_complete
        self._task: asyncio.Task[int] | None = None
        self._previous_excepthook = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def is_shutting_down(self) -> bool:
        return self._task is not None

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Register SIGTERM/SIGINT, sys.excepthook and the loop exception handler."""
        loop = loop or asyncio.get_running_loop()
        self._loop = loop
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._trigger, sig.name)
            except (NotImplementedError, RuntimeError):
                # Windows event loops and non-main threads have no signal handlers
                log.debug("signal_handler_unsupported", signal=sig.name)
        loop.set_exception_handler(self._loop_exception_handler)
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook

    def uninstall(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        loop.set_exception_handler(None)
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    async def handle_shutdown(self, reason: str) -> int:
        """Flush checkpoints once. Returns 0 on success, 1 if anything failed."""
        if self._task is None:
            self._task = asyncio.ensure_future(self._shutdown(reason))
        else:
            log.info("shutdown_already_in_progress", reason=reason)
        return await asyncio.shield(self._task)

    async def _shutdown(self, reason: str) -> int:
        log.info("shutdown_flush_begin", reason=reason)
        try:
            results = await self._manager.shutdown(self._timeout)
        except Exception:
            log.exception("shutdown_flush_failed")
            code = 1
        else:
            failed = sorted(sid for sid, ok in results.items() if not ok)
            if failed:
                log.error("shutdown_flush_incomplete", failed_sessions=failed)
            code = 1 if failed else 0
            log.info("shutdown_flush_complete", saved=len(results) - len(failed), failed=len(failed))
        if self._on_complete is not None:
            self._on_complete(code)
        return code

    def _trigger(self, reason: str) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._shutdown(reason))

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        log.error("unhandled_task_exception", message=context.get("message"), exc_info=exc)
        self._trigger("unhandled task exception")

    def _excepthook(self, exc_type, exc, tb) -> None:
        log.error("uncaught_exception", exc_info=(exc_type, exc, tb))
        if self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc, tb)
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._trigger, "uncaught exception")
