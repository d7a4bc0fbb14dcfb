"""Per-session event fan-out with bounded subscriber queues."""

import asyncio
import logging
from collections.abc import AsyncIterator

from src.domain.entities.workflow_events import WorkflowEvent

logger = logging.getLogger(__name__)


class EventSubscription:
    """Async iterator over one subscriber's events.

    Iteration ends after the workflow-complete event or when the
    subscription is closed.
    """

    def __init__(self, channel: "EventChannel", maxsize: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[WorkflowEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._closed = False

    def push(self, event: WorkflowEvent | None) -> None:
        """Enqueue without blocking. Drops the oldest event when full."""
        if self._closed:
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                logger.warning(
                    "Event queue full for session %s, dropped oldest event",
                    self._channel.session_id,
                )

    def close(self) -> None:
        if self._closed:
            return
        self.push(None)
        self._closed = True
        self._channel.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[WorkflowEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[WorkflowEvent]:
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    return
                yield event
                if event.is_terminal:
                    return
        finally:
            self._closed = True
            self._channel.unsubscribe(self)


class EventChannel:
    """Ordered event stream of one session, fanned out to subscribers."""

    def __init__(self, session_id: str, maxsize: int = 1000) -> None:
        self.session_id = session_id
        self._maxsize = maxsize
        self._subscribers: list[EventSubscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> EventSubscription:
        sub = EventSubscription(self, self._maxsize)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: EventSubscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, event: WorkflowEvent) -> None:
        for sub in list(self._subscribers):
            sub.push(event)

    def close(self) -> None:
        """End every open subscription."""
        for sub in list(self._subscribers):
            sub.close()
