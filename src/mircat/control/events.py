"""
Event feed for the control surface.

Keeps a ring buffer of recent events for polling and fans every new event
out to live subscribers (the WebSocket endpoint). A subscriber that falls
behind loses its oldest events rather than slowing the relay down.
"""

import asyncio
import itertools
from collections import deque

from mircat.models.api import RelayEvent
from mircat.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_HISTORY = 256
DEFAULT_SUBSCRIBER_QUEUE = 256


class EventBus:
    """Publish/subscribe hub for RelayEvent."""

    def __init__(
        self,
        history: int = DEFAULT_HISTORY,
        subscriber_queue: int = DEFAULT_SUBSCRIBER_QUEUE,
    ):
        self._history: deque[RelayEvent] = deque(maxlen=history)
        self._subscribers: set[asyncio.Queue] = set()
        self._subscriber_queue = subscriber_queue
        self._seq = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(
        self,
        kind: str,
        message: str = "",
        session_id: int | None = None,
        role: str | None = None,
        **fields,
    ) -> RelayEvent:
        """
        Record an event and fan it out.

        ``fields`` fill the optional RelayEvent fields (the traffic tap sets
        direction, size, data and truncated).
        """
        event = RelayEvent(
            seq=next(self._seq),
            kind=kind,
            role=role,
            message=message,
            session_id=session_id,
            **fields,
        )
        self._history.append(event)
        logger.debug(f"[Events] {kind}: {message}")

        for queue in self._subscribers:
            if queue.full():
                # Slow subscriber: drop its oldest event
                queue.get_nowait()
            queue.put_nowait(event)
        return event

    def recent(self, limit: int | None = None) -> list[RelayEvent]:
        events = list(self._history)
        if limit is not None and limit >= 0:
            events = events[-limit:] if limit else []
        return events

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._subscriber_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)
