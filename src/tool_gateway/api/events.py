"""In-memory gateway event pub/sub feeding SSE sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

logger = logging.getLogger(__name__)

# Event type constants
EVENT_PROVIDER_STATE = "provider_state"
EVENT_TOOLS_CHANGED = "tools_changed"


class EventBus:
    """Broadcasts gateway events to subscriber queues.

    There is no history: a late subscriber learns the current state from a
    capability snapshot, not by replaying past events. Delivery is
    best-effort; a subscriber whose queue is full misses the event.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._subscribers: list[asyncio.Queue[dict[str, Any]]] = []
        self._queue_size = queue_size
        self.dropped = 0

    def emit(self, event: dict[str, Any]) -> None:
        """Stamp an event with a timestamp and push it to every subscriber."""
        event = {**event, "timestamp": time.time()}
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.debug(f"Dropped {event.get('event')} event for a slow subscriber")

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        """Remove a subscriber queue. Idempotent."""
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
