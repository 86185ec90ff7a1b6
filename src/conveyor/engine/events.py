"""In-process event broadcast for run lifecycle notifications."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


class EventBus:
    """In-memory publish/subscribe event bus.

    Subscribers receive events via asyncio.Queue instances. A subscriber that
    falls behind loses events rather than slowing down the runner.
    """

    EVENT_TYPES = {
        "run.created",
        "step.appended",
        "run.finalized",
    }

    def __init__(self, maxsize: int = 256) -> None:
        self._subscribers: set[asyncio.Queue] = set()
        self._maxsize = maxsize

    def subscribe(self) -> asyncio.Queue:
        """Return a fresh bounded queue that receives every later event.

        Pair each call with ``unsubscribe``.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.add(queue)
        logger.debug("Event subscriber added (%d active)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, event_type: str, data: dict[str, Any]) -> None:
        """Push an event into every subscriber queue without awaiting."""
        if event_type not in self.EVENT_TYPES:
            logger.warning("Publishing unregistered event type '%s'", event_type)

        event = {
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        }

        dropped = 0
        for queue in tuple(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dropped += 1
        if dropped:
            logger.debug("Event %s dropped for %d full subscriber queue(s)", event_type, dropped)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
