"""Event broadcasting for session and delivery lifecycle.

EventBroadcaster fans out events to any number of asyncio queue
subscribers. SessionManager publishes state changes through one;
DispatchQueue subscribes to learn when the session becomes Ready.
Each owner constructs its own broadcaster (no module-level instance).
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any

logger = logging.getLogger(__name__)

_DEFAULT_MAXSIZE = 500


class EventBroadcaster:
    """Fans out events to all subscribed queues."""

    def __init__(self, maxsize: int = _DEFAULT_MAXSIZE) -> None:
        self._maxsize = maxsize
        self._subscribers: dict[str, asyncio.Queue] = {}

    def subscribe(self) -> tuple[str, asyncio.Queue]:
        """Register a new subscriber. Returns (subscriber_id, queue)."""
        sub_id = str(uuid.uuid4())[:8]
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers[sub_id] = queue
        logger.debug("Event subscriber connected: %s (total: %d)", sub_id, len(self._subscribers))
        return sub_id, queue

    def unsubscribe(self, sub_id: str) -> None:
        """Remove a subscriber."""
        self._subscribers.pop(sub_id, None)
        logger.debug("Event subscriber disconnected: %s (total: %d)", sub_id, len(self._subscribers))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcast(self, event: dict[str, Any]) -> None:
        """Send an event to all subscribers (non-blocking)."""
        event["timestamp"] = time.time()
        for queue in list(self._subscribers.values()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest event to make room
                try:
                    queue.get_nowait()
                    queue.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass
