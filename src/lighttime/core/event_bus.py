"""In-memory publish channel: subscribers receive payloads via asyncio.Queue.

Publishing is fire-and-forget. A subscriber whose queue is full is dropped
rather than blocking the publisher; there is no replay or backlog.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

logger = logging.getLogger(__name__)

EVENTS_UPDATE_TOPIC = "calendar-events-update"
PROVIDER_STATUS_TOPIC = "calendar-provider-status"

SUBSCRIBER_QUEUE_SIZE = 256


class EventBus:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[topic].append(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(topic, [])
        if queue in subscribers:
            subscribers.remove(queue)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    def publish(self, topic: str, payload: Any) -> int:
        """Push *payload* to every subscriber of *topic*; returns deliveries made."""
        delivered = 0
        dead: list[asyncio.Queue] = []
        for queue in self._subscribers.get(topic, []):
            try:
                queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                dead.append(queue)
        for queue in dead:
            logger.warning("Dropping slow subscriber on %s (queue full)", topic)
            self._subscribers[topic].remove(queue)
        return delivered
