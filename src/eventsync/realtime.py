"""In-process change notifications for events and announcements.

Subscribers receive ``ChangeMessage`` objects through bounded asyncio queues.
A subscriber whose queue is full is dropped; it reconnects and reloads.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from eventsync.sync.types import EntityType

logger = logging.getLogger(__name__)

EVENT_CHANGES = "event-changes"
ANNOUNCEMENT_CHANGES = "announcement-changes"

CHANNELS = {
    EntityType.EVENT: EVENT_CHANGES,
    EntityType.ANNOUNCEMENT: ANNOUNCEMENT_CHANGES,
}

_QUEUE_SIZE = 256


@dataclass(frozen=True)
class ChangeMessage:
    channel: str
    type: str
    ids: list[str]
    timestamp: int  # epoch milliseconds

    def payload(self) -> dict:
        return {"type": self.type, "ids": self.ids, "timestamp": self.timestamp}


class EventChangeBroadcaster:
    def __init__(self, queue_size: int = _QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: list[asyncio.Queue[ChangeMessage]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[ChangeMessage]:
        queue: asyncio.Queue[ChangeMessage] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChangeMessage]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, entity_type: EntityType | str, kind: str, ids: list[str]) -> None:
        """Push a ``{type, ids, timestamp}`` message to every subscriber."""
        channel = CHANNELS.get(EntityType(entity_type), EVENT_CHANGES)
        message = ChangeMessage(
            channel=channel, type=str(kind), ids=list(ids), timestamp=int(time.time() * 1000)
        )
        dead: list[asyncio.Queue[ChangeMessage]] = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                dead.append(queue)
        for queue in dead:
            logger.warning("Dropping slow change subscriber on %s", channel)
            self._subscribers.remove(queue)
