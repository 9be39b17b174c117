"""Fire-and-forget broadcast of conversation events to in-process subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Protocol

from chatbridge.utils import utc_now

logger = logging.getLogger(__name__)

MESSAGE_UPDATED = "message-updated"
NEW_MESSAGE = "new-message"
CONVERSATION_STATE_UPDATED = "conversation-state-updated"

Event = tuple[str, dict[str, Any]]


class Publisher(Protocol):
    def publish(self, conversation_id: str, event: str, payload: dict[str, Any]) -> None: ...


class BroadcastPublisher:
    """Topic-per-conversation fan-out with bounded per-subscriber queues.

    `publish` never blocks and never raises: a topic with no subscribers is a
    no-op and a full subscriber queue drops the event.
    """

    def __init__(self, *, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[Event]]] = defaultdict(set)

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscribers.get(conversation_id, ()))

    def publish(self, conversation_id: str, event: str, payload: dict[str, Any]) -> None:
        envelope = {"event": event, "timestamp": utc_now().isoformat(), **payload}
        for queue in list(self._subscribers.get(conversation_id, ())):
            try:
                queue.put_nowait((event, envelope))
            except asyncio.QueueFull:
                logger.warning("publish_dropped: conversation=%s event=%s (subscriber queue full)", conversation_id, event)

    @asynccontextmanager
    async def subscribe(self, conversation_id: str) -> AsyncIterator[asyncio.Queue[Event]]:
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[conversation_id].add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(conversation_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[conversation_id]

