"""Per-session push channel carrying full session snapshots.

Subscribers get a bounded queue. When a slow subscriber's queue is full
the oldest pending event is dropped; since every event carries a full
snapshot, the newest one alone is enough to catch up.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

RESPONSE_UPDATE = "response-update"


@dataclass
class SessionEvent:
    name: str
    session_id: str
    data: dict[str, Any]


class EventHub:
    def __init__(self, max_queue: int = 100) -> None:
        self._max_queue = max_queue
        self._subscribers: dict[str, set[asyncio.Queue[SessionEvent]]] = {}

    def subscribe(self, session_id: str) -> asyncio.Queue[SessionEvent]:
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.setdefault(session_id, set()).add(queue)
        logger.debug("Subscriber added for session %s", session_id)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[SessionEvent]) -> None:
        queues = self._subscribers.get(session_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[session_id]

    @asynccontextmanager
    async def subscription(self, session_id: str) -> AsyncIterator[asyncio.Queue[SessionEvent]]:
        queue = self.subscribe(session_id)
        try:
            yield queue
        finally:
            self.unsubscribe(session_id, queue)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def emit(self, session_id: str, name: str, data: dict[str, Any]) -> int:
        """Deliver an event to every subscriber of the session. Returns how many got it."""
        queues = self._subscribers.get(session_id)
        if not queues:
            return 0
        event = SessionEvent(name=name, session_id=session_id, data=data)
        for queue in queues:
            if queue.full():
                queue.get_nowait()
                logger.debug("Dropped oldest event for a slow subscriber of session %s", session_id)
            queue.put_nowait(event)
        return len(queues)
