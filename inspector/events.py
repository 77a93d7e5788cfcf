"""Server-Sent-Events fan-out for file change notifications."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

logger = logging.getLogger("inspector.events")


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class EventBroker:
    """Broadcasts events to every connected subscriber queue."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = max(1, queue_size)
        self._subscribers: set[asyncio.Queue[str]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: str, data: Any) -> int:
        """Queue an event for all subscribers; returns how many received it."""
        message = format_sse(event, data)
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Dropping SSE event for a slow subscriber")
        return delivered

    async def stream(self, queue: asyncio.Queue[str]) -> AsyncIterator[str]:
        try:
            yield format_sse("connected", "ok")
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(queue)
