"""Fan-out of turn events (``chat-message`` / ``stream-error``) to listeners."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    name: str
    payload: str


def format_sse(event: Event) -> str:
    """Render one Server-Sent-Events frame; the payload is JSON-encoded."""
    return f"event: {event.name}\ndata: {json.dumps(event.payload, ensure_ascii=False)}\n\n"


class EventBroadcaster:
    """Push events to every subscriber without blocking the producer.

    Each subscriber gets its own bounded queue; when a slow subscriber's queue
    is full the event is dropped for that subscriber only.
    """

    def __init__(self, max_queue: int = 1024) -> None:
        self.max_queue = max_queue
        self._queues: Set[asyncio.Queue] = set()

    @property
    def subscribers(self) -> int:
        return len(self._queues)

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._queues.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._queues.discard(q)

    def emit(self, event: str, payload: str) -> None:
        ev = Event(event, payload)
        for q in list(self._queues):
            try:
                q.put_nowait(ev)
            except asyncio.QueueFull:
                logger.warning("event queue full; dropping %s for one subscriber", event)

    async def listen(self, q: Optional[asyncio.Queue] = None) -> AsyncIterator[Event]:
        """Yield events until the consumer stops iterating."""
        q = q or self.subscribe()
        try:
            while True:
                yield await q.get()
        finally:
            self.unsubscribe(q)


class RecordingSink:
    """Sink that keeps every event in memory; handy for scripts and tests."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    def emit(self, event: str, payload: str) -> None:
        self.events.append(Event(event, payload))

    def payloads(self, name: str) -> List[str]:
        return [e.payload for e in self.events if e.name == name]
