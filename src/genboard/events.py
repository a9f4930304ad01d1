# src/genboard/events.py

"""
Live-update fan-out.

Each long-lived event-stream connection owns a bounded queue. broadcast()
encodes the event once and offers it to every queue without waiting; a
subscriber whose queue is full or closed is dropped. Clients that reconnect
re-fetch full state, nothing is replayed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SSE_RETRY_MS = 2000


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


@dataclass(slots=True, eq=False)
class Subscription:
    queue: asyncio.Queue[str]
    closed: bool = False

    async def next_message(self) -> str:
        return await self.queue.get()


class EventBus:
    def __init__(self, *, max_queue: int = 256) -> None:
        self._max_queue = max(1, int(max_queue))
        self._subscribers: set[Subscription] = set()

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(queue=asyncio.Queue(maxsize=self._max_queue))
        self._subscribers.add(sub)
        logger.debug("Subscriber added total=%d", len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.closed = True
        self._subscribers.discard(sub)
        logger.debug("Subscriber removed total=%d", len(self._subscribers))

    def _offer(self, sub: Subscription, message: str) -> bool:
        if sub.closed:
            self._subscribers.discard(sub)
            return False
        try:
            sub.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            logger.info("Dropping slow event subscriber")
            self.unsubscribe(sub)
            return False

    def broadcast(self, event: str, data: Any) -> None:
        if not self._subscribers:
            return
        message = format_sse(event, data)
        for sub in list(self._subscribers):
            self._offer(sub, message)
