"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import WorkItem
from .base import BaseTransport

RawItem = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawItem]):
    """Simple in-process queue. Raw messages are ``(topic, json)`` pairs."""

    def __init__(self, poll_delay: float = 0.05) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_delay = poll_delay

    async def publish(self, topic: str, item: WorkItem) -> None:
        async with self._lock:
            self._queues[topic].append(item.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawItem, WorkItem]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            async with self._lock:
                payload = self._queues[topic].popleft() if self._queues[topic] else None
            if payload is None:
                await asyncio.sleep(self._poll_delay)
                continue
            yield (topic, payload), WorkItem.from_json(payload)

    async def ack(self, raw_message: RawItem) -> None:
        """No-op acknowledgment; the item was removed when delivered."""
        pass

    async def nack(self, raw_message: RawItem, requeue: bool = True) -> None:
        if not requeue:
            return
        topic, payload = raw_message
        async with self._lock:
            self._queues[topic].append(payload)

    def pending(self, topic: str) -> list[WorkItem]:
        """Items waiting on ``topic`` without consuming them."""
        return [WorkItem.from_json(payload) for payload in self._queues[topic]]

    async def drain(self, topic: str) -> list[WorkItem]:
        """Remove and return every item waiting on ``topic``."""
        async with self._lock:
            payloads = list(self._queues[topic])
            self._queues[topic].clear()
        return [WorkItem.from_json(payload) for payload in payloads]
