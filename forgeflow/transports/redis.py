"""Redis transport for cross-process work queues."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import WorkItem
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawItem = Tuple[str, str]


class RedisTransport(BaseTransport[RawItem]):
    """Redis list used as a FIFO queue (``LPUSH`` / ``BRPOP``)."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "forgeflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, item: WorkItem) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), item.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawItem, WorkItem]]:
        if not self._redis:
            await self.connect()

        queue_name = self._queue(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue
            _, payload = result
            try:
                item = WorkItem.from_json(payload)
            except ValidationError as e:
                logger.error(f"Dropping malformed work item on {queue_name}: {e}")
                continue
            yield (topic, payload), item

    async def ack(self, raw_message: RawItem) -> None:
        """No-op acknowledgment (message already popped)."""
        pass

    async def nack(self, raw_message: RawItem, requeue: bool = True) -> None:
        if not requeue:
            return
        if not self._redis:
            await self.connect()
        topic, payload = raw_message
        await self._redis.lpush(self._queue(topic), payload)
