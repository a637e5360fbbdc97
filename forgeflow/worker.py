"""Worker process: consumes work items and advances runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .contracts import WorkItem
from .dispatch import WORK_TOPIC
from .orchestrator import WorkflowOrchestrator
from .scheduler import SleepScheduler
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class WorkflowWorker:
    """Runs ``concurrency`` consumers on the work topic plus the timer loop.

    Each work item is one orchestrator pass. A pass that raises (storage
    unavailable, for instance) is re-published for another delivery; after
    ``max_deliveries`` the item is dropped and the stale sweep picks the run
    up later.
    """

    def __init__(
        self,
        transport: BaseTransport,
        orchestrator: WorkflowOrchestrator,
        scheduler: Optional[SleepScheduler] = None,
        concurrency: int = 4,
        poll_interval: float = 5.0,
        topic: str = WORK_TOPIC,
        max_deliveries: int = 5,
    ) -> None:
        self._transport = transport
        self._orchestrator = orchestrator
        self._scheduler = scheduler
        self._concurrency = max(1, concurrency)
        self._poll_interval = poll_interval
        self._topic = topic
        self._max_deliveries = max_deliveries

    async def handle(self, raw_message: Any, item: WorkItem) -> None:
        """Advance the run named by ``item`` and settle the message."""
        try:
            await self._orchestrator.advance(item.run_id)
        except Exception:
            logger.exception(
                f"Advancing run {item.run_id} failed "
                f"(delivery {item.delivery_attempt}/{self._max_deliveries})"
            )
            await self._transport.nack(raw_message, requeue=False)
            if item.delivery_attempt < self._max_deliveries:
                await self._transport.publish(self._topic, item.redelivery())
            else:
                logger.error(
                    f"Dropping work item {item.message_id} for run {item.run_id}; "
                    "the stale sweep will recover it"
                )
            return
        await self._transport.ack(raw_message)

    async def _consume(self, lifespan: Optional[float]) -> None:
        async for raw_message, item in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            await self.handle(raw_message, item)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume until ``lifespan`` seconds elapse (forever when ``None``)."""
        logger.info(
            f"Worker started on {self._topic} with {self._concurrency} consumers"
        )
        tasks = [self._consume(lifespan) for _ in range(self._concurrency)]
        if self._scheduler is not None:
            tasks.append(
                self._scheduler.run(poll_interval=self._poll_interval, lifespan=lifespan)
            )
        try:
            await asyncio.gather(*tasks)
        finally:
            await self._transport.disconnect()
            logger.info("Worker stopped")
