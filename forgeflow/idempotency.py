"""At-most-one active run per (definition, idempotency key)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from .persistence import WorkflowRepository, WorkflowRun, utcnow

logger = logging.getLogger(__name__)


class Acquisition(BaseModel):
    """Result of :meth:`IdempotencyGuard.acquire`."""

    run: WorkflowRun
    created: bool


class IdempotencyGuard:
    """Maps a logical operation key to a single workflow run.

    Acquisition is one storage transaction (check then insert), so two
    concurrent triggers for the same key can never both create a run.
    A key whose latest run failed may start a new run.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock

    async def acquire(
        self, definition_name: str, idempotency_key: str, input: Dict[str, Any]
    ) -> Acquisition:
        run, created = await self._repository.acquire_run(
            definition_name, idempotency_key, input, self._clock()
        )
        if created:
            logger.info(
                f"Created run {run.run_id} for {definition_name} key={idempotency_key}"
            )
        else:
            logger.warning(
                f"Duplicate trigger for {definition_name} key={idempotency_key}; "
                f"existing run {run.run_id} is {run.status.value}"
            )
        return Acquisition(run=run, created=created)

    async def lookup(
        self, definition_name: str, idempotency_key: str
    ) -> Optional[WorkflowRun]:
        """Most recent run for the key, if any."""
        return await self._repository.get_run_by_key(definition_name, idempotency_key)
