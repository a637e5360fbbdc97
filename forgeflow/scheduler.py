"""Durable timers: parking sleeping runs and waking them when due."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from .persistence import SleepTimer, TimerKind, WorkflowRepository, WorkflowRun, utcnow

if TYPE_CHECKING:
    from .dispatch import EventDispatcher

logger = logging.getLogger(__name__)


class SleepScheduler:
    """Persists wake-up timers and resumes runs once they are due.

    Timers live in the state store, so a sleep survives restarts and no
    worker is held while a run waits. Resumes go back through the
    dispatcher with a freshly issued internal token.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        dispatcher: Optional["EventDispatcher"] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 100,
        stale_after: float = 600.0,
    ) -> None:
        self._repository = repository
        self.dispatcher = dispatcher
        self._clock = clock
        self._batch_size = batch_size
        self._stale_after = stale_after

    async def schedule(
        self,
        run: WorkflowRun,
        step_index: int,
        wake_at: datetime,
        kind: TimerKind = TimerKind.SLEEP,
    ) -> SleepTimer:
        """Put ``run`` to sleep until ``wake_at`` (one transaction)."""
        timer = SleepTimer(
            run_id=run.run_id,
            step_index=step_index,
            kind=kind,
            wake_at=wake_at,
            created_at=self._clock(),
        )
        stored = await self._repository.suspend_run(run, timer)
        logger.info(
            f"Run {run.run_id} sleeping until {wake_at.isoformat()} "
            f"({kind.value} timer for step {step_index})"
        )
        return stored

    async def poll_due(self) -> list[str]:
        """Claim due timers and return the ids of the runs to wake."""
        timers = await self._repository.claim_due_timers(
            self._clock(), limit=self._batch_size
        )
        run_ids: list[str] = []
        for timer in timers:
            if timer.run_id not in run_ids:
                run_ids.append(timer.run_id)
        return run_ids

    async def fire_due(self) -> list[str]:
        """Wake every run whose timer is due."""
        run_ids = await self.poll_due()
        for run_id in run_ids:
            await self._wake(run_id, "timer due")
        return run_ids

    async def sweep_stale(self) -> list[str]:
        """Re-dispatch runs left behind by a crash or a lost resume."""
        stale_before = self._clock() - timedelta(seconds=self._stale_after)
        runs = await self._repository.list_stale_runs(stale_before)
        for run in runs:
            await self._wake(run.run_id, f"stale {run.status.value} run")
        return [run.run_id for run in runs]

    async def _wake(self, run_id: str, reason: str) -> None:
        if self.dispatcher is None:
            raise RuntimeError("SleepScheduler has no dispatcher attached")
        logger.info(f"Resuming run {run_id}: {reason}")
        await self.dispatcher.wake(run_id)

    async def run(
        self, poll_interval: float = 5.0, lifespan: Optional[float] = None
    ) -> None:
        """Fire due timers and sweep stale runs until ``lifespan`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            try:
                await self.fire_due()
                await self.sweep_stale()
            except Exception:
                logger.exception("Timer poll failed; retrying on next interval")
            delay = poll_interval
            if deadline is not None:
                delay = max(0.0, min(delay, deadline - loop.time()))
            await asyncio.sleep(delay)
