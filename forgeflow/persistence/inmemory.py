"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import (
    RunStatus,
    SleepTimer,
    StepRecord,
    StepStatus,
    WorkflowRun,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Objects are copied on the way in
    and out so callers never mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._steps: List[StepRecord] = []
        self._timers: List[SleepTimer] = []
        self._step_id = 0
        self._timer_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def acquire_run(
        self, definition_name: str, idempotency_key: str, input: dict, now: datetime
    ) -> tuple[WorkflowRun, bool]:
        async with self._lock:
            for run in reversed(list(self._runs.values())):
                if (
                    run.definition_name == definition_name
                    and run.idempotency_key == idempotency_key
                    and run.status != RunStatus.FAILED
                ):
                    return run.model_copy(deep=True), False
            run = WorkflowRun(
                definition_name=definition_name,
                idempotency_key=idempotency_key,
                input=input,
                created_at=now,
                updated_at=now,
            )
            self._runs[run.run_id] = run
            return run.model_copy(deep=True), True

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def get_run_by_key(
        self, definition_name: str, idempotency_key: str
    ) -> WorkflowRun | None:
        for run in reversed(list(self._runs.values())):
            if (
                run.definition_name == definition_name
                and run.idempotency_key == idempotency_key
            ):
                return run.model_copy(deep=True)
        return None

    async def list_runs(
        self, status: Optional[RunStatus] = None, include_archived: bool = False
    ) -> list[WorkflowRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if (status is None or run.status == status)
            and (include_archived or not run.archived)
        ]

    async def claim_run(
        self,
        run_id: str,
        from_statuses: tuple[RunStatus, ...],
        now: datetime,
        stale_before: Optional[datetime] = None,
    ) -> WorkflowRun | None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            stale = (
                stale_before is not None
                and run.status == RunStatus.RUNNING
                and run.updated_at < stale_before
            )
            if run.status not in from_statuses and not stale:
                return None
            run.status = RunStatus.RUNNING
            run.updated_at = now
            return run.model_copy(deep=True)

    async def release_run(self, run_id: str, now: datetime) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status != RunStatus.RUNNING:
                return False
            run.status = RunStatus.PENDING
            run.updated_at = now
            return True

    async def save_run(self, run: WorkflowRun) -> None:
        async with self._lock:
            if run.run_id in self._runs:
                self._runs[run.run_id] = run.model_copy(deep=True)

    async def suspend_run(self, run: WorkflowRun, timer: SleepTimer) -> SleepTimer:
        async with self._lock:
            self._timer_id += 1
            stored = timer.model_copy(update={"id": self._timer_id}, deep=True)
            self._timers.append(stored)
            run.status = RunStatus.SLEEPING
            self._runs[run.run_id] = run.model_copy(deep=True)
            return stored.model_copy(deep=True)

    async def archive_run(self, run_id: str) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or not run.status.is_terminal:
                return False
            run.archived = True
            return True

    async def list_stale_runs(self, stale_before: datetime) -> list[WorkflowRun]:
        stale: list[WorkflowRun] = []
        for run in self._runs.values():
            if run.updated_at >= stale_before:
                continue
            if run.status in (RunStatus.PENDING, RunStatus.RUNNING):
                stale.append(run.model_copy(deep=True))
            elif run.status == RunStatus.SLEEPING and not any(
                t.run_id == run.run_id and not t.consumed for t in self._timers
            ):
                stale.append(run.model_copy(deep=True))
        return stale

    # ------------------------------------------------------------------
    async def start_step(
        self,
        run_id: str,
        step_index: int,
        step_name: str,
        attempt: int,
        started_at: datetime,
    ) -> StepRecord:
        async with self._lock:
            self._step_id += 1
            record = StepRecord(
                id=self._step_id,
                run_id=run_id,
                step_index=step_index,
                step_name=step_name,
                attempt=attempt,
                status=StepStatus.RUNNING,
                started_at=started_at,
            )
            self._steps.append(record)
            return record.model_copy(deep=True)

    async def finish_step(
        self,
        record_id: int,
        status: StepStatus,
        finished_at: datetime,
        output: Any = None,
        error: dict | None = None,
    ) -> StepRecord | None:
        async with self._lock:
            for record in self._steps:
                if record.id == record_id:
                    if record.status != StepStatus.RUNNING:
                        return None
                    record.status = status
                    record.finished_at = finished_at
                    record.output = output if status == StepStatus.SUCCEEDED else None
                    record.error = error
                    return record.model_copy(deep=True)
        return None

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        return [r.model_copy(deep=True) for r in self._steps if r.run_id == run_id]

    async def latest_timer(self, run_id: str, step_index: int) -> SleepTimer | None:
        for timer in reversed(self._timers):
            if timer.run_id == run_id and timer.step_index == step_index:
                return timer.model_copy(deep=True)
        return None

    async def list_timers(self, run_id: str) -> list[SleepTimer]:
        return [t.model_copy(deep=True) for t in self._timers if t.run_id == run_id]

    async def claim_due_timers(self, now: datetime, limit: int = 100) -> list[SleepTimer]:
        async with self._lock:
            due = sorted(
                (t for t in self._timers if not t.consumed and t.wake_at <= now),
                key=lambda t: t.wake_at,
            )[:limit]
            for timer in due:
                timer.consumed = True
            return [t.model_copy(deep=True) for t in due]
