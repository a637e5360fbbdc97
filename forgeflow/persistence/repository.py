"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from .models import RunStatus, SleepTimer, StepRecord, StepStatus, WorkflowRun


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Every method is a single transaction against the backing store. Methods
    that decide ownership (``acquire_run``, ``claim_run``,
    ``claim_due_timers``) must be atomic across concurrent callers.
    """

    async def acquire_run(
        self, definition_name: str, idempotency_key: str, input: dict, now: datetime
    ) -> tuple[WorkflowRun, bool]:
        """Return the active or completed run for the key, or create one.

        The boolean is ``True`` when a new run was inserted.
        """

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def get_run_by_key(
        self, definition_name: str, idempotency_key: str
    ) -> WorkflowRun | None:
        """Return the most recently created run for the key."""

    async def list_runs(
        self, status: Optional[RunStatus] = None, include_archived: bool = False
    ) -> list[WorkflowRun]:
        """Return persisted runs, oldest first."""

    async def claim_run(
        self,
        run_id: str,
        from_statuses: tuple[RunStatus, ...],
        now: datetime,
        stale_before: Optional[datetime] = None,
    ) -> WorkflowRun | None:
        """Compare-and-swap the run into ``running``.

        Succeeds when the run is in one of ``from_statuses`` or, when
        ``stale_before`` is given, is ``running`` with ``updated_at`` older
        than it. Returns ``None`` when another worker owns the run.
        """

    async def release_run(self, run_id: str, now: datetime) -> bool:
        """Hand a claimed run back as ``pending`` so it can be claimed again.

        Only a run still in ``running`` is changed. Returns ``True`` when the
        claim was released.
        """

    async def save_run(self, run: WorkflowRun) -> None:
        """Persist progress, status, error and result of a run."""

    async def suspend_run(self, run: WorkflowRun, timer: SleepTimer) -> SleepTimer:
        """Mark the run sleeping and persist ``timer`` in one transaction."""

    async def archive_run(self, run_id: str) -> bool:
        """Flag a terminal run as archived. Returns ``False`` otherwise."""

    async def list_stale_runs(self, stale_before: datetime) -> list[WorkflowRun]:
        """Runs needing a fresh dispatch after a crash or a lost resume."""

    async def start_step(
        self,
        run_id: str,
        step_index: int,
        step_name: str,
        attempt: int,
        started_at: datetime,
    ) -> StepRecord:
        """Insert a ``running`` record for a step attempt."""

    async def finish_step(
        self,
        record_id: int,
        status: StepStatus,
        finished_at: datetime,
        output: Any = None,
        error: dict | None = None,
    ) -> StepRecord | None:
        """Close a ``running`` record. Closed records are never modified."""

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        """All step records of a run in insertion order."""

    async def latest_timer(self, run_id: str, step_index: int) -> SleepTimer | None:
        """Most recent timer scheduled for the given step."""

    async def list_timers(self, run_id: str) -> list[SleepTimer]:
        """All timers of a run in insertion order."""

    async def claim_due_timers(self, now: datetime, limit: int = 100) -> list[SleepTimer]:
        """Atomically mark due, unconsumed timers consumed and return them."""
