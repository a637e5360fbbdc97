"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SLEEPING = "sleeping"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class StepStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"


class TimerKind(str, Enum):
    SLEEP = "sleep"
    RETRY = "retry"


class RunError(BaseModel):
    """Terminal error persisted on a failed run."""

    code: str
    message: str
    step_name: Optional[str] = None
    attempt: Optional[int] = None


class WorkflowRun(BaseModel):
    """One execution instance of a workflow definition."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    definition_name: str
    idempotency_key: str
    input: dict[str, Any] = Field(default_factory=dict)
    current_step: int = 0
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    error: Optional[RunError] = None
    result: Optional[Any] = None
    archived: bool = False


class StepRecord(BaseModel):
    """Outcome of a single attempt at a workflow step."""

    id: Optional[int] = None
    run_id: str
    step_index: int
    step_name: str
    attempt: int = 1
    status: StepStatus = StepStatus.RUNNING
    output: Optional[Any] = None
    error: Optional[dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class SleepTimer(BaseModel):
    """Durable wake-up request for a sleeping run."""

    id: Optional[int] = None
    run_id: str
    step_index: int
    kind: TimerKind = TimerKind.SLEEP
    wake_at: datetime
    consumed: bool = False
    created_at: datetime = Field(default_factory=utcnow)
