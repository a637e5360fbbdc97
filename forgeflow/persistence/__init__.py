"""Durable state for workflow runs, step attempts and timers."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ForgeflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    RunError,
    RunStatus,
    SleepTimer,
    StepRecord,
    StepStatus,
    TimerKind,
    WorkflowRun,
    utcnow,
)
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

_repository_instance: WorkflowRepository | None = None


def _repository_for_url(database_url: Optional[str]) -> WorkflowRepository:
    if not database_url:
        return InMemoryWorkflowRepository()
    scheme, sep, rest = database_url.partition("://")
    if not sep:
        raise ValueError(f"Malformed database URL: {database_url}")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(rest)
    if scheme in ("postgres", "postgresql"):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("asyncpg is required for PostgreSQL state")
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {scheme}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[ForgeflowConfig] = None
) -> WorkflowRepository:
    """Return the state store for this process.

    ``database_url`` wins over ``FORGEFLOW_DATABASE_URL``/``DATABASE_URL``,
    which win over ``config.database_url``. ``sqlite://<path>`` and
    ``postgresql://...`` are understood; nothing configured means in-memory
    state. Called without arguments, the previously built store is reused.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    url = (
        database_url
        or os.getenv("FORGEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    _repository_instance = _repository_for_url(url)
    return _repository_instance


__all__ = [
    "InMemoryWorkflowRepository",
    "PostgresWorkflowRepository",
    "RunError",
    "RunStatus",
    "SQLiteWorkflowRepository",
    "SleepTimer",
    "StepRecord",
    "StepStatus",
    "TimerKind",
    "WorkflowRepository",
    "WorkflowRun",
    "get_repository",
    "utcnow",
]
