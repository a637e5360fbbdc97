"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from .models import (
    RunError,
    RunStatus,
    SleepTimer,
    StepRecord,
    StepStatus,
    TimerKind,
    WorkflowRun,
)
from .repository import WorkflowRepository

_RUN_COLUMNS = (
    "run_id, definition_name, idempotency_key, input, current_step, status, "
    "created_at, updated_at, error, result, archived"
)
_STEP_COLUMNS = (
    "id, run_id, step_index, step_name, attempt, status, output, error, "
    "started_at, finished_at"
)
_TIMER_COLUMNS = "id, run_id, step_index, kind, wake_at, consumed, created_at"


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _loads(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                run_id TEXT PRIMARY KEY,
                definition_name TEXT NOT NULL,
                idempotency_key TEXT NOT NULL,
                input JSONB NOT NULL,
                current_step INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                error JSONB,
                result JSONB,
                archived BOOLEAN NOT NULL DEFAULT FALSE
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_runs_active_key
            ON workflow_runs (definition_name, idempotency_key)
            WHERE status IN ('pending', 'running', 'sleeping')
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_records (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES workflow_runs (run_id),
                step_index INTEGER NOT NULL,
                step_name TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                output JSONB,
                error JSONB,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sleep_timers (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES workflow_runs (run_id),
                step_index INTEGER NOT NULL,
                kind TEXT NOT NULL,
                wake_at TIMESTAMPTZ NOT NULL,
                consumed BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS ix_sleep_timers_due
            ON sleep_timers (wake_at) WHERE NOT consumed
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_run(row: asyncpg.Record) -> WorkflowRun:
        error = _loads(row["error"])
        return WorkflowRun(
            run_id=row["run_id"],
            definition_name=row["definition_name"],
            idempotency_key=row["idempotency_key"],
            input=_loads(row["input"]) or {},
            current_step=row["current_step"],
            status=RunStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            error=RunError(**error) if error else None,
            result=_loads(row["result"]),
            archived=row["archived"],
        )

    @staticmethod
    def _row_to_step(row: asyncpg.Record) -> StepRecord:
        return StepRecord(
            id=row["id"],
            run_id=row["run_id"],
            step_index=row["step_index"],
            step_name=row["step_name"],
            attempt=row["attempt"],
            status=StepStatus(row["status"]),
            output=_loads(row["output"]),
            error=_loads(row["error"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )

    @staticmethod
    def _row_to_timer(row: asyncpg.Record) -> SleepTimer:
        return SleepTimer(
            id=row["id"],
            run_id=row["run_id"],
            step_index=row["step_index"],
            kind=TimerKind(row["kind"]),
            wake_at=row["wake_at"],
            consumed=row["consumed"],
            created_at=row["created_at"],
        )

    @staticmethod
    async def _update_run(conn: asyncpg.Connection, run: WorkflowRun) -> None:
        await conn.execute(
            """
            UPDATE workflow_runs
            SET current_step = $1, status = $2, updated_at = $3, error = $4, result = $5
            WHERE run_id = $6
            """,
            run.current_step,
            run.status.value,
            run.updated_at,
            _dumps(run.error.model_dump() if run.error else None),
            _dumps(run.result),
            run.run_id,
        )

    # ------------------------------------------------------------------
    async def acquire_run(
        self, definition_name: str, idempotency_key: str, input: dict, now: datetime
    ) -> tuple[WorkflowRun, bool]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"{definition_name}:{idempotency_key}",
                )
                row = await conn.fetchrow(
                    f"""
                    SELECT {_RUN_COLUMNS} FROM workflow_runs
                    WHERE definition_name = $1 AND idempotency_key = $2 AND status != $3
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    definition_name,
                    idempotency_key,
                    RunStatus.FAILED.value,
                )
                if row is not None:
                    return self._row_to_run(row), False
                run = WorkflowRun(
                    definition_name=definition_name,
                    idempotency_key=idempotency_key,
                    input=input,
                    created_at=now,
                    updated_at=now,
                )
                await conn.execute(
                    f"""
                    INSERT INTO workflow_runs ({_RUN_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NULL, NULL, FALSE)
                    """,
                    run.run_id,
                    run.definition_name,
                    run.idempotency_key,
                    json.dumps(run.input),
                    run.current_step,
                    run.status.value,
                    run.created_at,
                    run.updated_at,
                )
                return run, True
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def get_run_by_key(
        self, definition_name: str, idempotency_key: str
    ) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                SELECT {_RUN_COLUMNS} FROM workflow_runs
                WHERE definition_name = $1 AND idempotency_key = $2
                ORDER BY created_at DESC LIMIT 1
                """,
                definition_name,
                idempotency_key,
            )
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def list_runs(
        self, status: Optional[RunStatus] = None, include_archived: bool = False
    ) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_RUN_COLUMNS} FROM workflow_runs
                WHERE ($1::text IS NULL OR status = $1) AND ($2 OR NOT archived)
                ORDER BY created_at
                """,
                status.value if status else None,
                include_archived,
            )
        finally:
            await conn.close()
        return [self._row_to_run(r) for r in rows]

    async def claim_run(
        self,
        run_id: str,
        from_statuses: tuple[RunStatus, ...],
        now: datetime,
        stale_before: Optional[datetime] = None,
    ) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE workflow_runs SET status = $2, updated_at = $3
                WHERE run_id = $1
                  AND (status = ANY($4::text[])
                       OR (status = $2 AND $5::timestamptz IS NOT NULL AND updated_at < $5))
                RETURNING {_RUN_COLUMNS}
                """,
                run_id,
                RunStatus.RUNNING.value,
                now,
                [s.value for s in from_statuses],
                stale_before,
            )
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def release_run(self, run_id: str, now: datetime) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflow_runs SET status = $2, updated_at = $3 "
                "WHERE run_id = $1 AND status = $4",
                run_id,
                RunStatus.PENDING.value,
                now,
                RunStatus.RUNNING.value,
            )
        finally:
            await conn.close()
        return result.endswith(" 1")

    async def save_run(self, run: WorkflowRun) -> None:
        conn = await self._connect()
        try:
            await self._update_run(conn, run)
        finally:
            await conn.close()

    async def suspend_run(self, run: WorkflowRun, timer: SleepTimer) -> SleepTimer:
        conn = await self._connect()
        try:
            async with conn.transaction():
                run.status = RunStatus.SLEEPING
                await self._update_run(conn, run)
                timer_id = await conn.fetchval(
                    """
                    INSERT INTO sleep_timers (run_id, step_index, kind, wake_at, consumed, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING id
                    """,
                    timer.run_id,
                    timer.step_index,
                    timer.kind.value,
                    timer.wake_at,
                    timer.consumed,
                    timer.created_at,
                )
        finally:
            await conn.close()
        return timer.model_copy(update={"id": timer_id})

    async def archive_run(self, run_id: str) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflow_runs SET archived = TRUE WHERE run_id = $1 AND status IN ($2, $3)",
                run_id,
                RunStatus.COMPLETED.value,
                RunStatus.FAILED.value,
            )
        finally:
            await conn.close()
        return result.endswith(" 1")

    async def list_stale_runs(self, stale_before: datetime) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_RUN_COLUMNS} FROM workflow_runs AS r
                WHERE r.updated_at < $1
                  AND (r.status IN ($2, $3)
                       OR (r.status = $4 AND NOT EXISTS (
                            SELECT 1 FROM sleep_timers AS t
                            WHERE t.run_id = r.run_id AND NOT t.consumed)))
                ORDER BY r.updated_at
                """,
                stale_before,
                RunStatus.PENDING.value,
                RunStatus.RUNNING.value,
                RunStatus.SLEEPING.value,
            )
        finally:
            await conn.close()
        return [self._row_to_run(r) for r in rows]

    async def start_step(
        self,
        run_id: str,
        step_index: int,
        step_name: str,
        attempt: int,
        started_at: datetime,
    ) -> StepRecord:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                INSERT INTO step_records (run_id, step_index, step_name, attempt, status, started_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING {_STEP_COLUMNS}
                """,
                run_id,
                step_index,
                step_name,
                attempt,
                StepStatus.RUNNING.value,
                started_at,
            )
        finally:
            await conn.close()
        return self._row_to_step(row)

    async def finish_step(
        self,
        record_id: int,
        status: StepStatus,
        finished_at: datetime,
        output: Any = None,
        error: dict | None = None,
    ) -> StepRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE step_records
                SET status = $1, finished_at = $2, output = $3, error = $4
                WHERE id = $5 AND status = $6
                RETURNING {_STEP_COLUMNS}
                """,
                status.value,
                finished_at,
                _dumps(output) if status == StepStatus.SUCCEEDED else None,
                _dumps(error),
                record_id,
                StepStatus.RUNNING.value,
            )
        finally:
            await conn.close()
        return self._row_to_step(row) if row else None

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_STEP_COLUMNS} FROM step_records WHERE run_id = $1 ORDER BY id",
                run_id,
            )
        finally:
            await conn.close()
        return [self._row_to_step(r) for r in rows]

    async def latest_timer(self, run_id: str, step_index: int) -> SleepTimer | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                SELECT {_TIMER_COLUMNS} FROM sleep_timers
                WHERE run_id = $1 AND step_index = $2
                ORDER BY id DESC LIMIT 1
                """,
                run_id,
                step_index,
            )
        finally:
            await conn.close()
        return self._row_to_timer(row) if row else None

    async def list_timers(self, run_id: str) -> list[SleepTimer]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_TIMER_COLUMNS} FROM sleep_timers WHERE run_id = $1 ORDER BY id",
                run_id,
            )
        finally:
            await conn.close()
        return [self._row_to_timer(r) for r in rows]

    async def claim_due_timers(self, now: datetime, limit: int = 100) -> list[SleepTimer]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                UPDATE sleep_timers SET consumed = TRUE
                WHERE id IN (
                    SELECT id FROM sleep_timers
                    WHERE NOT consumed AND wake_at <= $1
                    ORDER BY wake_at
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {_TIMER_COLUMNS}
                """,
                now,
                limit,
            )
        finally:
            await conn.close()
        return sorted((self._row_to_timer(r) for r in rows), key=lambda t: t.wake_at)
