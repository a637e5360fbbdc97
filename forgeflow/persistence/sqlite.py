"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

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


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _loads(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    A single connection is shared between threads and guarded by a lock.
    Writes that decide ownership run inside ``BEGIN IMMEDIATE`` so that
    separate processes sharing the database file are serialized as well.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_runs (
                    run_id TEXT PRIMARY KEY,
                    definition_name TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    input TEXT NOT NULL,
                    current_step INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    error TEXT,
                    result TEXT,
                    archived INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            cur.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_runs_active_key
                ON workflow_runs (definition_name, idempotency_key)
                WHERE status IN ('pending', 'running', 'sleeping')
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS ix_workflow_runs_key
                ON workflow_runs (definition_name, idempotency_key, created_at)
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS step_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    step_index INTEGER NOT NULL,
                    step_name TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    output TEXT,
                    error TEXT,
                    started_at TEXT,
                    finished_at TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sleep_timers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    step_index INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    wake_at TEXT NOT NULL,
                    consumed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS ix_sleep_timers_due
                ON sleep_timers (consumed, wake_at)
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            else:
                cur.execute("COMMIT")

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> WorkflowRun:
        error = _loads(row["error"])
        return WorkflowRun(
            run_id=row["run_id"],
            definition_name=row["definition_name"],
            idempotency_key=row["idempotency_key"],
            input=_loads(row["input"]) or {},
            current_step=row["current_step"],
            status=RunStatus(row["status"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            error=RunError(**error) if error else None,
            result=_loads(row["result"]),
            archived=bool(row["archived"]),
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            id=row["id"],
            run_id=row["run_id"],
            step_index=row["step_index"],
            step_name=row["step_name"],
            attempt=row["attempt"],
            status=StepStatus(row["status"]),
            output=_loads(row["output"]),
            error=_loads(row["error"]),
            started_at=_dt(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
        )

    @staticmethod
    def _row_to_timer(row: sqlite3.Row) -> SleepTimer:
        return SleepTimer(
            id=row["id"],
            run_id=row["run_id"],
            step_index=row["step_index"],
            kind=TimerKind(row["kind"]),
            wake_at=_dt(row["wake_at"]),
            consumed=bool(row["consumed"]),
            created_at=_dt(row["created_at"]),
        )

    def _insert_run(self, cur: sqlite3.Cursor, run: WorkflowRun) -> None:
        cur.execute(
            f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                run.run_id,
                run.definition_name,
                run.idempotency_key,
                json.dumps(run.input),
                run.current_step,
                run.status.value,
                _ts(run.created_at),
                _ts(run.updated_at),
                _dumps(run.error.model_dump() if run.error else None),
                _dumps(run.result),
                int(run.archived),
            ),
        )

    def _update_run(self, cur: sqlite3.Cursor, run: WorkflowRun) -> None:
        cur.execute(
            """
            UPDATE workflow_runs
            SET current_step = ?, status = ?, updated_at = ?, error = ?, result = ?
            WHERE run_id = ?
            """,
            (
                run.current_step,
                run.status.value,
                _ts(run.updated_at),
                _dumps(run.error.model_dump() if run.error else None),
                _dumps(run.result),
                run.run_id,
            ),
        )

    # ------------------------------------------------------------------
    # Synchronous operations executed in a worker thread
    def _acquire_run(
        self, definition_name: str, idempotency_key: str, input: dict, now: datetime
    ) -> tuple[WorkflowRun, bool]:
        with self._transaction() as cur:
            cur.execute(
                f"""
                SELECT {_RUN_COLUMNS} FROM workflow_runs
                WHERE definition_name = ? AND idempotency_key = ? AND status != ?
                ORDER BY created_at DESC LIMIT 1
                """,
                (definition_name, idempotency_key, RunStatus.FAILED.value),
            )
            row = cur.fetchone()
            if row is not None:
                return self._row_to_run(row), False
            run = WorkflowRun(
                definition_name=definition_name,
                idempotency_key=idempotency_key,
                input=input,
                created_at=now,
                updated_at=now,
            )
            self._insert_run(cur, run)
            return run, True

    def _claim_run(
        self,
        run_id: str,
        from_statuses: tuple[RunStatus, ...],
        now: datetime,
        stale_before: Optional[datetime],
    ) -> WorkflowRun | None:
        placeholders = ", ".join("?" for _ in from_statuses) or "NULL"
        with self._transaction() as cur:
            cur.execute(
                f"""
                UPDATE workflow_runs SET status = ?, updated_at = ?
                WHERE run_id = ?
                  AND (status IN ({placeholders})
                       OR (status = ? AND ? IS NOT NULL AND updated_at < ?))
                """,
                (
                    RunStatus.RUNNING.value,
                    _ts(now),
                    run_id,
                    *(s.value for s in from_statuses),
                    RunStatus.RUNNING.value,
                    _ts(stale_before),
                    _ts(stale_before),
                ),
            )
            if cur.rowcount != 1:
                return None
            cur.execute(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE run_id = ?", (run_id,)
            )
            return self._row_to_run(cur.fetchone())

    def _release_run(self, run_id: str, now: datetime) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE workflow_runs SET status = ?, updated_at = ? "
                "WHERE run_id = ? AND status = ?",
                (RunStatus.PENDING.value, _ts(now), run_id, RunStatus.RUNNING.value),
            )
            return cur.rowcount == 1

    def _save_run(self, run: WorkflowRun) -> None:
        with self._transaction() as cur:
            self._update_run(cur, run)

    def _suspend_run(self, run: WorkflowRun, timer: SleepTimer) -> SleepTimer:
        with self._transaction() as cur:
            run.status = RunStatus.SLEEPING
            self._update_run(cur, run)
            cur.execute(
                f"INSERT INTO sleep_timers ({_TIMER_COLUMNS}) VALUES (NULL, ?, ?, ?, ?, ?, ?)",
                (
                    timer.run_id,
                    timer.step_index,
                    timer.kind.value,
                    _ts(timer.wake_at),
                    int(timer.consumed),
                    _ts(timer.created_at),
                ),
            )
            return timer.model_copy(update={"id": cur.lastrowid})

    def _archive_run(self, run_id: str) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "UPDATE workflow_runs SET archived = 1 WHERE run_id = ? AND status IN (?, ?)",
                (run_id, RunStatus.COMPLETED.value, RunStatus.FAILED.value),
            )
            return cur.rowcount == 1

    def _start_step(
        self,
        run_id: str,
        step_index: int,
        step_name: str,
        attempt: int,
        started_at: datetime,
    ) -> StepRecord:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO step_records (run_id, step_index, step_name, attempt, status, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    step_index,
                    step_name,
                    attempt,
                    StepStatus.RUNNING.value,
                    _ts(started_at),
                ),
            )
            record_id = cur.lastrowid
        return StepRecord(
            id=record_id,
            run_id=run_id,
            step_index=step_index,
            step_name=step_name,
            attempt=attempt,
            status=StepStatus.RUNNING,
            started_at=started_at,
        )

    def _finish_step(
        self,
        record_id: int,
        status: StepStatus,
        finished_at: datetime,
        output: Any,
        error: dict | None,
    ) -> StepRecord | None:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE step_records
                SET status = ?, finished_at = ?, output = ?, error = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    _ts(finished_at),
                    _dumps(output) if status == StepStatus.SUCCEEDED else None,
                    _dumps(error),
                    record_id,
                    StepStatus.RUNNING.value,
                ),
            )
            if cur.rowcount != 1:
                return None
            cur.execute(f"SELECT {_STEP_COLUMNS} FROM step_records WHERE id = ?", (record_id,))
            return self._row_to_step(cur.fetchone())

    def _claim_due_timers(self, now: datetime, limit: int) -> list[SleepTimer]:
        with self._transaction() as cur:
            cur.execute(
                f"""
                SELECT {_TIMER_COLUMNS} FROM sleep_timers
                WHERE consumed = 0 AND wake_at <= ?
                ORDER BY wake_at LIMIT ?
                """,
                (_ts(now), limit),
            )
            rows = cur.fetchall()
            timers = [self._row_to_timer(r) for r in rows]
            for timer in timers:
                cur.execute(
                    "UPDATE sleep_timers SET consumed = 1 WHERE id = ?", (timer.id,)
                )
                timer.consumed = True
            return timers

    # ------------------------------------------------------------------
    # Repository API
    async def acquire_run(
        self, definition_name: str, idempotency_key: str, input: dict, now: datetime
    ) -> tuple[WorkflowRun, bool]:
        return await asyncio.to_thread(
            self._acquire_run, definition_name, idempotency_key, input, now
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE run_id = ?",
            run_id,
        )
        return self._row_to_run(row) if row else None

    async def get_run_by_key(
        self, definition_name: str, idempotency_key: str
    ) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT {_RUN_COLUMNS} FROM workflow_runs
            WHERE definition_name = ? AND idempotency_key = ?
            ORDER BY created_at DESC LIMIT 1
            """,
            definition_name,
            idempotency_key,
        )
        return self._row_to_run(row) if row else None

    async def list_runs(
        self, status: Optional[RunStatus] = None, include_archived: bool = False
    ) -> list[WorkflowRun]:
        query = f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if not include_archived:
            query += " AND archived = 0"
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_run(r) for r in rows]

    async def claim_run(
        self,
        run_id: str,
        from_statuses: tuple[RunStatus, ...],
        now: datetime,
        stale_before: Optional[datetime] = None,
    ) -> WorkflowRun | None:
        return await asyncio.to_thread(
            self._claim_run, run_id, from_statuses, now, stale_before
        )

    async def release_run(self, run_id: str, now: datetime) -> bool:
        return await asyncio.to_thread(self._release_run, run_id, now)

    async def save_run(self, run: WorkflowRun) -> None:
        await asyncio.to_thread(self._save_run, run)

    async def suspend_run(self, run: WorkflowRun, timer: SleepTimer) -> SleepTimer:
        return await asyncio.to_thread(self._suspend_run, run, timer)

    async def archive_run(self, run_id: str) -> bool:
        return await asyncio.to_thread(self._archive_run, run_id)

    async def list_stale_runs(self, stale_before: datetime) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_RUN_COLUMNS} FROM workflow_runs AS r
            WHERE r.updated_at < ?
              AND (r.status IN (?, ?)
                   OR (r.status = ? AND NOT EXISTS (
                        SELECT 1 FROM sleep_timers AS t
                        WHERE t.run_id = r.run_id AND t.consumed = 0)))
            ORDER BY r.updated_at
            """,
            _ts(stale_before),
            RunStatus.PENDING.value,
            RunStatus.RUNNING.value,
            RunStatus.SLEEPING.value,
        )
        return [self._row_to_run(r) for r in rows]

    async def start_step(
        self,
        run_id: str,
        step_index: int,
        step_name: str,
        attempt: int,
        started_at: datetime,
    ) -> StepRecord:
        return await asyncio.to_thread(
            self._start_step, run_id, step_index, step_name, attempt, started_at
        )

    async def finish_step(
        self,
        record_id: int,
        status: StepStatus,
        finished_at: datetime,
        output: Any = None,
        error: dict | None = None,
    ) -> StepRecord | None:
        return await asyncio.to_thread(
            self._finish_step, record_id, status, finished_at, output, error
        )

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM step_records WHERE run_id = ? ORDER BY id",
            run_id,
        )
        return [self._row_to_step(r) for r in rows]

    async def latest_timer(self, run_id: str, step_index: int) -> SleepTimer | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT {_TIMER_COLUMNS} FROM sleep_timers
            WHERE run_id = ? AND step_index = ?
            ORDER BY id DESC LIMIT 1
            """,
            run_id,
            step_index,
        )
        return self._row_to_timer(row) if row else None

    async def list_timers(self, run_id: str) -> list[SleepTimer]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_TIMER_COLUMNS} FROM sleep_timers WHERE run_id = ? ORDER BY id",
            run_id,
        )
        return [self._row_to_timer(r) for r in rows]

    async def claim_due_timers(self, now: datetime, limit: int = 100) -> list[SleepTimer]:
        return await asyncio.to_thread(self._claim_due_timers, now, limit)

    def close(self) -> None:
        self._conn.close()
