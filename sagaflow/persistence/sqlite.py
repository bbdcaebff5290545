"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..contracts import Event
from ..errors import DuplicateExecution
from .models import (
    CANCELLABLE_STATES,
    DeadLetter,
    ExecutionState,
    StepExecutionRecord,
    StepOutcome,
    WorkflowExecution,
)
from .repository import WorkflowRepository

T = TypeVar("T")

# fixed order for the IN clause
_CANCELLABLE = sorted(CANCELLABLE_STATES, key=lambda state: state.value)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._mutex, self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    execution_id TEXT PRIMARY KEY,
                    workflow_name TEXT NOT NULL,
                    correlation_key TEXT,
                    single_instance INTEGER NOT NULL DEFAULT 0,
                    state TEXT NOT NULL,
                    step_index INTEGER NOT NULL,
                    input TEXT,
                    context TEXT,
                    cancelled INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    active_key TEXT UNIQUE
                );
                CREATE INDEX IF NOT EXISTS idx_executions_correlation
                    ON executions (correlation_key);
                CREATE TABLE IF NOT EXISTS step_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    execution_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    step_name TEXT NOT NULL,
                    step_index INTEGER NOT NULL,
                    outcome TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    result TEXT,
                    error TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    UNIQUE (execution_id, seq)
                );
                CREATE TABLE IF NOT EXISTS job_state (
                    job_name TEXT PRIMARY KEY,
                    last_fired TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS dead_letters (
                    id TEXT PRIMARY KEY,
                    event TEXT NOT NULL,
                    subscription TEXT NOT NULL,
                    error TEXT NOT NULL,
                    dead_lettered_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS leases (
                    key TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    expires_at REAL NOT NULL
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Connection], T]) -> T:
        with self._mutex, self._conn:
            return work(self._conn)

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_records(
        self, conn: sqlite3.Connection, execution: WorkflowExecution, start: int
    ) -> None:
        for seq, record in enumerate(execution.steps[start:], start=start):
            conn.execute(
                """
                INSERT INTO step_records (
                    execution_id, seq, step_name, step_index, outcome, attempts,
                    result, error, started_at, finished_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.execution_id,
                    seq,
                    record.step_name,
                    record.step_index,
                    record.outcome.value,
                    record.attempts,
                    json.dumps(record.result),
                    record.error,
                    _ts(record.started_at),
                    _ts(record.finished_at),
                ),
            )

    def _load(self, row: sqlite3.Row, with_steps: bool = True) -> WorkflowExecution:
        steps: list[StepExecutionRecord] = []
        if with_steps:
            step_rows = self._fetchall(
                "SELECT * FROM step_records WHERE execution_id = ? ORDER BY seq",
                row["execution_id"],
            )
            steps = [
                StepExecutionRecord(
                    step_name=r["step_name"],
                    step_index=r["step_index"],
                    attempts=r["attempts"],
                    outcome=StepOutcome(r["outcome"]),
                    result=json.loads(r["result"]) if r["result"] else None,
                    error=r["error"],
                    started_at=_parse_ts(r["started_at"]),
                    finished_at=_parse_ts(r["finished_at"]),
                )
                for r in step_rows
            ]
        return WorkflowExecution(
            execution_id=row["execution_id"],
            workflow_name=row["workflow_name"],
            correlation_key=row["correlation_key"],
            single_instance=bool(row["single_instance"]),
            state=ExecutionState(row["state"]),
            step_index=row["step_index"],
            steps=steps,
            input=json.loads(row["input"]) if row["input"] else {},
            context=json.loads(row["context"]) if row["context"] else {},
            cancelled=bool(row["cancelled"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(self, execution: WorkflowExecution) -> None:
        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO executions (
                    execution_id, workflow_name, correlation_key, single_instance,
                    state, step_index, input, context, cancelled, created_at,
                    updated_at, active_key
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.execution_id,
                    execution.workflow_name,
                    execution.correlation_key,
                    int(execution.single_instance),
                    execution.state.value,
                    execution.step_index,
                    json.dumps(execution.input),
                    json.dumps(execution.context),
                    int(execution.cancelled),
                    _ts(execution.created_at),
                    _ts(execution.updated_at),
                    execution.active_key,
                ),
            )
            self._insert_records(conn, execution, 0)

        try:
            await asyncio.to_thread(self._transaction, work)
        except sqlite3.IntegrityError:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT execution_id FROM executions WHERE active_key = ?",
                execution.active_key,
            )
            if row is None:
                raise
            raise DuplicateExecution(row["execution_id"], execution.correlation_key)

    async def save_execution(self, execution: WorkflowExecution) -> None:
        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                UPDATE executions
                SET state = ?, step_index = ?, context = ?, cancelled = MAX(cancelled, ?),
                    updated_at = ?, active_key = ?
                WHERE execution_id = ?
                """,
                (
                    execution.state.value,
                    execution.step_index,
                    json.dumps(execution.context),
                    int(execution.cancelled),
                    _ts(execution.updated_at),
                    execution.active_key,
                    execution.execution_id,
                ),
            )
            (stored,) = conn.execute(
                "SELECT COUNT(*) FROM step_records WHERE execution_id = ?",
                (execution.execution_id,),
            ).fetchone()
            self._insert_records(conn, execution, stored)

        await asyncio.to_thread(self._transaction, work)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM executions WHERE execution_id = ?",
            execution_id,
        )
        if not row:
            return None
        return await asyncio.to_thread(self._load, row)

    async def request_cancel(self, execution_id: str) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                "UPDATE executions SET cancelled = 1 WHERE execution_id = ? AND state IN (?, ?)",
                (execution_id, *(state.value for state in _CANCELLABLE)),
            )
            return cur.rowcount > 0

        return await asyncio.to_thread(self._transaction, work)

    async def is_cancel_requested(self, execution_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT cancelled FROM executions WHERE execution_id = ?",
            execution_id,
        )
        return bool(row and row["cancelled"])

    async def find_by_correlation_key(
        self, correlation_key: str, workflow_name: str | None = None
    ) -> list[WorkflowExecution]:
        query = "SELECT * FROM executions WHERE correlation_key = ?"
        params: list[Any] = [correlation_key]
        if workflow_name is not None:
            query += " AND workflow_name = ?"
            params.append(workflow_name)
        rows = await asyncio.to_thread(
            self._fetchall, query + " ORDER BY created_at, rowid", *params
        )
        return [await asyncio.to_thread(self._load, row) for row in rows]

    async def list_executions(self, active_only: bool = False) -> list[WorkflowExecution]:
        query = "SELECT * FROM executions"
        params: list[Any] = []
        if active_only:
            terminal = [
                ExecutionState.COMPLETED.value,
                ExecutionState.COMPENSATED.value,
                ExecutionState.COMPENSATION_FAILED.value,
            ]
            query += " WHERE state NOT IN (?, ?, ?)"
            params.extend(terminal)
        rows = await asyncio.to_thread(
            self._fetchall, query + " ORDER BY created_at, rowid", *params
        )
        return [await asyncio.to_thread(self._load, row) for row in rows]

    # ------------------------------------------------------------------
    async def get_last_fired(self, job_name: str) -> datetime | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT last_fired FROM job_state WHERE job_name = ?",
            job_name,
        )
        return _parse_ts(row["last_fired"]) if row else None

    async def set_last_fired(self, job_name: str, fired_at: datetime) -> None:
        await asyncio.to_thread(
            self._transaction,
            lambda conn: conn.execute(
                """
                INSERT INTO job_state (job_name, last_fired) VALUES (?, ?)
                ON CONFLICT (job_name) DO UPDATE SET last_fired = excluded.last_fired
                """,
                (job_name, _ts(fired_at)),
            ),
        )

    # ------------------------------------------------------------------
    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        await asyncio.to_thread(
            self._transaction,
            lambda conn: conn.execute(
                "INSERT INTO dead_letters (id, event, subscription, error, dead_lettered_at) VALUES (?, ?, ?, ?, ?)",
                (
                    dead_letter.id,
                    dead_letter.event.to_json(),
                    dead_letter.subscription,
                    dead_letter.error,
                    _ts(dead_letter.dead_lettered_at),
                ),
            ),
        )

    @staticmethod
    def _dead_letter_from_row(row: sqlite3.Row) -> DeadLetter:
        return DeadLetter(
            id=row["id"],
            event=Event.from_json(row["event"]),
            subscription=row["subscription"],
            error=row["error"],
            dead_lettered_at=datetime.fromisoformat(row["dead_lettered_at"]),
        )

    async def list_dead_letters(self) -> list[DeadLetter]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM dead_letters ORDER BY dead_lettered_at"
        )
        return [self._dead_letter_from_row(row) for row in rows]

    async def remove_dead_letter(self, dead_letter_id: str) -> DeadLetter | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM dead_letters WHERE id = ?", dead_letter_id
        )
        if row is None:
            return None
        await asyncio.to_thread(
            self._transaction,
            lambda conn: conn.execute(
                "DELETE FROM dead_letters WHERE id = ?", (dead_letter_id,)
            ),
        )
        return self._dead_letter_from_row(row)

    # ------------------------------------------------------------------
    async def acquire_lease(self, key: str, owner: str, ttl: float) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            now = time.time()
            cur = conn.execute(
                """
                INSERT INTO leases (key, owner, expires_at) VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE
                SET owner = excluded.owner, expires_at = excluded.expires_at
                WHERE leases.expires_at <= ? OR leases.owner = excluded.owner
                """,
                (key, owner, now + ttl, now),
            )
            return cur.rowcount > 0

        return await asyncio.to_thread(self._transaction, work)

    async def release_lease(self, key: str, owner: str) -> None:
        await asyncio.to_thread(
            self._transaction,
            lambda conn: conn.execute(
                "DELETE FROM leases WHERE key = ? AND owner = ?", (key, owner)
            ),
        )
