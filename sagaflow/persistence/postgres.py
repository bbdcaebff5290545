"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
import time
from datetime import datetime
from typing import Any

import asyncpg

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

_TERMINAL = [
    ExecutionState.COMPLETED.value,
    ExecutionState.COMPENSATED.value,
    ExecutionState.COMPENSATION_FAILED.value,
]
_CANCELLABLE = [state.value for state in CANCELLABLE_STATES]


def _loads(value: Any) -> Any:
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
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                correlation_key TEXT,
                single_instance BOOLEAN NOT NULL DEFAULT FALSE,
                state TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                input JSONB,
                context JSONB,
                cancelled BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                active_key TEXT UNIQUE
            );
            CREATE INDEX IF NOT EXISTS idx_executions_correlation
                ON executions (correlation_key);
            CREATE TABLE IF NOT EXISTS step_records (
                id SERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES executions (execution_id),
                seq INTEGER NOT NULL,
                step_name TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                outcome TEXT NOT NULL,
                attempts INTEGER NOT NULL,
                result JSONB,
                error TEXT,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                UNIQUE (execution_id, seq)
            );
            CREATE TABLE IF NOT EXISTS job_state (
                job_name TEXT PRIMARY KEY,
                last_fired TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS dead_letters (
                id TEXT PRIMARY KEY,
                event JSONB NOT NULL,
                subscription TEXT NOT NULL,
                error TEXT NOT NULL,
                dead_lettered_at TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS leases (
                key TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at DOUBLE PRECISION NOT NULL
            );
            """
        )

    # ------------------------------------------------------------------
    async def _insert_records(
        self, conn: asyncpg.Connection, execution: WorkflowExecution, start: int
    ) -> None:
        await conn.executemany(
            """
            INSERT INTO step_records (
                execution_id, seq, step_name, step_index, outcome, attempts,
                result, error, started_at, finished_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            [
                (
                    execution.execution_id,
                    seq,
                    record.step_name,
                    record.step_index,
                    record.outcome.value,
                    record.attempts,
                    json.dumps(record.result),
                    record.error,
                    record.started_at,
                    record.finished_at,
                )
                for seq, record in enumerate(execution.steps[start:], start=start)
            ],
        )

    async def _load(
        self, conn: asyncpg.Connection, row: asyncpg.Record
    ) -> WorkflowExecution:
        step_rows = await conn.fetch(
            "SELECT * FROM step_records WHERE execution_id = $1 ORDER BY seq",
            row["execution_id"],
        )
        steps = [
            StepExecutionRecord(
                step_name=r["step_name"],
                step_index=r["step_index"],
                attempts=r["attempts"],
                outcome=StepOutcome(r["outcome"]),
                result=_loads(r["result"]),
                error=r["error"],
                started_at=r["started_at"],
                finished_at=r["finished_at"],
            )
            for r in step_rows
        ]
        return WorkflowExecution(
            execution_id=row["execution_id"],
            workflow_name=row["workflow_name"],
            correlation_key=row["correlation_key"],
            single_instance=row["single_instance"],
            state=ExecutionState(row["state"]),
            step_index=row["step_index"],
            steps=steps,
            input=_loads(row["input"]) or {},
            context=_loads(row["context"]) or {},
            cancelled=row["cancelled"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO executions (
                        execution_id, workflow_name, correlation_key, single_instance,
                        state, step_index, input, context, cancelled, created_at,
                        updated_at, active_key
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    """,
                    execution.execution_id,
                    execution.workflow_name,
                    execution.correlation_key,
                    execution.single_instance,
                    execution.state.value,
                    execution.step_index,
                    json.dumps(execution.input),
                    json.dumps(execution.context),
                    execution.cancelled,
                    execution.created_at,
                    execution.updated_at,
                    execution.active_key,
                )
                await self._insert_records(conn, execution, 0)
        except asyncpg.UniqueViolationError:
            existing = await conn.fetchval(
                "SELECT execution_id FROM executions WHERE active_key = $1",
                execution.active_key,
            )
            if existing is None:
                raise
            raise DuplicateExecution(existing, execution.correlation_key)
        finally:
            await conn.close()

    async def save_execution(self, execution: WorkflowExecution) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE executions
                    SET state = $1, step_index = $2, context = $3,
                        cancelled = executions.cancelled OR $4,
                        updated_at = $5, active_key = $6
                    WHERE execution_id = $7
                    """,
                    execution.state.value,
                    execution.step_index,
                    json.dumps(execution.context),
                    execution.cancelled,
                    execution.updated_at,
                    execution.active_key,
                    execution.execution_id,
                )
                stored = await conn.fetchval(
                    "SELECT COUNT(*) FROM step_records WHERE execution_id = $1",
                    execution.execution_id,
                )
                await self._insert_records(conn, execution, stored)
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM executions WHERE execution_id = $1", execution_id
            )
            if not row:
                return None
            return await self._load(conn, row)
        finally:
            await conn.close()

    async def request_cancel(self, execution_id: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE executions SET cancelled = TRUE WHERE execution_id = $1 AND state = ANY($2::text[])",
                execution_id,
                _CANCELLABLE,
            )
        finally:
            await conn.close()
        # status is "UPDATE <rows>"
        return status.split()[-1] != "0"

    async def is_cancel_requested(self, execution_id: str) -> bool:
        conn = await self._connect()
        try:
            cancelled = await conn.fetchval(
                "SELECT cancelled FROM executions WHERE execution_id = $1", execution_id
            )
        finally:
            await conn.close()
        return bool(cancelled)

    async def find_by_correlation_key(
        self, correlation_key: str, workflow_name: str | None = None
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            if workflow_name is None:
                rows = await conn.fetch(
                    "SELECT * FROM executions WHERE correlation_key = $1 ORDER BY created_at",
                    correlation_key,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM executions WHERE correlation_key = $1 AND workflow_name = $2 ORDER BY created_at",
                    correlation_key,
                    workflow_name,
                )
            return [await self._load(conn, row) for row in rows]
        finally:
            await conn.close()

    async def list_executions(self, active_only: bool = False) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            if active_only:
                rows = await conn.fetch(
                    "SELECT * FROM executions WHERE NOT (state = ANY($1::text[])) ORDER BY created_at",
                    _TERMINAL,
                )
            else:
                rows = await conn.fetch("SELECT * FROM executions ORDER BY created_at")
            return [await self._load(conn, row) for row in rows]
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def get_last_fired(self, job_name: str) -> datetime | None:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT last_fired FROM job_state WHERE job_name = $1", job_name
            )
        finally:
            await conn.close()

    async def set_last_fired(self, job_name: str, fired_at: datetime) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO job_state (job_name, last_fired) VALUES ($1, $2)
                ON CONFLICT (job_name) DO UPDATE SET last_fired = EXCLUDED.last_fired
                """,
                job_name,
                fired_at,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO dead_letters (id, event, subscription, error, dead_lettered_at) VALUES ($1, $2, $3, $4, $5)",
                dead_letter.id,
                dead_letter.event.to_json(),
                dead_letter.subscription,
                dead_letter.error,
                dead_letter.dead_lettered_at,
            )
        finally:
            await conn.close()

    @staticmethod
    def _dead_letter_from_row(row: asyncpg.Record) -> DeadLetter:
        event = row["event"]
        return DeadLetter(
            id=row["id"],
            event=Event.from_json(event) if isinstance(event, str) else Event.model_validate(event),
            subscription=row["subscription"],
            error=row["error"],
            dead_lettered_at=row["dead_lettered_at"],
        )

    async def list_dead_letters(self) -> list[DeadLetter]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT * FROM dead_letters ORDER BY dead_lettered_at")
        finally:
            await conn.close()
        return [self._dead_letter_from_row(row) for row in rows]

    async def remove_dead_letter(self, dead_letter_id: str) -> DeadLetter | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "DELETE FROM dead_letters WHERE id = $1 RETURNING *", dead_letter_id
            )
        finally:
            await conn.close()
        return self._dead_letter_from_row(row) if row else None

    # ------------------------------------------------------------------
    async def acquire_lease(self, key: str, owner: str, ttl: float) -> bool:
        now = time.time()
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                INSERT INTO leases (key, owner, expires_at) VALUES ($1, $2, $3)
                ON CONFLICT (key) DO UPDATE
                SET owner = EXCLUDED.owner, expires_at = EXCLUDED.expires_at
                WHERE leases.expires_at <= $4 OR leases.owner = EXCLUDED.owner
                """,
                key,
                owner,
                now + ttl,
                now,
            )
        finally:
            await conn.close()
        # status is "INSERT 0 <rows>"
        return status.split()[-1] != "0"

    async def release_lease(self, key: str, owner: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM leases WHERE key = $1 AND owner = $2", key, owner
            )
        finally:
            await conn.close()
