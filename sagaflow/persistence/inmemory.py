"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Dict, Tuple

from ..errors import DuplicateExecution
from .models import CANCELLABLE_STATES, DeadLetter, WorkflowExecution
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored executions are copies, so
    callers only ever observe what was last saved.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}
        self._active_keys: Dict[str, str] = {}
        self._last_fired: Dict[str, datetime] = {}
        self._dead_letters: Dict[str, DeadLetter] = {}
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            key = execution.active_key
            if key is not None and key in self._active_keys:
                raise DuplicateExecution(
                    self._active_keys[key], execution.correlation_key
                )
            self._executions[execution.execution_id] = execution.model_copy(deep=True)
            if key is not None:
                self._active_keys[key] = execution.execution_id

    async def save_execution(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            stored = execution.model_copy(deep=True)
            previous = self._executions.get(execution.execution_id)
            if previous is not None and previous.cancelled:
                stored.cancelled = True
            self._executions[execution.execution_id] = stored
            if execution.is_terminal:
                stale = [
                    key
                    for key, execution_id in self._active_keys.items()
                    if execution_id == execution.execution_id
                ]
                for key in stale:
                    del self._active_keys[key]

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def request_cancel(self, execution_id: str) -> bool:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.state not in CANCELLABLE_STATES:
                return False
            execution.cancelled = True
            return True

    async def is_cancel_requested(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        return execution is not None and execution.cancelled

    async def find_by_correlation_key(
        self, correlation_key: str, workflow_name: str | None = None
    ) -> list[WorkflowExecution]:
        matches = [
            wf
            for wf in self._executions.values()
            if wf.correlation_key == correlation_key
            and (workflow_name is None or wf.workflow_name == workflow_name)
        ]
        matches.sort(key=lambda wf: wf.created_at)
        return [wf.model_copy(deep=True) for wf in matches]

    async def list_executions(self, active_only: bool = False) -> list[WorkflowExecution]:
        return [
            wf.model_copy(deep=True)
            for wf in self._executions.values()
            if not (active_only and wf.is_terminal)
        ]

    # ------------------------------------------------------------------
    async def get_last_fired(self, job_name: str) -> datetime | None:
        return self._last_fired.get(job_name)

    async def set_last_fired(self, job_name: str, fired_at: datetime) -> None:
        self._last_fired[job_name] = fired_at

    # ------------------------------------------------------------------
    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        self._dead_letters[dead_letter.id] = dead_letter

    async def list_dead_letters(self) -> list[DeadLetter]:
        return sorted(self._dead_letters.values(), key=lambda dl: dl.dead_lettered_at)

    async def remove_dead_letter(self, dead_letter_id: str) -> DeadLetter | None:
        return self._dead_letters.pop(dead_letter_id, None)

    # ------------------------------------------------------------------
    async def acquire_lease(self, key: str, owner: str, ttl: float) -> bool:
        async with self._lock:
            now = time.time()
            held = self._leases.get(key)
            if held is not None and held[1] > now and held[0] != owner:
                return False
            self._leases[key] = (owner, now + ttl)
            return True

    async def release_lease(self, key: str, owner: str) -> None:
        async with self._lock:
            held = self._leases.get(key)
            if held is not None and held[0] == owner:
                del self._leases[key]
