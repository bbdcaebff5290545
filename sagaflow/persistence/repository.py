"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from .models import DeadLetter, WorkflowExecution


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Every write is atomic: a reader sees an execution either before or after a
    ``save_execution`` call, never in between.
    """

    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Persist a new execution.

        Raises:
            DuplicateExecution: ``execution.active_key`` is held by another
                non-terminal execution.
        """

    async def save_execution(self, execution: WorkflowExecution) -> None:
        """Persist a state transition, appending any new step records.

        A cancel request already recorded by :meth:`request_cancel` is never
        cleared by a save.
        """

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve the execution by id."""

    async def request_cancel(self, execution_id: str) -> bool:
        """Flag a pending or running execution as cancelled.

        Returns ``False`` when the execution is missing or past the point of
        cancellation.
        """

    async def is_cancel_requested(self, execution_id: str) -> bool:
        """Whether a cancel request is recorded for ``execution_id``."""

    async def find_by_correlation_key(
        self, correlation_key: str, workflow_name: str | None = None
    ) -> list[WorkflowExecution]:
        """Return executions tied to ``correlation_key``, oldest first."""

    async def list_executions(self, active_only: bool = False) -> list[WorkflowExecution]:
        """Return all persisted executions, or only non-terminal ones."""

    async def get_last_fired(self, job_name: str) -> datetime | None:
        """Return the tick at which ``job_name`` last fired."""

    async def set_last_fired(self, job_name: str, fired_at: datetime) -> None:
        """Record the tick at which ``job_name`` fired."""

    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        """Store an event that exhausted its delivery attempts."""

    async def list_dead_letters(self) -> list[DeadLetter]:
        """Return stored dead letters, oldest first."""

    async def remove_dead_letter(self, dead_letter_id: str) -> DeadLetter | None:
        """Delete and return a dead letter, e.g. after it was replayed."""

    async def acquire_lease(self, key: str, owner: str, ttl: float) -> bool:
        """Take the lease ``key`` for ``ttl`` seconds unless someone else holds it."""

    async def release_lease(self, key: str, owner: str) -> None:
        """Drop the lease ``key`` if ``owner`` still holds it."""
