"""Persistence layer for sagaflow executions, job state and dead letters."""

from __future__ import annotations

from typing import Callable, Dict, Optional

from ..config import SagaflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    CANCELLABLE_STATES,
    TERMINAL_STATES,
    DeadLetter,
    ExecutionState,
    ExecutionStatus,
    StepExecutionRecord,
    StepOutcome,
    WorkflowExecution,
)
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

# url scheme -> constructor taking the full url
_BACKENDS: Dict[str, Callable[[str], WorkflowRepository]] = {
    "sqlite": lambda url: SQLiteWorkflowRepository(url.split("://", 1)[1]),
    "postgres": PostgresWorkflowRepository,
    "postgresql": PostgresWorkflowRepository,
}


def get_repository(
    database_url: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> WorkflowRepository:
    """Open the repository named by ``database_url``.

    Without an explicit url the configured ``database_url`` is used, which
    :func:`~sagaflow.config.load_config` already overrides from
    ``SAGAFLOW_DATABASE_URL`` / ``DATABASE_URL``. No url at all means an
    in-memory repository that lives as long as the returned object.

    Examples:
        >>> get_repository("sqlite://workflows.db")  # doctest: +SKIP
        >>> get_repository("postgresql://user:pw@db/sagaflow")  # doctest: +SKIP
    """
    url = database_url or (config or load_config()).database_url
    if not url:
        return InMemoryWorkflowRepository()

    scheme = url.split("://", 1)[0] if "://" in url else url
    try:
        backend = _BACKENDS[scheme]
    except KeyError:
        raise ValueError(f"Unsupported database backend: {url}") from None
    return backend(url)


__all__ = [
    "CANCELLABLE_STATES",
    "DeadLetter",
    "ExecutionState",
    "ExecutionStatus",
    "InMemoryWorkflowRepository",
    "PostgresWorkflowRepository",
    "SQLiteWorkflowRepository",
    "StepExecutionRecord",
    "StepOutcome",
    "TERMINAL_STATES",
    "WorkflowExecution",
    "WorkflowRepository",
    "get_repository",
]
