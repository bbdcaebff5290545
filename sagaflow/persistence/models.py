"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from ..contracts import Event


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPENSATING = "compensating"
    COMPLETED = "completed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        ExecutionState.COMPLETED,
        ExecutionState.COMPENSATED,
        ExecutionState.COMPENSATION_FAILED,
    }
)

CANCELLABLE_STATES = frozenset({ExecutionState.PENDING, ExecutionState.RUNNING})


class StepOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


class StepExecutionRecord(BaseModel):
    """Record of one forward or compensation outcome for a step."""

    step_name: str
    step_index: int
    attempts: int = 0
    outcome: StepOutcome = StepOutcome.PENDING
    result: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class WorkflowExecution(BaseModel):
    """Persisted workflow execution data."""

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_name: str
    correlation_key: Optional[str] = None
    single_instance: bool = False
    state: ExecutionState = ExecutionState.PENDING
    step_index: int = 0
    steps: list[StepExecutionRecord] = Field(default_factory=list)
    input: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    cancelled: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def active_key(self) -> Optional[str]:
        """Admission key held while a single-instance execution is active."""
        if not self.single_instance or self.correlation_key is None or self.is_terminal:
            return None
        return f"{self.workflow_name}:{self.correlation_key}"

    def last_record_for(
        self, step_index: int, outcome: StepOutcome | None = None
    ) -> StepExecutionRecord | None:
        for record in reversed(self.steps):
            if record.step_index == step_index and (
                outcome is None or record.outcome == outcome
            ):
                return record
        return None

    def step_outcomes(self, step_names: Iterable[str]) -> dict[str, StepOutcome]:
        """Latest outcome per step, ``pending`` for steps not reached yet."""
        outcomes = {name: StepOutcome.PENDING for name in step_names}
        for record in self.steps:
            outcomes[record.step_name] = record.outcome
        return outcomes


class ExecutionStatus(BaseModel):
    """Read-only view of an execution returned to callers."""

    execution_id: str
    workflow_name: str
    correlation_key: Optional[str] = None
    state: ExecutionState
    step_index: int
    step_log: list[StepExecutionRecord] = Field(default_factory=list)
    cancelled: bool = False
    updated_at: datetime

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecutionStatus":
        return cls(
            execution_id=execution.execution_id,
            workflow_name=execution.workflow_name,
            correlation_key=execution.correlation_key,
            state=execution.state,
            step_index=execution.step_index,
            step_log=[record.model_copy() for record in execution.steps],
            cancelled=execution.cancelled,
            updated_at=execution.updated_at,
        )


class DeadLetter(BaseModel):
    """Event that exhausted its delivery attempts for one subscription."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event: Event
    subscription: str
    error: str
    dead_lettered_at: datetime = Field(default_factory=utcnow)
