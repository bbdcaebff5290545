"""Error taxonomy for sagaflow."""

from __future__ import annotations

from typing import Optional


class SagaflowError(Exception):
    """Base class for all sagaflow errors."""


class UnknownWorkflow(SagaflowError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Workflow {name!r} is not registered")
        self.name = name


class DuplicateWorkflow(SagaflowError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Workflow {name!r} is already registered")
        self.name = name


class InvalidDefinition(SagaflowError):
    """A workflow or action definition failed validation."""


class InvalidInput(SagaflowError):
    """Workflow input did not match the workflow's input schema."""


class DuplicateExecution(SagaflowError):
    """A single-instance workflow already has an active execution."""

    def __init__(self, execution_id: str, correlation_key: Optional[str] = None):
        super().__init__(
            f"Execution {execution_id} is already active for correlation key {correlation_key!r}"
        )
        self.execution_id = execution_id
        self.correlation_key = correlation_key


class UnknownExecution(SagaflowError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution {execution_id} not found")
        self.execution_id = execution_id


class InvalidState(SagaflowError):
    """Attempted transition is not valid from the execution's current state."""


class ActionError(SagaflowError):
    """A step's action reported failure.

    ``retryable=False`` tells the executor to stop retrying immediately.
    ``attempts`` is filled in by the executor once the retry budget is spent.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.attempts = 0


class StepTimeout(SagaflowError):
    """A step's action did not finish within its timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.attempts = 0


class CompensationFailed(SagaflowError):
    """A compensation exhausted its retries; manual intervention required."""

    def __init__(self, execution_id: str, step_name: str, cause: Exception) -> None:
        super().__init__(
            f"Compensation of step {step_name!r} failed for execution {execution_id}: {cause}"
        )
        self.execution_id = execution_id
        self.step_name = step_name
        self.cause = cause


class DeadLettered(SagaflowError):
    """An event exhausted its delivery attempts for a subscription."""

    def __init__(self, event_id: str, subscription: str, error: str) -> None:
        super().__init__(
            f"Event {event_id} dead-lettered for subscription {subscription!r}: {error}"
        )
        self.event_id = event_id
        self.subscription = subscription
        self.error = error


class DuplicateJob(SagaflowError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Job {name!r} is already scheduled")
        self.name = name


class InvalidSchedule(SagaflowError):
    """A job's schedule expression could not be parsed."""
