"""sagaflow: durable saga workflows driven by events and schedules."""

from .bus import EventBus
from .contracts import Event, StepContext
from .dispatch import DispatchReport, SubscriberDispatcher, Subscription
from .engine import WorkflowEngine
from .errors import (
    ActionError,
    CompensationFailed,
    DeadLettered,
    DuplicateExecution,
    DuplicateJob,
    DuplicateWorkflow,
    InvalidDefinition,
    InvalidInput,
    InvalidSchedule,
    InvalidState,
    SagaflowError,
    StepTimeout,
    UnknownExecution,
    UnknownWorkflow,
)
from .execute import StepExecutor
from .persistence import ExecutionState, ExecutionStatus, get_repository
from .registry import (
    ActionRegistry,
    RetryPolicy,
    StepDefinition,
    WorkflowDefinition,
    WorkflowRegistry,
)
from .scheduler import Job, JobScheduler
from .transports import get_transport
from .worker import Worker

__version__ = "0.1.0"
__all__ = [
    "ActionError",
    "ActionRegistry",
    "CompensationFailed",
    "DeadLettered",
    "DispatchReport",
    "DuplicateExecution",
    "DuplicateJob",
    "DuplicateWorkflow",
    "Event",
    "EventBus",
    "ExecutionState",
    "ExecutionStatus",
    "InvalidDefinition",
    "InvalidInput",
    "InvalidSchedule",
    "InvalidState",
    "Job",
    "JobScheduler",
    "RetryPolicy",
    "SagaflowError",
    "StepContext",
    "StepDefinition",
    "StepExecutor",
    "StepTimeout",
    "SubscriberDispatcher",
    "Subscription",
    "UnknownExecution",
    "UnknownWorkflow",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowRegistry",
    "Worker",
    "get_repository",
    "get_transport",
]
