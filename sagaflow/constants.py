"""Shared defaults for sagaflow."""

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 1.5
DEFAULT_BACKOFF_JITTER = 0.5
DEFAULT_BACKOFF_MAX = 60.0

DEFAULT_MAX_DELIVERIES = 5
DEFAULT_QUEUE_SIZE = 100
DEFAULT_WORKERS_PER_TOPIC = 4
DEAD_LETTER_TOPIC = "sagaflow.deadletter"

DEFAULT_MAX_CONCURRENT_EXECUTIONS = 16
DEFAULT_LEASE_TTL = 60.0
DEFAULT_POLL_INTERVAL = 1.0

TOPIC_WORKFLOW_COMPLETED = "workflow.completed"
TOPIC_WORKFLOW_COMPENSATED = "workflow.compensated"
TOPIC_WORKFLOW_COMPENSATION_FAILED = "workflow.compensation_failed"

CANCELLED_ERROR = "cancelled"
TOPIC_CANCEL_EXECUTION = "sagaflow.cancel"
