"""Core message contracts for the sagaflow event bus and actions."""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    return int(time.time() * 1000)


class Event(BaseModel):
    """
    Envelope exchanged over the bus. ``id`` is stable across redeliveries so
    consumers can deduplicate; ``attempt`` and ``target`` describe delivery.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    topic: str
    payload: Any = Field(default_factory=dict)
    correlation_key: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)
    attempt: int = 1
    target: Optional[str] = Field(
        default=None, description="Subscription a redelivery is addressed to"
    )

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "Event":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)

    def redelivery(self, target: str) -> "Event":
        """Copy of this event addressed to a single subscription, one attempt later."""
        return self.model_copy(update={"attempt": self.attempt + 1, "target": target})


class StepContext(BaseModel):
    """What an action sees when it is invoked for a step."""

    execution_id: str
    workflow_name: str
    correlation_key: Optional[str] = None
    step_name: str
    step_index: int
    input: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
