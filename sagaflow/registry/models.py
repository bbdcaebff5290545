"""Pydantic models describing workflow definitions."""

from __future__ import annotations

from typing import Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_MAX_ATTEMPTS,
)
from ..utils.retry import compute_backoff


class RetryPolicy(BaseModel):
    """Bounded retry with exponential backoff and jitter."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_base: float = Field(default=DEFAULT_BACKOFF_BASE, ge=0)
    backoff_initial: float = Field(default=0.0, ge=0)
    backoff_max: float = Field(default=DEFAULT_BACKOFF_MAX, ge=0)
    jitter: float = Field(default=DEFAULT_BACKOFF_JITTER, ge=0)

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retrying after failed ``attempt``."""
        return compute_backoff(
            attempt,
            base=self.backoff_base,
            jitter=self.jitter,
            initial=self.backoff_initial,
            cap=self.backoff_max,
        )


class StepDefinition(BaseModel):
    """One step of a workflow: a forward action and its optional inverse."""

    model_config = ConfigDict(frozen=True)

    name: str
    action: str
    compensation: Optional[str] = None
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    compensable: bool = True

    @field_validator("name", "action")
    @classmethod
    def _ensure_non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must be a non-empty string")
        return v


class WorkflowDefinition(BaseModel):
    """Named, ordered sequence of steps executed as one saga."""

    model_config = ConfigDict(frozen=True)

    name: str
    steps: Tuple[StepDefinition, ...]
    input_schema: Optional[Type[BaseModel]] = None
    single_instance: bool = False
    default_retry: RetryPolicy = RetryPolicy()
    non_compensable_log_level: Literal["warning", "error"] = "warning"

    def retry_for(self, step: StepDefinition) -> RetryPolicy:
        return step.retry or self.default_retry

    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]
