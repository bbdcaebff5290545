"""Shared fixtures: an in-process shop with a place-order saga."""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from pydantic import BaseModel

from sagaflow.contracts import StepContext
from sagaflow.errors import ActionError
from sagaflow.persistence import InMemoryWorkflowRepository
from sagaflow.registry import (
    ActionRegistry,
    RetryPolicy,
    StepDefinition,
    WorkflowDefinition,
    WorkflowRegistry,
)

NO_BACKOFF = RetryPolicy(max_attempts=3, backoff_base=0, jitter=0)


class OrderInput(BaseModel):
    order_id: str
    amount: float = 10.0


class SimulatedCrash(BaseException):
    """Stands in for the process dying in the middle of an action."""


class Shop:
    """Fake downstream services that record every call they receive."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.attempts: Counter = Counter()
        self.failing: Set[str] = set()
        self.fail_times: Dict[str, int] = {}
        self.effects: Dict[str, Any] = {}
        self.crash_once: Set[str] = set()

    def should_fail(self, action: str) -> bool:
        if action in self.failing:
            return True
        remaining = self.fail_times.get(action, 0)
        if remaining > 0:
            self.fail_times[action] = remaining - 1
            return True
        return False

    def make_action(self, action: str):
        async def run(context: StepContext, key: str) -> Dict[str, Any]:
            self.calls.append((action, key))
            self.attempts[action] += 1
            await asyncio.sleep(0)
            if self.should_fail(action):
                raise ActionError(f"{action} unavailable")
            # keyed by idempotency key so replays do not duplicate effects
            self.effects[f"{action}@{key}"] = context.input.get("order_id")
            if action in self.crash_once:
                self.crash_once.discard(action)
                raise SimulatedCrash(action)
            return {"action": action, "order_id": context.input.get("order_id")}

        run.__name__ = action
        return run

    def invoked(self, action: str) -> int:
        return sum(1 for name, _ in self.calls if name == action)

    def order(self, prefix: Optional[str] = None) -> List[str]:
        return [
            name for name, _ in self.calls if prefix is None or name.startswith(prefix)
        ]


PLACE_ORDER_ACTIONS = [
    "reserve-inventory",
    "release-inventory",
    "charge-payment",
    "refund-payment",
    "create-fulfillment",
    "cancel-fulfillment",
]


def build_registry(shop: Shop, single_instance: bool = False) -> WorkflowRegistry:
    actions = ActionRegistry()
    for name in PLACE_ORDER_ACTIONS:
        actions.register(name, shop.make_action(name))
    registry = WorkflowRegistry(actions)
    registry.register(
        WorkflowDefinition(
            name="place-order",
            input_schema=OrderInput,
            single_instance=single_instance,
            default_retry=NO_BACKOFF,
            steps=(
                StepDefinition(
                    name="reserve-inventory",
                    action="reserve-inventory",
                    compensation="release-inventory",
                ),
                StepDefinition(
                    name="charge-payment",
                    action="charge-payment",
                    compensation="refund-payment",
                ),
                StepDefinition(
                    name="create-fulfillment",
                    action="create-fulfillment",
                    compensation="cancel-fulfillment",
                ),
            ),
        )
    )
    return registry


@pytest.fixture
def shop() -> Shop:
    return Shop()


@pytest.fixture
def registry(shop: Shop) -> WorkflowRegistry:
    return build_registry(shop)


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from any config.yaml or database in the environment."""
    monkeypatch.setenv("SAGAFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("SAGAFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SAGAFLOW_TRANSPORT", raising=False)


async def eventually(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll ``predicate`` (sync or async) until it returns a truthy value."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
