"""Crash recovery: resuming persisted executions in a fresh engine."""

import asyncio

import pytest

from conftest import Shop, build_registry, eventually
from sagaflow.engine import WorkflowEngine, ownership_key
from sagaflow.persistence import (
    ExecutionState,
    SQLiteWorkflowRepository,
    StepOutcome,
    WorkflowExecution,
)
from sagaflow.registry import (
    ActionRegistry,
    StepDefinition,
    WorkflowDefinition,
    WorkflowRegistry,
)


def _log(execution):
    return [(r.step_name, r.step_index, r.outcome) for r in execution.steps]


async def _uninterrupted(shop: Shop, repository) -> tuple:
    engine = WorkflowEngine(build_registry(shop), repository)
    execution = await engine.start("place-order", {"order_id": "o-7"}, "order_7")
    done = await engine.wait(execution.execution_id)
    return done.state, _log(done)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "crash_in, failing",
    [
        ("reserve-inventory", set()),
        ("create-fulfillment", set()),
        ("refund-payment", {"create-fulfillment"}),
        ("release-inventory", {"charge-payment"}),
    ],
)
async def test_resume_after_crash_matches_uninterrupted_run(tmp_path, crash_in, failing):
    baseline_shop = Shop()
    baseline_shop.failing.update(failing)
    expected_state, expected_log = await _uninterrupted(
        baseline_shop, SQLiteWorkflowRepository(tmp_path / "baseline.db")
    )

    db_path = tmp_path / "wf.db"
    shop = Shop()
    shop.failing.update(failing)
    shop.crash_once.add(crash_in)
    registry = build_registry(shop)

    engine1 = WorkflowEngine(registry, SQLiteWorkflowRepository(db_path))
    execution = await engine1.start("place-order", {"order_id": "o-7"}, "order_7")
    interrupted = await engine1.wait(execution.execution_id)
    assert not interrupted.is_terminal

    engine2 = WorkflowEngine(registry, SQLiteWorkflowRepository(db_path))
    assert await engine2.recover() == [execution.execution_id]
    done = await engine2.wait(execution.execution_id)

    assert done.state == expected_state
    assert _log(done) == expected_log

    # the interrupted action ran twice under one key, so its effect exists once
    keys = [key for action, key in shop.calls if action == crash_in]
    assert len(keys) >= 2 and len(set(keys)) == 1
    assert len([e for e in shop.effects if e.startswith(f"{crash_in}@")]) == 1


@pytest.mark.asyncio
async def test_recover_ignores_terminal_executions(repository, shop):
    engine = WorkflowEngine(build_registry(shop), repository)
    execution = await engine.start("place-order", {"order_id": "o-1"})
    await engine.wait(execution.execution_id)

    fresh = WorkflowEngine(build_registry(Shop()), repository)
    assert await fresh.recover() == []


@pytest.mark.asyncio
async def test_stopped_engine_leaves_execution_resumable(repository):
    shop = Shop()
    shop.crash_once.add("charge-payment")
    registry = build_registry(shop)
    engine = WorkflowEngine(registry, repository)
    execution = await engine.start("place-order", {"order_id": "o-1"})
    await engine.wait(execution.execution_id)
    await engine.stop()

    stored = await repository.get_execution(execution.execution_id)
    assert stored.state == ExecutionState.RUNNING
    assert stored.step_index == 1
    assert [r.outcome for r in stored.steps] == [StepOutcome.SUCCEEDED]

    resumed = WorkflowEngine(registry, repository)
    await resumed.recover()
    done = await resumed.wait(execution.execution_id)
    assert done.state == ExecutionState.COMPLETED


def _gated_registry(calls, gate: asyncio.Event) -> WorkflowRegistry:
    actions = ActionRegistry()

    @actions.action("hold")
    async def hold(context, key):
        calls.append(("hold", key))
        await gate.wait()

    @actions.action("unhold")
    async def unhold(context, key):
        calls.append(("unhold", key))

    @actions.action("ship")
    async def ship(context, key):
        calls.append(("ship", key))

    registry = WorkflowRegistry(actions)
    registry.register(
        WorkflowDefinition(
            name="gated",
            steps=(
                StepDefinition(name="hold", action="hold", compensation="unhold"),
                StepDefinition(name="ship", action="ship"),
            ),
        )
    )
    return registry


@pytest.mark.asyncio
async def test_second_engine_does_not_drive_owned_execution(tmp_path):
    calls, gate = [], asyncio.Event()
    registry = _gated_registry(calls, gate)
    db_path = tmp_path / "wf.db"
    owner = WorkflowEngine(registry, SQLiteWorkflowRepository(db_path))
    other = WorkflowEngine(registry, SQLiteWorkflowRepository(db_path))
    assert owner.owner != other.owner

    execution = await owner.start("gated")
    await eventually(lambda: calls)

    assert await other.recover() == []
    untouched = await other.drive(execution.execution_id)
    assert untouched.state == ExecutionState.RUNNING
    assert untouched.step_index == 0

    gate.set()
    done = await owner.wait(execution.execution_id, timeout=3)
    assert done.state == ExecutionState.COMPLETED
    assert [name for name, _ in calls] == ["hold", "ship"]

    # ownership ends with the drive
    assert await other.recover() == []
    assert await other._leases.acquire(ownership_key(execution.execution_id), other.owner, 60)


@pytest.mark.asyncio
async def test_cancel_from_other_engine_is_applied_by_owner(tmp_path):
    calls, gate = [], asyncio.Event()
    registry = _gated_registry(calls, gate)
    db_path = tmp_path / "wf.db"
    owner = WorkflowEngine(registry, SQLiteWorkflowRepository(db_path))
    other = WorkflowEngine(registry, SQLiteWorkflowRepository(db_path))

    execution = await owner.start("gated")
    await eventually(lambda: calls)
    await other.cancel(execution.execution_id)
    gate.set()

    done = await owner.wait(execution.execution_id, timeout=3)
    assert done.state == ExecutionState.COMPENSATED
    assert done.cancelled
    # the hold step ran once, and only the owner compensated it
    assert [name for name, _ in calls] == ["hold", "unhold"]


@pytest.mark.asyncio
async def test_execution_of_dead_owner_is_recovered_after_lease_expiry(tmp_path):
    calls, gate = [], asyncio.Event()
    gate.set()
    registry = _gated_registry(calls, gate)
    repository = SQLiteWorkflowRepository(tmp_path / "wf.db")
    pending = WorkflowExecution(workflow_name="gated", state=ExecutionState.RUNNING)
    await repository.create_execution(pending)
    # a worker that died mid-step leaves its lease behind until it expires
    assert await repository.acquire_lease(ownership_key(pending.execution_id), "gone", 0.05)

    resumed = WorkflowEngine(registry, repository)
    assert await resumed.recover() == []
    await asyncio.sleep(0.1)
    assert await resumed.recover() == [pending.execution_id]
    done = await resumed.wait(pending.execution_id, timeout=3)
    assert done.state == ExecutionState.COMPLETED
