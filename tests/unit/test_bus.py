"""Tests for the event bus: delivery, redelivery and dead-lettering."""

import pytest

from conftest import eventually
from sagaflow.bus import EventBus
from sagaflow.constants import DEAD_LETTER_TOPIC
from sagaflow.contracts import Event
from sagaflow.persistence import InMemoryWorkflowRepository
from sagaflow.transports.inmemory import InMemoryTransport


def _bus(repository=None, max_deliveries=3):
    return EventBus(
        InMemoryTransport(poll_interval=0.001),
        repository=repository or InMemoryWorkflowRepository(),
        max_deliveries=max_deliveries,
        workers_per_topic=2,
    )


@pytest.mark.asyncio
async def test_publish_enqueues_on_transport():
    bus = _bus()
    event = await bus.publish("orders", {"id": 1}, correlation_key="order_1")

    assert event.topic == "orders"
    assert event.correlation_key == "order_1"
    assert event.attempt == 1
    assert bus.transport.pending("orders") == 1


@pytest.mark.asyncio
async def test_events_are_dispatched_to_every_subscriber():
    bus = _bus()
    seen = []
    bus.subscribe("orders", lambda e: seen.append(("a", e.payload["id"])), name="a")
    bus.subscribe("orders", lambda e: seen.append(("b", e.payload["id"])), name="b")

    await bus.start()
    try:
        await bus.publish("orders", {"id": 1})
        await eventually(lambda: len(seen) == 2)
    finally:
        await bus.stop()

    assert sorted(seen) == [("a", 1), ("b", 1)]


@pytest.mark.parametrize("failures", [0, 1, 2, 3, 4])
@pytest.mark.asyncio
async def test_failing_handler_is_retried_or_dead_lettered_never_both(failures):
    repository = InMemoryWorkflowRepository()
    bus = _bus(repository, max_deliveries=3)
    attempts = []
    succeeded = []
    sibling = []

    def flaky(event):
        attempts.append(event.attempt)
        if len(attempts) <= failures:
            raise RuntimeError(f"failure {len(attempts)}")
        succeeded.append(event.id)

    bus.subscribe("orders", flaky, name="flaky")
    bus.subscribe("orders", lambda e: sibling.append(e.id), name="sibling")

    await bus.start()
    try:
        published = await bus.publish("orders", {"id": 1})
        if failures < 3:
            await eventually(lambda: succeeded)
        else:
            await eventually(repository.list_dead_letters)
        await eventually(lambda: sibling)
    finally:
        await bus.stop()

    dead_letters = await repository.list_dead_letters()
    if failures < 3:
        assert succeeded == [published.id]
        assert dead_letters == []
        assert attempts == list(range(1, failures + 2))
    else:
        assert succeeded == []
        assert len(dead_letters) == 1
        assert dead_letters[0].subscription == "flaky"
        assert dead_letters[0].event.id == published.id
        assert "failure 3" in dead_letters[0].error
        assert attempts == [1, 2, 3]
        assert bus.transport.pending(DEAD_LETTER_TOPIC) == 1
    # redeliveries are addressed to the failed handler only
    assert sibling == [published.id]


@pytest.mark.asyncio
async def test_replay_redelivers_with_fresh_budget():
    repository = InMemoryWorkflowRepository()
    bus = _bus(repository, max_deliveries=1)
    broken = True
    handled = []

    def handler(event):
        if broken:
            raise RuntimeError("down")
        handled.append(event.attempt)

    bus.subscribe("orders", handler, name="handler")
    await bus.start()
    try:
        await bus.publish("orders", {"id": 1})
        dead_letters = await eventually(repository.list_dead_letters)

        broken = False
        replayed = await bus.replay(dead_letters[0].id)
        await eventually(lambda: handled)
    finally:
        await bus.stop()

    assert replayed.attempt == 1
    assert replayed.target == "handler"
    assert handled == [1]
    assert await repository.list_dead_letters() == []


@pytest.mark.asyncio
async def test_replay_unknown_dead_letter_raises():
    bus = _bus()
    with pytest.raises(KeyError):
        await bus.replay("missing")


@pytest.mark.asyncio
async def test_subscribe_after_start_begins_consuming():
    bus = _bus()
    seen = []
    await bus.start()
    try:
        bus.subscribe("late", lambda e: seen.append(e.payload), name="late")
        await bus.publish("late", {"ok": True})
        await eventually(lambda: seen)
    finally:
        await bus.stop()
    assert seen == [{"ok": True}]


@pytest.mark.asyncio
async def test_stop_keeps_undelivered_events_on_transport():
    bus = _bus()
    bus.subscribe("orders", lambda e: None, name="h")
    await bus.start()
    await bus.stop()

    await bus.publish("orders", {"id": 2})
    assert bus.transport.pending("orders") == 1


@pytest.mark.asyncio
async def test_handle_reports_per_subscription_outcome():
    bus = _bus()

    def broken(event):
        raise RuntimeError("x")

    bus.subscribe("orders", broken, name="broken")
    bus.subscribe("orders", lambda e: None, name="ok")

    report = await bus.handle(Event(topic="orders"))

    assert report.delivered == ["ok"]
    assert set(report.failed) == {"broken"}
    redelivery = Event.from_json(bus.transport._queues["orders"][0][1])
    assert redelivery.target == "broken"
    assert redelivery.attempt == 2
