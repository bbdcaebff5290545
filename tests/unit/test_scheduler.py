"""Tests for the job scheduler."""

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from sagaflow.errors import DuplicateJob, InvalidSchedule
from sagaflow.locks import InMemoryLeaseStore, RepositoryLeaseStore
from sagaflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from sagaflow.scheduler import Job, JobScheduler

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def minutes(n: float) -> datetime:
    return T0 + timedelta(minutes=n)


class RecordingEngine:
    def __init__(self):
        self.started = []

    async def start_workflow(self, workflow_name, input=None, correlation_key=None):
        self.started.append((workflow_name, input, correlation_key))
        return "exec-1"


class RecordingBus:
    def __init__(self):
        self.published = []

    async def publish(self, topic, payload=None, correlation_key=None):
        self.published.append((topic, payload, correlation_key))


@pytest.mark.asyncio
async def test_first_tick_sets_baseline_without_firing(repository):
    fired = []
    scheduler = JobScheduler(repository, InMemoryLeaseStore())
    scheduler.schedule(Job(name="report", schedule="every 60s"), lambda job, tick: fired.append(tick))

    assert await scheduler.tick(minutes(0.5)) == []
    assert fired == []
    assert await repository.get_last_fired("report") == T0

    assert await scheduler.tick(minutes(1)) == [("report", minutes(1))]
    assert await scheduler.tick(minutes(1.5)) == []
    assert fired == [minutes(1)]
    assert await repository.get_last_fired("report") == minutes(1)


@pytest.mark.asyncio
async def test_outage_catch_up_fires_once(repository):
    fired = []
    scheduler = JobScheduler(repository, InMemoryLeaseStore())
    scheduler.schedule(Job(name="sync", schedule="every 60s"), lambda job, tick: fired.append(tick))

    await scheduler.tick(minutes(0))
    await scheduler.tick(minutes(1))
    # down for five minutes
    await scheduler.tick(minutes(6.5))
    await scheduler.tick(minutes(6.75))

    assert fired == [minutes(1), minutes(6)]


@pytest.mark.asyncio
async def test_concurrent_instances_fire_at_most_once_per_tick(tmp_path):
    repository = SQLiteWorkflowRepository(tmp_path / "sched.db")
    leases = RepositoryLeaseStore(repository)
    counts = Counter()

    async def count(job, tick):
        await asyncio.sleep(0)
        counts[tick] += 1

    schedulers = []
    for i in range(5):
        scheduler = JobScheduler(repository, leases, owner=f"instance-{i}")
        scheduler.schedule(Job(name="heartbeat", schedule="every 60s"), count)
        schedulers.append(scheduler)

    for n in range(0, 8):
        now = minutes(n) + timedelta(seconds=5)
        await asyncio.gather(*(s.tick(now) for s in schedulers))

    assert set(counts) == {minutes(n) for n in range(1, 8)}
    assert all(value == 1 for value in counts.values())


@pytest.mark.asyncio
async def test_workflow_job_starts_execution_with_tick_correlation_key(repository):
    engine = RecordingEngine()
    scheduler = JobScheduler(repository, InMemoryLeaseStore(), engine=engine)
    scheduler.schedule(
        Job(name="nightly", schedule="0 2 * * *", workflow="reconcile", payload={"scope": "all"})
    )

    await scheduler.tick(datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc))
    await scheduler.tick(datetime(2024, 5, 2, 2, 0, 30, tzinfo=timezone.utc))

    assert engine.started == [
        ("reconcile", {"scope": "all"}, "nightly:2024-05-02T02:00:00+00:00")
    ]


@pytest.mark.asyncio
async def test_job_without_handler_or_workflow_publishes_event(repository):
    bus = RecordingBus()
    scheduler = JobScheduler(repository, InMemoryLeaseStore(), bus=bus)
    scheduler.schedule(Job(name="ping", schedule="every 1m", payload={"n": 1}))
    scheduler.schedule(Job(name="pong", schedule="every 1m", topic="custom.pong"))

    await scheduler.tick(minutes(0))
    await scheduler.tick(minutes(1))

    topics = sorted(topic for topic, _, _ in bus.published)
    assert topics == ["custom.pong", "jobs.ping"]
    assert ("jobs.ping", {"n": 1}, f"ping:{minutes(1).isoformat()}") in bus.published


@pytest.mark.asyncio
async def test_handler_failure_still_counts_as_fired(repository):
    calls = []

    def broken(job, tick):
        calls.append(tick)
        raise RuntimeError("downstream unavailable")

    scheduler = JobScheduler(repository, InMemoryLeaseStore())
    scheduler.schedule(Job(name="flaky", schedule="every 60s"), broken)

    await scheduler.tick(minutes(0))
    assert await scheduler.tick(minutes(1)) == [("flaky", minutes(1))]
    assert await scheduler.tick(minutes(1.2)) == []
    assert calls == [minutes(1)]


@pytest.mark.asyncio
async def test_slow_handler_outliving_its_lease_fires_once(repository):
    leases = InMemoryLeaseStore()
    fired = []

    async def slow(job, tick):
        fired.append(tick)
        await asyncio.sleep(0.2)

    first = JobScheduler(repository, leases, owner="instance-a", lease_ttl=0.05)
    second = JobScheduler(repository, leases, owner="instance-b", lease_ttl=0.05)
    for scheduler in (first, second):
        scheduler.schedule(Job(name="export", schedule="every 60s"), slow)

    await first.tick(minutes(0))
    running = asyncio.create_task(first.tick(minutes(1)))
    # the first lease expires while its handler is still running
    await asyncio.sleep(0.1)
    assert await leases.acquire(f"export:{minutes(1).isoformat()}", "instance-b", 0.05)
    assert await second.tick(minutes(1)) == []
    assert await running == [("export", minutes(1))]
    assert fired == [minutes(1)]
    assert await repository.get_last_fired("export") == minutes(1)


@pytest.mark.asyncio
async def test_tick_recorded_after_lease_check_is_not_fired_again(repository):
    fired = []
    leases = InMemoryLeaseStore()
    scheduler = JobScheduler(repository, leases, owner="instance-a")
    scheduler.schedule(Job(name="export", schedule="every 60s"), lambda job, tick: fired.append(tick))
    await scheduler.tick(minutes(0))

    # another instance records the tick between the read and the lease
    original = leases.acquire

    async def acquire_after_other_fired(key, owner, ttl):
        await repository.set_last_fired("export", minutes(1))
        return await original(key, owner, ttl)

    leases.acquire = acquire_after_other_fired
    assert await scheduler.tick(minutes(1)) == []
    assert fired == []


@pytest.mark.asyncio
async def test_disabled_jobs_are_skipped(repository):
    fired = []
    scheduler = JobScheduler(repository, InMemoryLeaseStore())
    scheduler.schedule(Job(name="off", schedule="every 60s", enabled=False), lambda j, t: fired.append(t))

    await scheduler.tick(minutes(0))
    await scheduler.tick(minutes(3))
    assert fired == []
    assert await repository.get_last_fired("off") is None


def test_schedule_validates_jobs():
    scheduler = JobScheduler(InMemoryWorkflowRepository(), InMemoryLeaseStore())
    scheduler.schedule(Job(name="a", schedule="every 60s"), lambda j, t: None)

    with pytest.raises(DuplicateJob):
        scheduler.schedule(Job(name="a", schedule="every 30s"), lambda j, t: None)
    with pytest.raises(InvalidSchedule):
        scheduler.schedule(Job(name="b", schedule="whenever"), lambda j, t: None)
    with pytest.raises(ValueError):
        scheduler.schedule(Job(name="c", schedule="every 60s", workflow="wf"))
    with pytest.raises(ValueError):
        scheduler.schedule(Job(name="d", schedule="every 60s"))

    assert [job.name for job in scheduler.jobs()] == ["a"]
    scheduler.unschedule("a")
    assert scheduler.jobs() == []


@pytest.mark.asyncio
async def test_run_ticks_until_lifespan(repository):
    scheduler = JobScheduler(repository, InMemoryLeaseStore(), poll_interval=0.01)
    scheduler.schedule(Job(name="a", schedule="every 60s"), lambda j, t: None)

    await scheduler.run(lifespan=0.03)

    assert await repository.get_last_fired("a") is not None
