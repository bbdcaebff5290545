"""Recurring job scheduler with at-most-once firing per tick.

Any number of scheduler instances may run against the same repository and
lease store. For each due tick the instances race for the lease
``"<job>:<tick>"``; only the winner fires the job and records the tick.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_LEASE_TTL, DEFAULT_POLL_INTERVAL
from .errors import DuplicateJob
from .locks import LeaseStore, RepositoryLeaseStore, default_owner
from .persistence.repository import WorkflowRepository
from .schedules import Schedule, parse_schedule

if TYPE_CHECKING:
    from .bus import EventBus
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

JobHandler = Callable[["Job", datetime], Any]


class Job(BaseModel):
    """A recurring trigger."""

    name: str
    schedule: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    workflow: Optional[str] = None
    topic: Optional[str] = None
    enabled: bool = True
    last_fired: Optional[datetime] = None

    def event_topic(self) -> str:
        return self.topic or f"jobs.{self.name}"


@dataclass
class _ScheduledJob:
    job: Job
    schedule: Schedule
    handler: Optional[JobHandler]


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class JobScheduler:
    def __init__(
        self,
        repository: WorkflowRepository,
        lease_store: Optional[LeaseStore] = None,
        bus: Optional["EventBus"] = None,
        engine: Optional["WorkflowEngine"] = None,
        owner: Optional[str] = None,
        lease_ttl: float = DEFAULT_LEASE_TTL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._repository = repository
        self._leases = lease_store or RepositoryLeaseStore(repository)
        self._bus = bus
        self._engine = engine
        self.owner = owner or default_owner()
        self._lease_ttl = lease_ttl
        self._poll_interval = poll_interval
        self._jobs: Dict[str, _ScheduledJob] = {}

    def schedule(self, job: Job, handler: Optional[JobHandler] = None) -> Job:
        """Register a recurring job.

        Raises:
            DuplicateJob: a job with the same name is already scheduled.
            InvalidSchedule: ``job.schedule`` cannot be parsed.
        """
        if job.name in self._jobs:
            raise DuplicateJob(job.name)
        schedule = parse_schedule(job.schedule)
        if handler is None:
            if job.workflow is not None and self._engine is None:
                raise ValueError(f"Job {job.name!r} starts a workflow but no engine is set")
            if job.workflow is None and self._bus is None:
                raise ValueError(f"Job {job.name!r} needs a handler, a workflow or a bus")
        self._jobs[job.name] = _ScheduledJob(job=job, schedule=schedule, handler=handler)
        logger.info(f"Scheduled job {job.name} ({job.schedule})")
        return job

    def unschedule(self, name: str) -> None:
        self._jobs.pop(name, None)

    def jobs(self) -> List[Job]:
        return [entry.job for entry in self._jobs.values()]

    async def tick(self, now: Optional[datetime] = None) -> List[tuple[str, datetime]]:
        """Fire every job whose latest due tick has not fired yet.

        Returns the ``(job name, tick)`` pairs this instance fired.
        """
        now = _as_utc(now or datetime.now(timezone.utc))
        fired = []
        for entry in list(self._jobs.values()):
            if not entry.job.enabled:
                continue
            tick = await self._tick_job(entry, now)
            if tick is not None:
                fired.append((entry.job.name, tick))
        return fired

    async def _tick_job(self, entry: _ScheduledJob, now: datetime) -> Optional[datetime]:
        job = entry.job
        due = entry.schedule.latest_tick(now)
        last = await self._repository.get_last_fired(job.name)

        if last is None:
            await self._repository.set_last_fired(job.name, due)
            job.last_fired = due
            logger.debug(f"Job {job.name} baseline set to {due.isoformat()}")
            return None

        last = _as_utc(last)
        job.last_fired = last
        if due <= last:
            return None

        lease = f"{job.name}:{due.isoformat()}"
        if not await self._leases.acquire(lease, self.owner, self._lease_ttl):
            logger.debug(f"Job {job.name} tick {due.isoformat()} taken by another instance")
            return None

        # the tick may have been recorded since ``last`` was read
        recorded = await self._repository.get_last_fired(job.name)
        if recorded is not None and _as_utc(recorded) >= due:
            return None

        # recorded before firing; the lease may expire while the handler runs
        await self._repository.set_last_fired(job.name, due)
        job.last_fired = due
        await self._fire(entry, due)
        return due

    async def _fire(self, entry: _ScheduledJob, tick: datetime) -> None:
        job = entry.job
        correlation_key = f"{job.name}:{tick.isoformat()}"
        logger.info(f"Firing job {job.name} for tick {tick.isoformat()}")
        try:
            if entry.handler is not None:
                outcome = entry.handler(job, tick)
                if inspect.isawaitable(outcome):
                    await outcome
            elif job.workflow is not None:
                await self._engine.start_workflow(
                    job.workflow, job.payload, correlation_key=correlation_key
                )
            else:
                await self._bus.publish(
                    job.event_topic(), job.payload, correlation_key=correlation_key
                )
        except Exception as e:
            logger.error(f"Job {job.name} failed for tick {tick.isoformat()}: {e}")

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Tick every ``poll_interval`` seconds until cancelled or ``lifespan`` elapses."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            await asyncio.sleep(self._poll_interval)


__all__ = ["Job", "JobHandler", "JobScheduler"]
