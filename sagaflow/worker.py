"""Process-level composition of the bus, engine and scheduler."""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any, Optional

from .bus import EventBus, make_bus
from .config import SagaflowConfig, load_config
from .constants import TOPIC_CANCEL_EXECUTION
from .contracts import Event
from .dispatch import Subscription
from .engine import WorkflowEngine
from .errors import InvalidState, UnknownExecution
from .locks import LeaseStore, default_owner, get_lease_store
from .persistence import get_repository
from .persistence.repository import WorkflowRepository
from .registry import WorkflowRegistry
from .scheduler import Job, JobHandler, JobScheduler
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


class Worker:
    """Runs one sagaflow instance: dispatches events, drives executions and
    ticks the scheduler. Executions left unfinished by a previous process are
    resumed on start.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        config: Optional[SagaflowConfig] = None,
        repository: Optional[WorkflowRepository] = None,
        transport: Optional[BaseTransport] = None,
        lease_store: Optional[LeaseStore] = None,
        owner: Optional[str] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        self.transport = transport or get_transport(config=self.config)
        self.bus: EventBus = make_bus(self.transport, self.repository, self.config.bus)
        self.owner = owner or default_owner()
        leases = lease_store or get_lease_store(self.config, self.repository)
        self.engine = WorkflowEngine(
            registry,
            self.repository,
            bus=self.bus,
            max_concurrent_executions=self.config.engine.max_concurrent_executions,
            default_step_timeout=self.config.engine.default_step_timeout,
            default_retry=self.config.engine.default_retry,
            lease_store=leases,
            owner=self.owner,
            lease_ttl=self.config.engine.lease_ttl,
        )
        self.scheduler = JobScheduler(
            self.repository,
            leases,
            bus=self.bus,
            engine=self.engine,
            owner=self.owner,
            lease_ttl=self.config.scheduler.lease_ttl,
            poll_interval=self.config.scheduler.poll_interval,
        )
        self._scheduler_task: Optional[asyncio.Task] = None
        self.bus.subscribe(
            TOPIC_CANCEL_EXECUTION, self._on_cancel, name="sagaflow.cancel"
        )

    async def _on_cancel(self, event: Event) -> None:
        payload = event.payload if isinstance(event.payload, dict) else {}
        execution_id = payload.get("execution_id")
        try:
            await self.engine.cancel(execution_id)
        except (UnknownExecution, InvalidState) as e:
            logger.warning(f"Ignoring cancel request {event.id}: {e}")

    def on(self, topic: str, workflow_name: str) -> Subscription:
        """Start ``workflow_name`` for every event published on ``topic``."""
        self.engine.registry.lookup(workflow_name)
        return self.bus.subscribe(
            topic, self.engine.trigger(workflow_name), name=f"trigger:{workflow_name}"
        )

    def schedule(self, job: Job, handler: Optional[JobHandler] = None) -> Job:
        return self.scheduler.schedule(job, handler)

    async def start(self) -> list[str]:
        await self.bus.start(requeue_inflight=self.config.bus.requeue_on_start)
        recovered = await self.engine.recover()
        self._scheduler_task = asyncio.create_task(
            self.scheduler.run(), name="sagaflow-scheduler"
        )
        logger.info(
            f"Worker {self.owner} started with workflows "
            f"{', '.join(self.engine.registry.names()) or '-'}"
        )
        return recovered

    async def stop(self) -> None:
        if self._scheduler_task is not None:
            self._scheduler_task.cancel()
            await asyncio.gather(self._scheduler_task, return_exceptions=True)
            self._scheduler_task = None
        await self.engine.stop()
        await self.bus.stop()
        logger.info(f"Worker {self.owner} stopped")

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Run until cancelled or ``lifespan`` seconds elapse."""
        await self.start()
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await self.stop()


def load_target(target: str) -> Any:
    """Import ``module:attribute`` and return the attribute."""
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected MODULE:ATTR, got {target!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attribute)
    except AttributeError:
        raise ValueError(f"{module_name!r} has no attribute {attribute!r}") from None


def build_worker(target: str, config: Optional[SagaflowConfig] = None) -> Worker:
    """Resolve ``target`` to a :class:`Worker`.

    The attribute may be a worker, a workflow registry, or a zero-argument
    callable returning either.
    """
    obj = load_target(target)
    if callable(obj) and not isinstance(obj, (Worker, WorkflowRegistry)):
        obj = obj()
    if isinstance(obj, Worker):
        return obj
    if isinstance(obj, WorkflowRegistry):
        return Worker(obj, config=config)
    raise TypeError(f"{target} is neither a Worker nor a WorkflowRegistry")


__all__ = ["Worker", "build_worker", "load_target"]
