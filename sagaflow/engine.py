"""Durable saga execution engine.

State machine per execution::

    pending -> running(i) -> completed
                          -> compensating(j) -> compensated
                                             -> compensation_failed

Every transition goes through :meth:`WorkflowEngine._transition`, which
persists the execution before the engine moves on. A crash therefore loses at
most the in-flight step, which is replayed with the same idempotency key when
:meth:`WorkflowEngine.recover` resumes the execution.

Only the holder of the lease ``exec:<execution_id>`` drives an execution, so
engines in different processes sharing a repository never run the same
execution twice. The lease is renewed while the execution is driven and
released when the driver stops.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from .constants import (
    CANCELLED_ERROR,
    DEFAULT_LEASE_TTL,
    DEFAULT_MAX_CONCURRENT_EXECUTIONS,
    TOPIC_WORKFLOW_COMPENSATED,
    TOPIC_WORKFLOW_COMPENSATION_FAILED,
    TOPIC_WORKFLOW_COMPLETED,
)
from .contracts import Event, StepContext
from .errors import (
    ActionError,
    CompensationFailed,
    DuplicateExecution,
    InvalidInput,
    InvalidState,
    StepTimeout,
    UnknownExecution,
)
from .execute import StepExecutor
from .locks import LeaseStore, RepositoryLeaseStore, default_owner
from .persistence.models import (
    CANCELLABLE_STATES,
    ExecutionState,
    ExecutionStatus,
    StepExecutionRecord,
    StepOutcome,
    WorkflowExecution,
    utcnow,
)
from .persistence.repository import WorkflowRepository
from .registry import RetryPolicy, StepDefinition, WorkflowDefinition, WorkflowRegistry

if TYPE_CHECKING:
    from .bus import EventBus

logger = logging.getLogger(__name__)

_TERMINAL_TOPICS = {
    ExecutionState.COMPLETED: TOPIC_WORKFLOW_COMPLETED,
    ExecutionState.COMPENSATED: TOPIC_WORKFLOW_COMPENSATED,
    ExecutionState.COMPENSATION_FAILED: TOPIC_WORKFLOW_COMPENSATION_FAILED,
}


def idempotency_key(execution_id: str, step_index: int) -> str:
    return f"{execution_id}:{step_index}"


def ownership_key(execution_id: str) -> str:
    return f"exec:{execution_id}"


class WorkflowEngine:
    """Drives workflow executions from start to a terminal state.

    Executions run as asyncio tasks bounded by ``max_concurrent_executions``.
    A given execution is driven by at most one task at a time; different
    executions share no lock.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        repository: WorkflowRepository,
        bus: Optional["EventBus"] = None,
        executor: Optional[StepExecutor] = None,
        max_concurrent_executions: int = DEFAULT_MAX_CONCURRENT_EXECUTIONS,
        default_step_timeout: Optional[float] = None,
        default_retry: Optional[RetryPolicy] = None,
        lease_store: Optional[LeaseStore] = None,
        owner: Optional[str] = None,
        lease_ttl: float = DEFAULT_LEASE_TTL,
    ) -> None:
        registry.freeze()
        self._registry = registry
        self._repository = repository
        self._bus = bus
        self._executor = executor or StepExecutor(registry.actions)
        self._default_step_timeout = default_step_timeout
        self._default_retry = default_retry
        self._slots = asyncio.Semaphore(max_concurrent_executions)
        self._admission = asyncio.Lock()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._active: Dict[str, asyncio.Task] = {}
        self._leases = lease_store or RepositoryLeaseStore(repository)
        self._lease_ttl = lease_ttl
        self.owner = owner or default_owner()

    @property
    def registry(self) -> WorkflowRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Trigger interface
    async def start(
        self,
        workflow_name: str,
        input: Optional[Dict[str, Any] | BaseModel] = None,
        correlation_key: Optional[str] = None,
    ) -> WorkflowExecution:
        """Create an execution, move it to ``running(0)`` and schedule it.

        Raises:
            UnknownWorkflow: ``workflow_name`` is not registered.
            InvalidInput: ``input`` does not match the workflow's input schema.
            DuplicateExecution: the workflow is single-instance and a
                non-terminal execution exists for ``correlation_key``.
        """
        definition = self._registry.lookup(workflow_name)
        payload = self._validate_input(definition, input)

        execution = WorkflowExecution(
            workflow_name=workflow_name,
            correlation_key=correlation_key,
            single_instance=definition.single_instance,
            input=payload,
        )
        # owned before it is visible to other engines' recover()
        await self._claim(execution.execution_id)
        async with self._admission:
            if definition.single_instance and correlation_key is not None:
                existing = await self._repository.find_by_correlation_key(
                    correlation_key, workflow_name
                )
                for other in existing:
                    if not other.is_terminal:
                        raise DuplicateExecution(other.execution_id, correlation_key)
            await self._repository.create_execution(execution)

        logger.info(
            f"Created execution {execution.execution_id} of {workflow_name} "
            f"for correlation_key={correlation_key}"
        )
        await self._transition(execution, ExecutionState.RUNNING, 0)
        self._spawn(execution.execution_id)
        return execution

    async def start_workflow(
        self,
        workflow_name: str,
        input: Optional[Dict[str, Any] | BaseModel] = None,
        correlation_key: Optional[str] = None,
    ) -> str:
        """Start a workflow and return its execution id.

        Re-triggering a single-instance workflow that is still active returns
        the id of the execution already in progress.
        """
        try:
            execution = await self.start(workflow_name, input, correlation_key)
        except DuplicateExecution as e:
            logger.info(
                f"Execution {e.execution_id} of {workflow_name} already active "
                f"for correlation_key={correlation_key}"
            )
            return e.execution_id
        return execution.execution_id

    async def get_execution_status(self, execution_id: str) -> ExecutionStatus:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise UnknownExecution(execution_id)
        return ExecutionStatus.from_execution(execution)

    async def cancel(self, execution_id: str) -> None:
        """Request cancellation; observed before the next step starts.

        The request is persisted, so whichever worker drives the execution
        sees it. When no worker owns the execution, this engine takes it over
        and runs the compensation itself.

        Raises:
            UnknownExecution: no such execution.
            InvalidState: the execution is not running.
        """
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise UnknownExecution(execution_id)
        if execution.state not in CANCELLABLE_STATES or not (
            await self._repository.request_cancel(execution_id)
        ):
            raise InvalidState(
                f"Cannot cancel execution {execution_id} in state {execution.state.value}"
            )

        logger.info(f"Cancellation requested for execution {execution_id}")
        if await self._claim(execution_id):
            self._spawn(execution_id)
        else:
            logger.debug(f"Execution {execution_id} is driven by another worker")

    cancel_execution = cancel

    def trigger(self, workflow_name: str) -> Callable[[Event], Awaitable[None]]:
        """Return a bus handler starting ``workflow_name`` for each event.

        The event payload becomes the workflow input and the event's
        correlation key the execution's correlation key.
        """

        async def handler(event: Event) -> None:
            payload = event.payload if isinstance(event.payload, dict) else {"payload": event.payload}
            execution_id = await self.start_workflow(
                workflow_name, payload, event.correlation_key
            )
            logger.debug(f"Event {event.id} on {event.topic} -> execution {execution_id}")

        handler.__name__ = handler.__qualname__ = f"trigger:{workflow_name}"
        return handler

    # ------------------------------------------------------------------
    # Worker management
    async def recover(self) -> list[str]:
        """Resume the non-terminal executions no other worker is driving."""
        recovered = []
        for execution in await self._repository.list_executions(active_only=True):
            if not await self._claim(execution.execution_id):
                logger.debug(
                    f"Execution {execution.execution_id} is driven by another worker"
                )
                continue
            self._spawn(execution.execution_id)
            recovered.append(execution.execution_id)
        if recovered:
            logger.info(f"Recovering {len(recovered)} executions")
        return recovered

    async def wait(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> WorkflowExecution:
        """Wait for the in-process worker of ``execution_id`` and return its persisted state."""
        task = self._active.get(execution_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise UnknownExecution(execution_id)
        return execution

    async def join(self) -> None:
        """Wait until no execution is being driven in this process."""
        while self._active:
            await asyncio.wait(set(self._active.values()))

    async def stop(self) -> None:
        """Cancel in-flight workers; their executions resume on the next ``recover``."""
        tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, execution_id: str) -> asyncio.Task:
        task = self._active.get(execution_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._run(execution_id), name=f"sagaflow:{execution_id}")
        self._active[execution_id] = task
        task.add_done_callback(lambda t: self._on_done(execution_id, t))
        return task

    def _on_done(self, execution_id: str, task: asyncio.Task) -> None:
        if self._active.get(execution_id) is task:
            del self._active[execution_id]
        if task.cancelled():
            logger.info(f"Worker for execution {execution_id} stopped")
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Worker for execution {execution_id} crashed: {error!r}; "
                "execution resumes on recovery"
            )

    async def _run(self, execution_id: str) -> None:
        async with self._slots:
            await self.drive(execution_id)

    def _lock_for(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[execution_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Execution loop
    async def drive(self, execution_id: str) -> WorkflowExecution:
        """Run the step/compensation loop until the execution is terminal.

        Returns the execution as last persisted. When another worker owns the
        execution, or takes it over mid-way, this driver stops without
        touching it.
        """
        lock = self._lock_for(execution_id)
        async with lock:
            execution = await self._repository.get_execution(execution_id)
            if execution is None:
                raise UnknownExecution(execution_id)
            if execution.is_terminal:
                return execution
            if not await self._claim(execution_id):
                logger.info(f"Execution {execution_id} is driven by another worker")
                return execution

            renewal = asyncio.create_task(self._keep_lease(execution_id))
            try:
                definition = self._registry.lookup(execution.workflow_name)
                if execution.state == ExecutionState.PENDING:
                    await self._transition(execution, ExecutionState.RUNNING, 0)

                while not execution.is_terminal:
                    if not await self._claim(execution_id):
                        logger.warning(
                            f"Lost ownership of execution {execution_id} at "
                            f"{execution.state.value}({execution.step_index}); stopping"
                        )
                        return execution
                    if execution.state == ExecutionState.RUNNING:
                        await self._run_step(definition, execution)
                    else:
                        await self._compensate_step(definition, execution)
            finally:
                renewal.cancel()
                await asyncio.gather(renewal, return_exceptions=True)
                await self._leases.release(ownership_key(execution_id), self.owner)

        await self._publish_terminal(execution)
        return execution

    async def _claim(self, execution_id: str) -> bool:
        return await self._leases.acquire(
            ownership_key(execution_id), self.owner, self._lease_ttl
        )

    async def _keep_lease(self, execution_id: str) -> None:
        # renews while a long step runs; losing the lease is noticed between steps
        while True:
            await asyncio.sleep(self._lease_ttl / 3)
            if not await self._claim(execution_id):
                return

    async def _run_step(
        self, definition: WorkflowDefinition, execution: WorkflowExecution
    ) -> None:
        index = execution.step_index
        step = definition.steps[index]

        if await self._repository.is_cancel_requested(execution.execution_id):
            record = StepExecutionRecord(
                step_name=step.name,
                step_index=index,
                outcome=StepOutcome.FAILED,
                error=CANCELLED_ERROR,
                started_at=utcnow(),
                finished_at=utcnow(),
            )
            logger.info(
                f"Execution {execution.execution_id} cancelled before step {step.name}"
            )
            await self._transition(
                execution, ExecutionState.COMPENSATING, index - 1, record, cancelled=True
            )
            return

        started_at = utcnow()
        try:
            outcome = await self._executor.run(
                step.action,
                self._context(execution, step, index),
                idempotency_key(execution.execution_id, index),
                self._retry_for(definition, step),
                step.timeout or self._default_step_timeout,
            )
        except (ActionError, StepTimeout) as e:
            record = StepExecutionRecord(
                step_name=step.name,
                step_index=index,
                attempts=e.attempts,
                outcome=StepOutcome.FAILED,
                error=str(e),
                started_at=started_at,
                finished_at=utcnow(),
            )
            logger.warning(
                f"Step {step.name} of execution {execution.execution_id} failed "
                f"after {e.attempts} attempts: {e}; compensating"
            )
            await self._transition(
                execution, ExecutionState.COMPENSATING, index - 1, record
            )
            return

        record = StepExecutionRecord(
            step_name=step.name,
            step_index=index,
            attempts=outcome.attempts,
            outcome=StepOutcome.SUCCEEDED,
            result=outcome.result,
            started_at=started_at,
            finished_at=utcnow(),
        )
        if index + 1 < len(definition.steps):
            next_state = ExecutionState.RUNNING
        else:
            next_state = ExecutionState.COMPLETED
        await self._transition(
            execution, next_state, index + 1, record, outputs={step.name: outcome.result}
        )

    async def _compensate_step(
        self, definition: WorkflowDefinition, execution: WorkflowExecution
    ) -> None:
        index = execution.step_index
        if index < 0:
            await self._transition(execution, ExecutionState.COMPENSATED, -1)
            return

        step = definition.steps[index]
        if execution.last_record_for(index, StepOutcome.SUCCEEDED) is None:
            logger.debug(f"Step {step.name} never succeeded; nothing to compensate")
            await self._transition(execution, ExecutionState.COMPENSATING, index - 1)
            return

        if not step.compensable or step.compensation is None:
            if not step.compensable:
                level = logging.getLevelName(definition.non_compensable_log_level.upper())
                logger.log(
                    level,
                    f"Skipping compensation of non-compensable step {step.name} "
                    f"for execution {execution.execution_id}",
                )
            else:
                logger.debug(f"Step {step.name} has no compensation action")
            await self._transition(execution, ExecutionState.COMPENSATING, index - 1)
            return

        started_at = utcnow()
        try:
            outcome = await self._executor.run(
                step.compensation,
                self._context(execution, step, index),
                idempotency_key(execution.execution_id, index),
                self._retry_for(definition, step),
                step.timeout or self._default_step_timeout,
            )
        except (ActionError, StepTimeout) as e:
            failure = CompensationFailed(execution.execution_id, step.name, e)
            logger.error(f"{failure}; manual intervention required")
            record = StepExecutionRecord(
                step_name=step.name,
                step_index=index,
                attempts=e.attempts,
                outcome=StepOutcome.COMPENSATION_FAILED,
                error=str(e),
                started_at=started_at,
                finished_at=utcnow(),
            )
            await self._transition(
                execution, ExecutionState.COMPENSATION_FAILED, index, record
            )
            return

        record = StepExecutionRecord(
            step_name=step.name,
            step_index=index,
            attempts=outcome.attempts,
            outcome=StepOutcome.COMPENSATED,
            result=outcome.result,
            started_at=started_at,
            finished_at=utcnow(),
        )
        await self._transition(execution, ExecutionState.COMPENSATING, index - 1, record)

    async def _transition(
        self,
        execution: WorkflowExecution,
        state: ExecutionState,
        step_index: int,
        record: Optional[StepExecutionRecord] = None,
        outputs: Optional[Dict[str, Any]] = None,
        cancelled: Optional[bool] = None,
    ) -> None:
        """Apply a state change to ``execution`` and persist it."""
        previous = execution.state
        execution.state = state
        execution.step_index = step_index
        if record is not None:
            execution.steps.append(record)
        if outputs:
            execution.context.update(outputs)
        if cancelled is not None:
            execution.cancelled = cancelled
        execution.updated_at = utcnow()
        await self._repository.save_execution(execution)
        logger.debug(
            f"Execution {execution.execution_id}: {previous.value} -> "
            f"{state.value}({step_index})"
        )

    # ------------------------------------------------------------------
    # Helpers
    def _retry_for(
        self, definition: WorkflowDefinition, step: StepDefinition
    ) -> RetryPolicy:
        # engine-wide default applies only where the definition sets none
        if (
            step.retry is None
            and self._default_retry is not None
            and "default_retry" not in definition.model_fields_set
        ):
            return self._default_retry
        return definition.retry_for(step)

    @staticmethod
    def _validate_input(
        definition: WorkflowDefinition, input: Optional[Dict[str, Any] | BaseModel]
    ) -> Dict[str, Any]:
        if isinstance(input, BaseModel):
            input = input.model_dump(mode="json")
        input = dict(input or {})
        if definition.input_schema is None:
            try:
                return to_jsonable_python(input)
            except PydanticSerializationError as e:
                raise InvalidInput(
                    f"Input for workflow {definition.name!r} is not serializable: {e}"
                ) from e
        try:
            return definition.input_schema.model_validate(input).model_dump(mode="json")
        except ValidationError as e:
            raise InvalidInput(
                f"Invalid input for workflow {definition.name!r}: {e}"
            ) from e

    @staticmethod
    def _context(
        execution: WorkflowExecution, step: StepDefinition, index: int
    ) -> StepContext:
        return StepContext(
            execution_id=execution.execution_id,
            workflow_name=execution.workflow_name,
            correlation_key=execution.correlation_key,
            step_name=step.name,
            step_index=index,
            input=execution.input,
            outputs=execution.context,
        )

    async def _publish_terminal(self, execution: WorkflowExecution) -> None:
        if self._bus is None:
            return
        topic = _TERMINAL_TOPICS[execution.state]
        payload: Dict[str, Any] = {
            "execution_id": execution.execution_id,
            "workflow_name": execution.workflow_name,
            "state": execution.state.value,
        }
        if execution.state == ExecutionState.COMPENSATION_FAILED and execution.steps:
            payload["error"] = execution.steps[-1].error
        try:
            await self._bus.publish(
                topic, payload, correlation_key=execution.correlation_key
            )
        except Exception as e:
            logger.error(
                f"Failed to publish {topic} for execution {execution.execution_id}: {e}"
            )
            raise
        logger.info(
            f"Execution {execution.execution_id} of {execution.workflow_name} "
            f"finished: {execution.state.value}"
        )
