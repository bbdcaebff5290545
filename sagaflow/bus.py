"""Asynchronous publish/subscribe bus with at-least-once delivery.

Each subscribed topic gets one consumer task that moves events from the
transport into a bounded queue, and a pool of delivery workers that hand
events to the :class:`~sagaflow.dispatch.SubscriberDispatcher`. A handler
failure is retried by republishing the event addressed to that handler only;
once ``max_deliveries`` is reached the event is dead-lettered.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .constants import (
    DEAD_LETTER_TOPIC,
    DEFAULT_MAX_DELIVERIES,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_WORKERS_PER_TOPIC,
)
from .contracts import Event
from .dispatch import DispatchReport, Handler, SubscriberDispatcher, Subscription
from .errors import DeadLettered
from .persistence.models import DeadLetter
from .persistence.repository import WorkflowRepository
from .transports import BaseTransport
from .utils import retry as retry_utils

logger = logging.getLogger(__name__)


class EventBus:
    """Publish/subscribe over a :class:`BaseTransport`."""

    def __init__(
        self,
        transport: BaseTransport,
        repository: Optional[WorkflowRepository] = None,
        dispatcher: Optional[SubscriberDispatcher] = None,
        max_deliveries: int = DEFAULT_MAX_DELIVERIES,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        workers_per_topic: int = DEFAULT_WORKERS_PER_TOPIC,
        dead_letter_topic: str = DEAD_LETTER_TOPIC,
        redelivery_delay: float = 0.0,
        drain_timeout: float = 5.0,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._dispatcher = dispatcher or SubscriberDispatcher()
        self._max_deliveries = max_deliveries
        self._queue_size = queue_size
        self._workers_per_topic = workers_per_topic
        self._dead_letter_topic = dead_letter_topic
        self._redelivery_delay = redelivery_delay
        self._drain_timeout = drain_timeout
        self._queues: Dict[str, asyncio.Queue] = {}
        self._consumers: Dict[str, asyncio.Task] = {}
        self._workers: Dict[str, List[asyncio.Task]] = {}
        self._running = False

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    @property
    def dead_letter_topic(self) -> str:
        return self._dead_letter_topic

    # ------------------------------------------------------------------
    async def publish(
        self,
        topic: str,
        payload: Any = None,
        correlation_key: Optional[str] = None,
    ) -> Event:
        """Enqueue an event; returns once the transport accepted it."""
        event = Event(
            topic=topic,
            payload=payload if payload is not None else {},
            correlation_key=correlation_key,
        )
        await self._transport.publish(topic, event)
        logger.debug(f"Published event {event.id} on {topic}")
        return event

    def subscribe(
        self, topic: str, handler: Handler, name: Optional[str] = None
    ) -> Subscription:
        subscription = self._dispatcher.add(topic, handler, name)
        if self._running and topic not in self._consumers:
            self._start_topic(topic)
        return subscription

    async def handle(self, event: Event) -> DispatchReport:
        """Deliver one event and schedule redelivery for failed handlers."""
        report = await self._dispatcher.dispatch(event)
        for subscription, error in report.failed.items():
            try:
                await self._redeliver(event, subscription, error)
            except DeadLettered as dead:
                await self._dead_letter(event, dead)
        return report

    async def _redeliver(self, event: Event, subscription: str, error: Exception) -> None:
        if event.attempt >= self._max_deliveries:
            raise DeadLettered(event.id, subscription, f"{type(error).__name__}: {error}")
        await retry_utils.schedule_retry(self._redelivery_delay)
        await self._transport.publish(event.topic, event.redelivery(subscription))
        logger.info(
            f"Redelivering event {event.id} on {event.topic} to {subscription} "
            f"(attempt {event.attempt + 1}/{self._max_deliveries})"
        )

    async def _dead_letter(self, event: Event, dead: DeadLettered) -> DeadLetter:
        dead_letter = DeadLetter(
            event=event.model_copy(update={"target": dead.subscription}),
            subscription=dead.subscription,
            error=dead.error,
        )
        logger.error(str(dead))
        if self._repository is not None:
            await self._repository.add_dead_letter(dead_letter)
        await self._transport.publish(
            self._dead_letter_topic,
            Event(
                topic=self._dead_letter_topic,
                payload=dead_letter.model_dump(mode="json"),
                correlation_key=event.correlation_key,
            ),
        )
        return dead_letter

    async def replay(self, dead_letter: DeadLetter | str) -> Event:
        """Republish a dead-lettered event to its subscription with a fresh budget."""
        if isinstance(dead_letter, str):
            if self._repository is None:
                raise RuntimeError("Replaying by id requires a repository")
            found = await self._repository.remove_dead_letter(dead_letter)
            if found is None:
                raise KeyError(f"Dead letter {dead_letter} not found")
            dead_letter = found
        elif self._repository is not None:
            await self._repository.remove_dead_letter(dead_letter.id)

        event = dead_letter.event.model_copy(
            update={"attempt": 1, "target": dead_letter.subscription}
        )
        await self._transport.publish(event.topic, event)
        logger.info(f"Replayed event {event.id} on {event.topic} to {dead_letter.subscription}")
        return event

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self, requeue_inflight: bool = False) -> None:
        """Connect and start consuming every subscribed topic.

        With ``requeue_inflight`` events a previous consumer took but never
        acknowledged are put back first. Only safe when no other consumer of
        these topics is running.
        """
        if self._running:
            return
        await self._transport.connect()
        if requeue_inflight:
            for topic in self._dispatcher.topics():
                await self._transport.requeue_inflight(topic)
        self._running = True
        for topic in self._dispatcher.topics():
            self._start_topic(topic)

    def _start_topic(self, topic: str) -> None:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues[topic] = queue
        self._consumers[topic] = asyncio.create_task(
            self._consume(topic, queue), name=f"sagaflow-consume:{topic}"
        )
        self._workers[topic] = [
            asyncio.create_task(self._deliver(topic, queue), name=f"sagaflow-deliver:{topic}")
            for _ in range(self._workers_per_topic)
        ]
        logger.debug(f"Started {self._workers_per_topic} delivery workers for {topic}")

    async def _consume(self, topic: str, queue: asyncio.Queue) -> None:
        async for raw, event in self._transport.subscribe(topic):
            try:
                await queue.put((raw, event))
            except asyncio.CancelledError:
                await self._transport.nack(raw, requeue=True)
                raise

    async def _deliver(self, topic: str, queue: asyncio.Queue) -> None:
        while True:
            raw, event = await queue.get()
            try:
                await self.handle(event)
            except asyncio.CancelledError:
                await self._transport.nack(raw, requeue=True)
                raise
            except Exception as e:
                logger.error(f"Delivery of event {event.id} on {topic} failed: {e}")
                await self._transport.nack(raw, requeue=True)
            else:
                await self._transport.ack(raw)
            finally:
                queue.task_done()

    async def stop(self) -> None:
        """Stop consuming, drain queued events, then stop delivery workers."""
        if not self._running:
            return
        self._running = False

        consumers = list(self._consumers.values())
        for task in consumers:
            task.cancel()
        await asyncio.gather(*consumers, return_exceptions=True)

        queues = list(self._queues.items())
        try:
            await asyncio.wait_for(
                asyncio.gather(*(queue.join() for _, queue in queues)),
                timeout=self._drain_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Timed out draining event queues; requeueing remaining events")

        workers = [task for tasks in self._workers.values() for task in tasks]
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        for _, queue in queues:
            while not queue.empty():
                raw, _event = queue.get_nowait()
                await self._transport.nack(raw, requeue=True)

        self._queues.clear()
        self._consumers.clear()
        self._workers.clear()
        await self._transport.disconnect()

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Dispatch events until cancelled or ``lifespan`` seconds elapse."""
        await self.start()
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await self.stop()


def make_bus(
    transport: BaseTransport,
    repository: Optional[WorkflowRepository],
    settings: Any,
) -> EventBus:
    """Build an :class:`EventBus` from a :class:`~sagaflow.config.BusConfig`."""
    return EventBus(
        transport,
        repository=repository,
        max_deliveries=settings.max_deliveries,
        queue_size=settings.queue_size,
        workers_per_topic=settings.workers_per_topic,
        dead_letter_topic=settings.dead_letter_topic,
        redelivery_delay=settings.redelivery_delay,
    )


__all__ = ["EventBus", "make_bus"]
