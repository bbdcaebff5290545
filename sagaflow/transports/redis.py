"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import Event
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawMessage]):
    """Redis-based transport for distributed messaging.

    Each topic is a list ``sagaflow:<topic>``. Consumers atomically move an
    entry to ``sagaflow:<topic>:processing`` and remove it on ``ack``, so a
    consumer crash leaves the event recoverable via :meth:`requeue_inflight`.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    @staticmethod
    def _queue(topic: str) -> str:
        return f"sagaflow:{topic}"

    @staticmethod
    def _processing(topic: str) -> str:
        return f"sagaflow:{topic}:processing"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: Event) -> None:
        """Publish event to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, Event]]:
        """Subscribe to events from Redis queue."""
        if not self._redis:
            await self.connect()

        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            message_json = await self._redis.blmove(
                self._queue(topic), self._processing(topic), 1, "RIGHT", "LEFT"
            )
            if message_json is None:
                continue

            raw = (topic, message_json)
            try:
                event = Event.from_json(message_json)
            except ValueError as e:
                logger.error(f"Discarding unparseable message on {topic}: {e}")
                await self.ack(raw)
                continue
            yield raw, event

    async def ack(self, raw_message: RawMessage) -> None:
        """Remove the message from the processing list."""
        topic, message_json = raw_message
        await self._redis.lrem(self._processing(topic), 1, message_json)

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        topic, message_json = raw_message
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing(topic), 1, message_json)
            if requeue:
                pipe.rpush(self._queue(topic), message_json)
            await pipe.execute()

    async def requeue_inflight(self, topic: str) -> int:
        """Move events left in the processing list back onto the queue."""
        if not self._redis:
            await self.connect()
        moved = 0
        while await self._redis.lmove(
            self._processing(topic), self._queue(topic), "LEFT", "RIGHT"
        ):
            moved += 1
        if moved:
            logger.info(f"Requeued {moved} in-flight events on {topic}")
        return moved
