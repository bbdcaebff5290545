"""Time-bounded leases.

The scheduler takes one per job tick to elect a single firer; the engine takes
one per execution id so only one worker drives an execution at a time.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from typing import Any, Dict, Optional, Protocol, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .config import SagaflowConfig, load_config
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

# delete only while the caller still owns the key
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LeaseStore(Protocol):
    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        """Take ``key`` for ``ttl`` seconds; ``False`` if another owner holds it.

        Acquiring a lease the caller already holds succeeds and extends it.
        """

    async def release(self, key: str, owner: str) -> None:
        """Give ``key`` up early; a no-op unless ``owner`` holds it."""


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class InMemoryLeaseStore:
    """Leases for instances sharing one process."""

    def __init__(self) -> None:
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        async with self._lock:
            now = time.time()
            held = self._leases.get(key)
            if held is not None and held[1] > now and held[0] != owner:
                return False
            self._leases[key] = (owner, now + ttl)
            # expired entries are dropped lazily
            for stale in [k for k, (_, exp) in self._leases.items() if exp <= now]:
                del self._leases[stale]
            return True

    async def release(self, key: str, owner: str) -> None:
        async with self._lock:
            held = self._leases.get(key)
            if held is not None and held[0] == owner:
                del self._leases[key]


class RedisLeaseStore:
    """Leases stored as ``SET NX PX`` keys under ``sagaflow:lease:``."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        if client is None:
            if redis is None:
                raise ImportError("redis package is required for RedisLeaseStore")
            client = redis.Redis(
                host=host, port=port, db=db, password=password, decode_responses=True
            )
        self._redis = client

    @staticmethod
    def _key(key: str) -> str:
        return f"sagaflow:lease:{key}"

    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        name = self._key(key)
        if await self._redis.set(name, owner, nx=True, px=int(ttl * 1000)):
            return True
        current = await self._redis.get(name)
        if isinstance(current, bytes):
            current = current.decode()
        if current == owner:
            await self._redis.pexpire(name, int(ttl * 1000))
            return True
        return False

    async def release(self, key: str, owner: str) -> None:
        if not await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(key), owner):
            logger.debug(f"Lease {key} was no longer held by {owner}")

    async def close(self) -> None:
        await self._redis.aclose()


class RepositoryLeaseStore:
    """Leases kept in the workflow repository's lease table."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        return await self._repository.acquire_lease(key, owner, ttl)

    async def release(self, key: str, owner: str) -> None:
        await self._repository.release_lease(key, owner)


def get_lease_store(
    config: Optional[SagaflowConfig] = None,
    repository: Optional[WorkflowRepository] = None,
) -> LeaseStore:
    """Factory returning the lease store named by ``scheduler.lease_backend``."""
    config = config or load_config()
    backend = config.scheduler.lease_backend
    if backend == "redis":
        redis_conf = config.transport.redis
        return RedisLeaseStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    if backend == "inmemory":
        return InMemoryLeaseStore()
    if repository is None:
        from .persistence import get_repository

        repository = get_repository(config=config)
    return RepositoryLeaseStore(repository)


__all__ = [
    "InMemoryLeaseStore",
    "LeaseStore",
    "RedisLeaseStore",
    "RepositoryLeaseStore",
    "default_owner",
    "get_lease_store",
]
