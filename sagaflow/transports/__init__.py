"""Message transports and the factory that picks one from configuration."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SagaflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport

# backends that carry events between processes
SHARED_BACKENDS = ("redis", "rabbitmq")


def transport_backend(config: Optional[SagaflowConfig] = None) -> str:
    """Backend name in effect: ``SAGAFLOW_TRANSPORT`` wins over the config file."""
    config = config or load_config()
    return (os.getenv("SAGAFLOW_TRANSPORT") or config.transport.backend).lower()


def get_transport(
    backend: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> BaseTransport:
    """Build the transport for ``backend``, or for the configured backend."""
    config = config or load_config()
    backend = (backend or transport_backend(config)).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    if backend == "redis":
        from .redis import RedisTransport

        return RedisTransport(**config.transport.redis.model_dump())
    if backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        return RabbitMQTransport(url=config.transport.rabbitmq.url)
    raise ValueError(
        f"Unsupported transport backend: {backend} "
        f"(expected inmemory or one of {', '.join(SHARED_BACKENDS)})"
    )


__all__ = [
    "BaseTransport",
    "InMemoryTransport",
    "SHARED_BACKENDS",
    "get_transport",
    "transport_backend",
]
