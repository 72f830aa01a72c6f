"""Event source transports and the factory that builds one from configuration."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowgateConfig, TransportConfig, load_config
from .base import DEFAULT_TOPIC, BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``FLOWGATE_TRANSPORT`` or the config.

    The transport is bound to ``config.transport.topic``, so the event pump
    and ``publish_event`` need no topic of their own.
    """
    settings: TransportConfig = (config or load_config()).transport
    name = (backend or os.getenv("FLOWGATE_TRANSPORT") or settings.backend).lower()

    if name == "inmemory":
        return InMemoryTransport(topic=settings.topic)
    if name == "redis":
        from .redis import RedisTransport

        return RedisTransport(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
            password=settings.redis.password,
            prefix=settings.redis.key_prefix,
            topic=settings.topic,
        )
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["DEFAULT_TOPIC", "BaseTransport", "InMemoryTransport", "get_transport"]
