"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..contracts import DomainEvent
from .base import DEFAULT_TOPIC, BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis list used as a queue, one list per topic."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "flowgate",
        topic: str = DEFAULT_TOPIC,
    ) -> None:
        super().__init__(topic)
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue_name(self, topic: Optional[str] = None) -> str:
        return f"{self.prefix}:{self.resolve_topic(topic)}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: Optional[str], event: DomainEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: Optional[str] = None, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, DomainEvent]]:
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, payload = result
                try:
                    event = DomainEvent.from_json(payload)
                except PydanticValidationError as e:
                    logger.error(f"Dropping malformed event on {queue_name}: {e}")
                    continue
                yield payload, event

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment (BRPOP already removed the message)."""
        pass
