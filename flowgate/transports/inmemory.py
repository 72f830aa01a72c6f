"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import DomainEvent
from .base import DEFAULT_TOPIC, BaseTransport

# (topic, serialized event)
RawEvent = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawEvent]):
    """Simple in-process queue per topic."""

    def __init__(self, poll_interval: float = 0.1, topic: str = DEFAULT_TOPIC) -> None:
        super().__init__(topic)
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def publish(self, topic: Optional[str], event: DomainEvent) -> None:
        async with self._lock:
            self._queues[self.resolve_topic(topic)].append(event.to_json())

    async def subscribe(
        self, topic: Optional[str] = None, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, DomainEvent]]:
        topic = self.resolve_topic(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                payload = self._queues[topic].popleft() if self._queues[topic] else None
            if payload is not None:
                yield (topic, payload), DomainEvent.from_json(payload)
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: RawEvent) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        if requeue:
            topic, payload = raw_message
            async with self._lock:
                self._queues[topic].appendleft(payload)

    def pending(self, topic: Optional[str] = None) -> int:
        return len(self._queues[self.resolve_topic(topic)])
