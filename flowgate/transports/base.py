"""Event source transport interface.

A transport owns the topic it was configured with; ``publish`` and
``subscribe`` fall back to it when no topic is given.
"""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import DomainEvent

DEFAULT_TOPIC = "flowgate.events"

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Pub/sub channel delivering domain events to the trigger registry."""

    def __init__(self, topic: str = DEFAULT_TOPIC) -> None:
        self.topic = topic

    def resolve_topic(self, topic: Optional[str] = None) -> str:
        return topic or self.topic

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: Optional[str], event: DomainEvent) -> None:
        """Append ``event`` to ``topic`` (the transport's own topic when None)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: Optional[str] = None, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, DomainEvent]]:
        """Yield ``(raw_message, event)`` pairs until ``lifespan`` seconds pass.

        With ``lifespan=None`` the subscription never ends on its own.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark an event as handled."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject an event; transports without redelivery just drop it."""
        await self.ack(raw_message)
