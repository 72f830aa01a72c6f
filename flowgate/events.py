"""Event source: feeds domain events from a transport into the trigger registry."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .contracts import DomainEvent
from .transports import BaseTransport
from .triggers import TriggerRegistry

logger = logging.getLogger(__name__)


class EventPump:
    """Subscribes to a topic (the transport's own by default) and dispatches every event."""

    def __init__(
        self,
        transport: BaseTransport,
        registry: TriggerRegistry,
        topic: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._topic = transport.resolve_topic(topic)

    async def run(self, lifespan: Optional[float] = None) -> int:
        """Consume events until ``lifespan`` seconds pass; return how many were handled."""
        handled = 0
        async for raw_message, event in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            logger.info(f"Received event {event.event_name} ({event.event_id})")
            try:
                await self._registry.dispatch(event.event_name, event.data)
            except Exception:
                logger.exception(f"Dispatch of event {event.event_id} failed")
                await self._transport.nack(raw_message, requeue=False)
                continue
            await self._transport.ack(raw_message)
            handled += 1
        return handled


async def publish_event(
    transport: BaseTransport,
    event_name: str,
    data: Optional[Dict[str, Any]] = None,
    topic: Optional[str] = None,
) -> DomainEvent:
    event = DomainEvent(event_name=event_name, data=data or {})
    await transport.publish(topic, event)
    return event
