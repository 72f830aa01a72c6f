"""Trigger registry mapping event names to active workflow definitions."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Optional

from .conditions import ConditionEvaluator, condition_evaluator
from .contracts import DefinitionStatus, WorkflowDefinition, WorkflowInstance
from .engine import has_conditions
from .errors import ValidationError

logger = logging.getLogger(__name__)

InstanceStarter = Callable[
    [WorkflowDefinition, Dict[str, Any], str], Awaitable[WorkflowInstance]
]


class TriggerRegistry:
    """Listener table keyed by definition id.

    Registering a definition replaces the listener of any other version of
    the same workflow, so one event never starts two versions of a workflow.
    """

    def __init__(
        self,
        starter: InstanceStarter,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        self._starter = starter
        self._evaluator = evaluator or condition_evaluator
        self._listeners: Dict[str, WorkflowDefinition] = {}
        self._lock = threading.Lock()

    def register(self, definition: WorkflowDefinition) -> None:
        if definition.status != DefinitionStatus.ACTIVE:
            raise ValidationError(
                f"Only active definitions can be registered; "
                f"{definition.name} v{definition.version} is {definition.status.value}"
            )
        with self._lock:
            stale = [
                definition_id
                for definition_id, existing in self._listeners.items()
                if existing.name == definition.name and definition_id != definition.id
            ]
            for definition_id in stale:
                del self._listeners[definition_id]
            self._listeners[definition.id] = definition
        logger.info(
            f"Registered trigger {definition.trigger.event_name} for "
            f"{definition.name} v{definition.version}"
        )

    def unregister(self, definition_id: str) -> bool:
        with self._lock:
            removed = self._listeners.pop(definition_id, None)
        if removed is not None:
            logger.info(f"Unregistered trigger for {removed.name} v{removed.version}")
        return removed is not None

    def is_registered(self, definition_id: str) -> bool:
        with self._lock:
            return definition_id in self._listeners

    def event_names(self) -> set[str]:
        with self._lock:
            return {d.trigger.event_name for d in self._listeners.values()}

    def listeners(self, event_name: str) -> list[WorkflowDefinition]:
        with self._lock:
            return [
                d for d in self._listeners.values() if d.trigger.event_name == event_name
            ]

    async def dispatch(
        self, event_name: str, data: Optional[Dict[str, Any]] = None
    ) -> list[WorkflowInstance]:
        """Start one instance per listening definition whose conditions hold."""
        data = data or {}
        matching = [d for d in self.listeners(event_name) if self._matches(d, data)]
        if not matching:
            logger.debug(f"No workflow triggered by {event_name}")
            return []

        results = await asyncio.gather(
            *(self._starter(d, data, event_name) for d in matching),
            return_exceptions=True,
        )
        started: list[WorkflowInstance] = []
        for definition, result in zip(matching, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    f"Failed to start {definition.name} v{definition.version} "
                    f"for event {event_name}",
                    exc_info=result,
                )
                continue
            started.append(result)
        return started

    def _matches(self, definition: WorkflowDefinition, data: Dict[str, Any]) -> bool:
        conditions = definition.trigger.conditions
        return not has_conditions(conditions) or self._evaluator.evaluate(conditions, data)
