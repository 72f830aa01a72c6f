"""Step handler registry keyed by step type."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field

from .conditions import ConditionEvaluator, condition_evaluator
from .contracts import StepSpec, StepType
from .errors import ValidationError

logger = logging.getLogger(__name__)


class StepContext(BaseModel):
    """Data available to a step handler while it runs."""

    instance_id: str
    workflow_name: str
    step_index: int
    variables: Dict[str, Any] = Field(default_factory=dict)
    trigger: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)

    def as_condition_context(self) -> Dict[str, Any]:
        return {
            "variables": self.variables,
            "trigger": self.trigger,
            "steps": self.outputs,
        }


StepHandler = Callable[[StepSpec, StepContext], Awaitable[Any]]


class HandlerRegistry:
    """Maps each step type to the coroutine that performs it.

    ``approval`` steps are owned by the state machine and cannot be
    registered.
    """

    def __init__(self) -> None:
        self._handlers: Dict[StepType, StepHandler] = {}

    def register(self, step_type: StepType | str, handler: StepHandler) -> None:
        step_type = StepType(step_type)
        if step_type == StepType.APPROVAL:
            raise ValidationError("approval steps are handled by the approval gate")
        if step_type in self._handlers:
            logger.info(f"Replacing handler for step type {step_type.value}")
        self._handlers[step_type] = handler

    def handler(self, step_type: StepType | str) -> Callable[[StepHandler], StepHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: StepHandler) -> StepHandler:
            self.register(step_type, func)
            return func

        return decorator

    def get(self, step_type: StepType | str) -> Optional[StepHandler]:
        return self._handlers.get(StepType(step_type))

    def __contains__(self, step_type: object) -> bool:
        try:
            return StepType(step_type) in self._handlers
        except ValueError:
            return False


async def delay_handler(step: StepSpec, context: StepContext) -> Dict[str, Any]:
    config = step.delay_config()
    await asyncio.sleep(config.duration_ms / 1000)
    return {"delayed_ms": config.duration_ms}


def make_condition_handler(evaluator: ConditionEvaluator) -> StepHandler:
    async def condition_handler(step: StepSpec, context: StepContext) -> Dict[str, Any]:
        config = step.condition_config()
        result = evaluator.evaluate(config.condition, context.as_condition_context())
        if config.output_variable:
            context.variables[config.output_variable] = result
        return {"result": result}

    return condition_handler


def default_registry(evaluator: Optional[ConditionEvaluator] = None) -> HandlerRegistry:
    """Registry preloaded with the built-in ``delay`` and ``condition`` handlers."""
    registry = HandlerRegistry()
    registry.register(StepType.DELAY, delay_handler)
    registry.register(
        StepType.CONDITION, make_condition_handler(evaluator or condition_evaluator)
    )
    return registry
