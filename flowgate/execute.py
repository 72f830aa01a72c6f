"""Step execution: one handler call, bounded by time, retried on failure."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .contracts import StepSpec
from .errors import StepExecutionError, StepTimeoutError
from .handlers import HandlerRegistry, StepContext
from .utils.retry import Sleeper, schedule_retry

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs a step's handler under its timeout and retry policy.

    The executor knows nothing about what a step does; it resolves the
    handler registered for the step type and calls it.
    """

    def __init__(
        self,
        handlers: HandlerRegistry,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._handlers = handlers
        self._sleep = sleep

    async def execute_step(self, step: StepSpec, context: StepContext) -> Any:
        """Return the handler output or raise ``StepExecutionError``."""
        handler = self._handlers.get(step.type)
        if handler is None:
            raise StepExecutionError(
                f"No handler registered for step type {step.type.value}",
                step_index=context.step_index,
            )

        policy = step.retry_policy
        last_error: Optional[BaseException] = None
        for attempt in range(1, policy.max_attempts + 1):
            await schedule_retry(
                attempt,
                policy.initial_delay_ms,
                policy.backoff_multiplier,
                sleep=self._sleep,
            )
            try:
                return await self._attempt(handler, step, context)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    f"Step {step.name} attempt {attempt}/{policy.max_attempts} "
                    f"failed for instance={context.instance_id}: {exc}"
                )

        raise self._exhausted(step, context, last_error, policy.max_attempts)

    async def _attempt(self, handler, step: StepSpec, context: StepContext) -> Any:
        if step.timeout_ms is None:
            return await handler(step, context)
        try:
            return await asyncio.wait_for(
                handler(step, context), timeout=step.timeout_ms / 1000
            )
        except asyncio.TimeoutError as exc:
            raise StepTimeoutError(
                f"Step {step.name} timed out after {step.timeout_ms}ms",
                step_index=context.step_index,
                cause=exc,
            ) from exc

    @staticmethod
    def _exhausted(
        step: StepSpec,
        context: StepContext,
        error: Optional[BaseException],
        attempts: int,
    ) -> StepExecutionError:
        if isinstance(error, StepExecutionError):
            error.step_index = context.step_index
            error.attempts = attempts
            return error
        wrapped = StepExecutionError(
            f"Step {step.name} failed after {attempts} attempt(s): {error}",
            step_index=context.step_index,
            attempts=attempts,
            cause=error,
        )
        wrapped.__cause__ = error
        return wrapped
