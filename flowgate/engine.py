"""Instance state machine driving a workflow instance through its steps."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from .conditions import ConditionEvaluator, condition_evaluator
from .contracts import (
    ApprovalTask,
    DefinitionStatus,
    FallbackAction,
    InstanceError,
    InstanceStatus,
    InstanceTrigger,
    StepError,
    StepRecord,
    StepSpec,
    StepStatus,
    StepType,
    TimeoutAction,
    VariableType,
    WorkflowDefinition,
    WorkflowInstance,
    utc_now,
)
from .errors import (
    ConcurrentUpdateError,
    NotFoundError,
    StepExecutionError,
    ValidationError,
    WorkflowTimeoutError,
    error_code,
)
from .execute import StepExecutor
from .handlers import StepContext
from .persistence import WorkflowRepository
from .transitions import (
    Transition,
    begin_step,
    cancel_instance,
    complete_instance,
    fail_instance,
    finish_step,
    start_instance,
)

if TYPE_CHECKING:
    from .approvals import ApprovalGate

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
TimeoutCallback = Callable[[WorkflowInstance, WorkflowDefinition], Awaitable[None]]

_VARIABLE_CHECKS: Dict[VariableType, Callable[[Any], bool]] = {
    VariableType.STRING: lambda v: isinstance(v, str),
    VariableType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    VariableType.BOOLEAN: lambda v: isinstance(v, bool),
    VariableType.OBJECT: lambda v: isinstance(v, dict),
    VariableType.ARRAY: lambda v: isinstance(v, list),
}


def has_conditions(conditions: Any) -> bool:
    """Empty or missing trigger conditions always match."""
    return conditions is not None and conditions != [] and conditions != {}


class InstanceStateMachine:
    """Creates instances and advances them step by step.

    Every state change goes through a pure transition and is written with a
    compare-and-set on the instance revision. Losing that race to a terminal
    transition (a cancel, a timeout) stops the step loop.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: StepExecutor,
        *,
        evaluator: Optional[ConditionEvaluator] = None,
        clock: Clock = utc_now,
        timeout_callback: Optional[TimeoutCallback] = None,
        max_retries: int = 5,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._evaluator = evaluator or condition_evaluator
        self._clock = clock
        self._timeout_callback = timeout_callback
        self._max_retries = max_retries
        self._gate: Optional[ApprovalGate] = None

    def bind_gate(self, gate: ApprovalGate) -> None:
        self._gate = gate

    # ------------------------------------------------------------------
    # Public API
    async def start(
        self,
        definition: WorkflowDefinition,
        trigger_data: Optional[Dict[str, Any]] = None,
        event_name: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create an instance of ``definition`` and run it until it suspends or ends."""
        trigger_data = trigger_data or {}
        if definition.status == DefinitionStatus.INACTIVE:
            raise ValidationError(
                f"Workflow {definition.name} v{definition.version} is inactive"
            )
        conditions = definition.trigger.conditions
        if has_conditions(conditions) and not self._evaluator.evaluate(conditions, trigger_data):
            raise ValidationError(
                f"Trigger conditions not met for workflow {definition.name}"
            )

        now = self._clock()
        instance = WorkflowInstance(
            definition_id=definition.id,
            definition_version=definition.version,
            workflow_name=definition.name,
            trigger=InstanceTrigger(
                event_name=event_name or definition.trigger.event_name,
                data=trigger_data,
            ),
            variables=self._seed_variables(definition, trigger_data),
            steps=[StepRecord(name=step.name) for step in definition.steps],
            created_at=now,
            updated_at=now,
        )
        instance = await self._repository.create_instance(instance)
        started = await self._commit(instance, start_instance(instance, now))
        logger.info(
            f"Started instance {instance.id} of {definition.name} v{definition.version}"
        )
        if started is not None:
            await self._run(started, definition)
        return await self._load(instance.id)

    async def resume(
        self, instance: WorkflowInstance, task: Optional[ApprovalTask] = None
    ) -> None:
        """Close the suspended approval step and continue the step loop."""
        current = await self._load(instance.id)
        if current.is_terminal:
            logger.info(f"Not resuming terminal instance {current.id}")
            return
        index = current.current_step.index
        if task is not None and task.step_index != index:
            logger.warning(
                f"Ignoring resume of instance {current.id} for step {task.step_index}; "
                f"instance is at step {index}"
            )
            return
        definition = await self._definition_for(current)
        output = None
        if task is not None:
            output = {"taskId": task.id, "status": task.status.value, "decidedBy": task.decided_by}
        resumed = await self._commit(current, finish_step(current, self._clock(), output=output))
        if resumed is not None:
            await self._run(resumed, definition)

    async def fail(
        self, instance: WorkflowInstance, error: BaseException, step_index: Optional[int]
    ) -> WorkflowInstance:
        """Move the instance to ``failed``; a no-op when it is already terminal."""
        code, message = error_code(error), str(error)
        instance_error = InstanceError(code=code, message=message, step_index=step_index)
        step_error = StepError(code=code, message=message)
        result = await self._apply(
            instance.id,
            lambda current: fail_instance(current, instance_error, self._clock(), step_error),
        )
        if result.status == InstanceStatus.FAILED and result.error == instance_error:
            logger.info(f"Instance {instance.id} failed at step {step_index}: {message}")
        await self._close_approvals(result)
        return result

    async def complete(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Complete the instance early; unreached steps are recorded as skipped."""
        result = await self._apply(
            instance.id,
            lambda current: complete_instance(current, self._clock(), skip_remaining=True),
        )
        await self._close_approvals(result)
        return result

    async def cancel(self, instance_id: str) -> WorkflowInstance:
        result = await self._apply(
            instance_id, lambda current: cancel_instance(current, self._clock())
        )
        logger.info(f"Instance {instance_id} is {result.status.value}")
        await self._close_approvals(result)
        return result

    async def enforce_timeouts(self, now: Optional[datetime] = None) -> int:
        """Apply the workflow timeout action to every overdue running instance."""
        now = now or self._clock()
        enforced = 0
        for instance in await self._repository.list_instances(status=InstanceStatus.RUNNING):
            if instance.start_time is None:
                continue
            definition = await self._repository.get_definition(instance.definition_id)
            if definition is None:
                continue
            timeout = definition.timeout
            if instance.start_time + timedelta(milliseconds=timeout.duration_ms) > now:
                continue

            if timeout.action == TimeoutAction.COMPLETE:
                result = await self.complete(instance)
            else:
                if timeout.action == TimeoutAction.CALLBACK and self._timeout_callback:
                    await self._timeout_callback(instance, definition)
                error = WorkflowTimeoutError(
                    f"Instance {instance.id} exceeded its timeout of {timeout.duration_ms}ms"
                )
                result = await self.fail(instance, error, instance.current_step.index)
            if result.status != InstanceStatus.RUNNING:
                enforced += 1
                logger.info(
                    f"Workflow timeout ({timeout.action.value}) applied to instance {instance.id}"
                )
        return enforced

    # ------------------------------------------------------------------
    # Step loop
    async def _run(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> None:
        while not instance.is_terminal and instance.current_step.index < len(definition.steps):
            index = instance.current_step.index
            step = definition.steps[index]
            instance = await self._commit(instance, begin_step(instance, self._clock()))
            if instance is None:
                return

            if step.type == StepType.APPROVAL:
                if self._gate is None:
                    raise RuntimeError("No approval gate bound to the state machine")
                task = await self._gate.create_task(instance, index, step.approval_config())
                logger.info(
                    f"Instance {instance.id} suspended at step {index} awaiting task {task.id}"
                )
                return

            instance = await self._run_step(instance, definition, step, index)
            if instance is None:
                return

        if not instance.is_terminal:
            completed = await self._commit(instance, complete_instance(instance, self._clock()))
            if completed is not None:
                logger.info(f"Instance {instance.id} completed")

    async def _run_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: StepSpec,
        index: int,
    ) -> Optional[WorkflowInstance]:
        context = self._context(instance, index)
        try:
            output = await self._executor.execute_step(step, context)
        except StepExecutionError as exc:
            return await self._handle_failure(instance, step, index, context, exc)
        return await self._finish(instance, context, output=output)

    async def _handle_failure(
        self,
        instance: WorkflowInstance,
        step: StepSpec,
        index: int,
        context: StepContext,
        error: StepExecutionError,
    ) -> Optional[WorkflowInstance]:
        handling = step.error_handling
        step_error = StepError(code=error_code(error), message=str(error))
        now = self._clock()

        if handling.continue_on_error:
            logger.warning(f"Step {step.name} failed on instance {instance.id}; continuing")
            return await self._commit(
                instance,
                finish_step(
                    instance, now, status=StepStatus.FAILED, error=step_error, attempts=error.attempts
                ),
            )
        if handling.fallback_action == FallbackAction.SKIP:
            logger.warning(f"Step {step.name} failed on instance {instance.id}; skipping")
            return await self._commit(
                instance,
                finish_step(
                    instance, now, status=StepStatus.SKIPPED, error=step_error, attempts=error.attempts
                ),
            )
        if handling.fallback_action == FallbackAction.ALTERNATE and handling.alternate is not None:
            logger.warning(
                f"Step {step.name} failed on instance {instance.id}; "
                f"running alternate {handling.alternate.name}"
            )
            try:
                output = await self._executor.execute_step(handling.alternate, context)
            except StepExecutionError as alt_exc:
                logger.warning(f"Alternate {handling.alternate.name} failed: {alt_exc}")
            else:
                return await self._finish(instance, context, output=output)

        await self.fail(instance, error, index)
        return None

    async def _finish(
        self, instance: WorkflowInstance, context: StepContext, output: Any
    ) -> Optional[WorkflowInstance]:
        updated = instance.model_copy(update={"variables": dict(context.variables)})
        return await self._commit(updated, finish_step(updated, self._clock(), output=output))

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _commit(
        self, instance: WorkflowInstance, transition: Transition[WorkflowInstance]
    ) -> Optional[WorkflowInstance]:
        """Write ``transition``; ``None`` means a terminal transition won the race."""
        if not transition.changed:
            return instance
        stored = await self._repository.update_instance(transition.state)
        if stored is not None:
            return stored
        latest = await self._repository.get_instance(instance.id)
        if latest is None or latest.is_terminal:
            logger.info(f"Instance {instance.id} changed concurrently; stopping")
            return None
        raise ConcurrentUpdateError(f"Instance {instance.id} was modified concurrently")

    async def _apply(
        self,
        instance_id: str,
        transition: Callable[[WorkflowInstance], Transition[WorkflowInstance]],
    ) -> WorkflowInstance:
        """Reload, transition and compare-and-set until the write lands."""
        for _ in range(self._max_retries):
            current = await self._load(instance_id)
            result = transition(current)
            if not result.changed:
                return current
            stored = await self._repository.update_instance(result.state)
            if stored is not None:
                return stored
            logger.debug(f"Retrying write of instance {instance_id} after a lost race")
        raise ConcurrentUpdateError(
            f"Instance {instance_id} kept changing after {self._max_retries} attempts"
        )

    async def _close_approvals(self, instance: WorkflowInstance) -> None:
        if instance.is_terminal and self._gate is not None:
            await self._gate.close_for_instance(instance.id)

    async def _load(self, instance_id: str) -> WorkflowInstance:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("WorkflowInstance", instance_id)
        return instance

    async def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        definition = await self._repository.get_definition(instance.definition_id)
        if definition is None:
            raise NotFoundError("WorkflowDefinition", instance.definition_id)
        return definition

    # ------------------------------------------------------------------
    @staticmethod
    def _context(instance: WorkflowInstance, index: int) -> StepContext:
        outputs = {
            record.name: record.output
            for record in instance.steps[:index]
            if record.status == StepStatus.COMPLETED
        }
        return StepContext(
            instance_id=instance.id,
            workflow_name=instance.workflow_name,
            step_index=index,
            variables=copy.deepcopy(instance.variables),
            trigger=instance.trigger.data,
            outputs=outputs,
        )

    @staticmethod
    def _seed_variables(
        definition: WorkflowDefinition, trigger_data: Dict[str, Any]
    ) -> Dict[str, Any]:
        variables: Dict[str, Any] = {}
        for name, spec in definition.variables.items():
            if name in trigger_data:
                value = trigger_data[name]
            else:
                value = copy.deepcopy(spec.default_value)
            if value is None:
                if spec.required:
                    raise ValidationError(f"Variable {name} is required")
            elif not _VARIABLE_CHECKS[spec.type](value):
                raise ValidationError(
                    f"Variable {name} must be of type {spec.type.value}, got {type(value).__name__}"
                )
            variables[name] = value
        return variables
