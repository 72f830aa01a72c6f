"""Public facade wiring the engine components together."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from .approvals import ApprovalGate
from .conditions import ConditionEvaluator
from .config import FlowgateConfig, load_config
from .contracts import (
    ApprovalFilter,
    ApprovalTask,
    DefinitionStatus,
    InstanceStatus,
    StepType,
    TaskStatus,
    VoteAction,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStats,
    new_id,
    utc_now,
)
from .engine import Clock, InstanceStateMachine, TimeoutCallback
from .errors import ConditionError, NotFoundError, ValidationError
from .execute import StepExecutor
from .handlers import HandlerRegistry, default_registry
from .persistence import WorkflowRepository, get_repository
from .sweeper import ExpirySweeper
from .triggers import TriggerRegistry
from .utils.retry import Sleeper

logger = logging.getLogger(__name__)

# Fields a revision may not change.
_PROTECTED_FIELDS = {
    "id",
    "name",
    "version",
    "status",
    "creator",
    "created_at",
    "createdAt",
    "updated_at",
    "updatedAt",
}


class WorkflowService:
    """Entry point for definitions, instances and approvals."""

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        handlers: Optional[HandlerRegistry] = None,
        *,
        config: Optional[FlowgateConfig] = None,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio.sleep,
        timeout_callback: Optional[TimeoutCallback] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=config)
        self._clock = clock

        engine_config = self.config.engine
        self.evaluator = ConditionEvaluator(max_depth=engine_config.condition_max_depth)
        self.handlers = handlers if handlers is not None else default_registry(self.evaluator)
        self.executor = StepExecutor(self.handlers, sleep=sleep)
        self.engine = InstanceStateMachine(
            self.repository,
            self.executor,
            evaluator=self.evaluator,
            clock=clock,
            timeout_callback=timeout_callback,
        )
        self.approvals = ApprovalGate(self.repository, self.engine, clock=clock)
        self.engine.bind_gate(self.approvals)
        self.triggers = TriggerRegistry(self._start_from_event, self.evaluator)
        self.sweeper = ExpirySweeper(
            self.repository,
            self.approvals,
            self.engine,
            interval=engine_config.sweep_interval_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Definitions
    async def create_definition(
        self, spec: WorkflowDefinition | Mapping[str, Any], creator: Optional[str] = None
    ) -> WorkflowDefinition:
        """Store ``spec`` as a new draft version of its workflow."""
        if isinstance(spec, WorkflowDefinition):
            data = spec.model_dump()
        else:
            data = dict(spec)
        definition = self._build(data)
        if creator is not None:
            definition = definition.model_copy(update={"creator": creator})
        return await self._store_new_version(definition)

    async def revise_definition(
        self, definition_id: str, updates: Mapping[str, Any]
    ) -> WorkflowDefinition:
        """Create a new draft version from ``definition_id`` with ``updates`` applied.

        The record it derives from is left unchanged.
        """
        current = await self.get_definition(definition_id)
        data = current.model_dump()
        for key, value in updates.items():
            if key in _PROTECTED_FIELDS:
                raise ValidationError(f"Field {key} cannot be revised")
            data[key] = value
        revised = self._build(data)
        revised = revised.model_copy(
            update={"name": current.name, "creator": current.creator}
        )
        return await self._store_new_version(revised)

    async def activate_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.get_definition(definition_id)
        for sibling in await self.repository.list_definitions(
            name=definition.name, status=DefinitionStatus.ACTIVE
        ):
            if sibling.id != definition.id:
                await self.repository.set_definition_status(
                    sibling.id, DefinitionStatus.INACTIVE
                )
                self.triggers.unregister(sibling.id)
        activated = await self.repository.set_definition_status(
            definition_id, DefinitionStatus.ACTIVE
        )
        self.triggers.register(activated)
        logger.info(f"Activated {activated.name} v{activated.version}")
        return activated

    async def deactivate_definition(self, definition_id: str) -> WorkflowDefinition:
        await self.get_definition(definition_id)
        deactivated = await self.repository.set_definition_status(
            definition_id, DefinitionStatus.INACTIVE
        )
        self.triggers.unregister(definition_id)
        logger.info(f"Deactivated {deactivated.name} v{deactivated.version}")
        return deactivated

    async def get_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.repository.get_definition(definition_id)
        if definition is None:
            raise NotFoundError("WorkflowDefinition", definition_id)
        return definition

    async def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None,
    ) -> list[WorkflowDefinition]:
        return await self.repository.list_definitions(name=name, status=status)

    async def load_active_definitions(self) -> int:
        """Register the trigger of every active definition; used at startup."""
        active = await self.repository.list_definitions(status=DefinitionStatus.ACTIVE)
        for definition in sorted(active, key=lambda d: d.version):
            self.triggers.register(definition)
        return len(active)

    # ------------------------------------------------------------------
    # Instances
    async def start_instance(
        self, definition_id: str, trigger_data: Optional[Dict[str, Any]] = None
    ) -> WorkflowInstance:
        definition = await self.get_definition(definition_id)
        return await self.engine.start(definition, trigger_data or {})

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("WorkflowInstance", instance_id)
        return instance

    async def list_instances(
        self,
        definition_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        return await self.repository.list_instances(definition_id=definition_id, status=status)

    async def cancel_instance(self, instance_id: str) -> WorkflowInstance:
        return await self.engine.cancel(instance_id)

    async def dispatch_event(
        self, event_name: str, data: Optional[Dict[str, Any]] = None
    ) -> list[WorkflowInstance]:
        return await self.triggers.dispatch(event_name, data or {})

    # ------------------------------------------------------------------
    # Approvals
    async def vote(
        self,
        task_id: str,
        user_id: str,
        action: VoteAction | str,
        comment: Optional[str] = None,
    ) -> ApprovalTask:
        try:
            action = VoteAction(action)
        except ValueError as exc:
            raise ValidationError(f"Unknown vote action: {action}") from exc
        return await self.approvals.vote(task_id, user_id, action, comment)

    async def list_pending_approvals(
        self, filter: Optional[ApprovalFilter] = None
    ) -> list[ApprovalTask]:
        return await self.approvals.list_pending(filter)

    async def sweep(self, now: Optional[datetime] = None) -> int:
        return await self.sweeper.run_once(now)

    # ------------------------------------------------------------------
    async def get_stats(self) -> WorkflowStats:
        definitions = await self.repository.list_definitions()
        instances = await self.repository.list_instances()
        pending = await self.repository.list_tasks(status=TaskStatus.PENDING)
        durations = [
            i.duration_ms
            for i in instances
            if i.status == InstanceStatus.COMPLETED and i.duration_ms is not None
        ]
        return WorkflowStats(
            definitions_by_status=dict(Counter(d.status.value for d in definitions)),
            instances_by_status=dict(Counter(i.status.value for i in instances)),
            pending_approvals=len(pending),
            average_duration_ms=sum(durations) / len(durations) if durations else None,
        )

    # ------------------------------------------------------------------
    async def _start_from_event(
        self, definition: WorkflowDefinition, data: Dict[str, Any], event_name: str
    ) -> WorkflowInstance:
        return await self.engine.start(definition, data, event_name=event_name)

    def _build(self, data: Dict[str, Any]) -> WorkflowDefinition:
        try:
            definition = WorkflowDefinition.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid workflow definition: {exc}") from exc

        try:
            if definition.trigger.conditions is not None:
                self.evaluator.validate(definition.trigger.conditions)
            for step in definition.steps:
                if step.type == StepType.CONDITION:
                    self.evaluator.validate(step.condition_config().condition)
        except ConditionError as exc:
            raise ValidationError(f"Invalid condition: {exc}") from exc

        default_timeout = self.config.engine.default_step_timeout_ms
        for step in definition.steps:
            if "timeout_ms" not in step.model_fields_set:
                step.timeout_ms = default_timeout
        return definition

    async def _store_new_version(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        existing = await self.repository.list_definitions(name=definition.name)
        version = max((d.version for d in existing), default=0) + 1
        now = self._clock()
        stored = definition.model_copy(
            update={
                "id": new_id(),
                "version": version,
                "status": DefinitionStatus.DRAFT,
                "created_at": now,
                "updated_at": now,
            }
        )
        stored = await self.repository.create_definition(stored)
        logger.info(f"Stored {stored.name} v{stored.version} ({stored.id})")
        return stored
