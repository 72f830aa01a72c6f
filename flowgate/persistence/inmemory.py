"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional

from ..contracts import (
    ApprovalTask,
    DefinitionStatus,
    InstanceStatus,
    TaskStatus,
    WorkflowDefinition,
    WorkflowInstance,
    utc_now,
)
from ..errors import ValidationError
from .repository import WorkflowRepository, task_matches


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in
    and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._tasks: Dict[str, ApprovalTask] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with self._lock:
            if definition.id in self._definitions:
                raise ValidationError(f"Definition already exists: {definition.id}")
            self._definitions[definition.id] = definition.model_copy(deep=True)
        return definition.model_copy(deep=True)

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        with self._lock:
            found = self._definitions.get(definition_id)
            return found.model_copy(deep=True) if found else None

    async def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None,
    ) -> list[WorkflowDefinition]:
        with self._lock:
            matches = [
                d.model_copy(deep=True)
                for d in self._definitions.values()
                if (name is None or d.name == name) and (status is None or d.status == status)
            ]
        return sorted(matches, key=lambda d: (d.name, d.version))

    async def set_definition_status(
        self, definition_id: str, status: DefinitionStatus
    ) -> WorkflowDefinition | None:
        with self._lock:
            found = self._definitions.get(definition_id)
            if found is None:
                return None
            updated = found.model_copy(update={"status": status, "updated_at": utc_now()})
            self._definitions[definition_id] = updated
            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            if instance.id in self._instances:
                raise ValidationError(f"Instance already exists: {instance.id}")
            self._instances[instance.id] = instance.model_copy(deep=True)
        return instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            found = self._instances.get(instance_id)
            return found.model_copy(deep=True) if found else None

    async def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance | None:
        with self._lock:
            stored = self._instances.get(instance.id)
            if stored is None or stored.revision != instance.revision:
                return None
            updated = instance.model_copy(deep=True, update={"revision": instance.revision + 1})
            self._instances[instance.id] = updated
            return updated.model_copy(deep=True)

    async def list_instances(
        self,
        definition_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        with self._lock:
            matches = [
                i.model_copy(deep=True)
                for i in self._instances.values()
                if (definition_id is None or i.definition_id == definition_id)
                and (status is None or i.status == status)
            ]
        return sorted(matches, key=lambda i: i.created_at)

    # ------------------------------------------------------------------
    async def create_task(self, task: ApprovalTask) -> ApprovalTask:
        with self._lock:
            if task.id in self._tasks:
                raise ValidationError(f"Approval task already exists: {task.id}")
            self._tasks[task.id] = task.model_copy(deep=True)
        return task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> ApprovalTask | None:
        with self._lock:
            found = self._tasks.get(task_id)
            return found.model_copy(deep=True) if found else None

    async def update_task(self, task: ApprovalTask) -> ApprovalTask | None:
        with self._lock:
            stored = self._tasks.get(task.id)
            if stored is None or stored.revision != task.revision:
                return None
            updated = task.model_copy(deep=True, update={"revision": task.revision + 1})
            self._tasks[task.id] = updated
            return updated.model_copy(deep=True)

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        instance_id: Optional[str] = None,
        approver: Optional[str] = None,
        due_before: Optional[datetime] = None,
    ) -> list[ApprovalTask]:
        with self._lock:
            matches = [
                t.model_copy(deep=True)
                for t in self._tasks.values()
                if task_matches(t, status, instance_id, approver, due_before)
            ]
        return sorted(matches, key=lambda t: t.created_at)
