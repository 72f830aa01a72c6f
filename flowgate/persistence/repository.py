"""Repository abstraction for workflow persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import (
    ApprovalTask,
    DefinitionStatus,
    InstanceStatus,
    TaskStatus,
    WorkflowDefinition,
    WorkflowInstance,
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    ``update_instance`` and ``update_task`` are compare-and-set writes: they
    succeed only when the stored ``revision`` equals the revision of the
    object passed in, and return the stored copy with the bumped revision.
    ``None`` means another writer got there first.
    """

    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Persist a new definition record."""

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        """Retrieve a definition by id."""

    async def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None,
    ) -> list[WorkflowDefinition]:
        """Return definitions ordered by name then version."""

    async def set_definition_status(
        self, definition_id: str, status: DefinitionStatus
    ) -> WorkflowDefinition | None:
        """Change the status of a definition (its only mutable field)."""

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a new instance."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance | None:
        """Compare-and-set write of an instance."""

    async def list_instances(
        self,
        definition_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        """Return instances ordered by creation time."""

    async def create_task(self, task: ApprovalTask) -> ApprovalTask:
        """Persist a new approval task."""

    async def get_task(self, task_id: str) -> ApprovalTask | None:
        """Retrieve an approval task by id."""

    async def update_task(self, task: ApprovalTask) -> ApprovalTask | None:
        """Compare-and-set write of an approval task."""

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        instance_id: Optional[str] = None,
        approver: Optional[str] = None,
        due_before: Optional[datetime] = None,
    ) -> list[ApprovalTask]:
        """Return tasks matching every given filter, ordered by creation time."""


def task_matches(
    task: ApprovalTask,
    status: Optional[TaskStatus] = None,
    instance_id: Optional[str] = None,
    approver: Optional[str] = None,
    due_before: Optional[datetime] = None,
) -> bool:
    """Shared filter used by backends that select tasks in Python."""
    if status is not None and task.status != status:
        return False
    if instance_id is not None and task.instance_id != instance_id:
        return False
    if approver is not None and task.find_approver(approver) is None:
        return False
    if due_before is not None and (task.deadline is None or task.deadline > due_before):
        return False
    return True
