"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

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


def _updated_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1"
    try:
        return int(status.split()[-1])
    except (IndexError, ValueError):
        return 0


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowgate_definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                document JSONB NOT NULL,
                UNIQUE (name, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowgate_instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                revision INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowgate_approval_tasks (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                status TEXT NOT NULL,
                revision INTEGER NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        except asyncpg.UniqueViolationError as exc:
            raise ValidationError(str(exc)) from exc
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        await self._execute(
            """
            INSERT INTO flowgate_definitions (id, name, version, status, document)
            VALUES ($1, $2, $3, $4, $5::jsonb)
            """,
            definition.id,
            definition.name,
            definition.version,
            definition.status.value,
            definition.model_dump_json(),
        )
        return definition

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        rows = await self._fetch(
            "SELECT document FROM flowgate_definitions WHERE id = $1", definition_id
        )
        return WorkflowDefinition.model_validate_json(rows[0]["document"]) if rows else None

    async def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None,
    ) -> list[WorkflowDefinition]:
        rows = await self._fetch(
            """
            SELECT document FROM flowgate_definitions
            WHERE ($1::text IS NULL OR name = $1) AND ($2::text IS NULL OR status = $2)
            ORDER BY name, version
            """,
            name,
            DefinitionStatus(status).value if status is not None else None,
        )
        return [WorkflowDefinition.model_validate_json(r["document"]) for r in rows]

    async def set_definition_status(
        self, definition_id: str, status: DefinitionStatus
    ) -> WorkflowDefinition | None:
        current = await self.get_definition(definition_id)
        if current is None:
            return None
        updated = current.model_copy(update={"status": status, "updated_at": utc_now()})
        await self._execute(
            "UPDATE flowgate_definitions SET status = $1, document = $2::jsonb WHERE id = $3",
            updated.status.value,
            updated.model_dump_json(),
            definition_id,
        )
        return updated

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        await self._execute(
            """
            INSERT INTO flowgate_instances (id, definition_id, status, revision, created_at, document)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            """,
            instance.id,
            instance.definition_id,
            instance.status.value,
            instance.revision,
            instance.created_at,
            instance.model_dump_json(),
        )
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        rows = await self._fetch(
            "SELECT document FROM flowgate_instances WHERE id = $1", instance_id
        )
        return WorkflowInstance.model_validate_json(rows[0]["document"]) if rows else None

    async def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance | None:
        updated = instance.model_copy(update={"revision": instance.revision + 1})
        status = await self._execute(
            """
            UPDATE flowgate_instances SET status = $1, revision = $2, document = $3::jsonb
            WHERE id = $4 AND revision = $5
            """,
            updated.status.value,
            updated.revision,
            updated.model_dump_json(),
            instance.id,
            instance.revision,
        )
        return updated if _updated_rows(status) == 1 else None

    async def list_instances(
        self,
        definition_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        rows = await self._fetch(
            """
            SELECT document FROM flowgate_instances
            WHERE ($1::text IS NULL OR definition_id = $1) AND ($2::text IS NULL OR status = $2)
            ORDER BY created_at
            """,
            definition_id,
            InstanceStatus(status).value if status is not None else None,
        )
        return [WorkflowInstance.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_task(self, task: ApprovalTask) -> ApprovalTask:
        await self._execute(
            """
            INSERT INTO flowgate_approval_tasks (id, instance_id, status, revision, created_at, document)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            """,
            task.id,
            task.instance_id,
            task.status.value,
            task.revision,
            task.created_at,
            task.model_dump_json(),
        )
        return task

    async def get_task(self, task_id: str) -> ApprovalTask | None:
        rows = await self._fetch(
            "SELECT document FROM flowgate_approval_tasks WHERE id = $1", task_id
        )
        return ApprovalTask.model_validate_json(rows[0]["document"]) if rows else None

    async def update_task(self, task: ApprovalTask) -> ApprovalTask | None:
        updated = task.model_copy(update={"revision": task.revision + 1})
        status = await self._execute(
            """
            UPDATE flowgate_approval_tasks SET status = $1, revision = $2, document = $3::jsonb
            WHERE id = $4 AND revision = $5
            """,
            updated.status.value,
            updated.revision,
            updated.model_dump_json(),
            task.id,
            task.revision,
        )
        return updated if _updated_rows(status) == 1 else None

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        instance_id: Optional[str] = None,
        approver: Optional[str] = None,
        due_before: Optional[datetime] = None,
    ) -> list[ApprovalTask]:
        rows = await self._fetch(
            """
            SELECT document FROM flowgate_approval_tasks
            WHERE ($1::text IS NULL OR status = $1) AND ($2::text IS NULL OR instance_id = $2)
            ORDER BY created_at
            """,
            TaskStatus(status).value if status is not None else None,
            instance_id,
        )
        tasks = [ApprovalTask.model_validate_json(r["document"]) for r in rows]
        return [t for t in tasks if task_matches(t, approver=approver, due_before=due_before)]
