"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

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


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Each record is stored as a JSON document next to the columns used for
    filtering and for compare-and-set updates.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                document TEXT NOT NULL,
                UNIQUE (name, version)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                status TEXT NOT NULL,
                revision INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_tasks (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                status TEXT NOT NULL,
                revision INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ValidationError(str(exc)) from exc
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    # ------------------------------------------------------------------
    # Definitions
    async def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO definitions (id, name, version, status, document) VALUES (?, ?, ?, ?, ?)",
            definition.id,
            definition.name,
            definition.version,
            definition.status.value,
            definition.model_dump_json(),
        )
        return definition

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM definitions WHERE id = ?", definition_id
        )
        return WorkflowDefinition.model_validate_json(row["document"]) if row else None

    async def list_definitions(
        self,
        name: Optional[str] = None,
        status: Optional[DefinitionStatus] = None,
    ) -> list[WorkflowDefinition]:
        query = "SELECT document FROM definitions WHERE 1 = 1"
        params: list[Any] = []
        if name is not None:
            query += " AND name = ?"
            params.append(name)
        if status is not None:
            query += " AND status = ?"
            params.append(DefinitionStatus(status).value)
        query += " ORDER BY name, version"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowDefinition.model_validate_json(r["document"]) for r in rows]

    async def set_definition_status(
        self, definition_id: str, status: DefinitionStatus
    ) -> WorkflowDefinition | None:
        current = await self.get_definition(definition_id)
        if current is None:
            return None
        updated = current.model_copy(update={"status": status, "updated_at": utc_now()})
        await asyncio.to_thread(
            self._execute,
            "UPDATE definitions SET status = ?, document = ? WHERE id = ?",
            updated.status.value,
            updated.model_dump_json(),
            definition_id,
        )
        return updated

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO instances (id, definition_id, status, revision, created_at, document)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            instance.id,
            instance.definition_id,
            instance.status.value,
            instance.revision,
            instance.created_at.isoformat(),
            instance.model_dump_json(),
        )
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM instances WHERE id = ?", instance_id
        )
        return WorkflowInstance.model_validate_json(row["document"]) if row else None

    async def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance | None:
        updated = instance.model_copy(update={"revision": instance.revision + 1})
        count = await asyncio.to_thread(
            self._execute,
            """
            UPDATE instances SET status = ?, revision = ?, document = ?
            WHERE id = ? AND revision = ?
            """,
            updated.status.value,
            updated.revision,
            updated.model_dump_json(),
            instance.id,
            instance.revision,
        )
        return updated if count == 1 else None

    async def list_instances(
        self,
        definition_id: Optional[str] = None,
        status: Optional[InstanceStatus] = None,
    ) -> list[WorkflowInstance]:
        query = "SELECT document FROM instances WHERE 1 = 1"
        params: list[Any] = []
        if definition_id is not None:
            query += " AND definition_id = ?"
            params.append(definition_id)
        if status is not None:
            query += " AND status = ?"
            params.append(InstanceStatus(status).value)
        query += " ORDER BY created_at, rowid"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowInstance.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Approval tasks
    async def create_task(self, task: ApprovalTask) -> ApprovalTask:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO approval_tasks (id, instance_id, status, revision, created_at, document)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            task.id,
            task.instance_id,
            task.status.value,
            task.revision,
            task.created_at.isoformat(),
            task.model_dump_json(),
        )
        return task

    async def get_task(self, task_id: str) -> ApprovalTask | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM approval_tasks WHERE id = ?", task_id
        )
        return ApprovalTask.model_validate_json(row["document"]) if row else None

    async def update_task(self, task: ApprovalTask) -> ApprovalTask | None:
        updated = task.model_copy(update={"revision": task.revision + 1})
        count = await asyncio.to_thread(
            self._execute,
            """
            UPDATE approval_tasks SET status = ?, revision = ?, document = ?
            WHERE id = ? AND revision = ?
            """,
            updated.status.value,
            updated.revision,
            updated.model_dump_json(),
            task.id,
            task.revision,
        )
        return updated if count == 1 else None

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        instance_id: Optional[str] = None,
        approver: Optional[str] = None,
        due_before: Optional[datetime] = None,
    ) -> list[ApprovalTask]:
        query = "SELECT document FROM approval_tasks WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(TaskStatus(status).value)
        if instance_id is not None:
            query += " AND instance_id = ?"
            params.append(instance_id)
        query += " ORDER BY created_at, rowid"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        tasks = [ApprovalTask.model_validate_json(r["document"]) for r in rows]
        return [t for t in tasks if task_matches(t, approver=approver, due_before=due_before)]
