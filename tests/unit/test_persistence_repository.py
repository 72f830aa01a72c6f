from datetime import timedelta

import pytest

import flowgate.persistence as persistence
from flowgate.config import FlowgateConfig
from flowgate.contracts import (
    ApprovalTask,
    Approver,
    DefinitionStatus,
    InstanceStatus,
    StepRecord,
    TaskStatus,
    WorkflowDefinition,
    WorkflowInstance,
    utc_now,
)
from flowgate.errors import ValidationError
from flowgate.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "wf.db")
    return InMemoryWorkflowRepository()


def _definition(name="refund", version=1) -> WorkflowDefinition:
    return WorkflowDefinition(
        name=name,
        version=version,
        trigger={"eventName": "refund.requested"},
        steps=[{"name": "notify", "type": "notification"}],
    )


def _instance(definition_id: str) -> WorkflowInstance:
    return WorkflowInstance(
        definition_id=definition_id,
        definition_version=1,
        workflow_name="refund",
        steps=[StepRecord(name="notify")],
    )


def _task(instance_id: str, users=("alice", "bob"), deadline=None) -> ApprovalTask:
    return ApprovalTask(
        instance_id=instance_id,
        step_index=0,
        type="single",
        approvers=[Approver(user=u) for u in users],
        deadline=deadline,
    )


@pytest.mark.asyncio
async def test_definition_crud(repo):
    v1 = await repo.create_definition(_definition())
    v2 = await repo.create_definition(_definition(version=2))
    other = await repo.create_definition(_definition(name="billing"))

    assert await repo.get_definition(v1.id) == v1
    assert await repo.get_definition("missing") is None
    assert [d.id for d in await repo.list_definitions()] == [other.id, v1.id, v2.id]
    assert [d.version for d in await repo.list_definitions(name="refund")] == [1, 2]

    activated = await repo.set_definition_status(v2.id, DefinitionStatus.ACTIVE)
    assert activated.status == DefinitionStatus.ACTIVE
    assert [d.id for d in await repo.list_definitions(status=DefinitionStatus.ACTIVE)] == [v2.id]
    assert (await repo.get_definition(v1.id)).status == DefinitionStatus.DRAFT
    assert await repo.set_definition_status("missing", DefinitionStatus.ACTIVE) is None


@pytest.mark.asyncio
async def test_duplicate_definition_rejected(repo):
    definition = await repo.create_definition(_definition())
    with pytest.raises(ValidationError):
        await repo.create_definition(definition)


@pytest.mark.asyncio
async def test_instance_compare_and_set(repo):
    instance = await repo.create_instance(_instance("def-1"))
    assert instance.revision == 0

    running = instance.model_copy(update={"status": InstanceStatus.RUNNING})
    stored = await repo.update_instance(running)
    assert stored.revision == 1
    assert stored.status == InstanceStatus.RUNNING

    stale = instance.model_copy(update={"status": InstanceStatus.CANCELLED})
    assert await repo.update_instance(stale) is None

    current = await repo.get_instance(instance.id)
    assert current.status == InstanceStatus.RUNNING
    assert current.revision == 1
    assert await repo.update_instance(_instance("def-1")) is None


@pytest.mark.asyncio
async def test_list_instances_filters(repo):
    first = await repo.create_instance(_instance("def-1"))
    second = await repo.create_instance(_instance("def-2"))
    await repo.update_instance(first.model_copy(update={"status": InstanceStatus.COMPLETED}))

    assert [i.id for i in await repo.list_instances()] == [first.id, second.id]
    assert [i.id for i in await repo.list_instances(definition_id="def-2")] == [second.id]
    completed = await repo.list_instances(status=InstanceStatus.COMPLETED)
    assert [i.id for i in completed] == [first.id]


@pytest.mark.asyncio
async def test_task_compare_and_set_and_filters(repo):
    now = utc_now()
    soon = await repo.create_task(_task("inst-1", deadline=now + timedelta(minutes=1)))
    later = await repo.create_task(
        _task("inst-2", users=("carol",), deadline=now + timedelta(hours=1))
    )
    no_deadline = await repo.create_task(_task("inst-3"))

    assert [t.id for t in await repo.list_tasks(approver="alice")] == [soon.id, no_deadline.id]
    assert [t.id for t in await repo.list_tasks(instance_id="inst-2")] == [later.id]
    due = await repo.list_tasks(due_before=now + timedelta(minutes=5))
    assert [t.id for t in due] == [soon.id]

    approved = await repo.update_task(soon.model_copy(update={"status": TaskStatus.APPROVED}))
    assert approved.revision == 1
    assert await repo.update_task(soon) is None
    pending = await repo.list_tasks(status=TaskStatus.PENDING)
    assert [t.id for t in pending] == [later.id, no_deadline.id]


@pytest.mark.asyncio
async def test_sqlite_repository_survives_reopen(tmp_path):
    db_path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(db_path)
    definition = await repo.create_definition(_definition())
    instance = await repo.create_instance(_instance(definition.id))

    reopened = SQLiteWorkflowRepository(db_path)
    assert await reopened.get_definition(definition.id) == definition
    assert (await reopened.get_instance(instance.id)).workflow_name == "refund"


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    assert get_repository() is get_repository()

    repo = get_repository(f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert persistence._repository_instance is repo

    monkeypatch.setenv("FLOWGATE_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    env_repo = get_repository(config=FlowgateConfig())
    assert isinstance(env_repo, SQLiteWorkflowRepository)
    assert env_repo.db_path.endswith("env.db")

    with pytest.raises(ValueError):
        get_repository("mysql://localhost/flowgate")
