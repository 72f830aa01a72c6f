"""Workflow service tests: definitions, versioning and stats."""

import pytest

from flowgate.config import EngineConfig, FlowgateConfig
from flowgate.contracts import DefinitionStatus, InstanceStatus, WorkflowDefinition
from flowgate.errors import NotFoundError, ValidationError


@pytest.mark.asyncio
async def test_revisions_create_increasing_versions(service, spec):
    original = await service.create_definition(spec(), creator="ops")
    assert original.version == 1
    assert original.status == DefinitionStatus.DRAFT

    current = original
    for n in range(3):
        current = await service.revise_definition(
            current.id,
            {"steps": [{"name": f"notify-{n}", "type": "notification"}]},
        )

    versions = await service.list_definitions(name="refund")
    assert [d.version for d in versions] == [1, 2, 3, 4]
    assert len({d.id for d in versions}) == 4
    assert all(d.creator == "ops" for d in versions)

    stored_original = await service.get_definition(original.id)
    assert stored_original == original
    assert stored_original.steps[0].name == "notify"
    assert current.steps[0].name == "notify-2"


@pytest.mark.asyncio
async def test_creating_existing_name_adds_a_version(service, spec):
    await service.create_definition(spec())
    second = await service.create_definition(spec(description="from scratch"))
    assert second.version == 2


@pytest.mark.asyncio
async def test_revision_cannot_change_identity(service, spec):
    definition = await service.create_definition(spec())
    for field in ("name", "version", "status", "id"):
        with pytest.raises(ValidationError):
            await service.revise_definition(definition.id, {field: "x"})


@pytest.mark.asyncio
async def test_invalid_definitions_are_rejected(service, spec):
    with pytest.raises(ValidationError):
        await service.create_definition(spec(steps=[]))
    with pytest.raises(ValidationError):
        await service.create_definition(spec({"name": "x", "type": "teleport"}))
    with pytest.raises(ValidationError):
        await service.create_definition(
            spec(trigger={"eventName": "e", "conditions": {"field": "a", "operator": "~", "value": 1}})
        )
    with pytest.raises(ValidationError):
        await service.create_definition(
            spec(trigger={"eventName": "e", "conditions": {"field": "a", "operator": ["=="]}})
        )
    with pytest.raises(ValidationError):
        await service.create_definition(
            spec(
                {
                    "name": "bad-alternate",
                    "type": "webhook",
                    "errorHandling": {
                        "fallbackAction": "alternate",
                        "alternate": {"name": "a", "type": "approval", "config": {"approvers": ["x"]}},
                    },
                }
            )
        )


@pytest.mark.asyncio
async def test_create_accepts_model_instances(service):
    model = WorkflowDefinition(
        name="payments",
        trigger={"eventName": "payment.failed"},
        steps=[{"name": "retry-charge", "type": "function"}],
    )
    stored = await service.create_definition(model)
    assert stored.id != model.id
    assert stored.name == "payments"


@pytest.mark.asyncio
async def test_default_step_timeout_comes_from_config(make_service, spec):
    service = make_service(config=FlowgateConfig(engine=EngineConfig(default_step_timeout_ms=5000)))
    definition = await service.create_definition(
        spec(
            {"name": "implicit", "type": "notification"},
            {"name": "explicit", "type": "notification", "timeoutMs": 100},
            {"name": "unbounded", "type": "notification", "timeoutMs": None},
        )
    )
    assert [s.timeout_ms for s in definition.steps] == [5000, 100, None]


@pytest.mark.asyncio
async def test_missing_records_raise_not_found(service):
    with pytest.raises(NotFoundError):
        await service.get_definition("nope")
    with pytest.raises(NotFoundError):
        await service.get_instance("nope")
    with pytest.raises(NotFoundError):
        await service.start_instance("nope")
    with pytest.raises(NotFoundError):
        await service.cancel_instance("nope")


@pytest.mark.asyncio
async def test_inactive_definitions_cannot_start(service, spec):
    definition = await service.create_definition(spec())
    await service.deactivate_definition(definition.id)
    with pytest.raises(ValidationError, match="inactive"):
        await service.start_instance(definition.id)


@pytest.mark.asyncio
async def test_stats(service, spec):
    simple = await service.create_definition(spec())
    gated = await service.create_definition(
        spec({"name": "approve", "type": "approval", "config": {"approvers": ["alice"]}}, name="gated")
    )
    await service.activate_definition(simple.id)
    await service.start_instance(simple.id)
    await service.start_instance(simple.id)
    await service.start_instance(gated.id)

    stats = await service.get_stats()

    assert stats.definitions_by_status == {"active": 1, "draft": 1}
    assert stats.instances_by_status == {"completed": 2, "running": 1}
    assert stats.pending_approvals == 1
    assert stats.average_duration_ms is not None
    assert len(await service.list_instances(status=InstanceStatus.COMPLETED)) == 2
    assert len(await service.list_instances(definition_id=gated.id)) == 1
