"""Trigger registry tests."""

import logging

import pytest

from flowgate.contracts import DefinitionStatus, InstanceStatus
from flowgate.errors import ValidationError


@pytest.mark.asyncio
async def test_only_active_definitions_are_registered(service, spec):
    definition = await service.create_definition(spec())

    with pytest.raises(ValidationError):
        service.triggers.register(definition)
    assert await service.dispatch_event("refund.requested", {}) == []

    await service.activate_definition(definition.id)
    assert service.triggers.is_registered(definition.id)
    assert service.triggers.event_names() == {"refund.requested"}


@pytest.mark.asyncio
async def test_dispatch_evaluates_trigger_conditions(service, spec):
    definition = await service.create_definition(
        spec(
            trigger={
                "event": "refund.requested",
                "conditions": [
                    {"field": "amount", "operator": ">", "value": 100},
                    {"field": "currency", "operator": "in", "value": ["EUR", "USD"]},
                ],
            }
        )
    )
    await service.activate_definition(definition.id)

    assert await service.dispatch_event("refund.requested", {"amount": 50, "currency": "EUR"}) == []
    assert await service.dispatch_event("order.created", {"amount": 500, "currency": "EUR"}) == []

    [instance] = await service.dispatch_event(
        "refund.requested", {"amount": 500, "currency": "EUR"}
    )
    assert instance.status == InstanceStatus.COMPLETED
    assert instance.trigger.event_name == "refund.requested"


@pytest.mark.asyncio
async def test_activating_new_version_replaces_listener(service, spec):
    v1 = await service.create_definition(spec())
    await service.activate_definition(v1.id)
    v2 = await service.revise_definition(v1.id, {"description": "second cut"})

    await service.activate_definition(v2.id)

    assert not service.triggers.is_registered(v1.id)
    assert service.triggers.is_registered(v2.id)
    assert (await service.get_definition(v1.id)).status == DefinitionStatus.INACTIVE
    [instance] = await service.dispatch_event("refund.requested", {})
    assert instance.definition_version == 2


@pytest.mark.asyncio
async def test_failing_start_does_not_block_other_listeners(service, spec, caplog):
    strict = await service.create_definition(
        spec(name="strict", variables={"amount": {"type": "number", "required": True}})
    )
    relaxed = await service.create_definition(spec(name="relaxed"))
    await service.activate_definition(strict.id)
    await service.activate_definition(relaxed.id)

    with caplog.at_level(logging.ERROR, logger="flowgate.triggers"):
        started = await service.dispatch_event("refund.requested", {})

    assert [i.workflow_name for i in started] == ["relaxed"]
    assert "Failed to start strict v1" in caplog.text


@pytest.mark.asyncio
async def test_deactivate_and_reload_active_definitions(make_service, spec):
    service = make_service()
    definition = await service.create_definition(spec())
    await service.activate_definition(definition.id)

    restarted = make_service()
    assert restarted.triggers.event_names() == set()
    assert await restarted.load_active_definitions() == 1
    assert restarted.triggers.is_registered(definition.id)

    await restarted.deactivate_definition(definition.id)
    assert not restarted.triggers.is_registered(definition.id)
    assert await restarted.dispatch_event("refund.requested", {}) == []
    assert not restarted.triggers.unregister(definition.id)
