"""Command line interface for the flowgate workflow engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

import typer
import yaml

from flowgate import WorkflowService, get_repository, get_transport, load_config
from flowgate.contracts import ApprovalFilter, DefinitionStatus, InstanceStatus
from flowgate.errors import FlowgateError, NotFoundError
from flowgate.events import EventPump

T = TypeVar("T")

app = typer.Typer(help="CLI for flowgate workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for managing workflow instances")
approval_app = typer.Typer(help="Commands for approval tasks")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")
app.add_typer(approval_app, name="approval")


@app.callback()
def main() -> None:
    """flowgate CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _service() -> WorkflowService:
    return WorkflowService(get_repository())


def _run(coro: Awaitable[T]) -> T:
    """Run ``coro`` and turn engine errors into a non-zero exit."""
    try:
        return asyncio.run(coro)
    except NotFoundError as exc:
        typer.echo(f"{exc.kind} not found")
        raise typer.Exit(code=1)
    except FlowgateError as exc:
        typer.secho(f"{exc.code}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_json(value: Optional[str]) -> dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("JSON data must be an object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


# ----------------------------------------------------------------------
# Definitions


@definition_app.command("create")
def definition_create(path: Path, creator: Optional[str] = None) -> None:
    """
    Create a workflow definition from a YAML or JSON file.

    The definition is stored as a new draft version of its workflow name.

    Example:
        flowgate definition create ./workflows/refund.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    definition = _run(_service().create_definition(data, creator=creator))
    typer.echo(f"Created {definition.name} v{definition.version}: {definition.id}")


@definition_app.command("list")
def definition_list(
    name: Optional[str] = None,
    status: Optional[DefinitionStatus] = None,
) -> None:
    """List workflow definitions, optionally filtered by name or status."""
    definitions = _run(_service().list_definitions(name=name, status=status))
    if not definitions:
        typer.echo("No definitions found")
        return
    for d in definitions:
        typer.echo(f"{d.id}\t{d.name}\tv{d.version}\t{d.status.value}")


@definition_app.command("show")
def definition_show(definition_id: str) -> None:
    """Print a workflow definition as JSON."""
    definition = _run(_service().get_definition(definition_id))
    typer.echo(definition.model_dump_json(indent=2, by_alias=True))


@definition_app.command("activate")
def definition_activate(definition_id: str) -> None:
    """Activate a definition; other versions of the same workflow become inactive."""
    definition = _run(_service().activate_definition(definition_id))
    typer.echo(f"Activated {definition.name} v{definition.version}")


@definition_app.command("deactivate")
def definition_deactivate(definition_id: str) -> None:
    definition = _run(_service().deactivate_definition(definition_id))
    typer.echo(f"Deactivated {definition.name} v{definition.version}")


# ----------------------------------------------------------------------
# Instances


@instance_app.command("start")
def instance_start(
    definition_id: str,
    data: Optional[str] = typer.Option(None, help="Trigger data as a JSON object"),
) -> None:
    """
    Start an instance of a workflow definition.

    Example:
        flowgate instance start 0b7c... --data '{"amount": 250}'
    """
    instance = _run(_service().start_instance(definition_id, _parse_json(data)))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("list")
def instance_list(
    definition_id: Optional[str] = typer.Option(None, "--definition"),
    status: Optional[InstanceStatus] = None,
) -> None:
    """List workflow instances with their current status."""
    instances = _run(_service().list_instances(definition_id=definition_id, status=status))
    if not instances:
        typer.echo("No instances found")
        return
    for i in instances:
        typer.echo(f"{i.id}\t{i.workflow_name}\tv{i.definition_version}\t{i.status.value}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """Show an instance and its step log."""
    instance = _run(_service().get_instance(instance_id))
    typer.echo(
        f"Instance {instance.id}: {instance.status.value} "
        f"(step {instance.current_step.index}/{len(instance.steps)})"
    )
    if instance.variables:
        typer.echo(f"Variables: {json.dumps(instance.variables, default=str)}")
    for record in instance.steps:
        typer.echo(
            f"- {record.name}: {record.status.value}"
            + (
                f" ({record.start_time} -> {record.end_time})"
                if record.start_time or record.end_time
                else ""
            )
        )
    if instance.error:
        typer.echo(
            f"Error at step {instance.error.step_index}: "
            f"{instance.error.code} {instance.error.message}"
        )


@instance_app.command("cancel")
def instance_cancel(instance_id: str) -> None:
    instance = _run(_service().cancel_instance(instance_id))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


# ----------------------------------------------------------------------
# Approvals


@approval_app.command("list")
def approval_list(
    approver: Optional[str] = None,
    instance_id: Optional[str] = typer.Option(None, "--instance"),
) -> None:
    """List pending approval tasks."""
    tasks = _run(
        _service().list_pending_approvals(
            ApprovalFilter(approver=approver, instance_id=instance_id)
        )
    )
    if not tasks:
        typer.echo("No pending approvals")
        return
    for t in tasks:
        approvers = ", ".join(f"{a.user}={a.status.value}" for a in t.approvers)
        typer.echo(f"{t.id}\t{t.instance_id}\t{t.type.value}\t{approvers}")


@approval_app.command("vote")
def approval_vote(
    task_id: str,
    user: str,
    action: str,
    comment: Optional[str] = None,
) -> None:
    """
    Vote on an approval task.

    Example:
        flowgate approval vote 5f1e... alice approve --comment "looks good"
    """
    task = _run(_service().vote(task_id, user, action, comment))
    typer.echo(f"Task {task.id}: {task.status.value}")


# ----------------------------------------------------------------------
# Runtime


@app.command("sweep")
def sweep() -> None:
    """Run one expiry sweep over approval deadlines and workflow timeouts."""
    expired = _run(_service().sweep())
    typer.echo(f"Expired {expired} approval task(s)")


@app.command("stats")
def stats() -> None:
    result = _run(_service().get_stats())
    typer.echo(result.model_dump_json(indent=2, by_alias=True))


@app.command("listen")
def listen(lifespan: Optional[float] = None) -> None:
    """
    Listen for domain events and start the workflows they trigger.

    Registers every active definition, then consumes the configured transport
    topic while the expiry sweeper runs in the background.

    Example:
        flowgate listen --lifespan 300
    """
    config = load_config()
    service = _service()
    transport = get_transport(config=config)

    async def _listen() -> int:
        registered = await service.load_active_definitions()
        typer.echo(f"Listening on {transport.topic} ({registered} active workflows)")
        service.sweeper.start()
        try:
            async with transport:
                return await EventPump(transport, service.triggers).run(lifespan=lifespan)
        finally:
            await service.sweeper.stop()

    handled = _run(_listen())
    typer.echo(f"Handled {handled} event(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
