import asyncio

from typer.testing import CliRunner

import flowgate.persistence as persistence
from flowgate.cli import app
from flowgate.persistence import InMemoryWorkflowRepository

DEFINITION_YAML = """
name: expense-approval
type: review
trigger:
  eventName: expense.submitted
steps:
  - name: wait
    type: delay
    config:
      durationMs: 0
  - name: manager
    type: approval
    config:
      approvers: [alice]
"""


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def _create_definition(runner: CliRunner, tmp_path) -> str:
    path = tmp_path / "expense.yaml"
    path.write_text(DEFINITION_YAML)
    result = runner.invoke(app, ["definition", "create", str(path), "--creator", "ops"])
    assert result.exit_code == 0, result.stdout
    assert "Created expense-approval v1" in result.stdout
    return result.stdout.strip().rsplit(": ", 1)[1]


def test_definition_commands(tmp_path):
    repo = _setup_repo()
    runner = CliRunner()
    definition_id = _create_definition(runner, tmp_path)

    listed = runner.invoke(app, ["definition", "list"])
    assert listed.exit_code == 0
    assert definition_id in listed.stdout
    assert "draft" in listed.stdout

    shown = runner.invoke(app, ["definition", "show", definition_id])
    assert shown.exit_code == 0
    assert '"eventName": "expense.submitted"' in shown.stdout

    activated = runner.invoke(app, ["definition", "activate", definition_id])
    assert activated.exit_code == 0
    assert "Activated expense-approval v1" in activated.stdout
    stored = asyncio.run(repo.get_definition(definition_id))
    assert stored.status.value == "active"

    missing = runner.invoke(app, ["definition", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "WorkflowDefinition not found" in missing.stdout


def test_instance_and_approval_commands(tmp_path):
    repo = _setup_repo()
    runner = CliRunner()
    definition_id = _create_definition(runner, tmp_path)

    started = runner.invoke(
        app, ["instance", "start", definition_id, "--data", '{"amount": 42}']
    )
    assert started.exit_code == 0, started.stdout
    assert "running" in started.stdout
    [instance] = asyncio.run(repo.list_instances())

    shown = runner.invoke(app, ["instance", "show", instance.id])
    assert shown.exit_code == 0
    assert "- wait: completed" in shown.stdout
    assert "- manager: running" in shown.stdout

    pending = runner.invoke(app, ["approval", "list", "--approver", "alice"])
    assert pending.exit_code == 0
    [task] = asyncio.run(repo.list_tasks())
    assert task.id in pending.stdout

    voted = runner.invoke(app, ["approval", "vote", task.id, "alice", "approve"])
    assert voted.exit_code == 0, voted.stdout
    assert "approved" in voted.stdout
    assert asyncio.run(repo.get_instance(instance.id)).status.value == "completed"

    listed = runner.invoke(app, ["instance", "list", "--status", "completed"])
    assert instance.id in listed.stdout

    missing = runner.invoke(app, ["instance", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "WorkflowInstance not found" in missing.stdout

    bad_json = runner.invoke(app, ["instance", "start", definition_id, "--data", "[1]"])
    assert bad_json.exit_code == 1


def test_vote_by_unknown_approver_exits_non_zero(tmp_path):
    repo = _setup_repo()
    runner = CliRunner()
    definition_id = _create_definition(runner, tmp_path)
    runner.invoke(app, ["instance", "start", definition_id])
    [task] = asyncio.run(repo.list_tasks())

    result = runner.invoke(app, ["approval", "vote", task.id, "mallory", "approve"])
    assert result.exit_code == 1
    assert "Approver not found" in result.stdout


def test_sweep_and_stats_commands(tmp_path):
    _setup_repo()
    runner = CliRunner()
    _create_definition(runner, tmp_path)

    sweep = runner.invoke(app, ["sweep"])
    assert sweep.exit_code == 0
    assert "Expired 0 approval task(s)" in sweep.stdout

    stats = runner.invoke(app, ["stats"])
    assert stats.exit_code == 0
    assert '"draft": 1' in stats.stdout
