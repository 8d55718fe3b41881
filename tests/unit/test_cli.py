import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

import agencyflow.persistence as persistence
from agencyflow.cli import app
from agencyflow.contracts import ExecutionStatus, SignalStatus
from agencyflow.persistence import InMemoryAutomationRepository

EXAMPLE = Path(__file__).resolve().parents[2] / "examples" / "client_followup.yaml"

runner = CliRunner()


@pytest.fixture
def cli_repo() -> InMemoryAutomationRepository:
    repo = InMemoryAutomationRepository()
    persistence._repository_instance = repo
    return repo


def invoke(*args):
    result = runner.invoke(app, list(args))
    return result, result.output


def test_validate_example_workflow():
    result, output = invoke("workflow", "validate", str(EXAMPLE))
    assert result.exit_code == 0, output
    assert "Workflow 'Traffic drop follow-up' is valid (5 steps)" in output


def test_validate_reports_every_violation(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(
        """
name: bad
steps:
  - {id: a, type: action, config: {action_type: log}, next: b}
  - {id: b, type: action, config: {action_type: log}, next: a}
  - {id: c, type: action, config: {action_type: log}, next: ghost}
"""
    )
    result, output = invoke("workflow", "validate", str(path))
    assert result.exit_code == 1
    assert "cycle" in output
    assert "unknown step 'ghost'" in output


def test_validate_missing_file(tmp_path):
    result, output = invoke("workflow", "validate", str(tmp_path / "nope.yaml"))
    assert result.exit_code == 1
    assert "Specified path does not exist" in output


def test_register_activate_and_list(cli_repo):
    result, output = invoke("workflow", "register", str(EXAMPLE), "--activate")
    assert result.exit_code == 0, output
    assert "as active" in output

    result, output = invoke("workflow", "list", "--tenant", "acme")
    assert result.exit_code == 0, output
    assert "Traffic drop follow-up" in output
    assert "active" in output


def test_lists_are_empty(cli_repo):
    assert "No signals found" in invoke("signal", "list")[1]
    assert "No workflows found" in invoke("workflow", "list")[1]
    assert "No executions found" in invoke("execution", "list")[1]


def test_signal_ingest_runs_default_workflow(cli_repo):
    result, output = invoke("workflow", "seed-defaults", "--tenant", "acme")
    assert result.exit_code == 0, output
    assert "Installed workflow" in output
    assert "already installed" in invoke("workflow", "seed-defaults", "--tenant", "acme")[1]

    args = (
        "signal", "ingest",
        "--tenant", "acme",
        "--source", "internal",
        "--type", "client_record_updated",
        "--payload", json.dumps({"client_id": "c1"}),
    )
    result, output = invoke(*args)
    assert result.exit_code == 0, output
    assert "completed" in output
    assert "- execution" in output

    result, output = invoke(*args)
    assert result.exit_code == 0, output
    assert "duplicate" in output
    assert "Duplicate of:" in output

    executions = asyncio.run(cli_repo.list_executions())
    assert len(executions) == 1
    assert executions[0].status == ExecutionStatus.COMPLETED

    result, output = invoke("execution", "show", executions[0].id)
    assert result.exit_code == 0, output
    assert "signal_client_record_updated signal started" in output
    assert "generate_recommendations action completed" in output


def test_signal_ingest_validation(cli_repo):
    result, output = invoke("signal", "ingest", "--tenant", "acme", "--source", "internal")
    assert result.exit_code == 1
    assert "--type is required" in output

    result, output = invoke(
        "signal", "ingest", "--tenant", "acme", "--source", "myspace", "--type", "x"
    )
    assert result.exit_code == 1
    assert "Invalid signal source" in output

    result, output = invoke(
        "signal", "ingest", "--tenant", "acme", "--source", "internal", "--type", "x",
        "--payload", "[1, 2]",
    )
    assert result.exit_code == 1
    assert "Payload must be a JSON object" in output
    assert asyncio.run(cli_repo.list_signals()) == []


def test_raw_ingest_uses_adapter(cli_repo):
    result, output = invoke(
        "signal", "ingest", "--tenant", "acme", "--source", "ga4", "--raw",
        "--payload", json.dumps({"sessions": 10, "percent_change": -60}),
    )
    assert result.exit_code == 0, output
    signal = asyncio.run(cli_repo.list_signals())[0]
    assert signal.type == "traffic_metrics"
    assert signal.status == SignalStatus.COMPLETED


def test_workflow_run_and_cancel(cli_repo, tmp_path):
    path = tmp_path / "wf.yaml"
    path.write_text(
        """
tenant_id: acme
name: manual
steps:
  - {id: a, type: action, config: {action_type: log, config: {message: "hi {{ who }}"}}}
"""
    )
    invoke("workflow", "register", str(path), "--activate")
    workflow = asyncio.run(cli_repo.list_workflows())[0]

    result, output = invoke("workflow", "run", workflow.id, "--payload", '{"who": "there"}')
    assert result.exit_code == 0, output
    assert "completed" in output

    execution = asyncio.run(cli_repo.list_executions())[0]
    result, output = invoke("execution", "cancel", execution.id)
    assert result.exit_code == 0, output
    assert f"Execution {execution.id}: completed" in output

    result, output = invoke("execution", "show", "missing")
    assert result.exit_code == 1
    assert "Execution not found" in output


def test_run_inactive_workflow_fails(cli_repo, tmp_path):
    path = tmp_path / "wf.yaml"
    path.write_text(
        "tenant_id: acme\nname: draft\nsteps:\n  - {id: a, type: action, config: {action_type: log}}\n"
    )
    invoke("workflow", "register", str(path))
    workflow = asyncio.run(cli_repo.list_workflows())[0]

    result, output = invoke("workflow", "run", workflow.id)
    assert result.exit_code == 1
    assert "status is draft" in output


def test_signal_retry_requires_failed_signal(cli_repo):
    invoke(
        "signal", "ingest", "--tenant", "acme", "--source", "internal", "--type", "x",
    )
    signal = asyncio.run(cli_repo.list_signals())[0]
    result, output = invoke("signal", "retry", signal.id)
    assert result.exit_code == 1
    assert "Only failed signals can be retried" in output
