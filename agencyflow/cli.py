"""Command line interface for the agencyflow automation core."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from agencyflow.config import load_config
from agencyflow.consumer import SignalConsumer
from agencyflow.contracts import ExecutionStatus, SignalStatus, WorkflowStatus
from agencyflow.defaults import ensure_default_workflow
from agencyflow.engine import validate_workflow
from agencyflow.exceptions import AgencyFlowError, WorkflowValidationError
from agencyflow.runtime import AutomationCore, build_core
from agencyflow.transports import get_transport
from agencyflow.workflows import load_workflow_file

app = typer.Typer(help="CLI for agencyflow signals, workflows and executions")

# Command groups
signal_app = typer.Typer(help="Commands for ingesting and inspecting signals")
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for inspecting and cancelling executions")
consumer_app = typer.Typer(help="Commands for consuming signals from a transport")

app.add_typer(signal_app, name="signal")
app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(consumer_app, name="consumer")


@app.callback()
def main() -> None:
    """agencyflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.logging.level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _core() -> AutomationCore:
    return build_core()


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _parse_payload(payload: str) -> Dict[str, Any]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        _fail(f"Payload is not valid JSON: {exc}")
    if not isinstance(data, dict):
        _fail("Payload must be a JSON object")
    return data


def _run(coro):
    try:
        return asyncio.run(coro)
    except WorkflowValidationError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        for violation in exc.violations:
            typer.echo(f"  - {violation}")
        raise typer.Exit(code=1)
    except AgencyFlowError as exc:
        _fail(str(exc))


def _dump(model) -> str:
    return json.dumps(model.model_dump(mode="json"), indent=2)


# ----------------------------------------------------------------------
# signals


@signal_app.command("ingest")
def signal_ingest(
    tenant: str = typer.Option(..., "--tenant", help="Tenant the signal belongs to"),
    source: str = typer.Option(..., "--source", help="ga4, gsc, hubspot, linkedin, internal, webhook"),
    payload: str = typer.Option("{}", "--payload", help="JSON object"),
    type: Optional[str] = typer.Option(None, "--type", help="Signal type; required unless --raw"),
    urgency: str = typer.Option("normal", "--urgency"),
    client_id: Optional[str] = typer.Option(None, "--client-id"),
    raw: bool = typer.Option(False, "--raw", help="Let the source adapter derive type and urgency"),
) -> None:
    """
    Ingest one signal, then route it and run the matched workflows.

    Example:
        agencyflow signal ingest --tenant acme --source internal \\
            --type client_record_updated --payload '{"client_id": "c1"}'
    """
    data = _parse_payload(payload)
    if not raw and not type:
        _fail("--type is required unless --raw is given")
    core = _core()

    async def _ingest():
        if raw:
            signal = await core.store.ingest_raw(tenant, source, data, client_id=client_id)
            return await core.dispatcher.dispatch(signal)
        return await core.dispatcher.ingest_and_dispatch(
            tenant, source, type, data, urgency=urgency, client_id=client_id
        )

    result = _run(_ingest())
    signal = result.signal
    typer.echo(f"Signal {signal.id}: {signal.status.value}")
    typer.echo(f"Dedup hash: {signal.dedup_hash}")
    if result.duplicate:
        typer.echo(f"Duplicate of: {signal.metadata.get('duplicate_of')}")
    for execution in result.executions:
        typer.echo(f"- execution {execution.id} ({execution.workflow_id}): {execution.status.value}")


@signal_app.command("list")
def signal_list(
    tenant: Optional[str] = typer.Option(None, "--tenant"),
    status: Optional[SignalStatus] = typer.Option(None, "--status"),
    limit: int = typer.Option(100, "--limit"),
) -> None:
    """List signals, newest first."""
    core = _core()
    signals = _run(core.store.list_signals(tenant, status, limit))
    if not signals:
        typer.echo("No signals found")
        return
    for signal in signals:
        typer.echo(
            f"{signal.id}\t{signal.source.value}/{signal.type}\t{signal.urgency.value}\t{signal.status.value}"
        )


@signal_app.command("show")
def signal_show(signal_id: str) -> None:
    core = _core()
    typer.echo(_dump(_run(core.store.get(signal_id))))


@signal_app.command("retry")
def signal_retry(signal_id: str) -> None:
    """Re-dispatch a failed signal."""
    core = _core()

    async def _retry():
        signal = await core.store.retry(signal_id)
        return await core.dispatcher.dispatch(signal)

    result = _run(_retry())
    typer.echo(f"Signal {result.signal.id}: {result.signal.status.value}")


# ----------------------------------------------------------------------
# workflows


@workflow_app.command("validate")
def workflow_validate(
    path: Path,
    tenant: Optional[str] = typer.Option(None, "--tenant"),
) -> None:
    """
    Check a YAML/JSON workflow document without storing it.

    Reports every structural violation (unknown step references, cycles,
    nested fan-out, step limit) and exits with status 1 if any are found.
    """
    if not path.exists():
        _fail("Specified path does not exist")
    config = load_config()
    try:
        workflow = load_workflow_file(path, tenant_id=tenant or "validation")
    except WorkflowValidationError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        for violation in exc.violations:
            typer.echo(f"  - {violation}")
        raise typer.Exit(code=1)

    violations = validate_workflow(workflow, max_steps=config.engine.max_steps)
    if violations:
        typer.secho(f"Workflow '{workflow.name}' is invalid", fg=typer.colors.RED)
        for violation in violations:
            typer.echo(f"  - {violation}")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow '{workflow.name}' is valid ({len(workflow.steps)} steps)")


@workflow_app.command("register")
def workflow_register(
    path: Path,
    tenant: Optional[str] = typer.Option(None, "--tenant", help="Overrides tenant_id in the document"),
    activate: bool = typer.Option(False, "--activate", help="Activate after registering"),
) -> None:
    """Validate and store a workflow document."""
    if not path.exists():
        _fail("Specified path does not exist")
    core = _core()

    async def _register():
        workflow = load_workflow_file(
            path, tenant_id=tenant, default_timeout=core.config.engine.default_timeout_seconds
        )
        workflow = await core.workflows.register(workflow)
        if activate:
            workflow = await core.workflows.activate(workflow.id)
        return workflow

    workflow = _run(_register())
    typer.echo(f"Registered workflow {workflow.id} ({workflow.name}) as {workflow.status.value}")


@workflow_app.command("list")
def workflow_list(
    tenant: Optional[str] = typer.Option(None, "--tenant"),
    status: Optional[WorkflowStatus] = typer.Option(None, "--status"),
) -> None:
    """List stored workflow definitions."""
    core = _core()
    workflows = _run(core.workflows.list(tenant, status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\tv{wf.version}\t{wf.status.value}")


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    workflow = _run(_core().workflows.activate(workflow_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.status.value}")


@workflow_app.command("pause")
def workflow_pause(workflow_id: str) -> None:
    workflow = _run(_core().workflows.pause(workflow_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.status.value}")


@workflow_app.command("archive")
def workflow_archive(workflow_id: str) -> None:
    workflow = _run(_core().workflows.archive(workflow_id))
    typer.echo(f"Workflow {workflow.id}: {workflow.status.value}")


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    payload: str = typer.Option("{}", "--payload", help="JSON trigger payload"),
) -> None:
    """
    Run a workflow manually and print the resulting execution.

    Running again with the same payload returns the existing execution.
    """
    data = _parse_payload(payload)
    core = _core()

    async def _execute():
        workflow = await core.workflows.get(workflow_id)
        return await core.engine.execute(workflow, data, trigger_type="manual")

    execution = _run(_execute())
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    if execution.status == ExecutionStatus.FAILED:
        raise typer.Exit(code=1)


@workflow_app.command("seed-defaults")
def workflow_seed_defaults(tenant: str = typer.Option(..., "--tenant")) -> None:
    """Install the default client-record workflow and route for a tenant."""
    core = _core()
    installed = _run(ensure_default_workflow(core.repository, tenant))
    if installed is None:
        typer.echo("Default workflow already installed")
        return
    workflow, route = installed
    typer.echo(f"Installed workflow {workflow.id} with route {route.id}")


# ----------------------------------------------------------------------
# executions


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Option(None, "--workflow-id"),
    tenant: Optional[str] = typer.Option(None, "--tenant"),
    status: Optional[ExecutionStatus] = typer.Option(None, "--status"),
    limit: int = typer.Option(100, "--limit"),
) -> None:
    """List executions, newest first."""
    core = _core()
    executions = _run(core.repository.list_executions(workflow_id, tenant, status, limit))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(f"{execution.id}\t{execution.workflow_id}\t{execution.status.value}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show an execution and its step-level event trace.

    Example:
        agencyflow execution show 3f0c...
        # Output: Execution 3f0c...: completed
        #         - signal_client_record_updated signal started (retry 0)
        #         - signal_client_record_updated signal completed (retry 0, 1 ms)
    """
    core = _core()

    async def _load():
        execution = await core.repository.get_execution(execution_id)
        if execution is None:
            return None, []
        return execution, await core.repository.list_events(execution_id)

    execution, events = _run(_load())
    if execution is None:
        _fail("Execution not found")
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    if execution.current_step:
        typer.echo(f"Current step: {execution.current_step}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    for event in events:
        detail = f"retry {event.retry_count}"
        if event.duration_ms is not None:
            detail += f", {event.duration_ms} ms"
        line = f"- {event.step_id} {event.step_type} {event.event_type.value} ({detail})"
        if event.error:
            line += f": {event.error}"
        typer.echo(line)


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    execution = _run(_core().engine.cancel(execution_id))
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


# ----------------------------------------------------------------------
# consumer


@consumer_app.command("run")
def consumer_run(
    topic: Optional[str] = typer.Option(None, "--topic"),
    lifespan: Optional[float] = typer.Option(None, "--lifespan", help="Seconds to run; default forever"),
) -> None:
    """
    Consume signal envelopes from the configured transport.

    Example:
        AGENCYFLOW_TRANSPORT=redis agencyflow consumer run --topic signals
    """
    core = _core()
    transport = get_transport(config=core.config)
    consumer = SignalConsumer(
        transport, core.dispatcher, topic=topic or core.config.signals.topic
    )
    typer.echo(f"Starting consumer on topic: {consumer.topic}")

    async def _consume():
        await transport.connect()
        try:
            await consumer.start(lifespan=lifespan)
        finally:
            await transport.disconnect()

    _run(_consume())
    typer.echo(f"Processed {len(consumer.results)} envelopes, rejected {len(consumer.rejected)}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
