import pytest

from agencyflow.contracts import (
    EventType,
    ExecutionStatus,
    Signal,
    SignalRoute,
    SignalStatus,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowStatus,
)
from agencyflow.exceptions import ExecutionConflictError, NotFoundError
from agencyflow.persistence import (
    InMemoryAutomationRepository,
    SQLiteAutomationRepository,
    get_repository,
    reset_repository,
)
from agencyflow.rules.models import (
    AuditChangeType,
    WorkflowRule,
    WorkflowRuleAudit,
    WorkflowRuleEvaluation,
    WorkflowRuleVersion,
)


@pytest.fixture(params=["memory", "sqlite"])
def any_repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryAutomationRepository()
        return
    repo = SQLiteAutomationRepository(tmp_path / "automation.db")
    yield repo
    repo.close()


def signal(**overrides):
    data = {
        "tenant_id": "acme",
        "source": "ga4",
        "type": "traffic_metrics",
        "payload": {"sessions": 1},
        "dedup_hash": "h1",
    }
    data.update(overrides)
    return Signal(**data)


@pytest.mark.asyncio
async def test_signal_dedup_and_update(any_repo):
    first = await any_repo.insert_signal(signal(), 3600)
    second = await any_repo.insert_signal(signal(), 3600)
    other_tenant = await any_repo.insert_signal(signal(tenant_id="globex"), 3600)

    assert first.status == SignalStatus.PENDING
    assert second.status == SignalStatus.DUPLICATE
    assert second.metadata["duplicate_of"] == first.id
    assert other_tenant.status == SignalStatus.PENDING

    first.status = SignalStatus.COMPLETED
    first.execution_ids = ["e1"]
    await any_repo.update_signal(first)
    stored = await any_repo.get_signal(first.id)
    assert stored.status == SignalStatus.COMPLETED
    assert stored.execution_ids == ["e1"]

    assert len(await any_repo.list_signals("acme")) == 2
    assert [s.id for s in await any_repo.list_signals("acme", SignalStatus.DUPLICATE)] == [second.id]

    with pytest.raises(NotFoundError):
        await any_repo.update_signal(signal())


@pytest.mark.asyncio
async def test_workflows_and_routes(any_repo, build_workflow):
    workflow = build_workflow(
        [{"id": "a", "type": "action", "config": {"action_type": "log"}}], status="draft"
    )
    await any_repo.save_workflow(workflow)
    workflow.status = WorkflowStatus.ACTIVE
    await any_repo.save_workflow(workflow)

    stored = await any_repo.get_workflow(workflow.id)
    assert stored.status == WorkflowStatus.ACTIVE
    assert stored.steps[0].config.action_type == "log"
    assert [w.id for w in await any_repo.list_workflows("acme", WorkflowStatus.ACTIVE)] == [workflow.id]
    assert await any_repo.list_workflows("globex") == []
    assert await any_repo.get_workflow("missing") is None

    route = SignalRoute(tenant_id="acme", workflow_id=workflow.id, name="r", source="ga4")
    await any_repo.save_route(route)
    routes = await any_repo.list_routes("acme")
    assert [r.id for r in routes] == [route.id]
    assert routes[0].source.value == "ga4"


@pytest.mark.asyncio
async def test_execution_uniqueness_and_events(any_repo):
    execution = WorkflowExecution(workflow_id="wf", tenant_id="acme", input_hash="abc")
    await any_repo.insert_execution(execution)

    with pytest.raises(ExecutionConflictError):
        await any_repo.insert_execution(
            WorkflowExecution(workflow_id="wf", tenant_id="acme", input_hash="abc")
        )
    await any_repo.insert_execution(
        WorkflowExecution(workflow_id="wf", tenant_id="acme", input_hash="def")
    )

    found = await any_repo.find_execution("wf", "abc")
    assert found.id == execution.id

    execution.status = ExecutionStatus.COMPLETED
    execution.result = {"a": {"ok": True}}
    await any_repo.update_execution(execution)
    stored = await any_repo.get_execution(execution.id)
    assert stored.status == ExecutionStatus.COMPLETED
    assert stored.result == {"a": {"ok": True}}
    assert len(await any_repo.list_executions(workflow_id="wf")) == 2
    assert len(await any_repo.list_executions(status=ExecutionStatus.COMPLETED)) == 1

    for event_type in (EventType.STARTED, EventType.RETRYING, EventType.COMPLETED):
        await any_repo.append_event(
            WorkflowEvent(
                execution_id=execution.id,
                tenant_id="acme",
                step_id="a",
                step_type="action",
                event_type=event_type,
            )
        )
    events = await any_repo.list_events(execution.id)
    assert [e.event_type for e in events] == [
        EventType.STARTED,
        EventType.RETRYING,
        EventType.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_rules_versions_evaluations_and_audits(any_repo):
    rule = WorkflowRule(tenant_id="acme", name="Traffic")
    disabled = WorkflowRule(tenant_id="acme", name="Off", enabled=False)
    await any_repo.save_rule(rule)
    await any_repo.save_rule(disabled)

    v2 = WorkflowRuleVersion(rule_id=rule.id, tenant_id="acme", version=2)
    v1 = WorkflowRuleVersion(
        rule_id=rule.id,
        tenant_id="acme",
        version=1,
        conditions=[{"field_path": "sessions", "operator": "gt", "comparison_value": 1}],
    )
    await any_repo.save_rule_version(v2)
    await any_repo.save_rule_version(v1)

    assert [r.id for r in await any_repo.list_rules("acme", enabled=True)] == [rule.id]
    assert [v.version for v in await any_repo.list_rule_versions(rule.id)] == [1, 2]
    assert (await any_repo.get_rule_version(v1.id)).conditions[0].field_path == "sessions"

    await any_repo.append_rule_evaluation(
        WorkflowRuleEvaluation(tenant_id="acme", rule_id=rule.id, rule_version_id=v1.id, matched=True)
    )
    evaluations = await any_repo.list_rule_evaluations(rule.id)
    assert len(evaluations) == 1 and evaluations[0].matched

    await any_repo.append_rule_audit(
        WorkflowRuleAudit(tenant_id="acme", rule_id=rule.id, change_type=AuditChangeType.CREATED)
    )
    await any_repo.append_rule_audit(
        WorkflowRuleAudit(tenant_id="acme", rule_id=rule.id, change_type=AuditChangeType.PUBLISHED)
    )
    assert [a.change_type for a in await any_repo.list_rule_audits(rule.id)] == [
        AuditChangeType.CREATED,
        AuditChangeType.PUBLISHED,
    ]


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "automation.db"
    repo = SQLiteAutomationRepository(path)
    stored = await repo.insert_signal(signal(), 3600)
    repo.close()

    reopened = SQLiteAutomationRepository(path)
    assert (await reopened.get_signal(stored.id)).dedup_hash == "h1"
    duplicate = await reopened.insert_signal(signal(), 3600)
    assert duplicate.status == SignalStatus.DUPLICATE
    reopened.close()


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    assert isinstance(get_repository(), InMemoryAutomationRepository)
    assert get_repository() is get_repository()

    reset_repository()
    monkeypatch.setenv("AGENCYFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'x.db'}")
    repo = get_repository()
    assert isinstance(repo, SQLiteAutomationRepository)
    repo.close()

    with pytest.raises(ValueError):
        get_repository("mysql://nope")
