"""Workflow execution engine tests."""

import asyncio

import pytest

from agencyflow.contracts import EventType, ExecutionStatus
from agencyflow.engine import WorkflowEngine
from agencyflow.exceptions import WorkflowValidationError
from agencyflow.utils import compute_hash


class SelectiveDispatcher:
    """Fails ``failures`` times for action types listed in ``failing``."""

    def __init__(self, failing=(), failures=10**6):
        self.failing = set(failing)
        self.failures = failures
        self.calls = []

    async def dispatch(self, action_type, config, context):
        self.calls.append((action_type, config))
        if action_type in self.failing and self.failures > 0:
            self.failures -= 1
            raise RuntimeError(f"{action_type} exploded")
        return {"ok": True}


class FakeGenerator:
    provider = "fake"

    def __init__(self, output):
        self.output = output
        self.prompts = []

    async def generate(self, prompt, schema=None, use_cache=False):
        self.prompts.append((prompt, schema, use_cache))
        return self.output


class FakeInvoker:
    def __init__(self):
        self.calls = []

    async def invoke(self, domain, operation, capability, input):
        self.calls.append((domain, operation, capability, input))
        return {"recommendations": ["call the client"]}


def action(step_id, action_type="notify", next=None, **extra):
    step = {"id": step_id, "type": "action", "config": {"action_type": action_type}, "next": next}
    step.update(extra)
    return step


async def events_for(repo, execution_id, step_id=None):
    events = await repo.list_events(execution_id)
    return [e for e in events if step_id is None or e.step_id == step_id]


@pytest.mark.asyncio
async def test_idempotent_replay_returns_same_execution(engine, repo, actions, build_workflow):
    wf = build_workflow([action("a", config={"action_type": "notify", "config": {"v": "{{ value }}"}})])

    first = await engine.execute(wf, {"value": 1, "client": "c1"})
    second = await engine.execute(wf, {"client": "c1", "value": 1})

    assert first.status == ExecutionStatus.COMPLETED
    assert second.id == first.id
    assert len(actions.dispatched) == 1
    completed = [e for e in await events_for(repo, first.id) if e.event_type == EventType.COMPLETED]
    assert len(completed) == 1


@pytest.mark.asyncio
async def test_different_input_creates_new_execution(engine, build_workflow):
    wf = build_workflow([action("a")])
    first = await engine.execute(wf, {"value": 1})
    second = await engine.execute(wf, {"value": 2})
    assert first.id != second.id


@pytest.mark.asyncio
async def test_concurrent_duplicate_triggers_create_one_execution(repo, sleeper, build_workflow):
    dispatcher = SelectiveDispatcher()
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    wf = build_workflow([action("a")])

    results = await asyncio.gather(*(engine.execute(wf, {"lead": "x"}) for _ in range(5)))

    assert len({execution.id for execution in results}) == 1
    assert len(dispatcher.calls) == 1
    assert len(await repo.list_executions(workflow_id=wf.id)) == 1


@pytest.mark.asyncio
async def test_completed_execution_records_result_and_hash(engine, build_workflow):
    wf = build_workflow([action("a", next="b"), action("b")])
    execution = await engine.execute(wf, {"x": 1})

    assert execution.status == ExecutionStatus.COMPLETED
    assert set(execution.result) == {"a", "b"}
    assert execution.output_hash == compute_hash(execution.result)
    assert execution.current_step == "b"
    assert execution.started_at and execution.completed_at


@pytest.mark.asyncio
async def test_retry_emits_retrying_then_completed(repo, sleeper, build_workflow):
    dispatcher = SelectiveDispatcher(failing={"flaky"}, failures=2)
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    wf = build_workflow(
        [
            action(
                "a",
                "flaky",
                on_error="retry",
                retry_config={"max_retries": 2, "backoff_ms": 100},
            )
        ]
    )

    execution = await engine.execute(wf, {})

    assert execution.status == ExecutionStatus.COMPLETED
    events = await events_for(repo, execution.id, "a")
    assert [(e.event_type, e.retry_count) for e in events] == [
        (EventType.STARTED, 0),
        (EventType.RETRYING, 0),
        (EventType.RETRYING, 1),
        (EventType.COMPLETED, 2),
    ]
    assert sleeper.delays == [0.1, 0.1]


@pytest.mark.asyncio
async def test_retry_backoff_multiplier_grows_delay(repo, sleeper, build_workflow):
    dispatcher = SelectiveDispatcher(failing={"flaky"}, failures=2)
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    wf = build_workflow(
        [
            action(
                "a",
                "flaky",
                on_error="retry",
                retry_config={"max_retries": 3, "backoff_ms": 100, "backoff_multiplier": 2},
            )
        ]
    )

    await engine.execute(wf, {})
    assert sleeper.delays == [0.1, 0.2]


@pytest.mark.asyncio
async def test_retry_exhaustion_fails_execution(repo, sleeper, build_workflow):
    dispatcher = SelectiveDispatcher(failing={"flaky"})
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    wf = build_workflow(
        [action("a", "flaky", on_error="retry", retry_config={"max_retries": 2, "backoff_ms": 0})]
    )

    execution = await engine.execute(wf, {})

    assert execution.status == ExecutionStatus.FAILED
    assert "flaky exploded" in execution.error
    events = await events_for(repo, execution.id, "a")
    assert [e.event_type for e in events] == [
        EventType.STARTED,
        EventType.RETRYING,
        EventType.RETRYING,
        EventType.FAILED,
    ]
    assert events[-1].retry_count == 2


@pytest.mark.asyncio
async def test_workflow_retry_policy_applies_without_step_override(repo, sleeper, build_workflow):
    dispatcher = SelectiveDispatcher(failing={"flaky"}, failures=1)
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    wf = build_workflow(
        [action("a", "flaky", on_error="retry")],
        retry_policy={"max_retries": 1, "backoff_ms": 250},
    )

    execution = await engine.execute(wf, {})
    assert execution.status == ExecutionStatus.COMPLETED
    assert sleeper.delays == [0.25]


@pytest.mark.asyncio
async def test_skip_policy_advances_with_empty_output(repo, sleeper, build_workflow):
    dispatcher = SelectiveDispatcher(failing={"boom"})
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    wf = build_workflow([action("a", "boom", next="b", on_error="skip"), action("b")])

    execution = await engine.execute(wf, {})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.result["a"] == {}
    assert "b" in execution.result
    a_events = await events_for(repo, execution.id, "a")
    assert [e.event_type for e in a_events] == [EventType.STARTED, EventType.SKIPPED]
    assert "boom exploded" in a_events[-1].error


@pytest.mark.asyncio
async def test_fail_policy_aborts_and_keeps_event_log(repo, sleeper, build_workflow):
    dispatcher = SelectiveDispatcher(failing={"boom"})
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    wf = build_workflow([action("a", next="b"), action("b", "boom", next="c"), action("c")])

    execution = await engine.execute(wf, {})

    assert execution.status == ExecutionStatus.FAILED
    assert "Step 'b'" in execution.error
    assert execution.current_step == "b"
    events = await events_for(repo, execution.id)
    assert [(e.step_id, e.event_type) for e in events] == [
        ("a", EventType.STARTED),
        ("a", EventType.COMPLETED),
        ("b", EventType.STARTED),
        ("b", EventType.FAILED),
    ]
    assert [call[0] for call in dispatcher.calls] == ["notify", "boom"]


def _branch(cases, default=None, on_error="fail"):
    return {
        "id": "route",
        "type": "branch",
        "on_error": on_error,
        "config": {"branches": cases, "default": default},
    }


@pytest.mark.asyncio
async def test_branch_takes_first_matching_case(engine, build_workflow):
    wf = build_workflow(
        [
            _branch(
                [
                    {"conditions": [{"field": "score", "operator": "gt", "value": 90}], "next": "hot"},
                    {"conditions": [{"field": "score", "operator": "gt", "value": 50}], "next": "warm"},
                ],
                default="cold",
            ),
            action("hot"),
            action("warm"),
            action("cold"),
        ]
    )

    execution = await engine.execute(wf, {"score": 75})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.result["route"] == {"branch": 1, "next": "warm"}
    assert "warm" in execution.result
    assert "hot" not in execution.result and "cold" not in execution.result


@pytest.mark.asyncio
async def test_branch_falls_back_to_default(engine, build_workflow):
    wf = build_workflow(
        [
            _branch(
                [
                    {"conditions": [{"field": "score", "operator": "gt", "value": 90}], "next": "hot"},
                    {"conditions": [{"field": "score", "operator": "gt", "value": 50}], "next": "warm"},
                ],
                default="cold",
            ),
            action("hot"),
            action("warm"),
            action("cold"),
        ]
    )

    execution = await engine.execute(wf, {"score": 10})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.result["route"]["branch"] == "default"
    assert "cold" in execution.result


@pytest.mark.asyncio
async def test_branch_without_match_or_default_fails_even_with_skip(engine, repo, build_workflow):
    wf = build_workflow(
        [
            _branch(
                [{"conditions": [{"field": "score", "operator": "gt", "value": 90}], "next": "hot"}],
                on_error="skip",
            ),
            action("hot"),
        ]
    )

    execution = await engine.execute(wf, {"score": 10})

    assert execution.status == ExecutionStatus.FAILED
    assert "No branch matched" in execution.error
    events = await events_for(repo, execution.id, "route")
    assert events[-1].event_type == EventType.FAILED


@pytest.mark.asyncio
async def test_parallel_merges_outputs_by_step_id(engine, repo, build_workflow):
    wf = build_workflow(
        [
            {"id": "fan", "type": "parallel", "config": {"steps": ["left", "right"]}, "next": "join"},
            action("left", "email"),
            action("right", "slack"),
            action("join", "summary"),
        ]
    )

    execution = await engine.execute(wf, {"x": 1})

    assert execution.status == ExecutionStatus.COMPLETED
    assert set(execution.result["fan"]) == {"left", "right"}
    assert execution.result["fan"]["left"]["action_type"] == "email"
    assert execution.result["left"] == execution.result["fan"]["left"]
    assert "join" in execution.result

    events = await events_for(repo, execution.id)
    order = [(e.step_id, e.event_type) for e in events]
    assert order[0] == ("fan", EventType.STARTED)
    fan_done = order.index(("fan", EventType.COMPLETED))
    assert order.index(("left", EventType.COMPLETED)) < fan_done
    assert order.index(("right", EventType.COMPLETED)) < fan_done
    assert order.index(("join", EventType.STARTED)) > fan_done


@pytest.mark.asyncio
async def test_parallel_sub_step_failure_fails_execution(repo, sleeper, build_workflow):
    dispatcher = SelectiveDispatcher(failing={"slack"})
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    wf = build_workflow(
        [
            {
                "id": "fan",
                "type": "parallel",
                "on_error": "skip",
                "config": {"steps": ["left", "right"]},
                "next": "join",
            },
            action("left", "email"),
            action("right", "slack"),
            action("join"),
        ]
    )

    execution = await engine.execute(wf, {})

    assert execution.status == ExecutionStatus.FAILED
    assert "Parallel sub-step 'right'" in execution.error
    assert "join" not in execution.result


@pytest.mark.asyncio
async def test_parallel_sub_step_skip_policy_is_local(repo, sleeper, build_workflow):
    dispatcher = SelectiveDispatcher(failing={"slack"})
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    wf = build_workflow(
        [
            {"id": "fan", "type": "parallel", "config": {"steps": ["left", "right"]}},
            action("left", "email"),
            action("right", "slack", on_error="skip"),
        ]
    )

    execution = await engine.execute(wf, {})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.result["fan"]["right"] == {}


@pytest.mark.asyncio
async def test_rule_mismatch_completes_without_running_next(engine, build_workflow):
    wf = build_workflow(
        [
            {
                "id": "check",
                "type": "rule",
                "config": {"conditions": [{"field": "value", "operator": "gte", "value": 100}]},
                "next": "notify",
            },
            action("notify"),
        ]
    )

    execution = await engine.execute(wf, {"value": 50})

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.result["check"]["matched"] is False
    assert execution.result["check"]["condition_results"][0]["actual_value"] == 50
    assert "notify" not in execution.result


@pytest.mark.asyncio
async def test_rule_mismatch_can_be_terminal(engine, build_workflow):
    wf = build_workflow(
        [
            {
                "id": "check",
                "type": "rule",
                "config": {
                    "conditions": [{"field": "value", "operator": "gte", "value": 100}],
                    "on_mismatch": "fail",
                },
            }
        ]
    )

    execution = await engine.execute(wf, {"value": 50})
    assert execution.status == ExecutionStatus.FAILED
    assert "rule did not match" in execution.error


@pytest.mark.asyncio
async def test_rule_step_uses_published_version_and_dispatches_actions(
    repo, sleeper, actions, build_workflow
):
    engine = WorkflowEngine(repo, action_dispatcher=actions, sleep=sleeper)
    rules = engine.rule_service
    rule = await rules.create_rule("acme", "Big deal")
    version = await rules.create_version(
        rule.id,
        conditions=[{"field_path": "amount", "operator": "gt", "comparison_value": 1000}],
        actions=[{"action_type": "notify", "action_config": {"title": "Deal {{ amount }}"}}],
    )
    await rules.publish(version.id)

    wf = build_workflow(
        [
            {
                "id": "check",
                "type": "rule",
                "config": {"rule_id": rule.id, "dispatch_actions": True},
            }
        ]
    )
    execution = await engine.execute(wf, {"amount": 5000})

    assert execution.status == ExecutionStatus.COMPLETED
    output = execution.result["check"]
    assert output["matched"] is True
    assert output["rule_version_id"] == version.id
    assert output["actions"][0]["config"] == {"title": "Deal 5000"}
    assert actions.dispatched[0]["action_type"] == "notify"

    evaluations = await rules.list_evaluations(rule.id)
    assert len(evaluations) == 1
    assert evaluations[0].execution_id == execution.id


@pytest.mark.asyncio
async def test_rule_step_with_unknown_rule_fails(engine, build_workflow):
    wf = build_workflow([{"id": "check", "type": "rule", "config": {"rule_id": "missing"}}])
    execution = await engine.execute(wf, {})
    assert execution.status == ExecutionStatus.FAILED
    assert "missing" in execution.error


@pytest.mark.asyncio
async def test_signal_step_type_mismatch_completes_early(engine, build_workflow):
    wf = build_workflow(
        [
            {"id": "trigger", "type": "signal", "config": {"type": "lead_update"}, "next": "a"},
            action("a"),
        ]
    )

    mismatched = await engine.execute(wf, {"n": 1}, metadata={"signal_type": "metrics"})
    matched = await engine.execute(wf, {"n": 2}, metadata={"signal_type": "lead_update"})
    manual = await engine.execute(wf, {"n": 3})

    assert mismatched.status == ExecutionStatus.COMPLETED
    assert mismatched.result["trigger"]["matched"] is False
    assert "a" not in mismatched.result
    assert "a" in matched.result
    assert "a" in manual.result


@pytest.mark.asyncio
async def test_signal_step_filter(engine, build_workflow):
    wf = build_workflow(
        [
            {
                "id": "trigger",
                "type": "signal",
                "config": {"filter": {"deal.stage": "won"}, "on_mismatch": "fail"},
                "next": "a",
            },
            action("a"),
        ]
    )

    won = await engine.execute(wf, {"deal": {"stage": "won"}})
    lost = await engine.execute(wf, {"deal": {"stage": "lost"}})

    assert won.status == ExecutionStatus.COMPLETED
    assert lost.status == ExecutionStatus.FAILED
    assert "deal.stage" in lost.error


@pytest.mark.asyncio
async def test_signal_step_filter_does_not_equate_bool_and_int(engine, build_workflow):
    wf = build_workflow(
        [
            {
                "id": "trigger",
                "type": "signal",
                "config": {"filter": {"flagged": True}, "on_mismatch": "fail"},
                "next": "a",
            },
            action("a"),
        ]
    )

    flagged = await engine.execute(wf, {"flagged": True})
    numeric = await engine.execute(wf, {"flagged": 1})

    assert flagged.status == ExecutionStatus.COMPLETED
    assert numeric.status == ExecutionStatus.FAILED
    assert "flagged" in numeric.error


@pytest.mark.asyncio
async def test_action_config_templates(engine, actions, build_workflow):
    wf = build_workflow(
        [
            action(
                "a",
                config={
                    "action_type": "create_task",
                    "config": {
                        "title": "Follow up {{ client.name }}",
                        "tags": ["{{ source }}", "static"],
                        "note": "{{ missing.value }}",
                        "count": 3,
                    },
                },
            )
        ]
    )

    execution = await engine.execute(wf, {"client": {"name": "Acme"}, "source": "crm"})

    assert execution.result["a"]["config"] == {
        "title": "Follow up Acme",
        "tags": ["crm", "static"],
        "note": "",
        "count": 3,
    }
    assert actions.dispatched[0]["config"]["title"] == "Follow up Acme"


@pytest.mark.asyncio
async def test_ai_step_records_hashes(repo, sleeper, build_workflow):
    generator = FakeGenerator({"summary": "steady growth"})
    engine = WorkflowEngine(repo, ai_generator=generator, sleep=sleeper)
    wf = build_workflow(
        [
            {
                "id": "summarize",
                "type": "ai",
                "config": {
                    "prompt": "Summarize {{ client.name }}",
                    "schema": {"type": "object"},
                    "use_cache": True,
                },
            }
        ]
    )

    execution = await engine.execute(wf, {"client": {"name": "Acme"}})

    assert generator.prompts == [("Summarize Acme", {"type": "object"}, True)]
    output = execution.result["summarize"]
    assert output["result"] == {"summary": "steady growth"}
    assert output["prompt_hash"] == compute_hash("Summarize Acme")
    assert output["output_hash"] == compute_hash({"summary": "steady growth"})
    assert output["provider"] == "fake"


@pytest.mark.asyncio
async def test_ai_step_without_generator_fails(engine, build_workflow):
    wf = build_workflow([{"id": "summarize", "type": "ai", "config": {"prompt": "hi"}}])
    execution = await engine.execute(wf, {})
    assert execution.status == ExecutionStatus.FAILED
    assert "No AI generator configured" in execution.error


@pytest.mark.asyncio
async def test_agent_step_delegates_to_invoker(repo, sleeper, build_workflow):
    invoker = FakeInvoker()
    engine = WorkflowEngine(repo, agent_invoker=invoker, sleep=sleeper)
    wf = build_workflow(
        [
            {
                "id": "advise",
                "type": "agent",
                "config": {
                    "domain": "seo",
                    "operation": "recommend",
                    "capability": "keyword_gap",
                    "input": {"site": "{{ site }}"},
                },
            }
        ]
    )

    execution = await engine.execute(wf, {"site": "acme.com"})

    assert invoker.calls == [("seo", "recommend", "keyword_gap", {"site": "acme.com"})]
    assert execution.result["advise"]["result"] == {"recommendations": ["call the client"]}


@pytest.mark.asyncio
async def test_timeout_fails_execution_and_keeps_events(repo, build_workflow):
    class SlowDispatcher:
        async def dispatch(self, action_type, config, context):
            if action_type == "slow":
                await asyncio.sleep(10)
            return {}

    engine = WorkflowEngine(repo, action_dispatcher=SlowDispatcher())
    wf = build_workflow([action("fast", next="slow_step"), action("slow_step", "slow")], timeout=1)

    execution = await engine.execute(wf, {})

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "Workflow timed out after 1 seconds"
    events = await events_for(repo, execution.id)
    assert [(e.step_id, e.event_type) for e in events] == [
        ("fast", EventType.STARTED),
        ("fast", EventType.COMPLETED),
        ("slow_step", EventType.STARTED),
        ("slow_step", EventType.FAILED),
    ]
    assert events[-1].error == execution.error


@pytest.mark.asyncio
async def test_cancel_stops_before_next_step(repo, sleeper, build_workflow):
    engine_ref = {}

    class CancellingDispatcher:
        def __init__(self):
            self.calls = []

        async def dispatch(self, action_type, config, context):
            self.calls.append(action_type)
            running = await repo.list_executions(status=ExecutionStatus.RUNNING)
            await engine_ref["engine"].cancel(running[0].id)
            return {}

    dispatcher = CancellingDispatcher()
    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=sleeper)
    engine_ref["engine"] = engine
    wf = build_workflow([action("a", "first", next="b"), action("b", "second")])

    execution = await engine.execute(wf, {})

    assert execution.status == ExecutionStatus.CANCELLED
    assert dispatcher.calls == ["first"]
    assert "b" not in {e.step_id for e in await events_for(repo, execution.id)}


@pytest.mark.asyncio
async def test_cancel_during_retry_backoff_stops_further_attempts(repo, build_workflow):
    dispatcher = SelectiveDispatcher(failing={"send_notification"}, failures=1)
    engine_ref = {}

    async def cancelling_sleep(delay):
        running = await repo.list_executions(status=ExecutionStatus.RUNNING)
        await engine_ref["engine"].cancel(running[0].id)

    engine = WorkflowEngine(repo, action_dispatcher=dispatcher, sleep=cancelling_sleep)
    engine_ref["engine"] = engine
    wf = build_workflow(
        [
            action(
                "notify",
                "send_notification",
                next="b",
                on_error="retry",
                retry_config={"max_retries": 3, "backoff_ms": 100},
            ),
            action("b"),
        ]
    )

    execution = await engine.execute(wf, {})

    assert execution.status == ExecutionStatus.CANCELLED
    assert [call[0] for call in dispatcher.calls] == ["send_notification"]
    events = await events_for(repo, execution.id)
    assert [(e.step_id, e.event_type) for e in events] == [
        ("notify", EventType.STARTED),
        ("notify", EventType.RETRYING),
    ]
    assert "notify" not in execution.result


@pytest.mark.asyncio
async def test_cancel_terminal_execution_is_noop(engine, build_workflow):
    wf = build_workflow([action("a")])
    execution = await engine.execute(wf, {})
    cancelled = await engine.cancel(execution.id)
    assert cancelled.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_inactive_workflow_is_rejected_without_execution(engine, repo, build_workflow):
    wf = build_workflow([action("a")], status="paused")
    with pytest.raises(WorkflowValidationError):
        await engine.execute(wf, {})
    assert await repo.list_executions(workflow_id=wf.id) == []


@pytest.mark.asyncio
async def test_cyclic_workflow_is_rejected(engine, repo, build_workflow):
    wf = build_workflow([action("a", next="b"), action("b", next="a")])
    with pytest.raises(WorkflowValidationError) as excinfo:
        await engine.execute(wf, {})
    assert any("cycle" in v for v in excinfo.value.violations)
    assert await repo.list_executions(workflow_id=wf.id) == []
