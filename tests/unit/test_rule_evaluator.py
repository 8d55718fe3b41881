from datetime import datetime, timezone

import pytest

from agencyflow.contracts import Condition, ConditionLogic
from agencyflow.rules import RuleEvaluator, validate_conditions
from agencyflow.rules.models import WorkflowRuleVersion

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def cond(field, operator, value=None, **extra):
    return Condition.model_validate({"field": field, "operator": operator, "value": value, **extra})


@pytest.fixture
def evaluator():
    return RuleEvaluator()


def test_gte_reports_actual_value(evaluator):
    conditions = [cond("metrics.sessions", "gte", 100)]

    hit = evaluator.evaluate_conditions(
        conditions, ConditionLogic.ALL, {"signal": {"metrics": {"sessions": 150}}}, now=NOW
    )
    miss = evaluator.evaluate_conditions(
        conditions, ConditionLogic.ALL, {"signal": {"metrics": {"sessions": 50}}}, now=NOW
    )

    assert hit.matched is True
    assert hit.condition_results[0].actual_value == 150
    assert miss.matched is False
    assert miss.condition_results[0].actual_value == 50
    assert miss.condition_results[0].expected_value == 100


def test_all_and_any_logic(evaluator):
    conditions = [cond("score", "gt", 50), cond("stage", "eq", "won")]
    context = {"signal": {"score": 80, "stage": "lost"}}

    assert evaluator.evaluate_conditions(conditions, ConditionLogic.ALL, context).matched is False
    assert evaluator.evaluate_conditions(conditions, ConditionLogic.ANY, context).matched is True


def test_empty_condition_list_never_matches(evaluator):
    assert evaluator.evaluate_conditions([], ConditionLogic.ALL, {}).matched is False
    assert evaluator.evaluate_conditions([], ConditionLogic.ANY, {}).matched is False


def test_conditions_evaluated_in_order(evaluator):
    conditions = [cond("b", "exists", order=2), cond("a", "exists", order=1)]
    result = evaluator.evaluate_conditions(conditions, ConditionLogic.ALL, {"signal": {"a": 1, "b": 2}})
    assert [r.field_path for r in result.condition_results] == ["a", "b"]


def test_equality_is_strict(evaluator):
    context = {"signal": {"flag": 1, "count": 3}}
    assert not evaluator.evaluate_conditions([cond("flag", "eq", True)], "all", context).matched
    assert evaluator.evaluate_conditions([cond("count", "in", [1, 3])], "all", context).matched


def test_unknown_operator_fails_condition_with_error(evaluator):
    result = evaluator.evaluate_conditions(
        [cond("score", "bogus", 1)], ConditionLogic.ALL, {"signal": {"score": 2}}
    )
    assert result.matched is False
    assert "bogus" in result.condition_results[0].error
    assert validate_conditions([cond("score", "bogus", 1)])


def test_client_scope(evaluator):
    conditions = [cond("tier", "eq", "gold", scope="client")]
    context = {"signal": {"tier": "bronze"}, "client": {"tier": "gold"}}
    assert evaluator.evaluate_conditions(conditions, ConditionLogic.ALL, context).matched


def test_context_scope_reaches_step_results(evaluator):
    conditions = [cond("steps.check.matched", "eq", True, scope="context")]
    context = {"steps": {"check": {"matched": True}}}
    assert evaluator.evaluate_conditions(conditions, ConditionLogic.ALL, context).matched


def test_percent_change_against_previous_value(evaluator):
    conditions = [cond("sessions", "percent_change_gt", 25)]
    dropped = {"signal": {"sessions": 70}, "history": [{"sessions": 100}, {"sessions": 90}]}
    steady = {"signal": {"sessions": 95}, "history": [{"sessions": 100}]}
    zero = {"signal": {"sessions": 95}, "history": [{"sessions": 0}]}

    assert evaluator.evaluate_conditions(conditions, "all", dropped, now=NOW).matched
    assert not evaluator.evaluate_conditions(conditions, "all", steady, now=NOW).matched
    assert not evaluator.evaluate_conditions(conditions, "all", zero, now=NOW).matched


def test_percent_change_with_window_average(evaluator):
    conditions = [
        cond("sessions", "percent_change_gt", 40, window_config={"days": 7, "aggregation": "avg"})
    ]
    context = {
        "signal": {"sessions": 50},
        "history": [
            {"sessions": 100, "timestamp": "2026-02-27T00:00:00Z"},
            {"sessions": 100, "timestamp": "2026-02-25T00:00:00Z"},
            {"sessions": 10, "timestamp": "2026-01-01T00:00:00Z"},
        ],
    }
    assert evaluator.evaluate_conditions(conditions, "all", context, now=NOW).matched


def test_anomaly_zscore(evaluator):
    conditions = [cond("spend", "anomaly_zscore_gt", 3)]
    history = [10, 11, 9, 10, 10]

    spike = {"signal": {"spend": 30}, "history": history}
    normal = {"signal": {"spend": 10}, "history": history}
    flat = {"signal": {"spend": 30}, "history": [10, 10, 10]}

    assert evaluator.evaluate_conditions(conditions, "all", spike, now=NOW).matched
    assert not evaluator.evaluate_conditions(conditions, "all", normal, now=NOW).matched
    assert not evaluator.evaluate_conditions(conditions, "all", flat, now=NOW).matched


def test_inactivity_days(evaluator):
    conditions = [cond("last_activity_at", "inactivity_days_gt", 30, scope="client")]
    stale = {"client": {"last_activity_at": "2026-01-01T00:00:00Z"}}
    fresh = {"client": {"last_activity_at": "2026-02-20T00:00:00Z"}}

    assert evaluator.evaluate_conditions(conditions, "all", stale, now=NOW).matched
    assert not evaluator.evaluate_conditions(conditions, "all", fresh, now=NOW).matched


def test_changed_to_and_from(evaluator):
    to_churned = [cond("status", "changed_to", "churned")]
    from_active = [cond("status", "changed_from", "active")]
    context = {"signal": {"status": "churned"}, "previous": {"status": "active"}}
    unchanged = {"signal": {"status": "churned"}, "previous": {"status": "churned"}}

    assert evaluator.evaluate_conditions(to_churned, "all", context).matched
    assert evaluator.evaluate_conditions(from_active, "all", context).matched
    assert not evaluator.evaluate_conditions(to_churned, "all", unchanged).matched


def test_evaluate_version_uses_threshold_config(evaluator):
    version = WorkflowRuleVersion(
        rule_id="r1",
        tenant_id="acme",
        threshold_config={"baselineType": "average"},
        conditions=[{"field_path": "leads", "operator": "percent_change_lt", "comparison_value": 10}],
    )
    context = {"signal": {"leads": 21}, "history": [{"leads": 10}, {"leads": 30}]}

    result = evaluator.evaluate(version, context, now=NOW)

    assert result.matched is True
    assert result.rule_id == "r1"
    assert result.rule_version_id == version.id
