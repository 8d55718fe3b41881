"""Evaluate rule conditions against an evaluation context."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from ..contracts import Condition, ConditionLogic, utcnow
from ..utils import get_path
from .metrics import ContextHistoryMetricSource, MetricSource
from .models import (
    ConditionResult,
    EvaluationContext,
    RuleEvaluationResult,
    WorkflowRuleVersion,
)
from .operators import OperatorContext, get_operator
from .scopes import SCOPES, resolve_scope

logger = logging.getLogger(__name__)

ContextLike = Union[EvaluationContext, Dict[str, Any]]


def as_context(context: ContextLike) -> EvaluationContext:
    if isinstance(context, EvaluationContext):
        return context
    return EvaluationContext.model_validate(context)


def apply_logic(results: List[ConditionResult], logic: ConditionLogic) -> bool:
    """Combine condition outcomes. No conditions never matches."""
    if not results:
        return False
    if logic == ConditionLogic.ANY:
        return any(r.passed for r in results)
    return all(r.passed for r in results)


def validate_conditions(conditions: Iterable[Condition]) -> List[str]:
    """Return human-readable problems with ``conditions``."""
    problems = []
    for condition in conditions:
        if not condition.field_path:
            problems.append(f"condition {condition.id} has an empty field path")
        if get_operator(condition.operator) is None:
            problems.append(
                f"condition {condition.id} uses unknown operator '{condition.operator}'"
            )
        if condition.scope not in SCOPES:
            problems.append(f"condition {condition.id} uses unknown scope '{condition.scope}'")
    return problems


class RuleEvaluator:
    """Pure evaluator for rule versions and inline condition lists."""

    def __init__(self, metric_source: Optional[MetricSource] = None):
        self.metric_source = metric_source or ContextHistoryMetricSource()

    def evaluate(
        self,
        version: WorkflowRuleVersion,
        context: ContextLike,
        now: Optional[datetime] = None,
    ) -> RuleEvaluationResult:
        result = self.evaluate_conditions(
            version.ordered_conditions(),
            version.condition_logic,
            context,
            now=now,
            threshold_config=version.threshold_config,
            anomaly_config=version.anomaly_config,
            lifecycle_config=version.lifecycle_config,
        )
        result.rule_id = version.rule_id
        result.rule_version_id = version.id
        return result

    def evaluate_conditions(
        self,
        conditions: List[Condition],
        logic: ConditionLogic,
        context: ContextLike,
        *,
        now: Optional[datetime] = None,
        threshold_config: Optional[Dict[str, Any]] = None,
        anomaly_config: Optional[Dict[str, Any]] = None,
        lifecycle_config: Optional[Dict[str, Any]] = None,
    ) -> RuleEvaluationResult:
        started = time.perf_counter()
        ctx = as_context(context)
        now = now or utcnow()
        results = [
            self.evaluate_condition(
                condition,
                ctx,
                now,
                threshold_config=threshold_config or {},
                anomaly_config=anomaly_config or {},
                lifecycle_config=lifecycle_config or {},
            )
            for condition in sorted(conditions, key=lambda c: c.order)
        ]
        matched = apply_logic(results, ConditionLogic(logic))
        duration_ms = int((time.perf_counter() - started) * 1000)
        return RuleEvaluationResult(
            matched=matched, condition_results=results, duration_ms=duration_ms
        )

    def evaluate_condition(
        self,
        condition: Condition,
        context: EvaluationContext,
        now: datetime,
        *,
        threshold_config: Dict[str, Any],
        anomaly_config: Dict[str, Any],
        lifecycle_config: Dict[str, Any],
    ) -> ConditionResult:
        actual: Any = None
        try:
            fn = get_operator(condition.operator)
            if fn is None:
                raise ValueError(f"Unknown operator '{condition.operator}'")
            scope_data = resolve_scope(condition.scope, context)
            actual = get_path(scope_data, condition.field_path)
            op_ctx = OperatorContext(
                condition=condition,
                context=context,
                scope_data=scope_data,
                metric_source=self.metric_source,
                now=now,
                threshold_config=threshold_config,
                anomaly_config=anomaly_config,
                lifecycle_config=lifecycle_config,
            )
            passed = bool(fn(actual, condition.comparison_value, op_ctx))
        except Exception as exc:
            logger.debug(f"Condition {condition.id} on {condition.field_path} errored: {exc}")
            return ConditionResult(
                condition_id=condition.id,
                field_path=condition.field_path,
                operator=condition.operator,
                passed=False,
                actual_value=actual,
                expected_value=condition.comparison_value,
                error=str(exc),
            )
        return ConditionResult(
            condition_id=condition.id,
            field_path=condition.field_path,
            operator=condition.operator,
            passed=passed,
            actual_value=actual,
            expected_value=condition.comparison_value,
        )


__all__ = ["RuleEvaluator", "apply_logic", "as_context", "validate_conditions"]
