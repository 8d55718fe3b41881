"""Versioned rule conditions and their evaluation."""

from __future__ import annotations

from .evaluator import RuleEvaluator, apply_logic, validate_conditions
from .metrics import ContextHistoryMetricSource, MetricSource
from .models import (
    ConditionResult,
    EvaluationContext,
    RuleCategory,
    RuleEvaluationResult,
    RuleVersionStatus,
    WorkflowRule,
    WorkflowRuleAction,
    WorkflowRuleAudit,
    WorkflowRuleCondition,
    WorkflowRuleEvaluation,
    WorkflowRuleVersion,
)
from .operators import OPERATORS, register_operator
from .scopes import SCOPES, register_scope
from .service import RuleService

__all__ = [
    "ConditionResult",
    "ContextHistoryMetricSource",
    "EvaluationContext",
    "MetricSource",
    "OPERATORS",
    "RuleCategory",
    "RuleEvaluationResult",
    "RuleEvaluator",
    "RuleService",
    "RuleVersionStatus",
    "SCOPES",
    "WorkflowRule",
    "WorkflowRuleAction",
    "WorkflowRuleAudit",
    "WorkflowRuleCondition",
    "WorkflowRuleEvaluation",
    "WorkflowRuleVersion",
    "apply_logic",
    "register_operator",
    "register_scope",
    "validate_conditions",
]
