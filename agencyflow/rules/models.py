"""Data models for versioned workflow rules."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..contracts import Condition, ConditionLogic, new_id, utcnow

WorkflowRuleCondition = Condition


class RuleCategory(str, Enum):
    THRESHOLD = "threshold"
    ANOMALY = "anomaly"
    LIFECYCLE = "lifecycle"
    INTEGRATION = "integration"
    CUSTOM = "custom"


class RuleVersionStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    DEPRECATED = "deprecated"


class AuditChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    VERSION_CREATED = "version_created"
    VERSION_UPDATED = "version_updated"
    PUBLISHED = "published"
    DEPRECATED = "deprecated"


class WorkflowRuleAction(BaseModel):
    id: str = Field(default_factory=new_id)
    order: int = 0
    action_type: str
    action_config: Dict[str, Any] = Field(default_factory=dict)


class WorkflowRule(BaseModel):
    """Named container of rule versions."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    description: Optional[str] = None
    category: RuleCategory = RuleCategory.CUSTOM
    enabled: bool = True
    default_version_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WorkflowRuleVersion(BaseModel):
    """A single version of a rule. Frozen once published."""

    id: str = Field(default_factory=new_id)
    rule_id: str
    tenant_id: str
    version: int = 1
    status: RuleVersionStatus = RuleVersionStatus.DRAFT
    condition_logic: ConditionLogic = ConditionLogic.ALL
    threshold_config: Dict[str, Any] = Field(default_factory=dict)
    anomaly_config: Dict[str, Any] = Field(default_factory=dict)
    lifecycle_config: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[WorkflowRuleCondition] = Field(default_factory=list)
    actions: List[WorkflowRuleAction] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    published_at: Optional[datetime] = None

    @property
    def is_editable(self) -> bool:
        return self.status == RuleVersionStatus.DRAFT

    def ordered_conditions(self) -> List[WorkflowRuleCondition]:
        return sorted(self.conditions, key=lambda c: c.order)

    def ordered_actions(self) -> List[WorkflowRuleAction]:
        return sorted(self.actions, key=lambda a: a.order)


class EvaluationContext(BaseModel):
    """Data a rule is evaluated against.

    ``history`` holds prior records for the same entity, most recent first.
    ``previous`` holds the prior state used by state-transition operators.
    """

    signal: Dict[str, Any] = Field(default_factory=dict)
    client: Dict[str, Any] = Field(default_factory=dict)
    project: Dict[str, Any] = Field(default_factory=dict)
    steps: Dict[str, Any] = Field(default_factory=dict)
    history: List[Any] = Field(default_factory=list)
    previous: Dict[str, Any] = Field(default_factory=dict)


class ConditionResult(BaseModel):
    condition_id: str
    field_path: str
    operator: str
    passed: bool
    actual_value: Any = None
    expected_value: Any = None
    error: Optional[str] = None


class RuleEvaluationResult(BaseModel):
    matched: bool
    condition_results: List[ConditionResult] = Field(default_factory=list)
    duration_ms: int = 0
    rule_id: Optional[str] = None
    rule_version_id: Optional[str] = None
    no_published_version: bool = False
    skipped: bool = False


class WorkflowRuleEvaluation(BaseModel):
    """Persisted record of one rule evaluation."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    rule_id: str
    rule_version_id: Optional[str] = None
    signal_id: Optional[str] = None
    execution_id: Optional[str] = None
    matched: bool
    condition_results: List[ConditionResult] = Field(default_factory=list)
    evaluation_context: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowRuleAudit(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    rule_id: str
    rule_version_id: Optional[str] = None
    actor_id: Optional[str] = None
    change_type: AuditChangeType
    change_summary: Optional[str] = None
    previous_state: Optional[Dict[str, Any]] = None
    new_state: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
