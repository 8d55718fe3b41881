"""Core data contracts for the agencyflow automation core."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, model_validator

from .constants import DEFAULT_ROUTE_PRIORITY, DEFAULT_WORKFLOW_TIMEOUT_SECONDS


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Enumerations


class SignalSource(str, Enum):
    GA4 = "ga4"
    GSC = "gsc"
    HUBSPOT = "hubspot"
    LINKEDIN = "linkedin"
    INTERNAL = "internal"
    WEBHOOK = "webhook"


class SignalUrgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class SignalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SIGNAL = "signal"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"


class StepType(str, Enum):
    SIGNAL = "signal"
    RULE = "rule"
    AI = "ai"
    ACTION = "action"
    BRANCH = "branch"
    PARALLEL = "parallel"
    AGENT = "agent"


class ErrorPolicy(str, Enum):
    FAIL = "fail"
    SKIP = "skip"
    RETRY = "retry"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class EventType(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class ConditionLogic(str, Enum):
    ALL = "all"
    ANY = "any"


MismatchPolicy = Literal["complete", "fail"]


# ----------------------------------------------------------------------
# Conditions


class WindowConfig(BaseModel):
    """Time window and aggregation used to compute a baseline."""

    days: int = Field(default=7, gt=0)
    aggregation: Literal["sum", "avg", "min", "max"] = "avg"


class Condition(BaseModel):
    """A single field/operator/value predicate.

    Used by versioned rules, inline rule steps, branch cases and route
    payload filters so that all of them evaluate the same way.
    """

    id: str = Field(default_factory=new_id)
    order: int = 0
    field_path: str = Field(validation_alias=AliasChoices("field_path", "field", "path"))
    operator: str
    comparison_value: Any = Field(
        default=None, validation_alias=AliasChoices("comparison_value", "value")
    )
    window_config: Optional[WindowConfig] = None
    scope: str = "signal"


# ----------------------------------------------------------------------
# Signals


class Signal(BaseModel):
    """A typed, timestamped business event."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    source: SignalSource
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    urgency: SignalUrgency = SignalUrgency.NORMAL
    client_id: Optional[str] = None
    dedup_hash: str = ""
    status: SignalStatus = SignalStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[str] = None
    retry_count: int = 0
    execution_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    @property
    def is_duplicate(self) -> bool:
        return self.status == SignalStatus.DUPLICATE


class SignalRoute(BaseModel):
    """Maps a signal pattern to a target workflow."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    workflow_id: str
    name: str
    description: Optional[str] = None
    source: Optional[SignalSource] = None
    type: Optional[str] = None
    urgency_filter: List[SignalUrgency] = Field(default_factory=list)
    payload_filter: List[Condition] = Field(default_factory=list)
    enabled: bool = True
    priority: int = DEFAULT_ROUTE_PRIORITY
    created_at: datetime = Field(default_factory=utcnow)


class SignalEnvelope(BaseModel):
    """Signal as delivered over a transport, before ingestion."""

    message_id: str = Field(default_factory=new_id)
    tenant_id: str
    source: str
    type: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    urgency: Optional[str] = None
    client_id: Optional[str] = None
    raw: bool = False
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "SignalEnvelope":
        return cls.model_validate_json(data)


# ----------------------------------------------------------------------
# Workflow step graph


class RetryConfig(BaseModel):
    """Retry budget and delay between attempts."""

    max_retries: int = Field(default=0, ge=0)
    backoff_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=1.0, ge=1.0)


class _StepBase(BaseModel):
    id: str
    name: str = ""
    next: Optional[str] = None
    on_error: ErrorPolicy = ErrorPolicy.FAIL
    retry_config: Optional[RetryConfig] = None

    def successors(self) -> List[str]:
        """Step ids reachable directly from this step."""
        return [self.next] if self.next else []


class SignalStepConfig(BaseModel):
    signal_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("signal_type", "type")
    )
    filter: Dict[str, Any] = Field(default_factory=dict)
    on_mismatch: MismatchPolicy = "complete"


class SignalStep(_StepBase):
    type: Literal["signal"] = "signal"
    config: SignalStepConfig = Field(default_factory=SignalStepConfig)


class RuleStepConfig(BaseModel):
    rule_id: Optional[str] = None
    conditions: List[Condition] = Field(default_factory=list)
    logic: ConditionLogic = ConditionLogic.ALL
    on_mismatch: MismatchPolicy = "complete"
    dispatch_actions: bool = False

    @model_validator(mode="after")
    def _require_rule_source(self) -> "RuleStepConfig":
        if not self.rule_id and not self.conditions:
            raise ValueError("rule step needs either rule_id or inline conditions")
        return self


class RuleStep(_StepBase):
    type: Literal["rule"] = "rule"
    config: RuleStepConfig


class AIStepConfig(BaseModel):
    prompt: str
    output_schema: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("output_schema", "schema")
    )
    use_cache: bool = False
    provider: Optional[str] = None


class AIStep(_StepBase):
    type: Literal["ai"] = "ai"
    config: AIStepConfig


class ActionStepConfig(BaseModel):
    action_type: str = Field(validation_alias=AliasChoices("action_type", "type"))
    config: Dict[str, Any] = Field(default_factory=dict)


class ActionStep(_StepBase):
    type: Literal["action"] = "action"
    config: ActionStepConfig


class BranchCase(BaseModel):
    conditions: List[Condition] = Field(
        default_factory=list, validation_alias=AliasChoices("conditions", "condition")
    )
    logic: ConditionLogic = ConditionLogic.ALL
    next: str


class BranchStepConfig(BaseModel):
    branches: List[BranchCase] = Field(
        default_factory=list, validation_alias=AliasChoices("branches", "conditions")
    )
    default: Optional[str] = None


class BranchStep(_StepBase):
    """Routes to the first matching case; its own ``next`` is not followed."""

    type: Literal["branch"] = "branch"
    config: BranchStepConfig

    def successors(self) -> List[str]:
        targets = [case.next for case in self.config.branches]
        if self.config.default:
            targets.append(self.config.default)
        return targets


class ParallelStepConfig(BaseModel):
    steps: List[str] = Field(min_length=1)


class ParallelStep(_StepBase):
    """Fans out to ``config.steps`` and joins before following ``next``."""

    type: Literal["parallel"] = "parallel"
    config: ParallelStepConfig

    def successors(self) -> List[str]:
        return list(self.config.steps) + super().successors()


class AgentStepConfig(BaseModel):
    domain: Optional[str] = None
    operation: Literal["analyze", "recommend", "execute"] = "analyze"
    capability: Optional[str] = None
    agent_id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)


class AgentStep(_StepBase):
    type: Literal["agent"] = "agent"
    config: AgentStepConfig = Field(default_factory=AgentStepConfig)


WorkflowStep = Annotated[
    Union[SignalStep, RuleStep, AIStep, ActionStep, BranchStep, ParallelStep, AgentStep],
    Field(discriminator="type"),
]


class Workflow(BaseModel):
    """Named, versioned automation definition."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    steps: List[WorkflowStep] = Field(default_factory=list)
    timeout: int = Field(default=DEFAULT_WORKFLOW_TIMEOUT_SECONDS, gt=0)
    retry_policy: RetryConfig = Field(default_factory=RetryConfig)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def step_map(self) -> Dict[str, WorkflowStep]:
        return {step.id: step for step in self.steps}

    @property
    def entry_step(self) -> Optional[WorkflowStep]:
        return self.steps[0] if self.steps else None


# ----------------------------------------------------------------------
# Executions


class WorkflowExecution(BaseModel):
    """One run of a workflow against one triggering input."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    tenant_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_id: Optional[str] = None
    trigger_type: Optional[str] = None
    trigger_payload: Dict[str, Any] = Field(default_factory=dict)
    input_hash: str
    output_hash: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    current_step: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowEvent(BaseModel):
    """Append-only step-level log entry."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    tenant_id: str
    step_id: str
    step_type: str
    event_type: EventType
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    retry_count: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
