"""Repository abstraction for automation state persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import (
    ExecutionStatus,
    Signal,
    SignalRoute,
    SignalStatus,
    Workflow,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowStatus,
)
from ..rules.models import (
    WorkflowRule,
    WorkflowRuleAudit,
    WorkflowRuleEvaluation,
    WorkflowRuleVersion,
)


class AutomationRepository(Protocol):
    """Protocol for automation persistence backends.

    Signals, events, rule evaluations and audits are append-only: there is
    no delete API and events cannot be updated.
    """

    # -- signals -------------------------------------------------------
    async def insert_signal(self, signal: Signal, dedup_window_seconds: int) -> Signal:
        """Persist ``signal``, flagging it duplicate when a non-duplicate
        signal with the same tenant and fingerprint was created within the
        window. The check and insert are atomic."""

    async def get_signal(self, signal_id: str) -> Signal | None:
        """Retrieve a signal by id."""

    async def update_signal(self, signal: Signal) -> None:
        """Persist processing status fields of an existing signal."""

    async def list_signals(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[SignalStatus] = None,
        limit: int = 100,
    ) -> list[Signal]:
        """Return signals, newest first."""

    # -- routes --------------------------------------------------------
    async def save_route(self, route: SignalRoute) -> None:
        """Insert or replace a route."""

    async def list_routes(self, tenant_id: str) -> list[SignalRoute]:
        """Return a tenant's routes in creation order."""

    # -- workflows -----------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow definition by id."""

    async def list_workflows(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        """Return stored workflow definitions."""

    # -- executions ----------------------------------------------------
    async def insert_execution(self, execution: WorkflowExecution) -> None:
        """Insert a new execution.

        Raises ``ExecutionConflictError`` when one already exists for the
        same ``(workflow_id, input_hash)``.
        """

    async def find_execution(
        self, workflow_id: str, input_hash: str
    ) -> WorkflowExecution | None:
        """Look up an execution by its idempotency key."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def update_execution(self, execution: WorkflowExecution) -> None:
        """Persist state fields of an existing execution."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> list[WorkflowExecution]:
        """Return executions, newest first."""

    # -- events --------------------------------------------------------
    async def append_event(self, event: WorkflowEvent) -> None:
        """Append a step event."""

    async def list_events(self, execution_id: str) -> list[WorkflowEvent]:
        """Return an execution's events in append order."""

    # -- rules ---------------------------------------------------------
    async def save_rule(self, rule: WorkflowRule) -> None:
        """Insert or replace a rule."""

    async def get_rule(self, rule_id: str) -> WorkflowRule | None:
        """Retrieve a rule by id."""

    async def list_rules(
        self, tenant_id: str, enabled: Optional[bool] = None
    ) -> list[WorkflowRule]:
        """Return a tenant's rules in creation order."""

    async def save_rule_version(self, version: WorkflowRuleVersion) -> None:
        """Insert or replace a rule version."""

    async def get_rule_version(self, version_id: str) -> WorkflowRuleVersion | None:
        """Retrieve a rule version by id."""

    async def list_rule_versions(self, rule_id: str) -> list[WorkflowRuleVersion]:
        """Return a rule's versions ordered by version number."""

    async def append_rule_evaluation(self, evaluation: WorkflowRuleEvaluation) -> None:
        """Append a rule evaluation record."""

    async def list_rule_evaluations(
        self, rule_id: str, limit: int = 100
    ) -> list[WorkflowRuleEvaluation]:
        """Return a rule's evaluations, newest first."""

    async def append_rule_audit(self, audit: WorkflowRuleAudit) -> None:
        """Append a rule audit record."""

    async def list_rule_audits(self, rule_id: str) -> list[WorkflowRuleAudit]:
        """Return a rule's audit records in append order."""
