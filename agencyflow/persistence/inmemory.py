"""In-memory implementation of the automation repository."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Tuple, TypeVar

from pydantic import BaseModel

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
from ..exceptions import ExecutionConflictError, NotFoundError
from ..rules.models import (
    WorkflowRule,
    WorkflowRuleAudit,
    WorkflowRuleEvaluation,
    WorkflowRuleVersion,
)
from .repository import AutomationRepository

M = TypeVar("M", bound=BaseModel)


def _copy(model: M) -> M:
    return model.model_copy(deep=True)


class InMemoryAutomationRepository(AutomationRepository):
    """Store automation state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._signals: Dict[str, Signal] = {}
        self._routes: Dict[str, SignalRoute] = {}
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._execution_keys: Dict[Tuple[str, str], str] = {}
        self._events: Dict[str, List[WorkflowEvent]] = {}
        self._rules: Dict[str, WorkflowRule] = {}
        self._rule_versions: Dict[str, WorkflowRuleVersion] = {}
        self._evaluations: List[WorkflowRuleEvaluation] = []
        self._audits: List[WorkflowRuleAudit] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Signals
    async def insert_signal(self, signal: Signal, dedup_window_seconds: int) -> Signal:
        async with self._lock:
            window_start = signal.created_at - timedelta(seconds=dedup_window_seconds)
            original = next(
                (
                    s
                    for s in self._signals.values()
                    if s.tenant_id == signal.tenant_id
                    and s.dedup_hash == signal.dedup_hash
                    and s.status != SignalStatus.DUPLICATE
                    and s.created_at >= window_start
                ),
                None,
            )
            stored = _copy(signal)
            if original is not None:
                stored.status = SignalStatus.DUPLICATE
                stored.metadata.setdefault("duplicate_of", original.id)
            self._signals[stored.id] = stored
            return _copy(stored)

    async def get_signal(self, signal_id: str) -> Signal | None:
        signal = self._signals.get(signal_id)
        return _copy(signal) if signal else None

    async def update_signal(self, signal: Signal) -> None:
        if signal.id not in self._signals:
            raise NotFoundError(f"Signal {signal.id} not found")
        self._signals[signal.id] = _copy(signal)

    async def list_signals(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[SignalStatus] = None,
        limit: int = 100,
    ) -> list[Signal]:
        signals = [
            s
            for s in self._signals.values()
            if (tenant_id is None or s.tenant_id == tenant_id)
            and (status is None or s.status == status)
        ]
        signals.sort(key=lambda s: s.created_at, reverse=True)
        return [_copy(s) for s in signals[:limit]]

    # ------------------------------------------------------------------
    # Routes
    async def save_route(self, route: SignalRoute) -> None:
        self._routes[route.id] = _copy(route)

    async def list_routes(self, tenant_id: str) -> list[SignalRoute]:
        return [_copy(r) for r in self._routes.values() if r.tenant_id == tenant_id]

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = _copy(workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        workflow = self._workflows.get(workflow_id)
        return _copy(workflow) if workflow else None

    async def list_workflows(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        return [
            _copy(w)
            for w in self._workflows.values()
            if (tenant_id is None or w.tenant_id == tenant_id)
            and (status is None or w.status == status)
        ]

    # ------------------------------------------------------------------
    # Executions
    async def insert_execution(self, execution: WorkflowExecution) -> None:
        key = (execution.workflow_id, execution.input_hash)
        async with self._lock:
            if key in self._execution_keys:
                raise ExecutionConflictError(execution.workflow_id, execution.input_hash)
            self._execution_keys[key] = execution.id
            self._executions[execution.id] = _copy(execution)

    async def find_execution(
        self, workflow_id: str, input_hash: str
    ) -> WorkflowExecution | None:
        execution_id = self._execution_keys.get((workflow_id, input_hash))
        if execution_id is None:
            return None
        return _copy(self._executions[execution_id])

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return _copy(execution) if execution else None

    async def update_execution(self, execution: WorkflowExecution) -> None:
        if execution.id not in self._executions:
            raise NotFoundError(f"Execution {execution.id} not found")
        self._executions[execution.id] = _copy(execution)

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> list[WorkflowExecution]:
        executions = [
            e
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (tenant_id is None or e.tenant_id == tenant_id)
            and (status is None or e.status == status)
        ]
        executions.sort(key=lambda e: e.created_at, reverse=True)
        return [_copy(e) for e in executions[:limit]]

    # ------------------------------------------------------------------
    # Events
    async def append_event(self, event: WorkflowEvent) -> None:
        self._events.setdefault(event.execution_id, []).append(_copy(event))

    async def list_events(self, execution_id: str) -> list[WorkflowEvent]:
        return [_copy(e) for e in self._events.get(execution_id, [])]

    # ------------------------------------------------------------------
    # Rules
    async def save_rule(self, rule: WorkflowRule) -> None:
        self._rules[rule.id] = _copy(rule)

    async def get_rule(self, rule_id: str) -> WorkflowRule | None:
        rule = self._rules.get(rule_id)
        return _copy(rule) if rule else None

    async def list_rules(
        self, tenant_id: str, enabled: Optional[bool] = None
    ) -> list[WorkflowRule]:
        return [
            _copy(r)
            for r in self._rules.values()
            if r.tenant_id == tenant_id and (enabled is None or r.enabled == enabled)
        ]

    async def save_rule_version(self, version: WorkflowRuleVersion) -> None:
        self._rule_versions[version.id] = _copy(version)

    async def get_rule_version(self, version_id: str) -> WorkflowRuleVersion | None:
        version = self._rule_versions.get(version_id)
        return _copy(version) if version else None

    async def list_rule_versions(self, rule_id: str) -> list[WorkflowRuleVersion]:
        versions = [v for v in self._rule_versions.values() if v.rule_id == rule_id]
        versions.sort(key=lambda v: v.version)
        return [_copy(v) for v in versions]

    async def append_rule_evaluation(self, evaluation: WorkflowRuleEvaluation) -> None:
        self._evaluations.append(_copy(evaluation))

    async def list_rule_evaluations(
        self, rule_id: str, limit: int = 100
    ) -> list[WorkflowRuleEvaluation]:
        evaluations = [e for e in reversed(self._evaluations) if e.rule_id == rule_id]
        return [_copy(e) for e in evaluations[:limit]]

    async def append_rule_audit(self, audit: WorkflowRuleAudit) -> None:
        self._audits.append(_copy(audit))

    async def list_rule_audits(self, rule_id: str) -> list[WorkflowRuleAudit]:
        return [_copy(a) for a in self._audits if a.rule_id == rule_id]
