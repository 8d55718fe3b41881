"""PostgreSQL implementation of the automation repository."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional, Type, TypeVar

import asyncpg
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

SCHEMA = """
CREATE TABLE IF NOT EXISTS signals (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    tenant_id TEXT NOT NULL,
    dedup_hash TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    data JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS signals_dedup_idx ON signals (tenant_id, dedup_hash, created_at);
CREATE TABLE IF NOT EXISTS signal_routes (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    tenant_id TEXT NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS workflows (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    tenant_id TEXT NOT NULL,
    status TEXT NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS workflow_executions (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    input_hash TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    data JSONB NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS workflow_executions_idempotency_idx
    ON workflow_executions (workflow_id, input_hash);
CREATE TABLE IF NOT EXISTS workflow_events (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    execution_id TEXT NOT NULL,
    data JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS workflow_events_execution_idx ON workflow_events (execution_id);
CREATE TABLE IF NOT EXISTS workflow_rules (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    tenant_id TEXT NOT NULL,
    enabled BOOLEAN NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS workflow_rule_versions (
    id TEXT PRIMARY KEY,
    rule_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    data JSONB NOT NULL,
    UNIQUE (rule_id, version)
);
CREATE TABLE IF NOT EXISTS workflow_rule_evaluations (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    rule_id TEXT NOT NULL,
    data JSONB NOT NULL
);
CREATE TABLE IF NOT EXISTS workflow_rule_audits (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    rule_id TEXT NOT NULL,
    data JSONB NOT NULL
);
"""


class PostgresAutomationRepository(AutomationRepository):
    """Persist automation state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await conn.execute(SCHEMA)
            self._initialized = True
        return conn

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _get(self, model: Type[M], query: str, *params: Any) -> M | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(query, *params)
        finally:
            await conn.close()
        return model.model_validate_json(row["data"]) if row else None

    async def _all(self, model: Type[M], query: str, *params: Any) -> list[M]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [model.model_validate_json(row["data"]) for row in rows]

    @staticmethod
    def _affected(status: str) -> int:
        # asyncpg returns command tags such as "UPDATE 1"
        return int(status.split()[-1]) if status else 0

    # ------------------------------------------------------------------
    # Signals
    async def insert_signal(self, signal: Signal, dedup_window_seconds: int) -> Signal:
        window_start = signal.created_at - timedelta(seconds=dedup_window_seconds)
        stored = signal.model_copy(deep=True)
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"{signal.tenant_id}:{signal.dedup_hash}",
                )
                original_id = await conn.fetchval(
                    """
                    SELECT id FROM signals
                    WHERE tenant_id = $1 AND dedup_hash = $2 AND status != $3
                    AND created_at >= $4
                    ORDER BY seq LIMIT 1
                    """,
                    signal.tenant_id,
                    signal.dedup_hash,
                    SignalStatus.DUPLICATE.value,
                    window_start,
                )
                if original_id is not None:
                    stored.status = SignalStatus.DUPLICATE
                    stored.metadata.setdefault("duplicate_of", original_id)
                await conn.execute(
                    """
                    INSERT INTO signals (id, tenant_id, dedup_hash, status, created_at, data)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    stored.id,
                    stored.tenant_id,
                    stored.dedup_hash,
                    stored.status.value,
                    stored.created_at,
                    stored.model_dump_json(),
                )
        finally:
            await conn.close()
        return stored

    async def get_signal(self, signal_id: str) -> Signal | None:
        return await self._get(Signal, "SELECT data FROM signals WHERE id = $1", signal_id)

    async def update_signal(self, signal: Signal) -> None:
        status = await self._execute(
            "UPDATE signals SET status = $1, data = $2 WHERE id = $3",
            signal.status.value,
            signal.model_dump_json(),
            signal.id,
        )
        if not self._affected(status):
            raise NotFoundError(f"Signal {signal.id} not found")

    async def list_signals(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[SignalStatus] = None,
        limit: int = 100,
    ) -> list[Signal]:
        return await self._all(
            Signal,
            """
            SELECT data FROM signals
            WHERE ($1::text IS NULL OR tenant_id = $1)
            AND ($2::text IS NULL OR status = $2)
            ORDER BY created_at DESC, seq DESC LIMIT $3
            """,
            tenant_id,
            SignalStatus(status).value if status is not None else None,
            limit,
        )

    # ------------------------------------------------------------------
    # Routes
    async def save_route(self, route: SignalRoute) -> None:
        await self._execute(
            """
            INSERT INTO signal_routes (id, tenant_id, data) VALUES ($1, $2, $3)
            ON CONFLICT (id) DO UPDATE SET tenant_id = EXCLUDED.tenant_id, data = EXCLUDED.data
            """,
            route.id,
            route.tenant_id,
            route.model_dump_json(),
        )

    async def list_routes(self, tenant_id: str) -> list[SignalRoute]:
        return await self._all(
            SignalRoute,
            "SELECT data FROM signal_routes WHERE tenant_id = $1 ORDER BY seq",
            tenant_id,
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        await self._execute(
            """
            INSERT INTO workflows (id, tenant_id, status, data) VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET
                tenant_id = EXCLUDED.tenant_id,
                status = EXCLUDED.status,
                data = EXCLUDED.data
            """,
            workflow.id,
            workflow.tenant_id,
            workflow.status.value,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return await self._get(Workflow, "SELECT data FROM workflows WHERE id = $1", workflow_id)

    async def list_workflows(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        return await self._all(
            Workflow,
            """
            SELECT data FROM workflows
            WHERE ($1::text IS NULL OR tenant_id = $1)
            AND ($2::text IS NULL OR status = $2)
            ORDER BY seq
            """,
            tenant_id,
            WorkflowStatus(status).value if status is not None else None,
        )

    # ------------------------------------------------------------------
    # Executions
    async def insert_execution(self, execution: WorkflowExecution) -> None:
        try:
            await self._execute(
                """
                INSERT INTO workflow_executions
                    (id, workflow_id, tenant_id, input_hash, status, created_at, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                execution.id,
                execution.workflow_id,
                execution.tenant_id,
                execution.input_hash,
                execution.status.value,
                execution.created_at,
                execution.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise ExecutionConflictError(execution.workflow_id, execution.input_hash) from exc

    async def find_execution(
        self, workflow_id: str, input_hash: str
    ) -> WorkflowExecution | None:
        return await self._get(
            WorkflowExecution,
            "SELECT data FROM workflow_executions WHERE workflow_id = $1 AND input_hash = $2",
            workflow_id,
            input_hash,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return await self._get(
            WorkflowExecution,
            "SELECT data FROM workflow_executions WHERE id = $1",
            execution_id,
        )

    async def update_execution(self, execution: WorkflowExecution) -> None:
        status = await self._execute(
            "UPDATE workflow_executions SET status = $1, data = $2 WHERE id = $3",
            execution.status.value,
            execution.model_dump_json(),
            execution.id,
        )
        if not self._affected(status):
            raise NotFoundError(f"Execution {execution.id} not found")

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> list[WorkflowExecution]:
        return await self._all(
            WorkflowExecution,
            """
            SELECT data FROM workflow_executions
            WHERE ($1::text IS NULL OR workflow_id = $1)
            AND ($2::text IS NULL OR tenant_id = $2)
            AND ($3::text IS NULL OR status = $3)
            ORDER BY created_at DESC LIMIT $4
            """,
            workflow_id,
            tenant_id,
            ExecutionStatus(status).value if status is not None else None,
            limit,
        )

    # ------------------------------------------------------------------
    # Events
    async def append_event(self, event: WorkflowEvent) -> None:
        await self._execute(
            "INSERT INTO workflow_events (id, execution_id, data) VALUES ($1, $2, $3)",
            event.id,
            event.execution_id,
            event.model_dump_json(),
        )

    async def list_events(self, execution_id: str) -> list[WorkflowEvent]:
        return await self._all(
            WorkflowEvent,
            "SELECT data FROM workflow_events WHERE execution_id = $1 ORDER BY seq",
            execution_id,
        )

    # ------------------------------------------------------------------
    # Rules
    async def save_rule(self, rule: WorkflowRule) -> None:
        await self._execute(
            """
            INSERT INTO workflow_rules (id, tenant_id, enabled, data) VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET enabled = EXCLUDED.enabled, data = EXCLUDED.data
            """,
            rule.id,
            rule.tenant_id,
            rule.enabled,
            rule.model_dump_json(),
        )

    async def get_rule(self, rule_id: str) -> WorkflowRule | None:
        return await self._get(
            WorkflowRule, "SELECT data FROM workflow_rules WHERE id = $1", rule_id
        )

    async def list_rules(
        self, tenant_id: str, enabled: Optional[bool] = None
    ) -> list[WorkflowRule]:
        return await self._all(
            WorkflowRule,
            """
            SELECT data FROM workflow_rules
            WHERE tenant_id = $1 AND ($2::boolean IS NULL OR enabled = $2)
            ORDER BY seq
            """,
            tenant_id,
            enabled,
        )

    async def save_rule_version(self, version: WorkflowRuleVersion) -> None:
        await self._execute(
            """
            INSERT INTO workflow_rule_versions (id, rule_id, version, data) VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data
            """,
            version.id,
            version.rule_id,
            version.version,
            version.model_dump_json(),
        )

    async def get_rule_version(self, version_id: str) -> WorkflowRuleVersion | None:
        return await self._get(
            WorkflowRuleVersion,
            "SELECT data FROM workflow_rule_versions WHERE id = $1",
            version_id,
        )

    async def list_rule_versions(self, rule_id: str) -> list[WorkflowRuleVersion]:
        return await self._all(
            WorkflowRuleVersion,
            "SELECT data FROM workflow_rule_versions WHERE rule_id = $1 ORDER BY version",
            rule_id,
        )

    async def append_rule_evaluation(self, evaluation: WorkflowRuleEvaluation) -> None:
        await self._execute(
            "INSERT INTO workflow_rule_evaluations (id, rule_id, data) VALUES ($1, $2, $3)",
            evaluation.id,
            evaluation.rule_id,
            evaluation.model_dump_json(),
        )

    async def list_rule_evaluations(
        self, rule_id: str, limit: int = 100
    ) -> list[WorkflowRuleEvaluation]:
        return await self._all(
            WorkflowRuleEvaluation,
            "SELECT data FROM workflow_rule_evaluations WHERE rule_id = $1 ORDER BY seq DESC LIMIT $2",
            rule_id,
            limit,
        )

    async def append_rule_audit(self, audit: WorkflowRuleAudit) -> None:
        await self._execute(
            "INSERT INTO workflow_rule_audits (id, rule_id, data) VALUES ($1, $2, $3)",
            audit.id,
            audit.rule_id,
            audit.model_dump_json(),
        )

    async def list_rule_audits(self, rule_id: str) -> list[WorkflowRuleAudit]:
        return await self._all(
            WorkflowRuleAudit,
            "SELECT data FROM workflow_rule_audits WHERE rule_id = $1 ORDER BY seq",
            rule_id,
        )
