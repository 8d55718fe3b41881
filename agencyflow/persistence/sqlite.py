"""SQLite implementation of the automation repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Type, TypeVar

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

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS signals (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL,
        dedup_hash TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS signals_dedup_idx ON signals (tenant_id, dedup_hash, created_at)",
    """
    CREATE TABLE IF NOT EXISTS signal_routes (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflows (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL,
        status TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        input_hash TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS workflow_executions_idempotency_idx
    ON workflow_executions (workflow_id, input_hash)
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        execution_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_events_execution_idx ON workflow_events (execution_id)",
    """
    CREATE TABLE IF NOT EXISTS workflow_rules (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL,
        enabled INTEGER NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_rule_versions (
        id TEXT PRIMARY KEY,
        rule_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        data TEXT NOT NULL,
        UNIQUE (rule_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_rule_evaluations (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        rule_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_rule_audits (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        rule_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
]


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison orders correctly."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


class SQLiteAutomationRepository(AutomationRepository):
    """Persist automation state using SQLite.

    Calls run in a worker thread; a lock serializes access to the shared
    connection.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            for statement in SCHEMA:
                self._conn.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    async def _get(self, model: Type[M], query: str, *params: Any) -> M | None:
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return model.model_validate_json(row["data"]) if row else None

    async def _all(self, model: Type[M], query: str, *params: Any) -> list[M]:
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [model.model_validate_json(row["data"]) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Signals
    def _insert_signal_sync(self, signal: Signal, dedup_window_seconds: int) -> Signal:
        window_start = signal.created_at - timedelta(seconds=dedup_window_seconds)
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    """
                    SELECT id FROM signals
                    WHERE tenant_id = ? AND dedup_hash = ? AND status != ?
                    AND created_at >= ?
                    ORDER BY seq LIMIT 1
                    """,
                    (
                        signal.tenant_id,
                        signal.dedup_hash,
                        SignalStatus.DUPLICATE.value,
                        _ts(window_start),
                    ),
                ).fetchone()
                stored = signal.model_copy(deep=True)
                if row is not None:
                    stored.status = SignalStatus.DUPLICATE
                    stored.metadata.setdefault("duplicate_of", row["id"])
                self._conn.execute(
                    "INSERT INTO signals (id, tenant_id, dedup_hash, status, created_at, data) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        stored.id,
                        stored.tenant_id,
                        stored.dedup_hash,
                        stored.status.value,
                        _ts(stored.created_at),
                        stored.model_dump_json(),
                    ),
                )
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return stored

    async def insert_signal(self, signal: Signal, dedup_window_seconds: int) -> Signal:
        return await asyncio.to_thread(self._insert_signal_sync, signal, dedup_window_seconds)

    async def get_signal(self, signal_id: str) -> Signal | None:
        return await self._get(Signal, "SELECT data FROM signals WHERE id = ?", signal_id)

    async def update_signal(self, signal: Signal) -> None:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE signals SET status = ?, data = ? WHERE id = ?",
            signal.status.value,
            signal.model_dump_json(),
            signal.id,
        )
        if not updated:
            raise NotFoundError(f"Signal {signal.id} not found")

    async def list_signals(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[SignalStatus] = None,
        limit: int = 100,
    ) -> list[Signal]:
        query = "SELECT data FROM signals WHERE 1 = 1"
        params: list[Any] = []
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if status is not None:
            query += " AND status = ?"
            params.append(SignalStatus(status).value)
        query += " ORDER BY created_at DESC, seq DESC LIMIT ?"
        params.append(limit)
        return await self._all(Signal, query, *params)

    # ------------------------------------------------------------------
    # Routes
    async def save_route(self, route: SignalRoute) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO signal_routes (id, tenant_id, data) VALUES (?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET tenant_id = excluded.tenant_id, data = excluded.data
            """,
            route.id,
            route.tenant_id,
            route.model_dump_json(),
        )

    async def list_routes(self, tenant_id: str) -> list[SignalRoute]:
        return await self._all(
            SignalRoute,
            "SELECT data FROM signal_routes WHERE tenant_id = ? ORDER BY seq",
            tenant_id,
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, tenant_id, status, data) VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                tenant_id = excluded.tenant_id,
                status = excluded.status,
                data = excluded.data
            """,
            workflow.id,
            workflow.tenant_id,
            workflow.status.value,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return await self._get(Workflow, "SELECT data FROM workflows WHERE id = ?", workflow_id)

    async def list_workflows(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[Workflow]:
        query = "SELECT data FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if status is not None:
            query += " AND status = ?"
            params.append(WorkflowStatus(status).value)
        query += " ORDER BY seq"
        return await self._all(Workflow, query, *params)

    # ------------------------------------------------------------------
    # Executions
    def _insert_execution_sync(self, execution: WorkflowExecution) -> None:
        try:
            self._execute(
                """
                INSERT INTO workflow_executions
                    (id, workflow_id, tenant_id, input_hash, status, created_at, data)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                execution.id,
                execution.workflow_id,
                execution.tenant_id,
                execution.input_hash,
                execution.status.value,
                _ts(execution.created_at),
                execution.model_dump_json(),
            )
        except sqlite3.IntegrityError as exc:
            raise ExecutionConflictError(execution.workflow_id, execution.input_hash) from exc

    async def insert_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(self._insert_execution_sync, execution)

    async def find_execution(
        self, workflow_id: str, input_hash: str
    ) -> WorkflowExecution | None:
        return await self._get(
            WorkflowExecution,
            "SELECT data FROM workflow_executions WHERE workflow_id = ? AND input_hash = ?",
            workflow_id,
            input_hash,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return await self._get(
            WorkflowExecution,
            "SELECT data FROM workflow_executions WHERE id = ?",
            execution_id,
        )

    async def update_execution(self, execution: WorkflowExecution) -> None:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_executions SET status = ?, data = ? WHERE id = ?",
            execution.status.value,
            execution.model_dump_json(),
            execution.id,
        )
        if not updated:
            raise NotFoundError(f"Execution {execution.id} not found")

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 100,
    ) -> list[WorkflowExecution]:
        query = "SELECT data FROM workflow_executions WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if status is not None:
            query += " AND status = ?"
            params.append(ExecutionStatus(status).value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return await self._all(WorkflowExecution, query, *params)

    # ------------------------------------------------------------------
    # Events
    async def append_event(self, event: WorkflowEvent) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_events (id, execution_id, data) VALUES (?, ?, ?)",
            event.id,
            event.execution_id,
            event.model_dump_json(),
        )

    async def list_events(self, execution_id: str) -> list[WorkflowEvent]:
        return await self._all(
            WorkflowEvent,
            "SELECT data FROM workflow_events WHERE execution_id = ? ORDER BY seq",
            execution_id,
        )

    # ------------------------------------------------------------------
    # Rules
    async def save_rule(self, rule: WorkflowRule) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_rules (id, tenant_id, enabled, data) VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET enabled = excluded.enabled, data = excluded.data
            """,
            rule.id,
            rule.tenant_id,
            int(rule.enabled),
            rule.model_dump_json(),
        )

    async def get_rule(self, rule_id: str) -> WorkflowRule | None:
        return await self._get(
            WorkflowRule, "SELECT data FROM workflow_rules WHERE id = ?", rule_id
        )

    async def list_rules(
        self, tenant_id: str, enabled: Optional[bool] = None
    ) -> list[WorkflowRule]:
        if enabled is None:
            return await self._all(
                WorkflowRule,
                "SELECT data FROM workflow_rules WHERE tenant_id = ? ORDER BY seq",
                tenant_id,
            )
        return await self._all(
            WorkflowRule,
            "SELECT data FROM workflow_rules WHERE tenant_id = ? AND enabled = ? ORDER BY seq",
            tenant_id,
            int(enabled),
        )

    async def save_rule_version(self, version: WorkflowRuleVersion) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_rule_versions (id, rule_id, version, data) VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET data = excluded.data
            """,
            version.id,
            version.rule_id,
            version.version,
            version.model_dump_json(),
        )

    async def get_rule_version(self, version_id: str) -> WorkflowRuleVersion | None:
        return await self._get(
            WorkflowRuleVersion,
            "SELECT data FROM workflow_rule_versions WHERE id = ?",
            version_id,
        )

    async def list_rule_versions(self, rule_id: str) -> list[WorkflowRuleVersion]:
        return await self._all(
            WorkflowRuleVersion,
            "SELECT data FROM workflow_rule_versions WHERE rule_id = ? ORDER BY version",
            rule_id,
        )

    async def append_rule_evaluation(self, evaluation: WorkflowRuleEvaluation) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_rule_evaluations (id, rule_id, data) VALUES (?, ?, ?)",
            evaluation.id,
            evaluation.rule_id,
            evaluation.model_dump_json(),
        )

    async def list_rule_evaluations(
        self, rule_id: str, limit: int = 100
    ) -> list[WorkflowRuleEvaluation]:
        return await self._all(
            WorkflowRuleEvaluation,
            "SELECT data FROM workflow_rule_evaluations WHERE rule_id = ? ORDER BY seq DESC LIMIT ?",
            rule_id,
            limit,
        )

    async def append_rule_audit(self, audit: WorkflowRuleAudit) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_rule_audits (id, rule_id, data) VALUES (?, ?, ?)",
            audit.id,
            audit.rule_id,
            audit.model_dump_json(),
        )

    async def list_rule_audits(self, rule_id: str) -> list[WorkflowRuleAudit]:
        return await self._all(
            WorkflowRuleAudit,
            "SELECT data FROM workflow_rule_audits WHERE rule_id = ? ORDER BY seq",
            rule_id,
        )
