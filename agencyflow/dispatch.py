"""Signal dispatcher: ingest, route and trigger workflows."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .contracts import (
    ExecutionStatus,
    Signal,
    SignalEnvelope,
    SignalSource,
    SignalStatus,
    SignalUrgency,
    TriggerType,
    WorkflowExecution,
)
from .engine import WorkflowEngine
from .exceptions import AgencyFlowError
from .signals import RouteMatch, SignalRouter, SignalStore

logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    signal: Signal
    duplicate: bool = False
    matches: List[RouteMatch] = Field(default_factory=list)
    executions: List[WorkflowExecution] = Field(default_factory=list)


def signal_trigger_payload(signal: Signal) -> Dict[str, Any]:
    """Payload handed to workflows triggered by ``signal``.

    The signal id travels as the trigger id, so each signal gets its own
    execution while a retried signal maps onto the one it already has.
    """
    payload = dict(signal.payload)
    if signal.client_id and "client_id" not in payload:
        payload["client_id"] = signal.client_id
    return payload


class SignalDispatcher:
    """Drive one signal from ingestion to triggered executions.

    The signal moves ``pending -> processing -> completed | failed``. Having
    no matching route is not an error. The signal fails when any triggered
    execution fails.
    """

    def __init__(self, store: SignalStore, router: SignalRouter, engine: WorkflowEngine):
        self.store = store
        self.router = router
        self.engine = engine

    async def ingest_and_dispatch(
        self,
        tenant_id: str,
        source: Union[SignalSource, str],
        type: str,
        payload: Dict[str, Any],
        urgency: Union[SignalUrgency, str] = SignalUrgency.NORMAL,
        client_id: Optional[str] = None,
    ) -> DispatchResult:
        signal = await self.store.ingest(
            tenant_id, source, type, payload, urgency=urgency, client_id=client_id
        )
        return await self.dispatch(signal)

    async def dispatch_envelope(self, envelope: SignalEnvelope) -> DispatchResult:
        if envelope.raw:
            signal = await self.store.ingest_raw(
                envelope.tenant_id, envelope.source, envelope.payload, client_id=envelope.client_id
            )
            return await self.dispatch(signal)
        return await self.ingest_and_dispatch(
            envelope.tenant_id,
            envelope.source,
            envelope.type or "",
            envelope.payload,
            urgency=envelope.urgency or SignalUrgency.NORMAL,
            client_id=envelope.client_id,
        )

    async def dispatch(self, signal: Signal) -> DispatchResult:
        if signal.is_duplicate:
            return DispatchResult(signal=signal, duplicate=True)

        signal = await self.store.mark(signal.id, SignalStatus.PROCESSING)
        try:
            return await self._route_and_execute(signal)
        except Exception as exc:
            # a crashed dispatch never leaves the signal in processing
            logger.exception(f"Dispatch of signal {signal.id} crashed")
            await self.store.mark(signal.id, SignalStatus.FAILED, error=f"Unexpected error: {exc}")
            raise

    async def _route_and_execute(self, signal: Signal) -> DispatchResult:
        matches = await self.router.route(signal)
        if not matches:
            logger.info(f"Signal {signal.id} matched no routes")
            signal = await self.store.mark(signal.id, SignalStatus.COMPLETED)
            return DispatchResult(signal=signal)

        executions: List[WorkflowExecution] = []
        errors: List[str] = []
        metadata = {
            "signal_id": signal.id,
            "signal_type": signal.type,
            "signal_source": signal.source.value,
            "client_id": signal.client_id,
        }
        for match in matches:
            try:
                execution = await self.engine.execute(
                    match.workflow,
                    signal_trigger_payload(signal),
                    trigger_id=signal.id,
                    trigger_type=TriggerType.SIGNAL.value,
                    metadata=metadata,
                )
            except AgencyFlowError as exc:
                logger.error(f"Workflow {match.workflow.id} rejected signal {signal.id}: {exc}")
                errors.append(f"{match.workflow.name}: {exc}")
                continue
            executions.append(execution)
            if execution.status == ExecutionStatus.FAILED:
                errors.append(f"{match.workflow.name}: {execution.error}")

        execution_ids = [execution.id for execution in executions]
        if errors:
            signal = await self.store.mark(
                signal.id,
                SignalStatus.FAILED,
                error="; ".join(errors),
                execution_ids=execution_ids,
            )
        else:
            signal = await self.store.mark(
                signal.id, SignalStatus.COMPLETED, execution_ids=execution_ids
            )
        return DispatchResult(signal=signal, matches=matches, executions=executions)


__all__ = ["DispatchResult", "SignalDispatcher", "signal_trigger_payload"]
