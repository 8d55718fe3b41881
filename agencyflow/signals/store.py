"""Signal ingestion with fingerprint deduplication."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Optional, Union

from ..constants import DEFAULT_DEDUP_WINDOW_SECONDS, DEFAULT_LIST_LIMIT
from ..contracts import Signal, SignalSource, SignalStatus, SignalUrgency, utcnow
from ..exceptions import NotFoundError, SignalValidationError
from ..persistence.repository import AutomationRepository
from ..utils import compute_hash
from .adapters import get_adapter

logger = logging.getLogger(__name__)


def compute_fingerprint(
    tenant_id: str, source: Union[SignalSource, str], type: str, payload: Dict[str, Any]
) -> str:
    """Deterministic dedup hash; key order and whitespace do not matter."""
    return compute_hash(
        {
            "tenant_id": tenant_id,
            "source": SignalSource(source).value,
            "type": type,
            "payload": payload,
        }
    )


def _parse_enum(enum_cls, value: Any, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise SignalValidationError(
            f"Invalid signal {label}: {value}. Valid values: {allowed}"
        ) from exc


class SignalStore:
    """Persist every incoming signal, flagging repeats as duplicates."""

    def __init__(
        self,
        repository: AutomationRepository,
        dedup_window_seconds: int = DEFAULT_DEDUP_WINDOW_SECONDS,
    ):
        self.repository = repository
        self.dedup_window_seconds = dedup_window_seconds

    async def ingest(
        self,
        tenant_id: str,
        source: Union[SignalSource, str],
        type: str,
        payload: Any,
        urgency: Union[SignalUrgency, str] = SignalUrgency.NORMAL,
        client_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Signal:
        if not tenant_id:
            raise SignalValidationError("tenant_id is required")
        source = _parse_enum(SignalSource, source, "source")
        urgency = _parse_enum(SignalUrgency, urgency, "urgency")
        if not type or not str(type).strip():
            raise SignalValidationError("Signal type is required")
        if not isinstance(payload, dict):
            raise SignalValidationError(
                f"Signal payload must be an object, got {payload.__class__.__name__}"
            )
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as exc:
            raise SignalValidationError(f"Signal payload is not JSON serializable: {exc}") from exc

        signal = Signal(
            tenant_id=tenant_id,
            source=source,
            type=str(type),
            payload=payload,
            urgency=urgency,
            client_id=client_id,
            dedup_hash=compute_fingerprint(tenant_id, source, str(type), payload),
            metadata=dict(metadata or {}),
        )
        stored = await self.repository.insert_signal(signal, self.dedup_window_seconds)
        if stored.is_duplicate:
            logger.info(
                f"Signal {stored.id} ({source.value}/{type}) is a duplicate of "
                f"{stored.metadata.get('duplicate_of')}"
            )
        else:
            logger.debug(f"Ingested signal {stored.id} ({source.value}/{type}) for {tenant_id}")
        return stored

    async def ingest_raw(
        self,
        tenant_id: str,
        source: Union[SignalSource, str],
        raw_data: Dict[str, Any],
        client_id: Optional[str] = None,
    ) -> Signal:
        """Ingest integration data, letting the source adapter pick type and urgency."""
        if not isinstance(raw_data, dict):
            raise SignalValidationError("Raw signal data must be an object")
        adapted = get_adapter(str(getattr(source, "value", source))).adapt(raw_data)
        return await self.ingest(
            tenant_id,
            source,
            adapted.type,
            adapted.payload,
            urgency=adapted.urgency,
            client_id=client_id,
            metadata=adapted.metadata,
        )

    async def get(self, signal_id: str) -> Signal:
        signal = await self.repository.get_signal(signal_id)
        if signal is None:
            raise NotFoundError(f"Signal {signal_id} not found")
        return signal

    async def list_signals(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[Union[SignalStatus, str]] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[Signal]:
        if status is not None:
            status = _parse_enum(SignalStatus, status, "status")
        return await self.repository.list_signals(tenant_id, status, limit)

    async def mark(
        self,
        signal_id: str,
        status: Union[SignalStatus, str],
        *,
        error: Optional[str] = None,
        execution_ids: Optional[Iterable[str]] = None,
    ) -> Signal:
        status = _parse_enum(SignalStatus, status, "status")
        signal = await self.get(signal_id)
        if signal.is_duplicate:
            raise SignalValidationError(f"Signal {signal_id} is a duplicate and is not processed")
        if status == SignalStatus.DUPLICATE:
            raise SignalValidationError("Only ingestion can mark a signal duplicate")
        signal.status = status
        signal.last_error = error
        if execution_ids is not None:
            for execution_id in execution_ids:
                if execution_id not in signal.execution_ids:
                    signal.execution_ids.append(execution_id)
        if status in (SignalStatus.COMPLETED, SignalStatus.FAILED):
            signal.processed_at = utcnow()
        await self.repository.update_signal(signal)
        return signal

    async def retry(self, signal_id: str) -> Signal:
        """Return a failed signal to ``pending`` so it can be dispatched again."""
        signal = await self.get(signal_id)
        if signal.status != SignalStatus.FAILED:
            raise SignalValidationError(
                f"Only failed signals can be retried (signal {signal_id} is {signal.status.value})"
            )
        signal.status = SignalStatus.PENDING
        signal.retry_count += 1
        signal.processed_at = None
        await self.repository.update_signal(signal)
        logger.info(f"Signal {signal_id} queued for retry #{signal.retry_count}")
        return signal
