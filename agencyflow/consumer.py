"""Consume signal envelopes from a transport and dispatch them."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from .constants import DEFAULT_SIGNAL_TOPIC
from .contracts import SignalEnvelope
from .dispatch import DispatchResult, SignalDispatcher
from .exceptions import ValidationError
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class SignalConsumer:
    """Listen on a topic and run every envelope through the dispatcher.

    Envelopes rejected at the ingestion boundary are logged and acked so
    they are not redelivered forever. Any other failure is nacked for
    redelivery. The dispatcher has already marked the signal failed by then,
    so a redelivered copy lands as its duplicate and the original stays
    available to ``SignalStore.retry``.
    """

    def __init__(
        self,
        transport: BaseTransport,
        dispatcher: SignalDispatcher,
        topic: str = DEFAULT_SIGNAL_TOPIC,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self.topic = topic
        self.results: List[DispatchResult] = []
        self.rejected: List[str] = []

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start consuming; returns when ``lifespan`` seconds have elapsed."""
        logger.info(f"Consuming signals from topic '{self.topic}'")
        async for raw_message, envelope in self._transport.subscribe(
            self.topic, lifespan=lifespan
        ):
            await self._handle(raw_message, envelope)

    async def _handle(self, raw_message: Any, envelope: SignalEnvelope) -> None:
        try:
            result = await self._dispatcher.dispatch_envelope(envelope)
        except ValidationError as e:
            logger.error(f"Rejected envelope {envelope.message_id}: {e}")
            self.rejected.append(envelope.message_id)
            await self._transport.ack(raw_message)
            return
        except Exception:
            logger.exception(f"Failed to dispatch envelope {envelope.message_id}")
            await self._transport.nack(raw_message, requeue=True)
            raise

        self.results.append(result)
        logger.info(
            f"Envelope {envelope.message_id} -> signal {result.signal.id} "
            f"({result.signal.status.value}, {len(result.executions)} executions)"
        )
        await self._transport.ack(raw_message)


__all__ = ["SignalConsumer"]
