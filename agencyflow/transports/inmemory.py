"""In-memory transport for tests and single-process runs."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import SignalEnvelope
from .base import BaseTransport

# (topic, serialized envelope, envelope)
RawEnvelope = Tuple[str, str, SignalEnvelope]


class InMemoryTransport(BaseTransport[RawEnvelope]):
    """Simple in-process queue; requeued messages go back to the front."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawEnvelope]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.acked: List[str] = []

    async def publish(self, topic: str, envelope: SignalEnvelope) -> None:
        raw = (topic, envelope.to_json(), envelope)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEnvelope, SignalEnvelope]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                queue = self._queues[topic]
                raw_message = queue.popleft() if queue else None
            if raw_message is not None:
                yield raw_message, raw_message[2]
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawEnvelope) -> None:
        self.acked.append(raw_message[2].message_id)

    async def nack(self, raw_message: RawEnvelope, requeue: bool = True) -> None:
        if not requeue:
            await self.ack(raw_message)
            return
        async with self._lock:
            self._queues[raw_message[0]].appendleft(raw_message)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
