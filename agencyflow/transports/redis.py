"""Redis transport for cross-process signal delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..contracts import SignalEnvelope
from .base import BaseTransport

logger = logging.getLogger(__name__)

KEY_PREFIX = "agencyflow"


def queue_key(topic: str) -> str:
    return f"{KEY_PREFIX}:{topic}"


class RedisTransport(BaseTransport[str]):
    """Redis list used as a queue: ``LPUSH`` to publish, ``BRPOP`` to consume."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None
        self._topic: Optional[str] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, envelope: SignalEnvelope) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(queue_key(topic), envelope.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, SignalEnvelope]]:
        if not self._redis:
            await self.connect()

        self._topic = topic
        key = queue_key(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.brpop(key, timeout=1)
            if result:
                _, message_json = result
                try:
                    envelope = SignalEnvelope.from_json(message_json)
                except PydanticValidationError as e:
                    logger.error(f"Dropping unparseable envelope on {key}: {e}")
                    continue
                yield message_json, envelope

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """No-op: ``BRPOP`` already removed the message."""
        pass

    async def nack(self, raw_message: str, requeue: bool = True) -> None:
        if requeue and self._redis and self._topic:
            await self._redis.rpush(queue_key(self._topic), raw_message)
