# shutdownd/bus.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger("shutdownd.bus")

Deliver = Callable[[str, bytes], Awaitable[None]]


def _as_str(value: bytes | str) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", "ignore")
    return value


class RedisPowerBus:
    """
    Async Redis pub/sub client for the power alarms channel.

    Owns connection, subscription and reconnection; hands every received
    (channel, data) pair to `deliver` in arrival order.
    """

    def __init__(self, url: str, *, reconnect_delay_sec: float = 5.0) -> None:
        self.url = url
        self.reconnect_delay_sec = reconnect_delay_sec
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(self.url, decode_responses=False)
            await self._redis.ping()
            logger.info("Connected to bus at %s", self.url)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("RedisPowerBus not connected. Call await connect().")
        return self._redis

    @asynccontextmanager
    async def subscribe(self, channel: str) -> AsyncIterator[aioredis.client.PubSub]:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        logger.info("Subscribed to '%s'", channel)
        try:
            yield pubsub
        finally:
            try:
                await pubsub.unsubscribe(channel)
            finally:
                await pubsub.close()

    async def iter_messages(self, pubsub: aioredis.client.PubSub) -> AsyncIterator[dict]:
        async for msg in pubsub.listen():
            if msg.get("type") != "message":
                continue
            yield msg

    async def pump(self, channel: str, deliver: Deliver) -> None:
        """
        Subscribe to `channel` and forward messages until cancelled.

        Connection errors are logged and retried after reconnect_delay_sec;
        the subscription is re-established on every reconnect.
        """
        while True:
            try:
                await self.connect()
                async with self.subscribe(channel) as pubsub:
                    async for msg in self.iter_messages(pubsub):
                        data = msg.get("data")
                        if data is None:
                            continue
                        await deliver(_as_str(msg.get("channel", b"")), data)
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                logger.error("Bus connection error: %s; reconnecting in %.1fs", e, self.reconnect_delay_sec)
                await self._drop_connection()
                await asyncio.sleep(self.reconnect_delay_sec)

    async def _drop_connection(self) -> None:
        try:
            await self.close()
        except (RedisConnectionError, OSError):
            logger.debug("Ignoring error while closing broken connection", exc_info=True)
            self._redis = None
