from __future__ import annotations

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shutdownd import bus as bus_mod
from shutdownd.bus import RedisPowerBus


class FakePubSub:
    def __init__(self, messages) -> None:
        self.messages = messages
        self.subscribed = []
        self.closed = False

    async def subscribe(self, *channels) -> None:
        self.subscribed.extend(channels)

    async def unsubscribe(self, *channels) -> None:
        pass

    async def close(self) -> None:
        self.closed = True

    async def listen(self):
        for msg in self.messages:
            if isinstance(msg, Exception):
                raise msg
            yield msg
        await asyncio.Event().wait()


class FakeRedis:
    def __init__(self, pubsub: FakePubSub) -> None:
        self._pubsub = pubsub
        self.closed = False

    async def ping(self) -> bool:
        return True

    def pubsub(self) -> FakePubSub:
        return self._pubsub

    async def close(self) -> None:
        self.closed = True


def _msg(data: bytes, channel: bytes = b"power/alarms") -> dict:
    return {"type": "message", "pattern": None, "channel": channel, "data": data}


def test_pump_delivers_and_resubscribes_after_connection_error(monkeypatch):
    first = FakePubSub(
        [
            {"type": "subscribe", "pattern": None, "channel": b"power/alarms", "data": 1},
            _msg(b"one"),
            RedisConnectionError("connection reset"),
        ]
    )
    second = FakePubSub([_msg(b"two")])
    clients = [FakeRedis(first), FakeRedis(second)]
    urls = []

    def fake_from_url(url, **kwargs):
        urls.append(url)
        return clients[len(urls) - 1]

    monkeypatch.setattr(bus_mod.aioredis, "from_url", fake_from_url)

    async def scenario():
        received = []
        done = asyncio.Event()

        async def deliver(channel, data):
            received.append((channel, data))
            if len(received) == 2:
                done.set()

        bus = RedisPowerBus("redis://bus:6379/0", reconnect_delay_sec=0.01)
        task = asyncio.create_task(bus.pump("power/alarms", deliver))
        await asyncio.wait_for(done.wait(), timeout=5.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await bus.close()
        return received

    received = asyncio.run(scenario())
    assert received == [("power/alarms", b"one"), ("power/alarms", b"two")]
    assert urls == ["redis://bus:6379/0", "redis://bus:6379/0"]
    assert first.subscribed == ["power/alarms"] and first.closed
    assert second.subscribed == ["power/alarms"] and second.closed
    assert clients[0].closed


def test_redis_property_requires_connect():
    with pytest.raises(RuntimeError):
        RedisPowerBus("redis://bus:6379/0").redis
