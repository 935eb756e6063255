"""Tests for the broker handles."""

import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chatcore.core import pubsub as pubsub_module
from chatcore.core.config import Settings
from chatcore.core.errors import Transient
from chatcore.core.pubsub import (
    BrokerState,
    InMemoryPubSub,
    RedisPubSub,
    create_pubsub,
    encode_payload,
)

INGRESS = "chat/v1/receipts"


class FakeRedisServer:
    """Stands in for a redis server; ``up`` toggles connectivity."""

    def __init__(self):
        self.up = True
        self.fail_publish = False
        self.subscribe_calls = []
        self.clients = []
        self.pubsubs = []

    def check(self):
        if not self.up:
            raise RedisConnectionError("connection refused")

    def from_url(self, url, **kwargs):
        client = FakeRedis(self)
        self.clients.append(client)
        return client

    def deliver(self, channel, data):
        for ps in self.pubsubs:
            if channel in ps.channels and not ps.closed:
                ps.queue.put_nowait(
                    {"type": "message", "channel": channel.encode(), "data": data.encode()}
                )


class FakeRedis:
    def __init__(self, server):
        self.server = server
        self.closed = False

    async def ping(self):
        self.server.check()
        return True

    async def publish(self, channel, data):
        self.server.check()
        if self.server.fail_publish:
            raise RedisConnectionError("write failed")
        self.server.deliver(channel, data)
        return 1

    def pubsub(self):
        ps = FakePubSub(self.server)
        self.server.pubsubs.append(ps)
        return ps

    async def aclose(self):
        self.closed = True


class FakePubSub:
    def __init__(self, server):
        self.server = server
        self.channels = set()
        self.queue = asyncio.Queue()
        self.closed = False

    @property
    def subscribed(self):
        return bool(self.channels)

    async def subscribe(self, *channels):
        self.server.check()
        self.channels.update(channels)
        self.server.subscribe_calls.append(channels)

    async def unsubscribe(self, *channels):
        self.channels.difference_update(channels)

    async def get_message(self, ignore_subscribe_messages=False, timeout=None):
        self.server.check()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=0.01)
        except asyncio.TimeoutError:
            return None

    async def aclose(self):
        self.closed = True


@pytest.fixture
def redis_server(monkeypatch):
    server = FakeRedisServer()
    monkeypatch.setattr(pubsub_module.aioredis, "from_url", server.from_url)
    return server


def record_states(broker):
    seen = []
    original = broker._set_state

    def recording(state):
        if state != broker.state:
            seen.append(state)
        original(state)

    broker._set_state = recording
    return seen


async def eventually(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
class TestInMemoryPubSub:
    async def test_publish_before_connect_is_transient(self):
        broker = InMemoryPubSub()
        with pytest.raises(Transient):
            await broker.publish("t", {"a": 1})

    async def test_wait_until_ready(self):
        broker = InMemoryPubSub()
        assert await broker.wait_until_ready(0.01) is False
        await broker.connect()
        assert broker.state == BrokerState.CONNECTED
        assert await broker.wait_until_ready(0.01) is True

    async def test_delivers_json_to_subscribers(self):
        broker = InMemoryPubSub()
        await broker.connect()
        received = []

        async def handler(data):
            received.append(json.loads(data))

        await broker.subscribe("chat/v1/receipts", handler)
        await broker.publish("chat/v1/receipts", {"type": "read_up_to"})
        await broker.publish("other", {"ignored": True})
        assert received == [{"type": "read_up_to"}]
        assert broker.topics == ["chat/v1/receipts"]

    async def test_failing_handler_is_contained(self):
        broker = InMemoryPubSub()
        await broker.connect()
        seen = []

        async def bad(data):
            raise RuntimeError("boom")

        async def good(data):
            seen.append(data)

        await broker.subscribe("t", bad)
        await broker.subscribe("t", good)
        await broker.publish("t", "x")
        assert seen == ["x"]

    async def test_close(self):
        broker = InMemoryPubSub()
        await broker.connect()
        await broker.close()
        assert broker.state == BrokerState.FAILED
        assert not broker.connected


def test_encode_payload():
    assert encode_payload({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'
    assert encode_payload(b"raw") == "raw"
    assert encode_payload("s") == "s"



@pytest.mark.asyncio
class TestRedisPubSub:
    async def test_connect_subscribe_and_deliver(self, redis_server):
        broker = RedisPubSub("redis://fake", reconnect_period=0.01)
        received = []

        async def handler(data):
            received.append(json.loads(data))

        await broker.subscribe(INGRESS, handler)
        assert await broker.connect(1.0) is True
        assert broker.state == BrokerState.CONNECTED
        assert redis_server.subscribe_calls == [(INGRESS,)]

        await broker.publish(INGRESS, {"type": "read_up_to"})
        await eventually(lambda: received)
        assert received == [{"type": "read_up_to"}]

        await broker.close()
        assert broker.state == BrokerState.FAILED

    async def test_subscribe_while_connected(self, redis_server):
        broker = RedisPubSub("redis://fake", reconnect_period=0.01)
        await broker.connect(1.0)

        async def handler(data):
            pass

        await broker.subscribe("chat/v1/extra", handler)
        assert redis_server.subscribe_calls == [("chat/v1/extra",)]
        await broker.close()

    async def test_resubscribes_after_reconnect(self, redis_server):
        broker = RedisPubSub("redis://fake", reconnect_period=0.01)
        states = record_states(broker)
        received = []

        async def handler(data):
            received.append(data)

        await broker.subscribe(INGRESS, handler)
        await broker.connect(1.0)

        redis_server.up = False
        await eventually(lambda: broker.state == BrokerState.RECONNECTING)
        with pytest.raises(Transient):
            await broker.publish(INGRESS, {"n": 1})

        redis_server.up = True
        await eventually(lambda: broker.connected)
        assert redis_server.subscribe_calls == [(INGRESS,), (INGRESS,)]
        assert states == [
            BrokerState.CONNECTED,
            BrokerState.RECONNECTING,
            BrokerState.CONNECTED,
        ]

        await broker.publish(INGRESS, {"n": 2})
        await eventually(lambda: received)
        assert received == ['{"n":2}']
        await broker.close()

    async def test_publish_error_is_transient(self, redis_server):
        broker = RedisPubSub("redis://fake", reconnect_period=0.01)
        await broker.connect(1.0)
        redis_server.fail_publish = True
        with pytest.raises(Transient):
            await broker.publish(INGRESS, {"n": 1})
        await broker.close()

    async def test_connect_timeout_fails_and_keeps_retrying(self, redis_server):
        redis_server.up = False
        broker = RedisPubSub("redis://fake", reconnect_period=0.01)
        states = record_states(broker)

        assert await broker.connect(0.05) is False
        assert broker.state == BrokerState.FAILED
        await asyncio.sleep(0.05)
        assert broker.state == BrokerState.FAILED
        attempts = len(redis_server.clients)
        assert attempts > 2

        redis_server.up = True
        await eventually(lambda: broker.connected)
        assert states[-2:] == [BrokerState.FAILED, BrokerState.CONNECTED]
        await broker.close()


def test_create_pubsub_picks_backend():
    redis_settings = Settings(REDIS_URL="redis://localhost:6379/0")
    assert isinstance(create_pubsub(redis_settings), RedisPubSub)
    assert isinstance(create_pubsub(Settings(REDIS_URL=None)), InMemoryPubSub)
