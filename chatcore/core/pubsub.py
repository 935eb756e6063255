"""Broker handles: per-topic publish/subscribe with a connection state machine.

Both handles expose the same surface::

    await broker.connect(timeout)
    await broker.wait_until_ready(timeout) -> bool
    await broker.publish(topic, payload, options)
    await broker.subscribe(topic, handler)
    await broker.close()

Handlers receive the raw wire payload (a JSON string) and must not raise;
anything they raise is logged and swallowed so one bad event cannot stop the
listener.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .errors import Transient
from .metrics import BROKER_CONNECTED

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[None]]


class BrokerState(str, enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class PublishOptions:
    qos: int = 1
    retain: bool = False
    dup: bool = False


DEFAULT_PUBLISH_OPTIONS = PublishOptions()


def encode_payload(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode("utf-8")
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(",", ":"))


class BasePubSub:
    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._log = log or logger
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._ready = asyncio.Event()
        self.state = BrokerState.CONNECTING

    def _set_state(self, state: BrokerState) -> None:
        if state == self.state:
            return
        self._log.info("broker state %s -> %s", self.state.value, state.value)
        self.state = state
        if state == BrokerState.CONNECTED:
            self._ready.set()
            BROKER_CONNECTED.set(1)
        else:
            self._ready.clear()
            BROKER_CONNECTED.set(0)

    @property
    def connected(self) -> bool:
        return self.state == BrokerState.CONNECTED

    @property
    def topics(self) -> List[str]:
        return list(self._handlers)

    async def wait_until_ready(self, timeout: float) -> bool:
        if self.connected:
            return True
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self.connected

    async def _deliver(self, topic: str, data: Any) -> None:
        for handler in list(self._handlers.get(topic, ())):
            try:
                await handler(data)
            except Exception:
                self._log.exception("subscriber for %s failed", topic)

    def _register(self, topic: str, handler: MessageHandler) -> bool:
        lst = self._handlers.get(topic)
        if lst is None:
            lst = []
            self._handlers[topic] = lst
        is_new_topic = not lst
        lst.append(handler)
        return is_new_topic


class InMemoryPubSub(BasePubSub):
    """Single-process broker; delivery happens inline on publish."""

    async def connect(self, timeout: float = 0) -> bool:
        self._set_state(BrokerState.CONNECTED)
        return True

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._register(topic, handler)

    async def unsubscribe(self, topic: str) -> None:
        self._handlers.pop(topic, None)

    async def publish(
        self, topic: str, payload: Any, options: PublishOptions = DEFAULT_PUBLISH_OPTIONS
    ) -> None:
        if not self.connected:
            raise Transient("broker not connected")
        # retain 永远关闭：没有订阅者的消息直接丢弃
        await self._deliver(topic, encode_payload(payload))

    async def close(self) -> None:
        self._set_state(BrokerState.FAILED)


class RedisPubSub(BasePubSub):
    """Redis pub/sub handle.

    A supervisor task owns the connection. Every time it reaches CONNECTED it
    re-subscribes all known topics, so subscriptions survive reconnects.
    Redis pub/sub has no QoS or retain; ``PublishOptions`` is accepted for
    interface parity and logged at debug level.
    """

    def __init__(
        self,
        url: str,
        reconnect_period: float = 5.0,
        log: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(log)
        self._url = url
        self._reconnect_period = reconnect_period
        self._pub: Optional[aioredis.Redis] = None
        self._sub: Optional[aioredis.Redis] = None
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    async def connect(self, timeout: float = 30.0) -> bool:
        if self._task is None:
            self._closing = False
            self._task = asyncio.create_task(self._supervise())
        if await self.wait_until_ready(timeout):
            return True
        self._log.error("broker not connected after %.1fs, retrying in background", timeout)
        self._set_state(BrokerState.FAILED)
        return False

    async def _open(self) -> None:
        self._pub = aioredis.from_url(self._url)
        self._sub = aioredis.from_url(self._url)
        await self._pub.ping()
        self._pubsub = self._sub.pubsub()
        topics = self.topics
        if topics:
            await self._pubsub.subscribe(*topics)
            self._log.info("re-subscribed %d topic(s)", len(topics))

    async def _teardown(self) -> None:
        for closer in (
            getattr(self._pubsub, "aclose", None) or getattr(self._pubsub, "close", None),
            getattr(self._sub, "aclose", None),
            getattr(self._pub, "aclose", None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except (RedisError, OSError) as e:
                self._log.debug("ignoring error on broker teardown: %s", e)
        self._pubsub = self._sub = self._pub = None

    async def _listen(self) -> None:
        while not self._closing:
            if not self._pubsub.subscribed:
                await self._pub.ping()
                await asyncio.sleep(1.0)
                continue
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message is None:
                continue
            channel = message.get("channel")
            if isinstance(channel, (bytes, bytearray)):
                channel = channel.decode("utf-8")
            data = message.get("data")
            if isinstance(data, (bytes, bytearray)):
                data = data.decode("utf-8")
            await self._deliver(channel, data)

    async def _supervise(self) -> None:
        while not self._closing:
            try:
                await self._open()
                self._set_state(BrokerState.CONNECTED)
                await self._listen()
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as e:
                self._log.warning("broker connection lost: %s", e)
            if self._closing:
                break
            if self.state != BrokerState.FAILED:
                self._set_state(BrokerState.RECONNECTING)
            await self._teardown()
            await asyncio.sleep(self._reconnect_period)

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        if self._register(topic, handler) and self.connected and self._pubsub is not None:
            try:
                await self._pubsub.subscribe(topic)
            except (RedisError, OSError) as e:
                # 重连后由 supervisor 统一补订阅
                self._log.warning("subscribe %s deferred to reconnect: %s", topic, e)
        self._log.info("subscribed to %s", topic)

    async def unsubscribe(self, topic: str) -> None:
        self._handlers.pop(topic, None)
        if self.connected and self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(topic)
            except (RedisError, OSError) as e:
                self._log.warning("unsubscribe %s failed: %s", topic, e)

    async def publish(
        self, topic: str, payload: Any, options: PublishOptions = DEFAULT_PUBLISH_OPTIONS
    ) -> None:
        if not self.connected or self._pub is None:
            raise Transient("broker not connected")
        try:
            await self._pub.publish(topic, encode_payload(payload))
        except (RedisError, OSError) as e:
            raise Transient(f"publish to {topic} failed: {e}") from e
        self._log.debug("published to %s qos=%d retain=%s", topic, options.qos, options.retain)

    async def close(self) -> None:
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._teardown()
        self._set_state(BrokerState.FAILED)


def create_pubsub(settings, log: Optional[logging.Logger] = None) -> BasePubSub:
    if settings.REDIS_URL:
        return RedisPubSub(
            settings.REDIS_URL,
            reconnect_period=settings.BROKER_RECONNECT_PERIOD_SEC,
            log=log,
        )
    return InMemoryPubSub(log)
