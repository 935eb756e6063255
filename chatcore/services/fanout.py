"""Fan-out of messages, receipts and conversation-list deltas to per-user topics.

Callers enqueue and return immediately. Events are spread over a fixed number
of lanes by conversation id; one task drains each lane in FIFO order, so
events of a conversation reach the broker in the order they were committed.
A publish waits a bounded time for the broker to be connected, then gives up;
for the rest of that outage events are dropped without waiting. Lost events
are logged and counted, never retried. Clients reconcile through REST history
after a reconnect.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..core.ids import to_rfc3339
from ..core.metrics import FANOUT_BACKLOG, PUBLISHES
from ..core.pubsub import DEFAULT_PUBLISH_OPTIONS, BasePubSub, PublishOptions
from ..models import chat as chat_model

logger = logging.getLogger(__name__)


class Topics:
    def __init__(self, prefix: str = "chat/v1", ingress: Optional[str] = None) -> None:
        self.prefix = prefix.strip("/").lower()
        self.ingress = ingress or f"{self.prefix}/receipts"

    def messages(self, user_id: str) -> str:
        return f"{self.prefix}/users/{user_id}/messages"

    def receipts(self, user_id: str) -> str:
        return f"{self.prefix}/users/{user_id}/receipts"

    def conversations(self, user_id: str) -> str:
        return f"{self.prefix}/users/{user_id}/conversations"


def message_event(msg: chat_model.Message) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if msg.text is not None:
        payload["text"] = msg.text
    if msg.media:
        payload["media"] = msg.media
    return {
        "type": "message",
        "message_id": msg.message_id,
        "conversation_id": msg.conversation_id,
        "sender_id": msg.sender_id,
        "server_ts": to_rfc3339(msg.server_ts),
        "payload": payload,
    }


def receipt_event(
    kind: str, conversation_id: str, actor_user_id: str, message_id: str, ts: datetime
) -> Dict[str, Any]:
    return {
        "type": f"{kind}_up_to",
        "conversation_id": conversation_id,
        "actor_user_id": actor_user_id,
        f"last_{kind}_message_id": message_id,
        "ts": to_rfc3339(ts),
    }


def conversation_updated_event(
    msg: chat_model.Message,
    preview: str,
    unread_count: Optional[int] = None,
    last_message_status: Optional[str] = None,
) -> Dict[str, Any]:
    event: Dict[str, Any] = {
        "conversation_id": msg.conversation_id,
        "action": "updated",
        "last_message_at": to_rfc3339(msg.server_ts),
        "last_message_preview": preview,
        "last_message_sender_id": msg.sender_id,
    }
    if unread_count is not None:
        event["unread_count"] = unread_count
    if last_message_status is not None:
        event["last_message_status"] = last_message_status
    return event


def messages_read_event(
    conversation_id: str, reader_id: str, read_at: datetime, unread_count: int
) -> Dict[str, Any]:
    return {
        "conversation_id": conversation_id,
        "action": "messages_read",
        "read_by": reader_id,
        "read_at": to_rfc3339(read_at),
        "unread_count": unread_count,
    }


@dataclass
class OutboundEvent:
    conversation_id: str
    topic: str
    payload: Dict[str, Any]

    @property
    def family(self) -> str:
        return self.topic.rsplit("/", 1)[-1]


class FanoutDispatcher:
    def __init__(
        self,
        broker: BasePubSub,
        topics: Topics,
        lanes: int = 4,
        ready_timeout: float = 2.0,
        options: PublishOptions = DEFAULT_PUBLISH_OPTIONS,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.broker = broker
        self.topics = topics
        self._lane_count = max(1, int(lanes))
        self._ready_timeout = ready_timeout
        self._options = options
        self._log = log or logger
        self._lanes: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []
        self._broker_down = False

    def start(self) -> None:
        if self._workers:
            return
        self._lanes = [asyncio.Queue() for _ in range(self._lane_count)]
        self._workers = [
            asyncio.create_task(self._drain(q), name=f"fanout-lane-{i}")
            for i, q in enumerate(self._lanes)
        ]

    async def stop(self, timeout: float = 5.0) -> None:
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self.flush(), timeout=timeout)
        except asyncio.TimeoutError:
            self._log.warning("fan-out stopped with undelivered events")
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._lanes = []

    async def flush(self) -> None:
        await asyncio.gather(*(q.join() for q in self._lanes))

    def emit(self, conversation_id: str, topic: str, payload: Dict[str, Any]) -> None:
        self.start()
        lane = zlib.crc32(conversation_id.encode("utf-8")) % self._lane_count
        self._lanes[lane].put_nowait(OutboundEvent(conversation_id, topic, payload))
        FANOUT_BACKLOG.inc()

    # ---- typed helpers, one per topic family ----

    def emit_message(self, msg: chat_model.Message, user_ids: Iterable[str]) -> None:
        event = message_event(msg)
        for uid in user_ids:
            self.emit(msg.conversation_id, self.topics.messages(uid), event)

    def emit_receipt(
        self,
        kind: str,
        conversation_id: str,
        actor_user_id: str,
        message_id: str,
        ts: datetime,
        user_ids: Iterable[str],
    ) -> None:
        event = receipt_event(kind, conversation_id, actor_user_id, message_id, ts)
        for uid in user_ids:
            self.emit(conversation_id, self.topics.receipts(uid), event)

    def emit_conversation(self, conversation_id: str, user_id: str, event: Dict[str, Any]) -> None:
        self.emit(conversation_id, self.topics.conversations(user_id), event)

    async def _drain(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                await self._publish(event)
            finally:
                FANOUT_BACKLOG.dec()
                queue.task_done()

    async def _broker_ready(self) -> bool:
        if self.broker.connected:
            self._broker_down = False
            return True
        # 本次中断已经等满过一次超时，后续事件不再排队等待
        if self._broker_down:
            return False
        if await self.broker.wait_until_ready(self._ready_timeout):
            return True
        self._broker_down = True
        return False

    async def _publish(self, event: OutboundEvent) -> None:
        if not await self._broker_ready():
            self._log.warning(
                "broker not ready (%s), dropping %s event for %s",
                self.broker.state.value,
                event.family,
                event.topic,
            )
            PUBLISHES.labels(family=event.family, outcome="not_ready").inc()
            return
        try:
            await self.broker.publish(event.topic, event.payload, self._options)
        except Exception:
            self._log.exception("publish to %s failed", event.topic)
            PUBLISHES.labels(family=event.family, outcome="error").inc()
            return
        PUBLISHES.labels(family=event.family, outcome="ok").inc()
