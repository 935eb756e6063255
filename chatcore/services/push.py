"""
Push bridge.

Forwards new-message events to an external push gateway. Ingestion never
waits on it: every send runs as a background task and a failed send is only
logged and counted.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Optional

import httpx

from ..core.events import spawn
from ..core.metrics import PUSHES
from ..models import chat as chat_model

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New message"


@dataclass
class PushNotification:
    """One notification addressed to one user."""

    user_id: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


class PushSink(ABC):
    """Abstract base class for push gateways."""

    @abstractmethod
    async def send(self, notification: PushNotification) -> None:
        """
        Deliver one notification.

        Raises on failure; the bridge logs it.
        """
        ...

    async def aclose(self) -> None:
        return None


class NoopPushSink(PushSink):
    async def send(self, notification: PushNotification) -> None:
        logger.debug("push to %s skipped (no sink configured)", notification.user_id)


class WebhookPushSink(PushSink):
    """
    POSTs each notification as JSON to a webhook.

    The gateway behind the URL owns device tokens and platform fan-out.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, notification: PushNotification) -> None:
        response = await self._client.post(self.url, json=asdict(notification))
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


def create_push_sink(settings) -> PushSink:
    if settings.PUSH_WEBHOOK_URL:
        return WebhookPushSink(settings.PUSH_WEBHOOK_URL, timeout=settings.PUSH_TIMEOUT_SEC)
    return NoopPushSink()


class PushBridge:
    def __init__(self, sink: PushSink, log: Optional[logging.Logger] = None):
        self.sink = sink
        self._log = log or logger

    def notify_new_message(
        self,
        message: chat_model.Message,
        recipients: Iterable[str],
        preview: str,
        sender_name: Optional[str] = None,
    ) -> None:
        data = {
            "type": "message",
            "conversation_id": message.conversation_id,
            "message_id": message.message_id,
            "sender_id": message.sender_id,
        }
        for user_id in recipients:
            notification = PushNotification(
                user_id=user_id,
                title=sender_name or DEFAULT_TITLE,
                body=preview,
                data=dict(data),
            )
            spawn(self._send(notification), name=f"push-{message.message_id}-{user_id}")

    async def _send(self, notification: PushNotification) -> None:
        try:
            await self.sink.send(notification)
        except Exception as e:
            self._log.error("push to %s failed: %s", notification.user_id, e)
            PUSHES.labels(outcome="error").inc()
            return
        PUSHES.labels(outcome="ok").inc()

    async def close(self) -> None:
        await self.sink.aclose()
