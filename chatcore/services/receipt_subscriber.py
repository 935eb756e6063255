from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.metrics import RECEIPT_INGRESS
from ..core.pubsub import BasePubSub
from ..models import chat as chat_model
from .receipts_service import ReceiptEngine

logger = logging.getLogger(__name__)


def decode_event(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise ValueError("receipt payload must be a JSON object")
    return raw


class ReceiptIngressSubscriber:
    """Applies delivered/read watermarks published by clients on the ingress topic.

    The handler never raises: a malformed or rejected event is logged and
    dropped so the broker listener keeps running.
    """

    def __init__(
        self,
        broker: BasePubSub,
        topic: str,
        session_factory: Callable[[], Session],
        engine_factory: Callable[[Session], ReceiptEngine],
        log: Optional[logging.Logger] = None,
    ):
        self.broker = broker
        self.topic = topic
        self.session_factory = session_factory
        self.engine_factory = engine_factory
        self._log = log or logger

    async def start(self) -> None:
        await self.broker.subscribe(self.topic, self.handle)

    async def stop(self) -> None:
        await self.broker.unsubscribe(self.topic)

    async def handle(self, raw: Any) -> None:
        try:
            event = chat_model.ReceiptIngressEvent.model_validate(decode_event(raw))
        except (ValueError, ValidationError) as e:
            self._log.warning("malformed receipt event dropped: %s", e)
            RECEIPT_INGRESS.labels(outcome="malformed").inc()
            return

        db = self.session_factory()
        try:
            engine = self.engine_factory(db)
            if event.type == "delivered_up_to":
                advanced = await engine.submit_delivered(
                    event.conversation_id,
                    event.actor_user_id,
                    event.watermark_message_id,
                    client_ts=event.ts,
                )
            else:
                advanced = await engine.submit_read(
                    event.conversation_id,
                    event.actor_user_id,
                    event.watermark_message_id,
                    client_ts=event.ts,
                )
        except SQLAlchemyError as e:
            self._log.error("receipt event for %s failed: %s", event.conversation_id, e)
            RECEIPT_INGRESS.labels(outcome="error").inc()
            return
        finally:
            db.close()
        RECEIPT_INGRESS.labels(outcome="applied" if advanced else "ignored").inc()
