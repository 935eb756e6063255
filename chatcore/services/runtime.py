"""Composition root.

Builds the process-wide pieces once (broker handle, fan-out dispatcher, push
bridge, clock, id generator) and the per-session engines on demand. Nothing
is looked up globally: settings and logger are passed in.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.events import drain_background
from ..core.ids import MonotonicClock, UlidGenerator, clock as default_clock, ulid_generator
from ..core.pubsub import BasePubSub, create_pubsub
from .conversation_service import ConversationService
from .directory import Directory
from .fanout import FanoutDispatcher, Topics
from .message_service import MessageEngine
from .push import PushBridge, PushSink, create_push_sink
from .receipt_subscriber import ReceiptIngressSubscriber
from .receipts_service import ReceiptEngine

logger = logging.getLogger(__name__)


class ChatRuntime:
    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[], Session],
        broker: Optional[BasePubSub] = None,
        push_sink: Optional[PushSink] = None,
        clock: MonotonicClock = default_clock,
        ids: UlidGenerator = ulid_generator,
        log: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock
        self.ids = ids
        self.log = log or logger
        # engines fall back to their own module loggers
        self._engine_log = log
        self.broker = broker or create_pubsub(settings, log=log)
        self.topics = Topics(settings.TOPIC_PREFIX, settings.RECEIPTS_INGRESS_TOPIC)
        self.dispatcher = FanoutDispatcher(
            self.broker,
            self.topics,
            lanes=settings.FANOUT_LANES,
            ready_timeout=settings.PUBLISH_READY_TIMEOUT_SEC,
            log=log,
        )
        self.push = PushBridge(push_sink or create_push_sink(settings), log=log)
        self.subscriber = ReceiptIngressSubscriber(
            self.broker,
            self.topics.ingress,
            session_factory,
            self.receipt_engine,
            log=log,
        )

    # ---- per-session engines ----

    def receipt_engine(self, db: Session) -> ReceiptEngine:
        return ReceiptEngine(db, self.dispatcher, clock=self.clock, log=self._engine_log)

    def message_engine(self, db: Session) -> MessageEngine:
        return MessageEngine(
            db,
            self.dispatcher,
            self.push,
            receipts=self.receipt_engine(db),
            clock=self.clock,
            ids=self.ids,
            log=self._engine_log,
        )

    def conversation_service(self, db: Session) -> ConversationService:
        return ConversationService(
            db,
            self.receipt_engine(db),
            default_limit=self.settings.HISTORY_DEFAULT_LIMIT,
            max_limit=self.settings.HISTORY_MAX_LIMIT,
            log=self._engine_log,
        )

    def directory(self, db: Session) -> Directory:
        return Directory(db)

    # ---- lifecycle ----

    async def start(self) -> None:
        self.dispatcher.start()
        await self.broker.connect(self.settings.BROKER_CONNECT_TIMEOUT_SEC)
        await self.subscriber.start()
        self.log.info(
            "chat runtime started (broker=%s, lanes=%d)",
            type(self.broker).__name__,
            self.settings.FANOUT_LANES,
        )

    async def stop(self) -> None:
        await self.dispatcher.stop()
        await drain_background()
        await self.push.close()
        await self.broker.close()
        self.log.info("chat runtime stopped")
