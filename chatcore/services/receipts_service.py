"""Watermark receipts: monotone delivered/read positions per (conversation, user)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.errors import ChatError, Conflict, NotFound
from ..core.ids import MonotonicClock, clock as default_clock, is_ulid
from ..core.metrics import RECEIPTS_APPLIED
from ..models import chat as chat_model
from .directory import require_member
from .fanout import FanoutDispatcher, messages_read_event
from .store import ChatStore

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


def unread_count(store: ChatStore, conversation_id: str, user_id: str) -> int:
    """Messages from others after the user's read watermark.

    A watermark pointing at a missing message counts everything.
    """
    receipt = store.get_receipt(conversation_id, user_id)
    watermark = store.get_message(receipt.last_read_message_id) if receipt else None
    if watermark is not None and watermark.conversation_id == conversation_id:
        return store.count_from_others(conversation_id, user_id, after_ts=watermark.server_ts)
    return store.count_from_others(conversation_id, user_id)


class ReceiptEngine:
    def __init__(
        self,
        db: Session,
        dispatcher: FanoutDispatcher,
        clock: MonotonicClock = default_clock,
        log: Optional[logging.Logger] = None,
    ):
        self.db = db
        self.store = ChatStore(db)
        self.dispatcher = dispatcher
        self.clock = clock
        self._log = log or logger

    async def submit_delivered(
        self,
        conversation_id: str,
        actor_user_id: str,
        last_delivered_message_id: str,
        client_ts: Optional[datetime] = None,
    ) -> bool:
        return await self._submit(
            "delivered", conversation_id, actor_user_id, last_delivered_message_id, client_ts
        )

    async def submit_read(
        self,
        conversation_id: str,
        actor_user_id: str,
        last_read_message_id: str,
        client_ts: Optional[datetime] = None,
    ) -> bool:
        return await self._submit(
            "read", conversation_id, actor_user_id, last_read_message_id, client_ts
        )

    async def _submit(
        self,
        kind: str,
        conversation_id: str,
        actor_user_id: str,
        message_id: str,
        client_ts: Optional[datetime],
    ) -> bool:
        if client_ts is not None:
            self._log.debug(
                "%s receipt from %s carries client ts %s", kind, actor_user_id, client_ts
            )
        try:
            conversation, at = self._apply(kind, conversation_id, actor_user_id, message_id)
        except ChatError as e:
            self._log.warning(
                "dropping %s receipt %s/%s -> %s: %s",
                kind, conversation_id, actor_user_id, message_id, e.message,
            )
            RECEIPTS_APPLIED.labels(kind=kind, outcome="rejected").inc()
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            self._log.error(
                "store error applying %s receipt %s/%s: %s", kind, conversation_id, actor_user_id, e
            )
            RECEIPTS_APPLIED.labels(kind=kind, outcome="error").inc()
            return False

        if at is None:
            RECEIPTS_APPLIED.labels(kind=kind, outcome="stale").inc()
            return False
        RECEIPTS_APPLIED.labels(kind=kind, outcome="advanced").inc()

        peers = [uid for uid in conversation.participant_ids if uid != actor_user_id]
        self.dispatcher.emit_receipt(kind, conversation_id, actor_user_id, message_id, at, peers)
        if kind == "read":
            self.dispatcher.emit_conversation(
                conversation_id,
                actor_user_id,
                messages_read_event(
                    conversation_id,
                    actor_user_id,
                    at,
                    unread_count(self.store, conversation_id, actor_user_id),
                ),
            )
        return True

    def _apply(
        self, kind: str, conversation_id: str, user_id: str, message_id: str
    ) -> Tuple[chat_model.Conversation, Optional[datetime]]:
        """Advance the watermark; returns the write time, or None when not advanced."""
        conversation = require_member(self.store.get_conversation(conversation_id), user_id)
        target = self.store.get_message(message_id)
        if target is None or target.conversation_id != conversation_id:
            raise NotFound(f"message {message_id} not in conversation")

        for _ in range(MAX_CAS_ATTEMPTS):
            at = self.clock.now()
            receipt = self.store.get_receipt(conversation_id, user_id)
            if receipt is None:
                try:
                    self.store.insert_watermark(conversation_id, user_id, kind, message_id, at)
                except Conflict:
                    continue
                return conversation, at

            current = getattr(receipt, f"last_{kind}_message_id")
            if not self._should_advance(current, target):
                self._log.debug(
                    "%s watermark %s/%s stays at %s (proposed %s)",
                    kind, conversation_id, user_id, current, message_id,
                )
                return conversation, None
            if self.store.compare_and_set_watermark(
                conversation_id, user_id, kind, current, message_id, at
            ):
                return conversation, at
            # 并发写入，重新读取后再判断

        self._log.warning(
            "%s watermark %s/%s contended, giving up after %d attempts",
            kind, conversation_id, user_id, MAX_CAS_ATTEMPTS,
        )
        return conversation, None

    def _should_advance(self, current_id: Optional[str], target: chat_model.Message) -> bool:
        proposed_id = target.message_id
        if current_id is None:
            return True
        if current_id == proposed_id:
            return False
        if is_ulid(current_id) and is_ulid(proposed_id):
            return proposed_id > current_id
        current = self.store.get_message(current_id)
        if current is None:
            return True
        if target.server_ts != current.server_ts:
            return target.server_ts > current.server_ts
        return proposed_id > current_id

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        return unread_count(self.store, conversation_id, user_id)

    # ---- REST entry points: membership errors are raised, not swallowed ----

    async def mark_as_read(
        self,
        conversation_id: str,
        user_id: str,
        last_read_message_id: Optional[str] = None,
    ) -> chat_model.MarkReadResponse:
        require_member(self.store.get_conversation(conversation_id), user_id)
        if last_read_message_id:
            target = self._message_in(conversation_id, last_read_message_id)
        else:
            target = self.store.latest_message(conversation_id)

        advanced = False
        if target is not None:
            advanced = await self.submit_read(conversation_id, user_id, target.message_id)

        receipt = self.store.get_receipt(conversation_id, user_id)
        return chat_model.MarkReadResponse(
            advanced=advanced,
            last_read_message_id=receipt.last_read_message_id if receipt else None,
            unread_count=self.unread_count(conversation_id, user_id),
        )

    async def mark_as_delivered(
        self, conversation_id: str, user_id: str, last_delivered_message_id: str
    ) -> chat_model.MarkDeliveredResponse:
        require_member(self.store.get_conversation(conversation_id), user_id)
        target = self._message_in(conversation_id, last_delivered_message_id)
        advanced = await self.submit_delivered(conversation_id, user_id, target.message_id)
        receipt = self.store.get_receipt(conversation_id, user_id)
        return chat_model.MarkDeliveredResponse(
            advanced=advanced,
            last_delivered_message_id=receipt.last_delivered_message_id if receipt else None,
        )

    def _message_in(self, conversation_id: str, message_id: str) -> chat_model.Message:
        msg = self.store.get_message(message_id)
        if msg is None or msg.conversation_id != conversation_id:
            raise NotFound(f"message {message_id} not found in conversation")
        return msg


async def auto_mark_as_read(
    receipts: ReceiptEngine,
    conversation_id: str,
    user_id: str,
    newest: Optional[chat_model.Message],
) -> bool:
    """Advance the read watermark to the newest message the user just opened.

    Called when a chat is opened: from the first history page and from
    ``ensure_conversation``. Never from paginated reads.
    """
    if newest is None:
        return False
    return await receipts.submit_read(conversation_id, user_id, newest.message_id)
