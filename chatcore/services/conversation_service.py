"""Read side: conversation list rows, paged history and per-message status."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..core.errors import Forbidden, InvalidArgument, NotFound
from ..models import chat as chat_model
from .directory import Directory, require_member
from .receipts_service import ReceiptEngine, auto_mark_as_read, unread_count
from .status import StatusResolver
from .store import ChatStore

logger = logging.getLogger(__name__)


class ConversationService:
    def __init__(
        self,
        db: Session,
        receipts: ReceiptEngine,
        default_limit: int = 20,
        max_limit: int = 50,
        log: Optional[logging.Logger] = None,
    ):
        self.db = db
        self.store = ChatStore(db)
        self.directory = Directory(db)
        self.receipts = receipts
        self.default_limit = default_limit
        self.max_limit = max_limit
        self._log = log or logger

    def list_conversations(self, user_id: str) -> chat_model.ConversationListResponse:
        conversations = self.store.list_conversations_for(user_id)
        peers = {
            uid
            for c in conversations
            if c.type == "direct"
            for uid in c.participant_ids
            if uid != user_id
        }
        profiles = self.directory.profiles(peers)
        contacts = self.directory.contacts_of(user_id)
        resolver = StatusResolver(self.store)

        rows = []
        for c in conversations:
            row = chat_model.ConversationRow(
                conversation_id=c.conversation_id,
                type=c.type,
                name=c.name,
                participant_ids=c.participant_ids,
                last_message_preview=c.last_message_preview,
                last_message_at=c.last_message_at,
                last_message_sender_id=c.last_message_sender_id,
                last_message_id=c.last_message_id,
            )
            if c.type == "direct":
                peer = next((uid for uid in c.participant_ids if uid != user_id), None)
                if peer is not None:
                    row.contact = self.directory.contact_card(peer, profiles, contacts)
                    if peer not in contacts:
                        blocks = self.directory.block_status(user_id, peer)
                        row.relationship = chat_model.Relationship(
                            is_contact=False,
                            i_blocked_them=blocks.i_blocked,
                            they_blocked_me=blocks.they_blocked,
                            can_message=blocks.can_message,
                        )

            if c.last_message_sender_id == user_id:
                last = self.store.get_message(c.last_message_id)
                if last is not None:
                    row.last_message_status = resolver.report(last, c).status
            elif c.last_message_sender_id is not None:
                row.unread_count = unread_count(self.store, c.conversation_id, user_id)
            rows.append(row)
        return chat_model.ConversationListResponse(conversations=rows)

    def _clamp(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.default_limit
        return max(1, min(int(limit), self.max_limit))

    async def read_messages(
        self,
        conversation_id: str,
        user_id: str,
        limit: Optional[int] = None,
        before_message_id: Optional[str] = None,
    ) -> chat_model.MessagePage:
        conversation = require_member(self.store.get_conversation(conversation_id), user_id)
        limit = self._clamp(limit)

        before_ts = None
        if before_message_id:
            cursor = self.store.get_message(before_message_id)
            if cursor is None or cursor.conversation_id != conversation_id:
                raise InvalidArgument("invalid cursor")
            before_ts = cursor.server_ts

        rows = self.store.list_messages(conversation_id, limit + 1, before_ts)
        has_more = len(rows) > limit
        rows = rows[:limit]

        resolver = StatusResolver(self.store)
        messages = [
            chat_model.MessageOut.build(
                m, resolver.report(m, conversation) if m.sender_id == user_id else None
            )
            for m in rows
        ]
        page = chat_model.MessagePage(
            conversation_id=conversation_id,
            messages=messages,
            next_cursor=rows[-1].message_id if has_more else None,
            has_more=has_more,
        )

        # 只有打开会话的第一页才自动标记已读，翻页不算
        if before_message_id is None and rows:
            await auto_mark_as_read(self.receipts, conversation_id, user_id, rows[0])
        return page

    def message_status(self, message_id: str, user_id: str) -> chat_model.StatusReport:
        msg = self.store.get_message(message_id)
        if msg is None:
            raise NotFound("message not found")
        if msg.sender_id != user_id:
            raise Forbidden("only the sender can see message status")
        conversation = self.store.get_conversation(msg.conversation_id)
        return StatusResolver(self.store).report(msg, conversation)
