from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import Conflict, InvalidArgument
from ..models import chat as chat_model

WATERMARK_KINDS = ("delivered", "read")


def direct_key(user_a: str, user_b: str) -> str:
    a, b = sorted([user_a, user_b])
    return f"{a}:{b}"


class ChatStore:
    """Queries and single-row atomic writes over conversations, messages and receipts.

    Every write commits on its own. Unique-constraint collisions are rolled
    back and surfaced as ``Conflict`` so callers can re-read the winner.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---- conversations ----

    def get_conversation(self, conversation_id: str) -> Optional[chat_model.Conversation]:
        return (
            self.db.query(chat_model.Conversation)
            .filter(chat_model.Conversation.conversation_id == conversation_id)
            .first()
        )

    def find_direct(self, user_a: str, user_b: str) -> Optional[chat_model.Conversation]:
        return (
            self.db.query(chat_model.Conversation)
            .filter(
                chat_model.Conversation.type == "direct",
                chat_model.Conversation.direct_key == direct_key(user_a, user_b),
            )
            .first()
        )

    def create_direct(self, user_a: str, user_b: str) -> chat_model.Conversation:
        participants = sorted([user_a, user_b])
        conversation = chat_model.Conversation(
            type="direct",
            direct_key=direct_key(user_a, user_b),
            members=[chat_model.ConversationMember(user_id=uid) for uid in participants],
        )
        return self._insert_conversation(conversation)

    def create_group(
        self, creator_id: str, member_ids: Iterable[str], name: Optional[str] = None
    ) -> chat_model.Conversation:
        ordered = list(dict.fromkeys([creator_id, *member_ids]))
        if len(ordered) < 2:
            raise InvalidArgument("a group needs at least two participants")
        conversation = chat_model.Conversation(
            type="group",
            name=name,
            members=[
                chat_model.ConversationMember(
                    user_id=uid, role="owner" if i == 0 else "member"
                )
                for i, uid in enumerate(ordered)
            ],
        )
        return self._insert_conversation(conversation)

    def _insert_conversation(
        self, conversation: chat_model.Conversation
    ) -> chat_model.Conversation:
        self.db.add(conversation)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise Conflict("conversation already exists") from e
        self.db.refresh(conversation)
        return conversation

    def list_conversations_for(self, user_id: str) -> List[chat_model.Conversation]:
        return (
            self.db.query(chat_model.Conversation)
            .join(
                chat_model.ConversationMember,
                chat_model.Conversation.conversation_id
                == chat_model.ConversationMember.conversation_id,
            )
            .filter(chat_model.ConversationMember.user_id == user_id)
            .order_by(
                chat_model.Conversation.last_message_at.desc().nulls_last(),
                chat_model.Conversation.created_at.desc(),
            )
            .all()
        )

    def touch_last_message(
        self, conversation_id: str, message: chat_model.Message, preview: str
    ) -> None:
        # 只前进：并发写入时旧消息不能覆盖新消息的缓存
        conv = chat_model.Conversation
        self.db.execute(
            update(conv)
            .where(
                conv.conversation_id == conversation_id,
                (conv.last_message_at.is_(None)) | (conv.last_message_at <= message.server_ts),
            )
            .values(
                last_message_at=message.server_ts,
                last_message_preview=preview,
                last_message_sender_id=message.sender_id,
                last_message_id=message.message_id,
                updated_at=message.server_ts,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    # ---- messages ----

    def get_message(self, message_id: Optional[str]) -> Optional[chat_model.Message]:
        if not message_id:
            return None
        return (
            self.db.query(chat_model.Message)
            .filter(chat_model.Message.message_id == message_id)
            .first()
        )

    def insert_message(self, message: chat_model.Message) -> chat_model.Message:
        self.db.add(message)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise Conflict(f"message {message.message_id} already exists") from e
        self.db.refresh(message)
        return message

    def latest_message(self, conversation_id: str) -> Optional[chat_model.Message]:
        return (
            self.db.query(chat_model.Message)
            .filter(chat_model.Message.conversation_id == conversation_id)
            .order_by(
                chat_model.Message.server_ts.desc(), chat_model.Message.message_id.desc()
            )
            .first()
        )

    def list_messages(
        self,
        conversation_id: str,
        limit: int,
        before_ts: Optional[datetime] = None,
    ) -> List[chat_model.Message]:
        q = self.db.query(chat_model.Message).filter(
            chat_model.Message.conversation_id == conversation_id
        )
        if before_ts is not None:
            q = q.filter(chat_model.Message.server_ts < before_ts)
        return (
            q.order_by(
                chat_model.Message.server_ts.desc(), chat_model.Message.message_id.desc()
            )
            .limit(limit)
            .all()
        )

    def count_from_others(
        self, conversation_id: str, user_id: str, after_ts: Optional[datetime] = None
    ) -> int:
        q = self.db.query(func.count(chat_model.Message.message_id)).filter(
            chat_model.Message.conversation_id == conversation_id,
            chat_model.Message.sender_id != user_id,
        )
        if after_ts is not None:
            q = q.filter(chat_model.Message.server_ts > after_ts)
        return int(q.scalar() or 0)

    def message_timestamps(self, message_ids: Iterable[Optional[str]]) -> Dict[str, datetime]:
        ids = sorted({mid for mid in message_ids if mid})
        if not ids:
            return {}
        rows = (
            self.db.query(chat_model.Message.message_id, chat_model.Message.server_ts)
            .filter(chat_model.Message.message_id.in_(ids))
            .all()
        )
        return {mid: ts for mid, ts in rows}

    # ---- receipts ----

    def get_receipt(
        self, conversation_id: str, user_id: str
    ) -> Optional[chat_model.ConversationReceipt]:
        return (
            self.db.query(chat_model.ConversationReceipt)
            .filter(
                chat_model.ConversationReceipt.conversation_id == conversation_id,
                chat_model.ConversationReceipt.user_id == user_id,
            )
            .first()
        )

    def list_receipts(self, conversation_id: str) -> List[chat_model.ConversationReceipt]:
        return (
            self.db.query(chat_model.ConversationReceipt)
            .filter(chat_model.ConversationReceipt.conversation_id == conversation_id)
            .all()
        )

    def insert_watermark(
        self, conversation_id: str, user_id: str, kind: str, message_id: str, at: datetime
    ) -> None:
        """Create the receipt row carrying its first watermark."""
        _check_kind(kind)
        receipt = chat_model.ConversationReceipt(
            conversation_id=conversation_id,
            user_id=user_id,
            created_at=at,
            updated_at=at,
            **{f"last_{kind}_message_id": message_id, f"last_{kind}_at": at},
        )
        self.db.add(receipt)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise Conflict("receipt already exists") from e

    def compare_and_set_watermark(
        self,
        conversation_id: str,
        user_id: str,
        kind: str,
        expected: Optional[str],
        message_id: str,
        at: datetime,
    ) -> bool:
        """Move the watermark only if it still equals ``expected``."""
        _check_kind(kind)
        receipt = chat_model.ConversationReceipt
        column = getattr(receipt, f"last_{kind}_message_id")
        guard = column.is_(None) if expected is None else column == expected
        result = self.db.execute(
            update(receipt)
            .where(
                receipt.conversation_id == conversation_id,
                receipt.user_id == user_id,
                guard,
            )
            .values(
                **{
                    f"last_{kind}_message_id": message_id,
                    f"last_{kind}_at": at,
                    "updated_at": at,
                }
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1


def _check_kind(kind: str) -> None:
    if kind not in WATERMARK_KINDS:
        raise ValueError(f"unknown watermark kind: {kind}")

