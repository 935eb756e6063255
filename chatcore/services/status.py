"""Per-message status derived from conversation watermarks.

``derive`` is pure: it sees the message, the conversation's participants and
each member's watermarks already resolved to ``server_ts``. ``StatusResolver``
does the resolving against the store and memoizes only for the lifetime of
one request, since receipts change out-of-band.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from ..models import chat as chat_model
from .store import ChatStore


@dataclass(frozen=True)
class Watermark:
    user_id: str
    delivered_ts: Optional[datetime] = None
    read_ts: Optional[datetime] = None

    def covers_read(self, ts: datetime) -> bool:
        return self.read_ts is not None and self.read_ts >= ts

    def covers_delivered(self, ts: datetime) -> bool:
        # read implies delivered even if the delivered watermark lags
        if self.covers_read(ts):
            return True
        return self.delivered_ts is not None and self.delivered_ts >= ts


def resolve_watermarks(
    receipts: Iterable[chat_model.ConversationReceipt],
    timestamps: Mapping[str, datetime],
) -> Dict[str, Watermark]:
    """A watermark pointing at a missing message covers nothing."""
    return {
        r.user_id: Watermark(
            user_id=r.user_id,
            delivered_ts=timestamps.get(r.last_delivered_message_id or ""),
            read_ts=timestamps.get(r.last_read_message_id or ""),
        )
        for r in receipts
    }


def derive(
    message: chat_model.Message,
    conversation: chat_model.Conversation,
    watermarks: Mapping[str, Watermark],
) -> chat_model.StatusReport:
    others = [uid for uid in conversation.participant_ids if uid != message.sender_id]
    ts = message.server_ts

    if conversation.type == "direct":
        if not others:
            return chat_model.StatusReport(status="sent")
        mark = watermarks.get(others[0])
        if mark is not None and mark.covers_read(ts):
            return chat_model.StatusReport(status="read")
        if mark is not None and mark.covers_delivered(ts):
            return chat_model.StatusReport(status="delivered")
        return chat_model.StatusReport(status="sent")

    n = len(others)
    read_count = 0
    delivered_count = 0
    for uid in others:
        mark = watermarks.get(uid)
        if mark is None:
            continue
        if mark.covers_read(ts):
            read_count += 1
        if mark.covers_delivered(ts):
            delivered_count += 1

    if n > 0 and read_count == n:
        status = "read"
    elif delivered_count > 0:
        status = "delivered"
    else:
        status = "sent"
    return chat_model.StatusReport(
        status=status,
        delivered_count=delivered_count,
        read_count=read_count,
        member_count_excluding_sender=n,
        is_fully_delivered=delivered_count == n,
        is_fully_read=read_count == n,
    )


class StatusResolver:
    def __init__(self, store: ChatStore) -> None:
        self._store = store
        self._cache: Dict[str, Dict[str, Watermark]] = {}

    def watermarks(self, conversation_id: str) -> Dict[str, Watermark]:
        cached = self._cache.get(conversation_id)
        if cached is None:
            receipts = self._store.list_receipts(conversation_id)
            timestamps = self._store.message_timestamps(
                mid
                for r in receipts
                for mid in (r.last_delivered_message_id, r.last_read_message_id)
            )
            cached = resolve_watermarks(receipts, timestamps)
            self._cache[conversation_id] = cached
        return cached

    def report(
        self, message: chat_model.Message, conversation: chat_model.Conversation
    ) -> chat_model.StatusReport:
        return derive(message, conversation, self.watermarks(conversation.conversation_id))
