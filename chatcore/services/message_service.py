from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ..core.errors import Conflict, Forbidden, InvalidArgument
from ..core.ids import MonotonicClock, UlidGenerator, clock as default_clock, ulid_generator
from ..core.metrics import MESSAGES_DEDUPLICATED, MESSAGES_INGESTED
from ..models import chat as chat_model
from .directory import Directory, require_member
from .fanout import FanoutDispatcher, conversation_updated_event
from .push import PushBridge
from .receipts_service import ReceiptEngine, auto_mark_as_read
from .status import StatusResolver
from .store import ChatStore

logger = logging.getLogger(__name__)

PREVIEW_MAX_LEN = 200


def build_preview(msg: chat_model.Message) -> str:
    text = msg.text or chat_model.MEDIA_PREVIEW
    return text[:PREVIEW_MAX_LEN]


class MessageEngine:
    """Message ingestion and conversation bootstrap.

    A new message is committed first; fan-out and push are handed off
    afterwards and never block or fail the caller. Idempotency rests on the
    primary key of ``messages``: a retried ``client_message_id`` returns the
    stored message with no side effects.
    """

    def __init__(
        self,
        db: Session,
        dispatcher: FanoutDispatcher,
        push: PushBridge,
        receipts: Optional[ReceiptEngine] = None,
        clock: MonotonicClock = default_clock,
        ids: UlidGenerator = ulid_generator,
        log: Optional[logging.Logger] = None,
    ):
        self.db = db
        self.store = ChatStore(db)
        self.directory = Directory(db)
        self.dispatcher = dispatcher
        self.push = push
        self.clock = clock
        self.ids = ids
        self._log = log or logger
        self.receipts = receipts or ReceiptEngine(db, dispatcher, clock=clock, log=log)

    # ---- ingestion ----

    async def ingest_message(
        self,
        conversation_id: str,
        sender_id: str,
        payload: chat_model.MessagePayload,
        client_message_id: Optional[str] = None,
        check_blocks: bool = True,
    ) -> chat_model.Message:
        conversation = require_member(self.store.get_conversation(conversation_id), sender_id)

        # 重试时直接返回已存储的消息，不再校验本次的 payload
        if client_message_id:
            existing = self.store.get_message(client_message_id)
            if existing is not None:
                MESSAGES_DEDUPLICATED.inc()
                return self._same_origin(existing, conversation_id, sender_id)

        if payload.type not in chat_model.MESSAGE_TYPES:
            raise InvalidArgument(f"unsupported message type: {payload.type}")
        text = payload.text.strip() if payload.text else None
        text = text or None
        if text is None and payload.media is None:
            raise InvalidArgument("message needs text or media")

        message_id = client_message_id or self.ids.new()

        if check_blocks and conversation.type == "direct":
            peer = next(uid for uid in conversation.participant_ids if uid != sender_id)
            if not self.directory.can_message(sender_id, peer):
                self._log.warning("message from %s to %s blocked", sender_id, peer)
                raise Forbidden("cannot send message due to block status")

        msg = chat_model.Message(
            message_id=message_id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            server_ts=self.clock.now(),
            type=payload.type,
            text=text,
            media=payload.media.model_dump(exclude_none=True) if payload.media else None,
            reply_to_message_id=payload.reply_to_message_id,
        )
        try:
            msg = self.store.insert_message(msg)
        except Conflict:
            winner = self.store.get_message(message_id)
            if winner is None:
                raise
            MESSAGES_DEDUPLICATED.inc()
            return self._same_origin(winner, conversation_id, sender_id)

        MESSAGES_INGESTED.labels(type=msg.type).inc()
        self._log.info(
            "message %s stored in %s by %s", msg.message_id, conversation_id, sender_id
        )

        preview = build_preview(msg)
        self.store.touch_last_message(conversation_id, msg, preview)
        self._fan_out(conversation, msg, preview)

        recipients = [uid for uid in conversation.participant_ids if uid != sender_id]
        self.push.notify_new_message(msg, recipients, preview, self._display_name(sender_id))
        return msg

    @staticmethod
    def _same_origin(
        msg: chat_model.Message, conversation_id: str, sender_id: str
    ) -> chat_model.Message:
        if msg.conversation_id != conversation_id or msg.sender_id != sender_id:
            raise InvalidArgument("message_id already used")
        return msg

    def _fan_out(
        self, conversation: chat_model.Conversation, msg: chat_model.Message, preview: str
    ) -> None:
        # 顺序：消息 -> 接收方会话列表 -> 发送方会话列表
        participants = conversation.participant_ids
        self.dispatcher.emit_message(msg, participants)
        for uid in participants:
            if uid == msg.sender_id:
                continue
            self.dispatcher.emit_conversation(
                msg.conversation_id,
                uid,
                conversation_updated_event(
                    msg, preview, unread_count=self.receipts.unread_count(msg.conversation_id, uid)
                ),
            )
        status = StatusResolver(self.store).report(msg, conversation).status
        self.dispatcher.emit_conversation(
            msg.conversation_id,
            msg.sender_id,
            conversation_updated_event(msg, preview, last_message_status=status),
        )

    def _display_name(self, user_id: str) -> Optional[str]:
        profile = self.directory.profiles([user_id]).get(user_id)
        if profile is None:
            return None
        return profile.full_name or profile.username

    # ---- conversations ----

    def get_or_create_direct(self, user_id: str, recipient_id: str) -> chat_model.Conversation:
        if user_id == recipient_id:
            raise InvalidArgument("cannot start a conversation with yourself")
        conversation = self.store.find_direct(user_id, recipient_id)
        if conversation is not None:
            return conversation
        try:
            conversation = self.store.create_direct(user_id, recipient_id)
            self._log.info("created direct conversation %s", conversation.conversation_id)
            return conversation
        except Conflict:
            # 并发创建，读取胜出的那一条
            conversation = self.store.find_direct(user_id, recipient_id)
            if conversation is None:
                raise
            return conversation

    async def ensure_conversation(
        self, user_id: str, recipient_id: str
    ) -> chat_model.ConversationView:
        conversation = self.get_or_create_direct(user_id, recipient_id)
        latest = self.store.latest_message(conversation.conversation_id)
        await auto_mark_as_read(self.receipts, conversation.conversation_id, user_id, latest)
        return self.conversation_view(conversation, user_id, latest)

    def conversation_view(
        self,
        conversation: chat_model.Conversation,
        user_id: str,
        latest: Optional[chat_model.Message],
    ) -> chat_model.ConversationView:
        ids = conversation.participant_ids
        profiles = self.directory.profiles(ids)
        contacts = self.directory.contacts_of(user_id)
        last_message = None
        if latest is not None:
            report = None
            if latest.sender_id == user_id:
                report = StatusResolver(self.store).report(latest, conversation)
            last_message = chat_model.MessageOut.build(latest, report)
        return chat_model.ConversationView(
            conversation_id=conversation.conversation_id,
            is_group=conversation.type == "group",
            participants=[self.directory.contact_card(uid, profiles, contacts) for uid in ids],
            last_message=last_message,
        )

    def create_group(
        self, creator_id: str, member_ids: Iterable[str], name: Optional[str] = None
    ) -> chat_model.ConversationView:
        conversation = self.store.create_group(creator_id, member_ids, name)
        self._log.info(
            "created group %s with %d members",
            conversation.conversation_id,
            len(conversation.members),
        )
        return self.conversation_view(conversation, creator_id, None)

    async def send_to_user(
        self,
        sender_id: str,
        recipient_id: str,
        payload: chat_model.MessagePayload,
        client_message_id: Optional[str] = None,
    ) -> chat_model.Message:
        """Legacy path: address a user, the direct conversation is created on first use."""
        conversation = self.get_or_create_direct(sender_id, recipient_id)
        return await self.ingest_message(
            conversation.conversation_id, sender_id, payload, client_message_id
        )

    # ---- hooks for other services ----

    async def inject_system_message(
        self, conversation_id: str, author_id: str, text: str
    ) -> chat_model.Message:
        return await self.ingest_message(
            conversation_id,
            author_id,
            chat_model.MessagePayload(type="system", text=text),
            check_blocks=False,
        )

    async def on_private_comment_created(
        self, post_id: str, post_owner_id: str, commenter_id: str, text: str
    ) -> chat_model.Message:
        conversation = self.get_or_create_direct(commenter_id, post_owner_id)
        return await self.ingest_message(
            conversation.conversation_id,
            commenter_id,
            chat_model.MessagePayload(type="text", text=f"Comment on post {post_id}: {text}"),
        )
