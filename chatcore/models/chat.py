import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, List, Literal, Optional

from pydantic import BaseModel, Field, PlainSerializer, field_validator, model_validator
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..core.ids import to_rfc3339, utcnow
from .base import Base

MESSAGE_TYPES = ("text", "image", "video", "file", "voice", "system")
MessageStatus = Literal["sent", "delivered", "read"]
MEDIA_PREVIEW = "[Media]"


class Conversation(Base):
    __tablename__ = "conversations"
    conversation_id = Column(
        String(64), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    type = Column(
        Enum("direct", "group", name="conversation_type"),
        nullable=False,
        default="direct",
    )
    name = Column(String, nullable=True)
    # "<a>:<b>" over the sorted pair for direct chats, NULL for groups
    direct_key = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_message_at = Column(DateTime, nullable=True, index=True)
    last_message_preview = Column(String, nullable=True)
    last_message_sender_id = Column(String, nullable=True)
    last_message_id = Column(String(64), nullable=True)

    members = relationship(
        "ConversationMember",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationMember.user_id",
        lazy="selectin",
    )

    @property
    def participant_ids(self) -> List[str]:
        return sorted(m.user_id for m in self.members)

    def has_member(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and any(m.user_id == user_id for m in self.members)


class ConversationMember(Base):
    __tablename__ = "conversation_members"
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(
        String(64),
        ForeignKey("conversations.conversation_id"),
        nullable=False,
        index=True,
    )
    user_id = Column(String, nullable=False, index=True)
    role = Column(
        Enum("owner", "member", name="conversation_member_role"),
        nullable=False,
        default="member",
    )
    joined_at = Column(DateTime, default=utcnow, nullable=False)

    conversation = relationship("Conversation", back_populates="members")

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_member_conv_user"),
    )


class Message(Base):
    __tablename__ = "messages"
    message_id = Column(String(64), primary_key=True)
    conversation_id = Column(
        String(64),
        ForeignKey("conversations.conversation_id"),
        nullable=False,
        index=True,
    )
    sender_id = Column(String, nullable=False, index=True)
    server_ts = Column(DateTime, nullable=False)
    type = Column(Enum(*MESSAGE_TYPES, name="message_type"), nullable=False)
    text = Column(Text, nullable=True)
    media = Column(JSON, nullable=True)
    reply_to_message_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_messages_conv_ts", "conversation_id", "server_ts"),
        Index("idx_messages_sender_ts", "sender_id", "server_ts"),
    )


class ConversationReceipt(Base):
    """Per (conversation, user) delivered/read watermark.

    ``last_read_message_id = X`` asserts the user has read every message of
    the conversation up to and including X.
    """

    __tablename__ = "receipts"
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(
        String(64),
        ForeignKey("conversations.conversation_id"),
        nullable=False,
        index=True,
    )
    user_id = Column(String, nullable=False, index=True)
    last_delivered_message_id = Column(String(64), nullable=True)
    last_delivered_at = Column(DateTime, nullable=True)
    last_read_message_id = Column(String(64), nullable=True)
    last_read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_receipt_conv_user"),
    )


class UserBlock(Base):
    __tablename__ = "user_blocks"
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    blocker_id = Column(String, nullable=False, index=True)
    blocked_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("blocker_id", "blocked_id", name="uq_block_pair"),
    )


class Contact(Base):
    __tablename__ = "contacts"
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, nullable=False, index=True)
    contact_user_id = Column(String, nullable=False)
    contact_name = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("owner_id", "contact_user_id", name="uq_contact_pair"),
    )


class UserProfile(Base):
    __tablename__ = "user_profiles"
    user_id = Column(String, primary_key=True)
    username = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)


# ---- wire models ----

UtcDatetime = Annotated[datetime, PlainSerializer(to_rfc3339, return_type=str)]


class MediaPayload(BaseModel):
    url: str
    type: str
    size: Optional[int] = None
    file_name: Optional[str] = None
    thumb_url: Optional[str] = None


class MessagePayload(BaseModel):
    type: str = Field("text", pattern="^(text|image|video|file|voice|system)$")
    text: Optional[str] = None
    media: Optional[MediaPayload] = None
    reply_to_message_id: Optional[str] = None


class MessageCreateRequest(MessagePayload):
    conversation_id: str
    client_message_id: Optional[str] = Field(None, min_length=1, max_length=64)


class DirectMessageRequest(MessagePayload):
    client_message_id: Optional[str] = Field(None, min_length=1, max_length=64)


class EnsureConversationRequest(BaseModel):
    recipient_id: str = Field(..., min_length=1)


class GroupCreateRequest(BaseModel):
    member_ids: List[str] = Field(..., min_length=1)
    name: Optional[str] = None


class MarkReadRequest(BaseModel):
    last_read_message_id: Optional[str] = None


class MarkDeliveredRequest(BaseModel):
    last_delivered_message_id: str


class MarkReadResponse(BaseModel):
    advanced: bool
    last_read_message_id: Optional[str] = None
    unread_count: int


class MarkDeliveredResponse(BaseModel):
    advanced: bool
    last_delivered_message_id: Optional[str] = None


class SystemMessageRequest(BaseModel):
    conversation_id: str
    author_id: str
    text: str = Field(..., min_length=1)


class PrivateCommentRequest(BaseModel):
    post_id: str
    post_owner_id: str
    commenter_id: str
    text: str = Field(..., min_length=1)


class ReceiptIngressEvent(BaseModel):
    type: Literal["delivered_up_to", "read_up_to"]
    conversation_id: str = Field(..., min_length=1)
    actor_user_id: str = Field(..., min_length=1)
    last_delivered_message_id: Optional[str] = None
    last_read_message_id: Optional[str] = None
    ts: Optional[datetime] = None

    @field_validator("ts")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def _watermark_present(self) -> "ReceiptIngressEvent":
        if self.type == "delivered_up_to" and not self.last_delivered_message_id:
            raise ValueError("delivered_up_to requires last_delivered_message_id")
        if self.type == "read_up_to" and not self.last_read_message_id:
            raise ValueError("read_up_to requires last_read_message_id")
        return self

    @property
    def watermark_message_id(self) -> str:
        if self.type == "delivered_up_to":
            return self.last_delivered_message_id  # type: ignore[return-value]
        return self.last_read_message_id  # type: ignore[return-value]


class StatusReport(BaseModel):
    status: MessageStatus
    delivered_count: Optional[int] = None
    read_count: Optional[int] = None
    member_count_excluding_sender: Optional[int] = None
    is_fully_delivered: Optional[bool] = None
    is_fully_read: Optional[bool] = None


class MessageOut(BaseModel):
    message_id: str
    conversation_id: str
    sender_id: str
    type: str
    text: Optional[str] = None
    media: Optional[Any] = None
    reply_to_message_id: Optional[str] = None
    server_ts: UtcDatetime
    status: Optional[MessageStatus] = None
    delivered_count: Optional[int] = None
    read_count: Optional[int] = None
    member_count_excluding_sender: Optional[int] = None
    is_fully_delivered: Optional[bool] = None
    is_fully_read: Optional[bool] = None

    class Config:
        from_attributes = True

    @classmethod
    def build(cls, msg: Message, report: Optional[StatusReport] = None) -> "MessageOut":
        out = cls.model_validate(msg)
        if report is not None:
            out = out.model_copy(update=report.model_dump(exclude_none=True))
        return out


class MessagePage(BaseModel):
    conversation_id: str
    messages: List[MessageOut]
    next_cursor: Optional[str] = None
    has_more: bool = False


class ContactCard(BaseModel):
    id: str
    name: Optional[str] = None
    contact_name: Optional[str] = None
    full_name: Optional[str] = None
    username: Optional[str] = None
    avatar_url: Optional[str] = None


class Relationship(BaseModel):
    is_contact: bool
    i_blocked_them: bool
    they_blocked_me: bool
    can_message: bool


class BlockStatus(BaseModel):
    i_blocked: bool
    they_blocked: bool
    can_message: bool


class ConversationRow(BaseModel):
    conversation_id: str
    type: str
    name: Optional[str] = None
    participant_ids: List[str]
    contact: Optional[ContactCard] = None
    last_message_preview: Optional[str] = None
    last_message_at: Optional[UtcDatetime] = None
    last_message_sender_id: Optional[str] = None
    last_message_id: Optional[str] = None
    last_message_status: Optional[MessageStatus] = None
    unread_count: Optional[int] = None
    relationship: Optional[Relationship] = None


class ConversationListResponse(BaseModel):
    conversations: List[ConversationRow]


class ConversationView(BaseModel):
    conversation_id: str
    is_group: bool
    participants: List[ContactCard]
    last_message: Optional[MessageOut] = None
