"""Membership/Block oracle plus profile and contact lookups."""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import Forbidden, InvalidArgument, NotFound
from ..models import chat as chat_model


class Directory:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ---- blocks ----

    def is_blocked(self, blocker_id: str, blocked_id: str) -> bool:
        return (
            self.db.query(chat_model.UserBlock.id)
            .filter(
                chat_model.UserBlock.blocker_id == blocker_id,
                chat_model.UserBlock.blocked_id == blocked_id,
            )
            .first()
            is not None
        )

    def block_status(self, user_id: str, other_id: str) -> chat_model.BlockStatus:
        i_blocked = self.is_blocked(user_id, other_id)
        they_blocked = self.is_blocked(other_id, user_id)
        return chat_model.BlockStatus(
            i_blocked=i_blocked,
            they_blocked=they_blocked,
            can_message=not i_blocked and not they_blocked,
        )

    def can_message(self, sender_id: str, recipient_id: str) -> bool:
        return self.block_status(sender_id, recipient_id).can_message

    def block(self, blocker_id: str, blocked_id: str) -> None:
        if blocker_id == blocked_id:
            raise InvalidArgument("cannot block yourself")
        if self.is_blocked(blocker_id, blocked_id):
            return
        self.db.add(chat_model.UserBlock(blocker_id=blocker_id, blocked_id=blocked_id))
        try:
            self.db.commit()
        except IntegrityError:
            # 并发重复 block，幂等
            self.db.rollback()

    def unblock(self, blocker_id: str, blocked_id: str) -> None:
        (
            self.db.query(chat_model.UserBlock)
            .filter(
                chat_model.UserBlock.blocker_id == blocker_id,
                chat_model.UserBlock.blocked_id == blocked_id,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()

    # ---- profiles / contacts ----

    def profiles(self, user_ids: Iterable[str]) -> Dict[str, chat_model.UserProfile]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        rows = (
            self.db.query(chat_model.UserProfile)
            .filter(chat_model.UserProfile.user_id.in_(ids))
            .all()
        )
        return {p.user_id: p for p in rows}

    def contacts_of(self, owner_id: str) -> Dict[str, chat_model.Contact]:
        rows = (
            self.db.query(chat_model.Contact)
            .filter(chat_model.Contact.owner_id == owner_id)
            .all()
        )
        return {c.contact_user_id: c for c in rows}

    def contact_card(
        self,
        user_id: str,
        profiles: Dict[str, chat_model.UserProfile],
        contacts: Dict[str, chat_model.Contact],
    ) -> chat_model.ContactCard:
        profile = profiles.get(user_id)
        contact = contacts.get(user_id)
        contact_name = contact.contact_name if contact else None
        full_name = profile.full_name if profile else None
        username = profile.username if profile else None
        return chat_model.ContactCard(
            id=user_id,
            # 显示名优先级：备注名 -> 全名 -> 用户名
            name=contact_name or full_name or username,
            contact_name=contact_name,
            full_name=full_name,
            username=username,
            avatar_url=profile.avatar_url if profile else None,
        )


def require_member(
    conversation: Optional[chat_model.Conversation], user_id: str
) -> chat_model.Conversation:
    if conversation is None:
        raise NotFound("conversation not found")
    if not conversation.has_member(user_id):
        raise Forbidden("not a participant of this conversation")
    return conversation
