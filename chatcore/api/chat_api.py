from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from chatcore.core.auth import require_user_id
from chatcore.core.database import get_db
from chatcore.models import chat as chat_model
from chatcore.services.runtime import ChatRuntime


router = APIRouter()


def get_runtime(request: Request) -> ChatRuntime:
    return request.app.state.runtime


@router.post("/conversations/ensure", response_model=chat_model.ConversationView)
async def ensure_conversation(
    req: chat_model.EnsureConversationRequest,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """打开（或创建）与某人的单聊，并将已有消息标记为已读"""
    return await runtime.message_engine(db).ensure_conversation(user_id, req.recipient_id)


@router.post(
    "/conversations",
    response_model=chat_model.ConversationView,
    status_code=status.HTTP_201_CREATED,
)
def create_group(
    req: chat_model.GroupCreateRequest,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return runtime.message_engine(db).create_group(user_id, req.member_ids, req.name)


@router.get("/conversations", response_model=chat_model.ConversationListResponse)
def list_conversations(
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return runtime.conversation_service(db).list_conversations(user_id)


@router.post("/messages", response_model=chat_model.MessageOut)
async def create_message(
    req: chat_model.MessageCreateRequest,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    msg = await runtime.message_engine(db).ingest_message(
        req.conversation_id, user_id, req, client_message_id=req.client_message_id
    )
    return chat_model.MessageOut.build(msg)


@router.post("/users/{recipient_id}/messages", response_model=chat_model.MessageOut)
async def send_to_user(
    recipient_id: str,
    req: chat_model.DirectMessageRequest,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    msg = await runtime.message_engine(db).send_to_user(
        user_id, recipient_id, req, client_message_id=req.client_message_id
    )
    return chat_model.MessageOut.build(msg)


@router.get(
    "/conversations/{conversation_id}/messages", response_model=chat_model.MessagePage
)
async def list_messages(
    conversation_id: str,
    limit: Optional[int] = Query(None),
    before: Optional[str] = Query(None),
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """历史消息；不带 before 的首页会自动标记已读"""
    return await runtime.conversation_service(db).read_messages(
        conversation_id, user_id, limit=limit, before_message_id=before
    )


@router.post(
    "/conversations/{conversation_id}/read", response_model=chat_model.MarkReadResponse
)
async def mark_read(
    conversation_id: str,
    req: Optional[chat_model.MarkReadRequest] = None,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return await runtime.receipt_engine(db).mark_as_read(
        conversation_id, user_id, req.last_read_message_id if req else None
    )


@router.post(
    "/conversations/{conversation_id}/delivered",
    response_model=chat_model.MarkDeliveredResponse,
)
async def mark_delivered(
    conversation_id: str,
    req: chat_model.MarkDeliveredRequest,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return await runtime.receipt_engine(db).mark_as_delivered(
        conversation_id, user_id, req.last_delivered_message_id
    )


@router.get("/messages/{message_id}/status", response_model=chat_model.StatusReport)
def message_status(
    message_id: str,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return runtime.conversation_service(db).message_status(message_id, user_id)


@router.post("/blocks/{blocked_id}", status_code=status.HTTP_204_NO_CONTENT)
def block_user(
    blocked_id: str,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    runtime.directory(db).block(user_id, blocked_id)


@router.delete("/blocks/{blocked_id}", status_code=status.HTTP_204_NO_CONTENT)
def unblock_user(
    blocked_id: str,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    runtime.directory(db).unblock(user_id, blocked_id)


@router.get("/blocks/{other_id}", response_model=chat_model.BlockStatus)
def block_status(
    other_id: str,
    user_id: str = Depends(require_user_id),
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    return runtime.directory(db).block_status(user_id, other_id)
