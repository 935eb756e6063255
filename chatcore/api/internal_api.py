"""服务间调用入口（X-API-Key）"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chatcore.api.chat_api import get_runtime
from chatcore.core.database import get_db
from chatcore.core.security import APIKeyAuth
from chatcore.models import chat as chat_model
from chatcore.services.runtime import ChatRuntime


router = APIRouter(dependencies=[Depends(APIKeyAuth())])


@router.post("/system-messages", response_model=chat_model.MessageOut)
async def inject_system_message(
    req: chat_model.SystemMessageRequest,
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    msg = await runtime.message_engine(db).inject_system_message(
        req.conversation_id, req.author_id, req.text
    )
    return chat_model.MessageOut.build(msg)


@router.post("/private-comments", response_model=chat_model.MessageOut)
async def private_comment_created(
    req: chat_model.PrivateCommentRequest,
    runtime: ChatRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    msg = await runtime.message_engine(db).on_private_comment_created(
        req.post_id, req.post_owner_id, req.commenter_id, req.text
    )
    return chat_model.MessageOut.build(msg)
