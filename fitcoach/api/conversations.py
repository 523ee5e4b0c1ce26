import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fitcoach.api.auth import get_current_user
from fitcoach.db.models import Conversation, Message, User, dump_json_field, load_json_field
from fitcoach.db.session import get_db

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/coach/conversations", tags=["coach"])

MAX_USER_MESSAGE_CHARS = 8000
MAX_ASSISTANT_MESSAGE_CHARS = 20000


class ConversationNotFoundError(LookupError):
    pass


class ConversationItem(BaseModel):
    id: int
    message_count: int
    created_at: str


class ConversationListResponse(BaseModel):
    items: list[ConversationItem]


class MessageItem(BaseModel):
    id: int
    role: str
    content: str
    metadata: Optional[dict[str, Any]] = None
    created_at: str


class ConversationMessagesResponse(BaseModel):
    conversation_id: int
    messages: list[MessageItem]


def _coerce_id(conversation_id: Union[int, str]) -> int:
    try:
        return int(str(conversation_id).strip())
    except ValueError as exc:
        raise ConversationNotFoundError(str(conversation_id)) from exc


def find_conversation(db: Session, user_id: int, conversation_id: Union[int, str]) -> Conversation:
    conv_id = _coerce_id(conversation_id)
    conversation = (
        db.query(Conversation)
        .filter(Conversation.id == conv_id, Conversation.user_id == user_id)
        .first()
    )
    if conversation is None:
        raise ConversationNotFoundError(str(conversation_id))
    return conversation


def get_or_create_conversation(
    db: Session, *, user_id: int, conversation_id: Optional[Union[int, str]]
) -> Optional[Conversation]:
    """Owned conversation for the id, or a new one. None only when the insert fails."""
    if conversation_id is not None:
        return find_conversation(db, user_id, conversation_id)
    conversation = Conversation(user_id=user_id, created_at=datetime.now(timezone.utc))
    try:
        db.add(conversation)
        db.commit()
        db.refresh(conversation)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("coach_conversation_create_failed user_id=%s", user_id)
        return None
    return conversation


def persist_coach_turn(
    db: Session,
    *,
    user_id: int,
    conversation: Conversation,
    user_text: str,
    assistant_text: str,
    metadata: Optional[dict[str, Any]] = None,
) -> bool:
    now = datetime.now(timezone.utc)
    user_msg = Message(
        conversation_id=conversation.id,
        user_id=user_id,
        role="user",
        content=user_text[:MAX_USER_MESSAGE_CHARS],
        created_at=now,
    )
    assistant_msg = Message(
        conversation_id=conversation.id,
        user_id=user_id,
        role="assistant",
        content=assistant_text[:MAX_ASSISTANT_MESSAGE_CHARS],
        metadata_json=dump_json_field(metadata),
        created_at=now,
    )
    try:
        db.add(user_msg)
        db.flush()
        db.add(assistant_msg)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("coach_turn_persist_failed user_id=%s conversation_id=%s", user_id, conversation.id)
        return False
    return True


@router.get("", response_model=ConversationListResponse)
def list_conversations(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationListResponse:
    rows = (
        db.query(
            Conversation.id,
            Conversation.created_at,
            func.count(Message.id).label("message_count"),
        )
        .outerjoin(Message, Message.conversation_id == Conversation.id)
        .filter(Conversation.user_id == user.id)
        .group_by(Conversation.id)
        .order_by(Conversation.created_at.desc(), Conversation.id.desc())
        .all()
    )
    items = [
        ConversationItem(
            id=int(row.id),
            message_count=int(row.message_count or 0),
            created_at=row.created_at.isoformat(),
        )
        for row in rows
    ]
    return ConversationListResponse(items=items)


@router.get("/{conversation_id}/messages", response_model=ConversationMessagesResponse)
def get_conversation_messages(
    conversation_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationMessagesResponse:
    try:
        conversation = find_conversation(db, user.id, conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")

    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation.id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )
    return ConversationMessagesResponse(
        conversation_id=conversation.id,
        messages=[
            MessageItem(
                id=row.id,
                role=row.role,
                content=row.content,
                metadata=load_json_field(row.metadata_json),
                created_at=row.created_at.isoformat(),
            )
            for row in rows
        ],
    )
