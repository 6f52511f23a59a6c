from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session

from core.config import MESSAGE_PAGE_MAX
from core.db import get_db
from models import User
from routers.dependencies import get_current_user

from . import message_service, read_state
from .schemas import EditMessageRequest, MarkMessagesReadRequest, SendMessageRequest

router = APIRouter(tags=["Messages"])


@router.get("/conversations/{conversation_id}/messages")
def list_messages(
    conversation_id: str,
    limit: int = Query(default=50, ge=1, le=MESSAGE_PAGE_MAX),
    before: Optional[str] = Query(default=None, description="Return messages older than this message id"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Page of messages, oldest first. Does not change read state."""
    return message_service.list_messages(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        limit=limit,
        before=before,
    )


@router.post("/conversations/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return message_service.send_message(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        content=request.content,
        replied_to_message_id=request.replied_to_message_id,
        forwarded_from_username=request.forwarded_from_username,
        background_tasks=background_tasks,
    )


@router.post("/conversations/{conversation_id}/messages/read")
def mark_messages_read(
    conversation_id: str,
    request: MarkMessagesReadRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Read receipts for specific messages; the rest of the room is told who read what."""
    return read_state.mark_messages_read(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        message_ids=request.message_ids,
        background_tasks=background_tasks,
    )


@router.patch("/messages/{message_id}")
def edit_message(
    message_id: str,
    request: EditMessageRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Edit your own message."""
    return message_service.edit_message(
        db,
        current_user=current_user,
        message_id=message_id,
        content=request.content,
        background_tasks=background_tasks,
    )


@router.delete("/messages/{message_id}")
def delete_message(
    message_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Delete your own message (and its pin, if any)."""
    return message_service.delete_message(
        db,
        current_user=current_user,
        message_id=message_id,
        background_tasks=background_tasks,
    )
