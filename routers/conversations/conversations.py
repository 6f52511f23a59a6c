from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from models import User
from routers.dependencies import get_current_user

from . import aggregator, lifecycle, pins, read_state
from .schemas import MuteRequest, ReadStateRequest

router = APIRouter(prefix="/conversations", tags=["Conversations"])


@router.get("")
def list_conversations(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Every conversation of the caller, most recent activity first."""
    return {"conversations": aggregator.get_conversation_list(db, user_id=current_user.account_id)}


@router.get("/{conversation_id}")
def get_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return aggregator.get_conversation_detail(
        db, conversation_id=conversation_id, user_id=current_user.account_id
    )


@router.get("/{conversation_id}/participants")
def list_participants(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Roster with admin/member roles."""
    return {
        "participants": aggregator.list_participants(
            db, conversation_id=conversation_id, user_id=current_user.account_id
        )
    }


@router.post("/{conversation_id}/read-state")
def update_read_state(
    conversation_id: str,
    request: ReadStateRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Mark every message read (is_read=true) or unread (is_read=false)."""
    return read_state.set_read_state(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        is_read=request.is_read,
        background_tasks=background_tasks,
    )


@router.post("/{conversation_id}/mute")
def update_mute(
    conversation_id: str,
    request: MuteRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return read_state.set_muted(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        is_muted=request.is_muted,
        background_tasks=background_tasks,
    )


@router.post("/{conversation_id}/leave")
def leave_conversation(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Leave a group, or delete a dialog for both sides."""
    return lifecycle.leave_conversation(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        background_tasks=background_tasks,
    )


@router.get("/{conversation_id}/pins")
def list_pins(
    conversation_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return {
        "pinned_message_ids": pins.list_pins(
            db, current_user=current_user, conversation_id=conversation_id
        )
    }


@router.post("/{conversation_id}/messages/{message_id}/pin")
def toggle_pin(
    conversation_id: str,
    message_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Pin the message, or unpin it when it is already pinned."""
    return pins.toggle_pin(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        message_id=message_id,
        background_tasks=background_tasks,
    )
