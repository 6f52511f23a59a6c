from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from models import User
from routers.dependencies import get_current_user

from . import lifecycle
from .schemas import AddParticipantRequest

router = APIRouter(prefix="/groups", tags=["Group Members"])


@router.post("/{group_id}/participants")
def add_participant(
    group_id: str,
    request: AddParticipantRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Add a member to the group. Admin only unless GROUP_ADD_POLICY=participant."""
    return lifecycle.add_participant(
        db,
        current_user=current_user,
        conversation_id=group_id,
        user_id=request.user_id,
        background_tasks=background_tasks,
    )


@router.delete("/{group_id}/participants/{user_id}")
def remove_participant(
    group_id: str,
    user_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Remove a member from the group. Admin only; use leave for yourself."""
    return lifecycle.remove_participant(
        db,
        current_user=current_user,
        conversation_id=group_id,
        user_id=user_id,
        background_tasks=background_tasks,
    )
