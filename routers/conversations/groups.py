from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session

from core.db import get_db
from models import User
from routers.dependencies import get_current_user

from . import lifecycle
from .schemas import CreateGroupRequest, RenameGroupRequest

router = APIRouter(prefix="/groups", tags=["Groups"])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_group(
    request: CreateGroupRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Create a new group. Creator becomes admin."""
    return lifecycle.create_group(
        db,
        current_user=current_user,
        name=request.name,
        participant_ids=request.participant_ids,
        background_tasks=background_tasks,
    )


@router.patch("/{group_id}")
def rename_group(
    group_id: str,
    request: RenameGroupRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Rename the group. Admin only."""
    return lifecycle.rename_conversation(
        db,
        current_user=current_user,
        conversation_id=group_id,
        name=request.name,
        background_tasks=background_tasks,
    )
