from fastapi import APIRouter, BackgroundTasks, Depends, Response, status
from sqlalchemy.orm import Session

from core.db import get_db
from models import User
from routers.dependencies import get_current_user

from . import lifecycle
from .schemas import CreateDialogRequest

router = APIRouter(prefix="/dialogs", tags=["Dialogs"])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_dialog(
    request: CreateDialogRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Open a dialog with another user. Returns the existing one (200) if present."""
    result = lifecycle.create_dialog(
        db,
        current_user=current_user,
        other_user_id=request.user_id,
        background_tasks=background_tasks,
    )
    if not result["created"]:
        response.status_code = status.HTTP_200_OK
    return result
