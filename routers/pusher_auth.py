import logging

from fastapi import APIRouter, Depends, Form

from core import config
from core.errors import Forbidden, Internal, InvalidArgument
from models import User
from routers.dependencies import get_current_user
from utils.pusher_client import get_pusher_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pusher", tags=["Pusher"])

USER_CHANNEL_PREFIX = "private-user-"


@router.post("/auth")
def pusher_auth(
    socket_id: str = Form(...),
    channel_name: str = Form(...),
    current_user: User = Depends(get_current_user),
):
    """
    Authenticate a Pusher channel subscription.

    Only private-user-{id} exists, and only that user may subscribe. Conversation
    events are published on each current member's own channel.
    """
    if not config.PUSHER_ENABLED:
        raise Forbidden("Pusher is not enabled")

    if not channel_name.startswith(USER_CHANNEL_PREFIX):
        raise InvalidArgument("Unknown channel type")
    suffix = channel_name[len(USER_CHANNEL_PREFIX):]
    if not suffix.isdigit():
        raise InvalidArgument("Invalid channel name format")
    if int(suffix) != current_user.account_id:
        raise Forbidden("Not authorized for this channel")

    pusher_client = get_pusher_client()
    if not pusher_client:
        raise Internal("Pusher client not available")
    logger.debug("Authorized %s for user %s", channel_name, current_user.account_id)
    return pusher_client.authenticate(channel=channel_name, socket_id=socket_id)
