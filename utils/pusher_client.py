"""Broadcast collaborator backed by Pusher Channels.

Every event goes to a user's private channel: ``send_to_user`` for one user and
``send_to_users`` for a conversation's roster, batched per trigger call. Both are
best-effort: failures are logged and reported as ``False``, never raised.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

import pusher

from core.config import (
    PUSHER_APP_ID,
    PUSHER_CLUSTER,
    PUSHER_ENABLED,
    PUSHER_KEY,
    PUSHER_SECRET,
)

logger = logging.getLogger(__name__)

# Pusher accepts at most this many channels per trigger
MAX_CHANNELS_PER_TRIGGER = 100

_pusher_client: Optional[pusher.Pusher] = None


def user_channel(user_id) -> str:
    return f"private-user-{user_id}"


def get_pusher_client() -> Optional[pusher.Pusher]:
    """Get or create Pusher client instance"""
    global _pusher_client

    if not PUSHER_ENABLED:
        return None

    if _pusher_client is None:
        if not all([PUSHER_APP_ID, PUSHER_KEY, PUSHER_SECRET]):
            logger.warning("Pusher credentials not fully configured")
            return None
        try:
            _pusher_client = pusher.Pusher(
                app_id=PUSHER_APP_ID,
                key=PUSHER_KEY,
                secret=PUSHER_SECRET,
                cluster=PUSHER_CLUSTER,
                ssl=True,
            )
            logger.info("Pusher client initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Pusher: {e}")
            return None

    return _pusher_client


def publish_sync(channel: Union[str, List[str]], event: str, data: Dict[str, Any]) -> bool:
    """
    Trigger ``event`` on ``channel`` (one name or a list of names).
    Called from background tasks and the queue worker, so blocking is fine.
    """
    client = get_pusher_client()
    if not client:
        logger.debug("Pusher not available, event %s on %s not published", event, channel)
        return False

    try:
        client.trigger(channel, event, data)
        return True
    except Exception as e:
        logger.error(f"Failed to publish {event} to Pusher channel {channel}: {e}")
        return False


def send_to_user(user_id, event: str, data: Dict[str, Any]) -> bool:
    return publish_sync(user_channel(user_id), event, data)


def send_to_users(user_ids: Iterable, event: str, data: Dict[str, Any]) -> bool:
    channels = [user_channel(uid) for uid in user_ids]
    ok = True
    for start in range(0, len(channels), MAX_CHANNELS_PER_TRIGGER):
        ok = publish_sync(channels[start:start + MAX_CHANNELS_PER_TRIGGER], event, data) and ok
    return ok
