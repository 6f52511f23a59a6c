"""Read/unread transitions and mute for one (user, conversation) pair.

Read state is never stored as a flag: a message is read by a user exactly when a
``message_reads`` row exists for the pair. Each transition answers with the narrow
``{conversation_id, unread_count, is_muted}`` snapshot and sends the same payload
to the acting user only.
"""

import logging
from datetime import datetime

from core import config
from core.db import atomic
from core.errors import InvalidArgument, NotFound
from utils.logging_helpers import log_info

from . import aggregator, fanout, repository

logger = logging.getLogger(__name__)


def _finish(db, *, conversation_id, user_id: int, background_tasks) -> dict:
    snapshot = aggregator.read_state_snapshot(db, conversation_id=conversation_id, user_id=user_id)
    fanout.dispatch(fanout.read_state_deliveries(user_id, snapshot), background_tasks)
    return snapshot


def mark_read(db, *, current_user, conversation_id, background_tasks=None) -> dict:
    conversation_id = repository.parse_uuid(conversation_id)
    user_id = current_user.account_id

    with atomic(db, action="mark conversation read"):
        repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)
        repository.mark_conversation_read(db, conversation_id=conversation_id, user_id=user_id)

    log_info(logger, "Conversation marked read", user_id=user_id, conversation_id=conversation_id)
    return _finish(db, conversation_id=conversation_id, user_id=user_id, background_tasks=background_tasks)


def mark_unread(db, *, current_user, conversation_id, background_tasks=None) -> dict:
    conversation_id = repository.parse_uuid(conversation_id)
    user_id = current_user.account_id

    with atomic(db, action="mark conversation unread"):
        repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)
        repository.mark_conversation_unread(db, conversation_id=conversation_id, user_id=user_id)

    log_info(logger, "Conversation marked unread", user_id=user_id, conversation_id=conversation_id)
    return _finish(db, conversation_id=conversation_id, user_id=user_id, background_tasks=background_tasks)


def set_read_state(db, *, current_user, conversation_id, is_read, background_tasks=None) -> dict:
    """Single entry point taking the target state as a boolean."""
    if not isinstance(is_read, bool):
        raise InvalidArgument("is_read must be a boolean")
    handler = mark_read if is_read else mark_unread
    return handler(
        db,
        current_user=current_user,
        conversation_id=conversation_id,
        background_tasks=background_tasks,
    )


def set_muted(db, *, current_user, conversation_id, is_muted, background_tasks=None) -> dict:
    if not isinstance(is_muted, bool):
        raise InvalidArgument("is_muted must be a boolean")
    conversation_id = repository.parse_uuid(conversation_id)
    user_id = current_user.account_id

    with atomic(db, action="update mute setting"):
        participant = repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)
        repository.set_muted(participant, is_muted)

    log_info(logger, "Conversation mute updated", user_id=user_id, conversation_id=conversation_id, is_muted=is_muted)
    return _finish(db, conversation_id=conversation_id, user_id=user_id, background_tasks=background_tasks)


def mark_messages_read(db, *, current_user, conversation_id, message_ids, background_tasks=None) -> dict:
    """Read receipts for specific messages.

    The actor gets the usual narrow snapshot; the conversation room gets a
    ``messages-read`` event so senders can update their receipts live.
    """
    conversation_id = repository.parse_uuid(conversation_id)
    if not isinstance(message_ids, (list, tuple)) or not message_ids:
        raise InvalidArgument("message_ids must be a non-empty list")
    if len(message_ids) > config.MESSAGE_PAGE_MAX:
        raise InvalidArgument(f"At most {config.MESSAGE_PAGE_MAX} message ids per request")
    ids = list(dict.fromkeys(repository.parse_uuid(mid, label="message") for mid in message_ids))
    user_id = current_user.account_id
    read_at = datetime.utcnow()

    with atomic(db, action="mark messages read"):
        repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)
        missing = repository.missing_message_ids(db, conversation_id=conversation_id, message_ids=ids)
        if missing:
            raise NotFound("Message not found", missing_message_ids=[str(mid) for mid in missing])
        repository.mark_messages_read(
            db, conversation_id=conversation_id, user_id=user_id, message_ids=ids, read_at=read_at
        )

    log_info(logger, "Messages marked read", user_id=user_id, conversation_id=conversation_id, count=len(ids))
    snapshot = aggregator.read_state_snapshot(db, conversation_id=conversation_id, user_id=user_id)
    deliveries = fanout.read_state_deliveries(user_id, snapshot) + fanout.messages_read_deliveries(
        conversation_id,
        user_id=user_id,
        message_ids=[str(mid) for mid in ids],
        read_at=aggregator.isoformat(read_at),
    )
    fanout.dispatch(deliveries, background_tasks)
    return snapshot
