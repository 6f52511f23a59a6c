"""Pin toggle for messages inside a conversation."""

import logging

from core.db import atomic
from utils.logging_helpers import log_info

from . import fanout, repository

logger = logging.getLogger(__name__)


def list_pins(db, *, current_user, conversation_id) -> list:
    conversation_id = repository.parse_uuid(conversation_id)
    repository.require_participant(db, conversation_id=conversation_id, user_id=current_user.account_id)
    pins = repository.list_pinned_message_ids(db, conversation_ids=[conversation_id])[conversation_id]
    return [str(mid) for mid in pins]


def toggle_pin(db, *, current_user, conversation_id, message_id, background_tasks=None) -> dict:
    """Unpin when a pin exists for the message, pin otherwise.

    Returns the resulting pin list, most recently pinned first.
    """
    conversation_id = repository.parse_uuid(conversation_id)
    message_id = repository.parse_uuid(message_id, label="message")
    user_id = current_user.account_id

    with atomic(db, action="toggle pin"):
        # The conversation lock makes concurrent toggles on one message take turns
        repository.lock_conversation(db, conversation_id=conversation_id)
        repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)
        repository.get_message_in_conversation(db, conversation_id=conversation_id, message_id=message_id)

        pin = repository.get_pin(db, conversation_id=conversation_id, message_id=message_id)
        if pin:
            repository.delete_pin(db, pin)
            pinned = False
        else:
            repository.insert_pin(db, conversation_id=conversation_id, message_id=message_id, pinned_by=user_id)
            pinned = True

    pinned_ids = [
        str(mid)
        for mid in repository.list_pinned_message_ids(db, conversation_ids=[conversation_id])[conversation_id]
    ]
    log_info(
        logger,
        "Message pinned" if pinned else "Message unpinned",
        user_id=user_id,
        conversation_id=conversation_id,
        message_id=message_id,
    )
    fanout.dispatch(fanout.pins_deliveries(conversation_id, pinned_ids), background_tasks)
    return {
        "conversation_id": str(conversation_id),
        "message_id": str(message_id),
        "is_pinned": pinned,
        "pinned_message_ids": pinned_ids,
    }
