"""Sending, listing, editing and deleting messages in a conversation."""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, aliased

from core import config
from core.db import atomic
from core.errors import Forbidden, InvalidArgument, NotFound
from core.rate_limit import enforce_message_rate_limit
from models import Message, MessageRead, User
from utils.logging_helpers import log_info
from utils.message_sanitizer import sanitize_text

from . import aggregator, fanout, repository

logger = logging.getLogger(__name__)

REPLY_PREVIEW_LENGTH = 50


def validate_content(content) -> str:
    if not isinstance(content, str) or not content.strip():
        raise InvalidArgument("Message content must not be empty")
    content = sanitize_text(content)
    if not content:
        raise InvalidArgument("Message content must not be empty")
    if len(content) > config.MESSAGE_MAX_LENGTH:
        raise InvalidArgument(f"Message content must be at most {config.MESSAGE_MAX_LENGTH} characters")
    return content


def reply_preview(content: Optional[str]) -> Optional[str]:
    if content is None:
        return None
    if len(content) > REPLY_PREVIEW_LENGTH:
        return content[:REPLY_PREVIEW_LENGTH] + "..."
    return content


def _readers_by_message(db: Session, message_ids: List) -> Dict:
    readers = {mid: [] for mid in message_ids}
    if not message_ids:
        return readers
    rows = (
        db.query(MessageRead.message_id, MessageRead.user_id)
        .filter(MessageRead.message_id.in_(message_ids))
        .order_by(MessageRead.read_at.asc())
        .all()
    )
    for message_id, user_id in rows:
        readers[message_id].append(user_id)
    return readers


def serialize_message(message: Message, *, sender_username, reply=None, read_by=None, viewer_id=None) -> dict:
    """Wire shape of one message; ``is_unread`` is only present for a specific viewer."""
    reply_message, reply_username = reply if reply else (None, None)
    data = {
        "id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "sender_id": message.sender_id,
        "sender_username": sender_username,
        "content": message.content,
        "created_at": aggregator.isoformat(message.created_at),
        "is_edited": bool(message.is_edited),
        "edited_at": aggregator.isoformat(message.edited_at),
        "is_forwarded": bool(message.is_forwarded),
        "forwarded_from_username": message.forwarded_from_username,
        "replied_to_message_id": str(message.replied_to_message_id) if message.replied_to_message_id else None,
        "replied_to": None,
        "read_by": list(read_by or []),
    }
    if reply_message is not None:
        data["replied_to"] = {
            "id": str(reply_message.id),
            "sender_id": reply_message.sender_id,
            "sender_username": reply_username,
            "content_preview": reply_preview(reply_message.content),
        }
    if viewer_id is not None:
        data["is_unread"] = message.sender_id != viewer_id and viewer_id not in data["read_by"]
    return data


def _load_single(db: Session, message_id, viewer_id=None) -> dict:
    sender = aliased(User)
    reply = aliased(Message)
    reply_sender = aliased(User)
    row = (
        db.query(Message, sender.username, reply, reply_sender.username)
        .outerjoin(sender, sender.account_id == Message.sender_id)
        .outerjoin(reply, reply.id == Message.replied_to_message_id)
        .outerjoin(reply_sender, reply_sender.account_id == reply.sender_id)
        .filter(Message.id == message_id)
        .first()
    )
    if row is None:
        raise NotFound("Message not found")
    message, sender_username, reply_message, reply_username = row
    readers = _readers_by_message(db, [message.id])[message.id]
    return serialize_message(
        message,
        sender_username=sender_username,
        reply=(reply_message, reply_username) if reply_message is not None else None,
        read_by=readers,
        viewer_id=viewer_id,
    )


def send_message(
    db: Session,
    *,
    current_user,
    conversation_id,
    content,
    replied_to_message_id=None,
    forwarded_from_username: Optional[str] = None,
    background_tasks=None,
) -> dict:
    conversation_id = repository.parse_uuid(conversation_id)
    reply_id = None
    if replied_to_message_id is not None:
        reply_id = repository.parse_uuid(replied_to_message_id, label="message")
    content = validate_content(content)
    user_id = current_user.account_id

    enforce_message_rate_limit(user_id)

    with atomic(db, action="send message"):
        conversation = repository.lock_conversation(db, conversation_id=conversation_id)
        repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)
        if reply_id is not None:
            # Replies must point into the same conversation
            repository.get_message_in_conversation(db, conversation_id=conversation_id, message_id=reply_id)

        message = repository.insert_message(
            db,
            conversation_id=conversation_id,
            sender_id=user_id,
            content=content,
            replied_to_message_id=reply_id,
            forwarded_from_username=(forwarded_from_username or "").strip() or None,
        )
        # The sender has always seen their own message
        repository.insert_read(db, message_id=message.id, user_id=user_id)
        repository.touch_conversation(conversation)
        message_id = message.id

    log_info(logger, "Message sent", user_id=user_id, conversation_id=conversation_id, message_id=message_id)
    payload = _load_single(db, message_id)
    others = [
        uid
        for uid in repository.list_participant_user_ids(db, conversation_id=conversation_id)
        if uid != user_id
    ]
    snapshots = aggregator.read_state_snapshots(db, conversation_id=conversation_id, user_ids=others)
    fanout.dispatch(fanout.new_message_deliveries(conversation_id, payload, snapshots), background_tasks)

    # Room payload is shared by every recipient, so the sender's view is a copy
    response = dict(payload)
    response["is_unread"] = False
    return response


def list_messages(db: Session, *, current_user, conversation_id, limit: int = 50, before=None) -> dict:
    """Oldest-first page of up to ``limit`` messages older than ``before``.

    Listing never marks anything read.
    """
    conversation_id = repository.parse_uuid(conversation_id)
    if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1 or limit > config.MESSAGE_PAGE_MAX:
        raise InvalidArgument(f"limit must be between 1 and {config.MESSAGE_PAGE_MAX}")
    user_id = current_user.account_id
    repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)

    sender = aliased(User)
    reply = aliased(Message)
    reply_sender = aliased(User)
    query = (
        db.query(Message, sender.username, reply, reply_sender.username)
        .outerjoin(sender, sender.account_id == Message.sender_id)
        .outerjoin(reply, reply.id == Message.replied_to_message_id)
        .outerjoin(reply_sender, reply_sender.account_id == reply.sender_id)
        .filter(Message.conversation_id == conversation_id)
    )
    if before is not None:
        cursor_id = repository.parse_uuid(before, label="message")
        cursor = repository.get_message_in_conversation(
            db, conversation_id=conversation_id, message_id=cursor_id
        )
        query = query.filter(
            or_(
                Message.created_at < cursor.created_at,
                and_(Message.created_at == cursor.created_at, Message.id < cursor.id),
            )
        )

    rows = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit + 1).all()
    has_more = len(rows) > limit
    rows = list(reversed(rows[:limit]))

    readers = _readers_by_message(db, [row[0].id for row in rows])
    messages = [
        serialize_message(
            message,
            sender_username=sender_username,
            reply=(reply_message, reply_username) if reply_message is not None else None,
            read_by=readers[message.id],
            viewer_id=user_id,
        )
        for message, sender_username, reply_message, reply_username in rows
    ]
    return {
        "messages": messages,
        "has_more": has_more,
        "next_before": messages[0]["id"] if has_more and messages else None,
    }


def _owned_message(db: Session, *, message_id, user_id: int) -> Message:
    message = repository.get_message(db, message_id=message_id)
    if message is None:
        raise NotFound("Message not found")
    # Hide messages of conversations the caller is not part of
    repository.require_participant(db, conversation_id=message.conversation_id, user_id=user_id)
    if message.sender_id != user_id:
        raise Forbidden("Only the sender can change this message")
    return message


def edit_message(db: Session, *, current_user, message_id, content, background_tasks=None) -> dict:
    message_id = repository.parse_uuid(message_id, label="message")
    content = validate_content(content)
    user_id = current_user.account_id

    with atomic(db, action="edit message"):
        message = _owned_message(db, message_id=message_id, user_id=user_id)
        message.content = content
        message.is_edited = True
        message.edited_at = datetime.utcnow()
        conversation_id = message.conversation_id

    log_info(logger, "Message edited", user_id=user_id, conversation_id=conversation_id, message_id=message_id)
    payload = _load_single(db, message_id)
    fanout.dispatch(fanout.message_updated_deliveries(conversation_id, payload), background_tasks)
    return payload


def delete_message(db: Session, *, current_user, message_id, background_tasks=None) -> dict:
    message_id = repository.parse_uuid(message_id, label="message")
    user_id = current_user.account_id

    with atomic(db, action="delete message"):
        message = _owned_message(db, message_id=message_id, user_id=user_id)
        conversation_id = message.conversation_id
        repository.lock_conversation(db, conversation_id=conversation_id)
        was_pinned = repository.get_pin(db, conversation_id=conversation_id, message_id=message_id) is not None
        repository.delete_message(db, message)

    log_info(logger, "Message deleted", user_id=user_id, conversation_id=conversation_id, message_id=message_id)
    pinned_ids = None
    if was_pinned:
        pinned_ids = [
            str(mid)
            for mid in repository.list_pinned_message_ids(db, conversation_ids=[conversation_id])[conversation_id]
        ]
    fanout.dispatch(
        fanout.message_deleted_deliveries(conversation_id, message_id, pinned_message_ids=pinned_ids),
        background_tasks,
    )
    return {
        "conversation_id": str(conversation_id),
        "message_id": str(message_id),
        "pinned_message_ids": pinned_ids,
    }
