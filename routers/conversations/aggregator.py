"""Conversation aggregator: per-viewer list and detail views.

Every view is assembled from a handful of set-based queries (memberships, last
message per conversation, unread counts, pins, rosters) and stitched together in
Python. Nothing here is cached: unread counts are a live recount against
``message_reads`` on every call.
"""

import logging
from collections import defaultdict
from datetime import timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from core.config import FORWARDED_PREVIEW_TEMPLATE
from core.errors import NotFound
from models import Conversation, ConversationParticipant, Message, MessageRead, User

from . import repository

logger = logging.getLogger(__name__)


def isoformat(value) -> Optional[str]:
    """ISO-8601 with an explicit offset; naive values are stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def preview_text(message: Message) -> str:
    if message.is_forwarded:
        return FORWARDED_PREVIEW_TEMPLATE.format(
            sender=message.forwarded_from_username or "", content=message.content
        )
    return message.content


def display_name(conversation: Conversation, roster: List[dict], viewer_id: int) -> Optional[str]:
    """Group name, or the username of the other side of a dialog for ``viewer_id``."""
    if conversation.is_group:
        return conversation.name
    for member in roster:
        if member["user_id"] != viewer_id:
            return member["username"]
    return None


# ---------------------------------------------------------------------------
# Set-based loaders, all keyed by conversation id
# ---------------------------------------------------------------------------

def _load_last_messages(db: Session, conversation_ids: List) -> Dict:
    if not conversation_ids:
        return {}
    ranked = (
        db.query(
            Message.id.label("message_id"),
            func.row_number()
            .over(
                partition_by=Message.conversation_id,
                order_by=[Message.created_at.desc(), Message.id.desc()],
            )
            .label("rn"),
        )
        .filter(Message.conversation_id.in_(conversation_ids))
        .subquery()
    )
    rows = (
        db.query(Message, User.username)
        .join(ranked, and_(ranked.c.message_id == Message.id, ranked.c.rn == 1))
        .outerjoin(User, User.account_id == Message.sender_id)
        .all()
    )
    return {message.conversation_id: (message, username) for message, username in rows}


def _load_unread_counts(db: Session, conversation_ids: List, viewer_ids: Optional[List[int]] = None) -> Dict:
    """``{(conversation_id, user_id): unread}`` for every membership in scope."""
    if not conversation_ids:
        return {}
    p = ConversationParticipant
    query = (
        db.query(p.conversation_id, p.user_id, func.count(Message.id))
        .join(
            Message,
            and_(
                Message.conversation_id == p.conversation_id,
                (Message.sender_id.is_(None)) | (Message.sender_id != p.user_id),
            ),
        )
        .outerjoin(
            MessageRead,
            and_(MessageRead.message_id == Message.id, MessageRead.user_id == p.user_id),
        )
        .filter(p.conversation_id.in_(conversation_ids), MessageRead.message_id.is_(None))
    )
    if viewer_ids is not None:
        query = query.filter(p.user_id.in_(viewer_ids))
    rows = query.group_by(p.conversation_id, p.user_id).all()
    return {(cid, uid): count for cid, uid, count in rows}


def _load_rosters(db: Session, conversation_ids: List) -> Dict:
    rosters = defaultdict(list)
    if not conversation_ids:
        return rosters
    rows = (
        db.query(ConversationParticipant, User)
        .join(User, User.account_id == ConversationParticipant.user_id)
        .filter(ConversationParticipant.conversation_id.in_(conversation_ids))
        .order_by(User.username.asc(), User.account_id.asc())
        .all()
    )
    for participant, user in rows:
        rosters[participant.conversation_id].append(
            {
                "user_id": user.account_id,
                "username": user.username,
                "is_online": bool(user.is_online),
                "profile_pic_url": user.profile_pic_url,
                "is_muted": bool(participant.is_muted),
                "joined_at": isoformat(participant.joined_at),
            }
        )
    return rosters


def _message_preview(message: Message, sender_username: Optional[str]) -> dict:
    return {
        "id": str(message.id),
        "content": preview_text(message),
        "sender_id": message.sender_id,
        "sender_username": sender_username,
        "created_at": isoformat(message.created_at),
        "is_forwarded": bool(message.is_forwarded),
    }


def _summary(conversation, viewer_id, *, roster, last, unread, pins, is_muted) -> dict:
    message, sender_username = last if last else (None, None)
    return {
        "id": str(conversation.id),
        "is_group": bool(conversation.is_group),
        "name": display_name(conversation, roster, viewer_id),
        "admin_id": conversation.admin_id if conversation.is_group else None,
        "created_at": isoformat(conversation.created_at),
        "last_message": _message_preview(message, sender_username) if message else None,
        "last_message_at": isoformat(message.created_at) if message else None,
        "unread_count": int(unread or 0),
        "is_muted": bool(is_muted),
        "pinned_message_ids": [str(mid) for mid in pins],
        "participants": [
            {k: member[k] for k in ("user_id", "username", "is_online", "profile_pic_url")}
            for member in roster
        ],
    }


def _sort_key(conversation, last):
    # Conversations without messages go last, newest activity first otherwise
    if last:
        return (0, -last[0].created_at.timestamp())
    created = conversation.created_at.timestamp() if conversation.created_at else 0.0
    return (1, -created)


# ---------------------------------------------------------------------------
# Public views
# ---------------------------------------------------------------------------

def get_conversation_list(db: Session, *, user_id: int) -> List[dict]:
    memberships = (
        db.query(Conversation, ConversationParticipant.is_muted)
        .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
        .filter(ConversationParticipant.user_id == user_id)
        .all()
    )
    if not memberships:
        return []

    conversation_ids = [conversation.id for conversation, _ in memberships]
    last_messages = _load_last_messages(db, conversation_ids)
    unread = _load_unread_counts(db, conversation_ids, [user_id])
    pins = repository.list_pinned_message_ids(db, conversation_ids=conversation_ids)
    rosters = _load_rosters(db, conversation_ids)

    ordered = sorted(memberships, key=lambda row: _sort_key(row[0], last_messages.get(row[0].id)))
    return [
        _summary(
            conversation,
            user_id,
            roster=rosters[conversation.id],
            last=last_messages.get(conversation.id),
            unread=unread.get((conversation.id, user_id), 0),
            pins=pins[conversation.id],
            is_muted=is_muted,
        )
        for conversation, is_muted in ordered
    ]


def get_conversation_views(db: Session, *, conversation_id, viewer_ids: Iterable[int]) -> Dict[int, dict]:
    """Detail view of one conversation for each current participant in ``viewer_ids``.

    Viewers that are no longer participants are left out of the result.
    """
    conversation = repository.get_conversation(db, conversation_id=conversation_id)
    if not conversation:
        raise NotFound("Conversation not found")

    viewer_ids = list(viewer_ids)
    rosters = _load_rosters(db, [conversation.id])
    roster = rosters[conversation.id]
    members = {member["user_id"]: member for member in roster}
    last = _load_last_messages(db, [conversation.id]).get(conversation.id)
    unread = _load_unread_counts(db, [conversation.id], viewer_ids)
    pins = repository.list_pinned_message_ids(db, conversation_ids=[conversation.id])[conversation.id]

    admin_username = None
    if conversation.is_group and conversation.admin_id in members:
        admin_username = members[conversation.admin_id]["username"]

    views = {}
    for viewer_id in viewer_ids:
        member = members.get(viewer_id)
        if member is None:
            continue
        view = _summary(
            conversation,
            viewer_id,
            roster=roster,
            last=last,
            unread=unread.get((conversation.id, viewer_id), 0),
            pins=pins,
            is_muted=member["is_muted"],
        )
        view.update(
            {
                "created_by": conversation.created_by,
                "admin_username": admin_username,
                "participant_count": len(roster),
                "updated_at": isoformat(conversation.updated_at),
            }
        )
        views[viewer_id] = view
    return views


def get_conversation_detail(db: Session, *, conversation_id, user_id: int) -> dict:
    """Single-conversation view for a participant; ``NotFound`` otherwise."""
    conversation_id = repository.parse_uuid(conversation_id)
    repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)
    views = get_conversation_views(db, conversation_id=conversation_id, viewer_ids=[user_id])
    return views[user_id]


def read_state_snapshot(db: Session, *, conversation_id, user_id: int) -> dict:
    """The narrow ``{conversation_id, unread_count, is_muted}`` payload."""
    participant = repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)
    return {
        "conversation_id": str(conversation_id),
        "unread_count": repository.count_unread(db, conversation_id=conversation_id, user_id=user_id),
        "is_muted": bool(participant.is_muted),
    }


def read_state_snapshots(db: Session, *, conversation_id, user_ids: Iterable[int]) -> Dict[int, dict]:
    """Narrow snapshots for several participants in two queries."""
    user_ids = list(user_ids)
    if not user_ids:
        return {}
    muted = dict(
        db.query(ConversationParticipant.user_id, ConversationParticipant.is_muted)
        .filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id.in_(user_ids),
        )
        .all()
    )
    unread = _load_unread_counts(db, [conversation_id], user_ids)
    return {
        uid: {
            "conversation_id": str(conversation_id),
            "unread_count": int(unread.get((conversation_id, uid), 0)),
            "is_muted": bool(is_muted),
        }
        for uid, is_muted in muted.items()
    }


def list_participants(db: Session, *, conversation_id, user_id: int) -> List[dict]:
    """Roster with each member's role, visible to participants only."""
    conversation_id = repository.parse_uuid(conversation_id)
    repository.require_participant(db, conversation_id=conversation_id, user_id=user_id)
    conversation = repository.get_conversation(db, conversation_id=conversation_id)
    roster = _load_rosters(db, [conversation_id])[conversation_id]
    return [
        {
            "user_id": member["user_id"],
            "username": member["username"],
            "is_online": member["is_online"],
            "profile_pic_url": member["profile_pic_url"],
            "joined_at": member["joined_at"],
            "role": "admin" if conversation.is_group and conversation.admin_id == member["user_id"] else "member",
        }
        for member in roster
    ]
