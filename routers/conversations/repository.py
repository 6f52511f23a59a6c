"""Participation store: queries and primitives over the conversation tables.

Read helpers are safe to call anywhere. Mutating helpers only stage changes on
the session; callers run them inside ``core.db.atomic`` so a multi-step
operation commits or rolls back as one unit.
"""

import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import BigInteger, DateTime, and_, exists, func, insert, literal, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from core.errors import AlreadyMember, InvalidArgument, NotFound
from models import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageRead,
    PinnedMessage,
)


def parse_uuid(value, *, label: str = "conversation") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid {label} ID format")


def sent_by_other(user_id: int):
    """Messages whose sender is not ``user_id`` (a deleted sender counts as other)."""
    return or_(Message.sender_id.is_(None), Message.sender_id != user_id)


def not_read_by(user_id):
    return ~exists().where(
        and_(MessageRead.message_id == Message.id, MessageRead.user_id == user_id)
    )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def get_conversation(db: Session, *, conversation_id) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def lock_conversation(db: Session, *, conversation_id) -> Conversation:
    """Load the conversation row ``FOR UPDATE`` so roster changes serialize on it."""
    conversation = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id)
        .with_for_update()
        .first()
    )
    if not conversation:
        raise NotFound("Conversation not found")
    return conversation


def find_dialog_between(db: Session, *, user_a: int, user_b: int) -> Optional[Conversation]:
    """Return the dialog whose roster is exactly ``{user_a, user_b}``, if any."""
    pa = aliased(ConversationParticipant)
    pb = aliased(ConversationParticipant)
    roster_size = (
        select(func.count(ConversationParticipant.id))
        .where(ConversationParticipant.conversation_id == Conversation.id)
        .scalar_subquery()
    )
    return (
        db.query(Conversation)
        .join(pa, and_(pa.conversation_id == Conversation.id, pa.user_id == user_a))
        .join(pb, and_(pb.conversation_id == Conversation.id, pb.user_id == user_b))
        .filter(Conversation.is_group.is_(False), roster_size == 2)
        .order_by(Conversation.created_at.asc())
        .first()
    )


def create_conversation(
    db: Session,
    *,
    is_group: bool,
    created_by: int,
    participant_ids: List[int],
    name: Optional[str] = None,
    admin_id: Optional[int] = None,
) -> Conversation:
    """Stage a conversation plus one participant row per id, in the given order."""
    now = datetime.utcnow()
    conversation = Conversation(
        id=uuid.uuid4(),
        is_group=is_group,
        name=name,
        admin_id=admin_id,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    db.flush()
    for user_id in participant_ids:
        db.add(
            ConversationParticipant(
                conversation_id=conversation.id, user_id=user_id, joined_at=now
            )
        )
        # One flush per row keeps participant ids in join order
        db.flush()
    return conversation


def delete_conversation(db: Session, conversation: Conversation) -> None:
    db.delete(conversation)
    db.flush()


def touch_conversation(conversation: Conversation) -> None:
    conversation.updated_at = datetime.utcnow()


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------

def get_participant(db: Session, *, conversation_id, user_id: int) -> Optional[ConversationParticipant]:
    return (
        db.query(ConversationParticipant)
        .filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
        .first()
    )


def require_participant(db: Session, *, conversation_id, user_id: int) -> ConversationParticipant:
    """Non-members get the same answer as a missing conversation."""
    participant = get_participant(db, conversation_id=conversation_id, user_id=user_id)
    if not participant:
        raise NotFound("Conversation not found")
    return participant


def list_participants(db: Session, *, conversation_id) -> List[ConversationParticipant]:
    """Roster in join order (earliest first, participant id breaks ties)."""
    return (
        db.query(ConversationParticipant)
        .filter(ConversationParticipant.conversation_id == conversation_id)
        .order_by(ConversationParticipant.joined_at.asc(), ConversationParticipant.id.asc())
        .all()
    )


def list_participant_user_ids(db: Session, *, conversation_id) -> List[int]:
    return [p.user_id for p in list_participants(db, conversation_id=conversation_id)]


def count_participants(db: Session, *, conversation_id) -> int:
    return (
        db.query(func.count(ConversationParticipant.id))
        .filter(ConversationParticipant.conversation_id == conversation_id)
        .scalar()
        or 0
    )


def earliest_participant(db: Session, *, conversation_id) -> Optional[ConversationParticipant]:
    return (
        db.query(ConversationParticipant)
        .filter(ConversationParticipant.conversation_id == conversation_id)
        .order_by(ConversationParticipant.joined_at.asc(), ConversationParticipant.id.asc())
        .first()
    )


def insert_participant(db: Session, *, conversation_id, user_id: int) -> ConversationParticipant:
    participant = ConversationParticipant(
        conversation_id=conversation_id, user_id=user_id, joined_at=datetime.utcnow()
    )
    db.add(participant)
    try:
        db.flush()
    except IntegrityError:
        # Caller's atomic() rolls the session back
        raise AlreadyMember(user_id)
    return participant


def delete_participant(db: Session, participant: ConversationParticipant) -> None:
    db.delete(participant)
    db.flush()


def set_muted(participant: ConversationParticipant, is_muted: bool) -> None:
    participant.is_muted = bool(is_muted)


# ---------------------------------------------------------------------------
# Messages and reads
# ---------------------------------------------------------------------------

def get_message(db: Session, *, message_id) -> Optional[Message]:
    return db.query(Message).filter(Message.id == message_id).first()


def get_message_in_conversation(db: Session, *, conversation_id, message_id) -> Message:
    message = (
        db.query(Message)
        .filter(Message.id == message_id, Message.conversation_id == conversation_id)
        .first()
    )
    if not message:
        raise NotFound("Message not found")
    return message


def insert_message(
    db: Session,
    *,
    conversation_id,
    sender_id: int,
    content: str,
    replied_to_message_id=None,
    forwarded_from_username: Optional[str] = None,
) -> Message:
    message = Message(
        id=uuid.uuid4(),
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        created_at=datetime.utcnow(),
        replied_to_message_id=replied_to_message_id,
        is_forwarded=bool(forwarded_from_username),
        forwarded_from_username=forwarded_from_username,
    )
    db.add(message)
    db.flush()
    return message


def delete_message(db: Session, message: Message) -> None:
    db.delete(message)
    db.flush()


def insert_read(db: Session, *, message_id, user_id: int) -> None:
    """Idempotent: a second insert for the same (message, user) is a no-op."""
    insert_reads_from_select(
        db,
        select(Message.id, literal(user_id, BigInteger), _now_literal())
        .where(Message.id == message_id),
    )


def mark_conversation_read(db: Session, *, conversation_id, user_id: int) -> None:
    """Insert a read row for every message from someone else that lacks one."""
    insert_reads_from_select(
        db,
        select(Message.id, literal(user_id, BigInteger), _now_literal())
        .where(
            Message.conversation_id == conversation_id,
            sent_by_other(user_id),
            not_read_by(user_id),
        ),
    )


def mark_messages_read(db: Session, *, conversation_id, user_id: int, message_ids: Iterable, read_at=None) -> None:
    """Insert read rows for the given messages of one conversation that lack one."""
    insert_reads_from_select(
        db,
        select(Message.id, literal(user_id, BigInteger), _now_literal(read_at))
        .where(
            Message.conversation_id == conversation_id,
            Message.id.in_(list(message_ids)),
            not_read_by(user_id),
        ),
    )


def missing_message_ids(db: Session, *, conversation_id, message_ids: Iterable) -> List:
    """Requested ids that are not messages of ``conversation_id``, in request order."""
    requested = list(dict.fromkeys(message_ids))
    if not requested:
        return []
    found = {
        row[0]
        for row in db.query(Message.id)
        .filter(Message.conversation_id == conversation_id, Message.id.in_(requested))
        .all()
    }
    return [mid for mid in requested if mid not in found]


def mark_conversation_unread(db: Session, *, conversation_id, user_id: int) -> None:
    message_ids = select(Message.id).where(Message.conversation_id == conversation_id)
    (
        db.query(MessageRead)
        .filter(MessageRead.user_id == user_id, MessageRead.message_id.in_(message_ids))
        .delete(synchronize_session=False)
    )


def _now_literal(value=None):
    return literal(value or datetime.utcnow(), DateTime)


def insert_reads_from_select(db: Session, source) -> None:
    columns = [MessageRead.message_id, MessageRead.user_id, MessageRead.read_at]
    dialect_name = db.bind.dialect.name if db.bind else ""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert

        stmt = pg_insert(MessageRead).from_select(columns, source)
        db.execute(stmt.on_conflict_do_nothing(index_elements=["message_id", "user_id"]))
        return
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert

        stmt = sqlite_insert(MessageRead).from_select(columns, source)
        db.execute(stmt.on_conflict_do_nothing(index_elements=["message_id", "user_id"]))
        return

    db.execute(insert(MessageRead).from_select(columns, source))


def count_unread(db: Session, *, conversation_id, user_id: int) -> int:
    return (
        db.query(func.count(Message.id))
        .filter(
            Message.conversation_id == conversation_id,
            sent_by_other(user_id),
            not_read_by(user_id),
        )
        .scalar()
        or 0
    )


# ---------------------------------------------------------------------------
# Pins
# ---------------------------------------------------------------------------

def get_pin(db: Session, *, conversation_id, message_id) -> Optional[PinnedMessage]:
    return (
        db.query(PinnedMessage)
        .filter(
            PinnedMessage.conversation_id == conversation_id,
            PinnedMessage.message_id == message_id,
        )
        .first()
    )


def insert_pin(db: Session, *, conversation_id, message_id, pinned_by: int) -> PinnedMessage:
    pin = PinnedMessage(
        conversation_id=conversation_id,
        message_id=message_id,
        pinned_by=pinned_by,
        pinned_at=datetime.utcnow(),
    )
    db.add(pin)
    db.flush()
    return pin


def delete_pin(db: Session, pin: PinnedMessage) -> None:
    db.delete(pin)
    db.flush()


def list_pinned_message_ids(db: Session, *, conversation_ids: Iterable) -> dict:
    """``{conversation_id: [message_id, ...]}`` most recently pinned first."""
    ids = list(conversation_ids)
    result = {cid: [] for cid in ids}
    if not ids:
        return result
    rows = (
        db.query(PinnedMessage.conversation_id, PinnedMessage.message_id)
        .filter(PinnedMessage.conversation_id.in_(ids))
        .order_by(PinnedMessage.pinned_at.desc(), PinnedMessage.id.desc())
        .all()
    )
    for conversation_id, message_id in rows:
        result[conversation_id].append(message_id)
    return result
