"""Event fan-out: turn a committed mutation into broadcast deliveries.

The ``*_deliveries`` builders are pure functions of a mutation's outcome. ``dispatch``
hands the result to the Redis queue when enabled, otherwise to FastAPI background
tasks, and only ever after the transaction has committed. Nothing in here raises
back into a request: a failed publish is logged and dropped.

Room deliveries are resolved to the conversation's roster when they are sent and
published on each member's private channel, so a user who left or was removed in
the meantime receives nothing.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import redis  # type: ignore
from fastapi import BackgroundTasks

from core import config
from core.db import SessionLocal
from core.queue import enqueue_task
from utils import pusher_client
from utils.logging_helpers import log_error, log_warning

from . import repository

logger = logging.getLogger(__name__)

TARGET_USER = "user"
TARGET_ROOM = "room"

CONVERSATION_CREATED = "conversation-created"
CONVERSATION_UPDATED = "conversation-updated"
CONVERSATION_REMOVED = "conversation-removed"
PINNED_MESSAGES_UPDATED = "pinned-messages-updated"
NEW_MESSAGE = "new-message"
MESSAGE_UPDATED = "message-updated"
MESSAGE_DELETED = "message-deleted"
MESSAGES_READ = "messages-read"

FANOUT_TASK_NAME = "fanout.deliver"


@dataclass
class Delivery:
    target_kind: str
    target_id: Any
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["target_id"] = str(self.target_id)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Delivery":
        target_id = data["target_id"]
        if data["target_kind"] == TARGET_USER:
            target_id = int(target_id)
        return cls(
            target_kind=data["target_kind"],
            target_id=target_id,
            event=data["event"],
            payload=data.get("payload") or {},
        )


def to_user(user_id: int, event: str, payload: dict) -> Delivery:
    return Delivery(TARGET_USER, user_id, event, payload)


def to_room(conversation_id, event: str, payload: dict) -> Delivery:
    return Delivery(TARGET_ROOM, str(conversation_id), event, payload)


def removal_payload(conversation_id) -> dict:
    return {"conversation_id": str(conversation_id)}


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def created_deliveries(views: Dict[int, dict]) -> List[Delivery]:
    """New conversation: each initial participant gets its own detail snapshot."""
    return [to_user(uid, CONVERSATION_CREATED, view) for uid, view in views.items()]


def updated_deliveries(views: Dict[int, dict], *, exclude: Iterable[int] = ()) -> List[Delivery]:
    skip = set(exclude)
    return [
        to_user(uid, CONVERSATION_UPDATED, view)
        for uid, view in views.items()
        if uid not in skip
    ]


def removed_deliveries(conversation_id, user_ids: Iterable[int]) -> List[Delivery]:
    return [
        to_user(uid, CONVERSATION_REMOVED, removal_payload(conversation_id))
        for uid in user_ids
    ]


def member_added_deliveries(views: Dict[int, dict], *, new_user_id: int) -> List[Delivery]:
    """Existing members see an update; the new member sees a new conversation."""
    deliveries = updated_deliveries(views, exclude=[new_user_id])
    if new_user_id in views:
        deliveries.append(to_user(new_user_id, CONVERSATION_CREATED, views[new_user_id]))
    return deliveries


def departure_deliveries(conversation_id, *, remaining_views: Dict[int, dict], departed_ids: Iterable[int]) -> List[Delivery]:
    """Remove/leave: snapshot for who stays, removal notice for who went."""
    return updated_deliveries(remaining_views) + removed_deliveries(conversation_id, departed_ids)


def renamed_deliveries(conversation_id, *, name: str, updated_at: Optional[str]) -> List[Delivery]:
    return [
        to_room(
            conversation_id,
            CONVERSATION_UPDATED,
            {"conversation_id": str(conversation_id), "name": name, "updated_at": updated_at},
        )
    ]


def read_state_deliveries(user_id: int, snapshot: dict) -> List[Delivery]:
    return [to_user(user_id, CONVERSATION_UPDATED, snapshot)]


def pins_deliveries(conversation_id, pinned_message_ids: List[str]) -> List[Delivery]:
    return [
        to_room(
            conversation_id,
            PINNED_MESSAGES_UPDATED,
            {
                "conversation_id": str(conversation_id),
                "pinned_message_ids": list(pinned_message_ids),
            },
        )
    ]


def new_message_deliveries(conversation_id, message: dict, snapshots: Dict[int, dict]) -> List[Delivery]:
    deliveries = [to_room(conversation_id, NEW_MESSAGE, message)]
    deliveries.extend(
        to_user(uid, CONVERSATION_UPDATED, snapshot) for uid, snapshot in snapshots.items()
    )
    return deliveries


def messages_read_deliveries(conversation_id, *, user_id: int, message_ids: List[str], read_at: Optional[str]) -> List[Delivery]:
    return [
        to_room(
            conversation_id,
            MESSAGES_READ,
            {
                "conversation_id": str(conversation_id),
                "user_id": user_id,
                "message_ids": list(message_ids),
                "read_at": read_at,
            },
        )
    ]


def message_updated_deliveries(conversation_id, message: dict) -> List[Delivery]:
    return [to_room(conversation_id, MESSAGE_UPDATED, message)]


def message_deleted_deliveries(conversation_id, message_id, *, pinned_message_ids: Optional[List[str]] = None) -> List[Delivery]:
    deliveries = [
        to_room(
            conversation_id,
            MESSAGE_DELETED,
            {"conversation_id": str(conversation_id), "message_id": str(message_id)},
        )
    ]
    if pinned_message_ids is not None:
        deliveries.extend(pins_deliveries(conversation_id, pinned_message_ids))
    return deliveries


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

def room_member_ids(conversation_id) -> List[int]:
    """Current participants of ``conversation_id``; empty once it is gone."""
    db = SessionLocal()
    try:
        return repository.list_participant_user_ids(
            db, conversation_id=repository.parse_uuid(conversation_id)
        )
    finally:
        db.close()


def deliver(delivery: Delivery) -> bool:
    if delivery.target_kind == TARGET_USER:
        return pusher_client.send_to_user(delivery.target_id, delivery.event, delivery.payload)
    if delivery.target_kind == TARGET_ROOM:
        members = room_member_ids(delivery.target_id)
        if not members:
            return False
        return pusher_client.send_to_users(members, delivery.event, delivery.payload)
    log_warning(logger, "Dropping delivery with unknown target", target_kind=delivery.target_kind)
    return False


def deliver_all(deliveries: List[Delivery]) -> None:
    for delivery in deliveries:
        try:
            deliver(delivery)
        except Exception:
            log_error(
                logger,
                "Fan-out delivery failed",
                exc_info=True,
                event_name=delivery.event,
                target=f"{delivery.target_kind}:{delivery.target_id}",
            )


def dispatch(deliveries: List[Delivery], background_tasks: Optional[BackgroundTasks] = None) -> None:
    """Send ``deliveries`` after commit: queue first, background task, then inline."""
    if not deliveries:
        return

    if config.FANOUT_QUEUE_ENABLED:
        try:
            enqueue_task(
                name=FANOUT_TASK_NAME,
                payload={"deliveries": [d.to_dict() for d in deliveries]},
                queue=config.FANOUT_QUEUE_NAME,
            )
            return
        except redis.RedisError as exc:
            log_warning(logger, "Fan-out queue unavailable, delivering in-process", error=str(exc))

    if background_tasks is not None:
        background_tasks.add_task(deliver_all, deliveries)
        return
    deliver_all(deliveries)
