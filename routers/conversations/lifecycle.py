"""Membership lifecycle: create, add/remove participant, rename, leave/delete.

Every mutation locks the conversation row first and makes all of its decisions
(membership, admin identity, remaining roster) from data read inside that same
transaction. Snapshots for fan-out are computed after commit.
"""

import logging
from typing import Iterable, List

from sqlalchemy.orm import Session

from core import config
from core.db import atomic
from core.errors import AlreadyMember, Conflict, Forbidden, InvalidArgument, NotFound
from core.users import find_missing_user_ids, get_user_by_id, get_user_by_id_for_update
from models import Conversation, User
from utils.logging_helpers import log_info, log_warning
from utils.message_sanitizer import sanitize_text

from . import aggregator, fanout, repository

logger = logging.getLogger(__name__)

ADD_POLICY_ADMIN = "admin"
ADD_POLICY_PARTICIPANT = "participant"


def normalize_group_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidArgument("Group name must not be empty")
    name = sanitize_text(name)
    if not name:
        raise InvalidArgument("Group name must not be empty")
    if len(name) > config.GROUP_NAME_MAX_LENGTH:
        raise InvalidArgument(f"Group name must be at most {config.GROUP_NAME_MAX_LENGTH} characters")
    return name


def _require_group(conversation: Conversation) -> None:
    if not conversation.is_group:
        raise InvalidArgument("Operation is only available for group conversations")


def _require_admin(conversation: Conversation, user_id: int, action: str) -> None:
    if conversation.admin_id != user_id:
        raise Forbidden(f"Only the group admin can {action}")


def _lock_as_member(db: Session, *, conversation_id, user_id: int):
    """Lock the conversation and check membership; hides it from non-members."""
    conversation = repository.lock_conversation(db, conversation_id=conversation_id)
    participant = repository.require_participant(db, conversation_id=conversation.id, user_id=user_id)
    return conversation, participant


def _views(db: Session, conversation_id, viewer_ids: Iterable[int]):
    return aggregator.get_conversation_views(db, conversation_id=conversation_id, viewer_ids=viewer_ids)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def create_dialog(db: Session, *, current_user: User, other_user_id: int, background_tasks=None) -> dict:
    """Return the dialog between the two users, creating it the first time."""
    user_id = current_user.account_id
    if other_user_id == user_id:
        raise InvalidArgument("Cannot create a dialog with yourself")

    created = False
    with atomic(db, action="create dialog"):
        # Lock both users in id order so concurrent creates for the pair serialize
        for account_id in sorted((user_id, other_user_id)):
            if get_user_by_id_for_update(db, account_id=account_id) is None:
                raise NotFound("User not found")

        conversation = repository.find_dialog_between(db, user_a=user_id, user_b=other_user_id)
        if conversation is None:
            conversation = repository.create_conversation(
                db,
                is_group=False,
                created_by=user_id,
                participant_ids=[user_id, other_user_id],
            )
            created = True
        conversation_id = conversation.id

    views = _views(db, conversation_id, [user_id, other_user_id])
    if created:
        log_info(logger, "Dialog created", user_id=user_id, conversation_id=conversation_id, other_user_id=other_user_id)
        fanout.dispatch(fanout.created_deliveries(views), background_tasks)
    return {"conversation": views[user_id], "created": created}


def create_group(db: Session, *, current_user: User, name, participant_ids: List[int], background_tasks=None) -> dict:
    user_id = current_user.account_id
    name = normalize_group_name(name)
    members = list(dict.fromkeys([user_id] + list(participant_ids or [])))
    if len(members) > config.GROUP_MAX_PARTICIPANTS:
        raise InvalidArgument(f"A group can have at most {config.GROUP_MAX_PARTICIPANTS} participants")

    with atomic(db, action="create group"):
        missing = find_missing_user_ids(db, account_ids=members)
        if missing:
            raise NotFound(
                "Users not found: " + ", ".join(str(uid) for uid in missing),
                missing_user_ids=missing,
            )
        conversation = repository.create_conversation(
            db,
            is_group=True,
            name=name,
            admin_id=user_id,
            created_by=user_id,
            participant_ids=members,
        )
        conversation_id = conversation.id

    log_info(logger, "Group created", user_id=user_id, conversation_id=conversation_id, members=len(members))
    views = _views(db, conversation_id, members)
    fanout.dispatch(fanout.created_deliveries(views), background_tasks)
    return views[user_id]


# ---------------------------------------------------------------------------
# Roster changes
# ---------------------------------------------------------------------------

def add_participant(db: Session, *, current_user: User, conversation_id, user_id: int, background_tasks=None) -> dict:
    conversation_id = repository.parse_uuid(conversation_id)
    requester_id = current_user.account_id

    with atomic(db, action="add participant"):
        conversation, _ = _lock_as_member(db, conversation_id=conversation_id, user_id=requester_id)
        _require_group(conversation)
        if config.GROUP_ADD_POLICY != ADD_POLICY_PARTICIPANT:
            _require_admin(conversation, requester_id, "add participants")

        if get_user_by_id(db, account_id=user_id) is None:
            raise NotFound("User not found")
        if repository.get_participant(db, conversation_id=conversation_id, user_id=user_id):
            raise AlreadyMember(user_id)
        if repository.count_participants(db, conversation_id=conversation_id) >= config.GROUP_MAX_PARTICIPANTS:
            raise Conflict("Group is full")

        repository.insert_participant(db, conversation_id=conversation_id, user_id=user_id)
        repository.touch_conversation(conversation)

    log_info(logger, "Participant added", user_id=requester_id, conversation_id=conversation_id, target_user_id=user_id)
    roster = repository.list_participant_user_ids(db, conversation_id=conversation_id)
    views = _views(db, conversation_id, roster)
    fanout.dispatch(fanout.member_added_deliveries(views, new_user_id=user_id), background_tasks)
    return views[requester_id]


def remove_participant(db: Session, *, current_user: User, conversation_id, user_id: int, background_tasks=None) -> dict:
    conversation_id = repository.parse_uuid(conversation_id)
    requester_id = current_user.account_id
    if user_id == requester_id:
        raise InvalidArgument("Use leave to remove yourself from a group")

    with atomic(db, action="remove participant"):
        conversation, _ = _lock_as_member(db, conversation_id=conversation_id, user_id=requester_id)
        _require_group(conversation)
        _require_admin(conversation, requester_id, "remove participants")

        target = repository.get_participant(db, conversation_id=conversation_id, user_id=user_id)
        if not target:
            raise NotFound("User is not a participant")
        repository.delete_participant(db, target)
        repository.touch_conversation(conversation)

    log_info(logger, "Participant removed", user_id=requester_id, conversation_id=conversation_id, target_user_id=user_id)
    remaining = repository.list_participant_user_ids(db, conversation_id=conversation_id)
    views = _views(db, conversation_id, remaining)
    fanout.dispatch(
        fanout.departure_deliveries(conversation_id, remaining_views=views, departed_ids=[user_id]),
        background_tasks,
    )
    return views[requester_id]


def rename_conversation(db: Session, *, current_user: User, conversation_id, name, background_tasks=None) -> dict:
    conversation_id = repository.parse_uuid(conversation_id)
    requester_id = current_user.account_id
    name = normalize_group_name(name)

    with atomic(db, action="rename group"):
        conversation, _ = _lock_as_member(db, conversation_id=conversation_id, user_id=requester_id)
        _require_group(conversation)
        _require_admin(conversation, requester_id, "rename the group")
        conversation.name = name
        repository.touch_conversation(conversation)
        updated_at = aggregator.isoformat(conversation.updated_at)

    log_info(logger, "Group renamed", user_id=requester_id, conversation_id=conversation_id)
    fanout.dispatch(
        fanout.renamed_deliveries(conversation_id, name=name, updated_at=updated_at),
        background_tasks,
    )
    return {"conversation_id": str(conversation_id), "name": name}


# ---------------------------------------------------------------------------
# Leave / delete
# ---------------------------------------------------------------------------

def leave_conversation(db: Session, *, current_user: User, conversation_id, background_tasks=None) -> dict:
    """Leave a group (with admin succession) or delete a dialog.

    The "last participant" check and the successor choice are both read after
    the leaver's row is deleted, under the conversation row lock.
    """
    conversation_id = repository.parse_uuid(conversation_id)
    user_id = current_user.account_id
    deleted = False
    new_admin_id = None
    notify_removed = [user_id]

    with atomic(db, action="leave conversation"):
        conversation, participant = _lock_as_member(db, conversation_id=conversation_id, user_id=user_id)

        if not conversation.is_group:
            notify_removed = repository.list_participant_user_ids(db, conversation_id=conversation_id)
            repository.delete_conversation(db, conversation)
            deleted = True
        else:
            was_admin = conversation.admin_id == user_id
            repository.delete_participant(db, participant)

            remaining = repository.count_participants(db, conversation_id=conversation_id)
            if remaining == 0:
                repository.delete_conversation(db, conversation)
                deleted = True
            elif was_admin:
                successor = repository.earliest_participant(db, conversation_id=conversation_id)
                if successor is None:
                    log_warning(
                        logger,
                        "No admin successor despite remaining participants, deleting group",
                        user_id=user_id,
                        conversation_id=conversation_id,
                        remaining=remaining,
                    )
                    repository.delete_conversation(db, conversation)
                    deleted = True
                else:
                    conversation.admin_id = successor.user_id
                    new_admin_id = successor.user_id
                    repository.touch_conversation(conversation)
            else:
                repository.touch_conversation(conversation)

    log_info(
        logger,
        "Conversation deleted" if deleted else "Participant left",
        user_id=user_id,
        conversation_id=conversation_id,
        new_admin_id=new_admin_id,
    )

    if deleted:
        deliveries = fanout.removed_deliveries(conversation_id, notify_removed)
    else:
        remaining_ids = repository.list_participant_user_ids(db, conversation_id=conversation_id)
        views = _views(db, conversation_id, remaining_ids)
        deliveries = fanout.departure_deliveries(
            conversation_id, remaining_views=views, departed_ids=[user_id]
        )
    fanout.dispatch(deliveries, background_tasks)

    return {
        "conversation_id": str(conversation_id),
        "deleted": deleted,
        "new_admin_id": new_admin_id,
    }
