import uuid

import pytest

from core.db import atomic
from core.errors import AlreadyMember, InvalidArgument, NotFound
from models import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageRead,
    PinnedMessage,
)
from routers.conversations import repository


def test_parse_uuid_rejects_garbage():
    value = uuid.uuid4()
    assert repository.parse_uuid(str(value)) == value
    assert repository.parse_uuid(value) is value
    with pytest.raises(InvalidArgument):
        repository.parse_uuid("not-a-uuid")
    with pytest.raises(InvalidArgument):
        repository.parse_uuid(None)


def test_create_conversation_seeds_participants_in_order(test_db, alice, bob, carol):
    with atomic(test_db, action="create group"):
        group = repository.create_conversation(
            test_db,
            is_group=True,
            name="Trip",
            admin_id=alice.account_id,
            created_by=alice.account_id,
            participant_ids=[alice.account_id, carol.account_id, bob.account_id],
        )
        group_id = group.id

    roster = repository.list_participant_user_ids(test_db, conversation_id=group_id)
    assert roster == [alice.account_id, carol.account_id, bob.account_id]
    assert repository.count_participants(test_db, conversation_id=group_id) == 3


def test_earliest_participant_breaks_ties_by_row_id(test_db, alice, bob, carol):
    with atomic(test_db, action="create group"):
        group = repository.create_conversation(
            test_db,
            is_group=True,
            name="Same second",
            admin_id=alice.account_id,
            created_by=alice.account_id,
            participant_ids=[alice.account_id, carol.account_id, bob.account_id],
        )
        group_id = group.id

    rows = repository.list_participants(test_db, conversation_id=group_id)
    assert len({row.joined_at for row in rows}) == 1

    alice_row = repository.get_participant(test_db, conversation_id=group_id, user_id=alice.account_id)
    with atomic(test_db, action="leave"):
        repository.delete_participant(test_db, alice_row)

    successor = repository.earliest_participant(test_db, conversation_id=group_id)
    assert successor.user_id == carol.account_id


def test_find_dialog_between_matches_either_order(test_db, make_dialog, make_group, alice, bob, carol):
    dialog = make_dialog(alice, bob)
    make_group([alice, bob])

    assert repository.find_dialog_between(test_db, user_a=alice.account_id, user_b=bob.account_id).id == dialog.id
    assert repository.find_dialog_between(test_db, user_a=bob.account_id, user_b=alice.account_id).id == dialog.id
    assert repository.find_dialog_between(test_db, user_a=alice.account_id, user_b=carol.account_id) is None


def test_insert_participant_twice_is_already_member(test_db, make_group, alice, bob):
    group = make_group([alice])
    with atomic(test_db, action="add participant"):
        repository.insert_participant(test_db, conversation_id=group.id, user_id=bob.account_id)

    with pytest.raises(AlreadyMember) as exc_info:
        with atomic(test_db, action="add participant"):
            repository.insert_participant(test_db, conversation_id=group.id, user_id=bob.account_id)

    assert exc_info.value.detail["code"] == "CONFLICT"
    assert repository.count_participants(test_db, conversation_id=group.id) == 2


def test_require_participant_hides_membership(test_db, make_group, alice, bob):
    group = make_group([alice])
    with pytest.raises(NotFound):
        repository.require_participant(test_db, conversation_id=group.id, user_id=bob.account_id)
    with pytest.raises(NotFound):
        repository.lock_conversation(test_db, conversation_id=uuid.uuid4())


def test_mark_read_is_idempotent(test_db, make_dialog, add_message, alice, bob):
    dialog = make_dialog(alice, bob)
    add_message(dialog, alice, "one")
    add_message(dialog, alice, "two")
    add_message(dialog, bob, "three")

    assert repository.count_unread(test_db, conversation_id=dialog.id, user_id=bob.account_id) == 2

    for _ in range(2):
        with atomic(test_db, action="mark read"):
            repository.mark_conversation_read(test_db, conversation_id=dialog.id, user_id=bob.account_id)
        assert repository.count_unread(test_db, conversation_id=dialog.id, user_id=bob.account_id) == 0

    reads = test_db.query(MessageRead).filter(MessageRead.user_id == bob.account_id).count()
    assert reads == 3


def test_insert_read_duplicate_is_noop(test_db, make_dialog, add_message, alice, bob):
    dialog = make_dialog(alice, bob)
    message = add_message(dialog, alice)

    for _ in range(2):
        with atomic(test_db, action="insert read"):
            repository.insert_read(test_db, message_id=message.id, user_id=bob.account_id)

    assert test_db.query(MessageRead).filter(MessageRead.message_id == message.id).count() == 2


def test_mark_unread_only_touches_this_conversation(test_db, make_dialog, make_group, add_message, alice, bob, carol):
    dialog = make_dialog(alice, bob)
    group = make_group([alice, bob, carol])
    add_message(dialog, alice)
    add_message(group, carol)
    add_message(group, carol)

    with atomic(test_db, action="mark read"):
        repository.mark_conversation_read(test_db, conversation_id=dialog.id, user_id=bob.account_id)
        repository.mark_conversation_read(test_db, conversation_id=group.id, user_id=bob.account_id)
    with atomic(test_db, action="mark unread"):
        repository.mark_conversation_unread(test_db, conversation_id=group.id, user_id=bob.account_id)

    assert repository.count_unread(test_db, conversation_id=group.id, user_id=bob.account_id) == 2
    assert repository.count_unread(test_db, conversation_id=dialog.id, user_id=bob.account_id) == 0


def test_delete_conversation_cascades(test_db, make_group, add_message, alice, bob):
    group = make_group([alice, bob])
    message = add_message(group, alice)
    with atomic(test_db, action="pin"):
        repository.insert_pin(test_db, conversation_id=group.id, message_id=message.id, pinned_by=alice.account_id)
    group_id = group.id

    with atomic(test_db, action="delete"):
        repository.delete_conversation(test_db, repository.get_conversation(test_db, conversation_id=group_id))

    assert test_db.query(Conversation).filter(Conversation.id == group_id).count() == 0
    assert test_db.query(ConversationParticipant).filter(ConversationParticipant.conversation_id == group_id).count() == 0
    assert test_db.query(Message).filter(Message.conversation_id == group_id).count() == 0
    assert test_db.query(MessageRead).count() == 0
    assert test_db.query(PinnedMessage).count() == 0


def test_pinned_ids_most_recent_first(test_db, make_group, add_message, alice):
    group = make_group([alice])
    first = add_message(group, alice, "first")
    second = add_message(group, alice, "second")

    with atomic(test_db, action="pin"):
        repository.insert_pin(test_db, conversation_id=group.id, message_id=first.id, pinned_by=alice.account_id)
    with atomic(test_db, action="pin"):
        repository.insert_pin(test_db, conversation_id=group.id, message_id=second.id, pinned_by=alice.account_id)

    pins = repository.list_pinned_message_ids(test_db, conversation_ids=[group.id])
    assert pins[group.id] == [second.id, first.id]
