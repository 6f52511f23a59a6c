import uuid

import pytest

from core import config
from core.errors import AlreadyMember, Conflict, Forbidden, InvalidArgument, NotFound
from models import Conversation, ConversationParticipant, Message
from routers.conversations import fanout, lifecycle, repository


def events_for(deliveries, user_id):
    return [d.event for d in deliveries if d.target_kind == fanout.TARGET_USER and d.target_id == user_id]


def assert_admin_is_member(db, conversation_id):
    conversation = repository.get_conversation(db, conversation_id=conversation_id)
    if conversation is None or not conversation.is_group:
        return
    roster = repository.list_participant_user_ids(db, conversation_id=conversation_id)
    assert conversation.admin_id in roster


# ---------------------------------------------------------------------------
# Dialogs
# ---------------------------------------------------------------------------

def test_create_dialog_is_idempotent(test_db, deliveries, alice, bob):
    first = lifecycle.create_dialog(test_db, current_user=alice, other_user_id=bob.account_id)
    assert first["created"] is True
    assert first["conversation"]["name"] == "bob"

    second = lifecycle.create_dialog(test_db, current_user=bob, other_user_id=alice.account_id)
    assert second["created"] is False
    assert second["conversation"]["id"] == first["conversation"]["id"]
    assert second["conversation"]["name"] == "alice"

    assert test_db.query(Conversation).filter(Conversation.is_group.is_(False)).count() == 1
    # Only the first call announces anything
    assert sorted(d.target_id for d in deliveries) == sorted([alice.account_id, bob.account_id])
    assert {d.event for d in deliveries} == {fanout.CONVERSATION_CREATED}


def test_create_dialog_rejects_self_and_unknown_users(test_db, alice):
    with pytest.raises(InvalidArgument):
        lifecycle.create_dialog(test_db, current_user=alice, other_user_id=alice.account_id)
    with pytest.raises(NotFound):
        lifecycle.create_dialog(test_db, current_user=alice, other_user_id=999)
    assert test_db.query(Conversation).count() == 0


def test_group_with_same_pair_does_not_count_as_dialog(test_db, deliveries, make_group, alice, bob):
    make_group([alice, bob])
    result = lifecycle.create_dialog(test_db, current_user=alice, other_user_id=bob.account_id)
    assert result["created"] is True


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

def test_create_group(test_db, deliveries, alice, bob, carol):
    view = lifecycle.create_group(
        test_db,
        current_user=alice,
        name="  Hiking  ",
        participant_ids=[bob.account_id, carol.account_id, bob.account_id, alice.account_id],
    )

    assert view["name"] == "Hiking"
    assert view["admin_id"] == alice.account_id
    assert view["created_by"] == alice.account_id
    assert view["participant_count"] == 3
    assert {d.target_id for d in deliveries} == {alice.account_id, bob.account_id, carol.account_id}
    assert all(d.event == fanout.CONVERSATION_CREATED for d in deliveries)


def test_create_group_reports_missing_users(test_db, deliveries, alice, bob):
    with pytest.raises(NotFound) as exc_info:
        lifecycle.create_group(
            test_db, current_user=alice, name="Ghosts", participant_ids=[bob.account_id, 111, 222]
        )
    assert exc_info.value.detail["missing_user_ids"] == [111, 222]
    assert test_db.query(Conversation).count() == 0
    assert deliveries == []


@pytest.mark.parametrize("name", ["", "   ", None, "x" * 101])
def test_create_group_rejects_bad_names(test_db, alice, name, monkeypatch):
    monkeypatch.setattr(config, "GROUP_NAME_MAX_LENGTH", 100)
    with pytest.raises(InvalidArgument):
        lifecycle.create_group(test_db, current_user=alice, name=name, participant_ids=[])


def test_create_group_respects_size_limit(test_db, alice, bob, carol, monkeypatch):
    monkeypatch.setattr(config, "GROUP_MAX_PARTICIPANTS", 2)
    with pytest.raises(InvalidArgument):
        lifecycle.create_group(
            test_db, current_user=alice, name="Crowd", participant_ids=[bob.account_id, carol.account_id]
        )


def test_add_participant_by_admin(test_db, deliveries, make_group, alice, bob, carol):
    group = make_group([alice, bob])

    view = lifecycle.add_participant(test_db, current_user=alice, conversation_id=group.id, user_id=carol.account_id)

    assert view["participant_count"] == 3
    assert events_for(deliveries, carol.account_id) == [fanout.CONVERSATION_CREATED]
    assert events_for(deliveries, alice.account_id) == [fanout.CONVERSATION_UPDATED]
    assert events_for(deliveries, bob.account_id) == [fanout.CONVERSATION_UPDATED]


def test_add_participant_errors(test_db, deliveries, make_group, make_dialog, alice, bob, carol, dave):
    group = make_group([alice, bob])
    dialog = make_dialog(alice, carol)

    with pytest.raises(AlreadyMember) as exc_info:
        lifecycle.add_participant(test_db, current_user=alice, conversation_id=group.id, user_id=bob.account_id)
    assert exc_info.value.detail["user_id"] == bob.account_id

    with pytest.raises(Forbidden):
        lifecycle.add_participant(test_db, current_user=bob, conversation_id=group.id, user_id=carol.account_id)
    with pytest.raises(NotFound):
        lifecycle.add_participant(test_db, current_user=dave, conversation_id=group.id, user_id=carol.account_id)
    with pytest.raises(NotFound):
        lifecycle.add_participant(test_db, current_user=alice, conversation_id=group.id, user_id=424242)
    with pytest.raises(InvalidArgument):
        lifecycle.add_participant(test_db, current_user=alice, conversation_id=dialog.id, user_id=bob.account_id)

    assert deliveries == []


def test_add_participant_open_policy(test_db, deliveries, make_group, alice, bob, carol, monkeypatch):
    monkeypatch.setattr(config, "GROUP_ADD_POLICY", lifecycle.ADD_POLICY_PARTICIPANT)
    group = make_group([alice, bob])

    lifecycle.add_participant(test_db, current_user=bob, conversation_id=group.id, user_id=carol.account_id)

    assert carol.account_id in repository.list_participant_user_ids(test_db, conversation_id=group.id)


def test_add_participant_to_full_group(test_db, make_group, alice, bob, carol, monkeypatch):
    monkeypatch.setattr(config, "GROUP_MAX_PARTICIPANTS", 2)
    group = make_group([alice, bob])
    with pytest.raises(Conflict):
        lifecycle.add_participant(test_db, current_user=alice, conversation_id=group.id, user_id=carol.account_id)


def test_remove_participant(test_db, deliveries, make_group, alice, bob, carol):
    group = make_group([alice, bob, carol])

    view = lifecycle.remove_participant(test_db, current_user=alice, conversation_id=group.id, user_id=carol.account_id)

    assert view["participant_count"] == 2
    assert events_for(deliveries, carol.account_id) == [fanout.CONVERSATION_REMOVED]
    assert deliveries[-1].payload == {"conversation_id": str(group.id)}
    assert events_for(deliveries, bob.account_id) == [fanout.CONVERSATION_UPDATED]


def test_remove_participant_errors(test_db, make_group, alice, bob, carol):
    group = make_group([alice, bob])

    with pytest.raises(InvalidArgument):
        lifecycle.remove_participant(test_db, current_user=alice, conversation_id=group.id, user_id=alice.account_id)
    with pytest.raises(Forbidden):
        lifecycle.remove_participant(test_db, current_user=bob, conversation_id=group.id, user_id=alice.account_id)
    with pytest.raises(NotFound):
        lifecycle.remove_participant(test_db, current_user=alice, conversation_id=group.id, user_id=carol.account_id)


def test_rename_group(test_db, deliveries, make_group, alice, bob):
    group = make_group([alice, bob], name="Old")

    result = lifecycle.rename_conversation(test_db, current_user=alice, conversation_id=group.id, name=" New ")

    assert result == {"conversation_id": str(group.id), "name": "New"}
    assert repository.get_conversation(test_db, conversation_id=group.id).name == "New"
    [delivery] = deliveries
    assert delivery.target_kind == fanout.TARGET_ROOM
    assert delivery.target_id == str(group.id)
    assert delivery.payload["name"] == "New"
    assert delivery.payload["updated_at"] is not None


def test_rename_requires_admin_and_group(test_db, make_group, make_dialog, alice, bob):
    group = make_group([alice, bob])
    dialog = make_dialog(alice, bob)
    with pytest.raises(Forbidden):
        lifecycle.rename_conversation(test_db, current_user=bob, conversation_id=group.id, name="Mine")
    with pytest.raises(InvalidArgument):
        lifecycle.rename_conversation(test_db, current_user=alice, conversation_id=dialog.id, name="Ours")


# ---------------------------------------------------------------------------
# Leave
# ---------------------------------------------------------------------------

def test_member_leaves_group(test_db, deliveries, make_group, alice, bob, carol):
    group = make_group([alice, bob, carol])

    result = lifecycle.leave_conversation(test_db, current_user=bob, conversation_id=group.id)

    assert result == {"conversation_id": str(group.id), "deleted": False, "new_admin_id": None}
    assert repository.get_conversation(test_db, conversation_id=group.id).admin_id == alice.account_id
    assert events_for(deliveries, bob.account_id) == [fanout.CONVERSATION_REMOVED]
    assert events_for(deliveries, alice.account_id) == [fanout.CONVERSATION_UPDATED]
    assert events_for(deliveries, carol.account_id) == [fanout.CONVERSATION_UPDATED]
    assert_admin_is_member(test_db, group.id)


def test_admin_leaves_and_earliest_member_succeeds(test_db, deliveries, make_group, alice, bob, carol):
    # alice joined at t1, bob at t2, carol at t3
    group = make_group([alice, bob, carol])

    result = lifecycle.leave_conversation(test_db, current_user=alice, conversation_id=group.id)

    assert result["deleted"] is False
    assert result["new_admin_id"] == bob.account_id
    assert repository.get_conversation(test_db, conversation_id=group.id).admin_id == bob.account_id
    updated = [d for d in deliveries if d.target_id == carol.account_id]
    assert updated[0].payload["admin_id"] == bob.account_id
    assert_admin_is_member(test_db, group.id)

    result = lifecycle.leave_conversation(test_db, current_user=bob, conversation_id=group.id)
    assert result["new_admin_id"] == carol.account_id
    assert_admin_is_member(test_db, group.id)


def test_last_member_leaving_deletes_group(test_db, deliveries, make_group, add_message, alice):
    group = make_group([alice])
    add_message(group, alice)

    result = lifecycle.leave_conversation(test_db, current_user=alice, conversation_id=group.id)

    assert result["deleted"] is True
    assert test_db.query(Conversation).count() == 0
    assert test_db.query(Message).count() == 0
    assert events_for(deliveries, alice.account_id) == [fanout.CONVERSATION_REMOVED]


def test_leaving_dialog_deletes_it_for_both(test_db, deliveries, make_dialog, add_message, alice, bob):
    dialog = make_dialog(alice, bob)
    add_message(dialog, bob)

    result = lifecycle.leave_conversation(test_db, current_user=alice, conversation_id=dialog.id)

    assert result["deleted"] is True
    assert test_db.query(ConversationParticipant).count() == 0
    assert events_for(deliveries, alice.account_id) == [fanout.CONVERSATION_REMOVED]
    assert events_for(deliveries, bob.account_id) == [fanout.CONVERSATION_REMOVED]


def test_leave_unknown_or_foreign_conversation(test_db, make_group, alice, bob):
    group = make_group([alice])
    with pytest.raises(NotFound):
        lifecycle.leave_conversation(test_db, current_user=bob, conversation_id=group.id)
    with pytest.raises(NotFound):
        lifecycle.leave_conversation(test_db, current_user=alice, conversation_id=uuid.uuid4())
    with pytest.raises(InvalidArgument):
        lifecycle.leave_conversation(test_db, current_user=alice, conversation_id="123")


def test_admin_invariant_across_a_sequence(test_db, deliveries, make_group, alice, bob, carol, dave):
    group = lifecycle.create_group(
        test_db, current_user=alice, name="Relay", participant_ids=[bob.account_id]
    )
    group_id = group["id"]

    lifecycle.add_participant(test_db, current_user=alice, conversation_id=group_id, user_id=carol.account_id)
    assert_admin_is_member(test_db, uuid.UUID(group_id))
    lifecycle.leave_conversation(test_db, current_user=alice, conversation_id=group_id)
    assert_admin_is_member(test_db, uuid.UUID(group_id))
    lifecycle.add_participant(test_db, current_user=bob, conversation_id=group_id, user_id=dave.account_id)
    lifecycle.remove_participant(test_db, current_user=bob, conversation_id=group_id, user_id=carol.account_id)
    assert_admin_is_member(test_db, uuid.UUID(group_id))
    lifecycle.leave_conversation(test_db, current_user=bob, conversation_id=group_id)
    assert repository.get_conversation(test_db, conversation_id=uuid.UUID(group_id)).admin_id == dave.account_id
    result = lifecycle.leave_conversation(test_db, current_user=dave, conversation_id=group_id)
    assert result["deleted"] is True


def test_group_drains_to_deletion(test_db, deliveries, make_group, alice, bob, carol):
    group = make_group([alice, bob, carol])

    lifecycle.leave_conversation(test_db, current_user=bob, conversation_id=group.id)
    assert repository.list_participant_user_ids(test_db, conversation_id=group.id) == [alice.account_id, carol.account_id]
    assert events_for(deliveries, alice.account_id) == [fanout.CONVERSATION_UPDATED]
    assert events_for(deliveries, carol.account_id) == [fanout.CONVERSATION_UPDATED]
    assert events_for(deliveries, bob.account_id) == [fanout.CONVERSATION_REMOVED]

    del deliveries[:]
    lifecycle.leave_conversation(test_db, current_user=alice, conversation_id=group.id)
    assert repository.get_conversation(test_db, conversation_id=group.id).admin_id == carol.account_id

    del deliveries[:]
    result = lifecycle.leave_conversation(test_db, current_user=carol, conversation_id=group.id)
    assert result["deleted"] is True
    assert repository.get_conversation(test_db, conversation_id=group.id) is None
    assert [(d.target_id, d.event) for d in deliveries] == [(carol.account_id, fanout.CONVERSATION_REMOVED)]
