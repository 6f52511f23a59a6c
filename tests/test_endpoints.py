from fastapi.testclient import TestClient

from routers.conversations import fanout


def _client(make_client, user):
    return TestClient(make_client(user))


def test_dialog_create_then_reuse(make_client, deliveries, alice, bob):
    client = _client(make_client, alice)

    response = client.post("/dialogs", json={"user_id": bob.account_id})
    assert response.status_code == 201
    body = response.json()
    assert body["created"] is True
    assert body["conversation"]["name"] == "bob"

    response = client.post("/dialogs", json={"user_id": bob.account_id})
    assert response.status_code == 200
    assert response.json()["conversation"]["id"] == body["conversation"]["id"]
    assert len(deliveries) == 2


def test_validation_errors_are_invalid_argument(make_client, alice):
    client = _client(make_client, alice)

    response = client.post("/dialogs", json={"user_id": "not-a-number"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_ARGUMENT"

    response = client.post("/conversations/not-a-uuid/read-state", json={"is_read": True})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_ARGUMENT"

    response = client.post("/groups", json={"participant_ids": []})
    assert response.status_code == 400


def test_group_flow_over_http(make_client, deliveries, alice, bob, carol):
    admin = _client(make_client, alice)
    member = _client(make_client, bob)

    response = admin.post("/groups", json={"name": "Climbing", "participant_ids": [bob.account_id]})
    assert response.status_code == 201
    group_id = response.json()["id"]

    response = member.post(f"/groups/{group_id}/participants", json={"user_id": carol.account_id})
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "FORBIDDEN"

    response = admin.post(f"/groups/{group_id}/participants", json={"user_id": carol.account_id})
    assert response.status_code == 200
    assert response.json()["participant_count"] == 3

    response = admin.post(f"/groups/{group_id}/participants", json={"user_id": carol.account_id})
    assert response.status_code == 409
    assert response.json()["detail"] == {
        "code": "CONFLICT",
        "message": f"User {carol.account_id} is already a participant",
        "user_id": carol.account_id,
    }

    response = admin.patch(f"/groups/{group_id}", json={"name": "Bouldering"})
    assert response.status_code == 200
    assert response.json()["name"] == "Bouldering"

    response = admin.delete(f"/groups/{group_id}/participants/{carol.account_id}")
    assert response.status_code == 200

    response = admin.post(f"/conversations/{group_id}/leave")
    assert response.json() == {"conversation_id": group_id, "deleted": False, "new_admin_id": bob.account_id}

    response = member.get(f"/conversations/{group_id}/participants")
    assert [(p["username"], p["role"]) for p in response.json()["participants"]] == [("bob", "admin")]


def test_missing_users_listed_in_error(make_client, alice):
    client = _client(make_client, alice)
    response = client.post("/groups", json={"name": "Ghosts", "participant_ids": [5, 6]})
    assert response.status_code == 404
    assert response.json()["detail"]["missing_user_ids"] == [5, 6]


def test_non_member_sees_not_found(make_client, make_group, alice, carol):
    group = make_group([alice])
    client = _client(make_client, carol)

    for response in (
        client.get(f"/conversations/{group.id}"),
        client.get(f"/conversations/{group.id}/messages"),
        client.get(f"/conversations/{group.id}/pins"),
        client.post(f"/conversations/{group.id}/leave"),
    ):
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"


def test_messaging_over_http(make_client, deliveries, make_dialog, alice, bob):
    dialog = make_dialog(alice, bob)
    sender = _client(make_client, alice)
    reader = _client(make_client, bob)

    response = sender.post(f"/conversations/{dialog.id}/messages", json={"content": "lunch?"})
    assert response.status_code == 201
    message_id = response.json()["id"]
    assert any(d.event == fanout.NEW_MESSAGE for d in deliveries)

    listing = reader.get("/conversations").json()["conversations"]
    assert listing[0]["unread_count"] == 1
    assert listing[0]["last_message"]["content"] == "lunch?"

    page = reader.get(f"/conversations/{dialog.id}/messages", params={"limit": 10}).json()
    assert [m["is_unread"] for m in page["messages"]] == [True]
    assert page["has_more"] is False

    response = reader.post(f"/conversations/{dialog.id}/read-state", json={"is_read": True})
    assert response.json()["unread_count"] == 0

    response = reader.post(f"/conversations/{dialog.id}/messages/{message_id}/pin")
    assert response.json()["pinned_message_ids"] == [message_id]
    assert sender.get(f"/conversations/{dialog.id}/pins").json() == {"pinned_message_ids": [message_id]}

    response = reader.patch(f"/messages/{message_id}", json={"content": "dinner?"})
    assert response.status_code == 403

    response = sender.patch(f"/messages/{message_id}", json={"content": "dinner?"})
    assert response.json()["is_edited"] is True

    response = sender.delete(f"/messages/{message_id}")
    assert response.json()["pinned_message_ids"] == []

    response = reader.get(f"/conversations/{dialog.id}/messages", params={"limit": 0})
    assert response.status_code == 400


def test_mute_endpoint(make_client, make_dialog, alice, bob):
    dialog = make_dialog(alice, bob)
    client = _client(make_client, bob)

    response = client.post(f"/conversations/{dialog.id}/mute", json={"is_muted": True})
    assert response.json() == {"conversation_id": str(dialog.id), "unread_count": 0, "is_muted": True}

    response = client.post(f"/conversations/{dialog.id}/mute", json={"is_muted": "yes"})
    assert response.status_code == 400


def test_rate_limited_response(make_client, make_dialog, alice, bob, monkeypatch):
    from core import config

    monkeypatch.setattr(config, "MESSAGE_RATE_LIMIT_PER_MINUTE", 1)
    dialog = make_dialog(alice, bob)
    client = _client(make_client, alice)

    assert client.post(f"/conversations/{dialog.id}/messages", json={"content": "one"}).status_code == 201
    response = client.post(f"/conversations/{dialog.id}/messages", json={"content": "two"})
    assert response.status_code == 429
    assert response.json()["detail"]["code"] == "RATE_LIMITED"
    assert int(response.headers["Retry-After"]) >= 1


def test_sent_message_room_payload_has_no_viewer_fields(make_client, deliveries, make_group, alice, bob, carol):
    group = make_group([alice, bob, carol])
    client = _client(make_client, alice)

    response = client.post(f"/conversations/{group.id}/messages", json={"content": "standup in 5"})

    assert response.status_code == 201
    assert response.json()["is_unread"] is False
    [room] = [d for d in deliveries if d.event == fanout.NEW_MESSAGE]
    assert room.target_kind == fanout.TARGET_ROOM
    assert "is_unread" not in room.payload
    assert room.payload["content"] == "standup in 5"


def test_mark_messages_read_over_http(make_client, deliveries, make_dialog, add_message, alice, bob):
    dialog = make_dialog(alice, bob)
    first = add_message(dialog, alice, "one")
    add_message(dialog, alice, "two")
    client = _client(make_client, bob)

    response = client.post(
        f"/conversations/{dialog.id}/messages/read", json={"message_ids": [str(first.id)]}
    )
    assert response.json() == {"conversation_id": str(dialog.id), "unread_count": 1, "is_muted": False}
    [receipt] = [d for d in deliveries if d.event == fanout.MESSAGES_READ]
    assert receipt.payload["user_id"] == bob.account_id
    assert receipt.payload["message_ids"] == [str(first.id)]

    response = client.post(f"/conversations/{dialog.id}/messages/read", json={"message_ids": []})
    assert response.status_code == 400


def test_request_examples_in_openapi(make_client, alice):
    from routers.conversations.schemas import CreateDialogRequest

    schema = CreateDialogRequest.model_json_schema()
    assert schema["properties"]["user_id"]["examples"] == [1234567890]
    assert _client(make_client, alice).get("/openapi.json").status_code == 200
