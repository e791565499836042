import pytest

PASSWORD = "Password123!"


def _login(client, username):
    resp = client.post("/api/auth/login", data={"username": username, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


def _auth(client, username):
    return {"Authorization": f"Bearer {_login(client, username)}"}


@pytest.fixture()
def inbox_user(make_user):
    return make_user("msg_owner", email="msg_owner@test.com", with_password=True)


@pytest.fixture()
def deliver(db_session, admin):
    from app.services.message_service import send_system_message

    def _deliver(user, title, priority="normal"):
        return send_system_message(db_session, user.id, title, "Inbox body", priority, sender_id=admin.id)

    return _deliver


def test_inbox_lists_newest_first(client, inbox_user, deliver):
    first = deliver(inbox_user, "Inbox first")
    second = deliver(inbox_user, "Inbox second", priority="high")

    resp = client.get("/api/messages", headers=_auth(client, inbox_user.username))
    assert resp.status_code == 200
    ids = [m["id"] for m in resp.json()["items"]]
    assert ids.index(second.id) < ids.index(first.id)

    high = client.get("/api/messages", params={"priority": "high"}, headers=_auth(client, inbox_user.username))
    assert all(m["priority"] == "high" for m in high.json()["items"])


def test_unread_count_and_mark_read(client, inbox_user, deliver):
    headers = _auth(client, inbox_user.username)
    client.put("/api/messages/read-all", headers=headers)
    message = deliver(inbox_user, "Count me")

    assert client.get("/api/messages/unread-count", headers=headers).json()["count"] == 1

    resp = client.put(f"/api/messages/{message.id}/read", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["is_read"] is True
    assert resp.json()["read_at"] is not None
    assert client.get("/api/messages/unread-count", headers=headers).json()["count"] == 0


def test_read_all(client, inbox_user, deliver):
    headers = _auth(client, inbox_user.username)
    client.put("/api/messages/read-all", headers=headers)
    deliver(inbox_user, "Bulk one")
    deliver(inbox_user, "Bulk two")

    resp = client.put("/api/messages/read-all", headers=headers)
    assert resp.json()["updated"] == 2
    assert client.get("/api/messages", params={"unread_only": True}, headers=headers).json()["items"] == []


def test_cannot_open_someone_elses_message(client, inbox_user, member, deliver):
    message = deliver(inbox_user, "Private")
    resp = client.get(f"/api/messages/{message.id}", headers=_auth(client, member.username))
    assert resp.status_code == 404


def test_delete_hides_message(client, db_session, inbox_user, deliver):
    from app.models.message import Message

    headers = _auth(client, inbox_user.username)
    message = deliver(inbox_user, "Delete me")

    resp = client.delete(f"/api/messages/{message.id}", headers=headers)
    assert resp.status_code == 204
    assert client.get(f"/api/messages/{message.id}", headers=headers).status_code == 404

    db_session.expire_all()
    row = db_session.query(Message).filter(Message.id == message.id).first()
    assert row.deleted_at is not None


def test_inbox_requires_login(client):
    assert client.get("/api/messages").status_code == 401
