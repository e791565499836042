from unittest.mock import patch

import pytest

PASSWORD = "Password123!"
URL = "/api/admin/broadcast"


def _login(client, username):
    resp = client.post("/api/auth/login", data={"username": username, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


def _auth(client, username):
    return {"Authorization": f"Bearer {_login(client, username)}"}


@pytest.fixture()
def targets(make_user):
    return {
        "with_email": make_user("api_reader", email="api_reader@test.com", with_password=True),
        "no_email": make_user("api_offline", email=None, with_password=True),
    }


# ── Access control ───────────────────────────────────────────

@pytest.mark.parametrize("method,path", [
    ("post", URL),
    ("post", f"{URL}/flush"),
    ("get", f"{URL}/history"),
    ("get", f"{URL}/recipients"),
])
def test_admin_endpoints_reject_anonymous(client, method, path):
    kwargs = {"json": {"title": "x", "content": "y"}} if method == "post" and path == URL else {}
    resp = getattr(client, method)(path, **kwargs)
    assert resp.status_code == 403


def test_admin_endpoints_reject_members(client, admin, member):
    headers = _auth(client, member.username)
    resp = client.post(URL, json={"title": "x", "content": "y"}, headers=headers)
    assert resp.status_code == 403
    assert client.post(f"{URL}/flush", headers=headers).status_code == 403
    assert client.get(f"{URL}/history", headers=headers).status_code == 403


# ── Validation ───────────────────────────────────────────────

@pytest.mark.parametrize("payload,expected", [
    ({"content": "body"}, 400),
    ({"title": "   ", "content": "body"}, 400),
    ({"title": "x" * 256, "content": "body"}, 422),
    ({"title": "Hi"}, 400),
    ({"title": "Hi", "content": "body", "priority": "critical"}, 422),
    ({"title": "Hi", "content": "body", "target_users": "1,2"}, 400),
    ({"title": "Hi", "content": "body", "target_users": ["abc", -1]}, 400),
    ({"title": "Hi", "content": "body", "target_filters": {"school_id": 1}}, 400),
    ({"title": "Hi", "content": "body", "target_filters": [{"grade": 1}]}, 400),
    ({"title": "Hi", "content": "body", "scope": "everyone"}, 422),
])
def test_send_validation(client, admin, payload, expected):
    resp = client.post(URL, json=payload, headers=_auth(client, admin.username))
    assert resp.status_code == expected, resp.text


def test_send_no_matching_users_is_404(client, admin):
    resp = client.post(
        URL,
        json={"title": "Nobody", "content": "body", "target_users": [987654]},
        headers=_auth(client, admin.username),
    )
    assert resp.status_code == 404


# ── End to end ───────────────────────────────────────────────

def test_urgent_broadcast_queues_email_then_flush(client, db_session, admin, targets):
    from app.models.broadcast import Broadcast
    from app.models.message import Message

    headers = _auth(client, admin.username)
    with_email, no_email = targets["with_email"], targets["no_email"]

    resp = client.post(URL, json={
        "title": "Maintenance",
        "content": "System will be down",
        "priority": "urgent",
        "target_users": [with_email.id, no_email.id],
    }, headers=headers)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["success"] is True
    assert data["sent_count"] == 2
    assert data["total_targets"] == 2
    assert data["scope"] == "custom"
    assert data["sent_count"] + len(data["failed_user_ids"]) == data["total_targets"]
    assert data["message_id_count"] == 2
    email = data["email_delivery"]
    assert email["triggered"] is True
    assert email["status"] == "queued"
    assert email["attempted_recipients"] == 1
    assert email["missing_email_user_ids"] == [no_email.id]
    assert email["completed_at"] is None
    assert resp.headers["X-Request-ID"] == data["request_id"]

    broadcast_id = data["broadcast_id"]
    stored = db_session.query(Broadcast).filter(Broadcast.id == broadcast_id).first()
    assert stored.email_status == "queued"
    assert stored.request_id == data["request_id"]
    assert stored.audit_log_id is not None
    inbox = db_session.query(Message).filter(Message.id.in_(data["message_ids"])).all()
    assert {m.receiver_id for m in inbox} == {with_email.id, no_email.id}
    assert all(m.priority == "urgent" and m.type == "system" for m in inbox)

    with patch(
        "app.services.email_service.BroadcastMailer.send_announcement_broadcast", return_value=True,
    ) as mock_send:
        flush = client.post(f"{URL}/flush", params={"force": "true", "ids": [broadcast_id]}, headers=headers)
    assert flush.status_code == 200, flush.text
    mock_send.assert_called_once()
    body = flush.json()
    assert body["count"] == 1
    item = body["processed"][0]
    assert item["id"] == broadcast_id
    assert item["previous_status"] == "queued"
    assert item["status"] == "partial"
    assert item["missing_email_user_ids"] == [no_email.id]

    db_session.expire_all()
    stored = db_session.query(Broadcast).filter(Broadcast.id == broadcast_id).first()
    assert stored.email_status == "partial"


def test_flush_without_force_never_sends(client, admin, targets):
    headers = _auth(client, admin.username)
    resp = client.post(URL, json={
        "title": "Reconcile via API",
        "content": "body",
        "priority": "high",
        "target_users": [targets["with_email"].id],
    }, headers=headers)
    broadcast_id = resp.json()["broadcast_id"]

    with patch("app.services.email_service.BroadcastMailer.send_announcement_broadcast") as mock_send:
        flush = client.post(f"{URL}/flush", params={"ids": [broadcast_id]}, headers=headers)
    mock_send.assert_not_called()
    assert flush.json()["processed"][0]["status"] == "sent"


def test_normal_priority_skips_email(client, admin, targets):
    resp = client.post(URL, json={
        "title": "FYI",
        "content": "Nothing urgent",
        "target_users": [targets["with_email"].id],
    }, headers=_auth(client, admin.username))
    assert resp.status_code == 200
    email = resp.json()["email_delivery"]
    assert email["triggered"] is False
    assert email["status"] == "skipped"


def test_invalid_ids_reported(client, admin, targets):
    resp = client.post(URL, json={
        "title": "Partly bogus",
        "content": "body",
        "target_users": [targets["with_email"].id, 999999],
    }, headers=_auth(client, admin.username))
    data = resp.json()
    assert data["sent_count"] == 1
    assert data["invalid_user_ids"] == [999999]


def test_failed_recipient_does_not_abort_fanout(client, admin, targets):
    from app.services.message_service import send_system_message

    bad_id = targets["no_email"].id

    def flaky(db, user_id, *args, **kwargs):
        if user_id == bad_id:
            raise RuntimeError("insert failed")
        return send_system_message(db, user_id, *args, **kwargs)

    with patch("app.services.broadcast_dispatcher.send_system_message", side_effect=flaky):
        resp = client.post(URL, json={
            "title": "Flaky fan-out",
            "content": "body",
            "target_users": [targets["with_email"].id, bad_id],
        }, headers=_auth(client, admin.username))

    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["sent_count"] == 1
    assert data["failed_user_ids"] == [bad_id]
    assert len(data["error_log_ids"]) == 1
    assert data["sent_count"] + len(data["failed_user_ids"]) == data["total_targets"]


def test_filter_groups_target_by_school(client, admin, make_user):
    a = make_user("api_school_a", email="a@northside.edu", school="Northside", school_id=881)
    b = make_user("api_school_b", email=None, school="Northside", school_id=881)
    resp = client.post(URL, json={
        "title": "Northside only",
        "content": "body",
        "target_filters": [{"school_id": 881}],
    }, headers=_auth(client, admin.username))
    data = resp.json()
    assert data["scope"] == "custom"
    assert data["total_targets"] == 2
    assert data["sent_count"] == 2
    assert data["invalid_user_ids"] == []
    assert data["email_delivery"]["status"] == "skipped"

    stored_receivers = client.get(
        f"{URL}/recipients", params={"school_id": 881}, headers=_auth(client, admin.username),
    ).json()["items"]
    assert {item["id"] for item in stored_receivers} == {a.id, b.id}


def test_large_broadcast_snapshot_is_capped(client, db_session, admin):
    from app.models.broadcast import Broadcast
    from app.models.user import User

    existing = db_session.query(User).filter(User.username.like("bulk_user_%")).count()
    if existing < 500:
        db_session.add_all([User(username=f"bulk_user_{i:03d}") for i in range(existing, 500)])
        db_session.commit()
    ids = [u.id for u in db_session.query(User).filter(User.username.like("bulk_user_%")).all()]

    resp = client.post(URL, json={
        "title": "Bulk notice",
        "content": "Five hundred recipients",
        "target_users": ids,
    }, headers=_auth(client, admin.username))
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["sent_count"] == 500
    assert data["message_id_count"] == 500
    assert len(data["message_ids"]) <= 200

    stored = db_session.query(Broadcast).filter(Broadcast.id == data["broadcast_id"]).first()
    assert len(stored.message_ids_snapshot) <= 200
    assert stored.message_ids_snapshot_truncated is True
    assert stored.message_map_snapshot_truncated is True
    assert stored.message_id_count == 500


# ── History and recipient preview ───────────────────────────

def test_history_reports_read_state(client, admin, targets):
    admin_headers = _auth(client, admin.username)
    reader, offline = targets["with_email"], targets["no_email"]

    resp = client.post(URL, json={
        "title": "Read tracking",
        "content": "Please open me",
        "target_users": [reader.id, offline.id],
    }, headers=admin_headers)
    data = resp.json()
    broadcast_id = data["broadcast_id"]

    reader_headers = _auth(client, reader.username)
    inbox = client.get("/api/messages", headers=reader_headers).json()["items"]
    message = next(m for m in inbox if m["title"] == "Read tracking")
    assert client.get(f"/api/messages/{message['id']}", headers=reader_headers).status_code == 200

    history = client.get(f"{URL}/history", params={"page": 1, "limit": 50}, headers=admin_headers)
    assert history.status_code == 200
    page = history.json()["data"]
    assert page["pagination"]["limit"] == 50
    entry = next(item for item in page["items"] if item["id"] == broadcast_id)
    assert entry["recipient_source"] == "snapshot"
    assert entry["read_count"] == 1
    assert entry["unread_count"] == 1
    assert [u["user_id"] for u in entry["read_users"]] == [reader.id]
    assert [u["user_id"] for u in entry["unread_users"]] == [offline.id]
    assert entry["read_users"][0]["read_at"] is not None


def test_history_is_newest_first_and_clamps_limit(client, admin):
    resp = client.get(f"{URL}/history", params={"limit": 1}, headers=_auth(client, admin.username))
    page = resp.json()["data"]
    assert page["pagination"]["limit"] == 5
    items = page["items"]
    ids = [item["id"] for item in items]
    assert ids == sorted(ids, reverse=True)


def test_recipient_preview(client, admin, make_user):
    make_user("api_preview_1", email="p1@preview.org", location="Chengdu")
    make_user("api_preview_2", email="p2@preview.org", location="Chengdu")
    resp = client.get(
        f"{URL}/recipients",
        params={"email_suffix": "@preview.org", "limit": 3},
        headers=_auth(client, admin.username),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 2
    assert data["limit"] == 10
    assert {item["username"] for item in data["items"]} == {"api_preview_1", "api_preview_2"}


def test_flush_records_audit_entry(client, db_session, admin):
    from app.models.audit_log import AuditLog

    before = db_session.query(AuditLog).filter(AuditLog.action == "broadcast_email_flush").count()
    resp = client.post(f"{URL}/flush", params={"limit": 1}, headers=_auth(client, admin.username))
    assert resp.status_code == 200
    db_session.expire_all()
    after = db_session.query(AuditLog).filter(AuditLog.action == "broadcast_email_flush").count()
    assert after == before + 1
