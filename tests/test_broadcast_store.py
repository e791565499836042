from unittest.mock import patch

from app.models.broadcast import Broadcast
from app.services.broadcast_dispatcher import DispatchResult
from app.services.broadcast_store import (
    cap_list,
    cap_map,
    compute_content_hash,
    load_email_state,
    record_broadcast,
    save_email_state,
)
from app.services.email_delivery import EmailDeliveryState, EmailStatus
from app.services.recipient_resolver import RecipientRecord, ResolvedRecipients


def _resolved(ids, invalid=()):
    records = {
        uid: RecipientRecord(
            id=uid, username=f"u{uid}", email=None, school=None,
            school_id=None, location=None, is_admin=False, status="active",
        )
        for uid in ids
    }
    return ResolvedRecipients(records=records, invalid_ids=list(invalid), scope="custom")


def _record(db, resolved, dispatch, email_state=None, **overrides):
    kwargs = dict(
        created_by=None,
        title="Store test",
        content="Body",
        priority="normal",
        scope="custom",
        filters_snapshot={"scope": "custom"},
        resolved=resolved,
        dispatch=dispatch,
        email_state=email_state or EmailDeliveryState(),
    )
    kwargs.update(overrides)
    return record_broadcast(db, **kwargs)


def test_content_hash_is_deterministic():
    first = compute_content_hash("Maintenance", "System will be down")
    assert first == compute_content_hash("Maintenance", "System will be down")
    assert first != compute_content_hash("Maintenance", "System will be up")
    assert len(first) == 64


def test_cap_helpers():
    assert cap_list([1, 2, 3], 5) == ([1, 2, 3], False)
    assert cap_list([1, 2, 3], 2) == ([1, 2], True)
    assert cap_map({1: 10, 2: 20}, 1) == ({"1": 10}, True)


def test_record_broadcast_persists_counts(db_session):
    dispatch = DispatchResult(message_map={1: 101, 2: 102}, failed_user_ids=[3])
    row = _record(db_session, _resolved([1, 2, 3], invalid=[999]), dispatch)

    assert row is not None
    stored = db_session.query(Broadcast).filter(Broadcast.id == row.id).first()
    assert stored.target_count == 3
    assert stored.sent_count == 2
    assert stored.failed_user_ids == [3]
    assert stored.invalid_user_ids == [999]
    assert stored.message_ids_snapshot == [101, 102]
    assert stored.message_map_snapshot == {"1": 101, "2": 102}
    assert stored.message_id_count == 2
    assert stored.message_ids_snapshot_truncated is False
    assert stored.content_hash == compute_content_hash("Store test", "Body")
    assert stored.email_status == "skipped"


def test_record_broadcast_truncates_large_snapshots(db_session):
    ids = list(range(1, 501))
    dispatch = DispatchResult(message_map={uid: 10_000 + uid for uid in ids})
    row = _record(db_session, _resolved(ids), dispatch)

    assert row.message_id_count == 500
    assert len(row.message_ids_snapshot) == 200
    assert row.message_ids_snapshot_truncated is True
    assert len(row.message_map_snapshot) == 200
    assert row.message_map_snapshot_truncated is True


def test_record_broadcast_failure_returns_none(db_session):
    dispatch = DispatchResult(message_map={1: 1})
    with patch.object(db_session, "commit", side_effect=[RuntimeError("disk full"), None]):
        row = _record(db_session, _resolved([1]), dispatch)
    assert row is None


def test_save_email_state_last_writer_wins(app, db_session):
    from app.db.database import SessionLocal

    state = EmailDeliveryState(triggered=True)
    state.mark_queued()
    row = _record(db_session, _resolved([1]), DispatchResult(message_map={1: 1}), email_state=state)

    first, second = SessionLocal(), SessionLocal()
    try:
        row_a = first.query(Broadcast).filter(Broadcast.id == row.id).first()
        row_b = second.query(Broadcast).filter(Broadcast.id == row.id).first()

        state_a = load_email_state(row_a)
        state_a.record_send_success([1], missing_ids=[])
        state_b = load_email_state(row_b)
        state_b.record_send_failure([1], [], "provider rejected")

        save_email_state(first, row_a, state_a)
        save_email_state(second, row_b, state_b)
    finally:
        first.close()
        second.close()

    db_session.expire_all()
    final = db_session.query(Broadcast).filter(Broadcast.id == row.id).first()
    assert final.email_status == EmailStatus.FAILED.value
    assert final.email_delivery["errors"] == ["provider rejected"]
