"""Advance queued broadcast emails toward a terminal state.

Two modes share one code path:

* ``force=True`` (deliver): call the mailer once per broadcast with every
  deliverable recipient that no earlier attempt has emailed, and record the
  outcome against that batch.
* ``force=False`` (reconcile): settle ``sent``/``partial``/``skipped`` from
  which recipients currently have an email address, without sending anything.
  This only updates bookkeeping; no provider quota is spent.

Rows are read, modified and written without a version column, so two flushes
running against the same row at the same time are last-writer-wins. The flush
is meant to be driven by a single admin action or a single periodic trigger.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import timedelta
from typing import Any, Iterable

from fastapi import Request
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.broadcast import Broadcast
from app.models.message import Message, MessageType
from app.models.user import User
from app.services.broadcast_store import compute_content_hash, load_email_state, save_email_state
from app.services.email_delivery import EmailStatus, partition_recipients
from app.services.email_service import BroadcastMailer
from app.services.error_log_service import log_error, log_exception
from app.services.recipient_resolver import RecipientRecord

logger = logging.getLogger(__name__)

FLUSH_LIMIT_MIN = 1
FLUSH_LIMIT_MAX = 50

SOURCE_SNAPSHOT = "snapshot"
SOURCE_CONTENT_HASH = "content_hash"
SOURCE_NONE = "none"


# ── Recipient recovery ───────────────────────────────────────


@dataclass
class BroadcastRecipients:
    messages: list[Message]
    source: str

    @property
    def receiver_ids(self) -> list[int]:
        return [m.receiver_id for m in self.messages]


def _snapshot_ids(broadcast: Broadcast) -> list[int]:
    raw = broadcast.message_ids_snapshot or []
    return [int(v) for v in raw if isinstance(v, int) and not isinstance(v, bool)]


def _messages_by_ids(db: Session, message_ids: list[int]) -> list[Message]:
    if not message_ids:
        return []
    return db.query(Message).filter(Message.id.in_(message_ids)).order_by(Message.id.asc()).all()


def match_messages_by_content_hash(db: Session, broadcast: Broadcast) -> list[Message]:
    """Find a broadcast's messages by title, creation window and content hash.

    This is a heuristic: two broadcasts with the same title and content sent
    by the same admin inside one window are indistinguishable.
    """
    if not broadcast.content_hash or broadcast.created_at is None:
        return []

    window_start = broadcast.created_at - timedelta(seconds=settings.broadcast_hash_window_before_seconds)
    window_end = broadcast.created_at + timedelta(seconds=settings.broadcast_hash_window_after_seconds)
    query = db.query(Message).filter(
        Message.title == broadcast.title,
        Message.type == MessageType.SYSTEM.value,
        Message.created_at >= window_start,
        Message.created_at <= window_end,
    )
    if broadcast.created_by is not None:
        query = query.filter(Message.sender_id == broadcast.created_by)

    matched: dict[int, Message] = {}
    for message in query.order_by(Message.id.asc()).all():
        if compute_content_hash(message.title, message.content) != broadcast.content_hash:
            continue
        matched.setdefault(message.receiver_id, message)
    return list(matched.values())


def resolve_broadcast_recipients(db: Session, broadcast: Broadcast) -> BroadcastRecipients:
    """Recover the messages a broadcast created.

    A complete message-id snapshot wins. When it is empty or was truncated the
    content-hash match is used; a truncated snapshot is still better than
    nothing if the hash match finds no messages.
    """
    snapshot_ids = _snapshot_ids(broadcast)
    if snapshot_ids and not broadcast.message_ids_snapshot_truncated:
        return BroadcastRecipients(_messages_by_ids(db, snapshot_ids), SOURCE_SNAPSHOT)

    matched = match_messages_by_content_hash(db, broadcast)
    if matched:
        return BroadcastRecipients(matched, SOURCE_CONTENT_HASH)

    if snapshot_ids:
        return BroadcastRecipients(_messages_by_ids(db, snapshot_ids), SOURCE_SNAPSHOT)
    return BroadcastRecipients([], SOURCE_NONE)


def load_recipient_records(db: Session, user_ids: Iterable[int]) -> list[RecipientRecord]:
    user_ids = list(dict.fromkeys(user_ids))
    if not user_ids:
        return []
    users = (
        db.query(User)
        .filter(User.id.in_(user_ids), User.deleted_at.is_(None))
        .order_by(User.id.asc())
        .all()
    )
    return [RecipientRecord.from_user(u) for u in users]


# ── Flush ────────────────────────────────────────────────────


@dataclass
class FlushItemResult:
    id: int
    status: str
    previous_status: str
    attempted: int
    force: bool
    missing_email_user_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FlushReport:
    processed: list[FlushItemResult] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.processed)


def clamp_flush_limit(limit: int) -> int:
    return max(FLUSH_LIMIT_MIN, min(FLUSH_LIMIT_MAX, int(limit)))


def is_flush_eligible(status: EmailStatus, force: bool) -> bool:
    if status in (EmailStatus.QUEUED, EmailStatus.PARTIAL):
        return True
    return force and status == EmailStatus.FAILED


def select_flush_candidates(
    db: Session,
    limit: int,
    force: bool = False,
    broadcast_ids: list[int] | None = None,
) -> list[Broadcast]:
    """Queued rows first, then partial, then failed; least recently flushed
    first within each. Explicit ids are loaded whatever their status.

    Partial rows whose missing users never gain an address stay partial, so
    they must not crowd queued rows out of a scan batch.
    """
    query = db.query(Broadcast)
    if broadcast_ids:
        query = query.filter(Broadcast.id.in_(broadcast_ids))
    else:
        statuses = [EmailStatus.QUEUED.value, EmailStatus.PARTIAL.value]
        if force:
            statuses.append(EmailStatus.FAILED.value)
        query = query.filter(Broadcast.email_status.in_(statuses))
    status_rank = case(
        (Broadcast.email_status == EmailStatus.QUEUED.value, 0),
        (Broadcast.email_status == EmailStatus.PARTIAL.value, 1),
        else_=2,
    )
    last_touched = func.coalesce(Broadcast.updated_at, Broadcast.created_at)
    return (
        query.order_by(status_rank, last_touched.asc(), Broadcast.id.asc())
        .limit(limit)
        .all()
    )


def flush_broadcast(
    db: Session,
    broadcast: Broadcast,
    force: bool,
    mailer: BroadcastMailer,
    request: Request | None = None,
) -> FlushItemResult:
    state = load_email_state(broadcast)
    previous_status = state.status

    recipients = resolve_broadcast_recipients(db, broadcast)
    records = load_recipient_records(db, recipients.receiver_ids)
    deliverable, missing = partition_recipients(records)

    if not force or not deliverable:
        state.reconcile(len(deliverable), missing)
    else:
        # Only recipients no earlier attempt has emailed
        batch = state.pending_recipients(deliverable)
        batch_ids = {r["user_id"] for r in batch}

        if not batch:
            state.record_send_success([], missing)
        else:
            error = None
            try:
                sent = mailer.send_announcement_broadcast(
                    [{"email": r["email"], "name": r["name"]} for r in batch],
                    broadcast.title,
                    broadcast.content,
                    broadcast.priority,
                )
                if not sent:
                    error = mailer.get_last_error() or "Email send failed"
            except Exception as e:
                sent = False
                error = str(e) or type(e).__name__

            if sent:
                state.record_send_success(batch_ids, missing)
            else:
                state.record_send_failure(batch_ids, missing, error)
                log_error(
                    db,
                    "broadcast_email_send",
                    error,
                    request,
                    context={"broadcast_id": broadcast.id, "recipients": len(batch)},
                )

    save_email_state(db, broadcast, state)
    logger.info(
        "Flushed broadcast %d: %s -> %s (source=%s, deliverable=%d, missing=%d, force=%s)",
        broadcast.id, previous_status.value, state.status.value, recipients.source,
        len(deliverable), len(missing), force,
    )
    return FlushItemResult(
        id=broadcast.id,
        status=state.status.value,
        previous_status=previous_status.value,
        attempted=state.attempted_recipients,
        force=force,
        missing_email_user_ids=sorted(state.missing_email_user_ids),
        errors=list(state.errors),
    )


def flush_email_queue(
    db: Session,
    limit: int = 10,
    force: bool = False,
    broadcast_ids: list[int] | None = None,
    mailer: BroadcastMailer | None = None,
    request: Request | None = None,
) -> FlushReport:
    """Process up to ``limit`` broadcasts. One candidate's failure never stops the rest."""
    limit = clamp_flush_limit(limit)
    mailer = mailer or BroadcastMailer()
    report = FlushReport()

    for broadcast in select_flush_candidates(db, limit, force, broadcast_ids):
        broadcast_id = broadcast.id
        previous = load_email_state(broadcast).status
        if not is_flush_eligible(previous, force):
            report.skipped.append(broadcast_id)
            continue
        try:
            report.processed.append(flush_broadcast(db, broadcast, force, mailer, request))
        except Exception as e:
            db.rollback()
            logger.error("Flush of broadcast %d failed: %s", broadcast_id, e, exc_info=True)
            try:
                log_exception(db, e, request, context={"broadcast_id": broadcast_id, "force": force})
                db.commit()
            except Exception:
                db.rollback()
            report.processed.append(FlushItemResult(
                id=broadcast_id,
                status=EmailStatus.FAILED.value,
                previous_status=previous.value,
                attempted=0,
                force=force,
                errors=[str(e) or type(e).__name__],
            ))

    logger.info(
        "Broadcast email flush finished: processed=%d skipped=%d force=%s",
        report.count, len(report.skipped), force,
    )
    return report


def reconcile_email_queue(db: Session, limit: int = 10, broadcast_ids: list[int] | None = None) -> FlushReport:
    return flush_email_queue(db, limit=limit, force=False, broadcast_ids=broadcast_ids)


def deliver_email_queue(
    db: Session,
    limit: int = 10,
    broadcast_ids: list[int] | None = None,
    mailer: BroadcastMailer | None = None,
) -> FlushReport:
    return flush_email_queue(db, limit=limit, force=True, broadcast_ids=broadcast_ids, mailer=mailer)
