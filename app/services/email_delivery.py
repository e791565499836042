"""Email escalation for broadcasts: the delivery state machine and the planner.

State transitions::

    skipped --(deliverable recipients, priority qualifies)--> queued
    skipped --(queueing layer error)------------------------> failed
    queued  --(flush: all deliverable reached)--------------> sent
    queued  --(flush: some reached)-------------------------> partial
    queued  --(flush: send attempt fails outright)----------> failed
    partial/failed --(flush)--------------------------------> sent|partial|failed
    sent    -- terminal

A flush that finds nobody deliverable moves queued/partial/failed to skipped.
``completed_at`` is only stamped by a flush, never by the initial enqueue.
A forced flush only emails deliverable recipients not yet in
``delivered_user_ids``, whatever the previous outcome was.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from fastapi import Request
from sqlalchemy.orm import Session

from app.models.message import EMAIL_ESCALATION_PRIORITIES
from app.services.error_log_service import log_error
from app.services.message_service import EmailQueueResult, queue_broadcast_email
from app.services.recipient_resolver import RecipientRecord

logger = logging.getLogger(__name__)


class EmailStatus(str, enum.Enum):
    SKIPPED = "skipped"
    QUEUED = "queued"
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"


_FLUSH_OUTCOMES = {EmailStatus.SENT, EmailStatus.PARTIAL, EmailStatus.FAILED, EmailStatus.SKIPPED}

ALLOWED_TRANSITIONS: dict[EmailStatus, set[EmailStatus]] = {
    EmailStatus.SKIPPED: {EmailStatus.QUEUED, EmailStatus.FAILED},
    EmailStatus.QUEUED: _FLUSH_OUTCOMES,
    EmailStatus.PARTIAL: _FLUSH_OUTCOMES,
    EmailStatus.FAILED: _FLUSH_OUTCOMES,
    EmailStatus.SENT: set(),
}


class InvalidEmailTransition(RuntimeError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _int_set(values: Any) -> set[int]:
    if not isinstance(values, (list, tuple, set)):
        return set()
    return {int(v) for v in values if isinstance(v, int) and not isinstance(v, bool)}


@dataclass
class EmailDeliveryState:
    triggered: bool = False
    attempted_recipients: int = 0
    successful_chunks: int = 0
    failed_chunks: int = 0
    failed_recipient_ids: set[int] = field(default_factory=set)
    missing_email_user_ids: set[int] = field(default_factory=set)
    # Everyone an email has actually gone to; retries never resend to these
    delivered_user_ids: set[int] = field(default_factory=set)
    status: EmailStatus = EmailStatus.SKIPPED
    errors: list[str] = field(default_factory=list)
    completed_at: datetime | None = None

    def add_error(self, message: str | None) -> None:
        if message and message not in self.errors:
            self.errors.append(message)

    def _move_to(self, target: EmailStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidEmailTransition(f"Cannot move email delivery from {self.status.value} to {target.value}")
        self.status = target

    # -- enqueue ------------------------------------------------------------

    def mark_queued(self) -> None:
        self._move_to(EmailStatus.QUEUED)

    def mark_queue_failed(self, error: str) -> None:
        self._move_to(EmailStatus.FAILED)
        self.add_error(error)

    # -- flush outcomes -------------------------------------------------------

    def pending_recipients(self, deliverable: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        """Deliverable entries that have not been emailed yet."""
        return [r for r in deliverable if r["user_id"] not in self.delivered_user_ids]

    def _reset_attempt(self, attempted: int, missing_ids: Iterable[int]) -> None:
        self.attempted_recipients = attempted
        self.missing_email_user_ids = set(missing_ids)
        self.successful_chunks = 0
        self.failed_chunks = 0

    def reconcile(self, attempted: int, missing_ids: Iterable[int], now: datetime | None = None) -> None:
        """Settle status from address availability alone, without sending.

        ``delivered_user_ids`` is left alone so a later forced send still
        knows who was already reached.
        """
        self._reset_attempt(attempted, missing_ids)
        if attempted == 0:
            self._move_to(EmailStatus.SKIPPED)
        elif self.missing_email_user_ids:
            self._move_to(EmailStatus.PARTIAL)
        else:
            self._move_to(EmailStatus.SENT)
        self.failed_recipient_ids = set()
        self.completed_at = now or _utcnow()

    def record_send_success(
        self,
        sent_ids: Iterable[int],
        missing_ids: Iterable[int],
        now: datetime | None = None,
    ) -> None:
        """Record a send to ``sent_ids``; an empty batch means nobody was left to send to."""
        sent_ids = set(sent_ids)
        self._reset_attempt(len(sent_ids), missing_ids)
        self.successful_chunks = 1 if sent_ids else 0
        self.delivered_user_ids |= sent_ids
        self.failed_recipient_ids -= sent_ids
        self._move_to(EmailStatus.PARTIAL if self.missing_email_user_ids else EmailStatus.SENT)
        self.completed_at = now or _utcnow()

    def record_send_failure(
        self,
        batch_ids: Iterable[int],
        missing_ids: Iterable[int],
        error: str | None,
        now: datetime | None = None,
    ) -> None:
        batch_ids = set(batch_ids)
        self._reset_attempt(len(batch_ids), missing_ids)
        self.failed_chunks = 1
        self.failed_recipient_ids |= batch_ids
        self.add_error(error or "Email send failed")
        self._move_to(EmailStatus.FAILED)
        self.completed_at = now or _utcnow()

    # -- persistence boundary ---------------------------------------------

    def to_snapshot(self, error_cap: int = 100) -> dict[str, Any]:
        """Serialise for the broadcast row.

        Failed/missing ids and errors are capped for display. Delivered ids
        are kept whole because retries are computed from them.
        """
        failed_ids = sorted(self.failed_recipient_ids)
        missing_ids = sorted(self.missing_email_user_ids)
        return {
            "triggered": self.triggered,
            "status": self.status.value,
            "attempted_recipients": self.attempted_recipients,
            "successful_chunks": self.successful_chunks,
            "failed_chunks": self.failed_chunks,
            "failed_recipient_ids": failed_ids[:error_cap],
            "failed_recipient_ids_truncated": len(failed_ids) > error_cap,
            "missing_email_user_ids": missing_ids[:error_cap],
            "missing_email_user_ids_truncated": len(missing_ids) > error_cap,
            "delivered_user_ids": sorted(self.delivered_user_ids),
            "errors": self.errors[:error_cap],
            "errors_truncated": len(self.errors) > error_cap,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any] | None) -> "EmailDeliveryState":
        if not isinstance(data, dict):
            return cls()
        try:
            status = EmailStatus(data.get("status") or EmailStatus.SKIPPED.value)
        except ValueError:
            status = EmailStatus.SKIPPED
        completed_at = None
        if data.get("completed_at"):
            try:
                completed_at = datetime.fromisoformat(data["completed_at"])
            except (TypeError, ValueError):
                completed_at = None
        errors: list[str] = []
        for message in data.get("errors") or []:
            if isinstance(message, str) and message not in errors:
                errors.append(message)
        return cls(
            triggered=bool(data.get("triggered")),
            attempted_recipients=int(data.get("attempted_recipients") or 0),
            successful_chunks=int(data.get("successful_chunks") or 0),
            failed_chunks=int(data.get("failed_chunks") or 0),
            failed_recipient_ids=_int_set(data.get("failed_recipient_ids")),
            missing_email_user_ids=_int_set(data.get("missing_email_user_ids")),
            delivered_user_ids=_int_set(data.get("delivered_user_ids")),
            status=status,
            errors=errors,
            completed_at=completed_at,
        )

    def to_response(self) -> dict[str, Any]:
        return {
            "triggered": self.triggered,
            "status": self.status.value,
            "attempted_recipients": self.attempted_recipients,
            "successful_chunks": self.successful_chunks,
            "failed_chunks": self.failed_chunks,
            "failed_recipient_ids": sorted(self.failed_recipient_ids),
            "missing_email_user_ids": sorted(self.missing_email_user_ids),
            "errors": list(self.errors),
            "completed_at": self.completed_at,
        }


def qualifies_for_email(priority: str) -> bool:
    return priority in EMAIL_ESCALATION_PRIORITIES


def partition_recipients(records: Iterable[RecipientRecord]) -> tuple[list[dict[str, Any]], set[int]]:
    """Split recipients into deliverable ``{user_id, email, name}`` entries and missing ids."""
    deliverable: list[dict[str, Any]] = []
    missing: set[int] = set()
    for record in records:
        email = (record.email or "").strip()
        if not email:
            missing.add(record.id)
            continue
        deliverable.append({
            "user_id": record.id,
            "email": email,
            "name": (record.username or "").strip() or email,
        })
    return deliverable, missing


def plan_email_delivery(
    db: Session,
    records: Iterable[RecipientRecord],
    title: str,
    content: str,
    priority: str,
    meta: dict[str, Any] | None = None,
    request: Request | None = None,
) -> tuple[EmailDeliveryState, list[int]]:
    """Decide whether a broadcast escalates to email and enqueue it.

    Returns the initial delivery state and any error-log ids written.
    """
    state = EmailDeliveryState()
    if not qualifies_for_email(priority):
        return state, []

    state.triggered = True
    deliverable, missing = partition_recipients(records)
    state.attempted_recipients = len(deliverable)
    state.missing_email_user_ids = missing
    if not deliverable:
        logger.info("Email escalation skipped: no recipient has an email address")
        return state, []

    try:
        result = queue_broadcast_email(deliverable, title, content, priority, meta or {})
    except Exception as e:
        result = EmailQueueResult(queued=False, error=str(e) or type(e).__name__)

    if result.queued:
        state.mark_queued()
        return state, []

    error = result.error or "Failed to queue broadcast email"
    state.mark_queue_failed(error)
    error_log_id = log_error(
        db,
        "broadcast_email_queue",
        error,
        request,
        context={"title": title, "priority": priority, "recipients": len(deliverable)},
    )
    return state, [error_log_id] if error_log_id else []
