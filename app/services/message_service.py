import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.message import Message, MessageType, MessagePriority

logger = logging.getLogger(__name__)


@dataclass
class EmailQueueResult:
    queued: bool
    error: str | None = None


def send_system_message(
    db: Session,
    user_id: int,
    title: str,
    content: str,
    priority: str = MessagePriority.NORMAL.value,
    sender_id: int | None = None,
) -> Message:
    """Create and commit one system message for ``user_id``.

    Each message is its own transaction. On failure the session is rolled back
    and the exception propagates to the caller.
    """
    message = Message(
        sender_id=sender_id,
        receiver_id=user_id,
        title=title,
        content=content,
        type=MessageType.SYSTEM.value,
        priority=priority,
        is_read=False,
    )
    try:
        db.add(message)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(message)
    return message


def queue_broadcast_email(
    recipients: list[dict],
    title: str,
    content: str,
    priority: str,
    meta: dict[str, Any] | None = None,
) -> EmailQueueResult:
    """Accept a broadcast email for deferred delivery.

    The durable queue is the broadcast row itself (``email_status = queued``);
    delivery happens when the queue is flushed. This only checks that email
    escalation is enabled and the payload is deliverable.
    """
    if not settings.broadcast_email_enabled:
        return EmailQueueResult(queued=False, error="Broadcast email delivery is disabled")
    if not recipients:
        return EmailQueueResult(queued=False, error="No deliverable recipients")
    if not title or not content:
        return EmailQueueResult(queued=False, error="Email subject and body are required")

    logger.info(
        "Queued broadcast email | recipients=%d | priority=%s | request_id=%s",
        len(recipients), priority, (meta or {}).get("request_id"),
    )
    return EmailQueueResult(queued=True)
