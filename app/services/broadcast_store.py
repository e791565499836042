"""Durable broadcast rows.

One row is inserted per broadcast attempt after the fan-out has run. Large
collections are capped before they are written so the row stays bounded no
matter how many users were targeted.
"""

import hashlib
import logging
from typing import Any, Sequence

from fastapi import Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.broadcast import Broadcast
from app.services.broadcast_dispatcher import DispatchResult
from app.services.email_delivery import EmailDeliveryState
from app.services.error_log_service import log_exception
from app.services.recipient_resolver import ResolvedRecipients

logger = logging.getLogger(__name__)


def compute_content_hash(title: str, content: str) -> str:
    return hashlib.sha256(f"{title}{content}".encode("utf-8")).hexdigest()


def cap_list(values: Sequence[Any], cap: int) -> tuple[list[Any], bool]:
    values = list(values)
    return values[:cap], len(values) > cap


def cap_map(mapping: dict[int, int], cap: int) -> tuple[dict[str, int], bool]:
    items = list(mapping.items())
    return {str(k): v for k, v in items[:cap]}, len(items) > cap


def record_broadcast(
    db: Session,
    *,
    created_by: int | None,
    title: str,
    content: str,
    priority: str,
    scope: str,
    filters_snapshot: dict[str, Any] | None,
    resolved: ResolvedRecipients,
    dispatch: DispatchResult,
    email_state: EmailDeliveryState,
    request_id: str | None = None,
    audit_log_id: int | None = None,
    error_log_ids: list[int] | None = None,
    meta: dict[str, Any] | None = None,
    request: Request | None = None,
) -> Broadcast | None:
    """Insert the broadcast row in a single commit.

    Returns None when persistence fails; by then recipients already have their
    messages, so the failure is rolled back and logged but not raised.
    """
    id_cap = settings.broadcast_snapshot_id_cap
    list_cap = settings.broadcast_snapshot_error_cap

    message_ids, message_ids_truncated = cap_list(dispatch.message_ids, id_cap)
    message_map, message_map_truncated = cap_map(dispatch.message_map, id_cap)
    failed_ids, failed_truncated = cap_list(dispatch.failed_user_ids, list_cap)
    invalid_ids, invalid_truncated = cap_list(resolved.invalid_ids, list_cap)
    error_ids, _ = cap_list(error_log_ids or [], list_cap)

    broadcast = Broadcast(
        created_by=created_by,
        request_id=request_id,
        audit_log_id=audit_log_id,
        error_log_ids=error_ids,
        title=title,
        content=content,
        priority=priority,
        scope=scope,
        filters_snapshot=filters_snapshot,
        target_count=len(resolved),
        sent_count=dispatch.sent_count,
        invalid_user_ids=invalid_ids,
        invalid_user_ids_truncated=invalid_truncated,
        failed_user_ids=failed_ids,
        failed_user_ids_truncated=failed_truncated,
        message_ids_snapshot=message_ids,
        message_ids_snapshot_truncated=message_ids_truncated,
        message_map_snapshot=message_map,
        message_map_snapshot_truncated=message_map_truncated,
        message_id_count=len(dispatch.message_map),
        content_hash=compute_content_hash(title, content),
        email_status=email_state.status.value,
        email_delivery=email_state.to_snapshot(list_cap),
        meta=meta,
    )
    try:
        db.add(broadcast)
        db.commit()
        db.refresh(broadcast)
    except Exception as e:
        db.rollback()
        logger.error("Failed to persist broadcast record: %s", e, exc_info=True)
        try:
            log_exception(db, e, request, context={"title": title, "target_count": len(resolved)})
            db.commit()
        except Exception:
            db.rollback()
            logger.warning("Could not persist error log for broadcast record failure", exc_info=True)
        return None

    logger.info(
        "Recorded broadcast %d (targets=%d sent=%d email=%s)",
        broadcast.id, broadcast.target_count, broadcast.sent_count, broadcast.email_status,
    )
    return broadcast


def load_email_state(broadcast: Broadcast) -> EmailDeliveryState:
    return EmailDeliveryState.from_snapshot(broadcast.email_delivery)


def save_email_state(db: Session, broadcast: Broadcast, state: EmailDeliveryState) -> None:
    """Write the delivery state back to its row and commit.

    There is no version column: two writers on the same row are
    last-writer-wins.
    """
    broadcast.email_delivery = state.to_snapshot(settings.broadcast_snapshot_error_cap)
    broadcast.email_status = state.status.value
    db.commit()
