import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.middleware import get_request_id
from app.core.utils import client_ip
from app.db.database import get_db
from app.models.audit_log import AuditAction
from app.models.broadcast import BroadcastScope
from app.models.message import MessagePriority
from app.models.user import User
from app.api.deps import require_admin
from app.schemas.broadcast import (
    BroadcastCreate, BroadcastSendResponse,
    BroadcastFlushResponse, BroadcastHistoryResponse,
    RecipientFilter, RecipientSearchResponse, SearchField,
)
from app.services.audit_service import log_action
from app.services.broadcast_dispatcher import dispatch_broadcast_messages
from app.services.broadcast_flusher import flush_email_queue
from app.services.broadcast_history import get_broadcast_history
from app.services.broadcast_store import cap_list, record_broadcast
from app.services.email_delivery import plan_email_delivery
from app.services.email_service import BroadcastMailer
from app.services.recipient_resolver import (
    RecipientResolutionError, resolve_recipients, sanitize_user_ids, search_recipients,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/broadcast", tags=["Admin Broadcasts"])

TITLE_MAX_LENGTH = 255
_VALID_PRIORITIES = {p.value for p in MessagePriority}
_VALID_SCOPES = {s.value for s in BroadcastScope}


def _bad_request(detail: str, code: int = status.HTTP_400_BAD_REQUEST) -> HTTPException:
    return HTTPException(status_code=code, detail=detail)


def _clean_text(value) -> str:
    return "" if value is None else str(value).strip()


def _parse_filters(raw) -> list[RecipientFilter]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise _bad_request("target_filters must be an array of filter objects")
    groups = []
    for item in raw:
        if not isinstance(item, dict):
            raise _bad_request("target_filters must be an array of filter objects")
        try:
            groups.append(RecipientFilter.model_validate(item))
        except ValidationError as e:
            raise _bad_request(f"Invalid target_filters entry: {e.errors()[0]['msg']}")
    return groups


@router.post("", response_model=BroadcastSendResponse)
def send_broadcast(
    data: BroadcastCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Send a system message to the resolved recipients, escalating high-priority broadcasts to email."""
    title = _clean_text(data.title)
    if not title:
        raise _bad_request("Missing required field: title")
    if len(title) > TITLE_MAX_LENGTH:
        raise _bad_request("Title must be 255 characters or less", status.HTTP_422_UNPROCESSABLE_ENTITY)

    content = _clean_text(data.content)
    if not content:
        raise _bad_request("Missing required field: content")

    priority = _clean_text(data.priority).lower() or MessagePriority.NORMAL.value
    if priority not in _VALID_PRIORITIES:
        raise _bad_request("Invalid priority value", status.HTTP_422_UNPROCESSABLE_ENTITY)

    target_users = data.target_users
    if target_users is not None and not isinstance(target_users, list):
        raise _bad_request("target_users must be an array of positive integers")
    filters = _parse_filters(data.target_filters)

    has_targets = target_users is not None or bool(filters)
    scope = _clean_text(data.scope).lower() or (BroadcastScope.CUSTOM.value if has_targets else BroadcastScope.ALL.value)
    if scope not in _VALID_SCOPES:
        raise _bad_request("Invalid scope value", status.HTTP_422_UNPROCESSABLE_ENTITY)

    try:
        resolved = resolve_recipients(db, target_users, filters, scope)
    except RecipientResolutionError as e:
        raise _bad_request(str(e))

    if not resolved.records:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No target users found for broadcast")

    request_id = get_request_id(request)
    ip = client_ip(request)
    user_agent = request.headers.get("user-agent")

    dispatch = dispatch_broadcast_messages(
        db, resolved.ids, title, content, priority, sender_id=current_user.id, request=request,
    )

    meta = {"request_id": request_id, "ip_address": ip, "user_agent": user_agent}
    email_state, queue_error_ids = plan_email_delivery(
        db, resolved.records.values(), title, content, priority, meta=meta, request=request,
    )
    error_log_ids = dispatch.error_log_ids + queue_error_ids

    audit_log_id = log_action(
        db,
        user_id=current_user.id,
        action=AuditAction.BROADCAST_SEND.value,
        resource_type="messages",
        details={
            "title": title,
            "priority": priority,
            "scope": scope,
            "target_count": len(resolved),
            "sent_count": dispatch.sent_count,
            "invalid_user_ids": cap_list(resolved.invalid_ids, settings.broadcast_snapshot_error_cap)[0],
            "failed_user_ids": cap_list(dispatch.failed_user_ids, settings.broadcast_snapshot_error_cap)[0],
            "email_status": email_state.status.value,
        },
        ip_address=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        audit_log_id = None
        logger.warning("Failed to commit broadcast audit entry", exc_info=True)

    filters_snapshot = {
        "scope": scope,
        "target_users": cap_list(sanitize_user_ids(target_users or []), settings.broadcast_snapshot_id_cap)[0],
        "target_filters": [f.model_dump() for f in filters],
    }
    broadcast = record_broadcast(
        db,
        created_by=current_user.id,
        title=title,
        content=content,
        priority=priority,
        scope=scope,
        filters_snapshot=filters_snapshot,
        resolved=resolved,
        dispatch=dispatch,
        email_state=email_state,
        request_id=request_id,
        audit_log_id=audit_log_id,
        error_log_ids=error_log_ids,
        meta=meta,
        request=request,
    )

    logger.info(
        "Admin %d broadcast '%s': sent=%d/%d failed=%d email=%s",
        current_user.id, title, dispatch.sent_count, len(resolved),
        len(dispatch.failed_user_ids), email_state.status.value,
    )
    return BroadcastSendResponse(
        broadcast_id=broadcast.id if broadcast else None,
        sent_count=dispatch.sent_count,
        total_targets=len(resolved),
        failed_user_ids=dispatch.failed_user_ids,
        invalid_user_ids=resolved.invalid_ids,
        scope=scope,
        priority=priority,
        message_ids=cap_list(dispatch.message_ids, settings.broadcast_snapshot_id_cap)[0],
        message_id_count=len(dispatch.message_map),
        email_delivery=email_state.to_response(),
        error_log_ids=error_log_ids,
        request_id=request_id,
    )


@router.post("/flush", response_model=BroadcastFlushResponse)
def flush_broadcast_emails(
    request: Request,
    limit: int = Query(10),
    force: bool = Query(False),
    ids: list[int] | None = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Advance queued/partial broadcast emails.

    ``force=false`` is reconciliation only: statuses are settled from which
    recipients have an email address and nothing is sent. ``force=true``
    actually sends through the configured email provider.
    """
    report = flush_email_queue(
        db, limit=limit, force=force, broadcast_ids=ids, mailer=BroadcastMailer(), request=request,
    )

    log_action(
        db,
        user_id=current_user.id,
        action=AuditAction.BROADCAST_FLUSH.value,
        resource_type="broadcasts",
        details={
            "force": force,
            "processed": [{"id": item.id, "status": item.status} for item in report.processed],
            "skipped": report.skipped,
        },
        ip_address=client_ip(request),
        request_id=get_request_id(request),
    )
    db.commit()

    return BroadcastFlushResponse(
        processed=[item.to_dict() for item in report.processed],
        skipped=report.skipped,
        count=report.count,
    )


@router.get("/history", response_model=BroadcastHistoryResponse)
def broadcast_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """List past broadcasts with who has and has not read them."""
    return BroadcastHistoryResponse(data=get_broadcast_history(db, page=page, limit=limit))


@router.get("/recipients", response_model=RecipientSearchResponse)
def search_broadcast_recipients(
    search: str | None = None,
    fields: list[SearchField] = Query([]),
    school_id: int | None = None,
    school: str | None = None,
    email_suffix: str | None = None,
    user_status: str | None = Query(None, alias="status"),
    is_admin: bool | None = None,
    include_ids: list[int] = Query([]),
    exclude_ids: list[int] = Query([]),
    limit: int = Query(50),
    offset: int = Query(0),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Preview one recipient filter group, as used by the broadcast composer."""
    criteria = RecipientFilter(
        search=search,
        fields=fields,
        school_id=school_id,
        school=school,
        email_suffix=email_suffix,
        status=user_status,
        is_admin=is_admin,
        include_ids=include_ids,
        exclude_ids=exclude_ids,
        limit=limit,
        offset=offset,
    )
    records, total = search_recipients(db, criteria)
    return RecipientSearchResponse(
        items=[r.to_dict() for r in records],
        total=total,
        limit=criteria.limit,
        offset=criteria.offset,
    )
