import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
from sqlalchemy import desc

from app.core.utils import client_ip
from app.db.database import get_db
from app.models.audit_log import AuditAction
from app.models.message import Message
from app.models.user import User
from app.schemas.message import MessageList, MessageResponse, UnreadCountResponse, MarkAllReadResponse
from app.api.deps import get_current_user
from app.services.audit_service import log_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["Messages"])


def _inbox(db: Session, user: User):
    return db.query(Message).filter(
        Message.receiver_id == user.id,
        Message.deleted_at.is_(None),
    )


def _get_own_message(db: Session, user: User, message_id: int) -> Message:
    message = _inbox(db, user).filter(Message.id == message_id).first()
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    return message


@router.get("", response_model=MessageList)
def list_messages(
    unread_only: bool = False,
    priority: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List the current user's messages, newest first."""
    query = _inbox(db, current_user)
    if unread_only:
        query = query.filter(Message.is_read == False)  # noqa: E712
    if priority:
        query = query.filter(Message.priority == priority.lower())

    total = query.count()
    unread = _inbox(db, current_user).filter(Message.is_read == False).count()  # noqa: E712
    items = query.order_by(desc(Message.created_at), desc(Message.id)).offset(skip).limit(limit).all()
    return MessageList(items=items, total=total, unread=unread)


@router.get("/unread-count", response_model=UnreadCountResponse)
def get_unread_count(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Get the number of unread messages."""
    count = _inbox(db, current_user).filter(Message.is_read == False).count()  # noqa: E712
    return UnreadCountResponse(count=count)


@router.put("/read-all", response_model=MarkAllReadResponse)
def mark_all_as_read(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Mark every unread message as read."""
    updated = (
        _inbox(db, current_user)
        .filter(Message.is_read == False)  # noqa: E712
        .update({"is_read": True, "read_at": datetime.now(timezone.utc)}, synchronize_session=False)
    )
    db.commit()
    return MarkAllReadResponse(updated=updated)


@router.get("/{message_id}", response_model=MessageResponse)
def get_message(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Open a message. Opening marks it as read."""
    message = _get_own_message(db, current_user, message_id)
    if not message.is_read:
        message.is_read = True
        message.read_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(message)
    return message


@router.put("/{message_id}/read", response_model=MessageResponse)
def mark_as_read(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Mark a single message as read."""
    message = _get_own_message(db, current_user, message_id)
    if not message.is_read:
        message.is_read = True
        message.read_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(message)
    return message


@router.delete("/{message_id}", status_code=204)
def delete_message(
    message_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Soft-delete a message from the current user's inbox."""
    message = _get_own_message(db, current_user, message_id)
    message.deleted_at = datetime.now(timezone.utc)
    log_action(
        db,
        user_id=current_user.id,
        action=AuditAction.MESSAGE_DELETE.value,
        resource_type="message",
        resource_id=message.id,
        ip_address=client_ip(request),
    )
    db.commit()
