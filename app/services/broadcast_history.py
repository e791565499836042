"""Read-only broadcast history with per-recipient read/unread state."""

import math
from typing import Any

from sqlalchemy.orm import Session

from app.models.broadcast import Broadcast
from app.models.user import User
from app.services.broadcast_flusher import resolve_broadcast_recipients
from app.services.broadcast_store import load_email_state

HISTORY_LIMIT_MIN = 5
HISTORY_LIMIT_MAX = 50


def _read_states(db: Session, broadcast: Broadcast) -> tuple[str, list[dict], list[dict]]:
    recipients = resolve_broadcast_recipients(db, broadcast)
    receiver_ids = recipients.receiver_ids
    usernames: dict[int, str] = {}
    if receiver_ids:
        rows = db.query(User.id, User.username).filter(User.id.in_(receiver_ids)).all()
        usernames = {row.id: row.username for row in rows}

    read_users: list[dict] = []
    unread_users: list[dict] = []
    for message in recipients.messages:
        entry = {
            "user_id": message.receiver_id,
            "username": usernames.get(message.receiver_id),
            "message_id": message.id,
            "read_at": message.read_at,
        }
        (read_users if message.is_read else unread_users).append(entry)
    return recipients.source, read_users, unread_users


def summarize_broadcast(db: Session, broadcast: Broadcast) -> dict[str, Any]:
    source, read_users, unread_users = _read_states(db, broadcast)
    return {
        "id": broadcast.id,
        "title": broadcast.title,
        "content": broadcast.content,
        "priority": broadcast.priority,
        "scope": broadcast.scope,
        "created_by": broadcast.created_by,
        "created_at": broadcast.created_at,
        "target_count": broadcast.target_count,
        "sent_count": broadcast.sent_count,
        "failed_user_ids": list(broadcast.failed_user_ids or []),
        "invalid_user_ids": list(broadcast.invalid_user_ids or []),
        "message_id_count": broadcast.message_id_count or 0,
        "email_delivery": load_email_state(broadcast).to_response(),
        "recipient_source": source,
        "read_count": len(read_users),
        "unread_count": len(unread_users),
        "read_users": read_users,
        "unread_users": unread_users,
    }


def get_broadcast_history(db: Session, page: int = 1, limit: int = 20) -> dict[str, Any]:
    """Newest first. Never writes to the broadcast rows."""
    page = max(1, page)
    limit = max(HISTORY_LIMIT_MIN, min(HISTORY_LIMIT_MAX, limit))

    query = db.query(Broadcast)
    total = query.count()
    broadcasts = (
        query.order_by(Broadcast.created_at.desc(), Broadcast.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "items": [summarize_broadcast(db, b) for b in broadcasts],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        },
    }
