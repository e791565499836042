"""Persist operational errors so admins can correlate them with a request.

Errors are written in a SAVEPOINT; a failing insert is logged and never
propagates into the caller's transaction. The caller owns the commit.
"""

import logging
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from app.core.middleware import get_request_id
from app.core.utils import client_ip
from app.models.error_log import ErrorLog

logger = logging.getLogger(__name__)

_MAX_MESSAGE_LENGTH = 4000


def log_error(
    db: Session,
    kind: str,
    message: str,
    request: Request | None = None,
    context: dict[str, Any] | None = None,
    user_id: int | None = None,
) -> int | None:
    """Insert an error log row and return its id (None when the write fails)."""
    logger.error("%s: %s | context=%s", kind, message, context or {})
    try:
        with db.begin_nested():
            entry = ErrorLog(
                error_type=kind[:100],
                error_message=(message or "")[:_MAX_MESSAGE_LENGTH],
                request_id=get_request_id(request),
                method=request.method if request is not None else None,
                path=str(request.url.path)[:500] if request is not None else None,
                ip_address=client_ip(request),
                user_id=user_id,
                context=context or None,
            )
            db.add(entry)
            db.flush()
            return entry.id
    except Exception:
        logger.warning("Failed to write error log", exc_info=True)
        return None


def log_exception(
    db: Session,
    exc: BaseException,
    request: Request | None = None,
    context: dict[str, Any] | None = None,
    user_id: int | None = None,
) -> int | None:
    return log_error(db, type(exc).__name__, str(exc), request, context, user_id)
