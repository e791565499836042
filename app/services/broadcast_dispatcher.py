import logging
from dataclasses import dataclass, field
from typing import Iterable

from fastapi import Request
from sqlalchemy.orm import Session

from app.services.error_log_service import log_exception
from app.services.message_service import send_system_message

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    message_map: dict[int, int] = field(default_factory=dict)  # user_id -> message_id
    failed_user_ids: list[int] = field(default_factory=list)
    error_log_ids: list[int] = field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return len(self.message_map)

    @property
    def message_ids(self) -> list[int]:
        return list(self.message_map.values())


def dispatch_broadcast_messages(
    db: Session,
    recipient_ids: Iterable[int],
    title: str,
    content: str,
    priority: str,
    sender_id: int | None = None,
    request: Request | None = None,
) -> DispatchResult:
    """Create one system message per recipient.

    Every message is committed on its own; a failure for one recipient is
    recorded and error-logged, and the fan-out carries on.
    """
    result = DispatchResult()
    for user_id in recipient_ids:
        try:
            message = send_system_message(db, user_id, title, content, priority, sender_id=sender_id)
        except Exception as e:
            logger.warning("Broadcast message to user %s failed: %s", user_id, e)
            result.failed_user_ids.append(user_id)
            error_log_id = log_exception(
                db, e, request, context={"receiver_id": user_id, "title": title}, user_id=sender_id,
            )
            try:
                db.commit()
            except Exception:
                db.rollback()
                logger.warning("Could not persist error log for user %s", user_id, exc_info=True)
                error_log_id = None
            if error_log_id:
                result.error_log_ids.append(error_log_id)
            continue
        result.message_map[user_id] = message.id

    logger.info(
        "Broadcast fan-out finished: sent=%d failed=%d",
        result.sent_count, len(result.failed_user_ids),
    )
    return result
