from app.models.user import User, UserStatus
from app.models.message import Message, MessageType, MessagePriority
from app.models.broadcast import Broadcast, BroadcastScope
from app.models.audit_log import AuditLog, AuditAction
from app.models.error_log import ErrorLog

__all__ = [
    "User",
    "UserStatus",
    "Message",
    "MessageType",
    "MessagePriority",
    "Broadcast",
    "BroadcastScope",
    "AuditLog",
    "AuditAction",
    "ErrorLog",
]
