import enum

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, JSON, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.database import Base


class BroadcastScope(str, enum.Enum):
    ALL = "all"
    CUSTOM = "custom"


class Broadcast(Base):
    """One row per admin broadcast attempt.

    Collection columns are JSON snapshots capped at write time; the
    ``*_truncated`` flags record whether a cap was hit. ``email_delivery`` holds
    the serialised email delivery state and ``email_status`` mirrors its status
    so the flusher can select candidates with an indexed query.
    """

    __tablename__ = "broadcasts"

    id = Column(Integer, primary_key=True, index=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    request_id = Column(String(64), nullable=True, index=True)
    audit_log_id = Column(Integer, nullable=True)
    error_log_ids = Column(JSON, nullable=True)

    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    priority = Column(String(20), nullable=False, default="normal")
    scope = Column(String(20), nullable=False, default=BroadcastScope.ALL.value)
    filters_snapshot = Column(JSON, nullable=True)

    target_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    invalid_user_ids = Column(JSON, nullable=True)
    invalid_user_ids_truncated = Column(Boolean, nullable=False, default=False)
    failed_user_ids = Column(JSON, nullable=True)
    failed_user_ids_truncated = Column(Boolean, nullable=False, default=False)

    message_ids_snapshot = Column(JSON, nullable=True)
    message_ids_snapshot_truncated = Column(Boolean, nullable=False, default=False)
    message_map_snapshot = Column(JSON, nullable=True)  # {"<user_id>": message_id}
    message_map_snapshot_truncated = Column(Boolean, nullable=False, default=False)
    message_id_count = Column(Integer, nullable=False, default=0)

    content_hash = Column(String(64), nullable=True, index=True)
    email_status = Column(String(20), nullable=False, default="skipped")
    email_delivery = Column(JSON, nullable=True)
    meta = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    creator = relationship("User")

    __table_args__ = (
        Index("ix_broadcasts_email_status_created", "email_status", "created_at"),
        Index("ix_broadcasts_created_by", "created_by"),
        Index("ix_broadcasts_created_at", "created_at"),
    )
