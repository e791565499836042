import enum

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.database import Base


class MessageType(str, enum.Enum):
    SYSTEM = "system"
    NOTIFICATION = "notification"
    APPROVAL = "approval"
    REJECTION = "rejection"
    EXCHANGE = "exchange"
    WELCOME = "welcome"
    REMINDER = "reminder"


class MessagePriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# Priorities that escalate a broadcast to email
EMAIL_ESCALATION_PRIORITIES = frozenset({MessagePriority.HIGH.value, MessagePriority.URGENT.value})


class Message(Base):
    """In-app inbox message. Owned by the receiver."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)  # null for system messages
    receiver_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    type = Column(String(30), nullable=False, default=MessageType.NOTIFICATION.value)
    priority = Column(String(20), nullable=False, default=MessagePriority.NORMAL.value)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    receiver = relationship("User", foreign_keys=[receiver_id])
    sender = relationship("User", foreign_keys=[sender_id])

    __table_args__ = (
        Index("ix_messages_receiver_read_created", "receiver_id", "is_read", "created_at"),
        Index("ix_messages_title_created", "title", "created_at"),
    )
