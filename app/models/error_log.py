from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Index
from sqlalchemy.sql import func

from app.db.database import Base


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, index=True)
    error_type = Column(String(100), nullable=False)
    error_message = Column(Text, nullable=False)
    request_id = Column(String(64), nullable=True)
    method = Column(String(10), nullable=True)
    path = Column(String(500), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_id = Column(Integer, nullable=True)
    context = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_error_logs_type_created", "error_type", "created_at"),
        Index("ix_error_logs_request", "request_id"),
    )
