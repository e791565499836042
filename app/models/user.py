import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index
from sqlalchemy.sql import func

from app.db.database import Base


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=True)  # Nullable for directory-imported users
    hashed_password = Column(String(255), nullable=True)

    # School directory fields (directory itself lives elsewhere)
    school = Column(String(255), nullable=True)
    school_id = Column(Integer, nullable=True, index=True)
    location = Column(String(255), nullable=True)

    is_admin = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default=UserStatus.ACTIVE.value, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)  # Soft delete

    __table_args__ = (
        Index("ix_users_deleted_status", "deleted_at", "status"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
