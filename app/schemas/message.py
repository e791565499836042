from datetime import datetime

from pydantic import BaseModel


class MessageResponse(BaseModel):
    id: int
    sender_id: int | None = None
    title: str
    content: str
    type: str
    priority: str
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class MessageList(BaseModel):
    items: list[MessageResponse]
    total: int
    unread: int


class UnreadCountResponse(BaseModel):
    count: int


class MarkAllReadResponse(BaseModel):
    updated: int
