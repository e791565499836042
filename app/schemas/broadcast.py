from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, field_validator

SearchField = Literal["username", "email", "school", "location"]

FILTER_LIMIT_MIN = 10
FILTER_LIMIT_MAX = 500


class RecipientFilter(BaseModel):
    """One bounded recipient search group. Groups are unioned by id."""

    search: str | None = None
    fields: list[SearchField] = []  # empty = all searchable fields
    school_id: int | None = None
    school: str | None = None
    email_suffix: str | None = None
    status: str | None = None
    is_admin: bool | None = None
    include_ids: list[int] = []
    exclude_ids: list[int] = []
    limit: int = 50
    offset: int = 0

    class Config:
        extra = "forbid"

    @field_validator("limit")
    @classmethod
    def clamp_limit(cls, v: int) -> int:
        return max(FILTER_LIMIT_MIN, min(FILTER_LIMIT_MAX, v))

    @field_validator("offset")
    @classmethod
    def clamp_offset(cls, v: int) -> int:
        return max(0, v)

    @field_validator("search", "school", "email_suffix", "status")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None


class BroadcastCreate(BaseModel):
    """Raw broadcast payload; field-level checks happen in the route so each
    failure maps to its own status code."""

    title: Any = None
    content: Any = None
    priority: Any = None
    scope: Any = None
    target_users: Any = None
    target_filters: Any = None


class RecipientResponse(BaseModel):
    id: int
    username: str
    email: str | None = None
    school: str | None = None
    school_id: int | None = None
    location: str | None = None
    is_admin: bool
    status: str


class RecipientSearchResponse(BaseModel):
    success: bool = True
    items: list[RecipientResponse]
    total: int
    limit: int
    offset: int


class EmailDeliveryResponse(BaseModel):
    triggered: bool
    status: str
    attempted_recipients: int
    successful_chunks: int
    failed_chunks: int
    failed_recipient_ids: list[int]
    missing_email_user_ids: list[int]
    errors: list[str]
    completed_at: datetime | None = None


class BroadcastSendResponse(BaseModel):
    success: bool = True
    message: str = "System message sent successfully"
    broadcast_id: int | None = None
    sent_count: int
    total_targets: int
    failed_user_ids: list[int]
    invalid_user_ids: list[int]
    scope: str
    priority: str
    message_ids: list[int]
    message_id_count: int
    email_delivery: EmailDeliveryResponse
    error_log_ids: list[int]
    request_id: str | None = None


class FlushItem(BaseModel):
    id: int
    status: str
    previous_status: str
    attempted: int
    force: bool
    missing_email_user_ids: list[int]
    errors: list[str]


class BroadcastFlushResponse(BaseModel):
    success: bool = True
    processed: list[FlushItem]
    skipped: list[int]
    count: int


class RecipientReadState(BaseModel):
    user_id: int
    username: str | None = None
    message_id: int
    read_at: datetime | None = None


class BroadcastHistoryItem(BaseModel):
    id: int
    title: str
    content: str
    priority: str
    scope: str
    created_by: int | None = None
    created_at: datetime | None = None
    target_count: int
    sent_count: int
    failed_user_ids: list[int]
    invalid_user_ids: list[int]
    message_id_count: int
    email_delivery: EmailDeliveryResponse
    recipient_source: str
    read_count: int
    unread_count: int
    read_users: list[RecipientReadState]
    unread_users: list[RecipientReadState]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class BroadcastHistoryPage(BaseModel):
    items: list[BroadcastHistoryItem]
    pagination: Pagination


class BroadcastHistoryResponse(BaseModel):
    success: bool = True
    data: BroadcastHistoryPage
