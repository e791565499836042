from app.schemas.user import UserResponse, Token
from app.schemas.message import MessageResponse, MessageList
from app.schemas.broadcast import RecipientFilter, BroadcastSendResponse, BroadcastFlushResponse

__all__ = [
    "UserResponse", "Token",
    "MessageResponse", "MessageList",
    "RecipientFilter", "BroadcastSendResponse", "BroadcastFlushResponse",
]
