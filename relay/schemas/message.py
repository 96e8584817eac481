# relay/schemas/message.py
"""
Pydantic schemas for direct and group message payloads.
Used by both the REST endpoints and the WebSocket dispatcher, so field names
follow the wire protocol (camelCase).
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

from relay.core.config import MAX_MESSAGE_LENGTH


def content_length(content: str) -> int:
    """Length in UTF-16 code units, as browser clients count it."""
    return len(content.encode("utf-16-le", "surrogatepass")) // 2


# ────────────────────────────────────────────
# Request Schemas (Input)
# ────────────────────────────────────────────

class MessageContent(BaseModel):
    """Message text, 1..MAX_MESSAGE_LENGTH UTF-16 code units"""
    content: str = Field(..., description="Message text")

    @field_validator('content')
    @classmethod
    def check_length(cls, v):
        if not 1 <= content_length(v) <= MAX_MESSAGE_LENGTH:
            raise ValueError(f'Message must be 1 to {MAX_MESSAGE_LENGTH} characters')
        return v


class DirectMessageCreate(MessageContent):
    """Schema for sending a direct message"""
    receiverId: int = Field(..., gt=0, description="Recipient user ID")


class GroupMessageCreate(MessageContent):
    """Schema for sending a group message"""
    groupId: int = Field(..., gt=0, description="Target group ID")


class GroupMessageContent(MessageContent):
    """Body for REST group sends and edits (group comes from the path)"""


# ────────────────────────────────────────────
# Response Schemas (Output)
# ────────────────────────────────────────────

class DirectMessageResponse(BaseModel):
    id: int
    content: str
    senderId: int
    receiverId: int
    sentAt: datetime
    read: bool = False


class GroupMessageResponse(BaseModel):
    id: int
    content: str
    groupId: int
    senderId: int
    sentAt: datetime
    updatedAt: Optional[datetime] = None
    isRead: Optional[bool] = None


class UserSummary(BaseModel):
    id: int
    firstName: str
    lastName: str
    email: Optional[str] = None


class DirectUnread(BaseModel):
    senderId: int
    firstName: str
    lastName: str
    email: str
    unreadCount: int
    lastMessage: str
    lastMessageTime: datetime


class GroupUnread(BaseModel):
    groupId: int
    groupName: str
    unreadCount: int
    lastSender: UserSummary
    lastMessage: str
    lastMessageTime: datetime


class UnreadSummary(BaseModel):
    count: int
    directUnreads: List[DirectUnread] = Field(default_factory=list)
    groupUnreads: List[GroupUnread] = Field(default_factory=list)


class Conversation(BaseModel):
    userId: int
    firstName: str
    lastName: str
    email: str
    lastMessage: str
    lastMessageTime: datetime
    unreadCount: int = 0


class ConversationList(BaseModel):
    conversations: List[Conversation] = Field(default_factory=list)
