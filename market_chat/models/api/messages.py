from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from market_chat.models.api.attachments import AttachmentResponse


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"
    OFFER = "offer"


class DeliveryState(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _DELIVERY_RANK[self]


_DELIVERY_RANK = {
    DeliveryState.SENT: 0,
    DeliveryState.DELIVERED: 1,
    DeliveryState.READ: 2,
}

SYSTEM_SENDER_ID = 0


class SendMessageRequest(BaseModel):
    """Request model for sending a message into a conversation."""

    content: str = Field(..., min_length=1, description="Message content")
    message_type: MessageType = Field(
        default=MessageType.TEXT, description="Only 'text' and 'offer' are accepted"
    )
    reply_to_message_id: Optional[int] = Field(
        default=None, description="Message in the same conversation being replied to"
    )
    offer_amount: Optional[float] = Field(
        default=None, gt=0, description="Offered price, required for 'offer' messages"
    )


class ReactionGroup(BaseModel):
    """Reactions on one message grouped by emoji."""

    emoji: str
    count: int
    user_ids: List[int]


class MessageResponse(BaseModel):
    """Response model for message data."""

    id: int
    conversation_id: int
    sender_id: int
    content: str
    message_type: MessageType
    system_message_type: Optional[str] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    reply_to_message_id: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    reactions: List[ReactionGroup] = Field(default_factory=list)
    attachments: List[AttachmentResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_system(self) -> bool:
        return self.sender_id == SYSTEM_SENDER_ID


class MessagePage(BaseModel):
    """A page of messages in chronological order."""

    messages: List[MessageResponse]
    page: int
    limit: int
    has_more: bool
    next_before_id: Optional[int] = None


class EditMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, description="Replacement content")


class MessageIdsRequest(BaseModel):
    message_ids: List[int] = Field(..., min_length=1, description="Target message ids")


class MarkManyReadResponse(BaseModel):
    marked_read: int
    conversation_ids: List[int]


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=32, description="Emoji to add")


class ReactionsResponse(BaseModel):
    message_id: int
    reactions: List[ReactionGroup]


class SearchFilters(BaseModel):
    """Optional narrowing applied to a message search."""

    conversation_id: Optional[int] = None
    sender_id: Optional[int] = None
    message_type: Optional[MessageType] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class SearchResult(BaseModel):
    messages: List[MessageResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class TypeCount(BaseModel):
    message_type: str
    count: int


class ConversationCount(BaseModel):
    conversation_id: int
    article_id: int
    message_count: int


class SearchFilterOptions(BaseModel):
    """Facets the caller can use to narrow a search."""

    message_types: List[TypeCount]
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None
    conversations: List[ConversationCount]


class DeliveredResponse(BaseModel):
    delivered: int


class AttachmentUploadResponse(BaseModel):
    """The image or file message created by an upload and its attachment."""

    message: MessageResponse
    attachment: AttachmentResponse
