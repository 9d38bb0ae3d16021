from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from market_chat.models.api.messages import MessageResponse


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    BLOCKED = "blocked"


class ParticipantRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"


class ConversationResponse(BaseModel):
    """Response model for conversation data."""

    id: int
    article_id: int
    buyer_id: int
    seller_id: int
    status: ConversationStatus
    last_message_id: Optional[int] = None
    last_message_at: Optional[datetime] = None
    buyer_unread_count: int = 0
    seller_unread_count: int = 0
    is_buyer_typing: bool = False
    is_seller_typing: bool = False
    buyer_last_seen: Optional[datetime] = None
    seller_last_seen: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def role_of(self, user_id: int) -> ParticipantRole:
        if user_id == self.buyer_id:
            return ParticipantRole.BUYER
        if user_id == self.seller_id:
            return ParticipantRole.SELLER
        raise ValueError(f"User {user_id} is not a participant")

    def other_participant(self, user_id: int) -> int:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id

    def unread_for(self, user_id: int) -> int:
        if user_id == self.buyer_id:
            return self.buyer_unread_count
        return self.seller_unread_count


class LastMessagePreview(BaseModel):
    """Short form of a conversation's most recent message."""

    id: int
    content: str
    message_type: str
    sender_id: int
    created_at: datetime


class ConversationSummary(BaseModel):
    """A conversation as it appears in the caller's inbox."""

    id: int
    article_id: int
    status: ConversationStatus
    role: ParticipantRole
    other_user_id: int
    unread_count: int
    last_message_at: Optional[datetime] = None
    last_message: Optional[LastMessagePreview] = None
    created_at: datetime


class ConversationDetails(ConversationResponse):
    """A conversation as seen by one of its participants."""

    role: ParticipantRole
    other_user_id: int
    unread_count: int
    typing_user_ids: List[int] = Field(default_factory=list)


class StartConversationRequest(BaseModel):
    """Request model for contacting a seller about an article."""

    article_id: int = Field(..., gt=0, description="Article the buyer is asking about")
    content: str = Field(..., min_length=1, description="First message content")


class TypingRequest(BaseModel):
    is_typing: bool = Field(..., description="Whether the caller is typing")


class BlockRequest(BaseModel):
    reason: Optional[str] = Field(
        default=None, max_length=255, description="Why the other user is blocked"
    )


class UnreadCountResponse(BaseModel):
    unread_count: int


class MarkReadResponse(BaseModel):
    conversation_id: int
    marked_read: int
    unread_count: int


class ConversationStats(BaseModel):
    """Aggregate message statistics for a single conversation."""

    conversation_id: int
    total_messages: int
    messages_by_type: Dict[str, int]
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None


class StartConversationResponse(BaseModel):
    """The conversation (new or existing) plus the message that opened it."""

    conversation: ConversationResponse
    message: MessageResponse
