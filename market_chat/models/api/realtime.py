from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TransportKind(str, Enum):
    WEBSOCKET = "websocket"
    SSE = "sse"


class EventType(str, Enum):
    NEW_MESSAGE = "new_message"
    TYPING_STATUS = "typing_status"
    READ_RECEIPT = "read_receipt"
    MESSAGE_UPDATE = "message_update"
    REACTION_UPDATE = "reaction_update"
    USER_STATUS = "user_status"
    NOTIFICATION = "notification"


def conversation_channel(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def user_channel(user_id: int) -> str:
    return f"user:{user_id}"


class RealtimeEvent(BaseModel):
    """Envelope published on the bus and forwarded to streaming clients."""

    type: EventType
    scope_id: str = Field(..., description="Channel the event was published on")
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionResponse(BaseModel):
    id: int
    user_id: int
    connection_id: str
    transport: TransportKind
    is_active: bool
    last_ping: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PresenceResponse(BaseModel):
    user_id: int
    is_online: bool
    last_seen: Optional[datetime] = None


class TypingUsersResponse(BaseModel):
    conversation_id: int
    typing_user_ids: List[int]


class RegistryStats(BaseModel):
    active_connections: int
    online_users: int
