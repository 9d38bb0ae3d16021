# API models for request/response contracts
from .attachments import AttachmentRecord, AttachmentResponse, StoredFile
from .conversations import (
    ConversationDetails,
    ConversationResponse,
    ConversationStatus,
    ConversationSummary,
    ParticipantRole,
)
from .messages import (
    DeliveryState,
    MessageResponse,
    MessageType,
    ReactionGroup,
    SendMessageRequest,
)
from .notifications import (
    NotificationFrequency,
    NotificationResponse,
    NotificationSettingsResponse,
    PushSubscriptionResponse,
)
from .realtime import EventType, RealtimeEvent, TransportKind

__all__ = [
    "AttachmentRecord",
    "AttachmentResponse",
    "StoredFile",
    "ConversationDetails",
    "ConversationResponse",
    "ConversationStatus",
    "ConversationSummary",
    "ParticipantRole",
    "DeliveryState",
    "MessageResponse",
    "MessageType",
    "ReactionGroup",
    "SendMessageRequest",
    "NotificationFrequency",
    "NotificationResponse",
    "NotificationSettingsResponse",
    "PushSubscriptionResponse",
    "EventType",
    "RealtimeEvent",
    "TransportKind",
]
