# Export all models
from .api import (
    ConversationResponse,
    MessageResponse,
    MessageType,
    RealtimeEvent,
    SendMessageRequest,
)
from .db import (
    AttachmentModel,
    BlockModel,
    ConnectionModel,
    ConversationModel,
    DeliveryStatusModel,
    MessageModel,
    NotificationModel,
    NotificationSettingsModel,
    PushSubscriptionModel,
    ReactionModel,
)

__all__ = [
    # API models
    "ConversationResponse",
    "MessageResponse",
    "MessageType",
    "RealtimeEvent",
    "SendMessageRequest",
    # DB models
    "AttachmentModel",
    "BlockModel",
    "ConnectionModel",
    "ConversationModel",
    "DeliveryStatusModel",
    "MessageModel",
    "NotificationModel",
    "NotificationSettingsModel",
    "PushSubscriptionModel",
    "ReactionModel",
]
