# SQLAlchemy database models
from .attachment_model import AttachmentModel
from .block_model import BlockModel
from .connection_model import ConnectionModel
from .conversation_model import ConversationModel
from .delivery_status_model import DeliveryStatusModel
from .message_model import MessageModel
from .notification_models import (
    NotificationModel,
    NotificationSettingsModel,
    PushSubscriptionModel,
)
from .reaction_model import ReactionModel

__all__ = [
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
