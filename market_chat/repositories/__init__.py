# Repository classes for database operations
from .attachment_repository import AttachmentRepository
from .base_repository import BaseRepository
from .block_repository import BlockRepository
from .connection_repository import ConnectionRepository
from .conversation_repository import ConversationRepository
from .delivery_status_repository import DeliveryStatusRepository
from .message_repository import MessageRepository
from .notification_repository import NotificationRepository
from .notification_settings_repository import NotificationSettingsRepository
from .push_subscription_repository import PushSubscriptionRepository
from .reaction_repository import ReactionRepository

__all__ = [
    "AttachmentRepository",
    "BaseRepository",
    "BlockRepository",
    "ConnectionRepository",
    "ConversationRepository",
    "DeliveryStatusRepository",
    "MessageRepository",
    "NotificationRepository",
    "NotificationSettingsRepository",
    "PushSubscriptionRepository",
    "ReactionRepository",
]
