"""
Notification dispatcher.

Runs after a message has been committed and broadcast. It resolves the
recipient, gates delivery once on their settings (frequency and quiet
hours), then attempts each enabled channel independently so a failing
email provider never stops a push or the in-app record.
"""

import asyncio
import html
import logging
import re
from datetime import datetime, time, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from market_chat import config
from market_chat.clients.email_provider_client import EmailMessage, EmailProviderClient
from market_chat.clients.marketplace_client import (
    ArticleInfo,
    MarketplaceClient,
    UserInfo,
)
from market_chat.clients.push_provider_client import (
    PushMessage,
    PushProviderClient,
    PushSubscriptionGoneError,
)
from market_chat.database import SessionFactory, session_scope
from market_chat.models.api.conversations import ConversationResponse
from market_chat.models.api.messages import MessageResponse, MessageType
from market_chat.models.api.notifications import (
    DispatchResult,
    NotificationFrequency,
    NotificationResponse,
    NotificationSettingsResponse,
)
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.repositories.notification_repository import NotificationRepository
from market_chat.repositories.notification_settings_repository import (
    NotificationSettingsRepository,
)
from market_chat.repositories.push_subscription_repository import (
    PushSubscriptionRepository,
)
from market_chat.services.unsubscribe_tokens import make_token

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

PREVIEW_MAX_LENGTH = 100
TEMPLATE_DIR = Path(__file__).parent.parent / "templates"
_TAG_PATTERN = re.compile(r"<[^>]+>")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def in_quiet_hours(start: Optional[time], end: Optional[time], now: time) -> bool:
    """True when ``now`` falls in [start, end]; a start after end wraps midnight."""
    if start is None or end is None:
        return False
    if start <= end:
        return start <= now <= end
    return now >= start or now <= end


def message_preview(
    message: MessageResponse, max_length: int = PREVIEW_MAX_LENGTH
) -> str:
    if message.message_type == MessageType.IMAGE:
        return "📷 Sent a photo"
    if message.message_type == MessageType.FILE:
        return "📄 Sent a file"
    if message.message_type == MessageType.OFFER:
        amount = (message.metadata or {}).get("offer_amount", "unknown")
        if isinstance(amount, (int, float)):
            amount = f"{amount:g}"
        return f"💰 Made an offer of €{amount}"
    if message.message_type == MessageType.SYSTEM:
        return message.content
    # Stored text is escaped markup; previews are plain text
    stripped = html.unescape(_TAG_PATTERN.sub("", message.content))
    if len(stripped) > max_length:
        return stripped[:max_length] + "..."
    return stripped


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: SessionFactory,
        email_client: Optional[EmailProviderClient] = None,
        push_client: Optional[PushProviderClient] = None,
        marketplace: Optional[MarketplaceClient] = None,
        broadcaster: Optional[Broadcaster] = None,
        clock: Clock = utc_now,
        frontend_url: str = config.FRONTEND_URL,
        from_email: str = config.NOTIFICATION_FROM_EMAIL,
    ):
        self.session_factory = session_factory
        self.email_client = email_client
        self.push_client = push_client
        self.marketplace = marketplace
        self.broadcaster = broadcaster
        self.clock = clock
        self.frontend_url = frontend_url.rstrip("/")
        self.from_email = from_email
        self.templates = Environment(
            loader=FileSystemLoader(TEMPLATE_DIR),
            autoescape=select_autoescape(enabled_extensions=("html",)),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def suppression_reason(
        self, settings: NotificationSettingsResponse, now: datetime
    ) -> Optional[str]:
        """Evaluate gating once per event; None means channels may be attempted."""
        if settings.notification_frequency == NotificationFrequency.NEVER:
            return "frequency_never"
        now_utc = now.astimezone(timezone.utc).time()
        start, end = settings.quiet_hours_start, settings.quiet_hours_end
        if in_quiet_hours(start, end, now_utc):
            return "quiet_hours"
        return None

    async def dispatch_new_message(
        self, conversation: ConversationResponse, message: MessageResponse
    ) -> Optional[DispatchResult]:
        """
        Notify the recipient of a newly persisted message:
        1. Resolve the recipient and load (or create) their settings
        2. Gate on frequency and quiet hours
        3. Attempt email, push and in-app independently
        """
        if message.is_system:
            return None
        recipient_id = conversation.other_participant(message.sender_id)

        async with session_scope(self.session_factory) as db:
            settings = await NotificationSettingsRepository(db).get_for_user(
                recipient_id
            )
            await db.commit()

        result = DispatchResult(recipient_id=recipient_id)
        now = self.clock()
        result.suppressed = self.suppression_reason(settings, now)
        if result.suppressed:
            logger.info(
                "Notification for message %s to user %s suppressed: %s",
                message.id,
                recipient_id,
                result.suppressed,
            )
            return result

        sender = await self._lookup_user(message.sender_id)
        recipient = await self._lookup_user(recipient_id)
        article = await self._lookup_article(conversation.article_id)
        preview = message_preview(message)

        if settings.email_notifications:
            try:
                result.email = await self._send_email(
                    conversation, message, sender, recipient, article, preview
                )
            except Exception as e:
                logger.error(
                    "Email notification for message %s failed: %s", message.id, e
                )

        if settings.push_notifications:
            try:
                result.push = await self._send_push(
                    conversation, message, settings, sender, article, preview
                )
            except Exception as e:
                logger.error(
                    "Push notification for message %s failed: %s", message.id, e
                )

        if settings.in_app_notifications:
            try:
                await self._create_in_app(
                    conversation, message, sender, article, preview
                )
                result.in_app = True
            except Exception as e:
                logger.error(
                    "In-app notification for message %s failed: %s", message.id, e
                )

        return result

    async def _lookup_user(self, user_id: int) -> UserInfo:
        if self.marketplace is not None:
            try:
                user = await self.marketplace.get_user(user_id)
                if user is not None:
                    return user
            except Exception as e:
                logger.warning("User lookup for %s failed: %s", user_id, e)
        return UserInfo(id=user_id)

    async def _lookup_article(self, article_id: int) -> Optional[ArticleInfo]:
        if self.marketplace is None:
            return None
        try:
            return await self.marketplace.get_article(article_id)
        except Exception as e:
            logger.warning("Article lookup for %s failed: %s", article_id, e)
            return None

    def conversation_url(self, conversation_id: int) -> str:
        return f"{self.frontend_url}/messages/{conversation_id}"

    def unsubscribe_url(self, user_id: int) -> str:
        token = make_token(user_id, config.UNSUBSCRIBE_SECRET, self.clock())
        return f"{self.frontend_url}/unsubscribe?token={token}"

    def render_email(
        self,
        conversation: ConversationResponse,
        message: MessageResponse,
        sender: UserInfo,
        recipient: UserInfo,
        article: Optional[ArticleInfo],
        preview: str,
    ) -> Dict[str, str]:
        sent_at = message.created_at or self.clock()
        context = {
            "recipient_name": recipient.display_name,
            "sender_name": sender.display_name,
            "sender_username": sender.username,
            "message_preview": preview,
            "article_title": article.title if article else "Article",
            "conversation_url": self.conversation_url(conversation.id),
            "unsubscribe_url": self.unsubscribe_url(recipient.id),
            "timestamp": sent_at.strftime("%B %d, %Y at %I:%M %p"),
        }
        return {
            "subject": f"New message from {sender.display_name}",
            "html": self.templates.get_template("new_message_email.html").render(
                **context
            ),
            "text": self.templates.get_template("new_message_email.txt").render(
                **context
            ),
        }

    async def _send_email(
        self,
        conversation: ConversationResponse,
        message: MessageResponse,
        sender: UserInfo,
        recipient: UserInfo,
        article: Optional[ArticleInfo],
        preview: str,
    ) -> bool:
        if self.email_client is None or not self.email_client.is_configured():
            return False
        if not recipient.email:
            logger.info("User %s has no email address; skipping email", recipient.id)
            return False

        rendered = self.render_email(
            conversation, message, sender, recipient, article, preview
        )
        response = await self.email_client.send_message(
            EmailMessage(
                to_email=recipient.email,
                to_name=recipient.display_name,
                from_email=self.from_email,
                subject=rendered["subject"],
                html=rendered["html"],
                text=rendered["text"],
            )
        )
        status = self.email_client.extract_status(response)
        logger.info(
            "Email notification for message %s to user %s: %s",
            message.id,
            recipient.id,
            status,
        )
        return status != "failed"

    def push_payload(
        self,
        conversation: ConversationResponse,
        message: MessageResponse,
        settings: NotificationSettingsResponse,
        sender: UserInfo,
        article: Optional[ArticleInfo],
        preview: str,
    ) -> Dict[str, Any]:
        article_title = article.title if article else "Article"
        return {
            "title": f"New message from {sender.display_name}",
            "body": f"Re: {article_title} - {preview}",
            "icon": "/assets/icons/message-icon.png",
            "badge": "/assets/icons/badge.png",
            "tag": f"conversation_{conversation.id}",
            "data": {
                "conversation_id": conversation.id,
                "message_id": message.id,
                "sender_id": message.sender_id,
                "type": "new_message",
                "url": f"/messages/{conversation.id}",
            },
            "actions": [
                {
                    "action": "reply",
                    "title": "Reply",
                    "icon": "/assets/icons/reply.png",
                },
                {
                    "action": "view",
                    "title": "View",
                    "icon": "/assets/icons/view.png",
                },
            ],
            "requireInteraction": True,
            "silent": not settings.sound_notifications,
        }

    async def _send_push(
        self,
        conversation: ConversationResponse,
        message: MessageResponse,
        settings: NotificationSettingsResponse,
        sender: UserInfo,
        article: Optional[ArticleInfo],
        preview: str,
    ) -> int:
        """Deliver to each active subscription; returns how many accepted it."""
        if self.push_client is None or not self.push_client.is_configured():
            return 0
        payload = self.push_payload(
            conversation, message, settings, sender, article, preview
        )

        delivered = 0
        async with session_scope(self.session_factory) as db:
            repo = PushSubscriptionRepository(db)
            for subscription in await repo.list_active(settings.user_id):
                try:
                    await self.push_client.send_message(
                        PushMessage(
                            endpoint=subscription.endpoint,
                            p256dh_key=subscription.p256dh_key,
                            auth_key=subscription.auth_key,
                            payload=payload,
                        )
                    )
                    delivered += 1
                except PushSubscriptionGoneError as e:
                    logger.info(
                        "Deactivating push subscription %s: %s", subscription.id, e
                    )
                    await repo.deactivate(subscription.id)
                    await db.commit()
                except Exception as e:
                    logger.error(
                        "Push to subscription %s failed: %s", subscription.id, e
                    )
        return delivered

    async def _create_in_app(
        self,
        conversation: ConversationResponse,
        message: MessageResponse,
        sender: UserInfo,
        article: Optional[ArticleInfo],
        preview: str,
    ) -> NotificationResponse:
        async with session_scope(self.session_factory) as db:
            notification = await NotificationRepository(db).create(
                user_id=conversation.other_participant(message.sender_id),
                type="new_message",
                title=f"New message from {sender.display_name}",
                message=preview,
                data={
                    "conversation_id": conversation.id,
                    "message_id": message.id,
                    "sender_id": message.sender_id,
                    "article_title": article.title if article else None,
                },
            )
            await db.commit()
        return notification

    async def send_system_notification(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotificationResponse:
        """Persist an in-app notification and push it to the user's channel."""
        async with session_scope(self.session_factory) as db:
            notification = await NotificationRepository(db).create(
                user_id=user_id, type=type, title=title, message=message, data=data
            )
            await db.commit()
        if self.broadcaster is not None:
            await self.broadcaster.notification(
                user_id, {"notification": notification.model_dump(mode="json")}
            )
        return notification

    async def send_bulk_notification(
        self,
        user_ids: Sequence[int],
        title: str,
        message: str,
        type: str = "system",
    ) -> int:
        """Send in batches with a short pause between them; returns successes."""
        batch_size = config.BULK_NOTIFICATION_BATCH_SIZE
        sent = 0
        batches: List[Sequence[int]] = [
            user_ids[i : i + batch_size] for i in range(0, len(user_ids), batch_size)
        ]
        for index, batch in enumerate(batches):
            for user_id in batch:
                try:
                    await self.send_system_notification(user_id, type, title, message)
                    sent += 1
                except Exception as e:
                    logger.error("Bulk notification to user %s failed: %s", user_id, e)
            if index < len(batches) - 1:
                await asyncio.sleep(config.BULK_NOTIFICATION_PAUSE_SECONDS)
        logger.info("Bulk notification sent to %d of %d users", sent, len(user_ids))
        return sent
