from datetime import datetime, time
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from market_chat import config
from market_chat.exceptions import NotFoundError, ValidationError
from market_chat.models.api.notifications import (
    NotificationFrequency,
    NotificationList,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
    NotificationStats,
    PushSubscriptionRequest,
    PushSubscriptionResponse,
    VapidKeyResponse,
)
from market_chat.repositories.notification_repository import NotificationRepository
from market_chat.repositories.notification_settings_repository import (
    NotificationSettingsRepository,
)
from market_chat.repositories.push_subscription_repository import (
    PushSubscriptionRepository,
)
from market_chat.services.base_service import BaseService
from market_chat.services.unsubscribe_tokens import InvalidUnsubscribeToken, read_token

MAX_PAGE_SIZE = 100


def parse_quiet_time(value: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS``."""
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).time()
        except ValueError:
            continue
    raise ValidationError(
        "Invalid quiet hours time, expected HH:MM or HH:MM:SS",
        details={"value": value},
    )


class NotificationSettingsService(BaseService):
    """Service for notification preferences, push subscriptions and in-app records."""

    def __init__(self, db: AsyncSession):
        super().__init__(db)
        self.settings_repo = NotificationSettingsRepository(db)
        self.push_repo = PushSubscriptionRepository(db)
        self.notification_repo = NotificationRepository(db)

    async def get_settings(self, user_id: int) -> NotificationSettingsResponse:
        async with self.transaction():
            return await self.settings_repo.get_for_user(user_id)

    async def update_settings(
        self, user_id: int, update: NotificationSettingsUpdate
    ) -> NotificationSettingsResponse:
        """Apply a partial update after validating frequency and quiet hours."""
        values: Dict[str, Any] = {}
        for field in (
            "email_notifications",
            "push_notifications",
            "in_app_notifications",
            "sound_notifications",
        ):
            value = getattr(update, field)
            if value is not None:
                values[field] = value

        if update.notification_frequency is not None:
            try:
                frequency = NotificationFrequency(update.notification_frequency)
            except ValueError:
                raise ValidationError(
                    "Invalid notification frequency",
                    details={
                        "allowed": [f.value for f in NotificationFrequency],
                    },
                )
            values["notification_frequency"] = frequency.value

        start, end = update.quiet_hours_start, update.quiet_hours_end
        if start is not None or end is not None:
            if bool(start) != bool(end):
                raise ValidationError(
                    "Quiet hours need both a start and an end, or neither"
                )
            values["quiet_hours_start"] = parse_quiet_time(start) if start else None
            values["quiet_hours_end"] = parse_quiet_time(end) if end else None

        async with self.transaction():
            settings = await self.settings_repo.update_for_user(user_id, **values)
        self.logger.info("Updated notification settings for user %s", user_id)
        return settings

    async def subscribe_push(
        self, user_id: int, request: PushSubscriptionRequest
    ) -> PushSubscriptionResponse:
        async with self.transaction():
            return await self.push_repo.upsert(
                user_id,
                request.endpoint,
                request.keys.p256dh,
                request.keys.auth,
                user_agent=request.user_agent,
            )

    async def unsubscribe_push(self, user_id: int, endpoint: str) -> None:
        async with self.transaction():
            changed = await self.push_repo.deactivate_endpoint(user_id, endpoint)
        if not changed:
            raise NotFoundError(
                "Push subscription not found", details={"endpoint": endpoint}
            )

    async def list_push(self, user_id: int) -> List[PushSubscriptionResponse]:
        return await self.push_repo.list_active(user_id)

    def vapid_public_key(self) -> VapidKeyResponse:
        if not config.VAPID_PUBLIC_KEY:
            raise NotFoundError("Push notifications are not configured")
        return VapidKeyResponse(public_key=config.VAPID_PUBLIC_KEY)

    async def list_notifications(
        self,
        user_id: int,
        unread_only: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> NotificationList:
        page = max(page, 1)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        notifications, total = await self.notification_repo.list_for_user(
            user_id, unread_only, limit, (page - 1) * limit
        )
        return NotificationList(
            notifications=notifications, total=total, page=page, limit=limit
        )

    async def mark_read(self, notification_id: int, user_id: int) -> None:
        async with self.transaction():
            changed = await self.notification_repo.mark_read(notification_id, user_id)
        if not changed:
            raise NotFoundError(
                f"Notification {notification_id} not found",
                details={"notification_id": notification_id},
            )

    async def mark_all_read(self, user_id: int) -> int:
        async with self.transaction():
            return await self.notification_repo.mark_all_read(user_id)

    async def delete(self, notification_id: int, user_id: int) -> None:
        async with self.transaction():
            deleted = await self.notification_repo.delete_for_user(
                notification_id, user_id
            )
        if not deleted:
            raise NotFoundError(
                f"Notification {notification_id} not found",
                details={"notification_id": notification_id},
            )

    async def stats(self, user_id: int) -> NotificationStats:
        total, unread = await self.notification_repo.stats(user_id)
        return NotificationStats(total=total, unread=unread)

    async def unsubscribe_email(
        self, token: str, now: Optional[datetime] = None
    ) -> int:
        """Turn off email notifications for the user named by a signed token."""
        try:
            user_id = read_token(
                token,
                config.UNSUBSCRIBE_SECRET,
                config.UNSUBSCRIBE_TOKEN_MAX_AGE_SECONDS,
                now=now,
            )
        except InvalidUnsubscribeToken as e:
            raise ValidationError(
                "Invalid or expired unsubscribe link", code=e.reason
            )
        async with self.transaction():
            await self.settings_repo.update_for_user(user_id, email_notifications=False)
        self.logger.info("User %s unsubscribed from email notifications", user_id)
        return user_id
