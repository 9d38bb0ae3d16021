from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.api.notifications import NotificationSettingsResponse
from market_chat.models.db.notification_models import NotificationSettingsModel
from market_chat.repositories.base_repository import BaseRepository


class NotificationSettingsRepository(
    BaseRepository[NotificationSettingsModel, NotificationSettingsResponse]
):
    """Repository for per-user notification preferences."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, NotificationSettingsModel)

    async def get_for_user(self, user_id: int) -> NotificationSettingsResponse:
        """Load the user's settings, creating the defaults row on first use."""
        now = datetime.now(timezone.utc)
        stmt = (
            self._insert()
            .values(
                user_id=user_id,
                email_notifications=True,
                push_notifications=True,
                in_app_notifications=True,
                sound_notifications=True,
                notification_frequency="instant",
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await self.db.execute(stmt)

        query = (
            select(self.model_class)
            .where(self.model_class.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return self._to_pydantic(result.scalar_one())

    async def update_for_user(
        self, user_id: int, **values: Any
    ) -> NotificationSettingsResponse:
        """Apply a partial update, creating the defaults row first if needed."""
        current = await self.get_for_user(user_id)
        if not values:
            return current
        await self.db.execute(
            update(self.model_class)
            .where(self.model_class.user_id == user_id)
            .values(updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        return await self.get_for_user(user_id)

    def _to_pydantic(self, db_model: Any) -> NotificationSettingsResponse:
        return NotificationSettingsResponse(
            user_id=db_model.user_id,
            email_notifications=bool(db_model.email_notifications),
            push_notifications=bool(db_model.push_notifications),
            in_app_notifications=bool(db_model.in_app_notifications),
            sound_notifications=bool(db_model.sound_notifications),
            notification_frequency=db_model.notification_frequency,
            quiet_hours_start=db_model.quiet_hours_start,
            quiet_hours_end=db_model.quiet_hours_end,
        )
