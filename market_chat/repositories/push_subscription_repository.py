from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.api.notifications import PushSubscriptionResponse
from market_chat.models.db.notification_models import PushSubscriptionModel
from market_chat.repositories.base_repository import BaseRepository


class PushSubscriptionRepository(
    BaseRepository[PushSubscriptionModel, PushSubscriptionResponse]
):
    """Repository for web push subscriptions."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, PushSubscriptionModel)

    async def upsert(
        self,
        user_id: int,
        endpoint: str,
        p256dh_key: str,
        auth_key: str,
        user_agent: Optional[str] = None,
    ) -> PushSubscriptionResponse:
        """Subscribe an endpoint; an existing (user, endpoint) row is reactivated."""
        now = datetime.now(timezone.utc)
        stmt = self._insert().values(
            user_id=user_id,
            endpoint=endpoint,
            p256dh_key=p256dh_key,
            auth_key=auth_key,
            user_agent=user_agent,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "endpoint"],
            set_={
                "p256dh_key": p256dh_key,
                "auth_key": auth_key,
                "user_agent": user_agent,
                "is_active": True,
                "updated_at": now,
            },
        )
        await self.db.execute(stmt)

        query = (
            select(self.model_class)
            .where(
                self.model_class.user_id == user_id,
                self.model_class.endpoint == endpoint,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return self._to_pydantic(result.scalar_one())

    async def deactivate_endpoint(self, user_id: int, endpoint: str) -> bool:
        result = await self.db.execute(
            update(self.model_class)
            .where(
                self.model_class.user_id == user_id,
                self.model_class.endpoint == endpoint,
                self.model_class.is_active == True,  # noqa: E712
            )
            .values(is_active=False, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def deactivate(self, subscription_id: int) -> None:
        await self.update_fields(
            subscription_id, is_active=False, updated_at=datetime.now(timezone.utc)
        )

    async def list_active(self, user_id: int) -> List[PushSubscriptionResponse]:
        query = (
            select(self.model_class)
            .where(
                self.model_class.user_id == user_id,
                self.model_class.is_active == True,  # noqa: E712
            )
            .order_by(self.model_class.id)
        )
        result = await self.db.execute(query)
        return [self._to_pydantic(m) for m in result.scalars().all()]

    def _to_pydantic(self, db_model: Any) -> PushSubscriptionResponse:
        return PushSubscriptionResponse.model_validate(db_model)
