from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.api.notifications import NotificationResponse
from market_chat.models.db.notification_models import NotificationModel
from market_chat.repositories.base_repository import BaseRepository


class NotificationRepository(BaseRepository[NotificationModel, NotificationResponse]):
    """Repository for in-app notification records."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, NotificationModel)

    async def create(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotificationResponse:
        db_model = NotificationModel(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            data=data,
            is_read=False,
            created_at=datetime.now(timezone.utc),
        )
        await self.add(db_model)
        return self._to_pydantic(db_model)

    async def list_for_user(
        self, user_id: int, unread_only: bool, limit: int, offset: int
    ) -> Tuple[List[NotificationResponse], int]:
        conditions = [self.model_class.user_id == user_id]
        if unread_only:
            conditions.append(self.model_class.is_read == False)  # noqa: E712

        count_result = await self.db.execute(
            select(func.count(self.model_class.id)).where(*conditions)
        )
        query = (
            select(self.model_class)
            .where(*conditions)
            .order_by(self.model_class.created_at.desc(), self.model_class.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return (
            [self._to_pydantic(m) for m in result.scalars().all()],
            int(count_result.scalar() or 0),
        )

    async def mark_read(self, notification_id: int, user_id: int) -> bool:
        result = await self.db.execute(
            update(self.model_class)
            .where(
                self.model_class.id == notification_id,
                self.model_class.user_id == user_id,
            )
            .values(is_read=True, read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def mark_all_read(self, user_id: int) -> int:
        result = await self.db.execute(
            update(self.model_class)
            .where(
                self.model_class.user_id == user_id,
                self.model_class.is_read == False,  # noqa: E712
            )
            .values(is_read=True, read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def delete_for_user(self, notification_id: int, user_id: int) -> bool:
        result = await self.db.execute(
            delete(self.model_class).where(
                self.model_class.id == notification_id,
                self.model_class.user_id == user_id,
            )
        )
        return bool(result.rowcount)

    async def stats(self, user_id: int) -> Tuple[int, int]:
        """(total, unread) counts for the user."""
        unread = func.sum(
            case((self.model_class.is_read == False, 1), else_=0)  # noqa: E712
        )
        result = await self.db.execute(
            select(func.count(self.model_class.id), unread).where(
                self.model_class.user_id == user_id
            )
        )
        total, unread_count = result.one()
        return int(total or 0), int(unread_count or 0)

    def _to_pydantic(self, db_model: Any) -> NotificationResponse:
        return NotificationResponse.model_validate(db_model)
