from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.api.messages import DeliveryState
from market_chat.models.db.delivery_status_model import DeliveryStatusModel
from market_chat.repositories.base_repository import BaseRepository


class DeliveryStatusRepository(BaseRepository[DeliveryStatusModel, DeliveryState]):
    """Per-recipient delivery state; only ever moves sent -> delivered -> read."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, DeliveryStatusModel)

    async def record(
        self, message_ids: Sequence[int], user_id: int, state: DeliveryState
    ) -> None:
        """Record ``state`` for each message, upgrading lower states only."""
        lower = [s.value for s in DeliveryState if s.rank < state.rank]
        now = datetime.now(timezone.utc)
        for message_id in message_ids:
            stmt = self._insert().values(
                message_id=message_id,
                user_id=user_id,
                status=state.value,
                status_at=now,
            )
            if lower:
                stmt = stmt.on_conflict_do_update(
                    index_elements=["message_id", "user_id"],
                    set_={"status": state.value, "status_at": now},
                    where=self.model_class.status.in_(lower),
                )
            else:
                stmt = stmt.on_conflict_do_nothing(
                    index_elements=["message_id", "user_id"]
                )
            await self.db.execute(stmt)

    async def get_state(self, message_id: int, user_id: int) -> Optional[DeliveryState]:
        query = select(self.model_class.status).where(
            self.model_class.message_id == message_id,
            self.model_class.user_id == user_id,
        )
        result = await self.db.execute(query)
        value = result.scalar_one_or_none()
        return DeliveryState(value) if value else None
