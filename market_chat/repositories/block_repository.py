from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.db.block_model import BlockModel
from market_chat.repositories.base_repository import BaseRepository


class BlockRepository(BaseRepository[BlockModel, BlockModel]):
    """Repository for blocker -> blocked edges."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, BlockModel)

    async def upsert(
        self,
        blocker_id: int,
        blocked_id: int,
        conversation_id: Optional[int],
        reason: Optional[str],
    ) -> None:
        """Record a block; blocking again refreshes the reason and conversation."""
        now = datetime.now(timezone.utc)
        stmt = self._insert().values(
            blocker_id=blocker_id,
            blocked_id=blocked_id,
            conversation_id=conversation_id,
            reason=reason,
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["blocker_id", "blocked_id"],
            set_={"conversation_id": conversation_id, "reason": reason},
        )
        await self.db.execute(stmt)

    async def exists_between(self, user_a: int, user_b: int) -> bool:
        """True if either user has blocked the other."""
        query = select(func.count(self.model_class.id)).where(
            or_(
                and_(
                    self.model_class.blocker_id == user_a,
                    self.model_class.blocked_id == user_b,
                ),
                and_(
                    self.model_class.blocker_id == user_b,
                    self.model_class.blocked_id == user_a,
                ),
            )
        )
        result = await self.db.execute(query)
        return bool(result.scalar())
