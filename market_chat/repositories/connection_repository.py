from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.models.api.realtime import ConnectionResponse, TransportKind
from market_chat.models.db.connection_model import ConnectionModel
from market_chat.repositories.base_repository import BaseRepository


class ConnectionRepository(BaseRepository[ConnectionModel, ConnectionResponse]):
    """Repository for live WebSocket and SSE connections."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, ConnectionModel)

    async def create(
        self,
        user_id: int,
        connection_id: str,
        transport: TransportKind,
        connected_at: datetime,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ConnectionResponse:
        db_model = ConnectionModel(
            user_id=user_id,
            connection_id=connection_id,
            transport=transport.value,
            is_active=True,
            last_ping=connected_at,
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=connected_at,
        )
        await self.add(db_model)
        return self._to_pydantic(db_model)

    async def get_by_connection_id(
        self, connection_id: str
    ) -> Optional[ConnectionResponse]:
        query = (
            select(self.model_class)
            .where(self.model_class.connection_id == connection_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        return self._to_pydantic(db_model) if db_model else None

    async def deactivate_stale(self, user_id: int, cutoff: datetime) -> int:
        """Mark the user's connections without a heartbeat since ``cutoff`` inactive."""
        result = await self.db.execute(
            update(self.model_class)
            .where(
                self.model_class.user_id == user_id,
                self.model_class.is_active == True,  # noqa: E712
                self.model_class.last_ping < cutoff,
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def deactivate(self, connection_id: str) -> bool:
        result = await self.db.execute(
            update(self.model_class)
            .where(
                self.model_class.connection_id == connection_id,
                self.model_class.is_active == True,  # noqa: E712
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def touch(self, connection_id: str, pinged_at: datetime) -> bool:
        result = await self.db.execute(
            update(self.model_class)
            .where(
                self.model_class.connection_id == connection_id,
                self.model_class.is_active == True,  # noqa: E712
            )
            .values(last_ping=pinged_at)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def active_for_user(self, user_id: int) -> List[ConnectionResponse]:
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

    async def count_active_for_user(self, user_id: int) -> int:
        result = await self.db.execute(
            select(func.count(self.model_class.id)).where(
                self.model_class.user_id == user_id,
                self.model_class.is_active == True,  # noqa: E712
            )
        )
        return int(result.scalar() or 0)

    async def last_ping_for_user(self, user_id: int) -> Optional[datetime]:
        result = await self.db.execute(
            select(func.max(self.model_class.last_ping)).where(
                self.model_class.user_id == user_id
            )
        )
        last_ping: Optional[datetime] = result.scalar()
        return last_ping

    async def totals(self) -> tuple[int, int]:
        """(active connections, distinct users with an active connection)."""
        result = await self.db.execute(
            select(
                func.count(self.model_class.id),
                func.count(func.distinct(self.model_class.user_id)),
            ).where(self.model_class.is_active == True)  # noqa: E712
        )
        connections, users = result.one()
        return int(connections or 0), int(users or 0)

    def _to_pydantic(self, db_model: Any) -> ConnectionResponse:
        return ConnectionResponse.model_validate(db_model)
