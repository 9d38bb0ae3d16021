from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy import delete, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from market_chat.database import Base, dialect_name

ModelType = TypeVar("ModelType", bound=Base)
PydanticType = TypeVar("PydanticType", bound=BaseModel)


class BaseRepository(Generic[ModelType, PydanticType]):
    """Generic base repository with common CRUD operations.

    Writes only flush; the calling service owns the transaction and commits.
    """

    def __init__(self, db: AsyncSession, model_class: Any):
        self.db = db
        self.model_class = model_class

    async def get_model(self, id: int) -> Optional[ModelType]:
        """Get a single ORM row by ID, bypassing stale identity-map state."""
        query = (
            select(self.model_class)
            .where(self.model_class.id == id)
            .execution_options(populate_existing=True)
        )  # type: ignore
        result = await self.db.execute(query)
        db_model: Optional[ModelType] = result.scalar_one_or_none()
        return db_model

    async def get_by_id(self, id: int) -> Optional[PydanticType]:
        """Get a single record by ID."""
        db_model = await self.get_model(id)
        return self._to_pydantic(db_model) if db_model else None

    async def add(self, db_model: ModelType) -> ModelType:
        """Stage a new row and flush it so generated keys are populated."""
        self.db.add(db_model)
        await self.db.flush()
        await self.db.refresh(db_model)
        return db_model

    async def update_fields(self, id: int, **values: Any) -> int:
        """Update columns on one row; returns the number of rows touched."""
        result = await self.db.execute(
            update(self.model_class)
            .where(self.model_class.id == id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )  # type: ignore
        return int(result.rowcount or 0)

    async def delete(self, id: int) -> bool:
        """Delete a record by ID."""
        result = await self.db.execute(
            delete(self.model_class).where(self.model_class.id == id)
        )  # type: ignore
        return bool(result.rowcount)

    async def get_all(self, limit: int = 100, offset: int = 0) -> List[PydanticType]:
        """Get all records with pagination."""
        query = select(self.model_class).limit(limit).offset(offset)
        result = await self.db.execute(query)
        db_models = result.scalars().all()
        return [self._to_pydantic(db_model) for db_model in db_models]

    def _insert(self) -> Any:
        """INSERT construct supporting ON CONFLICT for the bound dialect."""
        if dialect_name(self.db) == "sqlite":
            return sqlite_insert(self.model_class)
        return pg_insert(self.model_class)

    def _to_pydantic(self, db_model: ModelType) -> PydanticType:
        """Convert SQLAlchemy model to Pydantic model.

        This should be overridden in subclasses for specific conversion logic.
        """
        raise NotImplementedError
