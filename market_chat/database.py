"""Database configuration and connection management."""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

# Load environment variables from .env file
load_dotenv()


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

engine = create_async_engine(
    DATABASE_URL, echo=os.getenv("SQL_DEBUG", "false").lower() == "true", future=True
)

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

SessionFactory = async_sessionmaker[AsyncSession]


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session dependency."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def session_scope(
    factory: SessionFactory = AsyncSessionLocal,
) -> AsyncIterator[AsyncSession]:
    """Short-lived session for work outside a request.

    Streaming connections and background notification dispatch must not hold
    the request session open, so they open one of these per unit of work.
    """
    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def dialect_name(db: AsyncSession, default: str = "postgresql") -> str:
    """Return the SQL dialect name bound to ``db``."""
    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    name = getattr(dialect, "name", None)
    return name if isinstance(name, str) else default


async def init_db() -> None:
    """Initialize database connection on startup."""
    # Schema is owned by the alembic migrations
    pass


async def close_db() -> None:
    """Close database connections on shutdown."""
    await engine.dispose()
