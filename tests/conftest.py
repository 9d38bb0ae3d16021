import os
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Generator
from unittest.mock import AsyncMock, MagicMock

# The app's engine is created at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest  # noqa: E402
from dotenv import load_dotenv  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

import market_chat.models.db  # noqa: E402,F401
from market_chat.cache import MemoryCache  # noqa: E402
from market_chat.clients.marketplace_client import (  # noqa: E402
    ArticleInfo,
    MarketplaceClient,
    UserInfo,
)
from market_chat.database import Base  # noqa: E402
from market_chat.main import app  # noqa: E402
from market_chat.models.api.conversations import ConversationResponse  # noqa: E402
from market_chat.realtime.broadcaster import Broadcaster  # noqa: E402
from market_chat.realtime.bus import InMemoryEventBus  # noqa: E402
from market_chat.realtime.connection_registry import ConnectionRegistry  # noqa: E402
from market_chat.repositories.conversation_repository import (  # noqa: E402
    ConversationRepository,
)
from market_chat.services.blob_storage import LocalBlobStorage  # noqa: E402
from market_chat.services.notification_dispatcher import (  # noqa: E402
    NotificationDispatcher,
)

load_dotenv()

ConversationFactory = Callable[..., Awaitable[ConversationResponse]]


@pytest.fixture
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Clean up
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Database session for integration tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def mock_db() -> AsyncGenerator[AsyncMock, None]:
    """Create a mock database session for unit tests."""
    mock_session = AsyncMock()
    mock_session.commit = AsyncMock()
    mock_session.rollback = AsyncMock()
    mock_session.close = AsyncMock()
    mock_session.refresh = AsyncMock()
    mock_session.execute = AsyncMock()
    mock_session.flush = AsyncMock()
    mock_session.add = MagicMock()  # add is sync, not async

    yield mock_session


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def broadcaster(bus: InMemoryEventBus, cache: MemoryCache) -> Broadcaster:
    return Broadcaster(bus, cache, typing_ttl=10)


@pytest.fixture
def registry(
    session_factory: async_sessionmaker[AsyncSession],
    cache: MemoryCache,
    broadcaster: Broadcaster,
) -> ConnectionRegistry:
    return ConnectionRegistry(
        session_factory, cache, broadcaster, presence_ttl=300, stale_after=300
    )


@pytest.fixture
def storage(tmp_path: Path) -> LocalBlobStorage:
    return LocalBlobStorage(str(tmp_path / "uploads"), "/uploads/messages")


@pytest.fixture
def marketplace() -> AsyncMock:
    """Marketplace stub knowing article 42 (seller 1) and users 1 and 2."""
    client = AsyncMock(spec=MarketplaceClient)
    articles = {42: ArticleInfo(id=42, seller_id=1, title="Vintage bicycle")}
    users = {
        1: UserInfo(id=1, email="seller@example.com", first_name="Sam"),
        2: UserInfo(id=2, email="buyer@example.com", first_name="Bea"),
    }
    client.get_article.side_effect = lambda article_id: articles.get(article_id)
    client.get_user.side_effect = lambda user_id: users.get(user_id)
    return client


@pytest.fixture
def conversation_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> ConversationFactory:
    """Create and commit a conversation; buyer 2 and seller 1 by default."""

    async def create(
        article_id: int = 42, buyer_id: int = 2, seller_id: int = 1
    ) -> ConversationResponse:
        async with session_factory() as session:
            conversation, _ = await ConversationRepository(session).find_or_create(
                article_id, buyer_id, seller_id
            )
            await session.commit()
        return conversation

    return create


@pytest.fixture
def client(tmp_path: Path) -> Generator[TestClient, Any, None]:
    """Test client with in-process components; services are patched per test."""
    bus = InMemoryEventBus()
    cache = MemoryCache()
    app.state.bus = bus
    app.state.cache = cache
    app.state.broadcaster = Broadcaster(bus, cache, typing_ttl=10)
    app.state.registry = AsyncMock(spec=ConnectionRegistry)
    app.state.storage = LocalBlobStorage(str(tmp_path / "uploads"), "/uploads")
    app.state.marketplace = AsyncMock(spec=MarketplaceClient)
    app.state.dispatcher = AsyncMock(spec=NotificationDispatcher)
    # Lifespan is not run, so the real Redis/provider wiring never happens
    yield TestClient(app)
