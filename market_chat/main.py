import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

import redis.asyncio as redis
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from market_chat import config
from market_chat.cache import MemoryCache, RedisCache
from market_chat.clients.email_provider_client import EmailProviderClient
from market_chat.clients.marketplace_client import MarketplaceClient
from market_chat.clients.push_provider_client import PushProviderClient
from market_chat.database import AsyncSessionLocal, close_db, get_db, init_db
from market_chat.exceptions import MessagingError
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.realtime.bus import InMemoryEventBus, RedisEventBus
from market_chat.realtime.connection_registry import ConnectionRegistry
from market_chat.routers.attachments import router as attachments_router
from market_chat.routers.conversations import router as conversations_router
from market_chat.routers.messages import router as messages_router
from market_chat.routers.notifications import router as notifications_router
from market_chat.routers.realtime import router as realtime_router
from market_chat.services.blob_storage import LocalBlobStorage
from market_chat.services.notification_dispatcher import NotificationDispatcher

if not config.COMMIT_HASH and config.ENV_IS_PROD:
    raise ValueError("COMMIT_HASH is required for production environments")

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def configure_components(app: FastAPI) -> None:
    """Build the bus, cache and long-lived collaborators onto ``app.state``."""
    if config.REDIS_URL:
        client = redis.from_url(config.REDIS_URL, decode_responses=True)
        app.state.bus = RedisEventBus(client)
        app.state.cache = RedisCache(client)
    else:
        logger.warning("REDIS_URL not set; realtime events stay in this process")
        app.state.bus = InMemoryEventBus()
        app.state.cache = MemoryCache()

    app.state.session_factory = AsyncSessionLocal
    app.state.broadcaster = Broadcaster(
        app.state.bus, app.state.cache, config.TYPING_TTL_SECONDS
    )
    app.state.registry = ConnectionRegistry(
        AsyncSessionLocal,
        app.state.cache,
        app.state.broadcaster,
        presence_ttl=config.PRESENCE_TTL_SECONDS,
        stale_after=config.STALE_CONNECTION_SECONDS,
    )
    app.state.storage = LocalBlobStorage(config.UPLOAD_DIR, config.PUBLIC_UPLOAD_URL)
    app.state.marketplace = MarketplaceClient(
        config.MARKETPLACE_API_URL, config.MARKETPLACE_API_KEY
    )
    app.state.dispatcher = NotificationDispatcher(
        AsyncSessionLocal,
        email_client=EmailProviderClient(
            config.EMAIL_PROVIDER_URL, config.EMAIL_PROVIDER_API_KEY
        ),
        push_client=PushProviderClient(
            config.VAPID_PRIVATE_KEY, config.VAPID_CLAIMS_EMAIL
        ),
        marketplace=app.state.marketplace,
        broadcaster=app.state.broadcaster,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup and shutdown."""
    # Startup
    await init_db()
    configure_components(app)
    yield
    # Shutdown
    await app.state.bus.close()
    await close_db()


app = FastAPI(
    title="Marketplace Chat Service",
    description="Buyer/seller messaging with realtime delivery and notifications",
    version=config.COMMIT_HASH or "dev",
    lifespan=lifespan,
)

# Include routers
app.include_router(
    conversations_router, prefix="/api/conversations", tags=["conversations"]
)
app.include_router(messages_router, prefix="/api/messages", tags=["messages"])
app.include_router(attachments_router, prefix="/api/attachments", tags=["attachments"])
app.include_router(
    notifications_router, prefix="/api/notifications", tags=["notifications"]
)
app.include_router(realtime_router, prefix="/api/realtime", tags=["realtime"])


@app.exception_handler(MessagingError)
async def messaging_error_handler(
    request: Request, exc: MessagingError
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": {
                "message": exc.message,
                "code": exc.code,
                "details": exc.details,
            }
        },
    )


@app.get("/health")
async def health_check(
    request: Request, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """Health check endpoint with database, bus and cache connectivity."""
    try:
        # Test database connection
        result = await db.execute(text("SELECT 1"))
        db_status = "connected" if result.scalar() == 1 else "error"
    except Exception:
        db_status = "disconnected"

    bus_ok = await request.app.state.bus.ping()
    cache_ok = await request.app.state.cache.ping()
    healthy = db_status == "connected" and bus_ok and cache_ok

    return {
        "status": "healthy" if healthy else "degraded",
        "database": db_status,
        "bus": "connected" if bus_ok else "disconnected",
        "cache": "connected" if cache_ok else "disconnected",
        "environment": config.ENV,
        "version": config.COMMIT_HASH,
    }


# If run directly, start the server
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.APP_ADDR, port=config.APP_PORT)
