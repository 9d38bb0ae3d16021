"""FastAPI dependencies: caller identity and the components built at startup."""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from market_chat.clients.marketplace_client import MarketplaceClient
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.realtime.connection_registry import ConnectionRegistry
from market_chat.services.blob_storage import BlobStorage
from market_chat.services.notification_dispatcher import NotificationDispatcher


def parse_user_id(raw: Optional[str]) -> Optional[int]:
    """Positive integer user id from an opaque identity value, else None."""
    if raw is None:
        return None
    try:
        user_id = int(raw.strip())
    except ValueError:
        return None
    return user_id if user_id > 0 else None


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> int:
    user_id = parse_user_id(x_user_id)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-User-Id header",
        )
    return user_id


def get_broadcaster(request: Request) -> Broadcaster:
    broadcaster: Broadcaster = request.app.state.broadcaster
    return broadcaster


def get_registry(request: Request) -> ConnectionRegistry:
    registry: ConnectionRegistry = request.app.state.registry
    return registry


def get_dispatcher(request: Request) -> NotificationDispatcher:
    dispatcher: NotificationDispatcher = request.app.state.dispatcher
    return dispatcher


def get_marketplace(request: Request) -> MarketplaceClient:
    marketplace: MarketplaceClient = request.app.state.marketplace
    return marketplace


def get_storage(request: Request) -> BlobStorage:
    storage: BlobStorage = request.app.state.storage
    return storage
