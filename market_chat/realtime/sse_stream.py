"""
SSE fallback stream.

One loop per connection: wait on the bus with a short timeout, forward any
event, and emit a keepalive frame on a fixed interval so proxies do not
time the connection out. Teardown unregisters the connection, which clears
presence once the user has no other connection open.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Iterable, Optional

from market_chat.models.api.realtime import (
    TransportKind,
    conversation_channel,
    user_channel,
)
from market_chat.realtime.bus import EventBus
from market_chat.realtime.connection_registry import ConnectionRegistry

logger = logging.getLogger(__name__)


async def create_sse_stream(
    user_id: int,
    conversation_ids: Iterable[int],
    bus: EventBus,
    registry: ConnectionRegistry,
    keepalive_interval: float,
    poll_timeout: float,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> AsyncGenerator[Dict[str, str], None]:
    """Yield SSE event dicts (``event``/``data``) for the user's channels.

    Conversation ids must be loaded before streaming starts so no database
    session stays open for the life of the connection.
    """
    connection = await registry.register(
        user_id, TransportKind.SSE, user_agent=user_agent, ip_address=ip_address
    )
    channels = [user_channel(user_id)] + [
        conversation_channel(cid) for cid in conversation_ids
    ]
    logger.info(
        "SSE stream opened for user %s (%s)", user_id, connection.connection_id
    )
    try:
        yield {
            "event": "connected",
            "data": json.dumps(
                {
                    "user_id": user_id,
                    "connection_id": connection.connection_id,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ),
        }

        async with bus.subscribe(channels) as subscription:
            last_keepalive = time.monotonic()
            while True:
                event = await subscription.next_event(poll_timeout)
                if event is not None:
                    yield {"event": event.type.value, "data": event.model_dump_json()}

                if time.monotonic() - last_keepalive >= keepalive_interval:
                    await registry.heartbeat(connection.connection_id)
                    yield {
                        "event": "keepalive",
                        "data": json.dumps(
                            {
                                "type": "keepalive",
                                "timestamp": datetime.now(timezone.utc).isoformat(),
                            }
                        ),
                    }
                    last_keepalive = time.monotonic()
    finally:
        logger.info(
            "SSE stream closed for user %s (%s)", user_id, connection.connection_id
        )
        await registry.unregister(connection.connection_id)
