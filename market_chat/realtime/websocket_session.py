"""
Bidirectional WebSocket session.

Client frames are JSON objects with a ``type``:

    ping                                   -> heartbeat, answered with pong
    typing     {conversation_id, is_typing}
    subscribe  {conversation_id}           -> participant check, then join
    delivered  {message_ids}

The server sends ``connected``, ``pong`` and ``error`` frames plus every bus
event on the user's channel and their conversation channels.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from fastapi import WebSocket, WebSocketDisconnect

from market_chat.database import SessionFactory, session_scope
from market_chat.exceptions import MessagingError, ValidationError
from market_chat.models.api.realtime import (
    TransportKind,
    conversation_channel,
    user_channel,
)
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.realtime.bus import EventBus, Subscription
from market_chat.realtime.connection_registry import ConnectionRegistry
from market_chat.services.conversation_service import ConversationService
from market_chat.services.message_action_service import MessageActionService

logger = logging.getLogger(__name__)


class WebSocketSession:
    def __init__(
        self,
        websocket: WebSocket,
        user_id: int,
        bus: EventBus,
        broadcaster: Broadcaster,
        registry: ConnectionRegistry,
        session_factory: SessionFactory,
    ):
        self.websocket = websocket
        self.user_id = user_id
        self.bus = bus
        self.broadcaster = broadcaster
        self.registry = registry
        self.session_factory = session_factory
        self.connection_id: Optional[str] = None

    async def run(self, conversation_ids: Iterable[int]) -> None:
        """Serve the socket until the client disconnects."""
        headers = self.websocket.headers
        client = self.websocket.client
        connection = await self.registry.register(
            self.user_id,
            TransportKind.WEBSOCKET,
            user_agent=headers.get("user-agent"),
            ip_address=client.host if client else None,
        )
        self.connection_id = connection.connection_id
        channels = [user_channel(self.user_id)] + [
            conversation_channel(cid) for cid in conversation_ids
        ]
        logger.info(
            "WebSocket session opened for user %s (%s)",
            self.user_id,
            self.connection_id,
        )
        try:
            await self.send(
                {
                    "type": "connected",
                    "user_id": self.user_id,
                    "connection_id": self.connection_id,
                }
            )
            async with self.bus.subscribe(channels) as subscription:
                forwarder = asyncio.create_task(self._forward(subscription))
                try:
                    await self._receive(subscription)
                finally:
                    forwarder.cancel()
                    try:
                        await forwarder
                    except asyncio.CancelledError:
                        pass
        except WebSocketDisconnect:
            pass
        finally:
            logger.info(
                "WebSocket session closed for user %s (%s)",
                self.user_id,
                self.connection_id,
            )
            await self.registry.unregister(connection.connection_id)

    async def send(self, frame: Dict[str, Any]) -> None:
        await self.websocket.send_json(frame)

    async def _forward(self, subscription: Subscription) -> None:
        while True:
            event = await subscription.next_event(timeout=1.0)
            if event is not None:
                await self.websocket.send_text(event.model_dump_json())

    async def _receive(self, subscription: Subscription) -> None:
        while True:
            try:
                frame = await self.websocket.receive_json()
            except WebSocketDisconnect:
                return
            except ValueError:
                await self.send_error("Frames must be JSON objects", "invalid_frame")
                continue
            if not isinstance(frame, dict):
                await self.send_error("Frames must be JSON objects", "invalid_frame")
                continue
            try:
                await self.handle(frame, subscription)
            except MessagingError as e:
                await self.send_error(e.message, e.code)

    async def send_error(self, message: str, code: str) -> None:
        await self.send({"type": "error", "message": message, "code": code})

    async def handle(self, frame: Dict[str, Any], subscription: Subscription) -> None:
        frame_type = frame.get("type")
        if frame_type == "ping":
            await self.registry.heartbeat(self.connection_id or "")
            await self.send(
                {"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()}
            )
        elif frame_type == "typing":
            conversation_id = self._int_field(frame, "conversation_id")
            async with session_scope(self.session_factory) as db:
                await ConversationService(db, self.broadcaster).set_typing(
                    conversation_id, self.user_id, bool(frame.get("is_typing"))
                )
        elif frame_type == "subscribe":
            conversation_id = self._int_field(frame, "conversation_id")
            async with session_scope(self.session_factory) as db:
                await ConversationService(db).require_participant(
                    conversation_id, self.user_id
                )
            await subscription.add_channels([conversation_channel(conversation_id)])
            await self.send({"type": "subscribed", "conversation_id": conversation_id})
        elif frame_type == "delivered":
            message_ids = frame.get("message_ids")
            if not isinstance(message_ids, list) or not all(
                isinstance(mid, int) for mid in message_ids
            ):
                await self.send_error(
                    "message_ids must be a list of ids", "invalid_frame"
                )
                return
            async with session_scope(self.session_factory) as db:
                await MessageActionService(db, self.broadcaster).mark_delivered(
                    message_ids, self.user_id
                )
        else:
            await self.send_error(f"Unknown frame type: {frame_type}", "unknown_type")

    def _int_field(self, frame: Dict[str, Any], name: str) -> int:
        value = frame.get(name)
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValidationError(f"{name} must be an integer", code="invalid_frame")
        return value
