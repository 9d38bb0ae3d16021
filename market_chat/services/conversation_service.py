import csv
import io
import json
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from market_chat.clients.marketplace_client import MarketplaceClient
from market_chat.exceptions import NotFoundError, ValidationError
from market_chat.models.api.conversations import (
    ConversationDetails,
    ConversationResponse,
    ConversationStats,
    ConversationStatus,
    ConversationSummary,
    LastMessagePreview,
    MarkReadResponse,
)
from market_chat.models.api.messages import (
    SYSTEM_SENDER_ID,
    DeliveryState,
    MessageResponse,
    MessageType,
)
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.repositories.block_repository import BlockRepository
from market_chat.repositories.delivery_status_repository import (
    DeliveryStatusRepository,
)
from market_chat.repositories.message_repository import MessageRepository
from market_chat.services.base_service import BaseService
from market_chat.services.send_message_service import SendMessageService

EXPORT_FORMATS = ("json", "csv", "txt")
BLOCKED_NOTICE = "This conversation has been blocked"
_TAG_PATTERN = re.compile(r"<[^>]+>")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def _plain_text(content: str) -> str:
    """Strip markup and collapse whitespace for flat exports."""
    return _WHITESPACE_PATTERN.sub(" ", _TAG_PATTERN.sub("", content)).strip()


def _sender_label(sender_id: int) -> str:
    return "System" if sender_id == SYSTEM_SENDER_ID else f"User {sender_id}"


class ConversationService(BaseService):
    """Service for conversation lifecycle, read state and typing state."""

    def __init__(
        self,
        db: AsyncSession,
        broadcaster: Optional[Broadcaster] = None,
        marketplace: Optional[MarketplaceClient] = None,
    ):
        super().__init__(db)
        self.broadcaster = broadcaster
        self.marketplace = marketplace
        self.message_repo = MessageRepository(db)
        self.delivery_repo = DeliveryStatusRepository(db)
        self.block_repo = BlockRepository(db)

    async def find_or_create(
        self, article_id: int, buyer_id: int, seller_id: int
    ) -> ConversationResponse:
        """Idempotently open the conversation for (article, buyer, seller)."""
        if buyer_id == seller_id:
            raise ValidationError("Cannot start conversation with yourself")
        async with self.transaction():
            conversation, created = await self.conversation_repo.find_or_create(
                article_id, buyer_id, seller_id
            )
        if created:
            self.logger.info(
                "Opened conversation %s for article %s", conversation.id, article_id
            )
        return conversation

    async def start_by_article(
        self, article_id: int, buyer_id: int, content: str
    ) -> Tuple[ConversationResponse, MessageResponse]:
        """
        Contact the seller of an article:
        1. Resolve the seller from the marketplace
        2. Find or create the conversation and persist the first message together
        3. Publish the new_message event after commit
        """
        if self.marketplace is None:
            raise RuntimeError("Marketplace client is not configured")
        article = await self.marketplace.get_article(article_id)
        if article is None:
            raise NotFoundError(
                f"Article {article_id} not found", details={"article_id": article_id}
            )
        if article.seller_id == buyer_id:
            raise ValidationError("Cannot start conversation with yourself")

        sender = SendMessageService(self.db, self.broadcaster)
        async with self.transaction():
            conversation, _ = await self.conversation_repo.find_or_create(
                article_id, buyer_id, article.seller_id
            )
            conversation = await sender.check_can_send(conversation.id, buyer_id)
            prepared = await sender.prepare_content(
                conversation, content, MessageType.TEXT
            )
            message = await sender.persist(
                conversation, buyer_id, prepared, MessageType.TEXT
            )

        conversation = await self.get_conversation(conversation.id)
        await sender.announce(conversation, message)
        return conversation, message

    async def list_for_user(
        self, user_id: int, page: int = 1, limit: int = 20
    ) -> List[ConversationSummary]:
        """The user's inbox, newest activity first, with last-message previews."""
        if limit <= 0 or limit > 100:
            raise ValidationError("Limit must be between 1 and 100")
        if page < 1:
            raise ValidationError("Page must be at least 1")

        conversations = await self.conversation_repo.list_for_user(
            user_id, limit=limit, offset=(page - 1) * limit
        )
        last_ids = [c.last_message_id for c in conversations if c.last_message_id]
        last_messages = {
            m.id: m for m in await self.message_repo.get_many(last_ids)
        }

        summaries = []
        for conversation in conversations:
            last = last_messages.get(conversation.last_message_id or 0)
            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    article_id=conversation.article_id,
                    status=conversation.status,
                    role=conversation.role_of(user_id),
                    other_user_id=conversation.other_participant(user_id),
                    unread_count=conversation.unread_for(user_id),
                    last_message_at=conversation.last_message_at,
                    last_message=(
                        LastMessagePreview(
                            id=last.id,
                            content=last.content,
                            message_type=last.message_type.value,
                            sender_id=last.sender_id,
                            created_at=last.created_at,
                        )
                        if last
                        else None
                    ),
                    created_at=conversation.created_at,
                )
            )
        return summaries

    async def get_details(
        self, conversation_id: int, user_id: int
    ) -> ConversationDetails:
        conversation = await self.require_participant(conversation_id, user_id)
        # Only live markers count; the stored flags never expire
        typing: List[int] = []
        if self.broadcaster is not None:
            typing = await self.broadcaster.typing_users(conversation_id)
        fields = conversation.model_dump()
        fields["is_buyer_typing"] = conversation.buyer_id in typing
        fields["is_seller_typing"] = conversation.seller_id in typing
        typing_user_ids = [uid for uid in typing if uid != user_id]
        return ConversationDetails(
            **fields,
            role=conversation.role_of(user_id),
            other_user_id=conversation.other_participant(user_id),
            unread_count=conversation.unread_for(user_id),
            typing_user_ids=typing_user_ids,
        )

    async def total_unread(self, user_id: int) -> int:
        return await self.conversation_repo.total_unread(user_id)

    async def mark_read(self, conversation_id: int, reader_id: int) -> MarkReadResponse:
        """
        Mark everything the other side sent as read:
        1. Flip unread messages not sent by the reader
        2. Recompute the reader's counter from what is still unread
        3. Upgrade delivery status and publish a read receipt after commit
        """
        conversation = await self.require_participant(conversation_id, reader_id)
        now = datetime.now(timezone.utc)

        async with self.transaction():
            message_ids = await self.message_repo.mark_conversation_read(
                conversation_id, reader_id, now
            )
            unread = await self.conversation_repo.recompute_unread(
                conversation, reader_id
            )
            await self.conversation_repo.touch_last_seen(conversation, reader_id, now)
            if message_ids:
                await self.delivery_repo.record(
                    message_ids, reader_id, DeliveryState.READ
                )

        if message_ids and self.broadcaster is not None:
            await self.broadcaster.read_receipt(
                conversation_id, reader_id, message_ids, now
            )
        return MarkReadResponse(
            conversation_id=conversation_id,
            marked_read=len(message_ids),
            unread_count=unread,
        )

    async def set_typing(
        self, conversation_id: int, user_id: int, is_typing: bool
    ) -> None:
        conversation = await self.require_participant(conversation_id, user_id)
        async with self.transaction():
            await self.conversation_repo.set_typing(conversation, user_id, is_typing)
        if self.broadcaster is not None:
            await self.broadcaster.set_typing(conversation_id, user_id, is_typing)

    async def touch_last_seen(self, conversation_id: int, user_id: int) -> None:
        conversation = await self.require_participant(conversation_id, user_id)
        async with self.transaction():
            await self.conversation_repo.touch_last_seen(
                conversation, user_id, datetime.now(timezone.utc)
            )

    async def block(
        self, conversation_id: int, blocker_id: int, reason: Optional[str] = None
    ) -> ConversationResponse:
        """Block the other participant; later sends into this conversation fail."""
        conversation = await self.require_participant(conversation_id, blocker_id)
        blocked_id = conversation.other_participant(blocker_id)
        sender = SendMessageService(self.db, self.broadcaster)

        async with self.transaction():
            await self.conversation_repo.set_status(
                conversation_id, ConversationStatus.BLOCKED
            )
            await self.block_repo.upsert(
                blocker_id, blocked_id, conversation_id, reason
            )
            notice = await sender.persist(
                conversation,
                SYSTEM_SENDER_ID,
                BLOCKED_NOTICE,
                MessageType.SYSTEM,
                metadata={"blocked_by": blocker_id, "reason": reason},
                system_message_type="conversation_blocked",
            )

        self.logger.info(
            "User %s blocked user %s in conversation %s",
            blocker_id,
            blocked_id,
            conversation_id,
        )
        conversation = await self.get_conversation(conversation_id)
        await sender.announce(conversation, notice)
        return conversation

    async def archive(
        self, conversation_id: int, user_id: int
    ) -> ConversationResponse:
        await self.require_participant(conversation_id, user_id)
        async with self.transaction():
            await self.conversation_repo.set_status(
                conversation_id, ConversationStatus.ARCHIVED
            )
        return await self.get_conversation(conversation_id)

    async def stats(self, conversation_id: int, user_id: int) -> ConversationStats:
        await self.require_participant(conversation_id, user_id)
        by_type, first_at, last_at = await self.message_repo.stats(conversation_id)
        return ConversationStats(
            conversation_id=conversation_id,
            total_messages=sum(by_type.values()),
            messages_by_type=by_type,
            first_message_at=first_at,
            last_message_at=last_at,
        )

    async def export(
        self, conversation_id: int, user_id: int, export_format: str = "json"
    ) -> Tuple[str, str, str]:
        """Render the full history; returns (body, media type, filename)."""
        if export_format not in EXPORT_FORMATS:
            raise ValidationError(
                f"Export format must be one of {', '.join(EXPORT_FORMATS)}",
                details={"format": export_format},
            )
        conversation = await self.require_participant(conversation_id, user_id)
        messages = await self.message_repo.list_all(conversation_id)
        filename = f"conversation_{conversation_id}_messages.{export_format}"

        if export_format == "csv":
            return self._export_csv(messages), "text/csv", filename
        if export_format == "txt":
            body = self._export_text(conversation, messages)
            return body, "text/plain; charset=utf-8", filename

        body = json.dumps(
            {
                "conversation": conversation.model_dump(mode="json"),
                "messages": [m.model_dump(mode="json") for m in messages],
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "total_messages": len(messages),
            },
            indent=2,
            ensure_ascii=False,
        )
        return body, "application/json", filename

    def _export_csv(self, messages: List[MessageResponse]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(
            ["Date", "Time", "Sender", "Message Type", "Content", "Read Status"]
        )
        for message in messages:
            writer.writerow(
                [
                    message.created_at.strftime("%Y-%m-%d"),
                    message.created_at.strftime("%H:%M:%S"),
                    _sender_label(message.sender_id),
                    message.message_type.value.capitalize(),
                    _plain_text(message.content),
                    "Read" if message.is_read else "Unread",
                ]
            )
        return buffer.getvalue()

    def _export_text(
        self, conversation: ConversationResponse, messages: List[MessageResponse]
    ) -> str:
        lines = [
            "=== Message Export ===",
            f"Conversation: article {conversation.article_id}",
            f"Participants: User {conversation.buyer_id} "
            f"& User {conversation.seller_id}",
            f"Export Date: {datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S}",
            f"Total Messages: {len(messages)}",
            "=" * 50,
            "",
        ]
        for message in messages:
            lines.append(
                f"[{message.created_at:%Y-%m-%d %H:%M:%S}] "
                f"{_sender_label(message.sender_id)}:"
            )
            if message.message_type == MessageType.TEXT:
                lines.append(message.content)
            else:
                lines.append(
                    f"[{message.message_type.value.upper()}] {message.content}"
                )
            lines.append("")
        return "\n".join(lines)
