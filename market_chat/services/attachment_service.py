import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import PurePath
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from market_chat import config
from market_chat.exceptions import NotFoundError, ValidationError
from market_chat.models.api.attachments import (
    AttachmentRecord,
    AttachmentResponse,
    StoredFile,
)
from market_chat.models.api.messages import MessageResponse, MessageType
from market_chat.realtime.broadcaster import Broadcaster
from market_chat.repositories.attachment_repository import AttachmentRepository
from market_chat.services.base_service import BaseService
from market_chat.services.blob_storage import (
    FILES_BUCKET,
    IMAGES_BUCKET,
    THUMBNAILS_BUCKET,
    BlobStorage,
)
from market_chat.services.content_sanitizer import sanitize_text
from market_chat.services.image_processing import ImageProcessingService
from market_chat.services.send_message_service import SendMessageService

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = ("jpg", "jpeg", "png", "gif", "webp")
ALLOWED_FILE_TYPES = ("pdf", "doc", "docx", "txt", "zip", "rar")

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "txt": "text/plain",
    "zip": "application/zip",
    "rar": "application/x-rar-compressed",
}

# Leading bytes each document type must start with
DOCUMENT_SIGNATURES = {
    "pdf": (b"%PDF",),
    "doc": (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1",),
    "docx": (b"PK\x03\x04",),
    "zip": (b"PK\x03\x04", b"PK\x05\x06"),
    "rar": (b"Rar!\x1a\x07",),
}


@dataclass
class ValidatedFile:
    original_filename: str
    extension: str
    mime_type: str
    is_image: bool


def generate_filename(extension: str) -> str:
    """Stored name from the clock plus random bytes, never the upload name."""
    return f"{int(time.time())}_{secrets.token_hex(8)}.{extension}"


def thumbnail_name(filename: str) -> str:
    stored = PurePath(filename)
    return f"{stored.stem}_thumb{stored.suffix}"


def attachment_caption(stored: StoredFile) -> str:
    if stored.is_image:
        return f"📷 Sent a photo: {stored.original_filename}"
    size_kb = round(stored.file_size / 1024, 1)
    return f"📄 Sent a file: {stored.original_filename} ({size_kb} KB)"


class AttachmentService(BaseService):
    """Service for uploading, reading and deleting message attachments."""

    def __init__(
        self,
        db: AsyncSession,
        storage: BlobStorage,
        broadcaster: Optional[Broadcaster] = None,
        images: Optional[ImageProcessingService] = None,
    ):
        super().__init__(db)
        self.storage = storage
        self.sender = SendMessageService(db, broadcaster)
        self.attachment_repo = AttachmentRepository(db, storage.url_for)
        self.images = images or ImageProcessingService(
            config.MAX_IMAGE_DIMENSION, config.THUMBNAIL_SIZE
        )

    def validate(
        self, filename: str, data: bytes, declared_size: Optional[int] = None
    ) -> ValidatedFile:
        """Check extension, size and actual content before anything is stored."""
        original = PurePath(filename or "").name
        extension = PurePath(original).suffix.lower().lstrip(".")
        if not original or not extension:
            raise ValidationError("A file name with an extension is required")

        is_image = extension in ALLOWED_IMAGE_TYPES
        if not is_image and extension not in ALLOWED_FILE_TYPES:
            allowed = ", ".join(ALLOWED_IMAGE_TYPES + ALLOWED_FILE_TYPES)
            raise ValidationError(
                f"File type not allowed. Allowed: {allowed}",
                code="file_type_not_allowed",
                details={"extension": extension},
            )

        if not data:
            raise ValidationError("Uploaded file is empty")

        self._check_size(is_image, max(len(data), declared_size or 0))

        if is_image:
            try:
                self.images.verify(data, extension)
            except ValueError as e:
                raise ValidationError(
                    "Invalid image file",
                    code="invalid_file_content",
                    details={"reason": str(e)},
                )
        elif not self._matches_document(extension, data):
            raise ValidationError(
                "File content does not match its type",
                code="invalid_file_content",
                details={"extension": extension},
            )

        return ValidatedFile(
            original_filename=original,
            extension=extension,
            mime_type=MIME_TYPES[extension],
            is_image=is_image,
        )

    def check_declared_size(self, filename: str, declared_size: Optional[int]) -> None:
        """Reject an upload by its declared size before the body is read."""
        extension = PurePath(PurePath(filename or "").name).suffix.lower().lstrip(".")
        if declared_size is None:
            return
        if extension in ALLOWED_IMAGE_TYPES:
            self._check_size(True, declared_size)
        elif extension in ALLOWED_FILE_TYPES:
            self._check_size(False, declared_size)

    def _check_size(self, is_image: bool, size: int) -> None:
        max_size = (
            config.MAX_IMAGE_SIZE_BYTES if is_image else config.MAX_FILE_SIZE_BYTES
        )
        if size > max_size:
            max_mb = round(max_size / 1024 / 1024, 1)
            raise ValidationError(
                f"File too large. Maximum size: {max_mb}MB",
                code="file_too_large",
                details={"max_size": max_size, "size": size},
            )

    def _matches_document(self, extension: str, data: bytes) -> bool:
        if extension == "txt":
            if b"\x00" in data:
                return False
            try:
                data.decode("utf-8")
            except UnicodeDecodeError:
                return False
            return True
        return any(data.startswith(sig) for sig in DOCUMENT_SIGNATURES[extension])

    async def ingest(self, validated: ValidatedFile, data: bytes) -> StoredFile:
        """Write the file (and for images a thumbnail) under a generated name."""
        filename = generate_filename(validated.extension)
        if not validated.is_image:
            file_path = await self.storage.save(FILES_BUCKET, filename, data)
            return StoredFile(
                filename=filename,
                original_filename=validated.original_filename,
                file_path=file_path,
                file_size=len(data),
                mime_type=validated.mime_type,
                is_image=False,
            )

        processed = await asyncio.to_thread(
            self.images.process, data, validated.extension
        )
        file_path = await self.storage.save(IMAGES_BUCKET, filename, processed.data)
        try:
            thumbnail_path = await self.storage.save(
                THUMBNAILS_BUCKET, thumbnail_name(filename), processed.thumbnail
            )
        except Exception:
            await self.storage.delete(file_path)
            raise
        return StoredFile(
            filename=filename,
            original_filename=validated.original_filename,
            file_path=file_path,
            file_size=len(processed.data),
            mime_type=validated.mime_type,
            is_image=True,
            width=processed.width,
            height=processed.height,
            thumbnail_path=thumbnail_path,
        )

    async def cleanup(self, file_path: str, thumbnail_path: Optional[str]) -> None:
        for path in (file_path, thumbnail_path):
            if not path:
                continue
            try:
                await self.storage.delete(path)
            except Exception as e:
                logger.error("Failed to remove stored file %s: %s", path, e)

    async def upload(
        self,
        conversation_id: int,
        sender_id: int,
        filename: str,
        data: bytes,
        declared_size: Optional[int] = None,
        content: Optional[str] = None,
    ) -> Tuple[MessageResponse, AttachmentResponse]:
        """
        Compose flow for an attachment message:
        1. Check send access and validate the file
        2. Store the file and thumbnail
        3. Create the message and attachment row in one transaction
        4. Remove stored files if the transaction fails, else broadcast
        """
        conversation = await self.sender.check_can_send(conversation_id, sender_id)
        validated = self.validate(filename, data, declared_size)

        caption = sanitize_text(content) if content and content.strip() else ""
        if len(caption) > config.MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message content exceeds {config.MAX_MESSAGE_LENGTH} characters",
                details={"max_length": config.MAX_MESSAGE_LENGTH},
            )

        stored = await self.ingest(validated, data)
        message_type = MessageType.IMAGE if stored.is_image else MessageType.FILE
        try:
            async with self.transaction():
                message = await self.sender.persist(
                    conversation,
                    sender_id,
                    caption or attachment_caption(stored),
                    message_type,
                )
                attachment = await self.attachment_repo.create(message.id, stored)
        except Exception as e:
            logger.warning(
                "Upload to conversation %s failed, removing %s: %s",
                conversation_id,
                stored.file_path,
                e,
            )
            await self.cleanup(stored.file_path, stored.thumbnail_path)
            raise

        message = message.model_copy(update={"attachments": [attachment]})
        await self.sender.announce(conversation, message)
        return message, attachment

    async def get_record(self, attachment_id: int, user_id: int) -> AttachmentRecord:
        record = await self.attachment_repo.get_record(attachment_id)
        if not record:
            raise NotFoundError(
                f"Attachment {attachment_id} not found",
                details={"attachment_id": attachment_id},
            )
        # The sender is always a participant, so this also admits the sender
        await self.require_participant(record.conversation_id, user_id)
        return record

    async def info(self, attachment_id: int, user_id: int) -> AttachmentResponse:
        record = await self.get_record(attachment_id, user_id)
        return AttachmentResponse(
            **record.model_dump(
                exclude={"file_path", "thumbnail_path", "conversation_id", "sender_id"}
            )
        )

    async def download(self, attachment_id: int, user_id: int) -> AttachmentRecord:
        """Access-checked record whose ``file_path`` the caller streams back."""
        record = await self.get_record(attachment_id, user_id)
        if not self.storage.path_for(record.file_path).exists():
            raise NotFoundError(
                "Attachment file is missing",
                details={"attachment_id": attachment_id},
            )
        return record

    async def delete(self, attachment_id: int, user_id: int) -> None:
        record = await self.get_record(attachment_id, user_id)
        async with self.transaction():
            await self.attachment_repo.delete(attachment_id)
        await self.cleanup(record.file_path, record.thumbnail_path)

