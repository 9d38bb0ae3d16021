from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class StoredFile(BaseModel):
    """Descriptor of a file written to blob storage during ingestion."""

    filename: str
    original_filename: str
    file_path: str
    file_size: int
    mime_type: str
    is_image: bool
    width: Optional[int] = None
    height: Optional[int] = None
    thumbnail_path: Optional[str] = None


class AttachmentResponse(BaseModel):
    """Response model for attachment metadata."""

    id: int
    message_id: int
    filename: str
    original_filename: str
    file_size: int
    mime_type: str
    is_image: bool
    width: Optional[int] = None
    height: Optional[int] = None
    url: str
    thumbnail_url: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AttachmentRecord(AttachmentResponse):
    """Attachment metadata including storage paths; never returned to clients."""

    file_path: str
    thumbnail_path: Optional[str] = None
    conversation_id: int
    sender_id: int
