import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from market_chat.database import get_db
from market_chat.dependencies import get_current_user_id, get_storage
from market_chat.exceptions import MessagingError
from market_chat.models.api.attachments import AttachmentResponse
from market_chat.services.attachment_service import AttachmentService
from market_chat.services.blob_storage import BlobStorage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{attachment_id}", response_model=AttachmentResponse)
async def get_attachment(
    attachment_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
) -> AttachmentResponse:
    """Attachment metadata; only participants of the conversation may read it."""
    try:
        service = AttachmentService(db, storage)
        return await service.info(attachment_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to load attachment %s", attachment_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{attachment_id}/download")
async def download_attachment(
    attachment_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
) -> FileResponse:
    """Stream the stored file back under its original filename."""
    try:
        service = AttachmentService(db, storage)
        record = await service.download(attachment_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to download attachment %s", attachment_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    return FileResponse(
        storage.path_for(record.file_path),
        media_type=record.mime_type,
        filename=record.original_filename,
    )


@router.delete("/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_attachment(
    attachment_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
) -> Response:
    try:
        service = AttachmentService(db, storage)
        await service.delete(attachment_id, user_id)
    except MessagingError as e:
        raise e.to_http_exception()
    except Exception:
        logger.exception("Failed to delete attachment %s", attachment_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
