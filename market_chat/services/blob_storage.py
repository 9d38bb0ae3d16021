"""
Blob storage for message attachments.

Stored paths are relative to the storage root (``images/<name>``,
``files/<name>``, ``thumbnails/<name>``) so the database never records
machine-specific locations.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)

IMAGES_BUCKET = "images"
FILES_BUCKET = "files"
THUMBNAILS_BUCKET = "thumbnails"
BUCKETS = (IMAGES_BUCKET, FILES_BUCKET, THUMBNAILS_BUCKET)


class BlobStorage(ABC):
    """Interface for persisting attachment bytes."""

    @abstractmethod
    async def save(self, bucket: str, filename: str, data: bytes) -> str:
        """Write ``data`` and return its stored path."""

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Remove a stored file; returns False if it was already gone."""

    @abstractmethod
    def path_for(self, path: str) -> Path:
        """Resolve a stored path to a local filesystem location."""

    @abstractmethod
    def url_for(self, path: str) -> str:
        """Public URL clients use to fetch a stored file."""


class LocalBlobStorage(BlobStorage):
    """Filesystem storage with one directory per bucket."""

    def __init__(self, root: str, public_url: str):
        self.root = Path(root).resolve()
        self.public_url = public_url.rstrip("/")
        for bucket in BUCKETS:
            (self.root / bucket).mkdir(parents=True, exist_ok=True)

    def path_for(self, path: str) -> Path:
        resolved = (self.root / path).resolve()
        if self.root not in resolved.parents:
            raise ValueError(f"Path escapes storage root: {path}")
        return resolved

    def url_for(self, path: str) -> str:
        return f"{self.public_url}/{path}"

    async def save(self, bucket: str, filename: str, data: bytes) -> str:
        if bucket not in BUCKETS:
            raise ValueError(f"Unknown bucket: {bucket}")
        path = f"{bucket}/{filename}"
        await asyncio.to_thread(self.path_for(path).write_bytes, data)
        return path

    async def delete(self, path: str) -> bool:
        target = self.path_for(path)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            logger.debug("Stored file already removed: %s", path)
            return False
        return True
