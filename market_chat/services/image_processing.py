"""
ImageProcessingService

Verifies and processes attachment images:
- Decode check that the bytes really are the claimed image format
- Downsize originals larger than the maximum dimension
- Produce a bounded thumbnail, keeping transparency for PNG/GIF/WebP
"""

import io
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

# Extension -> Pillow format name
IMAGE_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "gif": "GIF",
    "webp": "WEBP",
}
LOSSY_QUALITY = 85


@dataclass
class ProcessedImage:
    data: bytes
    thumbnail: bytes
    width: int
    height: int
    resized: bool


class ImageProcessingService:
    def __init__(self, max_dimension: int, thumbnail_size: int) -> None:
        self.max_dimension = max_dimension
        self.thumbnail_size = thumbnail_size

    def verify(self, data: bytes, extension: str) -> str:
        """Return the Pillow format name; ValueError for bad or mismatched bytes."""
        expected = IMAGE_FORMATS.get(extension.lower())
        if expected is None:
            raise ValueError("Unsupported image type")
        try:
            with Image.open(io.BytesIO(data)) as img:
                detected = img.format
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ValueError("Invalid image file") from e
        if detected != expected:
            raise ValueError(
                f"Image content is {detected}, not {expected.lower()}"
            )
        return expected

    def process(self, data: bytes, extension: str) -> ProcessedImage:
        image_format = self.verify(data, extension)

        with Image.open(io.BytesIO(data)) as img:
            img.load()
            resized = max(img.size) > self.max_dimension
            if resized:
                original = img.copy()
                original.thumbnail(
                    (self.max_dimension, self.max_dimension), Image.LANCZOS
                )
                data = self._encode(original, image_format)
            else:
                original = img

            width, height = original.size
            thumb = original.copy()
            thumb.thumbnail((self.thumbnail_size, self.thumbnail_size), Image.LANCZOS)
            thumbnail = self._encode(thumb, image_format)

        logger.debug(
            "Processed %s image %dx%d (resized=%s)",
            image_format,
            width,
            height,
            resized,
        )
        return ProcessedImage(
            data=data,
            thumbnail=thumbnail,
            width=width,
            height=height,
            resized=resized,
        )

    def _encode(self, img: Image.Image, image_format: str) -> bytes:
        out = io.BytesIO()
        work = img
        options: Dict[str, Any] = {}
        if image_format == "JPEG":
            if work.mode != "RGB":
                work = work.convert("RGB")
            options = {"quality": LOSSY_QUALITY, "optimize": True}
        elif image_format == "WEBP":
            if work.mode not in ("RGB", "RGBA"):
                work = work.convert("RGBA")
            options = {"quality": LOSSY_QUALITY}
        elif image_format == "PNG":
            options = {"optimize": True}
        transparency: Optional[Any] = work.info.get("transparency")
        if image_format == "GIF" and transparency is not None:
            options["transparency"] = transparency
        work.save(out, format=image_format, **options)
        return out.getvalue()
