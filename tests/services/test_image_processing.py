import io

import pytest
from PIL import Image

from market_chat.services.image_processing import ImageProcessingService


def make_image(size: tuple, image_format: str = "PNG", mode: str = "RGB") -> bytes:
    out = io.BytesIO()
    Image.new(mode, size, color=(200, 30, 30, 128)[: len(mode)]).save(
        out, format=image_format
    )
    return out.getvalue()


class TestImageProcessingService:
    @pytest.fixture
    def images(self) -> ImageProcessingService:
        return ImageProcessingService(max_dimension=100, thumbnail_size=20)

    def test_verify_accepts_matching_format(
        self, images: ImageProcessingService
    ) -> None:
        assert images.verify(make_image((10, 10)), "png") == "PNG"
        assert images.verify(make_image((10, 10), "JPEG"), "jpg") == "JPEG"

    def test_verify_rejects_mismatched_format(
        self, images: ImageProcessingService
    ) -> None:
        """Test that a PNG renamed to .jpg is refused."""
        with pytest.raises(ValueError):
            images.verify(make_image((10, 10)), "jpg")

    def test_verify_rejects_garbage(self, images: ImageProcessingService) -> None:
        with pytest.raises(ValueError):
            images.verify(b"<?php echo 'hi'; ?>", "png")

    def test_small_image_kept_as_is(self, images: ImageProcessingService) -> None:
        data = make_image((40, 30))

        processed = images.process(data, "png")

        assert processed.resized is False
        assert processed.data == data
        assert (processed.width, processed.height) == (40, 30)
        with Image.open(io.BytesIO(processed.thumbnail)) as thumb:
            assert max(thumb.size) == 20

    def test_large_image_downsized(self, images: ImageProcessingService) -> None:
        """Test that originals over the bound shrink with their aspect ratio."""
        processed = images.process(make_image((400, 200), "JPEG"), "jpeg")

        assert processed.resized is True
        assert (processed.width, processed.height) == (100, 50)
        with Image.open(io.BytesIO(processed.data)) as img:
            assert img.format == "JPEG"
            assert img.size == (100, 50)

    def test_png_transparency_kept(self, images: ImageProcessingService) -> None:
        processed = images.process(make_image((50, 50), mode="RGBA"), "png")

        with Image.open(io.BytesIO(processed.thumbnail)) as thumb:
            assert thumb.mode == "RGBA"
