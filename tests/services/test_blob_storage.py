import pytest

from market_chat.services.blob_storage import FILES_BUCKET, LocalBlobStorage


class TestLocalBlobStorage:
    @pytest.mark.asyncio
    async def test_save_and_delete(self, storage: LocalBlobStorage) -> None:
        path = await storage.save(FILES_BUCKET, "abc.pdf", b"%PDF")

        assert path == "files/abc.pdf"
        assert storage.path_for(path).read_bytes() == b"%PDF"
        assert storage.url_for(path) == "/uploads/messages/files/abc.pdf"
        assert await storage.delete(path) is True
        assert await storage.delete(path) is False

    @pytest.mark.asyncio
    async def test_unknown_bucket(self, storage: LocalBlobStorage) -> None:
        with pytest.raises(ValueError):
            await storage.save("secrets", "abc.pdf", b"%PDF")

    def test_paths_cannot_escape_root(self, storage: LocalBlobStorage) -> None:
        with pytest.raises(ValueError):
            storage.path_for("../../etc/passwd")
