"""Tests for the directory-backed accessor."""
import pytest

from photo_migrator.models import MediaClass
from photo_migrator.protocols import StageState
from photo_migrator.services.accessor import (
    DirectoryAccessor,
    guess_mime_type,
    is_media,
    placeholder_target,
)


@pytest.fixture
def library(tmp_path):
    root = tmp_path / "library"
    (root / "2024").mkdir(parents=True)
    (root / "2024" / "IMG_0001.JPG").write_bytes(b"jpeg")
    (root / "2024" / "clip.mov").write_bytes(b"movie-bytes")
    (root / "2024" / ".IMG_0002.HEIC.icloud").write_bytes(b"plist")
    (root / "notes.txt").write_text("not media")
    (root / ".DS_Store").write_bytes(b"")
    return root


@pytest.fixture
def accessor(library, tmp_path):
    return DirectoryAccessor(library, tmp_path / "staging")


def test_guess_mime_type():
    assert guess_mime_type("a.HEIC") == "image/heic"
    assert guess_mime_type("b.mov") == "video/quicktime"
    assert guess_mime_type("c.jpg") == "image/jpeg"


def test_is_media():
    assert is_media("IMG.JPG")
    assert not is_media("notes.txt")


def test_placeholder_target(tmp_path):
    assert placeholder_target(tmp_path / ".IMG_1.JPG.icloud") == tmp_path / "IMG_1.JPG"
    assert placeholder_target(tmp_path / "IMG_1.JPG") is None


class TestEnumerate:

    @pytest.mark.asyncio
    async def test_finds_media_and_placeholders(self, accessor):
        items = {item.id: item for item in await accessor.enumerate()}

        assert set(items) == {"2024/IMG_0001.JPG", "2024/clip.mov", "2024/IMG_0002.HEIC"}
        assert items["2024/clip.mov"].media_class == MediaClass.VIDEO
        assert items["2024/clip.mov"].size_bytes == len(b"movie-bytes")
        placeholder = items["2024/IMG_0002.HEIC"]
        assert placeholder.is_in_cloud
        assert placeholder.size_bytes == 0

    @pytest.mark.asyncio
    async def test_downloaded_copy_replaces_placeholder(self, accessor, library):
        (library / "2024" / "IMG_0002.HEIC").write_bytes(b"heic-bytes")

        items = {item.id: item for item in await accessor.enumerate()}

        assert not items["2024/IMG_0002.HEIC"].is_in_cloud
        assert items["2024/IMG_0002.HEIC"].size_bytes == len(b"heic-bytes")

    @pytest.mark.asyncio
    async def test_missing_library(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await DirectoryAccessor(tmp_path / "nope", tmp_path / "staging").enumerate()

    @pytest.mark.asyncio
    async def test_staging_inside_library_is_ignored(self, library):
        accessor = DirectoryAccessor(library, library / ".staging")
        (library / ".staging" / "2024").mkdir(parents=True)
        (library / ".staging" / "2024" / "old.jpg").write_bytes(b"x")

        ids = {item.id for item in await accessor.enumerate()}

        assert not any(item_id.startswith(".staging") for item_id in ids)


class TestStage:

    @pytest.mark.asyncio
    async def test_stage_results(self, accessor, tmp_path):
        items = {item.id: item for item in await accessor.enumerate()}
        items["gone.jpg"] = items["2024/IMG_0001.JPG"].with_status(
            items["2024/IMG_0001.JPG"].status, id="gone.jpg", source_locator="gone.jpg"
        )

        results = await accessor.stage(list(items.values()))

        staged = results["2024/IMG_0001.JPG"]
        assert staged.state == StageState.STAGED
        assert staged.size_bytes == 4
        assert (tmp_path / "staging" / "2024" / "IMG_0001.JPG").read_bytes() == b"jpeg"
        assert results["2024/IMG_0002.HEIC"].state == StageState.DOWNLOADING
        assert results["gone.jpg"].state == StageState.FAILED

    @pytest.mark.asyncio
    async def test_downloaded_placeholder_reports_real_size(self, accessor, library):
        item = next(i for i in await accessor.enumerate() if i.id == "2024/IMG_0002.HEIC")
        assert item.is_in_cloud
        assert item.size_bytes == 0
        (library / "2024" / "IMG_0002.HEIC").write_bytes(b"x" * 2048)

        result = (await accessor.stage([item]))[item.id]

        assert result.state == StageState.STAGED
        assert result.size_bytes == 2048

    @pytest.mark.asyncio
    async def test_release_only_inside_staging(self, accessor, library):
        item = next(i for i in await accessor.enumerate() if i.id == "2024/IMG_0001.JPG")
        result = (await accessor.stage([item]))[item.id]
        staged = item.with_status(item.status, staged_path=result.path)

        await accessor.release(staged)
        assert not (accessor.staging_dir / item.source_locator).exists()

        original = item.with_status(item.status, staged_path=str(library / item.source_locator))
        await accessor.release(original)
        assert (library / item.source_locator).exists()
