"""
Directory-backed local accessor.

Enumerates a library directory tree and stages exported copies into a
staging directory. Cloud placeholders (``.Name.ext.icloud``) are reported
as still downloading until the real file appears.
"""
import asyncio
import logging
import mimetypes
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from ..models import MediaClass, MediaItem
from ..protocols import StageResult

logger = logging.getLogger(__name__)

PLACEHOLDER_SUFFIX = ".icloud"

# Types the platform mimetypes table often lacks
EXTRA_MIME_TYPES = {
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".dng": "image/x-adobe-dng",
    ".webp": "image/webp",
    ".mov": "video/quicktime",
    ".m4v": "video/x-m4v",
    ".3gp": "video/3gpp",
}


def guess_mime_type(name: str) -> Optional[str]:
    suffix = Path(name).suffix.lower()
    if suffix in EXTRA_MIME_TYPES:
        return EXTRA_MIME_TYPES[suffix]
    mime_type, _ = mimetypes.guess_type(name)
    return mime_type


def is_media(name: str) -> bool:
    mime_type = guess_mime_type(name)
    return bool(mime_type) and mime_type.split("/")[0] in ("image", "video")


def placeholder_target(path: Path) -> Optional[Path]:
    """``dir/.IMG_1.JPG.icloud`` -> ``dir/IMG_1.JPG``; None for regular files."""
    name = path.name
    if not (name.startswith(".") and name.endswith(PLACEHOLDER_SUFFIX)):
        return None
    return path.with_name(name[1:-len(PLACEHOLDER_SUFFIX)])


class DirectoryAccessor:
    """
    ILocalAccessor over a plain directory tree.

    Item ids are paths relative to the library root, so they stay stable
    across scans and across the placeholder -> downloaded change.
    """

    def __init__(self, library_root: Union[str, Path], staging_dir: Union[str, Path]):
        self._root = Path(library_root).expanduser()
        self._staging = Path(staging_dir).expanduser()

    @property
    def library_root(self) -> Path:
        return self._root

    @property
    def staging_dir(self) -> Path:
        return self._staging

    async def enumerate(self) -> List[MediaItem]:
        if not self._root.is_dir():
            raise FileNotFoundError(f"Library directory not found: {self._root}")
        items = await asyncio.to_thread(self._scan)
        logger.info(f"Enumerated {len(items)} media items under {self._root}")
        return items

    def _scan(self) -> List[MediaItem]:
        found: Dict[str, MediaItem] = {}
        for path in sorted(self._root.rglob("*")):
            if not path.is_file() or self._staging in path.parents:
                continue
            target = placeholder_target(path)
            real_path = target or path
            if real_path.name.startswith(".") or not is_media(real_path.name):
                continue
            rel = real_path.relative_to(self._root).as_posix()
            if target is not None and rel in found:
                # downloaded copy already recorded
                continue
            found[rel] = self._to_item(rel, path, in_cloud=target is not None)
        return list(found.values())

    def _to_item(self, rel: str, path: Path, in_cloud: bool) -> MediaItem:
        stat = path.stat()
        mime_type = guess_mime_type(Path(rel).name) or "application/octet-stream"
        return MediaItem(
            id=rel,
            source_locator=rel,
            filename=Path(rel).name,
            size_bytes=0 if in_cloud else stat.st_size,
            media_class=MediaClass.from_mime(mime_type),
            mime_type=mime_type,
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            is_in_cloud=in_cloud,
        )

    async def stage(self, items: Sequence[MediaItem]) -> Dict[str, StageResult]:
        results: Dict[str, StageResult] = {}
        for item in items:
            results[item.id] = await asyncio.to_thread(self._stage_one, item)
        staged = sum(1 for r in results.values() if r.path)
        logger.debug(f"Staged {staged}/{len(items)} items into {self._staging}")
        return results

    def _staged_path_for(self, item: MediaItem) -> Path:
        return self._staging / item.source_locator

    def _stage_one(self, item: MediaItem) -> StageResult:
        source, in_cloud = self._locate(item)
        if source is None:
            if in_cloud:
                return StageResult.downloading()
            return StageResult.failed(f"source not found: {item.source_locator}")

        dest = self._staged_path_for(item)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
            size = dest.stat().st_size
        except OSError as e:
            return StageResult.failed(f"copy failed: {e}")
        return StageResult.staged(dest, size)

    def _locate(self, item: MediaItem) -> Tuple[Optional[Path], bool]:
        source = self._root / item.source_locator
        if source.is_file():
            return source, False
        placeholder = source.with_name(f".{source.name}{PLACEHOLDER_SUFFIX}")
        return None, placeholder.exists()

    async def release(self, item: MediaItem) -> None:
        """Delete the staged copy; never touches anything outside staging."""
        if not item.staged_path:
            return
        path = Path(item.staged_path)
        if self._staging.resolve() not in path.resolve().parents:
            logger.warning(f"Refusing to release {path}: outside staging directory")
            return
        await asyncio.to_thread(path.unlink, missing_ok=True)
