"""
Fingerprints - content identity (BLAKE3) and visual similarity (pHash).

Hashing is CPU/disk bound, so it runs on its own thread pool and never
shares workers with the transfer loop.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import imagehash
from blake3 import blake3
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


def hash_file(path: Union[str, Path]) -> str:
    """Synchronous BLAKE3 of a file's bytes."""
    hasher = blake3()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(HASH_CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


async def blake3_file(path: Union[str, Path]) -> str:
    """Calculate BLAKE3 hash of file asynchronously (non-blocking)."""
    return await asyncio.to_thread(hash_file, path)


@dataclass(frozen=True)
class PerceptualFingerprint:
    hash_hex: str
    width: int
    height: int


def perceptual_fingerprint(path: Union[str, Path]) -> Optional[PerceptualFingerprint]:
    """pHash plus pixel size, or None when Pillow cannot decode the file."""
    try:
        with Image.open(path) as img:
            width, height = img.size
            return PerceptualFingerprint(str(imagehash.phash(img)), width, height)
    except (UnidentifiedImageError, OSError) as e:
        logger.debug(f"No perceptual hash for {path}: {e}")
        return None


def hamming_distance(left: str, right: str) -> int:
    return imagehash.hex_to_hash(left) - imagehash.hex_to_hash(right)


class FingerprintService:
    """
    Bounded pool for fingerprint work.

    Usage:
        with FingerprintService(workers=2) as fingerprints:
            digest = await fingerprints.content(path)
    """

    def __init__(self, workers: int = 2):
        self._workers = max(workers, 1)
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def workers(self) -> int:
        return self._workers

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._workers, thread_name_prefix="fingerprint"
            )
        return self._executor

    async def content(self, path: Union[str, Path]) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool(), hash_file, path)

    async def perceptual(self, path: Union[str, Path]) -> Optional[PerceptualFingerprint]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool(), perceptual_fingerprint, path)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "FingerprintService":
        return self

    def __exit__(self, *args) -> None:
        self.close()
