"""Shared fixtures: in-memory store, fake remote and credentials."""
from collections import namedtuple
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import pytest

from photo_migrator.errors import ReauthenticationRequired
from photo_migrator.models import (
    GiB,
    Credential,
    ItemStatus,
    MediaClass,
    MediaItem,
    UploadConfig,
    utcnow,
)
from photo_migrator.protocols import CommitResult
from photo_migrator.services.database import Database
from photo_migrator.services.fingerprint import hash_file
from photo_migrator.services.item_store import ItemStore

DiskUsage = namedtuple("DiskUsage", "total used free")


def make_item(item_id: str, size: int = 100, media_class: MediaClass = MediaClass.PHOTO, **kwargs) -> MediaItem:
    mime = "image/jpeg" if media_class == MediaClass.PHOTO else "video/mp4"
    return MediaItem(
        id=item_id,
        source_locator=item_id,
        filename=Path(item_id).name,
        size_bytes=size,
        media_class=media_class,
        mime_type=kwargs.pop("mime_type", mime),
        **kwargs,
    )


def fixed_disk(free: int):
    def disk_usage(_path):
        return DiskUsage(total=free * 2, used=free, free=free)
    return disk_usage


class FakeRemote:
    """Records calls; queued errors are consumed one per call."""

    def __init__(self):
        self.uploads: List[str] = []
        self.commits: List[list] = []
        self.upload_errors: List[Exception] = []
        self.commit_errors: List[Exception] = []
        self.credentials_seen: List[str] = []

    async def upload_bytes(self, session, path, credential, mime_type, filename):
        self.credentials_seen.append(credential.access_token)
        self.uploads.append(session.item_id)
        if self.upload_errors:
            raise self.upload_errors.pop(0)
        session.bytes_sent = Path(path).stat().st_size
        token = f"token-{session.item_id}-{len(self.uploads)}"
        session.transfer_token = token
        return token

    async def commit(self, entries, credential, timeout=None):
        self.credentials_seen.append(credential.access_token)
        self.commits.append(list(entries))
        if self.commit_errors:
            error = self.commit_errors.pop(0)
            return [CommitResult(entries[0]["upload_token"], error=error)]
        return [
            CommitResult(entry["upload_token"], remote_id=f"remote-{entry['upload_token']}")
            for entry in entries
        ]


class FakeCredentials:
    def __init__(self):
        self.credential = Credential("access-1", "refresh-1", utcnow() + timedelta(hours=1))
        self.invalidated: List[str] = []
        self.revoked = False
        self.is_authenticated = True

    async def get_valid_credential(self) -> Credential:
        if self.revoked:
            raise ReauthenticationRequired("invalid_grant: token revoked")
        return self.credential

    def invalidate(self, stale_access_token: str) -> bool:
        self.invalidated.append(stale_access_token)
        if stale_access_token == self.credential.access_token:
            self.credential = Credential("access-2", "refresh-1", utcnow() + timedelta(hours=1))
            return True
        return False


async def no_sleep(_delay):
    return None


@pytest.fixture
def db():
    database = Database(":memory:").open()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return ItemStore(db)


@pytest.fixture
def config():
    return UploadConfig(safety_margin_bytes=1 * GiB)


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def fake_credentials():
    return FakeCredentials()


@pytest.fixture
def staged_item(store, tmp_path):
    """Factory: record an item, write its staged copy and fingerprint it."""
    staging = tmp_path / "staging"
    staging.mkdir(exist_ok=True)

    def factory(item_id: str, content: bytes = b"photo-bytes", media_class: MediaClass = MediaClass.PHOTO,
                fingerprint: Optional[str] = None) -> MediaItem:
        path = staging / item_id
        path.write_bytes(content)
        store.upsert_many([make_item(item_id, size=len(content), media_class=media_class)])
        store.transition(
            item_id,
            ItemStatus.PENDING,
            ItemStatus.STAGED,
            staged_path=str(path),
            content_fingerprint=fingerprint or hash_file(path),
        )
        return store.get(item_id)

    return factory
