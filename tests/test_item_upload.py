"""Tests for the per-item two-phase upload."""
import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from photo_migrator.errors import (
    AuthExpiredError,
    ClientFaultError,
    InvalidTransferTokenError,
    RateLimitedError,
    ReauthenticationRequired,
    TransientNetworkError,
)
from photo_migrator.models import ItemStatus, UploadConfig
from photo_migrator.orchestrator.item_upload import ItemUploader
from photo_migrator.services.fingerprint import FingerprintService
from photo_migrator.use_cases.deduplication import DeduplicationEngine
from photo_migrator.utils.events import ITEM_TRANSITIONED, EventEmitter

from conftest import FakeRemote


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def accessor():
    accessor = Mock()
    accessor.release = AsyncMock()
    return accessor


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def make_uploader(store, fake_remote, fake_credentials, accessor, sleeps):
    def factory(config=None, **kwargs):
        return ItemUploader(
            store, fake_remote, fake_credentials, accessor, config or UploadConfig(),
            sleep=sleeps, **kwargs
        )
    return factory


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_commits_and_releases(self, store, staged_item, make_uploader, fake_remote, accessor):
        item = staged_item("a.jpg")
        events = EventEmitter()
        seen = []
        events.on(ITEM_TRANSITIONED, seen.append)

        outcome = await make_uploader(events=events).upload(item)

        assert outcome.success
        current = store.get("a.jpg")
        assert current.status == ItemStatus.COMMITTED
        assert current.remote_id == "remote-token-a.jpg-1"
        assert current.retry_count == 0
        assert fake_remote.commits[0][0]["description"] == "a.jpg"
        accessor.release.assert_awaited_once()
        assert [(t.from_status, t.to_status) for t in seen] == [
            (ItemStatus.STAGED, ItemStatus.UPLOADING),
            (ItemStatus.UPLOADING, ItemStatus.COMMITTED),
        ]

    @pytest.mark.asyncio
    async def test_description_can_be_omitted(self, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        await make_uploader(UploadConfig(include_description=False)).upload(item)
        assert fake_remote.commits[0][0]["description"] is None

    @pytest.mark.asyncio
    async def test_keeps_staged_copy_when_cleanup_disabled(self, staged_item, make_uploader, accessor):
        item = staged_item("a.jpg")
        await make_uploader(UploadConfig(cleanup_staged=False)).upload(item)
        accessor.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ignores_items_not_staged(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        store.transition("a.jpg", ItemStatus.STAGED, ItemStatus.SKIPPED)

        outcome = await make_uploader().upload(item)

        assert outcome.status == ItemStatus.SKIPPED
        assert fake_remote.uploads == []


class TestRetries:

    @pytest.mark.asyncio
    async def test_invalid_token_resends_bytes(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        fake_remote.commit_errors.append(InvalidTransferTokenError("Invalid upload token"))

        outcome = await make_uploader().upload(item)

        assert outcome.success
        assert fake_remote.uploads == ["a.jpg", "a.jpg"]
        current = store.get("a.jpg")
        assert current.status == ItemStatus.COMMITTED
        assert current.retry_count == 1
        assert current.remote_id == "remote-token-a.jpg-2"

    @pytest.mark.asyncio
    async def test_transient_errors_back_off(self, store, staged_item, make_uploader, fake_remote, sleeps):
        item = staged_item("a.jpg")
        fake_remote.upload_errors.extend([TransientNetworkError("reset"), TransientNetworkError("reset")])

        outcome = await make_uploader().upload(item)

        assert outcome.success
        assert store.get("a.jpg").retry_count == 2
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_after_respected(self, staged_item, make_uploader, fake_remote, sleeps):
        item = staged_item("a.jpg")
        fake_remote.upload_errors.append(RateLimitedError("slow down", retry_after=7))

        await make_uploader().upload(item)

        assert sleeps.delays == [7]

    @pytest.mark.asyncio
    async def test_delays_keep_growing_into_commit(self, staged_item, make_uploader, fake_remote, sleeps):
        item = staged_item("a.jpg")
        fake_remote.upload_errors.extend([TransientNetworkError("reset")] * 3)
        fake_remote.commit_errors.append(TransientNetworkError("commit 503"))

        outcome = await make_uploader().upload(item)

        assert outcome.success
        assert sleeps.delays == [1.0, 2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_delays_keep_growing_after_reupload(
        self, store, staged_item, fake_credentials, accessor, sleeps
    ):
        class FailingReupload(FakeRemote):
            async def commit(self, entries, credential, timeout=None):
                if not self.commits:
                    self.upload_errors.append(TransientNetworkError("reset"))
                return await super().commit(entries, credential, timeout)

        remote = FailingReupload()
        remote.upload_errors.append(TransientNetworkError("reset"))
        remote.commit_errors.append(InvalidTransferTokenError("Invalid upload token"))
        item = staged_item("a.jpg")
        uploader = ItemUploader(store, remote, fake_credentials, accessor, UploadConfig(), sleep=sleeps)

        outcome = await uploader.upload(item)

        assert outcome.success
        assert len(remote.uploads) == 4
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_commit_cap_never_shortens_the_wait(self, staged_item, make_uploader, fake_remote, sleeps):
        item = staged_item("a.jpg")
        fake_remote.upload_errors.append(RateLimitedError("slow down", retry_after=45))
        fake_remote.commit_errors.append(TransientNetworkError("commit 503"))

        outcome = await make_uploader().upload(item)

        assert outcome.success
        assert sleeps.delays == [45, 45]

    @pytest.mark.asyncio
    async def test_exhausted_phase_leaves_item_staged(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        fake_remote.upload_errors.extend([TransientNetworkError("down")] * 3)

        outcome = await make_uploader(UploadConfig(upload_attempts=3)).upload(item)

        assert outcome.status == ItemStatus.STAGED
        current = store.get("a.jpg")
        assert current.status == ItemStatus.STAGED
        assert current.retry_count == 3
        assert current.last_error.startswith("transient-network")
        assert fake_remote.commits == []

    @pytest.mark.asyncio
    async def test_retry_ceiling_fails_item(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        fake_remote.upload_errors.extend([TransientNetworkError("down")] * 3)

        outcome = await make_uploader(UploadConfig(max_retries=1)).upload(item)

        assert outcome.status == ItemStatus.FAILED
        current = store.get("a.jpg")
        assert current.status == ItemStatus.FAILED
        assert "retry ceiling 1 exceeded" in current.last_error

    @pytest.mark.asyncio
    async def test_phase_timeout_is_transient(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")

        async def slow_upload(*args):
            await asyncio.sleep(5)

        fake_remote.upload_bytes = slow_upload
        config = UploadConfig(small_timeout=0.01, upload_attempts=1)

        outcome = await make_uploader(config).upload(item)

        assert outcome.status == ItemStatus.STAGED
        assert "timed out" in store.get("a.jpg").last_error


class TestAuth:

    @pytest.mark.asyncio
    async def test_expired_token_retried_once_for_free(
        self, store, staged_item, make_uploader, fake_remote, fake_credentials
    ):
        item = staged_item("a.jpg")
        fake_remote.upload_errors.append(AuthExpiredError("401"))

        outcome = await make_uploader().upload(item)

        assert outcome.success
        assert fake_credentials.invalidated == ["access-1"]
        assert fake_remote.credentials_seen == ["access-1", "access-2", "access-2"]
        assert store.get("a.jpg").retry_count == 0

    @pytest.mark.asyncio
    async def test_second_expiry_counts_as_failure(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        fake_remote.upload_errors.extend([AuthExpiredError("401"), AuthExpiredError("401")])

        outcome = await make_uploader().upload(item)

        assert outcome.success
        assert store.get("a.jpg").retry_count == 1

    @pytest.mark.asyncio
    async def test_revoked_grant_returns_item_to_staged(
        self, store, staged_item, make_uploader, fake_remote, fake_credentials
    ):
        item = staged_item("a.jpg")
        fake_credentials.revoked = True

        with pytest.raises(ReauthenticationRequired):
            await make_uploader().upload(item)

        current = store.get("a.jpg")
        assert current.status == ItemStatus.STAGED
        assert current.last_error.startswith("auth-revoked")
        assert fake_remote.uploads == []


class TestFailures:

    @pytest.mark.asyncio
    async def test_client_error_fails_item(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        fake_remote.upload_errors.append(ClientFaultError("unsupported media type", status_code=400))

        outcome = await make_uploader().upload(item)

        assert outcome.status == ItemStatus.FAILED
        assert store.get("a.jpg").last_error.startswith("client-error")

    @pytest.mark.asyncio
    async def test_rejected_commit_fails_item(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        fake_remote.commit_errors.append(ClientFaultError("commit rejected (code 3)"))

        outcome = await make_uploader().upload(item)

        assert outcome.status == ItemStatus.FAILED
        assert store.get("a.jpg").remote_id is None

    @pytest.mark.asyncio
    async def test_missing_staged_copy(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        Path(item.staged_path).unlink()

        outcome = await make_uploader().upload(item)

        assert outcome.status == ItemStatus.FAILED
        assert "missing-local-copy" in store.get("a.jpg").last_error
        assert fake_remote.uploads == []

    @pytest.mark.asyncio
    async def test_empty_staged_copy(self, store, staged_item, make_uploader):
        item = staged_item("a.jpg", content=b"", fingerprint="empty")

        outcome = await make_uploader().upload(item)

        assert outcome.status == ItemStatus.FAILED


class TestInterruptions:

    @pytest.mark.asyncio
    async def test_stop_after_upload_keeps_item_staged(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")

        outcome = await make_uploader(should_stop=lambda: True).upload(item)

        assert outcome.status == ItemStatus.STAGED
        assert fake_remote.uploads == ["a.jpg"]
        assert fake_remote.commits == []
        assert store.get("a.jpg").last_error.startswith("paused")

    @pytest.mark.asyncio
    async def test_cancel_mid_transfer(self, store, staged_item, make_uploader, fake_remote):
        item = staged_item("a.jpg")
        started = asyncio.Event()

        async def hanging_upload(*args):
            started.set()
            await asyncio.Event().wait()

        fake_remote.upload_bytes = hanging_upload
        task = asyncio.ensure_future(make_uploader().upload(item))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.get("a.jpg").status == ItemStatus.STAGED


class TestDuplicateClaim:

    @pytest.mark.asyncio
    async def test_in_flight_duplicate_waits_in_staged(
        self, store, staged_item, make_uploader, fake_remote, accessor
    ):
        staged_item("a.jpg", b"same")
        item = staged_item("b.jpg", b"same")
        store.transition("a.jpg", ItemStatus.STAGED, ItemStatus.UPLOADING)

        outcome = await make_uploader().upload(item)

        assert outcome.status == ItemStatus.STAGED
        current = store.get("b.jpg")
        assert current.status == ItemStatus.STAGED
        assert current.review_reason is None
        assert "a.jpg" in current.last_error
        assert fake_remote.uploads == []
        accessor.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_committed_duplicate_is_skipped(
        self, store, staged_item, make_uploader, fake_remote, accessor
    ):
        staged_item("a.jpg", b"same")
        item = staged_item("b.jpg", b"same")
        store.transition("a.jpg", ItemStatus.STAGED, ItemStatus.UPLOADING)
        store.transition("a.jpg", ItemStatus.UPLOADING, ItemStatus.COMMITTED, remote_id="remote-a")

        outcome = await make_uploader().upload(item)

        assert outcome.status == ItemStatus.SKIPPED
        current = store.get("b.jpg")
        assert current.review_reason == "duplicate-exact"
        assert "a.jpg" in current.last_error
        assert fake_remote.uploads == []
        accessor.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_copy_uploads_when_first_holder_fails(self, store, staged_item, make_uploader, fake_remote):
        first = staged_item("a.jpg", b"same")
        second = staged_item("b.jpg", b"same")
        fingerprints = FingerprintService(workers=1)
        try:
            outcome = await DeduplicationEngine(store, fingerprints, UploadConfig()).partition([first, second])
        finally:
            fingerprints.close()
        assert sorted(item.id for item in outcome.proceed) == ["a.jpg", "b.jpg"]
        Path(first.staged_path).unlink()
        uploader = make_uploader()

        first_outcome = await uploader.upload(store.get("a.jpg"))
        second_outcome = await uploader.upload(store.get("b.jpg"))

        assert first_outcome.status == ItemStatus.FAILED
        assert second_outcome.status == ItemStatus.COMMITTED
        assert fake_remote.uploads == ["b.jpg"]
