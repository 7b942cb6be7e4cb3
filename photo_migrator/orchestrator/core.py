"""Core orchestrator - coordinates scan, planning, staging, dedup and upload."""
import asyncio
import logging
import shutil
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from ..errors import ErrorKind
from ..models import (
    BatchDescriptor,
    BatchStatus,
    ItemStatus,
    MediaClass,
    MediaItem,
    Reason,
    UploadConfig,
)
from ..protocols import ICredentialProvider, ILocalAccessor, IRemoteStore, StageResult, StageState
from ..services.database import Database
from ..services.fingerprint import FingerprintService
from ..services.item_store import ItemStore
from ..services.remote_store import DEFAULT_API_URL, RemoteStoreClient
from ..use_cases.deduplication import DeduplicationEngine, DedupOutcome
from ..use_cases.planning import BatchPlanner
from ..utils.events import (
    BATCH_FINISHED,
    BATCH_STARTED,
    ITEM_TRANSITIONED,
    EventEmitter,
    ItemTransition,
)
from .item_upload import ItemUploader
from .models import CycleResult, StatusReport
from .worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Orchestrates the migration using injected services.

    Every cycle is safe to repeat: state lives in the item store, so an
    interrupted run simply picks up where the store says it stopped.

    Usage:
        async with MigrationOrchestrator(db, accessor, credentials, config) as migrator:
            await migrator.scan()
            result = await migrator.run_cycle(MediaClass.PHOTO)
    """

    def __init__(
        self,
        db: Database,
        accessor: ILocalAccessor,
        credentials: ICredentialProvider,
        config: Optional[UploadConfig] = None,
        remote: Optional[IRemoteStore] = None,
        api_url: str = DEFAULT_API_URL,
        staging_dir: Union[str, Path, None] = None,
        fingerprints: Optional[FingerprintService] = None,
        disk_usage: Callable[[Any], Any] = shutil.disk_usage,
        events: Optional[EventEmitter] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        """
        Initialize orchestrator with dependencies.

        Args:
            db: Item database (opened on enter if needed)
            accessor: Local library accessor
            credentials: Credential provider shared by all workers
            config: Upload configuration
            remote: Remote store client; an HTTP client for ``api_url`` is
                created and closed by the orchestrator when omitted
            staging_dir: Volume watched by the planner (defaults to the
                accessor's staging directory)
        """
        self._db = db
        self._accessor = accessor
        self._credentials = credentials
        self._config = config or UploadConfig()
        self._remote = remote
        self._owns_remote = remote is None
        self._api_url = api_url
        self._staging_dir = Path(staging_dir or getattr(accessor, "staging_dir", "."))
        self._fingerprints = fingerprints
        self._disk_usage = disk_usage
        self._events = events or EventEmitter()
        self._sleep = sleep
        self._recovered = False

        # Initialized in __aenter__
        self._store: Optional[ItemStore] = None
        self._planner: Optional[BatchPlanner] = None
        self._dedup: Optional[DeduplicationEngine] = None
        self._pool: Optional[WorkerPool] = None
        self._uploader: Optional[ItemUploader] = None

    async def __aenter__(self):
        """Initialize services."""
        if not self._db.is_open:
            self._db.open()
        self._store = ItemStore(self._db)

        if self._remote is None:
            self._remote = RemoteStoreClient(self._api_url)
        if self._owns_remote:
            await self._remote.__aenter__()

        if self._fingerprints is None:
            self._fingerprints = FingerprintService(self._config.fingerprint_workers)

        self._planner = BatchPlanner(self._store, self._config, self._staging_dir, self._disk_usage)
        self._dedup = DeduplicationEngine(self._store, self._fingerprints, self._config)
        self._pool = WorkerPool(self._config.concurrency)
        self._uploader = ItemUploader(
            self._store,
            self._remote,
            self._credentials,
            self._accessor,
            self._config,
            events=self._events,
            sleep=self._sleep,
            should_stop=lambda: self._pool.should_stop,
        )
        return self

    async def __aexit__(self, *args):
        """Cleanup resources."""
        if self._owns_remote and self._remote is not None:
            await self._remote.__aexit__(*args)
        if self._fingerprints is not None:
            self._fingerprints.close()

    @property
    def events(self) -> EventEmitter:
        return self._events

    @property
    def store(self) -> ItemStore:
        assert self._store is not None
        return self._store

    @property
    def config(self) -> UploadConfig:
        return self._config

    # =========================================================================
    # Operations
    # =========================================================================

    async def scan(self) -> int:
        """Enumerate the library and record new items. Returns the number added."""
        items = await self._accessor.enumerate()
        added = self.store.upsert_many(items)
        logger.info(f"Scan complete: {len(items)} items found, {added} new")
        return added

    def plan(self, media_class: Optional[MediaClass] = None, record: bool = False) -> BatchDescriptor:
        """Preview (or record) the next batch."""
        assert self._planner is not None
        return self._planner.plan(media_class, record=record)

    def retry_failed(self, media_class: Optional[MediaClass] = None) -> int:
        return self.store.reset_failed(media_class)

    async def pause(self, abort_in_flight: bool = False) -> None:
        assert self._pool is not None
        self._pool.pause()
        if abort_in_flight:
            await self._pool.abort_in_flight()

    def resume(self) -> None:
        assert self._pool is not None
        self._pool.resume()
        logger.info("Upload resumed")

    def status(self, failed_limit: int = 20) -> StatusReport:
        store = self.store
        pending = store.total_by_class(ItemStatus.PENDING)
        staged = store.total_by_class(ItemStatus.STAGED)
        return StatusReport(
            counts=store.total_by_status(),
            pending_by_class={cls: pending[cls] + staged[cls] for cls in MediaClass},
            failed_items=store.list_by_status(ItemStatus.FAILED, limit=failed_limit),
            review_items=store.list_flagged(limit=failed_limit),
            recent_batches=store.latest_batches(),
            authenticated=bool(getattr(self._credentials, "is_authenticated", False)),
        )

    async def run_cycle(self, media_class: Optional[MediaClass] = None) -> CycleResult:
        """
        One round: recover, plan, stage, dedup, upload.

        Raises:
            ReauthenticationRequired: credentials are missing or revoked
                before anything was staged
        """
        assert self._pool is not None and self._planner is not None and self._dedup is not None
        store = self.store

        if not self._recovered:
            store.recover_interrupted()
            self._recovered = True

        if self._pool.is_paused:
            logger.info("Paused: not starting a new cycle")
            return CycleResult(batch=None, status=BatchStatus.HALTED, halted_reason="paused")

        # fail fast before staging anything
        await self._credentials.get_valid_credential()
        # a usable credential means any earlier revocation was resolved
        self._pool.clear_halt()

        batch = self._planner.plan(media_class, record=True)
        if batch.is_empty:
            return CycleResult(batch=batch, status=BatchStatus.COMPLETE)

        result = CycleResult(batch=batch, status=BatchStatus.UPLOADING)
        store.update_batch_status(batch.id, BatchStatus.UPLOADING)
        await self._events.emit(BATCH_STARTED, batch)

        await self._stage(batch, result)

        staged = [item for item in store.get_many(batch.item_ids) if item.status == ItemStatus.STAGED]
        dedup = await self._dedup.partition(staged)
        await self._apply_dedup(dedup, result)

        pool_result = await self._pool.run(dedup.proceed, self._uploader.upload)
        result.outcomes = pool_result.outcomes
        # duplicates caught by the upload claim guard
        result.skipped_duplicates += result.count(ItemStatus.SKIPPED)
        await self._settle_waiting_duplicates(result)
        for item_id, exc in pool_result.errors.items():
            store.transition(
                item_id,
                ItemStatus.UPLOADING,
                ItemStatus.STAGED,
                last_error=f"{ErrorKind.CLIENT_ERROR.value}: worker crashed: {exc!r}",
            )

        if pool_result.halted_reason:
            result.status = BatchStatus.HALTED
            result.halted_reason = pool_result.halted_reason
        elif self._pool.is_paused:
            result.status = BatchStatus.HALTED
            result.halted_reason = "paused"
        elif result.outcomes and all(o.status == ItemStatus.FAILED for o in result.outcomes):
            result.status = BatchStatus.FAILED
        else:
            result.status = BatchStatus.COMPLETE

        store.update_batch_status(batch.id, result.status)
        await self._events.emit(BATCH_FINISHED, result)
        logger.info(
            f"Batch {batch.id[:8]} {result.status.value}: {result.committed} committed, "
            f"{result.skipped_duplicates} duplicates, {result.failed} failed, "
            f"{result.still_downloading} still downloading"
        )
        return result

    async def run(self, media_class: Optional[MediaClass] = None, max_cycles: Optional[int] = None) -> List[CycleResult]:
        """Run cycles until nothing is left, the run halts, or a cycle makes no progress."""
        results: List[CycleResult] = []
        while max_cycles is None or len(results) < max_cycles:
            result = await self.run_cycle(media_class)
            results.append(result)
            if result.is_empty or result.halted:
                break
            settled = result.committed + result.skipped_duplicates + result.failed + result.resized
            if settled == 0:
                logger.info("No progress this cycle; stopping until the next run")
                break
        return results

    async def _stage(self, batch: BatchDescriptor, result: CycleResult) -> None:
        store = self.store
        pending = [item for item in store.get_many(batch.item_ids) if item.status == ItemStatus.PENDING]
        if not pending:
            return

        stage_results = await self._accessor.stage(pending)
        headroom = batch.limit_bytes - batch.total_bytes
        for item in pending:
            outcome = stage_results.get(item.id) or StageResult.failed("accessor returned no result")
            if outcome.state == StageState.STAGED:
                size = item.size_bytes if outcome.size_bytes is None else outcome.size_bytes
                grown = size - item.size_bytes
                if grown > headroom:
                    # planned as a placeholder; the real file does not fit this batch
                    await self._requeue_resized(item, outcome, size)
                    result.resized += 1
                    continue
                headroom -= max(grown, 0)
                if store.transition(
                    item.id, ItemStatus.PENDING, ItemStatus.STAGED,
                    staged_path=outcome.path, size_bytes=size, is_in_cloud=False, last_error=None,
                ):
                    await self._emit(replace(item, size_bytes=size), ItemStatus.PENDING, ItemStatus.STAGED)
            elif outcome.state == StageState.DOWNLOADING:
                store.transition(
                    item.id, ItemStatus.PENDING, ItemStatus.PENDING,
                    last_error=f"{ErrorKind.LOCAL_MISSING.value}: {Reason.STILL_DOWNLOADING.value}",
                )
                result.still_downloading += 1
            else:
                error = f"{ErrorKind.LOCAL_MISSING.value}: {outcome.error}"
                if store.transition(item.id, ItemStatus.PENDING, ItemStatus.FAILED, last_error=error):
                    await self._emit(item, ItemStatus.PENDING, ItemStatus.FAILED, error)
                    result.staging_failures += 1

        if result.still_downloading:
            logger.info(f"{result.still_downloading} items still downloading from the cloud; left pending")

    async def _apply_dedup(self, dedup: DedupOutcome, result: CycleResult) -> None:
        for item, decision in dedup.skipped:
            await self._emit(item, ItemStatus.STAGED, ItemStatus.SKIPPED, decision.reason)
            await self._release(item)
        for item in dedup.failed:
            await self._emit(item, ItemStatus.STAGED, ItemStatus.FAILED, item.last_error)
        result.skipped_duplicates += len(dedup.skipped)
        result.staging_failures += len(dedup.failed)

    async def _settle_waiting_duplicates(self, result: CycleResult) -> None:
        """Re-check copies that waited on an in-flight holder now that the pool is done."""
        waiting = [
            outcome.item_id for outcome in result.outcomes
            if outcome.status == ItemStatus.STAGED
            and (outcome.error or "").startswith(f"{ErrorKind.DUPLICATE.value}:")
        ]
        if not waiting:
            return
        staged = [item for item in self.store.get_many(waiting) if item.status == ItemStatus.STAGED]
        # a copy whose holder failed stays staged and uploads next cycle
        await self._apply_dedup(await self._dedup.partition(staged), result)

    async def _requeue_resized(self, item: MediaItem, outcome: StageResult, size: int) -> None:
        logger.warning(
            f"{item.filename} is {size} bytes once downloaded; over this batch's limit, requeued"
        )
        self.store.transition(
            item.id, ItemStatus.PENDING, ItemStatus.PENDING,
            size_bytes=size,
            is_in_cloud=False,
            last_error=f"{ErrorKind.INSUFFICIENT_SPACE.value}: needs {size} bytes, planned as {item.size_bytes}",
        )
        await self._release(replace(item, staged_path=outcome.path))

    async def _release(self, item: MediaItem) -> None:
        try:
            await self._accessor.release(item)
        except OSError as e:
            logger.warning(f"Could not release staged copy of {item.filename}: {e}")

    async def _emit(
        self,
        item: MediaItem,
        from_status: ItemStatus,
        to_status: ItemStatus,
        reason: Optional[str] = None,
    ) -> None:
        await self._events.emit(
            ITEM_TRANSITIONED,
            ItemTransition(
                item_id=item.id,
                filename=item.filename,
                from_status=from_status,
                to_status=to_status,
                size_bytes=item.size_bytes,
                reason=reason,
            ),
        )
