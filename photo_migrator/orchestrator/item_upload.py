"""
Item Upload - drives one staged item through the two-phase transfer.

Flow:
1. Pre-flight: staged copy exists and is non-empty
2. Claim: staged -> uploading (compare-and-set, duplicate guarded)
3. Phase 1: send bytes, receive transfer token
4. Phase 2: commit token, receive remote id
5. uploading -> committed, release staged copy

Errors are classified per phase; see ``_run_phase`` for the retry rules.
"""
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from ..errors import (
    AuthExpiredError,
    ClientFaultError,
    ErrorKind,
    InvalidTransferTokenError,
    MigratorError,
    RateLimitedError,
    ReauthenticationRequired,
    TransientNetworkError,
)
from ..models import Credential, ItemStatus, MediaItem, Reason, UploadConfig
from ..protocols import ICredentialProvider, IItemStore, ILocalAccessor, IRemoteStore
from ..utils.backoff import BackoffPolicy
from ..utils.events import ITEM_TRANSITIONED, EventEmitter, ItemTransition
from .models import ItemOutcome

logger = logging.getLogger(__name__)

# Commit retries wait at most this long unless an earlier retry already waited longer
COMMIT_BACKOFF_MAX = 30.0


class PhaseExhausted(Exception):
    """A phase used up its attempts on transient errors."""

    def __init__(self, error: MigratorError):
        super().__init__(str(error))
        self.error = error


class RetryCeilingReached(Exception):
    """The item's overall retry_count went past max_retries."""

    def __init__(self, error: MigratorError):
        super().__init__(str(error))
        self.error = error


@dataclass
class _Attempt:
    item: MediaItem
    path: Path
    retry_count: int
    # one schedule per item, shared by both phases and every re-upload
    backoff: BackoffPolicy


class ItemUploader:
    """
    Per-item state machine.

    Usage:
        uploader = ItemUploader(store, remote, credentials, accessor, config)
        outcome = await uploader.upload(item)
    """

    def __init__(
        self,
        store: IItemStore,
        remote: IRemoteStore,
        credentials: ICredentialProvider,
        accessor: ILocalAccessor,
        config: UploadConfig,
        events: Optional[EventEmitter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        should_stop: Callable[[], bool] = lambda: False,
    ):
        self._store = store
        self._remote = remote
        self._credentials = credentials
        self._accessor = accessor
        self._config = config
        self._events = events or EventEmitter()
        self._sleep = sleep
        self._should_stop = should_stop

    async def upload(self, item: MediaItem) -> ItemOutcome:
        current = self._store.get(item.id) or item
        if current.status != ItemStatus.STAGED:
            return ItemOutcome(current.id, current.status, current.remote_id, current.last_error)

        path = Path(current.staged_path) if current.staged_path else None
        if path is None or not path.is_file() or path.stat().st_size == 0:
            error = f"{ErrorKind.LOCAL_MISSING.value}: {Reason.MISSING_LOCAL_COPY.value} ({current.staged_path})"
            await self._move(current, ItemStatus.STAGED, ItemStatus.FAILED, last_error=error)
            return ItemOutcome(current.id, ItemStatus.FAILED, error=error)

        if not await self._move(current, ItemStatus.STAGED, ItemStatus.UPLOADING):
            return await self._claim_refused(current)

        attempt = _Attempt(current, path, current.retry_count, BackoffPolicy.from_config(self._config))
        try:
            return await self._transfer(attempt)
        except ReauthenticationRequired as exc:
            await self._move(current, ItemStatus.UPLOADING, ItemStatus.STAGED, last_error=exc.describe())
            raise
        except MigratorError as exc:
            # classified error that escaped the phase rules
            logger.error(f"Unexpected {exc.kind.value} for {current.filename}: {exc}")
            await self._move(current, ItemStatus.UPLOADING, ItemStatus.STAGED, last_error=exc.describe())
            return ItemOutcome(current.id, ItemStatus.STAGED, error=exc.describe())
        except asyncio.CancelledError:
            # aborted mid-phase: keep the item resumable
            self._store.transition(
                current.id,
                ItemStatus.UPLOADING,
                ItemStatus.STAGED,
                last_error=f"{ErrorKind.TRANSIENT_NETWORK.value}: transfer aborted",
            )
            raise

    async def _claim_refused(self, item: MediaItem) -> ItemOutcome:
        current = self._store.get(item.id) or item
        if current.status != ItemStatus.STAGED:
            return ItemOutcome(current.id, current.status, current.remote_id, current.last_error)

        if not current.content_fingerprint:
            error = f"{ErrorKind.CLIENT_ERROR.value}: item has no content fingerprint"
            self._store.transition(current.id, ItemStatus.STAGED, ItemStatus.STAGED, last_error=error)
            return ItemOutcome(current.id, ItemStatus.STAGED, error=error)

        holder = self._store.find_by_fingerprint(current.content_fingerprint)
        if holder is None or holder.id == current.id:
            # duplicate went away in between; next cycle claims again
            return ItemOutcome(current.id, ItemStatus.STAGED, error=current.last_error)
        if holder.status != ItemStatus.COMMITTED:
            # holder may still fail; decide once it settles
            error = f"{ErrorKind.DUPLICATE.value}: same content in flight as {holder.id}"
            self._store.transition(current.id, ItemStatus.STAGED, ItemStatus.STAGED, last_error=error)
            logger.info(f"Deferring {current.filename}: same content is uploading as {holder.id}")
            return ItemOutcome(current.id, ItemStatus.STAGED, error=error)
        holder_id = holder.id
        error = f"{ErrorKind.DUPLICATE.value}: {Reason.DUPLICATE_EXACT.value} of {holder_id}"
        if await self._move(
            current,
            ItemStatus.STAGED,
            ItemStatus.SKIPPED,
            last_error=error,
            review_reason=Reason.DUPLICATE_EXACT.value,
        ):
            logger.info(f"Skipped {current.filename}: same content as {holder_id}")
            await self._release(current)
            return ItemOutcome(current.id, ItemStatus.SKIPPED, error=error)
        refreshed = self._store.get(current.id) or current
        return ItemOutcome(refreshed.id, refreshed.status, refreshed.remote_id, refreshed.last_error)

    async def _transfer(self, attempt: _Attempt) -> ItemOutcome:
        item = attempt.item
        try:
            while True:
                session = self._config.new_session(item)
                token = await self._run_phase(
                    attempt,
                    "upload",
                    lambda credential: self._remote.upload_bytes(
                        session, attempt.path, credential, item.mime_type, item.filename
                    ),
                    attempts=self._config.upload_attempts,
                    # resumable sessions time out per chunk request instead
                    timeout=None if session.is_resumable else session.timeout,
                )

                if self._should_stop():
                    return await self._return_to_staged(attempt, "paused: stopped before commit")

                try:
                    remote_id = await self._run_phase(
                        attempt,
                        "commit",
                        lambda credential: self._commit(token, item, credential),
                        attempts=self._config.commit_attempts,
                        timeout=self._config.commit_timeout,
                        max_delay=COMMIT_BACKOFF_MAX,
                    )
                except InvalidTransferTokenError as exc:
                    logger.warning(f"Transfer token rejected for {item.filename}, re-uploading bytes")
                    self._count_retry(attempt, exc)
                    continue

                return await self._commit_succeeded(attempt, remote_id)

        except PhaseExhausted as exc:
            logger.warning(f"Giving up on {item.filename} for this cycle: {exc.error.describe()}")
            return await self._return_to_staged(attempt, exc.error.describe())
        except RetryCeilingReached as exc:
            error = f"{exc.error.describe()} (retry ceiling {self._config.max_retries} exceeded)"
            logger.error(f"Failed {item.filename}: {error}")
            await self._move(item, ItemStatus.UPLOADING, ItemStatus.FAILED, last_error=error)
            return ItemOutcome(item.id, ItemStatus.FAILED, error=error)
        except (ClientFaultError, InvalidTransferTokenError) as exc:
            # InvalidTransferTokenError here came from phase 1 itself
            error = exc.describe()
            logger.error(f"Failed {item.filename}: {error}")
            await self._move(item, ItemStatus.UPLOADING, ItemStatus.FAILED, last_error=error)
            return ItemOutcome(item.id, ItemStatus.FAILED, error=error)
        except OSError as exc:
            error = f"{ErrorKind.LOCAL_MISSING.value}: staged copy unreadable: {exc}"
            logger.error(f"Failed {item.filename}: {error}")
            await self._move(item, ItemStatus.UPLOADING, ItemStatus.FAILED, last_error=error)
            return ItemOutcome(item.id, ItemStatus.FAILED, error=error)

    async def _run_phase(
        self,
        attempt: _Attempt,
        name: str,
        call: Callable[[Credential], Awaitable[Any]],
        attempts: int,
        timeout: Optional[float],
        max_delay: Optional[float] = None,
    ) -> Any:
        """
        Run one phase with its retry rules.

        - auth-expired: invalidate, fetch a fresh credential, retry once for free
        - transient (network, rate limit, timeout): back off and retry, counting
          each retry, until ``attempts`` is used up
        - everything else propagates to the caller
        """
        auth_retry_used = False
        failures = 0
        while True:
            credential: Optional[Credential] = None
            try:
                credential = await self._credentials.get_valid_credential()
                if timeout is None:
                    return await call(credential)
                return await asyncio.wait_for(call(credential), timeout)
            except asyncio.TimeoutError:
                error: MigratorError = TransientNetworkError(f"{name} timed out after {timeout}s")
            except AuthExpiredError as exc:
                if credential is not None:
                    self._credentials.invalidate(credential.access_token)
                if not auth_retry_used:
                    auth_retry_used = True
                    logger.debug(f"{name}: credential rejected, retrying with a fresh one")
                    continue
                error = exc
            except (TransientNetworkError, RateLimitedError) as exc:
                error = exc

            failures += 1
            self._count_retry(attempt, error)
            if failures >= attempts:
                raise PhaseExhausted(error)
            delay = attempt.backoff.next_delay(minimum=getattr(error, "retry_after", None), maximum=max_delay)
            logger.info(
                f"{attempt.item.filename}: {name} attempt {failures}/{attempts} failed "
                f"({error.describe()}), retrying in {delay:.1f}s"
            )
            await self._sleep(delay)

    def _count_retry(self, attempt: _Attempt, error: MigratorError) -> None:
        attempt.retry_count += 1
        self._store.transition(
            attempt.item.id,
            ItemStatus.UPLOADING,
            ItemStatus.UPLOADING,
            increment_retry=True,
            last_error=error.describe(),
        )
        if attempt.retry_count > self._config.max_retries:
            raise RetryCeilingReached(error)

    async def _commit(self, token: str, item: MediaItem, credential: Credential) -> str:
        entry = {
            "upload_token": token,
            "file_name": item.filename,
            "description": item.filename if self._config.include_description else None,
        }
        results = await self._remote.commit([entry], credential, timeout=self._config.commit_timeout)
        if not results:
            raise TransientNetworkError("commit returned no results")
        result = results[0]
        if result.error is not None:
            raise result.error
        return result.remote_id

    async def _commit_succeeded(self, attempt: _Attempt, remote_id: str) -> ItemOutcome:
        item = attempt.item
        if not await self._move(
            item, ItemStatus.UPLOADING, ItemStatus.COMMITTED, remote_id=remote_id, last_error=None
        ):
            current = self._store.get(item.id) or item
            logger.error(
                f"Commit of {item.filename} succeeded remotely ({remote_id}) "
                f"but the row moved to {current.status.value}"
            )
            return ItemOutcome(item.id, current.status, current.remote_id, current.last_error)

        logger.info(f"Committed {item.filename} -> {remote_id}")
        if self._config.cleanup_staged:
            await self._release(item)
        return ItemOutcome(item.id, ItemStatus.COMMITTED, remote_id=remote_id)

    async def _return_to_staged(self, attempt: _Attempt, error: str) -> ItemOutcome:
        await self._move(attempt.item, ItemStatus.UPLOADING, ItemStatus.STAGED, last_error=error)
        return ItemOutcome(attempt.item.id, ItemStatus.STAGED, error=error)

    async def _release(self, item: MediaItem) -> None:
        try:
            await self._accessor.release(item)
        except OSError as e:
            logger.warning(f"Could not release staged copy of {item.filename}: {e}")

    async def _move(self, item: MediaItem, from_status: ItemStatus, to_status: ItemStatus, **metadata) -> bool:
        if not self._store.transition(item.id, from_status, to_status, **metadata):
            return False
        await self._events.emit(
            ITEM_TRANSITIONED,
            ItemTransition(
                item_id=item.id,
                filename=item.filename,
                from_status=from_status,
                to_status=to_status,
                size_bytes=item.size_bytes,
                reason=metadata.get("last_error") or metadata.get("review_reason"),
            ),
        )
        return True
