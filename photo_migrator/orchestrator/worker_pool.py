import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from ..errors import ReauthenticationRequired
from ..models import MediaItem
from .models import ItemOutcome

logger = logging.getLogger(__name__)


@dataclass
class PoolResult:
    outcomes: List[ItemOutcome] = field(default_factory=list)
    not_started: List[str] = field(default_factory=list)
    aborted: List[str] = field(default_factory=list)
    errors: Dict[str, BaseException] = field(default_factory=dict)
    halted_reason: Optional[str] = None


class WorkerPool:
    """
    Bounded pool of upload workers.

    - At most ``concurrency`` items in flight; each worker carries one item
      through both phases before taking the next
    - ``pause()`` stops admitting items; admitted items keep going
    - A ReauthenticationRequired from any worker halts admission for the rest
    """

    def __init__(self, concurrency: int):
        self._concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._paused = False
        self._halted_reason: Optional[str] = None
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def halted_reason(self) -> Optional[str]:
        return self._halted_reason

    @property
    def should_stop(self) -> bool:
        return self._paused or self._halted_reason is not None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def pause(self) -> None:
        if not self._paused:
            logger.info("Upload paused: no new items will start")
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._halted_reason = None

    def clear_halt(self) -> None:
        """Re-open admission after re-authorization; a pause stays in force."""
        if self._halted_reason is not None:
            logger.info(f"Clearing halt ({self._halted_reason}): credentials usable again")
        self._halted_reason = None

    async def abort_in_flight(self) -> int:
        """Cancel items mid-transfer; the uploader rolls them back to staged."""
        tasks = [task for task in self._in_flight if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.warning(f"Aborting {len(tasks)} in-flight upload(s)")
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    async def run(
        self,
        items: Sequence[MediaItem],
        worker: Callable[[MediaItem], Awaitable[ItemOutcome]],
    ) -> PoolResult:
        result = PoolResult()
        tasks = [asyncio.create_task(self._run_one(item, worker)) for item in items]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        for item, outcome in zip(items, outcomes):
            if outcome is None:
                result.not_started.append(item.id)
            elif isinstance(outcome, ItemOutcome):
                result.outcomes.append(outcome)
            elif isinstance(outcome, (asyncio.CancelledError, ReauthenticationRequired)):
                # rolled back to staged by the uploader
                result.aborted.append(item.id)
            else:
                logger.error(f"Worker for {item.filename} crashed: {outcome!r}", exc_info=outcome)
                result.errors[item.id] = outcome

        result.halted_reason = self._halted_reason
        logger.info(
            f"Worker pool done: {len(result.outcomes)} finished, {len(result.not_started)} not started, "
            f"{len(result.aborted)} aborted, {len(result.errors)} crashed"
        )
        return result

    async def _run_one(
        self,
        item: MediaItem,
        worker: Callable[[MediaItem], Awaitable[ItemOutcome]],
    ) -> Optional[ItemOutcome]:
        async with self._semaphore:
            if self.should_stop:
                return None
            task = asyncio.current_task()
            self._in_flight.add(task)
            try:
                return await worker(item)
            except ReauthenticationRequired as exc:
                if self._halted_reason is None:
                    logger.error(f"Halting uploads: {exc}")
                    self._halted_reason = str(exc)
                raise
            finally:
                self._in_flight.discard(task)
