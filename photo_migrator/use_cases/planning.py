"""
Batch Planner - disk-aware selection of the next transfer round.

The staged bytes of a batch never exceed
``min(ceiling, free_space - safety_margin)`` of the staging volume.
"""
import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..errors import ErrorKind
from ..models import (
    BatchDescriptor,
    ItemFilter,
    ItemStatus,
    MediaClass,
    MediaItem,
    Reason,
    UploadConfig,
    utcnow,
)
from ..protocols import IItemStore

logger = logging.getLogger(__name__)

DiskUsage = Callable[[Union[str, Path]], Any]


@dataclass(frozen=True)
class SpaceBudget:
    free_bytes: int
    margin_bytes: int
    ceiling_bytes: Optional[int]

    @property
    def usable_bytes(self) -> int:
        return max(self.free_bytes - self.margin_bytes, 0)

    @property
    def limit_bytes(self) -> int:
        if self.ceiling_bytes is None:
            return self.usable_bytes
        return max(min(self.ceiling_bytes, self.usable_bytes), 0)


def select_within_limit(
    candidates: List[MediaItem], limit_bytes: int, usable_bytes: int, max_items: int
):
    """
    Greedy walk in the candidates' order.

    Returns:
        (selected, deferred) where deferred maps ids of items too large for
        the volume on their own to a reason.
    """
    selected: List[MediaItem] = []
    deferred: Dict[str, str] = {}
    total = 0
    for item in candidates:
        if len(selected) >= max_items:
            break
        if item.size_bytes > usable_bytes:
            deferred[item.id] = Reason.INSUFFICIENT_SPACE.value
            continue
        if total + item.size_bytes <= limit_bytes:
            selected.append(item)
            total += item.size_bytes
    return selected, deferred


class BatchPlanner:
    """
    Usage:
        planner = BatchPlanner(store, config, staging_dir)
        batch = planner.plan(MediaClass.PHOTO)
    """

    # candidates scanned per plan beyond the batch item cap
    SCAN_FACTOR = 4

    def __init__(
        self,
        store: IItemStore,
        config: UploadConfig,
        staging_dir: Union[str, Path],
        disk_usage: DiskUsage = shutil.disk_usage,
    ):
        self._store = store
        self._config = config
        self._staging_dir = Path(staging_dir)
        self._disk_usage = disk_usage

    def budget(self) -> SpaceBudget:
        path = self._staging_dir
        while not path.exists() and path != path.parent:
            path = path.parent
        free = self._disk_usage(path).free
        return SpaceBudget(
            free_bytes=free,
            margin_bytes=self._config.safety_margin_bytes,
            ceiling_bytes=self._config.ceiling_for(free),
        )

    def plan(self, media_class: Optional[MediaClass] = None, record: bool = True) -> BatchDescriptor:
        """
        Select the next batch of pending/staged items and record it.

        Items already staged occupy disk space, but they are counted like any
        other candidate so a leftover batch is never larger than the limit.
        """
        budget = self.budget()
        candidates = self._store.select_eligible(
            ItemFilter(
                statuses=(ItemStatus.PENDING, ItemStatus.STAGED),
                media_class=media_class,
                photos_first=self._config.photos_first,
            ),
            limit=self._config.batch_max_items * self.SCAN_FACTOR,
        )
        selected, deferred = select_within_limit(
            candidates, budget.limit_bytes, budget.usable_bytes, self._config.batch_max_items
        )

        for item_id in deferred:
            item = next(c for c in candidates if c.id == item_id)
            self._store.transition(
                item.id,
                item.status,
                item.status,
                last_error=(
                    f"{ErrorKind.INSUFFICIENT_SPACE.value}: needs {item.size_bytes} bytes, "
                    f"{budget.usable_bytes} usable"
                ),
            )

        descriptor = BatchDescriptor(
            id=uuid.uuid4().hex,
            item_ids=tuple(item.id for item in selected),
            total_bytes=sum(item.size_bytes for item in selected),
            limit_bytes=budget.limit_bytes,
            created_at=utcnow(),
            deferred=deferred,
        )

        if descriptor.is_empty:
            logger.info(
                f"Nothing to plan: {len(candidates)} eligible, limit {budget.limit_bytes} bytes "
                f"(free {budget.free_bytes}, margin {budget.margin_bytes})"
            )
        else:
            logger.info(
                f"Planned batch {descriptor.id[:8]}: {descriptor.item_count} items, "
                f"{descriptor.total_bytes} of {budget.limit_bytes} bytes"
            )
        if deferred:
            logger.warning(f"{len(deferred)} items deferred: larger than usable disk space")

        if record and not descriptor.is_empty:
            self._store.record_batch(descriptor)
        return descriptor
