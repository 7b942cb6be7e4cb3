"""Orchestrator data models."""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..models import BatchDescriptor, BatchStatus, ItemStatus, MediaClass, MediaItem


@dataclass(frozen=True)
class ItemOutcome:
    """Where one item ended up after an upload attempt."""
    item_id: str
    status: ItemStatus
    remote_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == ItemStatus.COMMITTED


@dataclass
class CycleResult:
    """Result of one plan/stage/dedup/upload cycle."""
    batch: Optional[BatchDescriptor]
    status: BatchStatus
    outcomes: List[ItemOutcome] = field(default_factory=list)
    skipped_duplicates: int = 0
    still_downloading: int = 0
    staging_failures: int = 0
    # staged items whose real size no longer fit the batch, requeued as pending
    resized: int = 0
    halted_reason: Optional[str] = None

    def count(self, status: ItemStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def committed(self) -> int:
        return self.count(ItemStatus.COMMITTED)

    @property
    def failed(self) -> int:
        return self.count(ItemStatus.FAILED) + self.staging_failures

    @property
    def deferred(self) -> int:
        return len(self.batch.deferred) if self.batch else 0

    @property
    def is_empty(self) -> bool:
        return self.batch is None or self.batch.is_empty

    @property
    def halted(self) -> bool:
        return self.status == BatchStatus.HALTED


@dataclass
class StatusReport:
    counts: Dict[ItemStatus, int]
    pending_by_class: Dict[MediaClass, int]
    failed_items: List[MediaItem]
    review_items: List[MediaItem]
    recent_batches: List[BatchDescriptor]
    authenticated: bool = False

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def remaining(self) -> int:
        return sum(n for status, n in self.counts.items() if not status.is_terminal)
