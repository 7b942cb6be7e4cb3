"""
Protocols (Interfaces) for Dependency Inversion.

Following Interface Segregation Principle - small, focused interfaces.
"""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .models import (
    BatchDescriptor,
    BatchStatus,
    Credential,
    ItemFilter,
    ItemStatus,
    MediaClass,
    MediaItem,
    TransferSession,
)


class StageState(Enum):
    """Per-item outcome reported by the local accessor."""
    STAGED = "staged"
    DOWNLOADING = "downloading"
    FAILED = "failed"


@dataclass(frozen=True)
class StageResult:
    state: StageState
    path: Optional[str] = None
    error: Optional[str] = None
    # size of the staged copy; placeholders were recorded with 0
    size_bytes: Optional[int] = None

    @classmethod
    def staged(cls, path: Path, size_bytes: Optional[int] = None) -> "StageResult":
        return cls(StageState.STAGED, path=str(path), size_bytes=size_bytes)

    @classmethod
    def downloading(cls) -> "StageResult":
        return cls(StageState.DOWNLOADING)

    @classmethod
    def failed(cls, error: str) -> "StageResult":
        return cls(StageState.FAILED, error=error)


@dataclass(frozen=True)
class CommitResult:
    """One per-token result of the remote commit call."""
    transfer_token: str
    remote_id: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.remote_id is not None


@runtime_checkable
class IItemStore(Protocol):
    """Durable item records; the only writer of status."""

    def upsert_many(self, items: Sequence[MediaItem]) -> int:
        ...

    def get(self, item_id: str) -> Optional[MediaItem]:
        ...

    def find_by_fingerprint(self, fingerprint: str) -> Optional[MediaItem]:
        ...

    def select_eligible(self, item_filter: ItemFilter, limit: int) -> List[MediaItem]:
        ...

    def transition(self, item_id: str, from_status: ItemStatus, to_status: ItemStatus, **metadata: Any) -> bool:
        ...

    def total_by_status(self) -> Dict[ItemStatus, int]:
        ...

    def total_by_class(self, status: Optional[ItemStatus] = None) -> Dict[MediaClass, int]:
        ...

    def record_batch(self, descriptor: BatchDescriptor) -> None:
        ...

    def update_batch_status(self, batch_id: str, status: BatchStatus) -> bool:
        ...


@runtime_checkable
class ILocalAccessor(Protocol):
    """Native library accessor: enumerates items and exports bytes."""

    async def enumerate(self) -> List[MediaItem]:
        ...

    async def stage(self, items: Sequence[MediaItem]) -> Dict[str, StageResult]:
        ...

    async def release(self, item: MediaItem) -> None:
        ...


@runtime_checkable
class IRemoteStore(Protocol):
    """Two-call remote protocol: byte upload, then batch commit."""

    async def upload_bytes(
        self,
        session: TransferSession,
        path: Path,
        credential: Credential,
        mime_type: str,
        filename: str,
    ) -> str:
        ...

    async def commit(
        self,
        entries: Sequence[Dict[str, Optional[str]]],
        credential: Credential,
        timeout: Optional[float] = None,
    ) -> List[CommitResult]:
        ...


@runtime_checkable
class ICredentialProvider(Protocol):

    async def get_valid_credential(self) -> Credential:
        ...

    def invalidate(self, stale_access_token: str) -> None:
        ...
