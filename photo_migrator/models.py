"""
Models for photo_migrator.

Immutable dataclasses following Single Responsibility Principle.
"""
import os
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


GiB = 1024 ** 3
MiB = 1024 ** 2

# Resumable chunks must be a multiple of the remote granularity.
CHUNK_GRANULARITY = 256 * 1024


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemStatus(Enum):
    """Transfer status of a media item."""
    PENDING = "pending"
    STAGED = "staged"
    UPLOADING = "uploading"
    COMMITTED = "committed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.COMMITTED, ItemStatus.SKIPPED)


# from_status -> allowed to_status values
ALLOWED_TRANSITIONS: Dict[ItemStatus, Tuple[ItemStatus, ...]] = {
    ItemStatus.PENDING: (ItemStatus.PENDING, ItemStatus.STAGED, ItemStatus.SKIPPED, ItemStatus.FAILED),
    ItemStatus.STAGED: (ItemStatus.STAGED, ItemStatus.UPLOADING, ItemStatus.SKIPPED, ItemStatus.FAILED),
    ItemStatus.UPLOADING: (
        ItemStatus.UPLOADING,
        ItemStatus.COMMITTED,
        ItemStatus.STAGED,
        ItemStatus.FAILED,
    ),
    ItemStatus.FAILED: (ItemStatus.PENDING,),
    ItemStatus.COMMITTED: (),
    ItemStatus.SKIPPED: (),
}


class MediaClass(Enum):
    """Media class, also the batch priority order."""
    PHOTO = "photo"
    VIDEO = "video"

    @classmethod
    def from_mime(cls, mime_type: Optional[str]) -> "MediaClass":
        if mime_type and mime_type.startswith("video/"):
            return cls.VIDEO
        return cls.PHOTO


class Reason(str, Enum):
    """Short reasons recorded on skipped/failed/deferred items."""
    DUPLICATE_EXACT = "duplicate-exact"
    DUPLICATE_VISUAL = "duplicate-visual"
    MISSING_LOCAL_COPY = "missing-local-copy"
    INSUFFICIENT_SPACE = "insufficient-space"
    STILL_DOWNLOADING = "still-downloading"


class BatchStatus(Enum):
    PLANNED = "planned"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FAILED = "failed"
    HALTED = "halted"


class SizeClass(Enum):
    SMALL = "small"
    LARGE = "large"


@dataclass(frozen=True)
class MediaItem:
    """One discovered unit of content (a row of the item store)."""
    id: str
    source_locator: str
    filename: str
    size_bytes: int = 0
    media_class: MediaClass = MediaClass.PHOTO
    mime_type: str = "application/octet-stream"
    created_at: Optional[datetime] = None
    staged_path: Optional[str] = None
    content_fingerprint: Optional[str] = None
    perceptual_fingerprint: Optional[str] = None
    pixel_width: Optional[int] = None
    pixel_height: Optional[int] = None
    status: ItemStatus = ItemStatus.PENDING
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    remote_id: Optional[str] = None
    review_reason: Optional[str] = None
    is_in_cloud: bool = False
    batch_id: Optional[str] = None

    @property
    def is_photo(self) -> bool:
        return self.media_class == MediaClass.PHOTO

    @property
    def has_dimensions(self) -> bool:
        return bool(self.pixel_width and self.pixel_height)

    def with_status(self, status: ItemStatus, **changes: Any) -> "MediaItem":
        return replace(self, status=status, **changes)


@dataclass(frozen=True)
class ItemFilter:
    """Filter for eligible-item queries."""
    statuses: Tuple[ItemStatus, ...] = (ItemStatus.PENDING, ItemStatus.STAGED)
    media_class: Optional[MediaClass] = None
    photos_first: bool = True


@dataclass(frozen=True)
class Credential:
    """OAuth bearer credential."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    token_type: str = "Bearer"
    scope: Optional[str] = None

    def expires_within(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """True if the access token expires within ``window`` from ``now``."""
        now = now or utcnow()
        return self.expires_at - now <= window

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type or 'Bearer'} {self.access_token}"


@dataclass(frozen=True)
class BatchDescriptor:
    """Recorded intent for one transfer round."""
    id: str
    item_ids: Tuple[str, ...]
    total_bytes: int
    limit_bytes: int
    created_at: datetime
    status: BatchStatus = BatchStatus.PLANNED
    deferred: Mapping[str, str] = field(default_factory=dict)

    @property
    def item_count(self) -> int:
        return len(self.item_ids)

    @property
    def is_empty(self) -> bool:
        return not self.item_ids


@dataclass
class TransferSession:
    """In-memory state of one two-phase attempt; never persisted."""
    item_id: str
    size_class: SizeClass
    chunk_size: int
    timeout: float
    transfer_token: Optional[str] = None
    upload_url: Optional[str] = None
    bytes_sent: int = 0

    @property
    def is_resumable(self) -> bool:
        return self.size_class == SizeClass.LARGE


@dataclass(frozen=True)
class UploadConfig:
    """Immutable configuration injected into every component."""
    concurrency: int = 2
    max_retries: int = 10
    upload_attempts: int = 5
    commit_attempts: int = 3
    backoff_initial: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 60.0
    backoff_jitter: bool = False
    safety_margin_bytes: int = 5 * GiB
    ceiling_bytes: Optional[int] = None
    ceiling_percent: Optional[float] = None
    batch_max_items: int = 500
    photos_first: bool = True
    large_item_threshold: int = 50 * MiB
    chunk_size: int = 16 * MiB
    small_timeout: float = 120.0
    large_timeout: float = 300.0
    commit_timeout: float = 30.0
    visual_duplicate_policy: str = "warn"  # "warn" or "skip"
    hamming_threshold: int = 5
    fingerprint_workers: int = 2
    credential_refresh_window: float = 300.0
    include_description: bool = True
    cleanup_staged: bool = True

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.visual_duplicate_policy not in ("warn", "skip"):
            raise ValueError(f"Unknown visual duplicate policy: {self.visual_duplicate_policy}")
        if self.chunk_size <= 0 or self.chunk_size % CHUNK_GRANULARITY:
            raise ValueError(f"chunk_size must be a positive multiple of {CHUNK_GRANULARITY}")
        if self.ceiling_percent is not None and not 0 < self.ceiling_percent <= 100:
            raise ValueError("ceiling_percent must be in (0, 100]")

    def size_class(self, size_bytes: int) -> SizeClass:
        if size_bytes >= self.large_item_threshold:
            return SizeClass.LARGE
        return SizeClass.SMALL

    def phase_timeout(self, size_bytes: int) -> float:
        """Per-phase timeout for the byte transfer, by size class."""
        if self.size_class(size_bytes) == SizeClass.LARGE:
            return self.large_timeout
        return self.small_timeout

    def new_session(self, item: MediaItem) -> TransferSession:
        size_class = self.size_class(item.size_bytes)
        chunk = self.chunk_size if size_class == SizeClass.LARGE else max(item.size_bytes, 1)
        return TransferSession(
            item_id=item.id,
            size_class=size_class,
            chunk_size=chunk,
            timeout=self.phase_timeout(item.size_bytes),
        )

    def ceiling_for(self, free_bytes: int) -> Optional[int]:
        """Configured ceiling in bytes for the given free space, or None."""
        limits = []
        if self.ceiling_bytes is not None:
            limits.append(self.ceiling_bytes)
        if self.ceiling_percent is not None:
            limits.append(int(free_bytes * self.ceiling_percent / 100))
        return min(limits) if limits else None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "UploadConfig":
        """Build config from PHOTO_MIGRATOR_<FIELD> variables, then overrides."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(f"PHOTO_MIGRATOR_{f.name.upper()}")
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, raw, getattr(cls, f.name, None))
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _coerce(name: str, raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if name in ("ceiling_bytes",):
        return int(raw)
    if name in ("ceiling_percent",):
        return float(raw)
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
