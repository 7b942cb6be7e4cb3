"""
Item Store - Single Responsibility: durable record of items and batches.

Implements Repository Pattern over SQLite. Every status change goes
through ``transition``, a compare-and-set update that only writes when the
row still has the expected status.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..errors import InvalidTransitionError
from ..models import (
    ALLOWED_TRANSITIONS,
    BatchDescriptor,
    BatchStatus,
    ItemFilter,
    ItemStatus,
    MediaClass,
    MediaItem,
    utcnow,
)
from .database import Database

logger = logging.getLogger(__name__)

# Columns a transition may write besides status
METADATA_COLUMNS = frozenset({
    "staged_path",
    "content_fingerprint",
    "perceptual_fingerprint",
    "pixel_width",
    "pixel_height",
    "last_error",
    "remote_id",
    "review_reason",
    "retry_count",
    "size_bytes",
    "is_in_cloud",
})

# Claim guard: fingerprint known, and no other row holds it committed or in flight
_UPLOAD_CLAIM_GUARD = """
    AND content_fingerprint IS NOT NULL
    AND NOT EXISTS (
        SELECT 1 FROM media_items AS other
        WHERE other.content_fingerprint = media_items.content_fingerprint
          AND other.id != media_items.id
          AND other.status IN ('committed', 'uploading')
    )
"""


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_item(row) -> MediaItem:
    keys = row.keys()
    return MediaItem(
        id=row["id"],
        source_locator=row["source_locator"],
        filename=row["filename"],
        size_bytes=row["size_bytes"] or 0,
        media_class=MediaClass(row["media_class"]),
        mime_type=row["mime_type"],
        created_at=_from_iso(row["created_at"]),
        staged_path=row["staged_path"],
        content_fingerprint=row["content_fingerprint"],
        perceptual_fingerprint=row["perceptual_fingerprint"],
        pixel_width=row["pixel_width"],
        pixel_height=row["pixel_height"],
        status=ItemStatus(row["status"]),
        retry_count=row["retry_count"],
        last_attempt_at=_from_iso(row["last_attempt_at"]),
        last_error=row["last_error"],
        remote_id=row["remote_id"],
        review_reason=row["review_reason"],
        is_in_cloud=bool(row["is_in_cloud"]) if "is_in_cloud" in keys else False,
        batch_id=row["batch_id"],
    )


def _row_to_batch(row) -> BatchDescriptor:
    return BatchDescriptor(
        id=row["id"],
        item_ids=tuple(json.loads(row["item_ids"])),
        total_bytes=row["total_size"],
        limit_bytes=row["limit_bytes"],
        created_at=_from_iso(row["created_at"]),
        status=BatchStatus(row["status"]),
        deferred=json.loads(row["deferred"] or "{}"),
    )


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class ItemStore:
    """
    Repository for media items and batch records.

    The store is the sole writer of item status. Callers read, then propose
    a transition; a ``False`` result means another worker got there first.
    """

    def __init__(self, db: Database):
        self._db = db

    @property
    def database(self) -> Database:
        return self._db

    # =========================================================================
    # Items
    # =========================================================================

    def upsert_many(self, items: Sequence[MediaItem]) -> int:
        """
        Insert discovered items, refresh accessor metadata of pending ones.

        Status, retry and remote columns of existing rows are never touched.

        Returns:
            Number of newly inserted rows
        """
        if not items:
            return 0

        added = 0
        with self._db.transaction() as conn:
            for item in items:
                exists = conn.execute(
                    "SELECT 1 FROM media_items WHERE id = ?", (item.id,)
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO media_items
                        (id, source_locator, filename, size_bytes, media_class, mime_type,
                         created_at, pixel_width, pixel_height, is_in_cloud, status, retry_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0)
                    ON CONFLICT(id) DO UPDATE SET
                        source_locator = excluded.source_locator,
                        filename = excluded.filename,
                        size_bytes = excluded.size_bytes,
                        mime_type = excluded.mime_type,
                        created_at = excluded.created_at,
                        is_in_cloud = excluded.is_in_cloud
                    WHERE media_items.status = 'pending'
                    """,
                    (
                        item.id,
                        item.source_locator,
                        item.filename,
                        item.size_bytes,
                        item.media_class.value,
                        item.mime_type,
                        _to_iso(item.created_at),
                        item.pixel_width,
                        item.pixel_height,
                        int(item.is_in_cloud),
                    ),
                )
                if not exists:
                    added += 1

        logger.debug("Upserted %d items (%d new)", len(items), added)
        return added

    def get(self, item_id: str) -> Optional[MediaItem]:
        row = self._db.query_one("SELECT * FROM media_items WHERE id = ?", (item_id,))
        return _row_to_item(row) if row else None

    def get_many(self, item_ids: Iterable[str]) -> List[MediaItem]:
        """Fetch items preserving the order of ``item_ids``."""
        ids = list(item_ids)
        if not ids:
            return []
        found: Dict[str, MediaItem] = {}
        # stay under SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            rows = self._db.query(
                f"SELECT * FROM media_items WHERE id IN ({_placeholders(chunk)})", chunk
            )
            found.update({row["id"]: _row_to_item(row) for row in rows})
        return [found[item_id] for item_id in ids if item_id in found]

    def find_by_fingerprint(self, fingerprint: str) -> Optional[MediaItem]:
        """
        Return the canonical holder of a content fingerprint.

        Committed rows win, then uploading, then staged/pending by id.
        Failed and skipped rows never hold a fingerprint.
        """
        row = self._db.query_one(
            """
            SELECT * FROM media_items
            WHERE content_fingerprint = ?
              AND status IN ('committed', 'uploading', 'staged', 'pending')
            ORDER BY CASE status
                        WHEN 'committed' THEN 0
                        WHEN 'uploading' THEN 1
                        ELSE 2
                     END,
                     id
            LIMIT 1
            """,
            (fingerprint,),
        )
        return _row_to_item(row) if row else None

    def find_visual_candidates(
        self,
        pixel_width: int,
        pixel_height: int,
        exclude_id: Optional[str] = None,
    ) -> List[MediaItem]:
        """Committed photos of the same pixel size that carry a perceptual hash."""
        rows = self._db.query(
            """
            SELECT * FROM media_items
            WHERE media_class = 'photo' AND status = 'committed'
              AND pixel_width = ? AND pixel_height = ?
              AND perceptual_fingerprint IS NOT NULL
              AND id != ?
            """,
            (pixel_width, pixel_height, exclude_id or ""),
        )
        return [_row_to_item(row) for row in rows]

    def select_eligible(self, item_filter: ItemFilter, limit: int) -> List[MediaItem]:
        """
        Items in the filter's statuses, ordered by class priority then size.
        """
        statuses = [status.value for status in item_filter.statuses]
        params: List[Any] = list(statuses)
        where = f"status IN ({_placeholders(statuses)})"
        if item_filter.media_class is not None:
            where += " AND media_class = ?"
            params.append(item_filter.media_class.value)

        class_order = (
            "CASE media_class WHEN 'photo' THEN 0 ELSE 1 END"
            if item_filter.photos_first
            else "0"
        )
        params.append(limit)
        rows = self._db.query(
            f"""
            SELECT * FROM media_items
            WHERE {where}
            ORDER BY {class_order}, size_bytes, id
            LIMIT ?
            """,
            params,
        )
        return [_row_to_item(row) for row in rows]

    def list_by_status(
        self,
        status: ItemStatus,
        limit: int = 100,
        media_class: Optional[MediaClass] = None,
    ) -> List[MediaItem]:
        return self.select_eligible(
            ItemFilter(statuses=(status,), media_class=media_class, photos_first=False),
            limit,
        )

    def list_flagged(self, limit: int = 100) -> List[MediaItem]:
        """Uploaded or queued items the visual check flagged for review."""
        rows = self._db.query(
            """
            SELECT * FROM media_items
            WHERE review_reason IS NOT NULL AND status != 'skipped'
            ORDER BY id
            LIMIT ?
            """,
            (limit,),
        )
        return [_row_to_item(row) for row in rows]

    def transition(
        self,
        item_id: str,
        from_status: ItemStatus,
        to_status: ItemStatus,
        increment_retry: bool = False,
        **metadata: Any,
    ) -> bool:
        """
        Compare-and-set status update.

        Args:
            item_id: Item to update
            from_status: Status the row must currently have
            to_status: New status (equal to from_status for metadata-only updates)
            increment_retry: Add one to retry_count in the same write
            **metadata: Columns from METADATA_COLUMNS to write alongside

        Returns:
            True if the row was updated, False if its status did not match
            (or, for a claim into uploading, a duplicate holds the fingerprint).
        """
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransitionError(
                f"{item_id}: {from_status.value} -> {to_status.value} is not allowed"
            )
        unknown = set(metadata) - METADATA_COLUMNS
        if unknown:
            raise ValueError(f"Unknown metadata columns: {sorted(unknown)}")
        if (to_status == ItemStatus.COMMITTED) != bool(metadata.get("remote_id")):
            raise InvalidTransitionError("remote_id is set exactly when an item is committed")

        assignments = ["status = ?"]
        params: List[Any] = [to_status.value]
        for column, value in metadata.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        if increment_retry:
            assignments.append("retry_count = retry_count + 1")
        if increment_retry or to_status in (
            ItemStatus.UPLOADING,
            ItemStatus.COMMITTED,
            ItemStatus.FAILED,
        ):
            assignments.append("last_attempt_at = ?")
            params.append(utcnow().isoformat())

        where = "id = ? AND status = ?"
        params.extend([item_id, from_status.value])
        if to_status == ItemStatus.UPLOADING and from_status != ItemStatus.UPLOADING:
            where += _UPLOAD_CLAIM_GUARD

        cursor = self._db.execute(
            f"UPDATE media_items SET {', '.join(assignments)} WHERE {where}", params
        )
        changed = cursor.rowcount == 1
        if changed:
            logger.debug("Transition %s: %s -> %s", item_id, from_status.value, to_status.value)
        else:
            logger.debug(
                "Transition refused %s: expected %s -> %s",
                item_id, from_status.value, to_status.value,
            )
        return changed

    def reset_failed(self, media_class: Optional[MediaClass] = None) -> int:
        """Retry sweep: re-admit failed items as pending."""
        where = "status = 'failed'"
        params: List[Any] = []
        if media_class is not None:
            where += " AND media_class = ?"
            params.append(media_class.value)
        cursor = self._db.execute(
            f"""
            UPDATE media_items
            SET status = 'pending', retry_count = 0, last_error = NULL, staged_path = NULL
            WHERE {where}
            """,
            params,
        )
        if cursor.rowcount:
            logger.info("Re-admitted %d failed items as pending", cursor.rowcount)
        return cursor.rowcount

    def recover_interrupted(self) -> int:
        """Return rows left in uploading by a dead process to staged."""
        cursor = self._db.execute(
            """
            UPDATE media_items
            SET status = 'staged', last_error = 'transient-network: interrupted mid-transfer'
            WHERE status = 'uploading'
            """
        )
        if cursor.rowcount:
            logger.warning("Recovered %d interrupted uploads back to staged", cursor.rowcount)
        return cursor.rowcount

    # =========================================================================
    # Aggregates
    # =========================================================================

    def total_by_status(self) -> Dict[ItemStatus, int]:
        counts = {status: 0 for status in ItemStatus}
        for row in self._db.query(
            "SELECT status, COUNT(*) AS n FROM media_items GROUP BY status"
        ):
            counts[ItemStatus(row["status"])] = row["n"]
        return counts

    def total_by_class(self, status: Optional[ItemStatus] = None) -> Dict[MediaClass, int]:
        counts = {media_class: 0 for media_class in MediaClass}
        if status is None:
            rows = self._db.query(
                "SELECT media_class, COUNT(*) AS n FROM media_items GROUP BY media_class"
            )
        else:
            rows = self._db.query(
                """
                SELECT media_class, COUNT(*) AS n FROM media_items
                WHERE status = ? GROUP BY media_class
                """,
                (status.value,),
            )
        for row in rows:
            counts[MediaClass(row["media_class"])] = row["n"]
        return counts

    # =========================================================================
    # Batches
    # =========================================================================

    def record_batch(self, descriptor: BatchDescriptor) -> None:
        """Persist a batch descriptor and tag its items, atomically."""
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO batches
                    (id, created_at, status, total_size, files_count, limit_bytes, item_ids, deferred)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    descriptor.id,
                    _to_iso(descriptor.created_at),
                    descriptor.status.value,
                    descriptor.total_bytes,
                    descriptor.item_count,
                    descriptor.limit_bytes,
                    json.dumps(list(descriptor.item_ids)),
                    json.dumps(dict(descriptor.deferred)),
                ),
            )
            ids = list(descriptor.item_ids)
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                conn.execute(
                    f"UPDATE media_items SET batch_id = ? WHERE id IN ({_placeholders(chunk)})",
                    [descriptor.id, *chunk],
                )
        logger.debug("Recorded batch %s (%d items)", descriptor.id, descriptor.item_count)

    def update_batch_status(self, batch_id: str, status: BatchStatus) -> bool:
        cursor = self._db.execute(
            "UPDATE batches SET status = ? WHERE id = ?", (status.value, batch_id)
        )
        if cursor.rowcount == 0:
            logger.warning("No batch found with id %s", batch_id)
            return False
        return True

    def get_batch(self, batch_id: str) -> Optional[BatchDescriptor]:
        row = self._db.query_one("SELECT * FROM batches WHERE id = ?", (batch_id,))
        return _row_to_batch(row) if row else None

    def latest_batches(self, limit: int = 5) -> List[BatchDescriptor]:
        rows = self._db.query(
            "SELECT * FROM batches ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        return [_row_to_batch(row) for row in rows]
