"""
Schema migrations.

Each migration has a unique id and is recorded in ``schema_migrations``
once applied, so the store evolves without manual intervention.
Migrations run inside a transaction and are written to be idempotent.
"""
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, List, Set

if TYPE_CHECKING:
    from .database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    id: str
    description: str
    apply: Callable[[sqlite3.Connection], None]


def _column_names(conn: sqlite3.Connection, table: str) -> Set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _create_media_items(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS media_items (
            id TEXT PRIMARY KEY,
            source_locator TEXT NOT NULL,
            filename TEXT NOT NULL,
            size_bytes INTEGER NOT NULL DEFAULT 0,
            media_class TEXT NOT NULL CHECK(media_class IN ('photo', 'video')),
            mime_type TEXT NOT NULL,
            created_at TEXT,
            staged_path TEXT,
            content_fingerprint TEXT,
            perceptual_fingerprint TEXT,
            pixel_width INTEGER,
            pixel_height INTEGER,
            status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN
                ('pending', 'staged', 'uploading', 'committed', 'failed', 'skipped')),
            retry_count INTEGER NOT NULL DEFAULT 0,
            last_attempt_at TEXT,
            last_error TEXT,
            remote_id TEXT,
            review_reason TEXT,
            batch_id TEXT,
            CHECK((remote_id IS NOT NULL) = (status = 'committed'))
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_media_status ON media_items(status)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_media_fingerprint ON media_items(content_fingerprint)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_media_class_status ON media_items(media_class, status)"
    )


def _create_batches(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS batches (
            id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            status TEXT NOT NULL CHECK(status IN
                ('planned', 'uploading', 'complete', 'failed', 'halted')),
            total_size INTEGER NOT NULL,
            files_count INTEGER NOT NULL,
            limit_bytes INTEGER NOT NULL,
            item_ids TEXT NOT NULL,
            deferred TEXT NOT NULL DEFAULT '{}'
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_batches_status ON batches(status)")


def _create_credentials(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS credentials (
            id INTEGER PRIMARY KEY CHECK(id = 1),
            access_token TEXT NOT NULL,
            refresh_token TEXT,
            expires_at TEXT NOT NULL,
            token_type TEXT NOT NULL DEFAULT 'Bearer',
            scope TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )


def _add_is_in_cloud(conn: sqlite3.Connection) -> None:
    if "is_in_cloud" in _column_names(conn, "media_items"):
        logger.info("Migration skipped: is_in_cloud column already exists")
        return
    conn.execute("ALTER TABLE media_items ADD COLUMN is_in_cloud INTEGER NOT NULL DEFAULT 0")


def _index_pixel_size(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_media_pixel_size "
        "ON media_items(media_class, status, pixel_width, pixel_height)"
    )


MIGRATIONS: List[Migration] = [
    Migration("0001-create-media-items", "Create media_items table and indexes", _create_media_items),
    Migration("0002-create-batches", "Create batches table", _create_batches),
    Migration("0003-create-credentials", "Create single-row credentials table", _create_credentials),
    Migration("0004-add-is-in-cloud", "Add is_in_cloud column to media_items", _add_is_in_cloud),
    Migration("0005-index-pixel-size", "Index committed photos by pixel size", _index_pixel_size),
]


def applied_migrations(db: "Database") -> List[str]:
    rows = db.query("SELECT id FROM schema_migrations ORDER BY applied_at, id")
    return [row["id"] for row in rows]


def apply_migrations(db: "Database", migrations: List[Migration] = None) -> List[str]:
    """
    Apply every migration not yet recorded.

    Returns:
        Ids of the migrations applied by this call.
    """
    migrations = MIGRATIONS if migrations is None else migrations
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL,
            description TEXT
        )
        """
    )
    done = set(applied_migrations(db))
    newly_applied = []

    for migration in migrations:
        if migration.id in done:
            logger.debug("Skipping already applied migration: %s", migration.id)
            continue

        logger.info("Applying migration: %s - %s", migration.id, migration.description)
        with db.transaction() as conn:
            migration.apply(conn)
            conn.execute(
                "INSERT INTO schema_migrations (id, applied_at, description) VALUES (?, ?, ?)",
                (migration.id, datetime.now(timezone.utc).isoformat(), migration.description),
            )
        newly_applied.append(migration.id)

    if newly_applied:
        logger.info("Database migrations completed: %d applied", len(newly_applied))
    return newly_applied
