"""
Database - SQLite connection shared by the item and credential stores.

One connection per process, serialized by a lock. Writes that touch more
than one row go through ``transaction()``.
"""
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "photo-migrator"
DEFAULT_DB_FILE = "photo-migrator.db"
MEMORY = ":memory:"


class Database:
    """
    Thin wrapper over a sqlite3 connection.

    Usage:
        with Database(path) as db:
            store = ItemStore(db)
    """

    def __init__(self, path: Union[str, Path, None] = None, busy_timeout: float = 30.0):
        if path is None:
            path = DEFAULT_DATA_DIR / DEFAULT_DB_FILE
        self._path = path if str(path) == MEMORY else Path(path)
        self._busy_timeout = busy_timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def path(self) -> Union[str, Path]:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> "Database":
        """Connect, set pragmas, restrict permissions and apply migrations."""
        if self._conn is not None:
            return self

        from .migrations import apply_migrations

        if isinstance(self._path, Path):
            self._path.parent.mkdir(parents=True, exist_ok=True)
            created = not self._path.exists()
        else:
            created = False

        self._conn = sqlite3.connect(
            str(self._path),
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if isinstance(self._path, Path):
            self._conn.execute("PRAGMA journal_mode = WAL")
            if created:
                # credential material lives in this file
                os.chmod(self._path, 0o600)
        logger.info("Database connected: %s", self._path)

        apply_migrations(self)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            logger.info("Database connection closed")

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *args) -> None:
        self.close()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not opened. Call open() or use 'with' context.")
        return self._conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._connection().execute(sql, params)

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._connection().execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._connection().execute(sql, params).fetchone()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically (BEGIN IMMEDIATE ... COMMIT)."""
        with self._lock:
            conn = self._connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def vacuum(self) -> None:
        self.execute("VACUUM")
        logger.info("Database vacuumed")
