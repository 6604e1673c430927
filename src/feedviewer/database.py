"""SQLite item store for Feed Viewer."""

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import RLock

from feedviewer.models import DERIVED_FIELDS, Item

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    title TEXT,
    source_url TEXT,
    preview TEXT,
    published_at TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    summary TEXT,
    cached_body TEXT,
    unavailable INTEGER NOT NULL DEFAULT 0,
    fetched_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_items_unread_order
    ON items(is_read, published_at, id);
"""

# Keeps IN (...) lists well under SQLite's bound-parameter limit.
_MAX_PARAMS = 500

_UNREAD_ORDER = "ORDER BY published_at ASC, id ASC"


class StorageError(Exception):
    """Raised when the underlying SQLite database fails."""


class Database:
    """SQLite-backed store of feed items and their read state.

    Every public method runs under a single lock, so each call is an atomic
    unit from the caller's point of view even when handlers run on
    different threads.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = RLock()

    def connect(self) -> None:
        """Open database connection and initialize schema.

        Raises:
            StorageError: If the database cannot be opened or created.
        """
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn = None
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        logger.info("Opened item store at %s (%d unread)", self.db_path, self.count_unread())

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def _guard(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Serialize access and turn sqlite errors into StorageError."""
        with self._lock:
            conn = self.conn
            try:
                yield conn
            except sqlite3.Error as e:
                conn.rollback()
                logger.error("Storage error in %s: %s", operation, e)
                raise StorageError(f"{operation} failed: {e}") from e

    # --- Producer operations ---

    def insert_if_absent(self, item: Item) -> bool:
        """Insert an item unless its id is already stored.

        Existing rows are never overwritten, so read state and derived
        fields survive a re-fetch of the same entry.

        Returns:
            True if a row was inserted.
        """
        with self._guard("insert_if_absent") as conn:
            inserted = self._insert(conn, item)
            conn.commit()
        return inserted

    def add_items(self, items: Iterable[Item]) -> int:
        """Bulk-insert items, skipping duplicates. Returns count of inserted items."""
        inserted = 0
        with self._guard("add_items") as conn:
            for item in items:
                if self._insert(conn, item):
                    inserted += 1
            conn.commit()
        return inserted

    @staticmethod
    def _insert(conn: sqlite3.Connection, item: Item) -> bool:
        cursor = conn.execute(
            """INSERT OR IGNORE INTO items (id, title, source_url, preview,
               published_at, is_read, summary, cached_body, unavailable, fetched_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                item.id,
                item.title,
                item.source_url,
                item.preview,
                _dt_to_str(item.published_at),
                int(item.read),
                item.summary,
                item.cached_body,
                int(item.unavailable),
                _dt_to_str(item.fetched_at),
            ),
        )
        return cursor.rowcount == 1

    # --- Reader operations ---

    def list_unread(self, limit: int) -> list[Item]:
        """Return up to ``limit`` unread items, oldest first.

        Ties on ``published_at`` are broken by id so repeated calls see the
        same total order. A result shorter than ``limit`` means the unread
        items are exhausted.
        """
        if limit < 1:
            raise ValueError("limit must be a positive integer")
        with self._guard("list_unread") as conn:
            rows = conn.execute(
                f"SELECT * FROM items WHERE is_read = 0 {_UNREAD_ORDER} LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def mark_read(self, ids: Iterable[str]) -> int:
        """Mark exactly the given items as read. Returns count of affected rows.

        Ids that are already read or no longer exist are skipped.
        """
        ids = list(dict.fromkeys(ids))
        if not ids:
            return 0
        changed = 0
        with self._guard("mark_read") as conn:
            for chunk in _chunks(ids):
                placeholders = ",".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"UPDATE items SET is_read = 1 WHERE id IN ({placeholders}) AND is_read = 0",
                    chunk,
                )
                changed += cursor.rowcount
            conn.commit()
        return changed

    def get_by_id(self, item_id: str) -> Item | None:
        """Look up an item by its id."""
        with self._guard("get_by_id") as conn:
            row = conn.execute(
                "SELECT * FROM items WHERE id = ?", (item_id,)
            ).fetchone()
        return _row_to_item(row) if row else None

    def count_unread(self) -> int:
        """Get the number of items not yet read."""
        with self._guard("count_unread") as conn:
            row = conn.execute(
                "SELECT COUNT(*) as cnt FROM items WHERE is_read = 0"
            ).fetchone()
        return row["cnt"] if row else 0

    def status_of(self, ids: Iterable[str]) -> dict[str, bool]:
        """Map each existing id to its read flag. Unknown ids are left out."""
        ids = list(dict.fromkeys(ids))
        status: dict[str, bool] = {}
        if not ids:
            return status
        with self._guard("status_of") as conn:
            for chunk in _chunks(ids):
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT id, is_read FROM items WHERE id IN ({placeholders})",
                    chunk,
                ).fetchall()
                status.update({r["id"]: bool(r["is_read"]) for r in rows})
        return status

    # --- Enrichment operations ---

    def patch_derived(self, item_id: str, **fields) -> bool:
        """Update derived fields (summary, cached_body, unavailable) of an item.

        Never touches ``id`` or the read flag.

        Returns:
            True if the item exists.

        Raises:
            ValueError: If a field other than a derived one is given.
        """
        unknown = set(fields) - set(DERIVED_FIELDS)
        if unknown:
            raise ValueError(f"Not a derived field: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_by_id(item_id) is not None

        columns = sorted(fields)
        values = [
            int(fields[c]) if c == "unavailable" else fields[c] for c in columns
        ]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        with self._guard("patch_derived") as conn:
            cursor = conn.execute(
                f"UPDATE items SET {assignments} WHERE id = ?",
                (*values, item_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def list_needing_summary(self, limit: int = 5) -> list[Item]:
        """Unread items with a link and no summary yet, oldest first."""
        with self._guard("list_needing_summary") as conn:
            rows = conn.execute(
                f"""SELECT * FROM items
                    WHERE is_read = 0
                    AND (summary IS NULL OR summary = '')
                    AND source_url IS NOT NULL
                    {_UNREAD_ORDER} LIMIT ?""",
                (limit,),
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def list_unread_with_link(self) -> list[Item]:
        """All unread items that have a link, oldest first."""
        with self._guard("list_unread_with_link") as conn:
            rows = conn.execute(
                f"""SELECT * FROM items
                    WHERE is_read = 0 AND source_url IS NOT NULL
                    {_UNREAD_ORDER}"""
            ).fetchall()
        return [_row_to_item(r) for r in rows]


# --- Helper functions ---


def _chunks(values: list[str]) -> Iterator[list[str]]:
    for start in range(0, len(values), _MAX_PARAMS):
        yield values[start:start + _MAX_PARAMS]


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for storage.

    Aware values are stored as naive UTC so that string order is time order.
    """
    if not dt:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def _row_to_item(row: sqlite3.Row) -> Item:
    """Convert a database row to an Item dataclass."""
    return Item(
        id=row["id"],
        title=row["title"],
        source_url=row["source_url"],
        preview=row["preview"],
        published_at=_str_to_dt(row["published_at"]),
        read=bool(row["is_read"]),
        summary=row["summary"],
        cached_body=row["cached_body"],
        unavailable=bool(row["unavailable"]),
        fetched_at=_str_to_dt(row["fetched_at"]) or datetime.utcnow(),
    )
