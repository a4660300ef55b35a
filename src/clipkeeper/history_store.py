"""
clipkeeper History Store -- SQLite-backed store for captured clipboard entries.

Entries are immutable: they are created by save() and removed by
delete_by_id(), delete_older_than() (retention) or clear(). Every write runs
in one transaction together with the search index update, so the index can
never be observed ahead of or behind the entries table.

Usage:
    store = HistoryStore("~/.clipkeeper/clipkeeper.db")
    entry_id = store.save(content="Hello world", content_type="text", timestamp=now_ms)
    results = store.search("hello", limit=5)
"""

import json
import logging
import sqlite3
import threading
import time as _time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from clipkeeper.config import ClipkeeperConfig, load_config
from clipkeeper.errors import StorageClosed, translate_io_errors
from clipkeeper.schema import SchemaManager, open_connection, transaction
from clipkeeper.search import QueryEngine
from clipkeeper.search_index import ENTRIES_TABLE, SearchStrategy

logger = logging.getLogger("clipkeeper.history_store")

_ENTRY_COLUMNS = "e.id, e.content, e.content_type, e.timestamp, e.source_app, e.metadata, e.created_at"

# ---------------------------------------------------------------------------
# SQLite retry -- a second process (e.g. the CLI while the service runs) can
# hold the write lock past busy_timeout. Retry with exponential backoff before
# surfacing the error as IOFailure.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 1.0  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def now_ms() -> int:
    return int(_time.time() * 1000)


def to_epoch_ms(value) -> int:
    """Accept an int/float ms epoch or a datetime (naive = UTC)."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    return int(value)


@dataclass(frozen=True)
class Entry:
    """One captured clipboard item, as stored."""

    id: str
    content: str
    content_type: str
    timestamp: int
    source_app: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "content_type": self.content_type,
            "timestamp": self.timestamp,
            "source_app": self.source_app,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


class _ClosedHandle:
    """Stands in for the connection after close(); any use fails fast."""

    in_transaction = False

    def __getattr__(self, name):
        raise StorageClosed()

    def __bool__(self):
        return False


_CLOSED = _ClosedHandle()


class HistoryStore:
    """Durable, searchable store of clipboard entries.

    Not safe for concurrent writers in other processes beyond what SQLite's
    WAL mode offers. Within a process every call is serialized on one lock,
    so the retention sweeper thread can share the store with the caller.
    """

    def __init__(
        self,
        db_path=None,
        *,
        full_text: Optional[bool] = None,
        config: Optional[ClipkeeperConfig] = None,
        clock: Optional[Callable[[], int]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or load_config()
        self.db_path = str(db_path if db_path is not None else self.config.db_path)
        self._log = logger or logging.getLogger("clipkeeper.history_store")
        self._clock = clock or now_ms
        self._lock = threading.RLock()
        want_full_text = self.config.full_text if full_text is None else full_text

        conn = open_connection(self.db_path)
        schema = SchemaManager(conn, full_text=want_full_text, logger=self._log)
        try:
            with translate_io_errors("Opening history database"):
                self._strategy: SearchStrategy = schema.open()
                self._schema_version = schema.current_version()
        except Exception:
            # MigrationFailure included: never hand out a half-migrated store
            conn.close()
            raise

        self._conn = conn
        row = conn.execute(f"SELECT MAX(created_at) FROM {ENTRIES_TABLE}").fetchone()
        self._last_created_at = row[0] or 0
        self._query_engine = QueryEngine(
            self, self._strategy,
            default_limit=self.config.search_limit,
            logger=self._log,
        )
        self._log.debug("Opened history store at %s (schema v%d, search=%s)",
                        self.db_path, self._schema_version, self._strategy.mode)

    # ------------------------------------------------------------------
    # Handle state
    # ------------------------------------------------------------------

    @property
    def search_mode(self) -> str:
        return self._strategy.mode

    @property
    def strategy(self) -> SearchStrategy:
        return self._strategy

    @property
    def schema_version(self) -> int:
        return self._schema_version

    def is_open(self) -> bool:
        return self._conn is not _CLOSED

    def close(self) -> None:
        """Close the database connection. Safe to call more than once."""
        with self._lock:
            if self._conn is _CLOSED:
                return
            conn, self._conn = self._conn, _CLOSED
            try:
                conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.Error as e:
                self._log.debug("WAL checkpoint on close failed: %s", e)
            conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._conn is _CLOSED:
            raise StorageClosed()

    def _run_sql(self, sql, params=()):
        return _retry_on_locked(self._conn.execute, sql, params)

    def _write(self, action: str, fn):
        """Run fn(conn) inside one IMMEDIATE transaction, with lock retry."""
        def attempt():
            with transaction(self._conn):
                return fn(self._conn)

        with self._lock, translate_io_errors(action):
            return _retry_on_locked(attempt)

    def _next_created_at(self) -> int:
        created = max(self._clock(), self._last_created_at)
        self._last_created_at = created
        return created

    @staticmethod
    def _row_to_entry(row: Sequence) -> Entry:
        entry_id, content, content_type, timestamp, source_app, metadata_json, created_at = row
        return Entry(
            id=entry_id,
            content=content,
            content_type=content_type,
            timestamp=timestamp,
            source_app=source_app,
            metadata=json.loads(metadata_json) if metadata_json else None,
            created_at=created_at,
        )

    def query_entries(
        self,
        conditions: Sequence[str] = (),
        params: Sequence = (),
        limit: Optional[int] = None,
    ) -> List[Entry]:
        """Select entries matching every condition, newest capture first.

        Conditions are SQL fragments over the alias ``e``. Ties on timestamp
        keep insertion order.
        """
        self._check_open()
        if limit is not None and limit <= 0:
            return []
        sql = f"SELECT {_ENTRY_COLUMNS} FROM {ENTRIES_TABLE} e"
        args = list(params)
        if conditions:
            sql += " WHERE " + " AND ".join(f"({c})" for c in conditions)
        sql += " ORDER BY e.timestamp DESC, e.seq ASC"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))
        with self._lock, translate_io_errors("Reading history"):
            rows = self._run_sql(sql, args).fetchall()
        return [self._row_to_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Core CRUD
    # ------------------------------------------------------------------

    def save(
        self,
        content: str,
        content_type: str,
        timestamp,
        source_app: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Persist a new entry and return its generated id.

        Content is stored as given; filtering and classification happen upstream.
        """
        entry_id = str(uuid.uuid4())
        ts = to_epoch_ms(timestamp)
        metadata_json = json.dumps(metadata) if metadata is not None else None

        def insert(conn):
            created_at = self._next_created_at()
            cur = conn.execute(
                f"""INSERT INTO {ENTRIES_TABLE}
                    (id, content, content_type, timestamp, source_app, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (entry_id, content, content_type, ts, source_app, metadata_json, created_at),
            )
            self._strategy.after_insert(conn, cur.lastrowid, content)

        self._write("Saving entry", insert)
        return entry_id

    def get_by_id(self, entry_id: str) -> Optional[Entry]:
        """Return the entry with ``entry_id``, or None."""
        with self._lock, translate_io_errors("Reading history"):
            row = self._run_sql(
                f"SELECT {_ENTRY_COLUMNS} FROM {ENTRIES_TABLE} e WHERE e.id = ?",
                (entry_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def get_recent(self, limit: int = 10) -> List[Entry]:
        """Most recent entries by capture time."""
        return self.query_entries(limit=limit)

    def get_recent_by_type(self, limit: int, content_type: str) -> List[Entry]:
        return self.query_entries(["e.content_type = ?"], [content_type], limit=limit)

    def get_since(self, since, limit: int = 100) -> List[Entry]:
        """Entries captured at or after ``since`` (ms epoch or datetime)."""
        return self.query_entries(["e.timestamp >= ?"], [to_epoch_ms(since)], limit=limit)

    def iter_entries(self, batch_size: int = 500) -> Iterator[Entry]:
        """Yield every entry in insertion order, one batch per query."""
        last_seq = 0
        while True:
            with self._lock, translate_io_errors("Reading history"):
                rows = self._run_sql(
                    f"""SELECT e.seq, {_ENTRY_COLUMNS} FROM {ENTRIES_TABLE} e
                        WHERE e.seq > ? ORDER BY e.seq LIMIT ?""",
                    (last_seq, batch_size),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield self._row_to_entry(row[1:])
            last_seq = rows[-1][0]

    def delete_by_id(self, entry_id: str) -> bool:
        """Delete one entry. Returns False when no such entry exists."""
        def delete(conn):
            self._strategy.before_delete(conn, "id = ?", (entry_id,))
            return conn.execute(f"DELETE FROM {ENTRIES_TABLE} WHERE id = ?", (entry_id,)).rowcount

        return self._write("Deleting entry", delete) > 0

    def delete_older_than(self, cutoff) -> int:
        """Delete entries with timestamp strictly below ``cutoff``. Returns count removed."""
        cutoff_ms = to_epoch_ms(cutoff)

        def delete(conn):
            self._strategy.before_delete(conn, "timestamp < ?", (cutoff_ms,))
            return conn.execute(
                f"DELETE FROM {ENTRIES_TABLE} WHERE timestamp < ?", (cutoff_ms,)
            ).rowcount

        return self._write("Deleting expired entries", delete)

    def clear(self) -> int:
        """Delete every entry. Returns count removed."""
        def delete_all(conn):
            count = conn.execute(f"SELECT COUNT(*) FROM {ENTRIES_TABLE}").fetchone()[0]
            self._strategy.before_clear(conn)
            conn.execute(f"DELETE FROM {ENTRIES_TABLE}")
            return count

        removed = self._write("Clearing history", delete_all)
        if removed:
            self._log.info("Cleared %d entries", removed)
        return removed

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_count(self) -> int:
        with self._lock, translate_io_errors("Reading history"):
            row = self._run_sql(f"SELECT COUNT(*) FROM {ENTRIES_TABLE}").fetchone()
        return row[0] if row else 0

    def get_count_by_type(self) -> Dict[str, int]:
        """Counts per content type; types with no entries are absent."""
        with self._lock, translate_io_errors("Reading history"):
            rows = self._run_sql(
                f"SELECT content_type, COUNT(*) FROM {ENTRIES_TABLE} GROUP BY content_type"
            ).fetchall()
        return {row[0]: row[1] for row in rows}

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str, limit: Optional[int] = None,
               content_type: Optional[str] = None, since=None) -> List[Entry]:
        """Keyword search; every whitespace-separated keyword must match."""
        self._check_open()
        return self._query_engine.search(query, limit=limit, content_type=content_type, since=since)

    def rebuild_index(self) -> None:
        """Rebuild the full-text index from the entries table (no-op in fallback mode)."""
        self._write("Rebuilding search index", self._strategy.rebuild)
