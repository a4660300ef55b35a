"""
clipkeeper Schema -- connection setup, versioned migrations, search mode selection.

Migrations are applied strictly in order, one transaction per step together
with the version bump. A failing step rolls back, leaves the version where it
was, and raises MigrationFailure.

    v1  entries table in its original layout (adopts pre-versioned stores)
    v2  rebuild with an explicit seq INTEGER PRIMARY KEY AUTOINCREMENT
    v3  store_meta + full-text capability probe
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Optional

from clipkeeper.crypto import secure_connect
from clipkeeper.errors import IndexSyncFailure, IOFailure, MigrationFailure, io_guidance
from clipkeeper.search_index import (
    ENTRIES_TABLE,
    MODE_FALLBACK,
    MODE_FULLTEXT,
    SYNC_EXPLICIT,
    SYNC_TRIGGERS,
    FallbackOnly,
    FullTextAvailable,
    SearchStrategy,
    drop_full_text,
    drop_sync_triggers,
    enable_full_text,
    full_text_table_exists,
    full_text_usable,
    triggers_installed,
)

logger = logging.getLogger("clipkeeper.schema")

SCHEMA_VERSION = 3
MEMORY_PATH = ":memory:"


def _py_lower(value):
    return value.lower() if isinstance(value, str) else value


def open_connection(path) -> sqlite3.Connection:
    """Open (creating if needed) the store database at ``path``, or ":memory:"."""
    path_str = str(path)
    try:
        if path_str == MEMORY_PATH:
            conn = sqlite3.connect(MEMORY_PATH, check_same_thread=False, isolation_level=None)
        else:
            db_path = Path(path_str)
            db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            conn = secure_connect(
                db_path,
                timeout=30,
                check_same_thread=False,
                isolation_level=None,
            )
    except PermissionError as e:
        raise IOFailure(f"Cannot create history database at {path_str}: {e}",
                        guidance=io_guidance("readonly database")) from e
    except OSError as e:
        raise IOFailure(f"Cannot create history database at {path_str}: {e}",
                        guidance=io_guidance("unable to open database")) from e
    except sqlite3.OperationalError as e:
        raise IOFailure(f"Cannot open history database at {path_str}: {e}",
                        guidance=io_guidance(str(e)) or io_guidance("unable to open database")) from e

    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.create_function("py_lower", 1, _py_lower, deterministic=True)
    except sqlite3.Error as e:
        conn.close()
        raise IOFailure(f"Cannot open history database at {path_str}: {e}",
                        guidance=io_guidance(str(e)) or io_guidance("unable to open database")) from e
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection, mode: str = "IMMEDIATE"):
    """Explicit BEGIN/COMMIT on an autocommit connection; ROLLBACK on any error."""
    conn.execute(f"BEGIN {mode}")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        # SQLite may already have rolled back (e.g. SQLITE_FULL)
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


@contextmanager
def savepoint(conn: sqlite3.Connection, name: str):
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute(f"ROLLBACK TO {name}")
            conn.execute(f"RELEASE {name}")
        raise
    conn.execute(f"RELEASE {name}")


def _create_indexes(conn: sqlite3.Connection) -> None:
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_timestamp ON {ENTRIES_TABLE}(timestamp DESC)")
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_content_type ON {ENTRIES_TABLE}(content_type)")
    conn.execute(f"CREATE INDEX IF NOT EXISTS idx_created_at ON {ENTRIES_TABLE}(created_at)")


def _set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT INTO store_meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )


def _get_meta(conn: sqlite3.Connection, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM store_meta WHERE key = ?", (key,)).fetchone()
    return row[0] if row else None


# ---------------------------------------------------------------------------
# Migration steps
# ---------------------------------------------------------------------------


def _migrate_v1(conn: sqlite3.Connection, log: logging.Logger) -> None:
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {ENTRIES_TABLE} (
            id TEXT PRIMARY KEY,
            content TEXT NOT NULL,
            content_type TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            source_app TEXT,
            metadata TEXT,
            created_at INTEGER NOT NULL
        )
    """)
    _create_indexes(conn)


def _migrate_v2(conn: sqlite3.Connection, log: logging.Logger) -> None:
    # Implicit rowids may be renumbered by VACUUM; the index needs a stable key.
    conn.execute(f"""
        CREATE TABLE {ENTRIES_TABLE}_v2 (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            content TEXT NOT NULL,
            content_type TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            source_app TEXT,
            metadata TEXT,
            created_at INTEGER NOT NULL
        )
    """)
    copied = conn.execute(f"""
        INSERT INTO {ENTRIES_TABLE}_v2
            (id, content, content_type, timestamp, source_app, metadata, created_at)
        SELECT id, content, content_type, timestamp, source_app, metadata, created_at
        FROM {ENTRIES_TABLE} ORDER BY created_at, rowid
    """).rowcount
    conn.execute(f"DROP TABLE {ENTRIES_TABLE}")
    conn.execute(f"ALTER TABLE {ENTRIES_TABLE}_v2 RENAME TO {ENTRIES_TABLE}")
    _create_indexes(conn)
    conn.execute(f"""
        CREATE TRIGGER IF NOT EXISTS {ENTRIES_TABLE}_immutable
        BEFORE UPDATE ON {ENTRIES_TABLE} BEGIN
            SELECT RAISE(ABORT, 'clipboard entries are immutable');
        END
    """)
    if copied:
        log.info("Rebuilt %s with stable row identity (%d rows)", ENTRIES_TABLE, copied)


def _create_meta_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS store_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
    """)


def _migrate_v3(conn: sqlite3.Connection, log: logging.Logger) -> None:
    _create_meta_table(conn)
    try:
        with savepoint(conn, "fts_probe"):
            strategy = enable_full_text(conn, log)
        _set_meta(conn, "search_mode", MODE_FULLTEXT)
        log.info("Full-text search enabled (sync=%s)", strategy.sync)
    except IndexSyncFailure as e:
        _set_meta(conn, "search_mode", MODE_FALLBACK)
        log.warning("%s -- using substring search", e)


MIGRATIONS: Dict[int, Callable[[sqlite3.Connection, logging.Logger], None]] = {
    1: _migrate_v1,
    2: _migrate_v2,
    3: _migrate_v3,
}


# ---------------------------------------------------------------------------
# SchemaManager
# ---------------------------------------------------------------------------


class SchemaManager:
    """Tracks the persisted schema version and picks the session's search strategy."""

    def __init__(self, conn: sqlite3.Connection, full_text: bool = True,
                 logger: Optional[logging.Logger] = None):
        self._conn = conn
        self._full_text = full_text
        self._log = logger or logging.getLogger("clipkeeper.schema")

    def current_version(self) -> int:
        """Return the persisted schema version, or 0 if unset."""
        self._conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        row = self._conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        return row[0] if row else 0

    def _write_version(self, version: int) -> None:
        updated = self._conn.execute("UPDATE schema_version SET version = ?", (version,)).rowcount
        if not updated:
            self._conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))

    def migrate_to(self, target: int = SCHEMA_VERSION) -> int:
        """Apply missing migration steps up to ``target``. Returns the resulting version."""
        if target not in MIGRATIONS and target != 0:
            raise MigrationFailure(f"Unknown schema version {target}", to_version=target)
        current = self.current_version()
        if target <= current:
            return current

        for version in range(current + 1, target + 1):
            step = MIGRATIONS[version]
            try:
                with transaction(self._conn):
                    step(self._conn, self._log)
                    self._write_version(version)
            except MigrationFailure:
                raise
            except Exception as e:
                raise MigrationFailure(
                    f"Schema migration v{version - 1} -> v{version} failed: {e}",
                    from_version=version - 1,
                    to_version=version,
                ) from e
            self._log.info("Schema migrated v%d -> v%d", version - 1, version)
        return target

    def select_strategy(self) -> SearchStrategy:
        """Decide, once per open, which search strategy this session uses."""
        with transaction(self._conn):
            _create_meta_table(self._conn)
            if not self._full_text:
                if full_text_table_exists(self._conn):
                    drop_full_text(self._conn)
                    self._log.info("Full-text search disabled by configuration; index dropped")
                _set_meta(self._conn, "search_mode", MODE_FALLBACK)
                return FallbackOnly()

            recorded = _get_meta(self._conn, "search_mode")
            if recorded == MODE_FULLTEXT:
                if full_text_usable(self._conn):
                    sync = SYNC_TRIGGERS if triggers_installed(self._conn) else SYNC_EXPLICIT
                    return FullTextAvailable(sync=sync)
                # Store was indexed by an engine with FTS5; this one lacks it
                drop_sync_triggers(self._conn)
                _set_meta(self._conn, "search_mode", MODE_FALLBACK)
                self._log.warning("Full-text index unreadable by this SQLite build -- using substring search")
                return FallbackOnly()

            try:
                with savepoint(self._conn, "fts_probe"):
                    if full_text_table_exists(self._conn):
                        drop_full_text(self._conn)
                    strategy = enable_full_text(self._conn, self._log)
            except IndexSyncFailure as e:
                self._log.warning("%s -- using substring search", e)
                _set_meta(self._conn, "search_mode", MODE_FALLBACK)
                return FallbackOnly()
            _set_meta(self._conn, "search_mode", MODE_FULLTEXT)
            self._log.info("Full-text search enabled; index rebuilt from existing entries")
            return strategy

    def open(self, target: int = SCHEMA_VERSION) -> SearchStrategy:
        """Migrate to ``target`` and return the session strategy."""
        self.migrate_to(target)
        return self.select_strategy()
