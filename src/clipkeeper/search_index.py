"""
Search index strategies.

The strategy is chosen once when a store is opened (see schema.SchemaManager)
and injected into both the store's write path and the query engine:

    FullTextAvailable -- FTS5 external-content index keyed by entries.seq.
                         Synced by triggers, or by explicit writes inside the
                         store's own transaction when triggers can't be created.
    FallbackOnly      -- no secondary index; per-token substring tests.

Entries are immutable, so neither strategy has an update path.
"""

import logging
import re
import sqlite3
from typing import List, Sequence, Tuple

from clipkeeper.errors import IndexSyncFailure

logger = logging.getLogger("clipkeeper.search_index")

ENTRIES_TABLE = "clipboard_entries"
FTS_TABLE = "clipboard_entries_fts"
INSERT_TRIGGER = "clipboard_entries_ai"
DELETE_TRIGGER = "clipboard_entries_ad"

MODE_FULLTEXT = "fulltext"
MODE_FALLBACK = "fallback"

SYNC_TRIGGERS = "triggers"
SYNC_EXPLICIT = "explicit"

# unicode61 splits on "_" as well as on punctuation
_WORD_RE = re.compile(r"[^\W_]", re.UNICODE)


def _substring_condition(token: str) -> Tuple[str, str]:
    # py_lower is registered on every connection by schema.open_connection
    return "instr(py_lower(e.content), ?) > 0", token


class SearchStrategy:
    """Interface shared by both search modes."""

    mode = ""

    def match_conditions(self, tokens: Sequence[str]) -> Tuple[List[str], List]:
        """SQL predicates (over alias ``e``) that AND-match every token."""
        raise NotImplementedError

    # Write hooks, called inside the store's transaction.
    def after_insert(self, conn: sqlite3.Connection, seq: int, content: str) -> None:
        pass

    def before_delete(self, conn: sqlite3.Connection, where: str, params: Sequence) -> None:
        pass

    def before_clear(self, conn: sqlite3.Connection) -> None:
        pass

    def rebuild(self, conn: sqlite3.Connection) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class FallbackOnly(SearchStrategy):
    """Case-insensitive substring matching against the content column."""

    mode = MODE_FALLBACK

    def match_conditions(self, tokens):
        conditions, params = [], []
        for token in tokens:
            cond, param = _substring_condition(token)
            conditions.append(cond)
            params.append(param)
        return conditions, params


class FullTextAvailable(SearchStrategy):
    """FTS5 prefix-term matching, index kept in lockstep with the entries table."""

    mode = MODE_FULLTEXT

    def __init__(self, sync: str = SYNC_TRIGGERS):
        if sync not in (SYNC_TRIGGERS, SYNC_EXPLICIT):
            raise ValueError(f"Unknown sync mode: {sync}")
        self.sync = sync

    def __repr__(self) -> str:
        return f"FullTextAvailable(sync={self.sync!r})"

    @staticmethod
    def fts_expression(tokens: Sequence[str]) -> str:
        """Build an FTS5 AND expression of quoted prefix terms."""
        terms = []
        for token in tokens:
            quoted = token.replace('"', '""')
            terms.append(f'"{quoted}"*')
        return " AND ".join(terms)

    def match_conditions(self, tokens):
        indexable = [t for t in tokens if _WORD_RE.search(t)]
        conditions, params = [], []
        if indexable:
            conditions.append(
                f"e.seq IN (SELECT rowid FROM {FTS_TABLE} WHERE {FTS_TABLE} MATCH ?)"
            )
            params.append(self.fts_expression(indexable))
        # Pure punctuation tokens produce no FTS terms; test them directly
        for token in tokens:
            if token not in indexable:
                cond, param = _substring_condition(token)
                conditions.append(cond)
                params.append(param)
        return conditions, params

    def after_insert(self, conn, seq, content):
        if self.sync == SYNC_EXPLICIT:
            conn.execute(
                f"INSERT INTO {FTS_TABLE}(rowid, content) VALUES (?, ?)",
                (seq, content),
            )

    def before_delete(self, conn, where, params):
        if self.sync == SYNC_EXPLICIT:
            conn.execute(
                f"""INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, content)
                    SELECT 'delete', seq, content FROM {ENTRIES_TABLE} WHERE {where}""",
                tuple(params),
            )

    def before_clear(self, conn):
        if self.sync == SYNC_EXPLICIT:
            conn.execute(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES('delete-all')")

    def rebuild(self, conn):
        conn.execute(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES('rebuild')")


# ---------------------------------------------------------------------------
# Capability probe and sync hooks
# ---------------------------------------------------------------------------


def probe_full_text(conn: sqlite3.Connection) -> None:
    """Create the FTS5 index table. Raises IndexSyncFailure when FTS5 is missing."""
    try:
        conn.execute(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE}
            USING fts5(content, content='{ENTRIES_TABLE}', content_rowid='seq',
                       tokenize='unicode61')
        """)
    except sqlite3.Error as e:
        raise IndexSyncFailure(f"FTS5 not available: {e}") from e


def install_sync_triggers(conn: sqlite3.Connection) -> None:
    """Create the insert/delete triggers that mirror rows into the index."""
    try:
        conn.execute(f"""
            CREATE TRIGGER IF NOT EXISTS {INSERT_TRIGGER} AFTER INSERT ON {ENTRIES_TABLE} BEGIN
                INSERT INTO {FTS_TABLE}(rowid, content) VALUES (new.seq, new.content);
            END
        """)
        conn.execute(f"""
            CREATE TRIGGER IF NOT EXISTS {DELETE_TRIGGER} AFTER DELETE ON {ENTRIES_TABLE} BEGIN
                INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, content)
                VALUES ('delete', old.seq, old.content);
            END
        """)
    except sqlite3.Error as e:
        raise IndexSyncFailure(f"FTS5 sync trigger setup failed: {e}") from e


def drop_sync_triggers(conn: sqlite3.Connection) -> None:
    conn.execute(f"DROP TRIGGER IF EXISTS {INSERT_TRIGGER}")
    conn.execute(f"DROP TRIGGER IF EXISTS {DELETE_TRIGGER}")


def drop_full_text(conn: sqlite3.Connection) -> None:
    """Remove the index and its triggers. Triggers go first so writes never hit a missing table."""
    drop_sync_triggers(conn)
    try:
        conn.execute(f"DROP TABLE IF EXISTS {FTS_TABLE}")
    except sqlite3.OperationalError as e:
        # Dropping an fts5 table needs the fts5 module; leave the orphan behind
        logger.debug("Could not drop %s: %s", FTS_TABLE, e)


def full_text_table_exists(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (FTS_TABLE,)
    ).fetchone()
    return row is not None


def full_text_usable(conn: sqlite3.Connection) -> bool:
    """True when the index table exists and this engine can read it."""
    if not full_text_table_exists(conn):
        return False
    try:
        conn.execute(f"SELECT rowid FROM {FTS_TABLE} LIMIT 0").fetchall()
        return True
    except sqlite3.OperationalError as e:
        logger.debug("FTS5 index present but unreadable: %s", e)
        return False


def triggers_installed(conn: sqlite3.Connection) -> bool:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'trigger' AND name IN (?, ?)",
        (INSERT_TRIGGER, DELETE_TRIGGER),
    ).fetchall()
    return len(rows) == 2


def enable_full_text(conn: sqlite3.Connection, log: logging.Logger = logger) -> FullTextAvailable:
    """Create the index, wire up sync, and (re)build it from every existing row.

    Must run inside a transaction or savepoint owned by the caller, so a
    failure part-way leaves nothing behind. Raises IndexSyncFailure when FTS5
    itself is unavailable. When only the triggers fail, the index is kept and
    the returned strategy writes the index explicitly.
    """
    probe_full_text(conn)
    sync = SYNC_TRIGGERS
    try:
        install_sync_triggers(conn)
    except IndexSyncFailure as e:
        log.warning("%s -- keeping full-text index with explicit dual writes", e)
        drop_sync_triggers(conn)
        sync = SYNC_EXPLICIT
    strategy = FullTextAvailable(sync=sync)
    try:
        strategy.rebuild(conn)
    except sqlite3.Error as e:
        raise IndexSyncFailure(f"FTS5 index build failed: {e}") from e
    return strategy
