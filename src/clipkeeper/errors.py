"""
clipkeeper error taxonomy.

StorageClosed and MigrationFailure always reach the caller. IndexSyncFailure
never leaves the schema layer: it is caught there and downgraded to substring
search with a logged warning. IOFailure wraps the SQLite conditions a user can
act on (disk full, permissions, lock contention) and still is-a
sqlite3.OperationalError, so code that handles raw SQLite errors keeps working.
"""

import sqlite3
from contextlib import contextmanager
from typing import Optional

DATABASE_LOCKED = "Database is busy. Please try again in a moment."
LOW_DISK_SPACE = "Low disk space. Consider clearing old entries with: clipkeeper clear"
READ_ONLY = "The history database is not writable. Check file permissions on the data directory."
CANNOT_OPEN = "The history database could not be opened. Check that the data directory exists and is accessible."
DISK_IO = "The disk reported an I/O error. Check the drive and consider restoring from a backup."

# (substring of the SQLite message, guidance)
_IO_CONDITIONS = (
    ("database is locked", DATABASE_LOCKED),
    ("database or disk is full", LOW_DISK_SPACE),
    ("readonly database", READ_ONLY),
    ("unable to open database", CANNOT_OPEN),
    ("disk i/o error", DISK_IO),
)


class ClipkeeperError(Exception):
    """Base class for all clipkeeper errors."""


class StorageClosed(ClipkeeperError):
    """Operation attempted on a store whose handle has been closed."""

    def __init__(self, message: str = "History store is closed"):
        super().__init__(message)


class MigrationFailure(ClipkeeperError):
    """A schema migration step failed; the store must not be used."""

    def __init__(self, message: str, from_version: int = 0, to_version: int = 0):
        super().__init__(message)
        self.from_version = from_version
        self.to_version = to_version


class IndexSyncFailure(ClipkeeperError):
    """The full-text index or its sync hooks could not be created."""


class IOFailure(ClipkeeperError, sqlite3.OperationalError):
    """Storage-level I/O problem with an actionable next step attached."""

    def __init__(self, message: str, guidance: Optional[str] = None):
        super().__init__(message)
        self.guidance = guidance

    def __str__(self) -> str:
        base = super().__str__()
        if self.guidance:
            return f"{base}\n{self.guidance}"
        return base


def io_guidance(message: str) -> Optional[str]:
    """Return guidance for a SQLite error message, or None if it is not an I/O condition."""
    lowered = message.lower()
    for needle, guidance in _IO_CONDITIONS:
        if needle in lowered:
            return guidance
    return None


@contextmanager
def translate_io_errors(action: str):
    """Re-raise actionable sqlite3.OperationalError as IOFailure; everything else unchanged."""
    try:
        yield
    except IOFailure:
        raise
    except sqlite3.OperationalError as e:
        guidance = io_guidance(str(e))
        if guidance is None:
            raise
        raise IOFailure(f"{action} failed: {e}", guidance=guidance) from e
