"""clipkeeper test configuration."""
import os
import sqlite3
import sys
import pytest
from pathlib import Path

# Ensure clipkeeper package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


def _fts5_available() -> bool:
    conn = sqlite3.connect(":memory:")
    try:
        conn.execute("CREATE VIRTUAL TABLE probe USING fts5(content)")
        return True
    except sqlite3.OperationalError:
        return False
    finally:
        conn.close()


FTS5_AVAILABLE = _fts5_available()

requires_fts5 = pytest.mark.skipif(not FTS5_AVAILABLE, reason="SQLite built without FTS5")


@pytest.fixture
def tmp_clipkeeper_dir(tmp_path):
    """Create a temporary CLIPKEEPER_HOME for testing."""
    home = tmp_path / ".clipkeeper"
    home.mkdir()
    old_home = os.environ.get("CLIPKEEPER_HOME")
    old_encrypt = os.environ.get("CLIPKEEPER_ENCRYPT")
    os.environ["CLIPKEEPER_HOME"] = str(home)
    # Default: disable encryption in tests for deterministic output
    os.environ["CLIPKEEPER_ENCRYPT"] = "0"
    yield home
    for name, old in (("CLIPKEEPER_HOME", old_home), ("CLIPKEEPER_ENCRYPT", old_encrypt)):
        if old is not None:
            os.environ[name] = old
        else:
            os.environ.pop(name, None)
    from clipkeeper.crypto import reset_crypto_state
    reset_crypto_state()


@pytest.fixture
def config(tmp_clipkeeper_dir):
    from clipkeeper.config import ClipkeeperConfig
    return ClipkeeperConfig(home=tmp_clipkeeper_dir)


@pytest.fixture
def store(tmp_clipkeeper_dir, config):
    """Create a fresh file-backed HistoryStore for testing."""
    from clipkeeper.history_store import HistoryStore
    s = HistoryStore(tmp_clipkeeper_dir / "test.db", config=config)
    yield s
    s.close()


@pytest.fixture
def memory_store(config):
    """Ephemeral in-memory store."""
    from clipkeeper.history_store import HistoryStore
    s = HistoryStore(":memory:", config=config)
    yield s
    s.close()


@pytest.fixture(params=["fulltext", "fallback"])
def any_mode_store(request, tmp_clipkeeper_dir, config):
    """Run a test against both search modes."""
    if request.param == "fulltext" and not FTS5_AVAILABLE:
        pytest.skip("SQLite built without FTS5")
    from clipkeeper.history_store import HistoryStore
    s = HistoryStore(
        tmp_clipkeeper_dir / f"{request.param}.db",
        config=config,
        full_text=request.param == "fulltext",
    )
    assert s.search_mode == request.param
    yield s
    s.close()


class ConnectionWrapper:
    """Delegates to a real connection, failing the first statement that starts with ``fail_on``."""

    def __init__(self, conn, fail_on, error):
        self._conn = conn
        self._fail_on = fail_on
        self._error = error
        self.closed = False

    def execute(self, sql, *args):
        if self._fail_on is not None and sql.strip().startswith(self._fail_on):
            self._fail_on = None
            raise sqlite3.OperationalError(self._error)
        return self._conn.execute(sql, *args)

    def close(self):
        self.closed = True
        self._conn.close()

    def __getattr__(self, name):
        return getattr(self._conn, name)
