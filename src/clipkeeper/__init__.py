"""clipkeeper -- searchable, self-expiring clipboard history store.

Direct Python API::

    from clipkeeper import HistoryStore, RetentionSweeper
    store = HistoryStore("/tmp/history.db")
    store.save(content="git rebase -i HEAD~3", content_type="code", timestamp=now_ms)
    results = store.search("rebase")
    RetentionSweeper(store).start()
"""

__version__ = "0.3.0"

from clipkeeper.backup import export_entries, import_entries
from clipkeeper.config import ClipkeeperConfig, load_config
from clipkeeper.errors import (
    ClipkeeperError,
    IndexSyncFailure,
    IOFailure,
    MigrationFailure,
    StorageClosed,
)
from clipkeeper.history_store import Entry, HistoryStore
from clipkeeper.retention import RetentionSweeper, SweepResult
from clipkeeper.schema import SCHEMA_VERSION, SchemaManager, open_connection
from clipkeeper.search import QueryEngine, parse_query
from clipkeeper.search_index import FallbackOnly, FullTextAvailable

__all__ = [
    # Store
    "HistoryStore",
    "Entry",
    # Search
    "QueryEngine",
    "parse_query",
    "FullTextAvailable",
    "FallbackOnly",
    # Schema
    "SchemaManager",
    "open_connection",
    "SCHEMA_VERSION",
    # Retention
    "RetentionSweeper",
    "SweepResult",
    # Config
    "ClipkeeperConfig",
    "load_config",
    # Import/export
    "export_entries",
    "import_entries",
    # Errors
    "ClipkeeperError",
    "StorageClosed",
    "MigrationFailure",
    "IndexSyncFailure",
    "IOFailure",
    # Meta
    "__version__",
]
