"""Keyword search over stored entries.

The engine parses the query, asks the session's search strategy for match
predicates, adds the type/time filters and hands the composed query to the
store. It never knows which mode it is running in beyond the strategy it was
given.
"""

import logging
import sqlite3
from typing import TYPE_CHECKING, List, Optional

from clipkeeper.errors import IOFailure
from clipkeeper.search_index import MODE_FULLTEXT, FallbackOnly, SearchStrategy

if TYPE_CHECKING:
    from clipkeeper.history_store import Entry, HistoryStore


def parse_query(query) -> List[str]:
    """Split on whitespace, drop empty keywords, lowercase."""
    if not query or not isinstance(query, str):
        return []
    return [word.lower() for word in query.split()]


class QueryEngine:
    def __init__(self, store: "HistoryStore", strategy: SearchStrategy,
                 default_limit: int = 10, logger: Optional[logging.Logger] = None):
        self._store = store
        self._strategy = strategy
        self._fallback = FallbackOnly()
        self.default_limit = default_limit
        self._log = logger or logging.getLogger("clipkeeper.search")

    def search(self, query: str, limit: Optional[int] = None,
               content_type: Optional[str] = None, since=None) -> List["Entry"]:
        """Entries matching every keyword, newest capture first.

        ``since`` (ms epoch or datetime) keeps entries captured at or after it.
        """
        keywords = parse_query(query)
        if not keywords:
            return []
        if limit is None:
            limit = self.default_limit

        filters, filter_params = [], []
        if content_type is not None:
            filters.append("e.content_type = ?")
            filter_params.append(content_type)
        if since is not None:
            from clipkeeper.history_store import to_epoch_ms

            filters.append("e.timestamp >= ?")
            filter_params.append(to_epoch_ms(since))

        conditions, params = self._strategy.match_conditions(keywords)
        try:
            results = self._store.query_entries(
                conditions + filters, params + filter_params, limit=limit)
        except IOFailure:
            raise
        except sqlite3.OperationalError as e:
            if self._strategy.mode != MODE_FULLTEXT:
                raise
            results = self._recover(e, keywords, filters, filter_params, limit)

        self._log.debug("search %r (%s): %d results", keywords, self._strategy.mode, len(results))
        return results

    def _recover(self, error, keywords, filters, filter_params, limit):
        """Rebuild a damaged FTS index and retry; answer by substring as a last resort."""
        self._log.warning("FTS5 search failed: %s -- attempting index rebuild", error)
        conditions, params = self._strategy.match_conditions(keywords)
        try:
            self._store.rebuild_index()
            self._log.info("FTS5 index rebuilt successfully")
            return self._store.query_entries(
                conditions + filters, params + filter_params, limit=limit)
        except IOFailure:
            raise
        except sqlite3.OperationalError as rebuild_err:
            self._log.warning("FTS5 rebuild also failed: %s -- falling back to substring match",
                              rebuild_err)
        conditions, params = self._fallback.match_conditions(keywords)
        return self._store.query_entries(
            conditions + filters, params + filter_params, limit=limit)
