"""
clipkeeper Retention -- timer-driven deletion of expired entries.

start() sweeps once on the caller's thread, then a daemon thread sweeps every
``interval`` seconds until stop(). A sweep never raises: storage errors are
logged and reported as 0 deleted, and the next tick runs as usual. At most one
sweep runs at a time per sweeper; a tick that finds a sweep in flight is
skipped.
"""

import logging
import threading
import time as _time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from clipkeeper.config import ClipkeeperConfig, load_config

if TYPE_CHECKING:
    from clipkeeper.history_store import HistoryStore

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class SweepResult:
    deleted: int
    cutoff: Optional[int]
    at: int


def _now_ms() -> int:
    return int(_time.time() * 1000)


class RetentionSweeper:
    """Deletes entries older than the configured retention period."""

    def __init__(
        self,
        store: "HistoryStore",
        config: Optional[ClipkeeperConfig] = None,
        *,
        retention_days: Optional[int] = None,
        interval: Optional[float] = None,
        clock: Optional[Callable[[], int]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.config = config or load_config()
        self.retention_days = retention_days
        self.interval = interval if interval is not None else self.config.sweep_interval
        self._clock = clock or _now_ms
        self._log = logger or logging.getLogger("clipkeeper.retention")

        self._state_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self.last_sweep: Optional[SweepResult] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None

    def _retention_days(self) -> int:
        # Read on every tick so a config change applies without a restart
        if self.retention_days is not None:
            return self.retention_days
        return self.config.retention_days

    def start(self) -> None:
        """Sweep now, then keep sweeping on the interval. No-op if already running."""
        with self._state_lock:
            if self._thread is not None:
                return
            self.cleanup()
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run, args=(stop_event,), daemon=True, name="clipkeeper-retention"
            )
            self._stop_event = stop_event
            self._thread = thread
            thread.start()
            self._log.info("Retention sweeper started (every %.0fs, %d day retention)",
                           self.interval, self._retention_days())

    def stop(self) -> None:
        """Cancel future sweeps. A sweep already running is left to finish."""
        with self._state_lock:
            if self._thread is None:
                return
            self._stop_event.set()
            self._stop_event = None
            self._thread = None
            self._log.info("Retention sweeper stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            self.cleanup()

    def cleanup(self) -> int:
        """Run one sweep. Returns the number of entries deleted (0 on any error)."""
        if not self._sweep_lock.acquire(blocking=False):
            self._log.debug("Retention sweep already in progress, skipping tick")
            return 0
        try:
            return self._sweep()
        finally:
            self._sweep_lock.release()

    def _sweep(self) -> int:
        try:
            days = self._retention_days()
            if days == 0:
                return 0
            if days < 0:
                self._log.warning("Ignoring negative retention period (%d days)", days)
                return 0
            now = self._clock()
            cutoff = now - days * DAY_MS
            deleted = self.store.delete_older_than(cutoff)
            self.last_sweep = SweepResult(deleted=deleted, cutoff=cutoff, at=now)
            if deleted > 0:
                self._log.info("Retention cleanup: deleted %d entries older than %d days",
                               deleted, days)
            return deleted
        except Exception as e:
            self._log.error("Retention cleanup failed: %s", e, exc_info=True)
            return 0
