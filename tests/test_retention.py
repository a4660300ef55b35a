"""Tests for clipkeeper.retention -- scheduled deletion of expired entries."""
import logging
import threading
import time

import pytest

from clipkeeper.retention import DAY_MS, RetentionSweeper

NOW = 1_000 * DAY_MS


def _fixed_clock():
    return NOW


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def sweeper_factory(store, config):
    created = []

    def make(**kwargs):
        kwargs.setdefault("clock", _fixed_clock)
        kwargs.setdefault("interval", 3600)
        sweeper = RetentionSweeper(store, config, **kwargs)
        created.append(sweeper)
        return sweeper

    yield make
    for sweeper in created:
        sweeper.stop()


class TestCleanup:

    def test_seven_day_retention(self, store, sweeper_factory):
        store.save(content="8 days old", content_type="text", timestamp=NOW - 8 * DAY_MS)
        recent = store.save(content="6 days old", content_type="text", timestamp=NOW - 6 * DAY_MS)
        sweeper = sweeper_factory(retention_days=7)
        assert sweeper.cleanup() == 1
        assert [e.id for e in store.get_recent()] == [recent]
        assert sweeper.last_sweep.deleted == 1
        assert sweeper.last_sweep.cutoff == NOW - 7 * DAY_MS

    def test_zero_retention_keeps_everything(self, store, sweeper_factory):
        store.save(content="ancient", content_type="text", timestamp=1)
        sweeper = sweeper_factory(retention_days=0)
        assert sweeper.cleanup() == 0
        assert store.get_count() == 1
        assert sweeper.last_sweep is None

    def test_negative_retention_ignored(self, store, sweeper_factory, caplog):
        store.save(content="ancient", content_type="text", timestamp=1)
        sweeper = sweeper_factory(retention_days=-3)
        assert sweeper.cleanup() == 0
        assert store.get_count() == 1
        assert "negative retention" in caplog.text

    def test_retention_from_config(self, store, config, sweeper_factory):
        config.retention_days = 2
        store.save(content="3 days", content_type="text", timestamp=NOW - 3 * DAY_MS)
        store.save(content="1 day", content_type="text", timestamp=NOW - DAY_MS)
        sweeper = sweeper_factory()
        assert sweeper.cleanup() == 1

    def test_config_change_applies_on_next_sweep(self, store, config, sweeper_factory):
        config.retention_days = 0
        store.save(content="old", content_type="text", timestamp=NOW - 10 * DAY_MS)
        sweeper = sweeper_factory()
        assert sweeper.cleanup() == 0
        config.retention_days = 5
        assert sweeper.cleanup() == 1

    def test_nothing_expired(self, store, sweeper_factory):
        store.save(content="fresh", content_type="text", timestamp=NOW)
        assert sweeper_factory(retention_days=1).cleanup() == 0

    def test_storage_error_returns_zero(self, store, sweeper_factory, caplog):
        store.save(content="old", content_type="text", timestamp=1)
        sweeper = sweeper_factory(retention_days=1)
        store.close()
        caplog.set_level(logging.ERROR)
        assert sweeper.cleanup() == 0
        assert "Retention cleanup failed" in caplog.text

    def test_injected_logger(self, store, config):
        log = logging.getLogger("test.retention.injected")
        sweeper = RetentionSweeper(store, config, retention_days=-1, clock=_fixed_clock, logger=log)
        assert sweeper._log is log

    def test_sweep_in_progress_skips(self, store, sweeper_factory):
        store.save(content="old", content_type="text", timestamp=1)
        sweeper = sweeper_factory(retention_days=1)
        sweeper._sweep_lock.acquire()
        try:
            assert sweeper.cleanup() == 0
            assert store.get_count() == 1
        finally:
            sweeper._sweep_lock.release()
        assert sweeper.cleanup() == 1

    def test_concurrent_cleanups_never_overlap(self, store, sweeper_factory, monkeypatch):
        sweeper = sweeper_factory(retention_days=1)
        active = []
        overlaps = []
        real_delete = store.delete_older_than

        def slow_delete(cutoff):
            active.append(1)
            if len(active) > 1:
                overlaps.append(len(active))
            time.sleep(0.05)
            try:
                return real_delete(cutoff)
            finally:
                active.pop()

        monkeypatch.setattr(store, "delete_older_than", slow_delete)
        threads = [threading.Thread(target=sweeper.cleanup) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []


class TestScheduling:

    def test_start_sweeps_immediately(self, store, sweeper_factory):
        store.save(content="old", content_type="text", timestamp=1)
        sweeper = sweeper_factory(retention_days=1)
        sweeper.start()
        assert store.get_count() == 0
        assert sweeper.is_running

    def test_periodic_sweeps(self, store, sweeper_factory):
        sweeper = sweeper_factory(retention_days=1, interval=0.02)
        sweeper.start()
        store.save(content="late arrival", content_type="text", timestamp=1)
        assert _wait_for(lambda: store.get_count() == 0)

    def test_start_is_idempotent(self, store, sweeper_factory):
        sweeper = sweeper_factory(retention_days=1)
        sweeper.start()
        thread = sweeper._thread
        sweeper.start()
        assert sweeper._thread is thread

    def test_stop_is_idempotent(self, sweeper_factory):
        sweeper = sweeper_factory(retention_days=1)
        sweeper.stop()
        sweeper.start()
        sweeper.stop()
        sweeper.stop()
        assert not sweeper.is_running

    def test_stop_prevents_further_sweeps(self, store, sweeper_factory):
        sweeper = sweeper_factory(retention_days=1, interval=0.02)
        sweeper.start()
        thread = sweeper._thread
        sweeper.stop()
        thread.join(timeout=2)
        assert not thread.is_alive()
        store.save(content="after stop", content_type="text", timestamp=1)
        time.sleep(0.1)
        assert store.get_count() == 1

    def test_restart_after_stop(self, store, sweeper_factory):
        sweeper = sweeper_factory(retention_days=1, interval=0.02)
        sweeper.start()
        sweeper.stop()
        store.save(content="old", content_type="text", timestamp=1)
        sweeper.start()
        assert store.get_count() == 0

    def test_thread_is_daemon(self, sweeper_factory):
        sweeper = sweeper_factory(retention_days=1)
        sweeper.start()
        assert sweeper._thread.daemon
