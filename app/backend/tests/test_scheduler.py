import os
import time
from datetime import datetime, timezone

import pytest

from errors import FetchExhaustedError, ReconciliationError
from ledger_models import YearlyDataset


def test_start_refresh_scheduler_starts_only_once_per_process(monkeypatch, backend_main, isolated_storage):
    starts = []

    class FakeThread:
        def __init__(self, target=None, daemon=None, name=None):
            self.target = target
            self.daemon = daemon
            self.name = name
            self._alive = False

        def start(self):
            self._alive = True
            starts.append(self.name)

        def is_alive(self):
            return self._alive

    monkeypatch.setattr(backend_main.threading, "Thread", FakeThread)
    monkeypatch.setattr(backend_main, "acquire_scheduler_process_lock", lambda: True)
    monkeypatch.setattr(backend_main, "_REFRESH_THREAD", None)

    started_first = backend_main.start_refresh_scheduler()
    started_second = backend_main.start_refresh_scheduler()

    assert started_first is True
    assert started_second is False
    assert starts == ["refresh-scheduler"]


def test_acquire_scheduler_process_lock_is_exclusive(backend_main, isolated_storage):
    lock_path = backend_main.get_scheduler_lock_path()
    lock_path.unlink(missing_ok=True)

    backend_main._SCHEDULER_LOCK_OWNED = False
    backend_main._SCHEDULER_LOCK_PATH = None

    first = backend_main.acquire_scheduler_process_lock()
    assert first is True
    assert lock_path.exists() is True

    # A second process sees the existing lock file.
    backend_main._SCHEDULER_LOCK_OWNED = False
    backend_main._SCHEDULER_LOCK_PATH = None
    second = backend_main.acquire_scheduler_process_lock()
    assert second is False

    lock_path.unlink(missing_ok=True)


def test_acquire_scheduler_process_lock_removes_stale_lock(backend_main, isolated_storage):
    lock_path = backend_main.get_scheduler_lock_path()
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text("stale", encoding="utf-8")
    stale_mtime = time.time() - (backend_main.SCHEDULER_LOCK_STALE_SECONDS + 10)
    os.utime(lock_path, (stale_mtime, stale_mtime))

    backend_main._SCHEDULER_LOCK_OWNED = False
    backend_main._SCHEDULER_LOCK_PATH = None

    acquired = backend_main.acquire_scheduler_process_lock()
    assert acquired is True
    assert lock_path.exists() is True

    backend_main.release_scheduler_process_lock()
    assert lock_path.exists() is False


def test_scheduled_refresh_checks_configured_year(monkeypatch, backend_main, isolated_storage, make_service):
    service = make_service(
        groups=[{"month": "2024-03", "hourly_values": [{"t": "2024-03-31T00:30:00Z", "v": 1000}]}],
        prices=[{"utcTimestamp": "2024-03-31T00:30:00Z", "value": 5.0}],
    )
    monkeypatch.setattr(backend_main, "get_service", lambda: service)

    assert backend_main.run_scheduled_refresh() == backend_main.REFRESH_INTERVAL_SECONDS
    assert [call[0] for call in service.consumption_provider.calls] == [2024]


class StopLoop(Exception):
    pass


def run_loop_for(monkeypatch, backend_main, outcomes, iterations):
    sleeps = []

    def fake_refresh():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) >= iterations:
            raise StopLoop()

    monkeypatch.setattr(backend_main, "run_scheduled_refresh", fake_refresh)
    monkeypatch.setattr(backend_main.time_module, "sleep", fake_sleep)

    with pytest.raises(StopLoop):
        backend_main.schedule_refresh_loop()
    return sleeps


def test_refresh_loop_retries_sooner_after_failure(monkeypatch, backend_main):
    failure = ReconciliationError(2024, FetchExhaustedError("prices down", attempts=5))

    sleeps = run_loop_for(
        monkeypatch,
        backend_main,
        [failure, backend_main.REFRESH_INTERVAL_SECONDS, OSError("disk full")],
        iterations=3,
    )

    assert sleeps == [
        backend_main.REFRESH_RETRY_SECONDS,
        backend_main.REFRESH_INTERVAL_SECONDS,
        backend_main.REFRESH_RETRY_SECONDS,
    ]


def test_refresh_loop_does_not_swallow_programming_errors(monkeypatch, backend_main):
    monkeypatch.setattr(backend_main.time_module, "sleep", lambda seconds: None)

    def broken_refresh():
        raise KeyError("settings")

    monkeypatch.setattr(backend_main, "run_scheduled_refresh", broken_refresh)

    with pytest.raises(KeyError):
        backend_main.schedule_refresh_loop()


def test_scheduled_refresh_serves_stale_cache_when_upstream_fails(monkeypatch, backend_main, isolated_storage, make_service, cache_store):
    stale = YearlyDataset(last_updated=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc), hourly=(), monthly=())
    cache_store.put(2024, stale)
    service = make_service(price_error=FetchExhaustedError("prices down", attempts=5))
    monkeypatch.setattr(backend_main, "get_service", lambda: service)

    assert backend_main.run_scheduled_refresh() == backend_main.REFRESH_INTERVAL_SECONDS
    assert len(service.price_provider.calls) == 1
