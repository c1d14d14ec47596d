import logging
import pathlib
import sys
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest


BACKEND_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import app_service  # noqa: E402
from cache import FileBlobStore, YearCacheStore  # noqa: E402
from services.credentials import Credential, StaticCredentialProvider  # noqa: E402


HELSINKI = ZoneInfo("Europe/Helsinki")


@pytest.fixture
def backend_main():
    return app_service


@pytest.fixture
def isolated_storage(monkeypatch, tmp_path, backend_main):
    storage_dir = tmp_path / "storage"
    cache_dir = storage_dir / "data-cache"

    monkeypatch.setattr(backend_main, "STORAGE_DIR", storage_dir)
    monkeypatch.setattr(backend_main, "CACHE_DIR", cache_dir)
    monkeypatch.setattr(backend_main, "CONFIG_FILE", storage_dir / "config.yaml")
    monkeypatch.setattr(backend_main, "OPTIONS_FILE", storage_dir / "options.json")
    monkeypatch.setattr(backend_main, "SCHEDULER_LOCK_FILE", storage_dir / "refresh-scheduler.lock")
    monkeypatch.setattr(backend_main, "_SERVICE", None)

    return {
        "storage_dir": storage_dir,
        "cache_dir": cache_dir,
    }


@pytest.fixture
def cache_store(tmp_path):
    return YearCacheStore(FileBlobStore(tmp_path / "data-cache"), HELSINKI)


class FakeConsumptionProvider:
    def __init__(self, groups=None, error=None):
        self.groups = groups or []
        self.error = error
        self.calls = []

    def fetch_consumption_readings(self, year, credential):
        self.calls.append((year, credential))
        if self.error is not None:
            raise self.error
        return self.groups

    def check_credentials(self, credential):
        return credential.secret == "good"


class FakePriceProvider:
    def __init__(self, entries=None, error=None):
        self.entries = entries or []
        self.error = error
        self.calls = []

    def fetch_price_range(self, start_date, end_date):
        self.calls.append((start_date, end_date))
        if self.error is not None:
            raise self.error
        return self.entries

    def fetch_year_prices(self, year):
        return self.fetch_price_range(date(year, 1, 1), date(year, 12, 31))

    def fetch_day_prices(self, day):
        return self.fetch_price_range(day, day)


class FixedClock:
    def __init__(self, now):
        self.value = now

    def __call__(self):
        return self.value


@pytest.fixture
def make_service(cache_store):
    services = []

    def _make(groups=None, prices=None, consumption_error=None, price_error=None, now=None, year=2024, margin=0.0):
        settings = app_service.LedgerSettings(year=year, spot_margin=margin, tzinfo=HELSINKI)
        service = app_service.LedgerService(
            settings=settings,
            consumption_provider=FakeConsumptionProvider(groups, consumption_error),
            price_provider=FakePriceProvider(prices, price_error),
            credential_provider=StaticCredentialProvider(Credential("user@example.com", "good")),
            cache_store=cache_store,
            logger=logging.getLogger("test.ledger"),
            now=FixedClock(now or datetime(2024, 6, 2, 9, 0, tzinfo=timezone.utc)),
        )
        services.append(service)
        return service

    yield _make

    for service in services:
        service.shutdown()
