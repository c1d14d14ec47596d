from billing import apply_margin, price_with_margin
from cache import FileBlobStore, YearCacheStore
from config_models import AppConfigModel
from container import build_container
from errors import LedgerError, PriceUnavailableError, ReconciliationError
from fetch_client import FetchClient
from ledger_models import CurrentPrice, YearlyDataset
from pricing import build_price_index
from reconcile import reconcile
from services.credentials import ConfigCredentialProvider
from services.elenia_service import EleniaService
from services.vattenfall_service import VATTENFALL_VAT_PERCENT, VattenfallService
from timestamps import get_local_tz, hour_key
from pydantic import ValidationError
from requests import RequestException
import yaml
import os
import json
import threading
import atexit
import time as time_module
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
import logging

_CONTAINER = build_container()
CONFIG_FILE = _CONTAINER.config.config_file
STORAGE_DIR = _CONTAINER.config.storage_dir
CACHE_DIR = _CONTAINER.config.cache_dir
OPTIONS_FILE = _CONTAINER.config.options_file
SCHEDULER_LOCK_FILE = _CONTAINER.config.scheduler_lock_file
APP_VERSION = os.getenv("SAHKOAPP_VERSION", os.getenv("APP_VERSION", "dev"))
PASSWORD_MASK = "********"
REFRESH_INTERVAL_SECONDS = 3600
REFRESH_RETRY_SECONDS = 300
SCHEDULER_LOCK_STALE_SECONDS = 48 * 3600
REFRESH_ERRORS = (LedgerError, RequestException, OSError, ValueError, TypeError)
logger = logging.getLogger("uvicorn.error")

_SERVICE = None
_SERVICE_GUARD = threading.Lock()
_REFRESH_THREAD = None
_REFRESH_THREAD_GUARD = threading.Lock()
_SCHEDULER_LOCK_OWNED = False
_SCHEDULER_LOCK_PATH = None

# --- Configuration ---

def merge_config(base, override):
    if not isinstance(base, dict):
        base = {}
    if not isinstance(override, dict):
        return base
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = merge_config(base.get(key), value)
        else:
            base[key] = value
    return base

def load_config():
    cfg = {}
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

    if OPTIONS_FILE.exists():
        try:
            with open(OPTIONS_FILE, "r", encoding="utf-8") as f:
                cfg = merge_config(cfg, json.load(f))
        except (OSError, json.JSONDecodeError, TypeError) as exc:
            logger.warning("Ignoring unreadable options file %s: %s", OPTIONS_FILE, exc)

    try:
        return AppConfigModel.model_validate(cfg if isinstance(cfg, dict) else {})
    except ValidationError as exc:
        logger.warning("Invalid configuration, using defaults: %s", exc)
        return AppConfigModel()

def save_config(new_config: dict):
    current = load_config()
    elenia = new_config.get("elenia") if isinstance(new_config.get("elenia"), dict) else None
    if elenia is not None and elenia.get("password") == PASSWORD_MASK:
        elenia["password"] = current.elenia.password
    validated = AppConfigModel.model_validate(new_config)
    payload = validated.model_dump(mode="json")
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_FILE, "w", encoding="utf-8") as f:
        yaml.safe_dump(payload, f, allow_unicode=True)
    STORAGE_DIR.mkdir(parents=True, exist_ok=True)
    with open(OPTIONS_FILE, "w", encoding="utf-8") as f:
        json.dump(payload, f)
    reset_service()
    return {"status": "ok", "message": "Configuration saved"}

def mask_config(cfg):
    dumped = cfg.model_dump(mode="json")
    if dumped["elenia"].get("password"):
        dumped["elenia"]["password"] = PASSWORD_MASK
    return dumped


# --- Ledger ---

@dataclass(frozen=True)
class LedgerSettings:
    year: int
    spot_margin: float
    tzinfo: object
    markup_percent: float = VATTENFALL_VAT_PERCENT

    @classmethod
    def from_config(cls, cfg):
        return cls(year=cfg.year, spot_margin=cfg.spot_margin, tzinfo=get_local_tz(cfg.timezone))


def _utc_now():
    return datetime.now(timezone.utc)


class LedgerService:
    """Fetches, reconciles and caches yearly consumption cost datasets.

    Every collaborator is passed in. At most one fetch per year is in flight;
    concurrent callers for the same year wait on the same future.
    """

    def __init__(
        self,
        settings,
        consumption_provider,
        price_provider,
        credential_provider,
        cache_store,
        logger=logger,
        now=_utc_now,
        fetch_workers=4,
    ):
        self.settings = settings
        self.consumption_provider = consumption_provider
        self.price_provider = price_provider
        self.credential_provider = credential_provider
        self.cache_store = cache_store
        self.logger = logger
        self.now = now
        self._fetch_pool = ThreadPoolExecutor(max_workers=fetch_workers, thread_name_prefix="ledger-fetch")
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-cache")
        self._guard = threading.Lock()
        self._inflight = {}
        self._pending_writes = {}
        self.last_stats = {}

    def _read_cache(self, year):
        self._wait_for_write(year)
        cached = self.cache_store.get(year)
        fresh = cached is not None and not self.cache_store.is_stale(cached, self.now(), year=year)
        return cached, fresh

    def get_yearly_dataset(self, year=None, force_refresh=False):
        year = int(year or self.settings.year)
        cached, fresh = self._read_cache(year)
        if fresh and not force_refresh:
            return cached

        with self._guard:
            future = self._inflight.get(year)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[year] = future
        if not owner:
            self.logger.info("Joining in-flight refresh for %s", year)
            return future.result()

        try:
            if not force_refresh:
                # Another refresh may have written the cache since the first read.
                cached, fresh = self._read_cache(year)
            dataset = cached if fresh and not force_refresh else self._refresh(year, cached)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(dataset)
            return dataset
        finally:
            with self._guard:
                self._inflight.pop(year, None)

    def refresh_year(self, year=None):
        return self.get_yearly_dataset(year, force_refresh=True)

    def _refresh(self, year, cached):
        if cached is None:
            self.logger.info("No valid cache for %s; fetching fresh data", year)
        else:
            self.logger.info("Cache for %s needs update (last updated %s)", year, cached.last_updated.isoformat())
        try:
            result = self.fetch_and_reconcile(year)
        except REFRESH_ERRORS as exc:
            if cached is not None:
                self.logger.warning("Refresh for %s failed (%s); serving cached data", year, exc)
                return cached
            self.logger.error("Refresh for %s failed with no cached fallback: %s", year, exc)
            raise ReconciliationError(year, exc) from exc

        dataset = YearlyDataset(last_updated=self.now(), hourly=result.hourly, monthly=result.monthly)
        self._persist(year, dataset)
        return dataset

    def fetch_and_reconcile(self, year):
        credential = self.credential_provider.get_credential()
        consumption = self._fetch_pool.submit(self.consumption_provider.fetch_consumption_readings, year, credential)
        prices = self._fetch_pool.submit(self.price_provider.fetch_year_prices, year)
        wait((consumption, prices), return_when=FIRST_EXCEPTION)
        month_groups = consumption.result()
        raw_prices = prices.result()

        price_index = build_price_index(raw_prices, self.settings.markup_percent)
        result = reconcile(month_groups, price_index, source_tz=self.settings.tzinfo)
        self.last_stats[year] = {"prices": price_index.stats, "reconcile": result.stats}
        return result

    def _persist(self, year, dataset):
        future = self._writer.submit(self.cache_store.put, year, dataset)
        future.add_done_callback(partial(self._log_write_result, year))
        with self._guard:
            self._pending_writes[year] = future
        return future

    def _log_write_result(self, year, future):
        exc = future.exception()
        if exc is not None:
            self.logger.warning("Saving cache for %s failed: %s", year, exc)

    def _wait_for_write(self, year):
        with self._guard:
            pending = self._pending_writes.get(year)
        if pending is not None:
            wait((pending,))

    def pending_write(self, year):
        with self._guard:
            return self._pending_writes.get(int(year))

    def wait_for_pending_writes(self, timeout=None):
        with self._guard:
            pending = list(self._pending_writes.values())
        done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def get_current_instant_price(self, now=None):
        now = now or self.now()
        today = now.astimezone(self.settings.tzinfo).date()
        try:
            raw_prices = self.price_provider.fetch_day_prices(today)
        except REFRESH_ERRORS as exc:
            raise PriceUnavailableError(f"Spot prices for {today} could not be fetched: {exc}") from exc
        key = hour_key(now)
        price = build_price_index(raw_prices, self.settings.markup_percent).lookup(key)
        if price is None:
            raise PriceUnavailableError(f"No spot price published for {key}")
        return CurrentPrice(
            timestamp_utc=key,
            price_cents_per_kwh=price,
            price_with_margin_cents_per_kwh=price_with_margin(price, self.settings.spot_margin),
        )

    def clear_cache(self, year=None):
        self.wait_for_pending_writes()
        return self.cache_store.clear(year)

    def shutdown(self):
        self._fetch_pool.shutdown(wait=False)
        self._writer.shutdown(wait=True)


def build_service(cfg=None):
    cfg = cfg or load_config()
    settings = LedgerSettings.from_config(cfg)
    fetch_client = FetchClient(
        max_retries=cfg.fetch.max_retries,
        timeout=cfg.fetch.timeout_seconds,
        logger=logger,
    )
    return LedgerService(
        settings=settings,
        consumption_provider=EleniaService(fetch_client, settings.tzinfo, logger),
        price_provider=VattenfallService(fetch_client, logger),
        credential_provider=ConfigCredentialProvider(cfg),
        cache_store=YearCacheStore(FileBlobStore(CACHE_DIR), settings.tzinfo),
        logger=logger,
    )

def get_service():
    global _SERVICE
    with _SERVICE_GUARD:
        if _SERVICE is None:
            _SERVICE = build_service()
        return _SERVICE

def reset_service():
    global _SERVICE
    with _SERVICE_GUARD:
        previous, _SERVICE = _SERVICE, None
    if previous is not None:
        previous.shutdown()


# --- API handlers ---

def get_config():
    return mask_config(load_config())

def get_version():
    return {"version": APP_VERSION}

def get_dataset(year=None, margin=None):
    service = get_service()
    year = int(year or service.settings.year)
    dataset = service.get_yearly_dataset(year)
    margin = service.settings.spot_margin if margin is None else margin
    return {"year": year, "margin": margin, **apply_margin(dataset, margin).to_payload()}

def refresh_dataset(year=None):
    service = get_service()
    year = int(year or service.settings.year)
    dataset = service.refresh_year(year)
    stats = service.last_stats.get(year, {}).get("reconcile")
    return {
        "status": "ok",
        "year": year,
        "lastUpdated": dataset.to_payload()["lastUpdated"],
        "hourly_count": len(dataset.hourly),
        "monthly_count": len(dataset.monthly),
        "skipped": stats.skipped if stats else None,
        "anomalies": stats.anomalies if stats else None,
    }

def get_current_price():
    return get_service().get_current_instant_price().to_payload()

def check_credentials(credential):
    service = get_service()
    return {"valid": service.consumption_provider.check_credentials(credential)}

def clear_cache(year=None):
    return {"status": "ok", "cleared": get_service().clear_cache(year)}

def get_cache_status():
    return get_service().cache_store.status()


# --- Refresh scheduler ---

def get_scheduler_lock_path():
    if SCHEDULER_LOCK_FILE:
        return Path(SCHEDULER_LOCK_FILE)
    return Path("/tmp") / "sahkoapp-refresh-scheduler.lock"


def _clear_stale_scheduler_lock(lock_path):
    if not lock_path.exists():
        return
    try:
        age_seconds = max(0.0, time_module.time() - lock_path.stat().st_mtime)
        if age_seconds > SCHEDULER_LOCK_STALE_SECONDS:
            lock_path.unlink(missing_ok=True)
            logger.warning("Removed stale refresh scheduler lock: %s", lock_path)
    except OSError as exc:
        logger.warning("Unable to evaluate stale scheduler lock %s: %s", lock_path, exc)


def acquire_scheduler_process_lock():
    global _SCHEDULER_LOCK_OWNED, _SCHEDULER_LOCK_PATH
    lock_path = get_scheduler_lock_path()
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("Cannot create scheduler lock directory (%s): %s", lock_path.parent, exc)
        return False

    _clear_stale_scheduler_lock(lock_path)

    try:
        fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        logger.info("Refresh scheduler lock already held by another process: %s", lock_path)
        return False
    except OSError as exc:
        logger.warning("Cannot create refresh scheduler lock %s: %s", lock_path, exc)
        return False

    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(
            json.dumps(
                {
                    "pid": os.getpid(),
                    "created_at": datetime.now(timezone.utc).isoformat(),
                }
            )
        )

    _SCHEDULER_LOCK_OWNED = True
    _SCHEDULER_LOCK_PATH = lock_path
    return True


def release_scheduler_process_lock():
    global _SCHEDULER_LOCK_OWNED, _SCHEDULER_LOCK_PATH
    if not _SCHEDULER_LOCK_OWNED or not _SCHEDULER_LOCK_PATH:
        return
    try:
        _SCHEDULER_LOCK_PATH.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Unable to remove refresh scheduler lock %s: %s", _SCHEDULER_LOCK_PATH, exc)
    finally:
        _SCHEDULER_LOCK_OWNED = False
        _SCHEDULER_LOCK_PATH = None


def start_refresh_scheduler():
    global _REFRESH_THREAD
    with _REFRESH_THREAD_GUARD:
        if _REFRESH_THREAD and _REFRESH_THREAD.is_alive():
            logger.info("Refresh scheduler already running in current process.")
            return False

        if not acquire_scheduler_process_lock():
            return False

        _REFRESH_THREAD = threading.Thread(
            target=schedule_refresh_loop,
            daemon=True,
            name="refresh-scheduler",
        )
        _REFRESH_THREAD.start()
        logger.info("Refresh scheduler started in process %s", os.getpid())
        return True


def run_scheduled_refresh():
    service = get_service()
    dataset = service.get_yearly_dataset(service.settings.year)
    logger.info(
        "Scheduled check for %s done; dataset last updated %s",
        service.settings.year,
        dataset.last_updated.isoformat(),
    )
    return REFRESH_INTERVAL_SECONDS


def schedule_refresh_loop():
    while True:
        try:
            sleep_seconds = run_scheduled_refresh()
        except REFRESH_ERRORS as exc:
            logger.warning("Scheduled refresh failed, retrying in 5 minutes: %s", exc)
            sleep_seconds = REFRESH_RETRY_SECONDS
        time_module.sleep(sleep_seconds)


atexit.register(release_scheduler_process_lock)


# --- Startup logging ---
def log_cache_status():
    STORAGE_DIR.mkdir(parents=True, exist_ok=True)
    status = get_cache_status()
    logger.info(
        "Dataset cache status: dir=%s count=%s latest=%s size_bytes=%s",
        status.get("dir"),
        status.get("count"),
        status.get("latest"),
        status.get("size_bytes"),
    )
