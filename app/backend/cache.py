import json
import logging
import os
import re
from datetime import datetime, timezone

from pydantic import ValidationError

from errors import CacheCorruptionError
from ledger_models import YearlyDataset

logger = logging.getLogger("uvicorn.error")

CACHE_FILE_PREFIX = "combined-data"
REQUIRED_FIELDS = ("lastUpdated", "hourly", "monthly")


class FileBlobStore:
    """One JSON blob per year inside ``cache_dir``."""

    def __init__(self, cache_dir):
        self.cache_dir = cache_dir

    def path_for(self, year):
        return self.cache_dir / f"{CACHE_FILE_PREFIX}-{int(year)}.json"

    def read(self, year):
        path = self.path_for(year)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            logger.warning("Unable to read cache file %s: %s", path, exc)
            return None

    def write(self, year, payload):
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(year)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "wb") as f:
            f.write(payload)
        os.replace(tmp_path, path)
        return path

    def delete(self, year):
        self.path_for(year).unlink(missing_ok=True)

    def years(self):
        if not self.cache_dir.exists():
            return []
        found = []
        for file_path in self.cache_dir.glob(f"{CACHE_FILE_PREFIX}-*.json"):
            suffix = file_path.stem.replace(f"{CACHE_FILE_PREFIX}-", "", 1)
            if re.match(r"^\d{4}$", suffix):
                found.append(int(suffix))
        return sorted(found)


def parse_dataset(year, payload):
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as exc:
        raise CacheCorruptionError(year, f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise CacheCorruptionError(year, "payload is not an object")
    missing = [name for name in REQUIRED_FIELDS if data.get(name) is None or data.get(name) == ""]
    if missing:
        raise CacheCorruptionError(year, f"missing fields: {', '.join(missing)}")
    if not isinstance(data["hourly"], list) or not isinstance(data["monthly"], list):
        raise CacheCorruptionError(year, "hourly and monthly must be arrays")
    try:
        return YearlyDataset.model_validate(data)
    except ValidationError as exc:
        raise CacheCorruptionError(year, f"{exc.error_count()} validation errors") from exc


def is_stale(dataset, now, tzinfo=timezone.utc, year=None):
    """Decide whether ``dataset`` must be refetched at ``now``.

    A closed (past) year never goes stale once cached. Otherwise a dataset is
    stale when it was last updated on an earlier local day of the current
    year.
    """
    if dataset is None:
        return True
    now_local = now.astimezone(tzinfo)
    if year is not None and int(year) != now_local.year:
        return False
    updated_local = dataset.last_updated.astimezone(tzinfo)
    return updated_local.year == now_local.year and updated_local.date() != now_local.date()


class YearCacheStore:
    def __init__(self, blob_store, tzinfo=timezone.utc):
        self.blob_store = blob_store
        self.tzinfo = tzinfo

    def get(self, year):
        payload = self.blob_store.read(year)
        if payload is None:
            logger.info("No cached dataset for %s", year)
            return None
        try:
            dataset = parse_dataset(year, payload)
        except CacheCorruptionError as exc:
            logger.warning("%s; deleting cached blob", exc)
            try:
                self.blob_store.delete(year)
            except OSError as delete_exc:
                logger.warning("Failed to delete corrupt cache for %s: %s", year, delete_exc)
            return None
        logger.info("Using cached dataset for %s, last updated %s", year, dataset.last_updated.isoformat())
        return dataset

    def put(self, year, dataset):
        self.blob_store.write(year, dataset.to_json_bytes())
        logger.info("Saved dataset cache for %s (%s hourly records)", year, len(dataset.hourly))

    def is_stale(self, dataset, now=None, year=None):
        now = now or datetime.now(timezone.utc)
        return is_stale(dataset, now, self.tzinfo, year=year)

    def clear(self, year=None):
        years = [year] if year is not None else self.blob_store.years()
        for item in years:
            self.blob_store.delete(item)
        logger.info("Cleared cached datasets: %s", years or "none")
        return years

    def status(self):
        cache_dir = getattr(self.blob_store, "cache_dir", None)
        years = self.blob_store.years()
        total_size = 0
        if cache_dir is not None:
            for item in years:
                try:
                    total_size += self.blob_store.path_for(item).stat().st_size
                except OSError:
                    continue
        return {
            "dir": str(cache_dir) if cache_dir is not None else None,
            "count": len(years),
            "latest": years[-1] if years else None,
            "years": years,
            "size_bytes": total_size,
        }
