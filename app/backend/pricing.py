import logging
import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from errors import MalformedTimestampError
from timestamps import normalize_timestamp

logger = logging.getLogger("uvicorn.error")

PRICE_DECIMALS = 2


def to_decimal(value):
    """Exact decimal form of a finite number; ``None`` for anything else."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def quantize_half_up(value, places):
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def round_half_up(value, places):
    dec = value if isinstance(value, Decimal) else Decimal(str(value))
    return float(quantize_half_up(dec, places))


def markup_multiplier(markup_percent):
    percent = to_decimal(markup_percent)
    if percent is None:
        raise ValueError(f"Markup percent is not numeric: {markup_percent!r}")
    return 1 + percent / 100


def apply_markup(value, markup_percent, places=PRICE_DECIMALS):
    base = to_decimal(value)
    if base is None:
        raise ValueError(f"Price value is not numeric: {value!r}")
    multiplier = markup_multiplier(markup_percent)
    return float(quantize_half_up(base * multiplier, places))


@dataclass
class PriceIndexStats:
    entries: int = 0
    invalid_timestamps: int = 0
    invalid_values: int = 0
    duplicates: int = 0


@dataclass
class PriceIndex:
    prices: dict = field(default_factory=dict)
    stats: PriceIndexStats = field(default_factory=PriceIndexStats)

    def lookup(self, key):
        return self.prices.get(key)

    def keys(self):
        return sorted(self.prices)

    def __len__(self):
        return len(self.prices)

    def __contains__(self, key):
        return key in self.prices


def _entry_fields(entry):
    if isinstance(entry, dict):
        timestamp = entry.get("utcTimestamp", entry.get("timeStamp"))
        return timestamp, entry.get("value")
    return getattr(entry, "utc_timestamp", None), getattr(entry, "value", None)


def build_price_index(raw_prices, markup_percent):
    """Key marked-up prices by normalized UTC timestamp.

    Entries with unparseable timestamps or non-numeric values are counted and
    dropped. On duplicate keys the last entry wins.
    """
    # Raises for a non-numeric markup before any entry is read.
    markup_multiplier(markup_percent)
    index = PriceIndex()
    stats = index.stats
    for entry in raw_prices or []:
        timestamp, value = _entry_fields(entry)
        try:
            key = normalize_timestamp(timestamp)
        except MalformedTimestampError as exc:
            stats.invalid_timestamps += 1
            logger.warning("Skipping price entry: %s", exc)
            continue
        try:
            price = apply_markup(value, markup_percent)
        except ValueError as exc:
            stats.invalid_values += 1
            logger.warning("Skipping price entry %s: %s", key, exc)
            continue
        if key in index.prices:
            stats.duplicates += 1
        index.prices[key] = price

    stats.entries = len(index.prices)
    skipped = stats.invalid_timestamps + stats.invalid_values
    logger.info("Built price index with %s entries (%s skipped, %s duplicates)", stats.entries, skipped, stats.duplicates)
    if index.prices:
        logger.info("Price index spans %s .. %s", min(index.prices), max(index.prices))
    return index
