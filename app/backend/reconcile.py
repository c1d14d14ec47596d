"""Join hourly consumption readings with the price index.

The engine is synchronous and free of I/O: given the month groups returned by
the consumption provider and a :class:`pricing.PriceIndex` it produces the
hourly ledger and the UTC monthly summary. Bad readings are skipped and
counted in :class:`ReconcileStats`; they never fail the whole run.
"""

import logging
from dataclasses import dataclass, field
from datetime import timezone
from decimal import Decimal

from errors import MalformedTimestampError
from ledger_models import CombinedRecord, MonthlySummary
from pricing import quantize_half_up, to_decimal
from timestamps import month_key, normalize_timestamp

logger = logging.getLogger("uvicorn.error")

NETTED_FIELD = "hourly_values_netted"
GROSS_FIELD = "hourly_values"
KWH_DECIMALS = 3
COST_DECIMALS = 6
AVERAGE_DECIMALS = 6


@dataclass(frozen=True)
class Netted:
    readings: tuple


@dataclass(frozen=True)
class Gross:
    readings: tuple


@dataclass(frozen=True)
class Empty:
    pass


@dataclass
class ReconcileStats:
    months: int = 0
    anomalies: int = 0
    invalid_values: int = 0
    invalid_timestamps: int = 0
    missing_prices: int = 0
    duplicate_hours: int = 0
    joined: int = 0

    @property
    def skipped(self):
        return self.invalid_values + self.invalid_timestamps + self.missing_prices


@dataclass
class ReconcileResult:
    hourly: tuple
    monthly: tuple
    stats: ReconcileStats = field(default_factory=ReconcileStats)


def _as_list(value):
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return ()


def _group_label(group):
    if isinstance(group, dict):
        return group.get("month") or "?"
    return "?"


def select_reading_source(group, stats=None):
    """Resolve a month group to ``Netted``, ``Gross`` or ``Empty``.

    Netted readings supersede gross ones. Both being present breaks the
    provider's contract; it is counted as an anomaly and netted values win.
    """
    if not isinstance(group, dict):
        return Empty()
    netted = _as_list(group.get(NETTED_FIELD))
    gross = _as_list(group.get(GROSS_FIELD))
    if netted and gross:
        if stats is not None:
            stats.anomalies += 1
        logger.warning(
            "Month %s carries both netted (%s) and gross (%s) readings; using netted values",
            _group_label(group),
            len(netted),
            len(gross),
        )
    if netted:
        return Netted(netted)
    if gross:
        return Gross(gross)
    return Empty()


def _reading_fields(reading):
    if isinstance(reading, dict):
        timestamp = reading.get("t", reading.get("localTimestamp"))
        value = reading.get("v", reading.get("wattHours"))
        return timestamp, value
    return getattr(reading, "local_timestamp", None), getattr(reading, "watt_hours", None)


def build_record(key, kwh, price):
    kwh_dec = quantize_half_up(kwh, KWH_DECIMALS)
    price_dec = Decimal(str(price))
    cost = quantize_half_up(kwh_dec * price_dec / 100, COST_DECIMALS)
    return CombinedRecord(
        timestamp_utc=key,
        consumption_kwh=float(kwh_dec),
        price_cents_per_kwh=float(price_dec),
        cost_currency=float(cost),
    )


def summarize_months(hourly):
    totals = {}
    for record in hourly:
        bucket = totals.setdefault(month_key(record.timestamp_utc), [Decimal(0), Decimal(0)])
        bucket[0] += Decimal(str(record.consumption_kwh))
        bucket[1] += Decimal(str(record.cost_currency))

    monthly = []
    for key in sorted(totals):
        consumption, cost = totals[key]
        if consumption != 0:
            average = quantize_half_up(cost / consumption * 100, AVERAGE_DECIMALS)
        else:
            average = Decimal(0)
        monthly.append(
            MonthlySummary(
                month_key=key,
                total_consumption_kwh=float(quantize_half_up(consumption, KWH_DECIMALS)),
                average_price_cents_per_kwh=float(average),
                total_cost_currency=float(quantize_half_up(cost, COST_DECIMALS)),
            )
        )
    return tuple(monthly)


def reconcile(month_groups, price_index, source_tz=timezone.utc):
    stats = ReconcileStats()
    records = {}

    for group in month_groups or []:
        stats.months += 1
        source = select_reading_source(group, stats)
        if isinstance(source, Empty):
            logger.info("No usable readings for month %s", _group_label(group))
            continue

        for reading in source.readings:
            timestamp, value = _reading_fields(reading)
            watt_hours = to_decimal(value)
            if watt_hours is None:
                stats.invalid_values += 1
                logger.warning("Skipping reading %s with invalid value %r", timestamp, value)
                continue
            try:
                key = normalize_timestamp(timestamp, source_tz)
            except MalformedTimestampError as exc:
                stats.invalid_timestamps += 1
                logger.warning("Skipping reading: %s", exc)
                continue

            price = price_index.lookup(key)
            if price is None:
                stats.missing_prices += 1
                continue

            if key in records:
                stats.duplicate_hours += 1
            records[key] = build_record(key, watt_hours / 1000, price)

    hourly = tuple(records[key] for key in sorted(records))
    stats.joined = len(hourly)
    monthly = summarize_months(hourly)
    logger.info(
        "Reconciled %s hourly records into %s months (missing prices=%s, invalid=%s, anomalies=%s)",
        stats.joined,
        len(monthly),
        stats.missing_prices,
        stats.invalid_values + stats.invalid_timestamps,
        stats.anomalies,
    )
    return ReconcileResult(hourly=hourly, monthly=monthly, stats=stats)
