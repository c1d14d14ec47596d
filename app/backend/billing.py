from decimal import Decimal

from ledger_models import YearlyDataset
from pricing import PRICE_DECIMALS, quantize_half_up, to_decimal
from reconcile import build_record, summarize_months


def apply_margin(dataset, margin_cents):
    """Return a copy of ``dataset`` with the user's margin added to every hour.

    The cached dataset is never touched; costs and monthly summaries are
    recomputed from the adjusted prices.
    """
    margin = to_decimal(margin_cents)
    if not margin:
        return dataset
    hourly = tuple(
        build_record(
            record.timestamp_utc,
            Decimal(str(record.consumption_kwh)),
            float(quantize_half_up(Decimal(str(record.price_cents_per_kwh)) + margin, PRICE_DECIMALS)),
        )
        for record in dataset.hourly
    )
    return YearlyDataset(last_updated=dataset.last_updated, hourly=hourly, monthly=summarize_months(hourly))


def price_with_margin(price_cents, margin_cents):
    margin = to_decimal(margin_cents) or Decimal(0)
    return float(quantize_half_up(Decimal(str(price_cents)) + margin, PRICE_DECIMALS))
