from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LedgerModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CombinedRecord(LedgerModel):
    timestamp_utc: str = Field(alias="timestampUTC", min_length=20, max_length=20)
    consumption_kwh: float = Field(alias="consumptionKWh")
    price_cents_per_kwh: float = Field(alias="priceCentsPerKWh")
    cost_currency: float = Field(alias="costCurrency")


class MonthlySummary(LedgerModel):
    month_key: str = Field(alias="monthKey", pattern=r"^\d{4}-\d{2}$")
    total_consumption_kwh: float = Field(alias="totalConsumptionKWh")
    average_price_cents_per_kwh: float = Field(alias="averagePriceCentsPerKWh")
    total_cost_currency: float = Field(alias="totalCostCurrency")


class YearlyDataset(LedgerModel):
    last_updated: datetime = Field(alias="lastUpdated")
    hourly: tuple[CombinedRecord, ...]
    monthly: tuple[MonthlySummary, ...]

    @field_validator("last_updated")
    @classmethod
    def ensure_aware(cls, value):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


class CurrentPrice(LedgerModel):
    timestamp_utc: str = Field(alias="timestampUTC")
    price_cents_per_kwh: float = Field(alias="priceCentsPerKWh")
    price_with_margin_cents_per_kwh: float = Field(alias="priceWithMarginCentsPerKWh")
