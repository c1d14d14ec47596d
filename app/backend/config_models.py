from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from fetch_client import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_SECONDS
from timestamps import LOCAL_TZ_NAME


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class EleniaConfig(StrictModel):
    username: str | None = None
    password: str | None = None


class FetchConfig(StrictModel):
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1, le=10)
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0, le=300)


class AppConfigModel(StrictModel):
    year: int = Field(default_factory=lambda: datetime.now().year, ge=2000, le=2100)
    spot_margin: float = Field(default=0.6, ge=-100.0, le=100.0, validation_alias=AliasChoices("spot_margin", "spotMargin"))
    timezone: str = Field(default=LOCAL_TZ_NAME, min_length=1)
    elenia: EleniaConfig = Field(default_factory=EleniaConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)

    @field_validator("year", mode="before")
    @classmethod
    def parse_year(cls, value):
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return value

    @field_validator("spot_margin", mode="before")
    @classmethod
    def parse_margin(cls, value):
        # Stored settings keep the margin as text, sometimes with a decimal comma.
        if isinstance(value, str):
            return value.strip().replace(",", ".") or 0.0
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value):
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value
