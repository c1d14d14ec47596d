from datetime import date

from errors import UpstreamPayloadError

VATTENFALL_PRICE_URL = "https://www.vattenfall.fi/api/price/spot"
VATTENFALL_VAT_PERCENT = 25.5
DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/88.0.4324.182 Safari/537.36",
}


class VattenfallService:
    def __init__(self, fetch_client, logger, base_url=VATTENFALL_PRICE_URL):
        self.fetch_client = fetch_client
        self.logger = logger
        self.base_url = base_url

    def fetch_price_range(self, start_date, end_date):
        """Return raw pre-tax hourly prices (cents/kWh, UTC timestamps)."""
        url = f"{self.base_url}/{start_date.isoformat()}/{end_date.isoformat()}"
        response = self.fetch_client.get(url, params={"lang": "fi"}, headers=DEFAULT_HEADERS)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamPayloadError("Price response is not JSON") from exc
        if not isinstance(payload, list):
            raise UpstreamPayloadError("Price response is not a list")

        entries = []
        for row in payload:
            if not isinstance(row, dict):
                continue
            entries.append({"utcTimestamp": row.get("timeStamp"), "value": row.get("value")})
        self.logger.info("Received %s price entries for %s..%s", len(entries), start_date, end_date)
        return entries

    def fetch_year_prices(self, year):
        return self.fetch_price_range(date(year, 1, 1), date(year, 12, 31))

    def fetch_day_prices(self, day):
        return self.fetch_price_range(day, day)
