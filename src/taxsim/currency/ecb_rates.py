"""ECB reference rate source.

The ECB publishes daily reference rates as units of a foreign currency per
1 EUR, on business days only (~16:00 CET). Weekends and holidays resolve to
the most recent preceding business day; that fill policy lives here, not in
the converter or the settlement engine.

Source: https://data-api.ecb.europa.eu/service/data/EXR/D.<CUR>.EUR.SP00.A
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation

import httpx

logger = logging.getLogger(__name__)

ECB_API_URL = "https://data-api.ecb.europa.eu/service/data/EXR"
ECB_BASE_CURRENCY = "EUR"

# Longest run of consecutive non-publishing days (Easter weekend + buffer)
_MAX_BACKFILL_DAYS = 5


class ECBRateError(Exception):
    """Raised when an ECB rate cannot be fetched or parsed."""


class ECBRateService:
    """Fetches and caches daily ECB reference rates for any quoted currency.

    get_rate("USD", d) returns USD per 1 EUR (e.g. 1.08 means 1 EUR = 1.08 USD).
    To convert: foreign_amount / rate = EUR amount.
    """

    base_currency = ECB_BASE_CURRENCY

    def __init__(
        self,
        http_client: httpx.Client | None = None,
        api_url: str = ECB_API_URL,
    ) -> None:
        self._client = http_client or httpx.Client(timeout=30.0)
        self._api_url = api_url.rstrip("/")
        self._cache: dict[tuple[str, date], Decimal] = {}
        # Fetched (start, end) windows per currency. A date missing from the
        # cache only means "not published" when a fetched window covers it.
        self._loaded: dict[str, list[tuple[date, date]]] = {}

    def get_rate(self, currency: str, for_date: date) -> Decimal:
        """Units of ``currency`` per 1 EUR on ``for_date`` (or the last business day before)."""
        if currency == ECB_BASE_CURRENCY:
            return Decimal("1")

        key = (currency, for_date)
        if key in self._cache:
            return self._cache[key]

        start = for_date - timedelta(days=_MAX_BACKFILL_DAYS)
        if not self._is_loaded(currency, start, for_date):
            self._fetch_range(currency, start, for_date)

        check_date = for_date
        while check_date >= start:
            cached = self._cache.get((currency, check_date))
            if cached is not None:
                self._cache[key] = cached
                return cached
            check_date -= timedelta(days=1)

        raise ECBRateError(
            f"No ECB {currency} rate available for {for_date} "
            f"or preceding {_MAX_BACKFILL_DAYS} days"
        )

    def preload_range(self, currency: str, start: date, end: date) -> None:
        """Preload rates for every date in ``start..end`` with a single request.

        The window is widened backwards so dates near ``start`` can still fall
        back to an earlier business day without another fetch.
        """
        if currency == ECB_BASE_CURRENCY:
            return
        self._fetch_range(currency, start - timedelta(days=_MAX_BACKFILL_DAYS), end)

    def _is_loaded(self, currency: str, start: date, end: date) -> bool:
        return any(
            lo <= start and end <= hi for lo, hi in self._loaded.get(currency, ())
        )

    def _fetch_range(self, currency: str, start: date, end: date) -> dict[date, Decimal]:
        url = f"{self._api_url}/D.{currency}.{ECB_BASE_CURRENCY}.SP00.A"
        params = {
            "startPeriod": start.isoformat(),
            "endPeriod": end.isoformat(),
            "format": "csvdata",
        }
        try:
            resp = self._client.get(url, params=params)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ECBRateError(f"ECB API request failed for {currency}: {e}") from e

        rates = self._parse_csv(resp.text)
        for rate_date, value in rates.items():
            if start <= rate_date <= end:
                self._cache[(currency, rate_date)] = value
        self._loaded.setdefault(currency, []).append((start, end))
        logger.debug("Fetched %d ECB %s rates for %s..%s", len(rates), currency, start, end)
        return rates

    @staticmethod
    def _parse_csv(csv_text: str) -> dict[date, Decimal]:
        """Parse ECB SDMX CSV response into date -> rate mapping."""
        rates: dict[date, Decimal] = {}
        lines = csv_text.strip().split("\n")
        if len(lines) < 2:
            return rates

        header = lines[0].split(",")
        try:
            date_idx = header.index("TIME_PERIOD")
            value_idx = header.index("OBS_VALUE")
        except ValueError as e:
            raise ECBRateError(f"Unexpected CSV header: {header}") from e

        for line in lines[1:]:
            cols = line.split(",")
            if len(cols) <= max(date_idx, value_idx):
                continue
            try:
                rate_date = date.fromisoformat(cols[date_idx])
                rate_value = Decimal(cols[value_idx])
            except (ValueError, InvalidOperation):
                continue
            if rate_value > 0:
                rates[rate_date] = rate_value

        return rates

    def close(self) -> None:
        self._client.close()
