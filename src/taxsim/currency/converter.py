"""Dated currency conversion.

The settlement engine only sees the Converter protocol: a blocking
convert(amount, as_of, to_currency) call. CurrencyConverter implements it on
top of any rate source quoting currencies against a single base (the ECB
quotes everything per 1 EUR), caching one rate per (currency, date).
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from taxsim.currency.ecb_rates import ECBRateError
from taxsim.currency.money import Money, intern_currency

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import date

logger = logging.getLogger(__name__)


class ConversionUnavailable(LookupError):
    """No rate exists for a currency pair on a given date."""

    def __init__(self, currency: str, to_currency: str, as_of: date, reason: str = "") -> None:
        msg = f"No {currency}->{to_currency} rate available for {as_of}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.currency = currency
        self.to_currency = to_currency
        self.as_of = as_of


class Converter(Protocol):
    def convert(self, amount: Money, as_of: date, to_currency: str) -> Money: ...


class RateSource(Protocol):
    """Quotes units of ``currency`` per 1 unit of ``base_currency``.

    Raises ECBRateError or a LookupError when no rate is known. A source may
    also offer ``preload_range(currency, start, end)``; prefetch() uses it.
    """

    base_currency: str

    def get_rate(self, currency: str, for_date: date) -> Decimal: ...


class CurrencyConverter:
    """Converter backed by a base-quoted rate source.

    Cross rates (USD -> RUB with an EUR-based source) go through the base:
    amount / rate(from) * rate(to). The amount is never pre-rounded.
    """

    def __init__(self, rate_source: RateSource, max_workers: int = 4) -> None:
        self._source = rate_source
        self._base = intern_currency(rate_source.base_currency)
        self._max_workers = max_workers
        self._rates: dict[tuple[str, date], Decimal] = {}

    @property
    def base_currency(self) -> str:
        return self._base

    def convert(self, amount: Money, as_of: date, to_currency: str) -> Money:
        to_currency = intern_currency(to_currency)
        if amount.currency is to_currency:
            return amount

        try:
            from_rate = self._rate(amount.currency, as_of)
            to_rate = self._rate(to_currency, as_of)
        except ConversionUnavailable as e:
            raise ConversionUnavailable(amount.currency, to_currency, as_of, str(e)) from e

        return Money(to_currency, amount.amount / from_rate * to_rate)

    def prefetch(self, pairs: Iterable[tuple[str, date]]) -> None:
        """Warm the cache for distinct (currency, date) pairs concurrently.

        A source offering ``preload_range`` first gets one ranged request per
        currency spanning that currency's dates. Best-effort: failures are
        logged and surface again on convert().
        """
        pending = {
            (intern_currency(currency), as_of)
            for currency, as_of in pairs
            if currency != self._base and (currency, as_of) not in self._rates
        }
        if not pending:
            return

        dates_by_currency: dict[str, list[date]] = {}
        for currency, as_of in pending:
            dates_by_currency.setdefault(currency, []).append(as_of)

        preload = getattr(self._source, "preload_range", None)
        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="rate-prefetch",
        ) as executor:
            if preload is not None:
                ranged = {
                    executor.submit(preload, currency, min(dates), max(dates)): currency
                    for currency, dates in dates_by_currency.items()
                }
                for future, currency in ranged.items():
                    try:
                        future.result()
                    except (ECBRateError, LookupError) as e:
                        logger.warning("Rate preload failed for %s: %s", currency, e)

            futures = {executor.submit(self._rate, c, d): (c, d) for c, d in pending}
            for future, (currency, as_of) in futures.items():
                try:
                    future.result()
                except ConversionUnavailable as e:
                    logger.warning("Rate prefetch failed for %s on %s: %s", currency, as_of, e)

    def _rate(self, currency: str, as_of: date) -> Decimal:
        if currency is self._base:
            return Decimal("1")

        key = (currency, as_of)
        cached = self._rates.get(key)
        if cached is not None:
            return cached

        try:
            rate = self._source.get_rate(currency, as_of)
        except ConversionUnavailable:
            raise
        except (ECBRateError, LookupError) as e:
            raise ConversionUnavailable(currency, self._base, as_of, str(e)) from e
        if rate <= 0:
            raise ConversionUnavailable(currency, self._base, as_of, f"invalid rate {rate}")

        logger.debug("Rate %s/%s on %s = %s", currency, self._base, as_of, rate)
        self._rates[key] = rate
        return rate
