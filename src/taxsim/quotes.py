"""Quote source: current market prices for simulated sells.

Quotes.batch() is a best-effort prefetch hint: distinct symbols have no
dependency on each other, so they are fetched concurrently. Quotes.get() is
a plain blocking call that serves from the cache or fetches on demand.
The settlement engine never sees the concurrency.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Protocol

import httpx
import orjson

from taxsim.currency.money import Money

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


class QuoteUnavailable(LookupError):
    """No current price is known for a symbol."""

    def __init__(self, symbol: str, reason: str = "") -> None:
        msg = f"Unable to get quote for {symbol!r}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.symbol = symbol


class QuoteProvider(Protocol):
    def fetch(self, symbol: str) -> Money: ...


class HttpQuoteProvider:
    """Fetches ``GET {base_url}/{symbol}``.

    Expected response body: {"price": "187.42", "currency": "USD"}.
    Prices are read as strings (or JSON numbers) straight into Decimal.
    """

    def __init__(self, base_url: str, http_client: httpx.Client | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.Client(timeout=10.0)

    def fetch(self, symbol: str) -> Money:
        try:
            resp = self._client.get(f"{self._base_url}/{symbol}")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise QuoteUnavailable(symbol, f"request failed: {e}") from e

        try:
            data = orjson.loads(resp.content)
            price = Decimal(str(data["price"]))
            currency = data["currency"]
        except (orjson.JSONDecodeError, KeyError, TypeError, InvalidOperation) as e:
            raise QuoteUnavailable(symbol, f"malformed response: {e}") from e

        if not price.is_finite() or price <= 0:
            raise QuoteUnavailable(symbol, f"invalid price {price}")
        try:
            return Money(currency, price)
        except (TypeError, ValueError) as e:
            raise QuoteUnavailable(symbol, f"malformed response: {e}") from e

    def close(self) -> None:
        self._client.close()


class Quotes:
    """Caching front for a QuoteProvider."""

    def __init__(self, provider: QuoteProvider, max_workers: int = 4) -> None:
        self._provider = provider
        self._max_workers = max_workers
        self._cache: dict[str, Money] = {}

    def batch(self, symbols: Iterable[str]) -> None:
        """Prefetch quotes concurrently. Failures surface later from get()."""
        pending = {s for s in symbols if s not in self._cache}
        if not pending:
            return

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="quote-prefetch",
        ) as executor:
            futures = {executor.submit(self._provider.fetch, s): s for s in pending}
            for future, symbol in futures.items():
                try:
                    self._cache[symbol] = future.result()
                except QuoteUnavailable as e:
                    logger.warning("Quote prefetch failed: %s", e)

    def get(self, symbol: str) -> Money:
        cached = self._cache.get(symbol)
        if cached is not None:
            return cached

        price = self._provider.fetch(symbol)
        logger.debug("Quote %s = %s", symbol, price)
        self._cache[symbol] = price
        return price
