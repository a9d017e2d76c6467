"""Shared test fixtures."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from taxsim.config import Config, load_config
from taxsim.currency.converter import CurrencyConverter
from taxsim.currency.money import Money
from taxsim.quotes import QuoteUnavailable, Quotes
from taxsim.tax.lot_book import AcquisitionLot, LotBook
from taxsim.tax.tax_rules import FlatRateTaxRule


class FixedRateSource:
    """EUR-based rates: a default per currency, overridable per date."""

    base_currency = "EUR"

    def __init__(
        self,
        rates: dict[str, Decimal] | None = None,
        dated: dict[tuple[str, date], Decimal] | None = None,
    ) -> None:
        self._rates = rates or {}
        self._dated = dated or {}
        self.calls: list[tuple[str, date]] = []

    def get_rate(self, currency: str, for_date: date) -> Decimal:
        self.calls.append((currency, for_date))
        if (currency, for_date) in self._dated:
            return self._dated[(currency, for_date)]
        return self._rates[currency]


class FakeQuoteProvider:
    def __init__(self, prices: dict[str, Money]) -> None:
        self._prices = prices
        self.fetched: list[str] = []

    def fetch(self, symbol: str) -> Money:
        self.fetched.append(symbol)
        if symbol not in self._prices:
            raise QuoteUnavailable(symbol)
        return self._prices[symbol]


def usd(amount: str | int) -> Money:
    return Money("USD", Decimal(str(amount)))


def eur(amount: str | int) -> Money:
    return Money("EUR", Decimal(str(amount)))


def day(n: int) -> date:
    """Day ``n`` of January 2024."""
    return date(2024, 1, n)


@pytest.fixture
def default_config() -> Config:
    return load_config(Path("/dev/null"))  # All defaults


@pytest.fixture
def usd_only_converter() -> CurrencyConverter:
    """Identity-priced EUR/USD so same-currency examples stay exact."""
    return CurrencyConverter(FixedRateSource({"USD": Decimal("1")}))


@pytest.fixture
def usd_tax_rule() -> FlatRateTaxRule:
    return FlatRateTaxRule(currency="USD", rate=Decimal("0.13"))


@pytest.fixture
def eur_tax_rule() -> FlatRateTaxRule:
    return FlatRateTaxRule(currency="EUR", rate=Decimal("0.25"))


@pytest.fixture
def two_lot_book() -> LotBook:
    """Symbol X: 10 @ 100 USD on day 1, 10 @ 120 USD on day 5."""
    book = LotBook()
    book.add_lot(AcquisitionLot("X", 10, usd(100), day(1)))
    book.add_lot(AcquisitionLot("X", 10, usd(120), day(5)))
    return book


@pytest.fixture
def fake_quotes() -> tuple[Quotes, FakeQuoteProvider]:
    provider = FakeQuoteProvider({"X": usd(150), "Y": usd(50)})
    return Quotes(provider), provider
