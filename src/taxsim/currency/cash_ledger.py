"""Multi-currency flow accumulator.

Holds at most one running balance per currency. Balances may go negative:
this is a flow total (commissions, profit across currencies), not an account
with a funding constraint.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from taxsim.currency.money import Money, intern_currency

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import date

    from taxsim.currency.converter import Converter

logger = logging.getLogger(__name__)


class MultiCurrencyLedger:
    """Insertion-ordered mapping currency -> balance.

    Iteration yields (currency, Money) pairs in first-deposit order, which is
    the order reports list them in.
    """

    def __init__(self, reporting_currency: str | None = None) -> None:
        self._reporting_currency = (
            intern_currency(reporting_currency) if reporting_currency else None
        )
        self._balances: dict[str, Decimal] = {}

    @property
    def reporting_currency(self) -> str | None:
        return self._reporting_currency

    def deposit(self, money: Money) -> None:
        self._balances[money.currency] = (
            self._balances.get(money.currency, Decimal("0")) + money.amount
        )

    def withdraw(self, money: Money) -> None:
        self._balances[money.currency] = (
            self._balances.get(money.currency, Decimal("0")) - money.amount
        )

    def add_converted(self, money: Money, as_of: date, converter: Converter) -> Money:
        """Convert into the reporting currency at ``as_of`` and deposit it.

        ConversionUnavailable from the converter propagates untouched.
        """
        if self._reporting_currency is None:
            raise ValueError("add_converted requires a ledger with a reporting currency")
        converted = converter.convert(money, as_of, self._reporting_currency)
        self.deposit(converted)
        return converted

    def merge(self, other: MultiCurrencyLedger) -> None:
        """Deposit every balance of ``other`` into this ledger."""
        for _currency, balance in other:
            self.deposit(balance)

    def get(self, currency: str) -> Money:
        currency = intern_currency(currency)
        return Money(currency, self._balances.get(currency, Decimal("0")))

    def total(self, to_currency: str, as_of: date, converter: Converter) -> Money:
        """All balances converted into one currency at a single date."""
        result = Money.zero(to_currency)
        for _currency, balance in self:
            result = result + converter.convert(balance, as_of, result.currency)
        return result

    def copy(self) -> MultiCurrencyLedger:
        clone = MultiCurrencyLedger(self._reporting_currency)
        clone._balances = dict(self._balances)
        return clone

    def __iter__(self) -> Iterator[tuple[str, Money]]:
        for currency, amount in self._balances.items():
            yield currency, Money(currency, amount)

    def __len__(self) -> int:
        return len(self._balances)

    def __contains__(self, currency: object) -> bool:
        return currency in self._balances

    def __repr__(self) -> str:
        inner = ", ".join(f"{amount} {currency}" for currency, amount in self._balances.items())
        return f"MultiCurrencyLedger({inner})"
