"""Tax rules: jurisdiction-specific tax on realized local profit.

The settlement engine treats a rule as an opaque, pure function of the local
profit. It clamps negative results to zero itself and implements no loss
carry-forward.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from taxsim.currency.money import CurrencyMismatch, Money, intern_currency, round_amount


class TaxRule(Protocol):
    currency: str

    def tax_due(self, local_profit: Money) -> Money: ...


@dataclass(frozen=True)
class FlatRateTaxRule:
    """Flat percentage on positive profit, nothing on a loss.

    Some jurisdictions assess tax in whole currency units (e.g. Russia rounds
    personal income tax to whole rubles); others to cents.
    """

    currency: str
    rate: Decimal
    round_to_units: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "currency", intern_currency(self.currency))
        if not (Decimal("0") <= self.rate < Decimal("1")):
            raise ValueError(f"Tax rate must be in [0, 1), got {self.rate}")

    def tax_due(self, local_profit: Money) -> Money:
        if local_profit.currency is not self.currency:
            raise CurrencyMismatch(self.currency, local_profit.currency)
        if local_profit.amount <= 0:
            return Money.zero(self.currency)

        tax = local_profit.amount * self.rate
        if self.round_to_units:
            tax = tax.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        else:
            tax = round_amount(tax)
        return Money(self.currency, tax)
