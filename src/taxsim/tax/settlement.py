"""Settlement Engine: turns sell events into tax-relevant trade results.

For each sell:
  1. Match the quantity against the Lot Book, oldest lots first.
  2. Value every consumed fragment in the sell currency at its own
     acquisition date, then sum. Never convert a pre-summed total: lots
     bought on different days carry different rates.
  3. revenue = price x quantity - commission (sell currency).
  4. profit = revenue - cost basis.
  5. Realized figures move into the tax currency at the settlement date.
  6. Tax comes from the jurisdiction's rule, clamped at zero.

Sells must be fed in chronological order: each one observes the book left
by the previous one. The book is only mutated once a result has been fully
computed, so a failing conversion leaves it untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from taxsim.currency.cash_ledger import MultiCurrencyLedger
from taxsim.currency.money import CurrencyMismatch, Money, intern_currency
from taxsim.tax.lot_book import FifoFragment, InsufficientQuantity

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import date

    from taxsim.currency.converter import Converter
    from taxsim.tax.lot_book import LotBook
    from taxsim.tax.tax_rules import TaxRule

logger = logging.getLogger(__name__)


class InconsistentHistory(RuntimeError):
    """A recorded sell exceeds the recorded buys: the history itself is broken."""


@dataclass(frozen=True)
class SellEvent:
    symbol: str
    quantity: int
    unit_price: Money
    commission: Money
    settlement_date: date
    is_simulated: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise TypeError(f"Sell quantity must be an integer, got {self.quantity!r}")
        if self.quantity <= 0:
            raise ValueError(f"Sell quantity must be positive, got {self.quantity}")


@dataclass(frozen=True)
class TradeResult:
    symbol: str
    quantity: int
    unit_price: Money
    commission: Money
    settlement_date: date
    is_simulated: bool
    fifo: tuple[FifoFragment, ...]

    cost_basis: Money
    acquisition_commission: Money
    revenue: Money
    local_revenue: Money
    profit: Money
    local_profit: Money
    tax_due: Money

    return_ratio: Decimal | None
    effective_tax_ratio: Decimal | None
    after_tax_return_ratio: Decimal | None

    @property
    def average_buy_price(self) -> Money:
        return Money(
            self.cost_basis.currency, self.cost_basis.amount / self.quantity,
        ).round_to_display()

    def to_dict(self) -> dict[str, Any]:
        """Plain data for the reporting layer. Money stays unrounded."""
        return {
            "symbol": self.symbol,
            "quantity": self.quantity,
            "sell_price": _money_dict(self.unit_price),
            "commission": _money_dict(self.commission),
            "settlement_date": self.settlement_date.isoformat(),
            "simulated": self.is_simulated,
            "fifo": [
                {
                    "quantity": f.quantity,
                    "price": _money_dict(f.price),
                    "date": f.acquisition_date.isoformat(),
                }
                for f in self.fifo
            ],
            "buy_price": _money_dict(self.average_buy_price),
            "cost_basis": _money_dict(self.cost_basis),
            "acquisition_commission": _money_dict(self.acquisition_commission),
            "revenue": _money_dict(self.revenue),
            "local_revenue": _money_dict(self.local_revenue),
            "profit": _money_dict(self.profit),
            "local_profit": _money_dict(self.local_profit),
            "tax_due": _money_dict(self.tax_due),
            "return_ratio": _ratio(self.return_ratio),
            "effective_tax_ratio": _ratio(self.effective_tax_ratio),
            "after_tax_return_ratio": _ratio(self.after_tax_return_ratio),
        }


class SettlementEngine:
    """Settles sells against an explicitly owned Lot Book."""

    def __init__(
        self,
        book: LotBook,
        converter: Converter,
        tax_rule: TaxRule,
    ) -> None:
        self._book = book
        self._converter = converter
        self._tax_rule = tax_rule
        self._tax_currency = intern_currency(tax_rule.currency)

    @property
    def book(self) -> LotBook:
        return self._book

    @property
    def tax_currency(self) -> str:
        return self._tax_currency

    def settle(self, event: SellEvent) -> TradeResult:
        """Consume lots for ``event`` and compute its result.

        Raises UnknownPosition / InsufficientQuantity for a bad request,
        ConversionUnavailable when a rate is missing. In every failure case
        the book is left as it was.
        """
        fragments = self._book.peek(event.symbol, event.quantity)
        result = self._calculate(event, fragments)
        self._book.consume(event.symbol, event.quantity)

        logger.info(
            "Settled %s%d %s @ %s: profit %s, local profit %s, tax %s",
            "simulated " if event.is_simulated else "",
            event.quantity, event.symbol, event.unit_price,
            result.profit.round_to_display(),
            result.local_profit.round_to_display(),
            result.tax_due,
        )
        return result

    def replay(self, events: Iterable[SellEvent]) -> list[TradeResult]:
        """Settle recorded sells in order against the live book."""
        results: list[TradeResult] = []
        for event in events:
            try:
                results.append(self.settle(event))
            except InsufficientQuantity as e:
                logger.error("Trade history is inconsistent: %s", e)
                raise InconsistentHistory(
                    f"Recorded sell on {event.settlement_date} exceeds recorded buys: {e}"
                ) from e
        return results

    def _calculate(self, event: SellEvent, fragments: list[FifoFragment]) -> TradeResult:
        currency = event.unit_price.currency
        convert = self._converter.convert

        cost_basis = Money.zero(currency)
        acquisition_commission = Money.zero(currency)
        for fragment in fragments:
            cost_basis += convert(fragment.cost, fragment.acquisition_date, currency)
            acquisition_commission += convert(
                fragment.commission_share, fragment.acquisition_date, currency,
            )
            logger.debug(
                "FIFO %s: %d @ %s from %s",
                event.symbol, fragment.quantity, fragment.price, fragment.acquisition_date,
            )

        commission = event.commission
        if commission.currency is not currency:
            commission = convert(commission, event.settlement_date, currency)

        revenue = event.unit_price.scale(event.quantity) - commission
        profit = revenue - cost_basis

        local_revenue = convert(revenue, event.settlement_date, self._tax_currency)
        local_profit = convert(profit, event.settlement_date, self._tax_currency)
        tax_due = self._tax_due(local_profit)

        return TradeResult(
            symbol=event.symbol,
            quantity=event.quantity,
            unit_price=event.unit_price,
            commission=event.commission,
            settlement_date=event.settlement_date,
            is_simulated=event.is_simulated,
            fifo=tuple(fragments),
            cost_basis=cost_basis,
            acquisition_commission=acquisition_commission,
            revenue=revenue,
            local_revenue=local_revenue,
            profit=profit,
            local_profit=local_profit,
            tax_due=tax_due,
            return_ratio=profit.ratio(cost_basis),
            effective_tax_ratio=(
                tax_due.ratio(local_profit) if local_profit.amount > 0 else None
            ),
            after_tax_return_ratio=(local_profit - tax_due).ratio(local_revenue),
        )

    def _tax_due(self, local_profit: Money) -> Money:
        return clamp_tax(self._tax_rule.tax_due(local_profit), self._tax_currency)


def clamp_tax(tax: Money, tax_currency: str) -> Money:
    """A loss generates no tax (and no refund)."""
    if tax.currency is not tax_currency:
        raise CurrencyMismatch(tax_currency, tax.currency)
    if tax.amount < 0:
        return Money.zero(tax_currency)
    return tax


class SettlementTotals:
    """Running totals over a sequence of trade results.

    Commission, revenue and profit stay per currency; local figures are
    single tax-currency amounts. Tax is assessed on the total local profit,
    not summed per trade, so gains and losses within the batch net out.
    """

    def __init__(self, tax_rule: TaxRule) -> None:
        self._tax_rule = tax_rule
        self._tax_currency = intern_currency(tax_rule.currency)
        self.commission = MultiCurrencyLedger()
        self.revenue = MultiCurrencyLedger()
        self.profit = MultiCurrencyLedger()
        self.local_revenue = Money.zero(self._tax_currency)
        self.local_profit = Money.zero(self._tax_currency)

    def add(self, result: TradeResult) -> None:
        self.commission.deposit(result.commission)
        self.revenue.deposit(result.revenue)
        self.profit.deposit(result.profit)
        self.local_revenue += result.local_revenue
        self.local_profit += result.local_profit

    def add_batch_commissions(
        self, commissions: MultiCurrencyLedger, as_of: date, converter: Converter,
    ) -> None:
        """Charges not tied to a single trade reduce profit at ``as_of``."""
        for _currency, commission in commissions:
            self.commission.deposit(commission)
            self.profit.withdraw(commission)
            self.local_profit -= converter.convert(commission, as_of, self._tax_currency)

    @property
    def tax_due(self) -> Money:
        return clamp_tax(self._tax_rule.tax_due(self.local_profit), self._tax_currency)

    def to_dict(self) -> dict[str, Any]:
        return {
            "commission": [_money_dict(m) for _c, m in self.commission],
            "revenue": [_money_dict(m) for _c, m in self.revenue],
            "local_revenue": _money_dict(self.local_revenue),
            "profit": [_money_dict(m) for _c, m in self.profit],
            "local_profit": _money_dict(self.local_profit),
            "tax_due": _money_dict(self.tax_due),
        }


def _money_dict(money: Money) -> dict[str, str]:
    return {"amount": str(money.amount), "currency": money.currency}


def _ratio(value: Decimal | None) -> str | None:
    return None if value is None else str(value)
