"""Sell simulation: what-if disposal of open positions at current quotes.

The whole batch is validated before any quote is fetched or any lot is
touched, then run against a disposable copy of the Lot Book: the caller's
book never observes a simulated sell.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any

from taxsim.currency.cash_ledger import MultiCurrencyLedger
from taxsim.fee.commissions import CommissionCalc
from taxsim.tax.lot_book import InsufficientQuantity, UnknownPosition
from taxsim.tax.settlement import SellEvent, SettlementEngine, SettlementTotals

if TYPE_CHECKING:
    from collections.abc import Sequence

    from taxsim.currency.converter import Converter
    from taxsim.fee.commissions import FeeSchedule
    from taxsim.quotes import Quotes
    from taxsim.tax.lot_book import LotBook
    from taxsim.tax.settlement import TradeResult
    from taxsim.tax.tax_rules import TaxRule

logger = logging.getLogger(__name__)


@dataclass
class SimulationReport:
    as_of: date
    results: list[TradeResult]
    totals: SettlementTotals
    additional_commissions: MultiCurrencyLedger = field(default_factory=MultiCurrencyLedger)

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "trades": [r.to_dict() for r in self.results],
            "additional_commissions": [
                {"amount": str(m.amount), "currency": m.currency}
                for _c, m in self.additional_commissions
            ],
            "totals": self.totals.to_dict(),
        }


def resolve_positions(
    book: LotBook, positions: Sequence[tuple[str, int | None]],
) -> list[tuple[str, int]]:
    """Resolve omitted quantities to the full open position and validate the batch.

    A symbol listed more than once is checked against the sum of its requests.
    """
    for symbol, _quantity in positions:
        if book.open_quantity(symbol) == 0:
            raise UnknownPosition(symbol)

    resolved: list[tuple[str, int]] = []
    requested: dict[str, int] = {}
    for symbol, quantity in positions:
        if quantity is None:
            quantity = book.open_quantity(symbol)
        elif quantity <= 0:
            raise ValueError(f"Invalid quantity to sell for {symbol!r}: {quantity}")

        requested[symbol] = requested.get(symbol, 0) + quantity
        available = book.open_quantity(symbol)
        if requested[symbol] > available:
            raise InsufficientQuantity(symbol, requested[symbol], available)
        resolved.append((symbol, quantity))

    return resolved


def simulate_sells(
    book: LotBook,
    positions: Sequence[tuple[str, int | None]],
    quotes: Quotes,
    converter: Converter,
    tax_rule: TaxRule,
    fee_schedule: FeeSchedule,
    as_of: date | None = None,
) -> SimulationReport:
    """Simulate selling ``positions`` today at current market prices."""
    today = as_of or date.today()
    resolved = resolve_positions(book, positions)

    quotes.batch({symbol for symbol, _ in resolved})
    prices = {symbol: quotes.get(symbol) for symbol, _ in resolved}
    settlement_currencies = {price.currency for price in prices.values()}
    settlement_currencies.add(tax_rule.currency)
    if fee_schedule.currency is not None:
        settlement_currencies.add(fee_schedule.currency)
    _prefetch_rates(book, resolved, converter, settlement_currencies, today)

    sandbox = book.copy()
    engine = SettlementEngine(sandbox, converter, tax_rule)
    commissions = CommissionCalc(fee_schedule, converter)

    results: list[TradeResult] = []
    for symbol, quantity in resolved:
        price = prices[symbol]
        commission = commissions.commission_for(
            symbol, quantity, price, as_of=today, is_simulated=True,
        )
        event = SellEvent(
            symbol=symbol,
            quantity=quantity,
            unit_price=price,
            commission=commission,
            settlement_date=today,
            is_simulated=True,
        )
        results.append(engine.settle(event))

    additional = commissions.additional_commissions()
    totals = SettlementTotals(tax_rule)
    for result in results:
        totals.add(result)
    totals.add_batch_commissions(additional, today, converter)

    logger.info(
        "Simulated %d sell(s) on %s: local profit %s, tax %s",
        len(results), today, totals.local_profit.round_to_display(), totals.tax_due,
    )
    return SimulationReport(
        as_of=today, results=results, totals=totals, additional_commissions=additional,
    )


def _prefetch_rates(
    book: LotBook,
    resolved: list[tuple[str, int]],
    converter: Converter,
    settlement_currencies: set[str],
    today: date,
) -> None:
    """Warm every rate the batch will need: lot currencies at their
    acquisition dates, and quote, fee and tax currencies at ``today``."""
    prefetch = getattr(converter, "prefetch", None)
    if prefetch is None:
        return

    totals: dict[str, int] = {}
    for symbol, quantity in resolved:
        totals[symbol] = totals.get(symbol, 0) + quantity

    pairs = {
        (fragment.price.currency, fragment.acquisition_date)
        for symbol, quantity in totals.items()
        for fragment in book.peek(symbol, quantity)
    }
    pairs.update((currency, today) for currency in settlement_currencies)
    prefetch(pairs)
