"""Commission accrual: broker fee schedules applied to real and simulated trades.

A FeeSchedule prices one trade. CommissionCalc applies it to a stream of
trades, keeps a running per-currency total, and derives the charges that
only exist at batch level (a broker's daily minimum is topped up once per
trading day, not per trade). Those extra charges are reported once in
aggregate, separate from the per-trade commissions embedded in each result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from taxsim.currency.cash_ledger import MultiCurrencyLedger
from taxsim.currency.money import CurrencyMismatch, Money, intern_currency, round_amount

if TYPE_CHECKING:
    from datetime import date

    from taxsim.currency.converter import Converter

logger = logging.getLogger(__name__)

_BPS = Decimal("10000")


class FeeSchedule(Protocol):
    currency: str | None

    def commission_for(
        self, symbol: str, quantity: int, price: Money, is_simulated: bool,
    ) -> Money: ...

    def daily_top_up(self, day_total: Money) -> Money: ...


@dataclass(frozen=True)
class CommissionSpec:
    """Per-trade fee: per-share + basis points of notional, floored and capped.

    ``currency`` None means fees are charged in the trade's own currency.
    A fixed currency (e.g. a USD-denominated broker fee on EUR trades)
    requires prices converted into it first; CommissionCalc does that.
    """

    currency: str | None = None
    per_share: Decimal = Decimal("0")
    percent_bps: Decimal = Decimal("0")
    minimum: Decimal = Decimal("0")
    maximum_pct: Decimal | None = None  # cap as a fraction of notional
    daily_minimum: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        if self.currency is not None:
            object.__setattr__(self, "currency", intern_currency(self.currency))
        for name in ("per_share", "percent_bps", "minimum", "daily_minimum"):
            if getattr(self, name) < 0:
                raise ValueError(f"Commission {name} must be >= 0")

    def commission_for(
        self, symbol: str, quantity: int, price: Money, is_simulated: bool,
    ) -> Money:
        # Simulated trades are priced exactly like real ones.
        if self.currency is not None and price.currency is not self.currency:
            raise CurrencyMismatch(self.currency, price.currency)

        notional = price.amount * quantity
        fee = self.per_share * quantity + notional * self.percent_bps / _BPS
        fee = max(fee, self.minimum)
        if self.maximum_pct is not None:
            fee = min(fee, notional * self.maximum_pct)
        return Money(price.currency, round_amount(fee))

    def daily_top_up(self, day_total: Money) -> Money:
        """Extra charge to bring a day's commissions up to the daily minimum."""
        shortfall = self.daily_minimum - day_total.amount
        if day_total.amount == 0 or shortfall <= 0:
            return Money.zero(day_total.currency)
        return Money(day_total.currency, shortfall)


class CommissionCalc:
    """Applies a fee schedule to trades and accrues the results.

    Usage:
        calc = CommissionCalc(spec, converter)
        fee = calc.commission_for("AAPL", 10, price, as_of=today, is_simulated=True)
        ...
        extra = calc.additional_commissions()
    """

    def __init__(self, schedule: FeeSchedule, converter: Converter | None = None) -> None:
        self._schedule = schedule
        self._converter = converter
        self._accrued = MultiCurrencyLedger()
        self._daily: dict[tuple[date, str], Decimal] = {}

    @property
    def accrued(self) -> MultiCurrencyLedger:
        """Running total of every per-trade commission computed so far."""
        return self._accrued.copy()

    def commission_for(
        self,
        symbol: str,
        quantity: int,
        price: Money,
        as_of: date,
        is_simulated: bool = False,
    ) -> Money:
        fee_currency = self._schedule.currency
        if fee_currency is not None and price.currency is not fee_currency:
            if self._converter is None:
                raise CurrencyMismatch(fee_currency, price.currency)
            price = self._converter.convert(price, as_of, fee_currency)

        commission = self._schedule.commission_for(symbol, quantity, price, is_simulated)
        self._accrued.deposit(commission)
        key = (as_of, commission.currency)
        self._daily[key] = self._daily.get(key, Decimal("0")) + commission.amount

        logger.debug("Commission for %d %s @ %s: %s", quantity, symbol, price, commission)
        return commission

    def additional_commissions(self) -> MultiCurrencyLedger:
        """Batch-level charges on top of the per-trade commissions."""
        extra = MultiCurrencyLedger()
        for (day, currency), total in self._daily.items():
            top_up = self._schedule.daily_top_up(Money(currency, total))
            if not top_up.is_zero():
                logger.info("Daily minimum top-up on %s: %s", day, top_up)
                extra.deposit(top_up)
        return extra
