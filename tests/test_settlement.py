"""Tests for the settlement engine."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from conftest import FixedRateSource, day, eur, usd

from taxsim.currency.converter import ConversionUnavailable, CurrencyConverter
from taxsim.currency.money import Money
from taxsim.tax.lot_book import AcquisitionLot, InsufficientQuantity, LotBook, UnknownPosition
from taxsim.tax.settlement import (
    InconsistentHistory,
    SellEvent,
    SettlementEngine,
    SettlementTotals,
)
from taxsim.tax.tax_rules import FlatRateTaxRule


def _sell(
    quantity: int,
    price: Money,
    commission: Money,
    when: date,
    symbol: str = "X",
) -> SellEvent:
    return SellEvent(
        symbol=symbol,
        quantity=quantity,
        unit_price=price,
        commission=commission,
        settlement_date=when,
    )


class TestSameCurrency:
    def test_worked_example(
        self,
        two_lot_book: LotBook,
        usd_only_converter: CurrencyConverter,
        usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        engine = SettlementEngine(two_lot_book, usd_only_converter, usd_tax_rule)
        result = engine.settle(_sell(15, usd(150), usd(5), day(10)))

        assert [(f.quantity, f.price, f.acquisition_date) for f in result.fifo] == [
            (10, usd(100), day(1)),
            (5, usd(120), day(5)),
        ]
        assert result.cost_basis == usd(1600)
        assert result.revenue == usd(2245)
        assert result.profit == usd(645)
        assert result.local_revenue == usd(2245)
        assert result.local_profit == usd(645)
        assert result.tax_due == usd("83.85")
        assert result.return_ratio == Decimal("645") / Decimal("1600")
        assert result.effective_tax_ratio == Decimal("83.85") / Decimal("645")
        assert result.after_tax_return_ratio == (
            (Decimal("645") - Decimal("83.85")) / Decimal("2245")
        )
        assert result.average_buy_price == Money("USD", Decimal("106.67"))
        assert two_lot_book.open_quantity("X") == 5

    def test_loss_generates_no_tax_and_no_effective_rate(
        self,
        two_lot_book: LotBook,
        usd_only_converter: CurrencyConverter,
        usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        engine = SettlementEngine(two_lot_book, usd_only_converter, usd_tax_rule)
        result = engine.settle(_sell(10, usd(90), usd(0), day(10)))
        assert result.profit == usd(-100)
        assert result.tax_due == usd(0)
        assert result.effective_tax_ratio is None
        assert result.after_tax_return_ratio == Decimal("-100") / Decimal("900")

    def test_zero_profit_has_no_effective_rate(
        self,
        two_lot_book: LotBook,
        usd_only_converter: CurrencyConverter,
        usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        engine = SettlementEngine(two_lot_book, usd_only_converter, usd_tax_rule)
        result = engine.settle(_sell(10, usd(100), usd(0), day(10)))
        assert result.profit.is_zero()
        assert result.effective_tax_ratio is None

    def test_zero_revenue_and_zero_cost_do_not_crash(
        self, usd_only_converter: CurrencyConverter, usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        book = LotBook()
        book.add_lot(AcquisitionLot("GIFT", 5, usd(0), day(1)))
        engine = SettlementEngine(book, usd_only_converter, usd_tax_rule)
        result = engine.settle(_sell(5, usd(0), usd(0), day(2), symbol="GIFT"))
        assert result.return_ratio is None
        assert result.after_tax_return_ratio is None

    def test_negative_rule_output_is_clamped(
        self, two_lot_book: LotBook, usd_only_converter: CurrencyConverter,
    ) -> None:
        class RefundRule:
            currency = "USD"

            def tax_due(self, local_profit: Money) -> Money:
                return Money("USD", local_profit.amount * Decimal("0.1"))

        engine = SettlementEngine(two_lot_book, usd_only_converter, RefundRule())
        result = engine.settle(_sell(10, usd(50), usd(0), day(10)))
        assert result.tax_due == usd(0)


class TestMultiCurrency:
    def _engine(self, book: LotBook) -> SettlementEngine:
        # 1 EUR = 1.00 USD on day 1, 1.25 USD on day 5, 2.00 USD on day 10
        source = FixedRateSource(dated={
            ("USD", day(1)): Decimal("1.00"),
            ("USD", day(5)): Decimal("1.25"),
            ("USD", day(10)): Decimal("2.00"),
            ("RUB", day(1)): Decimal("100"),
            ("RUB", day(10)): Decimal("100"),
        })
        return SettlementEngine(
            book, CurrencyConverter(source), FlatRateTaxRule("EUR", Decimal("0.25")),
        )

    def test_cost_basis_converted_per_fragment_at_acquisition_date(self) -> None:
        book = LotBook()
        book.add_lot(AcquisitionLot("X", 10, eur(100), day(1)))
        book.add_lot(AcquisitionLot("X", 10, eur(100), day(5)))
        result = self._engine(book).settle(_sell(15, usd(300), usd(0), day(10)))

        # 10 x 100 EUR @1.00 + 5 x 100 EUR @1.25, never the 1500 EUR sum at one rate
        assert result.cost_basis == usd("1625")
        assert result.revenue == usd(4500)
        assert result.profit == usd("2875")

    def test_realized_figures_use_settlement_date(self) -> None:
        book = LotBook()
        book.add_lot(AcquisitionLot("X", 10, usd(100), day(1)))
        result = self._engine(book).settle(_sell(10, usd(150), usd(0), day(10)))
        assert result.profit == usd(500)
        assert result.local_revenue == eur(750)
        assert result.local_profit == eur(250)
        assert result.tax_due == eur("62.50")

    def test_commission_in_other_currency_converted_at_settlement(self) -> None:
        book = LotBook()
        book.add_lot(AcquisitionLot("X", 10, usd(100), day(1)))
        result = self._engine(book).settle(_sell(10, usd(150), eur(5), day(10)))
        assert result.commission == eur(5)
        assert result.revenue == usd(1490)

    def test_acquisition_commission_reported_separately(self) -> None:
        book = LotBook()
        book.add_lot(AcquisitionLot("X", 10, usd(100), day(1), commission=eur(4)))
        result = self._engine(book).settle(_sell(5, usd(150), usd(0), day(10)))
        assert result.acquisition_commission == usd(2)
        assert result.cost_basis == usd(500)

    def test_missing_rate_leaves_book_untouched(self) -> None:
        book = LotBook()
        book.add_lot(AcquisitionLot("X", 10, Money("GBP", Decimal("100")), day(1)))
        with pytest.raises(ConversionUnavailable, match="GBP"):
            self._engine(book).settle(_sell(5, usd(150), usd(0), day(10)))
        assert book.open_quantity("X") == 10


class TestErrors:
    def test_unknown_position(
        self, usd_only_converter: CurrencyConverter, usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        engine = SettlementEngine(LotBook(), usd_only_converter, usd_tax_rule)
        with pytest.raises(UnknownPosition):
            engine.settle(_sell(1, usd(1), usd(0), day(2)))

    def test_oversell_leaves_book_unchanged(
        self,
        two_lot_book: LotBook,
        usd_only_converter: CurrencyConverter,
        usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        engine = SettlementEngine(two_lot_book, usd_only_converter, usd_tax_rule)
        engine.settle(_sell(5, usd(150), usd(0), day(10)))
        with pytest.raises(InsufficientQuantity):
            engine.settle(_sell(20, usd(150), usd(0), day(11)))
        assert two_lot_book.open_quantity("X") == 15

    def test_sell_event_requires_positive_integer_quantity(self) -> None:
        with pytest.raises(ValueError):
            _sell(0, usd(1), usd(0), day(1))
        with pytest.raises(TypeError):
            _sell(1.5, usd(1), usd(0), day(1))  # type: ignore[arg-type]


class TestReplay:
    def test_replay_in_order(
        self,
        two_lot_book: LotBook,
        usd_only_converter: CurrencyConverter,
        usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        engine = SettlementEngine(two_lot_book, usd_only_converter, usd_tax_rule)
        results = engine.replay([
            _sell(5, usd(150), usd(0), day(10)),
            _sell(10, usd(150), usd(0), day(11)),
        ])
        assert [r.fifo[0].acquisition_date for r in results] == [day(1), day(1)]
        assert [f.quantity for f in results[1].fifo] == [5, 5]
        assert two_lot_book.open_quantity("X") == 5

    def test_replay_oversell_is_inconsistent_history(
        self,
        two_lot_book: LotBook,
        usd_only_converter: CurrencyConverter,
        usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        engine = SettlementEngine(two_lot_book, usd_only_converter, usd_tax_rule)
        with pytest.raises(InconsistentHistory):
            engine.replay([_sell(25, usd(150), usd(0), day(10))])


class TestTotals:
    def test_totals_accumulate_and_tax_nets_gains_and_losses(
        self, usd_only_converter: CurrencyConverter, usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        book = LotBook()
        book.add_lot(AcquisitionLot("X", 10, usd(100), day(1)))
        book.add_lot(AcquisitionLot("Y", 10, usd(100), day(1)))
        engine = SettlementEngine(book, usd_only_converter, usd_tax_rule)

        totals = SettlementTotals(usd_tax_rule)
        totals.add(engine.settle(_sell(10, usd(150), usd(1), day(10))))
        totals.add(engine.settle(_sell(10, usd(80), usd(1), day(10), symbol="Y")))

        assert totals.commission.get("USD") == usd(2)
        assert totals.revenue.get("USD") == usd(2298)
        assert totals.profit.get("USD") == usd(298)
        assert totals.local_profit == usd(298)
        assert totals.tax_due == usd("38.74")

    def test_batch_commissions_reduce_profit(
        self, usd_only_converter: CurrencyConverter, usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        from taxsim.currency.cash_ledger import MultiCurrencyLedger

        totals = SettlementTotals(usd_tax_rule)
        extra = MultiCurrencyLedger()
        extra.deposit(usd(10))
        totals.add_batch_commissions(extra, day(10), usd_only_converter)
        assert totals.commission.get("USD") == usd(10)
        assert totals.profit.get("USD") == usd(-10)
        assert totals.local_profit == usd(-10)
        assert totals.tax_due == usd(0)


class TestToDict:
    def test_plain_data(
        self,
        two_lot_book: LotBook,
        usd_only_converter: CurrencyConverter,
        usd_tax_rule: FlatRateTaxRule,
    ) -> None:
        engine = SettlementEngine(two_lot_book, usd_only_converter, usd_tax_rule)
        data = engine.settle(_sell(10, usd(90), usd(0), day(10))).to_dict()
        assert data["symbol"] == "X"
        assert data["fifo"] == [
            {"quantity": 10, "price": {"amount": "100", "currency": "USD"}, "date": "2024-01-01"},
        ]
        assert data["effective_tax_ratio"] is None
        assert data["settlement_date"] == date(2024, 1, 10).isoformat()
