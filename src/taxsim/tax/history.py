"""Trade history provider: recorded buys and sells in a neutral JSON form.

Broker statement parsing happens elsewhere; this module only reads the
already-normalised result:

    {
      "buys": [{"symbol": "AAPL", "quantity": 10, "price": "150.00",
                "currency": "USD", "date": "2024-03-01", "commission": "1.00"}],
      "sells": [{"symbol": "AAPL", "quantity": 4, "price": "170.00",
                 "currency": "USD", "date": "2024-06-01", "commission": "1.00"}]
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from taxsim.currency.money import Money
from taxsim.tax.lot_book import AcquisitionLot, LotBook
from taxsim.tax.settlement import SellEvent

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


class HistoryError(ValueError):
    """The history file is malformed."""


@dataclass
class TradeHistory:
    buys: list[AcquisitionLot] = field(default_factory=list)
    sells: list[SellEvent] = field(default_factory=list)

    def build_book(self) -> LotBook:
        """A fresh Lot Book holding every recorded buy, oldest first."""
        book = LotBook()
        for lot in sorted(self.buys, key=lambda x: x.acquisition_date):
            # Lots are mutated by consumption; the history keeps its own copies
            book.add_lot(AcquisitionLot(
                symbol=lot.symbol,
                quantity=lot.quantity,
                unit_price=lot.unit_price,
                acquisition_date=lot.acquisition_date,
                commission=lot.commission,
            ))
        return book

    def ordered_sells(self) -> list[SellEvent]:
        return sorted(self.sells, key=lambda x: x.settlement_date)

    def open_positions(self) -> dict[str, int]:
        """Bought minus sold per symbol, fully closed symbols omitted."""
        positions: dict[str, int] = {}
        for lot in self.buys:
            positions[lot.symbol] = positions.get(lot.symbol, 0) + lot.quantity
        for sell in self.sells:
            positions[sell.symbol] = positions.get(sell.symbol, 0) - sell.quantity
        return {symbol: qty for symbol, qty in positions.items() if qty != 0}

    @classmethod
    def load(cls, path: Path) -> TradeHistory:
        """Load history from JSON. A missing file means an empty portfolio."""
        if not path.exists():
            logger.info("No trade history at %s, starting empty", path)
            return cls()

        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise HistoryError(f"{path}: invalid JSON: {e}") from e

        try:
            history = cls(
                buys=[_parse_buy(item) for item in data.get("buys", [])],
                sells=[_parse_sell(item) for item in data.get("sells", [])],
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise HistoryError(f"{path}: malformed trade record: {e!r}") from e

        logger.info(
            "Trade history loaded from %s (%d buys, %d sells)",
            path, len(history.buys), len(history.sells),
        )
        return history


def _parse_buy(d: dict) -> AcquisitionLot:  # type: ignore[type-arg]
    price, commission = _prices(d)
    return AcquisitionLot(
        symbol=d["symbol"],
        quantity=int(d["quantity"]),
        unit_price=price,
        acquisition_date=date.fromisoformat(d["date"]),
        commission=commission,
    )


def _parse_sell(d: dict) -> SellEvent:  # type: ignore[type-arg]
    price, commission = _prices(d)
    return SellEvent(
        symbol=d["symbol"],
        quantity=int(d["quantity"]),
        unit_price=price,
        commission=commission,
        settlement_date=date.fromisoformat(d["date"]),
    )


def _prices(d: dict) -> tuple[Money, Money]:  # type: ignore[type-arg]
    currency = d["currency"]
    price = Money(currency, Decimal(str(d["price"])))
    commission = Money(
        d.get("commission_currency", currency), Decimal(str(d.get("commission", "0"))),
    )
    return price, commission
