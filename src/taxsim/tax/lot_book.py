"""Lot Book: per-symbol FIFO queues of acquisition lots.

Lots are kept in acquisition order per symbol. A sell consumes from the
front of the queue (oldest first), splitting the last lot it touches.
The only mutation a lot ever sees is its quantity going down; a lot whose
quantity reaches zero is dropped from its queue.
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from taxsim.currency.money import Money

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


class UnknownPosition(LookupError):
    """The symbol has no open lots."""

    def __init__(self, symbol: str) -> None:
        super().__init__(f"The portfolio has no open {symbol!r} positions")
        self.symbol = symbol


class InsufficientQuantity(ValueError):
    """More shares were requested than the open lots hold."""

    def __init__(self, symbol: str, requested: int, available: int) -> None:
        super().__init__(
            f"Cannot sell {requested} {symbol}: only {available} available in open lots"
        )
        self.symbol = symbol
        self.requested = requested
        self.available = available


@dataclass
class AcquisitionLot:
    """A single buy tracked until fully sold."""

    symbol: str
    quantity: int
    unit_price: Money
    acquisition_date: date
    # Buy commission for the whole lot, prorated onto fragments on consumption
    commission: Money | None = None
    original_quantity: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise TypeError(f"Lot quantity must be an integer, got {self.quantity!r}")
        if self.quantity <= 0:
            raise ValueError(f"Lot quantity must be positive, got {self.quantity}")
        if self.original_quantity == 0:
            self.original_quantity = self.quantity
        if self.commission is None:
            self.commission = Money.zero(self.unit_price.currency)

    def commission_share(self, quantity: int) -> Money:
        """Buy commission attributable to ``quantity`` shares of this lot."""
        assert self.commission is not None
        amount = self.commission.amount * quantity / self.original_quantity
        return Money(self.commission.currency, amount)


@dataclass(frozen=True)
class FifoFragment:
    """Part of a lot consumed by one sell."""

    quantity: int
    price: Money
    acquisition_date: date
    commission_share: Money

    @property
    def cost(self) -> Money:
        return self.price.scale(self.quantity)


class LotBook:
    """Symbol -> FIFO queue of AcquisitionLots.

    Invariants: per symbol, the sum of lot quantities is the open position;
    no queued lot has a non-positive quantity; an empty queue is removed so
    the symbol becomes unknown to the book.
    """

    def __init__(self) -> None:
        self._lots: dict[str, deque[AcquisitionLot]] = {}

    def add_lot(self, lot: AcquisitionLot) -> AcquisitionLot:
        """Append a lot, keeping the symbol's queue in acquisition order.

        Lots normally arrive chronologically; an out-of-order lot is placed
        after every lot with an acquisition date on or before its own.
        """
        queue = self._lots.setdefault(lot.symbol, deque())
        if queue and queue[-1].acquisition_date > lot.acquisition_date:
            index = len(queue)
            while index > 0 and queue[index - 1].acquisition_date > lot.acquisition_date:
                index -= 1
            queue.insert(index, lot)
        else:
            queue.append(lot)

        logger.debug(
            "Lot added: %d %s @ %s on %s",
            lot.quantity, lot.symbol, lot.unit_price, lot.acquisition_date,
        )
        return lot

    def open_quantity(self, symbol: str) -> int:
        queue = self._lots.get(symbol)
        if not queue:
            return 0
        return sum(lot.quantity for lot in queue)

    def open_positions(self) -> dict[str, int]:
        return {symbol: self.open_quantity(symbol) for symbol in self._lots}

    def symbols(self) -> list[str]:
        return list(self._lots)

    def lots(self, symbol: str) -> list[AcquisitionLot]:
        return list(self._lots.get(symbol, ()))

    def peek(self, symbol: str, quantity: int) -> list[FifoFragment]:
        """Fragments a consume() of ``quantity`` would return, without mutating."""
        if quantity <= 0:
            raise ValueError(f"Sell quantity must be positive, got {quantity}")

        queue = self._lots.get(symbol)
        if not queue:
            raise UnknownPosition(symbol)

        available = sum(lot.quantity for lot in queue)
        if quantity > available:
            raise InsufficientQuantity(symbol, quantity, available)

        remaining = quantity
        fragments: list[FifoFragment] = []
        for lot in queue:
            if remaining == 0:
                break
            taken = min(remaining, lot.quantity)
            fragments.append(FifoFragment(
                quantity=taken,
                price=lot.unit_price,
                acquisition_date=lot.acquisition_date,
                commission_share=lot.commission_share(taken),
            ))
            remaining -= taken
        return fragments

    def consume(self, symbol: str, quantity: int) -> list[FifoFragment]:
        """Take ``quantity`` shares from the oldest lots first.

        Nothing is mutated unless the whole quantity can be served.
        """
        fragments = self.peek(symbol, quantity)
        queue = self._lots[symbol]

        for fragment in fragments:
            lot = queue[0]
            if fragment.quantity == lot.quantity:
                queue.popleft()
            else:
                lot.quantity -= fragment.quantity

        if not queue:
            del self._lots[symbol]

        logger.debug("Consumed %d %s in %d fragment(s)", quantity, symbol, len(fragments))
        return fragments

    def copy(self) -> LotBook:
        """Independent copy: consuming from it never touches this book."""
        clone = LotBook()
        clone._lots = {
            symbol: deque(replace(lot) for lot in queue)
            for symbol, queue in self._lots.items()
        }
        return clone

    # --- Persistence ---

    def save(self, path: Path) -> None:
        """Save lots to JSON using an atomic write (temp + rename + fsync)."""
        import os
        import tempfile

        data = [_lot_to_dict(lot) for queue in self._lots.values() for lot in queue]
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            logger.info("Lot book saved to %s (%d lots)", path, len(data))
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

    @classmethod
    def load(cls, path: Path) -> LotBook:
        """Load lots from JSON. A missing file yields an empty book."""
        book = cls()
        if not path.exists():
            logger.info("No lot file at %s, starting empty", path)
            return book
        with open(path) as f:
            data = json.load(f)
        for item in data:
            book.add_lot(_dict_to_lot(item))
        logger.info("Lot book loaded from %s (%d lots)", path, len(data))
        return book


def _lot_to_dict(lot: AcquisitionLot) -> dict:  # type: ignore[type-arg]
    assert lot.commission is not None
    return {
        "symbol": lot.symbol,
        "quantity": lot.quantity,
        "original_quantity": lot.original_quantity,
        "price": str(lot.unit_price.amount),
        "currency": lot.unit_price.currency,
        "date": lot.acquisition_date.isoformat(),
        "commission": str(lot.commission.amount),
        "commission_currency": lot.commission.currency,
    }


def _dict_to_lot(d: dict) -> AcquisitionLot:  # type: ignore[type-arg]
    currency = d["currency"]
    commission_currency = d.get("commission_currency", currency)
    return AcquisitionLot(
        symbol=d["symbol"],
        quantity=int(d["quantity"]),
        unit_price=Money(currency, Decimal(d["price"])),
        acquisition_date=date.fromisoformat(d["date"]),
        commission=Money(commission_currency, Decimal(d.get("commission", "0"))),
        original_quantity=int(d.get("original_quantity", 0)),
    )
