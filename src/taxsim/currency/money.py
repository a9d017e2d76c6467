"""Money: an exact decimal amount tagged with a currency code.

Currency codes are interned once through a small name table so every Money
carries the canonical string object for its currency. Two amounts are only
combined directly when their currencies match; crossing currencies always
goes through a dated conversion (see converter.py).

Rounding happens only at presentation boundaries via round_to_display().
Intermediate sums keep full precision so many lots never compound error.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_DISPLAY_QUANTUM = Decimal("0.01")

_CURRENCY_NAMES: dict[str, str] = {}


class CurrencyMismatch(ValueError):
    """Raised when arithmetic or ordering is attempted across currencies."""

    def __init__(self, left: str, right: str) -> None:
        super().__init__(f"Currency mismatch: {left} vs {right}")
        self.left = left
        self.right = right


def intern_currency(code: str) -> str:
    """Return the canonical object for a currency code.

    Codes must be upper-case letters; "usd" is invalid and is rejected, never
    upper-cased.
    """
    cached = _CURRENCY_NAMES.get(code)
    if cached is not None:
        return cached
    if not code or not code.isalpha() or not code.isupper():
        raise ValueError(f"Invalid currency code: {code!r}")
    _CURRENCY_NAMES[code] = code
    return code


def round_amount(amount: Decimal) -> Decimal:
    """Round half-up to two fractional digits."""
    return amount.quantize(_DISPLAY_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    currency: str
    amount: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "currency", intern_currency(self.currency))
        if not isinstance(self.amount, Decimal):
            # int is exact; floats must be passed as strings or Decimals
            if isinstance(self.amount, bool) or not isinstance(self.amount, int):
                raise TypeError(f"Money amount must be Decimal or int, got {self.amount!r}")
            object.__setattr__(self, "amount", Decimal(self.amount))

    @classmethod
    def zero(cls, currency: str) -> Money:
        return cls(currency, Decimal("0"))

    @classmethod
    def from_string(cls, currency: str, amount: str) -> Money:
        try:
            value = Decimal(amount)
        except InvalidOperation as e:
            raise ValueError(f"Invalid cash amount: {amount!r}") from e
        if not value.is_finite():
            raise ValueError(f"Invalid cash amount: {amount!r}")
        return cls(currency, value)

    def _check(self, other: Money) -> None:
        # Interned codes make this an identity check
        if self.currency is not other.currency:
            raise CurrencyMismatch(self.currency, other.currency)

    def add(self, other: Money) -> Money:
        self._check(other)
        return Money(self.currency, self.amount + other.amount)

    def sub(self, other: Money) -> Money:
        self._check(other)
        return Money(self.currency, self.amount - other.amount)

    def scale(self, quantity: int) -> Money:
        """Multiply by an integer count (unit price x quantity)."""
        return Money(self.currency, self.amount * quantity)

    def round_to_display(self) -> Money:
        return Money(self.currency, round_amount(self.amount))

    def ratio(self, denominator: Money) -> Decimal | None:
        """self / denominator as a plain Decimal, None when the denominator is zero."""
        self._check(denominator)
        if denominator.amount == 0:
            return None
        return self.amount / denominator.amount

    def is_zero(self) -> bool:
        return self.amount == 0

    def __add__(self, other: Money) -> Money:
        return self.add(other)

    def __sub__(self, other: Money) -> Money:
        return self.sub(other)

    def __mul__(self, quantity: int) -> Money:
        return self.scale(quantity)

    __rmul__ = __mul__

    def __neg__(self) -> Money:
        return Money(self.currency, -self.amount)

    def __lt__(self, other: Money) -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        self._check(other)
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        self._check(other)
        return self.amount > other.amount

    def __ge__(self, other: Money) -> bool:
        self._check(other)
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"
