"""
money.py - Fixed-Point Money Value Type

Every amount in the engine flows through Money: instrument principal and fees,
transaction amounts, firm-account movements, advance credits and accrued
interest. Money wraps decimal.Decimal and is never backed by a binary float,
so years of repeated subtraction cannot accumulate representation error.

Precision policy:
    - Arithmetic keeps full Decimal precision (intermediate accrual figures).
    - rounded() applies banker's rounding (ROUND_HALF_EVEN) to 2 places and is
      called wherever a Transaction amount is materialised.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN, getcontext
from typing import Any, Iterable, Union


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# The engine requires deterministic Decimal arithmetic. The global context is
# configured at module load time; no other code should modify it. Use
# decimal.localcontext() if a different context is ever needed locally.
#
#   - prec=50: ample headroom for rate * days / 365 style products
#   - rounding=ROUND_HALF_EVEN: banker's rounding (unbiased)
#
_LENDBOOK_DECIMAL_CONTEXT = getcontext()
_LENDBOOK_DECIMAL_CONTEXT.prec = 50
_LENDBOOK_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# Number of decimal places for a materialised amount.
MONEY_PLACES = 2
MONEY_QUANTUM = Decimal(10) ** -MONEY_PLACES

MoneyLike = Union["Money", Decimal, int, float, str]


def _to_decimal(value: Any) -> Decimal:
    """Convert a supported scalar to Decimal, routing floats through str()."""
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Cannot interpret {value!r} as an amount")
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip().replace(",", ""))
        except InvalidOperation:
            raise ValueError(f"Cannot interpret {value!r} as an amount") from None
    else:
        raise ValueError(f"Cannot interpret {value!r} as an amount")
    if result.is_nan() or result.is_infinite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


@dataclass(frozen=True, slots=True, order=True)
class Money:
    """
    Immutable fixed-point amount.

    Attributes:
        amount: The Decimal value. May carry more than 2 places while it is an
                intermediate figure; call rounded() to materialise it.

    Example:
        principal = Money.of("1000")
        interest = principal.scale(Decimal("10"), 100).rounded()   # 100.00
        remaining = (principal - interest).clamp_non_negative()
    """
    amount: Decimal

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', _to_decimal(self.amount))
        if self.amount.is_nan() or self.amount.is_infinite():
            raise ValueError(f"Money amount must be finite, got {self.amount}")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def of(cls, value: MoneyLike) -> Money:
        """Build Money from Money, Decimal, int, float (via str) or str."""
        if isinstance(value, Money):
            return value
        return cls(_to_decimal(value))

    @classmethod
    def zero(cls) -> Money:
        return cls(Decimal("0"))

    @staticmethod
    def sum(values: Iterable[Money]) -> Money:
        total = Decimal("0")
        for value in values:
            total += value.amount
        return Money(total)

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount + other.amount)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount - other.amount)

    def __neg__(self) -> Money:
        return Money(-self.amount)

    def scale(self, numerator: Any, denominator: Any = 1) -> Money:
        """
        Multiply by the rational numerator / denominator.

        Used for interest math (rate / 100, days / 365, ...). The result keeps
        full precision; round it when it becomes a recorded amount.

        Raises:
            ZeroDivisionError: If denominator is zero.
        """
        num = _to_decimal(numerator)
        den = _to_decimal(denominator)
        if den == 0:
            raise ZeroDivisionError("Money.scale denominator cannot be zero")
        return Money(self.amount * num / den)

    def times_sign(self, sign: int) -> Money:
        """Signed contribution of this amount (sign is -1, 0 or +1)."""
        return Money(self.amount * sign)

    # ------------------------------------------------------------------
    # Rounding and clamps
    # ------------------------------------------------------------------

    def rounded(self) -> Money:
        """Banker's rounding to MONEY_PLACES decimal places."""
        return Money(self.amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN))

    def clamp_non_negative(self) -> Money:
        """max(0, self)."""
        if self.amount < 0:
            return Money.zero()
        return self

    def has_sub_cent_precision(self) -> bool:
        """True if the amount cannot be represented in MONEY_PLACES places."""
        return self.amount != self.amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN)

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def within(self, epsilon: Money) -> bool:
        """True if |self| <= epsilon."""
        return abs(self.amount) <= epsilon.amount

    def __str__(self) -> str:
        return format(self.rounded().amount, 'f')

    def __repr__(self) -> str:
        return f"Money({format(self.amount, 'f')})"


def min_of(a: Money, b: Money) -> Money:
    return a if a <= b else b


def max_of(a: Money, b: Money) -> Money:
    return a if a >= b else b
