"""
accrual.py - Interest Accrual on Outstanding Principal

Pure functions only: no store, no hidden state. All inputs are explicit so
each calculation is trivially testable.

Interest modes:
    NONE:    no interest
    FLAT:    principal * rate / 100, once, regardless of elapsed time
    DAILY:   principal * rate / 100 * days / 365
    MONTHLY: principal * rate / 100 * (whole_months + fractional_days / 30)

Elapsed months use a 30-day month with day-of-month borrow (day 31 counts as
day 30), so the fractional part always lies in [0, 30):

    2025-01-15 -> 2025-03-15   whole_months=2, fractional_month_days=0
    2025-01-31 -> 2025-03-01   whole_months=1, fractional_month_days=1
    2025-01-20 -> 2025-03-05   whole_months=1, fractional_month_days=15

Interest always accrues on the *current* outstanding principal, measured from
the instrument's origin date. Results are rounded to 2 places.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from .core import Instrument, InterestMode
from .money import Money


DAYS_PER_YEAR = Decimal("365")
DAYS_PER_MONTH = Decimal("30")
PERCENT = Decimal("100")

# Source vocabulary -> InterestMode. "simple" is the legacy name for day-based interest.
_INTEREST_MODE_ALIASES = {
    "": InterestMode.NONE,
    "none": InterestMode.NONE,
    "simple": InterestMode.DAILY,
    "daily": InterestMode.DAILY,
    "monthly": InterestMode.MONTHLY,
    "flat": InterestMode.FLAT,
}


# ============================================================================
# ELAPSED TIME
# ============================================================================

@dataclass(frozen=True, slots=True)
class Elapsed:
    """Elapsed time between two dates in the units the interest modes need."""
    days: int
    whole_months: int
    fractional_month_days: int

    @classmethod
    def zero(cls) -> Elapsed:
        return cls(0, 0, 0)

    @property
    def months(self) -> Decimal:
        """whole_months + fractional_month_days / 30"""
        return Decimal(self.whole_months) + Decimal(self.fractional_month_days) / DAYS_PER_MONTH


def compute_elapsed(start: date, as_of: date) -> Elapsed:
    """
    Elapsed days and months from start to as_of.

    Returns a zero Elapsed when as_of precedes start.
    """
    if as_of <= start:
        return Elapsed.zero()

    days = (as_of - start).days
    d1 = min(start.day, 30)
    d2 = min(as_of.day, 30)
    months = (as_of.year - start.year) * 12 + (as_of.month - start.month)
    frac = d2 - d1
    if frac < 0:
        months -= 1
        frac += 30

    return Elapsed(days=days, whole_months=max(months, 0), fractional_month_days=frac)


# ============================================================================
# INTEREST CALCULATION
# ============================================================================

def calculate_accrued_interest(
    principal_outstanding: Money,
    rate: Decimal,
    mode: InterestMode,
    elapsed: Elapsed,
) -> Money:
    """
    Interest accrued on principal_outstanding over elapsed.

    Args:
        principal_outstanding: Current outstanding principal (negative treated as 0)
        rate: Percentage rate (Decimal("10") means 10%)
        mode: Interest mode
        elapsed: Elapsed time since the reference date

    Returns:
        Non-negative Money at full precision

    Example:
        >>> calculate_accrued_interest(Money.of("1000"), Decimal("10"),
        ...                            InterestMode.MONTHLY, Elapsed(59, 2, 0))
        Money(200)
    """
    rate = Decimal(str(rate))
    principal = principal_outstanding.clamp_non_negative()

    if mode == InterestMode.NONE or rate == 0 or principal.is_zero():
        return Money.zero()

    base = principal.scale(rate, PERCENT)

    if mode == InterestMode.FLAT:
        return base
    if mode == InterestMode.DAILY:
        return base.scale(elapsed.days, DAYS_PER_YEAR)
    if mode == InterestMode.MONTHLY:
        return base.scale(elapsed.months)

    raise ValueError(f"Unsupported interest mode: {mode}")


def accrued_interest_for(
    instrument: Instrument,
    principal_outstanding: Money,
    as_of: date,
) -> Money:
    """
    Accrued interest for an instrument as of a date, rounded to 2 places.

    The instrument's origin_date is the reference start. An as_of before
    origin yields zero for every mode, FLAT included.
    """
    if as_of < instrument.origin_date:
        return Money.zero()
    elapsed = compute_elapsed(instrument.origin_date, as_of)
    accrued = calculate_accrued_interest(
        principal_outstanding,
        instrument.interest_rate,
        instrument.interest_mode,
        elapsed,
    )
    return accrued.rounded()


def normalize_interest_mode(value: Optional[Any]) -> InterestMode:
    """
    Map stored interest-mode vocabulary onto InterestMode.

    Accepts InterestMode, None, and the strings none/simple/daily/monthly/flat
    (case-insensitive). Unknown values raise ValueError.
    """
    if isinstance(value, InterestMode):
        return value
    if value is None:
        return InterestMode.NONE
    key = str(value).strip().lower()
    try:
        return _INTEREST_MODE_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unknown interest mode: {value!r}") from None
