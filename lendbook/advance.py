"""
advance.py - Counterparty Advance Balances

Overpayment never disappears: the surplus of a payment beyond everything an
instrument owes is credited to the counterparty's advance balance. The
balance is the replay of CREDIT (+) and DRAW (-) entries and is never stored.

Draw-down is explicit. Nothing here, and nothing in the engine, applies
advance credit to an obligation unless asked to.
"""

from __future__ import annotations
from datetime import date
from typing import Iterable, Optional

from .core import (
    AdvanceDirection, AdvanceEntry, InsufficientAdvance, parse_amount,
)
from .money import Money, MoneyLike
from .replay import SignTable, replay


ADVANCE_SIGNS = SignTable({
    AdvanceDirection.CREDIT.value: 1,
    AdvanceDirection.DRAW.value: -1,
})


def overpayment_reason(payment_amount: Money, entry_date: date) -> str:
    return f"overpayment from payment of {payment_amount} on {entry_date.isoformat()}"


def advance_balance(
    entries: Iterable[AdvanceEntry],
    counterparty_id: Optional[str] = None,
) -> Money:
    """
    Replay advance entries into a balance (credits minus draws).

    Args:
        entries: Advance entries in any order
        counterparty_id: If given, only that counterparty's entries count
    """
    selected = [
        e for e in entries
        if counterparty_id is None or e.counterparty_id == counterparty_id
    ]
    result = replay(
        Money.zero(),
        selected,
        sign_of=lambda e: ADVANCE_SIGNS.sign(e.direction.value),
        category_of=lambda e: e.direction.value,
    )
    return result.balance


def credit_overpayment(
    counterparty_id: str,
    amount: Money,
    payment_amount: Money,
    entry_date: date,
    instrument_id: Optional[str] = None,
    payment_ref: Optional[str] = None,
) -> AdvanceEntry:
    """Pending CREDIT entry for the overpaid part of a payment."""
    return AdvanceEntry(
        counterparty_id=counterparty_id,
        amount=amount.rounded(),
        direction=AdvanceDirection.CREDIT,
        entry_date=entry_date,
        reason=overpayment_reason(payment_amount, entry_date),
        source_instrument_id=instrument_id,
        payment_ref=payment_ref,
    )


def plan_draw(
    entries: Iterable[AdvanceEntry],
    counterparty_id: str,
    amount: MoneyLike,
    entry_date: date,
    reason: str,
    instrument_id: Optional[str] = None,
    payment_ref: Optional[str] = None,
) -> AdvanceEntry:
    """
    Pending DRAW entry against a counterparty's advance balance.

    Raises:
        InvalidAmount: If amount is invalid.
        InsufficientAdvance: If the balance does not cover amount.
    """
    draw = parse_amount(amount, "draw amount")
    available = advance_balance(entries, counterparty_id)
    if draw > available:
        raise InsufficientAdvance(
            f"{counterparty_id}: advance balance {available} does not cover draw of {draw}"
        )
    return AdvanceEntry(
        counterparty_id=counterparty_id,
        amount=draw,
        direction=AdvanceDirection.DRAW,
        entry_date=entry_date,
        reason=reason,
        source_instrument_id=instrument_id,
        payment_ref=payment_ref,
    )
