"""
reminders.py - Collection Reminders for Due Instruments

A reminder is a read-only projection: active instruments whose due date has
arrived and which still carry principal. Reminders are recomputed from the
transaction history on every call and never cached.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Mapping, Optional, Sequence

from .accrual import accrued_interest_for
from .core import (
    DueStatus, Instrument, InstrumentCategory, Transaction, SETTLEMENT_EPSILON,
)
from .money import Money
from .replay import entries_as_of, replay_instrument


@dataclass(frozen=True, slots=True)
class Reminder:
    """One instrument due for collection."""
    instrument_id: str
    counterparty_id: str
    category: InstrumentCategory
    reference: Optional[str]
    due_date: date
    principal_outstanding: Money
    interest_outstanding: Money
    amount_due: Money
    days_overdue: int
    due_status: DueStatus
    collected_on_date: bool


@dataclass(frozen=True, slots=True)
class ReminderSummary:
    total: int
    collected: int
    pending: int
    total_amount_due: Money


def classify_due_status(
    due_date: Optional[date],
    as_of: date,
    outstanding: Money,
    epsilon: Money = SETTLEMENT_EPSILON,
) -> DueStatus:
    """SETTLED, NOT_DUE, DUE_TODAY or OVERDUE for an instrument as of a date."""
    if outstanding.within(epsilon):
        return DueStatus.SETTLED
    if due_date is None or due_date > as_of:
        return DueStatus.NOT_DUE
    if due_date == as_of:
        return DueStatus.DUE_TODAY
    return DueStatus.OVERDUE


def compute_reminders(
    as_of: date,
    instruments: Iterable[Instrument],
    transactions_by_instrument: Mapping[str, Sequence[Transaction]],
) -> List[Reminder]:
    """
    Instruments due on or before as_of that still carry principal.

    Each reminder carries the replayed principal outstanding, the interest
    outstanding as of as_of, their sum as amount_due, and whether a payment
    dated as_of has already been recorded. Transactions dated after as_of
    are ignored.

    Returns:
        Reminders sorted by due date, then instrument id
    """
    reminders: List[Reminder] = []
    for instrument in instruments:
        if not instrument.active or instrument.due_date is None:
            continue
        if instrument.due_date > as_of:
            continue

        transactions = entries_as_of(
            transactions_by_instrument.get(instrument.instrument_id, ()), as_of,
        )
        position = replay_instrument(instrument, transactions)
        if not position.principal_outstanding.is_positive():
            continue

        accrued = accrued_interest_for(instrument, position.principal_outstanding, as_of)
        interest_outstanding = (accrued - position.interest_paid).clamp_non_negative()
        days_overdue = (as_of - instrument.due_date).days

        reminders.append(Reminder(
            instrument_id=instrument.instrument_id,
            counterparty_id=instrument.counterparty_id,
            category=instrument.category,
            reference=instrument.reference,
            due_date=instrument.due_date,
            principal_outstanding=position.principal_outstanding,
            interest_outstanding=interest_outstanding,
            amount_due=position.principal_outstanding + interest_outstanding,
            days_overdue=days_overdue,
            due_status=DueStatus.DUE_TODAY if days_overdue == 0 else DueStatus.OVERDUE,
            collected_on_date=any(tx.payment_date == as_of for tx in transactions),
        ))

    reminders.sort(key=lambda r: (r.due_date, r.instrument_id))
    return reminders


def summarize_reminders(reminders: Sequence[Reminder]) -> ReminderSummary:
    collected = sum(1 for r in reminders if r.collected_on_date)
    return ReminderSummary(
        total=len(reminders),
        collected=collected,
        pending=len(reminders) - collected,
        total_amount_due=Money.sum(r.amount_due for r in reminders),
    )
