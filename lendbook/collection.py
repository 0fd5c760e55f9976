"""
collection.py - Daily EMI Collection Status

Instruments may carry an instalment (EMI) collected weekly or monthly. The
collection view answers, for one day and per counterparty:

    emi        = sum of emi_amount over the counterparty's instruments
    collected  = sum of payments dated that day
    status     = PAID_LESS / PAID / PAID_MORE when something was collected,
                 PENDING when an instalment fell due and nothing came in,
                 NOT_DUE otherwise

Like reminders this is a read-only projection, recomputed from the log on
every call.

Schedule:
    WEEKLY instalments fall on the weekday of origin_date, starting one
    week after origin. MONTHLY instalments fall on origin_date's day of the
    month, or on the last day of shorter months.
"""

from __future__ import annotations
import calendar
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from .accrual import accrued_interest_for
from .core import EmiFrequency, Instrument, Transaction, SETTLEMENT_EPSILON
from .money import Money
from .replay import entries_as_of, replay_instrument


class CollectionStatus(Enum):
    NOT_DUE = "not_due"
    PENDING = "pending"
    PAID_LESS = "paid_less"
    PAID = "paid"
    PAID_MORE = "paid_more"


@dataclass(frozen=True, slots=True)
class CounterpartyCollection:
    """
    One counterparty's collection position for a day.

    Attributes:
        counterparty_id: Customer the instalments are collected from
        as_of: Collection day
        instrument_ids: Instruments taking part, sorted
        emi_amount: Sum of their instalments
        collected: Payments dated as_of
        outstanding: Principal plus interest outstanding as of as_of
        scheduled: True if an instalment falls due on as_of
        status: See CollectionStatus
        pending_amount: Instalment still to collect today (0 unless scheduled)
    """
    counterparty_id: str
    as_of: date
    instrument_ids: Tuple[str, ...]
    emi_amount: Money
    collected: Money
    outstanding: Money
    scheduled: bool
    status: CollectionStatus
    pending_amount: Money


@dataclass(frozen=True, slots=True)
class CollectionSummary:
    as_of: date
    total_collected: Money
    collected_count: int
    scheduled_count: int
    paid_less_count: int
    paid_more_count: int
    pending_count: int
    pending_amount: Money
    disbursed: Money


def is_emi_due(instrument: Instrument, as_of: date) -> bool:
    """True if one of the instrument's instalments falls on as_of."""
    if instrument.emi_amount is None or as_of <= instrument.origin_date:
        return False
    origin = instrument.origin_date
    if instrument.emi_frequency == EmiFrequency.WEEKLY:
        return (as_of - origin).days % 7 == 0
    last_day = calendar.monthrange(as_of.year, as_of.month)[1]
    return as_of.day == min(origin.day, last_day)


def _outstanding(
    instrument: Instrument, transactions: Sequence[Transaction], as_of: date
) -> Money:
    position = replay_instrument(instrument, transactions)
    accrued = accrued_interest_for(instrument, position.principal_outstanding, as_of)
    return (
        position.principal_outstanding
        + (accrued - position.interest_paid).clamp_non_negative()
    )


def _status(emi: Money, collected: Money, scheduled: bool, owes: bool) -> CollectionStatus:
    if collected.is_positive():
        if emi.is_positive() and collected < emi:
            return CollectionStatus.PAID_LESS
        if emi.is_positive() and collected > emi:
            return CollectionStatus.PAID_MORE
        return CollectionStatus.PAID
    if scheduled and owes:
        return CollectionStatus.PENDING
    return CollectionStatus.NOT_DUE


def compute_collection_status(
    as_of: date,
    instruments: Iterable[Instrument],
    transactions_by_instrument: Mapping[str, Sequence[Transaction]],
    epsilon: Money = SETTLEMENT_EPSILON,
) -> List[CounterpartyCollection]:
    """
    Per-counterparty EMI collection status for one day.

    Active instruments take part, as do instruments settled by a payment
    dated as_of so that the day's collection is not lost. Transactions
    dated after as_of are ignored.

    Args:
        as_of: Collection day
        instruments: Candidate instruments (any counterparty, any state)
        transactions_by_instrument: instrument id -> its transactions
        epsilon: Outstanding at or below this counts as nothing owed

    Returns:
        CounterpartyCollection per counterparty, sorted by counterparty id
    """
    grouped: Dict[str, List[Instrument]] = {}
    history: Dict[str, List[Transaction]] = {}
    for instrument in instruments:
        transactions = entries_as_of(
            transactions_by_instrument.get(instrument.instrument_id, ()), as_of,
        )
        paid_today = any(tx.payment_date == as_of for tx in transactions)
        if not instrument.active and not paid_today:
            continue
        grouped.setdefault(instrument.counterparty_id, []).append(instrument)
        history[instrument.instrument_id] = transactions

    collections: List[CounterpartyCollection] = []
    for counterparty_id in sorted(grouped):
        members = sorted(grouped[counterparty_id], key=lambda i: i.instrument_id)
        emi = Money.sum(i.emi_amount for i in members if i.emi_amount is not None)
        collected = Money.sum(
            tx.amount
            for i in members
            for tx in history[i.instrument_id]
            if tx.payment_date == as_of
        )
        outstanding = Money.sum(
            _outstanding(i, history[i.instrument_id], as_of) for i in members
        )
        scheduled = any(is_emi_due(i, as_of) for i in members)
        owes = not outstanding.within(epsilon)

        pending = Money.zero()
        if scheduled and owes and emi.is_positive() and collected < emi:
            pending = emi - collected

        collections.append(CounterpartyCollection(
            counterparty_id=counterparty_id,
            as_of=as_of,
            instrument_ids=tuple(i.instrument_id for i in members),
            emi_amount=emi,
            collected=collected,
            outstanding=outstanding,
            scheduled=scheduled,
            status=_status(emi, collected, scheduled, owes),
            pending_amount=pending,
        ))
    return collections


def summarize_collections(
    as_of: date,
    collections: Sequence[CounterpartyCollection],
    instruments: Iterable[Instrument] = (),
) -> CollectionSummary:
    """Day totals; disbursed is the principal of instruments originated on as_of."""
    statuses = [c.status for c in collections]
    return CollectionSummary(
        as_of=as_of,
        total_collected=Money.sum(c.collected for c in collections),
        collected_count=sum(1 for c in collections if c.collected.is_positive()),
        scheduled_count=sum(1 for c in collections if c.scheduled),
        paid_less_count=statuses.count(CollectionStatus.PAID_LESS),
        paid_more_count=statuses.count(CollectionStatus.PAID_MORE),
        pending_count=sum(1 for c in collections if c.pending_amount.is_positive()),
        pending_amount=Money.sum(c.pending_amount for c in collections),
        disbursed=Money.sum(i.principal for i in instruments if i.origin_date == as_of),
    )
