"""
allocation.py - Splitting Incoming Payments Between Interest and Principal

ARCHITECTURE (Pure Function Pattern):
=====================================

1. calculate_split(): the precedence rule on plain amounts
       interest_portion  = min(A, interest_outstanding)
       principal_portion = min(A - interest_portion, principal_outstanding)
       overpayment       = A - interest_portion - principal_portion

2. compute_payment_allocation(): replay + accrue + split for one instrument,
   materialising pending Transactions (INTEREST first, then PRINCIPAL) and an
   optional pending advance CREDIT for the overpayment.

3. compute_counterparty_allocation(): walks a counterparty's active
   instruments oldest first, applying the same split to each; whatever is left
   after the last instrument becomes one advance CREDIT.

4. compute_edit_reallocation(): amending an unconfirmed payment is
   delete-then-reallocate. The target is excluded from the replay baseline
   and the amended amount is allocated from scratch.

Nothing here reads a store or writes anything. Interest-first precedence is
fixed and not configurable.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import uuid

from .accrual import accrued_interest_for
from .advance import credit_overpayment
from .confirmation import ensure_mutable
from .core import (
    AdvanceEntry, Instrument, InvalidAmount, Transaction, TransactionKind,
    TransactionNotFound, PAYMENT_MODE_CASH, SETTLEMENT_EPSILON, parse_amount,
)
from .money import Money, MoneyLike, min_of
from .replay import InstrumentPosition, entries_as_of, replay_instrument


def new_payment_ref() -> str:
    return uuid.uuid4().hex


# ============================================================================
# SPLIT
# ============================================================================

@dataclass(frozen=True, slots=True)
class PaymentSplit:
    """How one incoming amount divides between interest, principal and overpayment."""
    interest_portion: Money
    principal_portion: Money
    overpayment: Money

    @property
    def applied(self) -> Money:
        return self.interest_portion + self.principal_portion

    def to_dict(self) -> Dict[str, str]:
        return {
            'interest_portion': str(self.interest_portion),
            'principal_portion': str(self.principal_portion),
            'overpayment': str(self.overpayment),
        }


def calculate_split(
    incoming: Money,
    interest_outstanding: Money,
    principal_outstanding: Money,
) -> PaymentSplit:
    """
    Split an incoming amount: interest first, then principal, then overpayment.

    Negative outstanding figures are treated as zero.

    Raises:
        InvalidAmount: If incoming is not positive.
    """
    if not incoming.is_positive():
        raise InvalidAmount(f"incoming must be positive, got {incoming.amount}")

    interest_due = interest_outstanding.clamp_non_negative()
    principal_due = principal_outstanding.clamp_non_negative()

    interest_portion = min_of(incoming, interest_due)
    remaining = incoming - interest_portion
    principal_portion = min_of(remaining, principal_due)
    overpayment = remaining - principal_portion

    return PaymentSplit(
        interest_portion=interest_portion,
        principal_portion=principal_portion,
        overpayment=overpayment,
    )


# ============================================================================
# SINGLE INSTRUMENT
# ============================================================================

@dataclass(frozen=True, slots=True)
class PaymentAllocation:
    """
    Result of allocating one payment to one instrument.

    Attributes:
        instrument_id: Target instrument
        as_of: Payment date
        incoming: Amount received
        position: Replayed position before the payment
        interest_accrued: Interest accrued to as_of on current principal
        interest_outstanding: max(0, interest_accrued - interest_paid)
        principal_outstanding: Principal outstanding before the payment
        split: Interest / principal / overpayment portions
        new_transactions: Pending INTEREST then PRINCIPAL records (0, 1 or 2)
        advance_credit: Pending CREDIT for the overpayment, if any
        payment_ref: Shared by every record this payment produces
        settles_instrument: True if nothing is left outstanding afterwards
    """
    instrument_id: str
    as_of: date
    incoming: Money
    position: InstrumentPosition
    interest_accrued: Money
    interest_outstanding: Money
    principal_outstanding: Money
    split: PaymentSplit
    new_transactions: Tuple[Transaction, ...]
    advance_credit: Optional[AdvanceEntry]
    payment_ref: str
    settles_instrument: bool

    @property
    def remaining_principal(self) -> Money:
        return self.principal_outstanding - self.split.principal_portion

    @property
    def remaining_interest(self) -> Money:
        return self.interest_outstanding - self.split.interest_portion


def _allocate(
    instrument: Instrument,
    transactions: Iterable[Transaction],
    as_of: date,
    incoming: Money,
    mode: str,
    notes: Optional[str],
    exclude_ids: Iterable[str],
    payment_ref: str,
    epsilon: Money,
) -> Tuple[PaymentAllocation, Money]:
    """
    Allocation without the advance credit; returns (allocation, overpayment).

    Only transactions effective on or before as_of form the baseline.
    """
    position = replay_instrument(instrument, entries_as_of(transactions, as_of), exclude_ids)
    accrued = accrued_interest_for(instrument, position.principal_outstanding, as_of)
    interest_outstanding = (accrued - position.interest_paid).clamp_non_negative()
    principal_outstanding = position.principal_outstanding

    split = calculate_split(incoming, interest_outstanding, principal_outstanding)

    records: List[Transaction] = []
    for kind, portion in (
        (TransactionKind.INTEREST, split.interest_portion),
        (TransactionKind.PRINCIPAL, split.principal_portion),
    ):
        if portion.rounded().is_positive():
            records.append(Transaction(
                instrument_id=instrument.instrument_id,
                amount=portion.rounded(),
                kind=kind,
                payment_date=as_of,
                mode=mode,
                notes=notes,
                payment_ref=payment_ref,
            ))

    settles = (
        (principal_outstanding - split.principal_portion).within(epsilon)
        and (interest_outstanding - split.interest_portion).within(epsilon)
    )

    allocation = PaymentAllocation(
        instrument_id=instrument.instrument_id,
        as_of=as_of,
        incoming=incoming,
        position=position,
        interest_accrued=accrued,
        interest_outstanding=interest_outstanding,
        principal_outstanding=principal_outstanding,
        split=split,
        new_transactions=tuple(records),
        advance_credit=None,
        payment_ref=payment_ref,
        settles_instrument=settles,
    )
    return allocation, split.overpayment


def compute_payment_allocation(
    instrument: Instrument,
    transactions: Iterable[Transaction],
    as_of: date,
    incoming: MoneyLike,
    mode: str = PAYMENT_MODE_CASH,
    notes: Optional[str] = None,
    exclude_ids: Iterable[str] = (),
    payment_ref: Optional[str] = None,
    epsilon: Money = SETTLEMENT_EPSILON,
) -> PaymentAllocation:
    """
    Allocate an incoming payment to one instrument.

    Args:
        instrument: Target instrument
        transactions: Its existing transactions
        as_of: Payment date (accrual runs to this date)
        incoming: Amount received
        mode: Payment mode stamped on the new records
        notes: Free text stamped on the new records
        exclude_ids: Transactions to leave out of the baseline replay
        payment_ref: Groups the produced records (generated if omitted)
        epsilon: Settlement tolerance

    Returns:
        PaymentAllocation with pending records ready to append

    Raises:
        InvalidAmount: If incoming is malformed, not positive, or over-precise.

    Example:
        principal 1000 at 10% monthly, two whole months, payment 150:
        interest_outstanding=200 -> INTEREST 150, principal untouched.
    """
    amount = parse_amount(incoming, "incoming")
    ref = payment_ref or new_payment_ref()

    allocation, overpayment = _allocate(
        instrument, transactions, as_of, amount, mode, notes, exclude_ids, ref, epsilon,
    )
    if not overpayment.rounded().is_positive():
        return allocation

    credit = credit_overpayment(
        counterparty_id=instrument.counterparty_id,
        amount=overpayment,
        payment_amount=amount,
        entry_date=as_of,
        instrument_id=instrument.instrument_id,
        payment_ref=ref,
    )
    return _with_credit(allocation, credit)


def _with_credit(allocation: PaymentAllocation, credit: AdvanceEntry) -> PaymentAllocation:
    return replace(allocation, advance_credit=credit)


# ============================================================================
# COUNTERPARTY (MULTI-INSTRUMENT)
# ============================================================================

@dataclass(frozen=True, slots=True)
class CounterpartyAllocation:
    """
    Result of allocating one payment across a counterparty's instruments.

    allocations are in the order they were paid (oldest origin first).
    """
    counterparty_id: str
    as_of: date
    incoming: Money
    allocations: Tuple[PaymentAllocation, ...]
    advance_credit: Optional[AdvanceEntry]
    payment_ref: str

    @property
    def new_transactions(self) -> Tuple[Transaction, ...]:
        records: List[Transaction] = []
        for allocation in self.allocations:
            records.extend(allocation.new_transactions)
        return tuple(records)

    @property
    def total_applied(self) -> Money:
        return Money.sum(a.split.applied for a in self.allocations)

    @property
    def settled_instrument_ids(self) -> Tuple[str, ...]:
        return tuple(a.instrument_id for a in self.allocations if a.settles_instrument)


def compute_counterparty_allocation(
    instruments: Sequence[Instrument],
    transactions_by_instrument: Mapping[str, Sequence[Transaction]],
    as_of: date,
    incoming: MoneyLike,
    mode: str = PAYMENT_MODE_CASH,
    notes: Optional[str] = None,
    payment_ref: Optional[str] = None,
    epsilon: Money = SETTLEMENT_EPSILON,
    counterparty_id: Optional[str] = None,
) -> CounterpartyAllocation:
    """
    Allocate one payment sequentially across a counterparty's instruments.

    Active instruments are paid oldest origin_date first (ties broken by id),
    each with the interest-first split. Instruments with nothing outstanding
    are skipped. Any remainder after the last instrument becomes one advance
    CREDIT for the counterparty.

    Args:
        counterparty_id: Required when instruments is empty (the whole
                         payment then becomes advance credit)

    Raises:
        InvalidAmount: If incoming is invalid.
        ValueError: If the counterparty cannot be determined or the
                    instruments span several counterparties.
    """
    amount = parse_amount(incoming, "incoming")
    counterparties = {i.counterparty_id for i in instruments}
    if counterparty_id is not None:
        counterparties.add(counterparty_id)
    if len(counterparties) != 1:
        raise ValueError(
            f"Payment needs exactly one counterparty, got {sorted(counterparties)}"
        )
    counterparty_id = counterparties.pop()
    ref = payment_ref or new_payment_ref()

    ordered = sorted(
        (i for i in instruments if i.active),
        key=lambda i: (i.origin_date, i.instrument_id),
    )

    remaining = amount
    allocations: List[PaymentAllocation] = []
    for instrument in ordered:
        if not remaining.is_positive():
            break
        allocation, remaining = _allocate(
            instrument,
            transactions_by_instrument.get(instrument.instrument_id, ()),
            as_of, remaining, mode, notes, (), ref, epsilon,
        )
        if allocation.new_transactions:
            allocations.append(allocation)

    credit = None
    if remaining.rounded().is_positive():
        credit = credit_overpayment(
            counterparty_id=counterparty_id,
            amount=remaining,
            payment_amount=amount,
            entry_date=as_of,
            payment_ref=ref,
        )

    return CounterpartyAllocation(
        counterparty_id=counterparty_id,
        as_of=as_of,
        incoming=amount,
        allocations=tuple(allocations),
        advance_credit=credit,
        payment_ref=ref,
    )


# ============================================================================
# EDIT RE-ALLOCATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class EditReallocation:
    """The unconfirmed transaction to delete and the allocation replacing it."""
    original: Transaction
    allocation: PaymentAllocation

    @property
    def deleted_id(self) -> str:
        return self.original.transaction_id


def find_transaction(transactions: Iterable[Transaction], transaction_id: str) -> Transaction:
    for tx in transactions:
        if tx.transaction_id == transaction_id:
            return tx
    raise TransactionNotFound(f"Transaction not found: {transaction_id}")


def compute_edit_reallocation(
    instrument: Instrument,
    transactions: Sequence[Transaction],
    target_id: str,
    new_amount: MoneyLike,
    as_of: Optional[date] = None,
    mode: Optional[str] = None,
    notes: Any = None,
    payment_ref: Optional[str] = None,
    epsilon: Money = SETTLEMENT_EPSILON,
) -> EditReallocation:
    """
    Amend an unconfirmed payment by deleting it and re-allocating from scratch.

    The target is excluded from the baseline replay so the amended amount is
    split against the position as if the original payment never happened.
    Date, mode and notes default to the original's.

    Raises:
        TransactionNotFound: If target_id is not among transactions.
        TransactionLocked: If the target is confirmed.
        InvalidAmount: If new_amount is invalid.
    """
    target = find_transaction(transactions, target_id)
    ensure_mutable(target)

    allocation = compute_payment_allocation(
        instrument,
        transactions,
        as_of=as_of or target.payment_date,
        incoming=new_amount,
        mode=mode or target.mode,
        notes=target.notes if notes is None else notes,
        exclude_ids=(target_id,),
        payment_ref=payment_ref or target.payment_ref,
        epsilon=epsilon,
    )
    return EditReallocation(original=target, allocation=allocation)
