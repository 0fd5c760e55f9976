"""
Core types for the lending ledger engine.

This module provides the foundational data structures and protocols:
1. Protocols: TransactionLogStore and InstrumentCatalog (collaborator contracts)
2. Immutable records: Instrument, Transaction, FirmAccountTransaction,
   AdvanceEntry, ConfirmationAudit, Actor
3. Exceptions: LendingError and domain-specific error types
4. Enums: InterestMode, TransactionKind, InstrumentCategory, ExecuteResult, ...
5. Input parsing: parse_amount() for the payment-entry boundary

Records are frozen dataclasses. A record whose id is empty is a *pending*
draft produced by a pure function; the store stamps id, sequence and
created_at when it appends the record.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import (
    Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol,
    Sequence, Tuple, runtime_checkable,
)

from .money import Money, MoneyLike


# ============================================================================
# CONSTANTS
# ============================================================================

# Outstanding amounts at or below this are treated as settled.
SETTLEMENT_EPSILON = Money(Decimal("0.01"))

# Payment modes. The set is open: any non-empty string is accepted.
PAYMENT_MODE_CASH = "cash"
PAYMENT_MODE_BANK = "bank"
PAYMENT_MODE_ADVANCE = "advance"

# Actor privileges handed over by the identity collaborator.
PRIVILEGE_LEDGER_WRITE = "ledger:write"
PRIVILEGE_LEDGER_ADMIN = "ledger:admin"

# Firm-account kinds known out of the box (see replay.FIRM_ACCOUNT_SIGNS).
FIRM_KIND_DEPOSIT = "deposit"
FIRM_KIND_PARTNER_DEPOSIT = "partner_deposit"
FIRM_KIND_INCOME = "income"
FIRM_KIND_WITHDRAWAL = "withdrawal"
FIRM_KIND_PARTNER_WITHDRAWAL = "partner_withdrawal"
FIRM_KIND_EXPENSE = "expense"
FIRM_KIND_REFUND = "refund"
FIRM_KIND_ADJUSTMENT = "adjustment"

FIRM_SUB_KIND_TRANSFER_IN = "transfer_in"
FIRM_SUB_KIND_TRANSFER_OUT = "transfer_out"


# ============================================================================
# ENUMS
# ============================================================================

class InterestMode(Enum):
    """How interest accrues on an instrument's outstanding principal."""
    NONE = "none"
    DAILY = "daily"
    MONTHLY = "monthly"
    FLAT = "flat"


class TransactionKind(Enum):
    """
    Classification of an instrument transaction.

    PRINCIPAL and MIXED reduce outstanding principal; INTEREST reduces
    outstanding interest only. MIXED is the legacy undivided "payment" row.
    """
    PRINCIPAL = "principal"
    INTEREST = "interest"
    MIXED = "mixed"

    @classmethod
    def parse(cls, value: Any) -> TransactionKind:
        if isinstance(value, TransactionKind):
            return value
        text = str(value or "").strip().lower()
        if text == "payment":
            return cls.MIXED
        try:
            return cls(text)
        except ValueError:
            raise UnknownTransactionKind(f"Unknown transaction kind: {value!r}") from None


class InstrumentCategory(Enum):
    """Entity types that share the one Instrument abstraction."""
    LOAN = "loan"
    BILL = "bill"
    SALE = "sale"


class AdvanceDirection(Enum):
    CREDIT = "credit"
    DRAW = "draw"


class ConfirmationState(Enum):
    UNCONFIRMED = "unconfirmed"
    CONFIRMED = "confirmed"


class ConfirmationAction(Enum):
    CONFIRM = "confirm"
    UNCONFIRM = "unconfirm"


class DueStatus(Enum):
    NOT_DUE = "not_due"
    DUE_TODAY = "due_today"
    OVERDUE = "overdue"
    SETTLED = "settled"


class EmiFrequency(Enum):
    """How often an instalment (EMI) is collected."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ExecuteResult(Enum):
    """
    Outcome of an engine operation.

    APPLIED: The operation was validated and committed.
    ALREADY_APPLIED: Nothing to do (e.g. confirming a confirmed transaction).
    REJECTED: The operation failed; the accompanying error says why.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """Base exception for all engine errors."""
    pass


class InvalidAmount(LendingError, ValueError):
    """Raised when an amount is non-positive, non-finite, malformed or over-precise."""
    pass


class InstrumentNotFound(LendingError):
    """Raised when an instrument id is not known to the catalog."""
    pass


class AccountNotFound(LendingError):
    """Raised when a firm account id is not known to the catalog."""
    pass


class TransactionNotFound(LendingError):
    """Raised when a transaction id is not present in the log."""
    pass


class TransactionLocked(LendingError):
    """Raised when an edit or delete is attempted on a confirmed transaction."""
    pass


class NegativeOutstandingInvariantViolation(LendingError):
    """
    Internal consistency failure: replay produced a negative outstanding.

    Never raised to callers. The engine clamps the figure to zero and logs
    this error at WARNING.
    """
    pass


class ConcurrentModification(LendingError):
    """Raised when an optimistic version check fails on commit. Retryable."""
    pass


class NotAuthorized(LendingError):
    """Raised when an actor lacks the privilege an operation requires."""
    pass


class InsufficientAdvance(LendingError):
    """Raised when an advance draw exceeds the counterparty's advance balance."""
    pass


class UnknownTransactionKind(LendingError):
    """Raised when a transaction kind has no registered sign."""
    pass


class ConfigurationError(LendingError):
    """Raised when engine configuration is invalid."""
    pass


# ============================================================================
# INPUT PARSING
# ============================================================================

def parse_amount(value: MoneyLike, field_name: str = "amount") -> Money:
    """
    Parse a user-supplied amount at the engine boundary.

    Args:
        value: Money, Decimal, int, float or numeric string
        field_name: Name used in error messages

    Returns:
        Money with at most 2 decimal places, strictly positive

    Raises:
        InvalidAmount: If the value is malformed, non-finite, not positive,
                       or carries more precision than can be recorded.
    """
    try:
        money = Money.of(value)
    except ValueError as e:
        raise InvalidAmount(f"{field_name}: {e}") from None
    if not money.is_positive():
        raise InvalidAmount(f"{field_name} must be positive, got {money.amount}")
    if money.has_sub_cent_precision():
        raise InvalidAmount(
            f"{field_name} {money.amount} has more precision than can be recorded"
        )
    return money


def _as_money(value: Any) -> Money:
    if isinstance(value, Money):
        return value
    return Money.of(value)


# ============================================================================
# ACTORS AND AUDIT
# ============================================================================

@dataclass(frozen=True, slots=True)
class Actor:
    """Identity handed over by the identity collaborator. Never authenticated here."""
    actor_id: str
    privileges: FrozenSet[str] = frozenset()

    def __post_init__(self):
        if not self.actor_id or not self.actor_id.strip():
            raise ValueError("Actor actor_id cannot be empty")
        if not isinstance(self.privileges, frozenset):
            object.__setattr__(self, 'privileges', frozenset(self.privileges))

    def can(self, privilege: str) -> bool:
        return privilege in self.privileges


@dataclass(frozen=True, slots=True)
class ConfirmationAudit:
    """Audit record written for every confirmation state change."""
    transaction_id: str
    action: ConfirmationAction
    actor_id: str
    at: datetime
    reason: Optional[str] = None


# ============================================================================
# INSTRUMENT
# ============================================================================

@dataclass(frozen=True, slots=True)
class Instrument:
    """
    A loan, bill or sale: an obligation with principal, optional interest
    and an optional due date.

    Attributes:
        instrument_id: Catalog identifier
        category: LOAN, BILL or SALE (all behave identically in the engine)
        counterparty_id: Customer or supplier whose advance balance receives overpayment
        principal: Amount lent or billed
        fees: One-time origination fees, treated as principal for balance purposes
        interest_rate: Percentage (e.g. Decimal("10") for 10%)
        interest_mode: NONE, DAILY, MONTHLY or FLAT
        origin_date: Date interest starts accruing
        due_date: Collection due date (optional)
        active: False once fully settled; instruments are never deleted
        reference: Optional human label (loan number, bill description)
        emi_amount: Instalment expected per collection (optional)
        emi_frequency: WEEKLY or MONTHLY; required when emi_amount is set
    """
    instrument_id: str
    category: InstrumentCategory
    counterparty_id: str
    principal: Money
    interest_rate: Decimal
    interest_mode: InterestMode
    origin_date: date
    due_date: Optional[date] = None
    fees: Money = field(default_factory=Money.zero)
    active: bool = True
    reference: Optional[str] = None
    emi_amount: Optional[Money] = None
    emi_frequency: Optional[EmiFrequency] = None

    def __post_init__(self):
        if not self.instrument_id or not str(self.instrument_id).strip():
            raise ValueError("Instrument instrument_id cannot be empty")
        if not self.counterparty_id or not str(self.counterparty_id).strip():
            raise ValueError("Instrument counterparty_id cannot be empty")
        if not isinstance(self.principal, Money):
            object.__setattr__(self, 'principal', _as_money(self.principal))
        if not isinstance(self.fees, Money):
            object.__setattr__(self, 'fees', _as_money(self.fees))
        if not isinstance(self.interest_rate, Decimal):
            object.__setattr__(self, 'interest_rate', Decimal(str(self.interest_rate)))
        if not isinstance(self.category, InstrumentCategory):
            object.__setattr__(self, 'category', InstrumentCategory(self.category))
        if not isinstance(self.interest_mode, InterestMode):
            object.__setattr__(self, 'interest_mode', InterestMode(self.interest_mode))
        if self.emi_amount is not None and not isinstance(self.emi_amount, Money):
            object.__setattr__(self, 'emi_amount', _as_money(self.emi_amount))
        if self.emi_frequency is not None and not isinstance(self.emi_frequency, EmiFrequency):
            object.__setattr__(self, 'emi_frequency', EmiFrequency(self.emi_frequency))

        if (self.principal + self.fees).is_negative():
            raise ValueError(
                f"principal + fees must be non-negative, got {self.principal} + {self.fees}"
            )
        if self.interest_rate < 0:
            raise ValueError(f"interest_rate cannot be negative, got {self.interest_rate}")
        if self.interest_mode == InterestMode.NONE and self.interest_rate != 0:
            raise ValueError("interest_rate must be 0 when interest_mode is NONE")
        if self.due_date is not None and self.due_date < self.origin_date:
            raise ValueError(
                f"due_date {self.due_date} cannot precede origin_date {self.origin_date}"
            )
        if self.emi_amount is not None:
            if not self.emi_amount.is_positive():
                raise ValueError(f"emi_amount must be positive, got {self.emi_amount.amount}")
            if self.emi_frequency is None:
                raise ValueError("emi_frequency is required when emi_amount is set")

    @property
    def principal_total(self) -> Money:
        """Principal plus origination fees."""
        return self.principal + self.fees


# ============================================================================
# INSTRUMENT TRANSACTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Transaction:
    """
    A payment recorded against exactly one instrument.

    Attributes:
        instrument_id: Owning instrument
        amount: Strictly positive amount
        kind: PRINCIPAL, INTEREST or MIXED
        payment_date: Effective date (may precede created_at for backdated entries)
        mode: Payment mode (open set: cash, bank, advance, ...)
        transaction_id: Store-assigned id ("" while pending)
        sequence: Store-assigned insertion order, the replay tiebreak (-1 while pending)
        created_at: Log-append time (None while pending)
        confirmed: Once True the record is permanent
        confirmed_at: Set only when confirmed
        confirmed_by: Actor id, set only when confirmed
        notes: Free text
        payment_ref: Shared by all records produced from one incoming payment
    """
    instrument_id: str
    amount: Money
    kind: TransactionKind
    payment_date: date
    mode: str = PAYMENT_MODE_CASH
    transaction_id: str = ""
    sequence: int = -1
    created_at: Optional[datetime] = None
    confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    notes: Optional[str] = None
    payment_ref: Optional[str] = None

    def __post_init__(self):
        if not self.instrument_id:
            raise ValueError("Transaction instrument_id cannot be empty")
        if not isinstance(self.amount, Money):
            object.__setattr__(self, 'amount', _as_money(self.amount))
        if not isinstance(self.kind, TransactionKind):
            object.__setattr__(self, 'kind', TransactionKind.parse(self.kind))
        if not self.amount.is_positive():
            raise InvalidAmount(f"Transaction amount must be positive, got {self.amount.amount}")
        if not self.mode or not self.mode.strip():
            raise ValueError("Transaction mode cannot be empty")
        if self.confirmed:
            if self.confirmed_at is None or not self.confirmed_by:
                raise ValueError("Confirmed transaction requires confirmed_at and confirmed_by")
        elif self.confirmed_at is not None or self.confirmed_by is not None:
            raise ValueError("confirmed_at/confirmed_by are set only when confirmed")

    @property
    def is_pending(self) -> bool:
        return not self.transaction_id

    @property
    def state(self) -> ConfirmationState:
        return ConfirmationState.CONFIRMED if self.confirmed else ConfirmationState.UNCONFIRMED

    @property
    def effective_date(self) -> date:
        return self.payment_date

    @property
    def entry_id(self) -> str:
        return self.transaction_id

    def __repr__(self) -> str:
        flag = "✓" if self.confirmed else " "
        return (
            f"Transaction[{flag}]({self.transaction_id or 'pending'} "
            f"{self.kind.value} {self.amount} on {self.payment_date} → {self.instrument_id})"
        )


# ============================================================================
# FIRM ACCOUNTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class FirmAccount:
    """A cash or bank pool owned by the firm, independent of any instrument."""
    account_id: str
    name: str
    opening_balance: Money = field(default_factory=Money.zero)

    def __post_init__(self):
        if not self.account_id:
            raise ValueError("FirmAccount account_id cannot be empty")
        if not isinstance(self.opening_balance, Money):
            object.__setattr__(self, 'opening_balance', _as_money(self.opening_balance))


@dataclass(frozen=True, slots=True)
class FirmAccountTransaction:
    """
    Append-only movement on a firm account.

    The amount is always positive; its sign comes from `kind` through a
    SignTable, never from the amount itself.
    """
    account_id: str
    kind: str
    amount: Money
    transaction_date: date
    sub_kind: Optional[str] = None
    description: Optional[str] = None
    transaction_id: str = ""
    sequence: int = -1
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.account_id:
            raise ValueError("FirmAccountTransaction account_id cannot be empty")
        if not self.kind or not self.kind.strip():
            raise ValueError("FirmAccountTransaction kind cannot be empty")
        object.__setattr__(self, 'kind', self.kind.strip().lower())
        if not isinstance(self.amount, Money):
            object.__setattr__(self, 'amount', _as_money(self.amount))
        if not self.amount.is_positive():
            raise InvalidAmount(
                f"FirmAccountTransaction amount must be positive, got {self.amount.amount}"
            )

    @property
    def is_pending(self) -> bool:
        return not self.transaction_id

    @property
    def effective_date(self) -> date:
        return self.transaction_date

    @property
    def entry_id(self) -> str:
        return self.transaction_id


# ============================================================================
# ADVANCE CREDIT
# ============================================================================

@dataclass(frozen=True, slots=True)
class AdvanceEntry:
    """
    One movement on a counterparty's advance balance.

    CREDIT entries come from overpayment; DRAW entries from an explicit
    draw-down against a later obligation.
    """
    counterparty_id: str
    amount: Money
    direction: AdvanceDirection
    entry_date: date
    reason: str
    source_instrument_id: Optional[str] = None
    payment_ref: Optional[str] = None
    entry_id: str = ""
    sequence: int = -1
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.counterparty_id:
            raise ValueError("AdvanceEntry counterparty_id cannot be empty")
        if not isinstance(self.amount, Money):
            object.__setattr__(self, 'amount', _as_money(self.amount))
        if not isinstance(self.direction, AdvanceDirection):
            object.__setattr__(self, 'direction', AdvanceDirection(self.direction))
        if not self.amount.is_positive():
            raise InvalidAmount(f"AdvanceEntry amount must be positive, got {self.amount.amount}")

    @property
    def is_pending(self) -> bool:
        return not self.entry_id

    @property
    def effective_date(self) -> date:
        return self.entry_date


# ============================================================================
# COMMIT BATCH
# ============================================================================

@dataclass(frozen=True, slots=True)
class CommitBatch:
    """
    Everything one engine operation writes, applied all-or-nothing.

    Attributes:
        expected_versions: entity id -> version read before computing the batch
        transactions: Pending instrument transactions to append
        deletions: Instrument transaction ids to remove
        firm_transactions: Pending firm-account transactions to append
        advance_entries: Pending advance entries to append
        confirmations: Transactions whose confirmation fields change (full new records)
        audits: Confirmation audit records
        active_flags: instrument id -> new active flag
    """
    expected_versions: Mapping[str, int] = field(default_factory=dict)
    transactions: Tuple[Transaction, ...] = ()
    deletions: Tuple[str, ...] = ()
    firm_transactions: Tuple[FirmAccountTransaction, ...] = ()
    advance_entries: Tuple[AdvanceEntry, ...] = ()
    confirmations: Tuple[Transaction, ...] = ()
    audits: Tuple[ConfirmationAudit, ...] = ()
    active_flags: Mapping[str, bool] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.transactions or self.deletions or self.firm_transactions
            or self.advance_entries or self.confirmations or self.active_flags
        )


@dataclass(frozen=True, slots=True)
class CommitReceipt:
    """Stamped records returned by a successful commit."""
    transactions: Tuple[Transaction, ...] = ()
    firm_transactions: Tuple[FirmAccountTransaction, ...] = ()
    advance_entries: Tuple[AdvanceEntry, ...] = ()
    confirmations: Tuple[Transaction, ...] = ()
    versions: Mapping[str, int] = field(default_factory=dict)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class TransactionLogStore(Protocol):
    """
    Transaction log collaborator.

    Entity ids are instrument ids, firm account ids, and counterparty ids
    (for advance entries). Every entity carries a monotonically increasing
    version used for optimistic concurrency control.
    """

    def fetch_transactions(
        self, entity_id: str, as_of: Optional[date] = None
    ) -> List[Transaction]:
        """Instrument transactions ordered by (payment_date, sequence)."""
        ...

    def fetch_firm_transactions(
        self, account_id: str, as_of: Optional[date] = None
    ) -> List[FirmAccountTransaction]:
        ...

    def fetch_advance_entries(self, counterparty_id: str) -> List[AdvanceEntry]:
        ...

    def get_transaction(self, transaction_id: str) -> Transaction:
        """Raises TransactionNotFound for unknown ids."""
        ...

    def version_of(self, entity_id: str) -> int:
        ...

    def append_transactions(
        self,
        entity_id: str,
        records: Sequence[Transaction],
        expected_version: Optional[int] = None,
    ) -> List[Transaction]:
        """Atomically append; raises ConcurrentModification on version mismatch."""
        ...

    def update_confirmation(
        self,
        transaction_id: str,
        confirmed: bool,
        actor_id: str,
        override: bool = False,
    ) -> Transaction:
        """Flip the confirmation flag; raises TransactionLocked when unconfirming without override."""
        ...

    def commit(self, batch: CommitBatch) -> CommitReceipt:
        """Apply a batch all-or-nothing; raises ConcurrentModification on any version mismatch."""
        ...


@runtime_checkable
class InstrumentCatalog(Protocol):
    """Instrument and firm-account catalog collaborator."""

    def fetch_instrument(self, instrument_id: str) -> Instrument:
        """Raises InstrumentNotFound for unknown ids."""
        ...

    def set_active(self, instrument_id: str, active: bool) -> None:
        ...

    def list_instruments(
        self,
        counterparty_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Instrument]:
        ...

    def fetch_firm_account(self, account_id: str) -> FirmAccount:
        """Raises AccountNotFound for unknown ids."""
        ...


# ============================================================================
# RECORD ADAPTERS
# ============================================================================

def load_instrument(record: Mapping[str, Any]) -> Instrument:
    """
    Build an Instrument from a raw catalog row.

    This is the only place raw rows become typed records. Legacy rows are
    normalised here: interest-mode names are mapped onto InterestMode, a
    rate carried on a NONE-mode row is dropped, and missing fees become 0.

    Args:
        record: Mapping with keys instrument_id (or id), category,
                counterparty_id, principal, fees, interest_rate,
                interest_mode (or interest_type), origin_date, due_date,
                active, reference, emi_amount, emi_frequency

    Returns:
        Instrument

    Note:
        A row with an emi_amount but no emi_frequency collects weekly.
    """
    from .accrual import normalize_interest_mode

    mode = normalize_interest_mode(
        record.get('interest_mode', record.get('interest_type'))
    )
    rate = Decimal(str(record.get('interest_rate') or 0))
    if mode == InterestMode.NONE or rate == 0:
        rate = Decimal("0")

    emi_amount = None
    emi_frequency = None
    if record.get('emi_amount'):
        emi_amount = Money.of(record['emi_amount'])
        emi_frequency = EmiFrequency(
            str(record.get('emi_frequency') or EmiFrequency.WEEKLY.value).strip().lower()
        )

    return Instrument(
        instrument_id=str(record.get('instrument_id', record.get('id', ''))),
        category=InstrumentCategory(str(record.get('category', 'loan')).lower()),
        counterparty_id=str(record.get('counterparty_id', '')),
        principal=Money.of(record.get('principal', 0)),
        fees=Money.of(record.get('fees') or 0),
        interest_rate=rate,
        interest_mode=mode,
        origin_date=record['origin_date'],
        due_date=record.get('due_date'),
        active=bool(record.get('active', True)),
        reference=record.get('reference'),
        emi_amount=emi_amount,
        emi_frequency=emi_frequency,
    )


def group_by_instrument(
    transactions: Iterable[Transaction],
) -> Dict[str, List[Transaction]]:
    """Group transactions by instrument id, preserving input order."""
    grouped: Dict[str, List[Transaction]] = {}
    for tx in transactions:
        grouped.setdefault(tx.instrument_id, []).append(tx)
    return grouped
