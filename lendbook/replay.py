"""
replay.py - Balances Derived by Replaying Transaction History

A balance is never stored. It is the fold of signed transaction effects over
an opening balance:

    balance = opening + sum(sign(kind) * amount)   ordered by (date, sequence)

The same fold serves instruments (principal outstanding), firm accounts
(cash position) and advance balances. Insertion order of the input never
matters: entries are sorted by effective date, then by the store-assigned
sequence, before folding. Replaying the same history twice yields the same
result, and a backdated insert changes the final balance by exactly its
signed amount.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
import threading
from typing import (
    Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple,
)

from .core import (
    FirmAccountTransaction, Instrument, NegativeOutstandingInvariantViolation,
    Transaction, TransactionKind, UnknownTransactionKind,
    FIRM_KIND_ADJUSTMENT, FIRM_KIND_DEPOSIT, FIRM_KIND_EXPENSE, FIRM_KIND_INCOME,
    FIRM_KIND_PARTNER_DEPOSIT, FIRM_KIND_PARTNER_WITHDRAWAL, FIRM_KIND_REFUND,
    FIRM_KIND_WITHDRAWAL,
)
from .logging import get_logger
from .money import Money

logger = get_logger(__name__)


# ============================================================================
# SIGN TABLES
# ============================================================================

@dataclass(frozen=True, slots=True)
class SignTable:
    """
    Declarative kind -> sign mapping.

    Signs are -1, 0 or +1. Open-set kinds are registered with with_kind(),
    which returns a new table; tables are never mutated.
    """
    signs: Mapping[str, int]

    def __post_init__(self):
        normalised = {}
        for kind, sign in self.signs.items():
            if sign not in (-1, 0, 1):
                raise ValueError(f"Sign for {kind!r} must be -1, 0 or +1, got {sign}")
            normalised[_kind_key(kind)] = int(sign)
        object.__setattr__(self, 'signs', normalised)

    def sign(self, kind: Any) -> int:
        key = _kind_key(kind)
        try:
            return self.signs[key]
        except KeyError:
            raise UnknownTransactionKind(f"No sign registered for kind {key!r}") from None

    def with_kind(self, kind: Any, sign: int) -> SignTable:
        updated = dict(self.signs)
        updated[_kind_key(kind)] = sign
        return SignTable(updated)

    def __contains__(self, kind: Any) -> bool:
        return _kind_key(kind) in self.signs


def _kind_key(kind: Any) -> str:
    if isinstance(kind, TransactionKind):
        return kind.value
    return str(kind).strip().lower()


FIRM_ACCOUNT_SIGNS = SignTable({
    FIRM_KIND_DEPOSIT: 1,
    FIRM_KIND_PARTNER_DEPOSIT: 1,
    FIRM_KIND_INCOME: 1,
    FIRM_KIND_WITHDRAWAL: -1,
    FIRM_KIND_PARTNER_WITHDRAWAL: -1,
    FIRM_KIND_EXPENSE: -1,
    FIRM_KIND_REFUND: -1,
    FIRM_KIND_ADJUSTMENT: 1,
})

# Effect of each transaction kind on outstanding principal.
INSTRUMENT_PRINCIPAL_SIGNS = SignTable({
    TransactionKind.PRINCIPAL: -1,
    TransactionKind.MIXED: -1,
    TransactionKind.INTEREST: 0,
})


# ============================================================================
# GENERIC FOLD
# ============================================================================

@dataclass(frozen=True, slots=True)
class ReplayResult:
    """Outcome of a replay: final balance plus per-category gross totals."""
    balance: Money
    totals_by_category: Mapping[str, Money]
    entry_count: int
    last_entry_id: Optional[str]


def _replay_order(entry: Any) -> Tuple[Any, int]:
    return (entry.effective_date, entry.sequence)


def replay(
    opening_balance: Money,
    entries: Iterable[Any],
    sign_of: Callable[[Any], int],
    category_of: Callable[[Any], str],
) -> ReplayResult:
    """
    Fold signed entry effects over an opening balance.

    Args:
        opening_balance: Balance before the first entry
        entries: Records exposing effective_date, sequence, amount, entry_id
        sign_of: entry -> -1, 0 or +1
        category_of: entry -> category name for the gross totals

    Returns:
        ReplayResult

    Raises:
        UnknownTransactionKind: If sign_of cannot resolve an entry's kind.
    """
    ordered = sorted(entries, key=_replay_order)
    balance = opening_balance
    totals: Dict[str, Money] = {}
    last_id = None

    for entry in ordered:
        sign = sign_of(entry)
        balance = balance + entry.amount.times_sign(sign)
        category = category_of(entry)
        totals[category] = totals.get(category, Money.zero()) + entry.amount
        last_id = entry.entry_id or last_id

    return ReplayResult(
        balance=balance,
        totals_by_category=totals,
        entry_count=len(ordered),
        last_entry_id=last_id,
    )


def entries_as_of(entries: Iterable[Any], as_of: Optional[date]) -> List[Any]:
    """Entries effective on or before as_of (all of them when as_of is None)."""
    if as_of is None:
        return list(entries)
    return [entry for entry in entries if entry.effective_date <= as_of]


def history_fingerprint(entries: Sequence[Any]) -> Tuple[int, Optional[str]]:
    """(entry_count, id of the last entry in replay order), the ReplayCache key suffix."""
    if not entries:
        return (0, None)
    last = max(entries, key=_replay_order)
    return (len(entries), last.entry_id or None)


# ============================================================================
# INSTRUMENT REPLAY
# ============================================================================

@dataclass(frozen=True, slots=True)
class InstrumentPosition:
    """
    Replayed state of one instrument.

    Attributes:
        instrument_id: The instrument
        principal_total: principal + fees
        principal_paid: Sum of PRINCIPAL and MIXED transactions
        interest_paid: Sum of INTEREST transactions
        principal_outstanding: max(0, principal_total - principal_paid)
        totals_by_category: kind value -> gross total
        transaction_count: Number of transactions replayed
        last_transaction_id: Id of the last transaction in replay order
    """
    instrument_id: str
    principal_total: Money
    principal_paid: Money
    interest_paid: Money
    principal_outstanding: Money
    totals_by_category: Mapping[str, Money] = field(default_factory=dict)
    transaction_count: int = 0
    last_transaction_id: Optional[str] = None

    @property
    def balance(self) -> Money:
        return self.principal_outstanding


def replay_instrument(
    instrument: Instrument,
    transactions: Iterable[Transaction],
    exclude_ids: Iterable[str] = (),
) -> InstrumentPosition:
    """
    Replay an instrument's transactions into its current position.

    A negative principal outstanding means the history is inconsistent
    (more principal paid than was ever lent). It is logged at WARNING as a
    NegativeOutstandingInvariantViolation and clamped to zero.

    Args:
        instrument: The instrument
        transactions: Its transactions, in any order
        exclude_ids: Transaction ids to leave out (edit re-allocation baseline)

    Raises:
        ValueError: If a transaction belongs to another instrument.
    """
    excluded = set(exclude_ids)
    included: List[Transaction] = []
    for tx in transactions:
        if tx.instrument_id != instrument.instrument_id:
            raise ValueError(
                f"Transaction {tx.transaction_id or 'pending'} belongs to "
                f"{tx.instrument_id}, not {instrument.instrument_id}"
            )
        if tx.transaction_id and tx.transaction_id in excluded:
            continue
        included.append(tx)

    result = replay(
        instrument.principal_total,
        included,
        sign_of=lambda tx: INSTRUMENT_PRINCIPAL_SIGNS.sign(tx.kind),
        category_of=lambda tx: tx.kind.value,
    )

    interest_paid = result.totals_by_category.get(TransactionKind.INTEREST.value, Money.zero())
    principal_paid = (
        result.totals_by_category.get(TransactionKind.PRINCIPAL.value, Money.zero())
        + result.totals_by_category.get(TransactionKind.MIXED.value, Money.zero())
    )

    outstanding = result.balance
    if outstanding.is_negative():
        violation = NegativeOutstandingInvariantViolation(
            f"{instrument.instrument_id}: principal outstanding replayed to "
            f"{outstanding.amount}; clamping to 0"
        )
        logger.warning("%s", violation)
        outstanding = Money.zero()

    return InstrumentPosition(
        instrument_id=instrument.instrument_id,
        principal_total=instrument.principal_total,
        principal_paid=principal_paid,
        interest_paid=interest_paid,
        principal_outstanding=outstanding,
        totals_by_category=result.totals_by_category,
        transaction_count=result.entry_count,
        last_transaction_id=result.last_entry_id,
    )


# ============================================================================
# FIRM ACCOUNT REPLAY
# ============================================================================

def replay_firm_account(
    opening_balance: Money,
    transactions: Iterable[FirmAccountTransaction],
    signs: SignTable = FIRM_ACCOUNT_SIGNS,
) -> ReplayResult:
    """
    Firm-account balance: opening balance plus signed movements.

    Example:
        5000 opening, deposit 1000, withdrawal 200, expense 300 -> 5500

    Raises:
        UnknownTransactionKind: For a kind missing from signs.
    """
    return replay(
        opening_balance,
        transactions,
        sign_of=lambda tx: signs.sign(tx.kind),
        category_of=lambda tx: tx.kind,
    )


# ============================================================================
# REPLAY CACHE
# ============================================================================

class ReplayCache:
    """
    Optional memo of replay results.

    Keyed by (entity_id, last_entry_id, entry_count). The owner invalidates
    an entity on every write to it; a stale key can never match because any
    append or delete changes the count or the last id.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, Optional[str], int], Any] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_or_compute(
        self,
        entity_id: str,
        entries: Sequence[Any],
        compute: Callable[[], Any],
    ) -> Any:
        count, last_id = history_fingerprint(entries)
        key = (entity_id, last_id, count)
        with self._lock:
            if key in self._entries:
                self.hits += 1
                return self._entries[key]
        value = compute()
        with self._lock:
            self.misses += 1
            self._entries[key] = value
        return value

    def invalidate(self, entity_id: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == entity_id]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
