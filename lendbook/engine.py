"""
engine.py - Stateful Orchestration of the Lending Ledger

LendingEngine is the only component that writes. Each mutating operation:

    1. reads the entities it touches and their versions
    2. computes pending records with the pure functions
       (allocation, confirmation, advance)
    3. commits them as one CommitBatch naming the versions it read

All of this runs under per-entity locks, so two payments against the same
instrument are serialised while different instruments proceed in parallel.
A ConcurrentModification from the store (another writer got in between) is
retried up to EngineConfig.max_retries times, then reported.

Mutating operations never raise domain errors. They return an EngineResult
whose status is APPLIED, ALREADY_APPLIED or REJECTED. Read operations raise
InstrumentNotFound / AccountNotFound for unknown ids.
"""

from __future__ import annotations
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
import threading
from typing import (
    Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple,
)

from .accrual import accrued_interest_for
from .advance import advance_balance as replay_advance_balance, plan_draw
from .allocation import (
    PaymentAllocation, compute_counterparty_allocation,
    compute_edit_reallocation, compute_payment_allocation, new_payment_ref,
)
from .collection import (
    CollectionSummary, CounterpartyCollection, compute_collection_status,
    summarize_collections,
)
from .config import EngineConfig
from .confirmation import administrative_unconfirm, confirm, ensure_mutable
from .core import (
    Actor, AdvanceEntry, CommitBatch, CommitReceipt, ConcurrentModification,
    DueStatus, ExecuteResult, FirmAccountTransaction, Instrument, InstrumentCatalog,
    InsufficientAdvance, LendingError, Transaction, TransactionLogStore,
    FIRM_KIND_EXPENSE, FIRM_KIND_INCOME, FIRM_SUB_KIND_TRANSFER_IN,
    FIRM_SUB_KIND_TRANSFER_OUT, PAYMENT_MODE_ADVANCE, PAYMENT_MODE_CASH,
    group_by_instrument, parse_amount,
)
from .logging import get_logger
from .money import Money, MoneyLike, min_of
from .reminders import (
    Reminder, ReminderSummary, classify_due_status, compute_reminders,
    summarize_reminders,
)
from .replay import (
    InstrumentPosition, ReplayCache, ReplayResult, SignTable, entries_as_of,
    replay_firm_account, replay_instrument,
)

logger = get_logger(__name__)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class EngineResult:
    """
    Outcome of a mutating engine operation.

    Attributes:
        status: APPLIED, ALREADY_APPLIED or REJECTED
        value: Operation-specific payload (None when rejected)
        error: The LendingError (or ValueError) that caused a rejection
    """
    status: ExecuteResult
    value: Any = None
    error: Optional[Exception] = None

    @property
    def applied(self) -> bool:
        return self.status == ExecuteResult.APPLIED

    @property
    def rejected(self) -> bool:
        return self.status == ExecuteResult.REJECTED


@dataclass(frozen=True, slots=True)
class PaymentOutcome:
    """Stamped records written for one payment."""
    allocation: Any
    transactions: Tuple[Transaction, ...]
    advance_entries: Tuple[AdvanceEntry, ...] = ()
    firm_transactions: Tuple[FirmAccountTransaction, ...] = ()
    settled_instrument_ids: Tuple[str, ...] = ()
    deleted_transaction_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class InstrumentSummary:
    """What the presentation layer shows for one instrument."""
    instrument_id: str
    as_of: date
    position: InstrumentPosition
    interest_accrued: Money
    interest_outstanding: Money
    due_status: DueStatus

    @property
    def balance(self) -> Money:
        return self.position.principal_outstanding

    @property
    def total_outstanding(self) -> Money:
        return self.position.principal_outstanding + self.interest_outstanding


@dataclass(frozen=True, slots=True)
class FirmAccountSummary:
    account_id: str
    opening_balance: Money
    balance: Money
    totals_by_kind: Mapping[str, Money] = field(default_factory=dict)
    counts_by_kind: Mapping[str, int] = field(default_factory=dict)


# ============================================================================
# ENGINE
# ============================================================================

class LendingEngine:
    """
    Serialised, retrying writer over a TransactionLogStore and InstrumentCatalog.

    Thread Safety:
        Safe to share between threads. Writes to one entity are serialised
        by a per-entity lock; there is no global lock.

    Example:
        store = InMemoryStore()
        store.add_instrument(loan)
        engine = LendingEngine(store)

        result = engine.record_payment("L-1", "150", date(2025, 3, 15))
        if result.applied:
            print(result.value.allocation.split.to_dict())
    """

    def __init__(
        self,
        store: TransactionLogStore,
        catalog: Optional[InstrumentCatalog] = None,
        config: Optional[EngineConfig] = None,
        verbose: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            store: Transaction log collaborator
            catalog: Instrument catalog (defaults to store when it implements both)
            config: Engine configuration (defaults to EngineConfig())
            verbose: Log operation summaries at INFO instead of DEBUG
            clock: Source of confirmation timestamps and today's date
        """
        self.store = store
        self.catalog = catalog if catalog is not None else store
        self.config = config or EngineConfig()
        self.verbose = verbose
        self._clock = clock or datetime.now
        self._firm_signs: SignTable = self.config.firm_sign_table()
        self._cache: Optional[ReplayCache] = (
            ReplayCache() if self.config.enable_replay_cache else None
        )
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Locking, retries, logging
    # ------------------------------------------------------------------

    def _lock_for(self, entity_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[entity_id] = lock
            return lock

    @contextmanager
    def _locked(self, entity_ids: Iterable[str]) -> Iterator[None]:
        # Sorted acquisition keeps multi-entity operations deadlock-free.
        with ExitStack() as stack:
            for entity_id in sorted(set(entity_ids)):
                stack.enter_context(self._lock_for(entity_id))
            yield

    def _summary(self, message: str, *args: Any) -> None:
        if self.verbose:
            logger.info(message, *args)
        else:
            logger.debug(message, *args)

    def _run(
        self,
        operation: str,
        entity_ids: Callable[[], Iterable[str]],
        attempt: Callable[[], EngineResult],
    ) -> EngineResult:
        """
        Run attempt() under the entities' locks, retrying ConcurrentModification.

        entity_ids is evaluated before locking; errors raised there (unknown
        instrument, ...) reject the operation like errors raised by attempt.
        """
        last_conflict: Optional[ConcurrentModification] = None
        for attempt_no in range(1, self.config.max_retries + 1):
            try:
                with self._locked(entity_ids()):
                    result = attempt()
            except ConcurrentModification as e:
                last_conflict = e
                logger.debug("%s: attempt %d conflicted: %s", operation, attempt_no, e)
                continue
            except (LendingError, ValueError) as e:
                logger.warning(
                    "%s rejected: %s: %s", operation, type(e).__name__, e,
                    extra={"extra": {"operation": operation, "error": type(e).__name__}},
                )
                return EngineResult(ExecuteResult.REJECTED, error=e)
            self._summary("%s %s", operation, result.status.value)
            return result

        logger.warning(
            "%s rejected after %d attempts: %s",
            operation, self.config.max_retries, last_conflict,
            extra={"extra": {
                "operation": operation,
                "error": ConcurrentModification.__name__,
                "attempts": self.config.max_retries,
            }},
        )
        return EngineResult(ExecuteResult.REJECTED, error=last_conflict)

    def _commit(self, batch: CommitBatch) -> CommitReceipt:
        receipt = self.store.commit(batch)
        if self._cache is not None:
            for entity_id in receipt.versions:
                self._cache.invalidate(entity_id)
        return receipt

    def _today(self) -> date:
        return self._clock().date()

    def _outstanding(
        self, instrument: Instrument, position: InstrumentPosition, as_of: date
    ) -> Money:
        accrued = accrued_interest_for(instrument, position.principal_outstanding, as_of)
        return (
            position.principal_outstanding
            + (accrued - position.interest_paid).clamp_non_negative()
        )

    def _settled_after(
        self,
        instrument: Instrument,
        history: Iterable[Transaction],
        allocation: PaymentAllocation,
        excluded: Iterable[str] = (),
    ) -> bool:
        """
        Whether the instrument owes nothing once allocation is written.

        A backdated payment is judged against the whole history, including
        transactions dated after it, accrued to the latest of them.
        """
        excluded = set(excluded)
        remaining = [tx for tx in history if tx.transaction_id not in excluded]
        if all(tx.payment_date <= allocation.as_of for tx in remaining):
            return allocation.settles_instrument
        remaining.extend(allocation.new_transactions)
        position = replay_instrument(instrument, remaining)
        as_of = max(tx.payment_date for tx in remaining)
        return self._outstanding(instrument, position, as_of).within(
            self.config.settlement_epsilon
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def instrument_position(
        self, instrument_id: str, as_of: Optional[date] = None
    ) -> InstrumentPosition:
        """Replayed position from transactions dated on or before as_of (all if None)."""
        instrument = self.catalog.fetch_instrument(instrument_id)
        transactions = self.store.fetch_transactions(instrument_id, as_of)
        if self._cache is None or as_of is not None:
            return replay_instrument(instrument, transactions)
        return self._cache.get_or_compute(
            instrument_id, transactions,
            lambda: replay_instrument(instrument, transactions),
        )

    def instrument_summary(self, instrument_id: str, as_of: Optional[date] = None) -> InstrumentSummary:
        """Balance, interest outstanding and due status as of a date (today if None)."""
        as_of = as_of or self._today()
        instrument = self.catalog.fetch_instrument(instrument_id)
        position = self.instrument_position(instrument_id, as_of)
        accrued = accrued_interest_for(instrument, position.principal_outstanding, as_of)
        interest_outstanding = (accrued - position.interest_paid).clamp_non_negative()
        status = classify_due_status(
            instrument.due_date,
            as_of,
            position.principal_outstanding + interest_outstanding,
            self.config.settlement_epsilon,
        )
        return InstrumentSummary(
            instrument_id=instrument_id,
            as_of=as_of,
            position=position,
            interest_accrued=accrued,
            interest_outstanding=interest_outstanding,
            due_status=status,
        )

    def _replay_firm(self, account_id: str, as_of: Optional[date]) -> Tuple[Money, ReplayResult]:
        account = self.catalog.fetch_firm_account(account_id)
        transactions = self.store.fetch_firm_transactions(account_id, as_of)

        def compute() -> ReplayResult:
            return replay_firm_account(account.opening_balance, transactions, self._firm_signs)

        if self._cache is None or as_of is not None:
            return account.opening_balance, compute()
        return account.opening_balance, self._cache.get_or_compute(account_id, transactions, compute)

    def firm_account_balance(self, account_id: str, as_of: Optional[date] = None) -> Money:
        """Opening balance plus every signed movement dated on or before as_of."""
        return self._replay_firm(account_id, as_of)[1].balance

    def firm_account_summary(
        self, account_id: str, as_of: Optional[date] = None
    ) -> FirmAccountSummary:
        opening, result = self._replay_firm(account_id, as_of)
        counts: Dict[str, int] = {}
        for tx in self.store.fetch_firm_transactions(account_id, as_of):
            counts[tx.kind] = counts.get(tx.kind, 0) + 1
        return FirmAccountSummary(
            account_id=account_id,
            opening_balance=opening,
            balance=result.balance,
            totals_by_kind=dict(result.totals_by_category),
            counts_by_kind=counts,
        )

    def advance_balance(self, counterparty_id: str) -> Money:
        return replay_advance_balance(self.store.fetch_advance_entries(counterparty_id))

    def reminders(
        self, as_of: Optional[date] = None, counterparty_id: Optional[str] = None
    ) -> List[Reminder]:
        """Due instruments with principal outstanding. Recomputed on every call."""
        as_of = as_of or self._today()
        instruments = self.catalog.list_instruments(counterparty_id, active_only=True)
        transactions = {
            i.instrument_id: self.store.fetch_transactions(i.instrument_id, as_of)
            for i in instruments
        }
        return compute_reminders(as_of, instruments, transactions)

    def reminder_summary(self, as_of: Optional[date] = None) -> ReminderSummary:
        return summarize_reminders(self.reminders(as_of))

    def collection_status(
        self, as_of: Optional[date] = None, counterparty_id: Optional[str] = None
    ) -> List[CounterpartyCollection]:
        """Per-counterparty EMI collection status for a day (today if None)."""
        as_of = as_of or self._today()
        instruments = self.catalog.list_instruments(counterparty_id)
        transactions = {
            i.instrument_id: self.store.fetch_transactions(i.instrument_id, as_of)
            for i in instruments
        }
        return compute_collection_status(
            as_of, instruments, transactions, self.config.settlement_epsilon,
        )

    def collection_summary(self, as_of: Optional[date] = None) -> CollectionSummary:
        as_of = as_of or self._today()
        return summarize_collections(
            as_of, self.collection_status(as_of), self.catalog.list_instruments(),
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(
        self,
        instrument_id: str,
        amount: MoneyLike,
        as_of: date,
        mode: str = PAYMENT_MODE_CASH,
        notes: Optional[str] = None,
    ) -> EngineResult:
        """
        Record a payment against one instrument.

        The amount is split interest first, then principal; any overpayment
        becomes advance credit for the instrument's counterparty. An
        instrument left with nothing outstanding is marked inactive in the
        same commit.

        Returns:
            EngineResult whose value is a PaymentOutcome
        """
        def entities() -> List[str]:
            instrument = self.catalog.fetch_instrument(instrument_id)
            return [instrument_id, instrument.counterparty_id]

        def attempt() -> EngineResult:
            instrument = self.catalog.fetch_instrument(instrument_id)
            versions = {
                instrument_id: self.store.version_of(instrument_id),
                instrument.counterparty_id: self.store.version_of(instrument.counterparty_id),
            }
            history = self.store.fetch_transactions(instrument_id)
            allocation = compute_payment_allocation(
                instrument, history, as_of, amount, mode, notes,
                epsilon=self.config.settlement_epsilon,
            )
            return self._commit_allocation(allocation, instrument, history, versions)

        return self._run(f"record_payment {instrument_id}", entities, attempt)

    def _commit_allocation(
        self,
        allocation: PaymentAllocation,
        instrument: Instrument,
        history: List[Transaction],
        versions: Mapping[str, int],
        deletions: Tuple[str, ...] = (),
        extra_advance: Tuple[AdvanceEntry, ...] = (),
    ) -> EngineResult:
        advance = extra_advance
        if allocation.advance_credit is not None:
            advance = advance + (allocation.advance_credit,)
        settles = self._settled_after(instrument, history, allocation, deletions)
        flags = {}
        if instrument.active == settles:
            flags[allocation.instrument_id] = not settles

        receipt = self._commit(CommitBatch(
            expected_versions=versions,
            transactions=allocation.new_transactions,
            deletions=deletions,
            advance_entries=advance,
            active_flags=flags,
        ))
        settled = (allocation.instrument_id,) if settles else ()
        self._summary(
            "payment %s on %s: %s -> %s",
            allocation.incoming, allocation.instrument_id,
            allocation.split.to_dict(), [t.transaction_id for t in receipt.transactions],
        )
        return EngineResult(ExecuteResult.APPLIED, PaymentOutcome(
            allocation=allocation,
            transactions=receipt.transactions,
            advance_entries=receipt.advance_entries,
            settled_instrument_ids=settled,
            deleted_transaction_id=deletions[0] if deletions else None,
        ))

    def record_counterparty_payment(
        self,
        counterparty_id: str,
        amount: MoneyLike,
        as_of: date,
        mode: str = PAYMENT_MODE_CASH,
        notes: Optional[str] = None,
        funding_account_id: Optional[str] = None,
    ) -> EngineResult:
        """
        Pay a counterparty's open instruments oldest first with one payment.

        When funding_account_id is given the payment is drawn from that firm
        account: an "expense" for the full amount is recorded on it in the
        same commit.

        Returns:
            EngineResult whose value is a PaymentOutcome
        """
        def entities() -> List[str]:
            ids = [counterparty_id]
            ids.extend(i.instrument_id for i in self.catalog.list_instruments(counterparty_id))
            if funding_account_id is not None:
                self.catalog.fetch_firm_account(funding_account_id)
                ids.append(funding_account_id)
            return ids

        def attempt() -> EngineResult:
            instruments = self.catalog.list_instruments(counterparty_id, active_only=True)
            versions = {i.instrument_id: self.store.version_of(i.instrument_id) for i in instruments}
            versions[counterparty_id] = self.store.version_of(counterparty_id)
            transactions = {
                i.instrument_id: self.store.fetch_transactions(i.instrument_id)
                for i in instruments
            }
            allocation = compute_counterparty_allocation(
                instruments, transactions, as_of, amount, mode, notes,
                epsilon=self.config.settlement_epsilon,
                counterparty_id=counterparty_id,
            )

            firm: Tuple[FirmAccountTransaction, ...] = ()
            if funding_account_id is not None:
                versions[funding_account_id] = self.store.version_of(funding_account_id)
                firm = (FirmAccountTransaction(
                    account_id=funding_account_id,
                    kind=FIRM_KIND_EXPENSE,
                    amount=allocation.incoming,
                    transaction_date=as_of,
                    description=notes or f"payment to {counterparty_id}",
                ),)

            by_id = {i.instrument_id: i for i in instruments}
            settled = tuple(
                a.instrument_id for a in allocation.allocations
                if self._settled_after(by_id[a.instrument_id], transactions[a.instrument_id], a)
            )
            advance = (allocation.advance_credit,) if allocation.advance_credit else ()
            receipt = self._commit(CommitBatch(
                expected_versions=versions,
                transactions=allocation.new_transactions,
                firm_transactions=firm,
                advance_entries=advance,
                active_flags={i: False for i in settled},
            ))
            self._summary(
                "counterparty payment %s for %s across %d instruments, advance %s",
                allocation.incoming, counterparty_id, len(allocation.allocations),
                allocation.advance_credit.amount if allocation.advance_credit else Money.zero(),
            )
            return EngineResult(ExecuteResult.APPLIED, PaymentOutcome(
                allocation=allocation,
                transactions=receipt.transactions,
                advance_entries=receipt.advance_entries,
                firm_transactions=receipt.firm_transactions,
                settled_instrument_ids=settled,
            ))

        return self._run(f"record_counterparty_payment {counterparty_id}", entities, attempt)

    # ------------------------------------------------------------------
    # Edits and deletions (unconfirmed only)
    # ------------------------------------------------------------------

    def edit_transaction(
        self,
        transaction_id: str,
        new_amount: MoneyLike,
        as_of: Optional[date] = None,
        mode: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EngineResult:
        """
        Amend an unconfirmed payment: delete it and re-allocate the new amount.

        Only the target transaction is replaced. Advance credit recorded by
        earlier payments is left as it is.

        Returns:
            EngineResult whose value is a PaymentOutcome; REJECTED with
            TransactionLocked for a confirmed target
        """
        def entities() -> List[str]:
            tx = self.store.get_transaction(transaction_id)
            instrument = self.catalog.fetch_instrument(tx.instrument_id)
            return [instrument.instrument_id, instrument.counterparty_id]

        def attempt() -> EngineResult:
            target = self.store.get_transaction(transaction_id)
            ensure_mutable(target)
            instrument = self.catalog.fetch_instrument(target.instrument_id)
            versions = {
                instrument.instrument_id: self.store.version_of(instrument.instrument_id),
                instrument.counterparty_id: self.store.version_of(instrument.counterparty_id),
            }
            history = self.store.fetch_transactions(instrument.instrument_id)
            edit = compute_edit_reallocation(
                instrument, history, transaction_id, new_amount, as_of, mode, notes,
                epsilon=self.config.settlement_epsilon,
            )
            return self._commit_allocation(
                edit.allocation, instrument, history, versions, deletions=(edit.deleted_id,),
            )

        return self._run(f"edit_transaction {transaction_id}", entities, attempt)

    def delete_transaction(self, transaction_id: str) -> EngineResult:
        """
        Delete an unconfirmed transaction.

        An inactive instrument that owes something again after the deletion
        is reactivated in the same commit.
        """
        def entities() -> List[str]:
            return [self.store.get_transaction(transaction_id).instrument_id]

        def attempt() -> EngineResult:
            target = self.store.get_transaction(transaction_id)
            ensure_mutable(target)
            instrument = self.catalog.fetch_instrument(target.instrument_id)
            version = self.store.version_of(instrument.instrument_id)

            remaining = [
                tx for tx in self.store.fetch_transactions(instrument.instrument_id)
                if tx.transaction_id != transaction_id
            ]
            position = replay_instrument(instrument, remaining)
            as_of = max([self._today()] + [tx.payment_date for tx in remaining])
            outstanding = self._outstanding(instrument, position, as_of)
            flags = {}
            if not instrument.active and not outstanding.within(self.config.settlement_epsilon):
                flags[instrument.instrument_id] = True

            self._commit(CommitBatch(
                expected_versions={instrument.instrument_id: version},
                deletions=(transaction_id,),
                active_flags=flags,
            ))
            return EngineResult(ExecuteResult.APPLIED, target)

        return self._run(f"delete_transaction {transaction_id}", entities, attempt)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def confirm_transaction(self, transaction_id: str, actor: Actor) -> EngineResult:
        """
        Confirm a transaction, freezing it.

        Returns:
            APPLIED with the confirmed record, ALREADY_APPLIED if it was
            already confirmed, or REJECTED (NotAuthorized, TransactionNotFound)
        """
        def entities() -> List[str]:
            return [self.store.get_transaction(transaction_id).instrument_id]

        def attempt() -> EngineResult:
            current = self.store.get_transaction(transaction_id)
            version = self.store.version_of(current.instrument_id)
            updated, status, audit = confirm(current, actor, self._clock())
            if status == ExecuteResult.ALREADY_APPLIED:
                return EngineResult(status, current)
            receipt = self._commit(CommitBatch(
                expected_versions={current.instrument_id: version},
                confirmations=(updated,),
                audits=(audit,),
            ))
            return EngineResult(ExecuteResult.APPLIED, receipt.confirmations[0])

        return self._run(f"confirm_transaction {transaction_id}", entities, attempt)

    def unconfirm_transaction(
        self, transaction_id: str, actor: Actor, reason: str
    ) -> EngineResult:
        """Administrative unconfirm: needs ledger:admin and a reason; always audited."""
        def entities() -> List[str]:
            return [self.store.get_transaction(transaction_id).instrument_id]

        def attempt() -> EngineResult:
            current = self.store.get_transaction(transaction_id)
            version = self.store.version_of(current.instrument_id)
            reverted, audit = administrative_unconfirm(current, actor, self._clock(), reason)
            receipt = self._commit(CommitBatch(
                expected_versions={current.instrument_id: version},
                confirmations=(reverted,),
                audits=(audit,),
            ))
            logger.warning(
                "transaction %s unconfirmed by %s: %s",
                transaction_id, actor.actor_id, audit.reason,
            )
            return EngineResult(ExecuteResult.APPLIED, receipt.confirmations[0])

        return self._run(f"unconfirm_transaction {transaction_id}", entities, attempt)

    # ------------------------------------------------------------------
    # Firm accounts
    # ------------------------------------------------------------------

    def record_firm_transaction(
        self,
        account_id: str,
        kind: str,
        amount: MoneyLike,
        transaction_date: date,
        sub_kind: Optional[str] = None,
        description: Optional[str] = None,
    ) -> EngineResult:
        """
        Append a movement to a firm account.

        Returns:
            APPLIED with the stamped record; REJECTED for an unknown kind
            (UnknownTransactionKind) or an invalid amount (InvalidAmount)
        """
        def entities() -> List[str]:
            self.catalog.fetch_firm_account(account_id)
            return [account_id]

        def attempt() -> EngineResult:
            self._firm_signs.sign(kind)
            record = FirmAccountTransaction(
                account_id=account_id,
                kind=kind,
                amount=parse_amount(amount),
                transaction_date=transaction_date,
                sub_kind=sub_kind,
                description=description,
            )
            receipt = self._commit(CommitBatch(
                expected_versions={account_id: self.store.version_of(account_id)},
                firm_transactions=(record,),
            ))
            return EngineResult(ExecuteResult.APPLIED, receipt.firm_transactions[0])

        return self._run(f"record_firm_transaction {account_id}", entities, attempt)

    def transfer_between_accounts(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: MoneyLike,
        transfer_date: date,
        notes: Optional[str] = None,
    ) -> EngineResult:
        """
        Move money between two firm accounts.

        Records expense/transfer_out on the source and income/transfer_in on
        the destination in one commit; the combined balance is unchanged.
        """
        def entities() -> List[str]:
            if from_account_id == to_account_id:
                raise ValueError("Cannot transfer an account to itself")
            self.catalog.fetch_firm_account(from_account_id)
            self.catalog.fetch_firm_account(to_account_id)
            return [from_account_id, to_account_id]

        def attempt() -> EngineResult:
            value = parse_amount(amount)
            versions = {
                from_account_id: self.store.version_of(from_account_id),
                to_account_id: self.store.version_of(to_account_id),
            }
            records = (
                FirmAccountTransaction(
                    account_id=from_account_id,
                    kind=FIRM_KIND_EXPENSE,
                    amount=value,
                    transaction_date=transfer_date,
                    sub_kind=FIRM_SUB_KIND_TRANSFER_OUT,
                    description=notes or f"transfer to {to_account_id}",
                ),
                FirmAccountTransaction(
                    account_id=to_account_id,
                    kind=FIRM_KIND_INCOME,
                    amount=value,
                    transaction_date=transfer_date,
                    sub_kind=FIRM_SUB_KIND_TRANSFER_IN,
                    description=notes or f"transfer from {from_account_id}",
                ),
            )
            receipt = self._commit(CommitBatch(
                expected_versions=versions, firm_transactions=records,
            ))
            return EngineResult(ExecuteResult.APPLIED, receipt.firm_transactions)

        return self._run(
            f"transfer {from_account_id} -> {to_account_id}", entities, attempt,
        )

    # ------------------------------------------------------------------
    # Advance credit
    # ------------------------------------------------------------------

    def draw_advance(
        self,
        counterparty_id: str,
        amount: MoneyLike,
        entry_date: date,
        reason: str,
    ) -> EngineResult:
        """Explicit draw on a counterparty's advance balance (e.g. a cash refund)."""
        def attempt() -> EngineResult:
            version = self.store.version_of(counterparty_id)
            draw = plan_draw(
                self.store.fetch_advance_entries(counterparty_id),
                counterparty_id, amount, entry_date, reason,
            )
            receipt = self._commit(CommitBatch(
                expected_versions={counterparty_id: version},
                advance_entries=(draw,),
            ))
            return EngineResult(ExecuteResult.APPLIED, receipt.advance_entries[0])

        return self._run(f"draw_advance {counterparty_id}", lambda: [counterparty_id], attempt)

    def apply_advance(
        self,
        instrument_id: str,
        as_of: date,
        amount: Optional[MoneyLike] = None,
    ) -> EngineResult:
        """
        Pay an instrument from its counterparty's advance balance.

        Draws min(requested or available, instrument outstanding) and
        allocates it as a payment in mode "advance", atomically with the
        DRAW entry.

        Returns:
            APPLIED with a PaymentOutcome; ALREADY_APPLIED when the
            instrument owes nothing; REJECTED with InsufficientAdvance when
            there is no balance or the requested amount exceeds it
        """
        def entities() -> List[str]:
            instrument = self.catalog.fetch_instrument(instrument_id)
            return [instrument_id, instrument.counterparty_id]

        def attempt() -> EngineResult:
            instrument = self.catalog.fetch_instrument(instrument_id)
            counterparty_id = instrument.counterparty_id
            versions = {
                instrument_id: self.store.version_of(instrument_id),
                counterparty_id: self.store.version_of(counterparty_id),
            }
            entries = self.store.fetch_advance_entries(counterparty_id)
            available = replay_advance_balance(entries)
            if amount is None:
                if not available.is_positive():
                    raise InsufficientAdvance(f"{counterparty_id} has no advance balance")
                wanted = available.rounded()
            else:
                wanted = parse_amount(amount, "advance amount")
                if wanted > available:
                    raise InsufficientAdvance(
                        f"{counterparty_id}: advance balance {available} does not cover {wanted}"
                    )

            history = self.store.fetch_transactions(instrument_id)
            position = replay_instrument(instrument, entries_as_of(history, as_of))
            owed = self._outstanding(instrument, position, as_of).rounded()
            if not owed.is_positive():
                return EngineResult(ExecuteResult.ALREADY_APPLIED, None)

            draw_amount = min_of(wanted, owed)
            ref = new_payment_ref()
            allocation = compute_payment_allocation(
                instrument, history, as_of, draw_amount,
                mode=PAYMENT_MODE_ADVANCE,
                notes="paid from advance balance",
                payment_ref=ref,
                epsilon=self.config.settlement_epsilon,
            )
            draw = plan_draw(
                entries, counterparty_id, draw_amount, as_of,
                reason=f"applied to {instrument_id}",
                instrument_id=instrument_id,
                payment_ref=ref,
            )
            return self._commit_allocation(
                allocation, instrument, history, versions, extra_advance=(draw,),
            )

        return self._run(f"apply_advance {instrument_id}", entities, attempt)

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def transactions_by_instrument(self, counterparty_id: Optional[str] = None) -> Dict[str, List[Transaction]]:
        instruments = self.catalog.list_instruments(counterparty_id)
        records: List[Transaction] = []
        for instrument in instruments:
            records.extend(self.store.fetch_transactions(instrument.instrument_id))
        return group_by_instrument(records)
