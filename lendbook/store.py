"""
store.py - In-Memory Transaction Log Store and Instrument Catalog

InMemoryStore implements both collaborator protocols (TransactionLogStore and
InstrumentCatalog) for tests and embedding.

Every entity (instrument, firm account, counterparty) carries a version that
increases on each write touching it. commit() checks every expected version
and validates every record before changing anything, so a batch is applied
entirely or not at all.

Entity ids are expected to be unique across instruments, firm accounts and
counterparties because they share one version namespace.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import date, datetime
import threading
from typing import Callable, Dict, List, Optional, Sequence, Set

from .core import (
    AccountNotFound, AdvanceEntry, CommitBatch, CommitReceipt, ConcurrentModification,
    ConfirmationAction, ConfirmationAudit, FirmAccount, FirmAccountTransaction,
    Instrument, InstrumentNotFound, Transaction, TransactionLocked, TransactionNotFound,
)
from .logging import get_logger

logger = get_logger(__name__)


class InMemoryStore:
    """
    Thread-safe in-memory log store and catalog.

    Example:
        store = InMemoryStore()
        store.add_instrument(loan)
        store.add_firm_account(FirmAccount("cash", "Cash", Money.of("5000")))
        txs = store.append_transactions(loan.instrument_id, [pending], expected_version=0)
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now
        self._lock = threading.RLock()
        self._instruments: Dict[str, Instrument] = {}
        self._accounts: Dict[str, FirmAccount] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._firm_transactions: Dict[str, List[FirmAccountTransaction]] = {}
        self._advance_entries: Dict[str, List[AdvanceEntry]] = {}
        self._audits: List[ConfirmationAudit] = []
        self._versions: Dict[str, int] = {}
        self._sequence = 0

    # ------------------------------------------------------------------
    # Catalog seeding
    # ------------------------------------------------------------------

    def add_instrument(self, instrument: Instrument) -> None:
        with self._lock:
            if instrument.instrument_id in self._instruments:
                raise ValueError(f"Instrument already exists: {instrument.instrument_id}")
            self._instruments[instrument.instrument_id] = instrument
            self._versions.setdefault(instrument.instrument_id, 0)

    def add_firm_account(self, account: FirmAccount) -> None:
        with self._lock:
            if account.account_id in self._accounts:
                raise ValueError(f"Firm account already exists: {account.account_id}")
            self._accounts[account.account_id] = account
            self._firm_transactions[account.account_id] = []
            self._versions.setdefault(account.account_id, 0)

    # ------------------------------------------------------------------
    # InstrumentCatalog
    # ------------------------------------------------------------------

    def fetch_instrument(self, instrument_id: str) -> Instrument:
        with self._lock:
            try:
                return self._instruments[instrument_id]
            except KeyError:
                raise InstrumentNotFound(f"Instrument not found: {instrument_id}") from None

    def set_active(self, instrument_id: str, active: bool) -> None:
        self.commit(CommitBatch(active_flags={instrument_id: active}))

    def list_instruments(
        self,
        counterparty_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Instrument]:
        with self._lock:
            found = [
                i for i in self._instruments.values()
                if (counterparty_id is None or i.counterparty_id == counterparty_id)
                and (i.active or not active_only)
            ]
        return sorted(found, key=lambda i: i.instrument_id)

    def fetch_firm_account(self, account_id: str) -> FirmAccount:
        with self._lock:
            try:
                return self._accounts[account_id]
            except KeyError:
                raise AccountNotFound(f"Firm account not found: {account_id}") from None

    def list_firm_accounts(self) -> List[FirmAccount]:
        with self._lock:
            return sorted(self._accounts.values(), key=lambda a: a.account_id)

    # ------------------------------------------------------------------
    # TransactionLogStore: reads
    # ------------------------------------------------------------------

    def fetch_transactions(
        self, entity_id: str, as_of: Optional[date] = None
    ) -> List[Transaction]:
        with self._lock:
            if entity_id not in self._instruments:
                raise InstrumentNotFound(f"Instrument not found: {entity_id}")
            found = [
                tx for tx in self._transactions.values()
                if tx.instrument_id == entity_id
                and (as_of is None or tx.payment_date <= as_of)
            ]
        return sorted(found, key=lambda tx: (tx.payment_date, tx.sequence))

    def fetch_firm_transactions(
        self, account_id: str, as_of: Optional[date] = None
    ) -> List[FirmAccountTransaction]:
        with self._lock:
            if account_id not in self._accounts:
                raise AccountNotFound(f"Firm account not found: {account_id}")
            found = [
                tx for tx in self._firm_transactions[account_id]
                if as_of is None or tx.transaction_date <= as_of
            ]
        return sorted(found, key=lambda tx: (tx.transaction_date, tx.sequence))

    def fetch_advance_entries(self, counterparty_id: str) -> List[AdvanceEntry]:
        with self._lock:
            found = list(self._advance_entries.get(counterparty_id, ()))
        return sorted(found, key=lambda e: (e.entry_date, e.sequence))

    def get_transaction(self, transaction_id: str) -> Transaction:
        with self._lock:
            try:
                return self._transactions[transaction_id]
            except KeyError:
                raise TransactionNotFound(f"Transaction not found: {transaction_id}") from None

    def fetch_audits(self, transaction_id: Optional[str] = None) -> List[ConfirmationAudit]:
        with self._lock:
            return [
                a for a in self._audits
                if transaction_id is None or a.transaction_id == transaction_id
            ]

    def version_of(self, entity_id: str) -> int:
        with self._lock:
            return self._versions.get(entity_id, 0)

    # ------------------------------------------------------------------
    # TransactionLogStore: writes
    # ------------------------------------------------------------------

    def append_transactions(
        self,
        entity_id: str,
        records: Sequence[Transaction],
        expected_version: Optional[int] = None,
    ) -> List[Transaction]:
        for record in records:
            if record.instrument_id != entity_id:
                raise ValueError(
                    f"Record for {record.instrument_id} cannot be appended to {entity_id}"
                )
        expected = {} if expected_version is None else {entity_id: expected_version}
        receipt = self.commit(CommitBatch(expected_versions=expected, transactions=tuple(records)))
        return list(receipt.transactions)

    def update_confirmation(
        self,
        transaction_id: str,
        confirmed: bool,
        actor_id: str,
        override: bool = False,
    ) -> Transaction:
        """
        Set or clear the confirmation flag.

        Clearing it on a confirmed record needs override=True; otherwise
        TransactionLocked is raised. Setting it on a confirmed record returns
        the record unchanged.
        """
        with self._lock:
            current = self.get_transaction(transaction_id)
            if confirmed == current.confirmed:
                return current
            if not confirmed and not override:
                raise TransactionLocked(f"Transaction {transaction_id} is confirmed")

            at = self._clock()
            if confirmed:
                updated = replace(current, confirmed=True, confirmed_at=at, confirmed_by=actor_id)
                action = ConfirmationAction.CONFIRM
            else:
                updated = replace(current, confirmed=False, confirmed_at=None, confirmed_by=None)
                action = ConfirmationAction.UNCONFIRM
            audit = ConfirmationAudit(transaction_id, action, actor_id, at)
            receipt = self.commit(CommitBatch(confirmations=(updated,), audits=(audit,)))
            return receipt.confirmations[0]

    def commit(self, batch: CommitBatch) -> CommitReceipt:
        """
        Apply a batch all-or-nothing.

        Raises:
            ConcurrentModification: If any expected version is stale.
            InstrumentNotFound / AccountNotFound / TransactionNotFound:
                If a record references an unknown entity.
            TransactionLocked: If a deletion targets a confirmed transaction.
        """
        with self._lock:
            self._validate(batch)
            return self._apply(batch)

    def _validate(self, batch: CommitBatch) -> None:
        for entity_id, expected in batch.expected_versions.items():
            actual = self._versions.get(entity_id, 0)
            if actual != expected:
                raise ConcurrentModification(
                    f"{entity_id}: expected version {expected}, found {actual}"
                )

        for tx in batch.transactions:
            if tx.instrument_id not in self._instruments:
                raise InstrumentNotFound(f"Instrument not found: {tx.instrument_id}")
            if not tx.is_pending:
                raise ValueError(f"Transaction {tx.transaction_id} is already recorded")

        for transaction_id in batch.deletions:
            current = self._transactions.get(transaction_id)
            if current is None:
                raise TransactionNotFound(f"Transaction not found: {transaction_id}")
            if current.confirmed:
                raise TransactionLocked(f"Transaction {transaction_id} is confirmed")

        for tx in batch.confirmations:
            if tx.transaction_id not in self._transactions:
                raise TransactionNotFound(f"Transaction not found: {tx.transaction_id}")

        for ftx in batch.firm_transactions:
            if ftx.account_id not in self._accounts:
                raise AccountNotFound(f"Firm account not found: {ftx.account_id}")

        for instrument_id in batch.active_flags:
            if instrument_id not in self._instruments:
                raise InstrumentNotFound(f"Instrument not found: {instrument_id}")

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _apply(self, batch: CommitBatch) -> CommitReceipt:
        now = self._clock()
        touched: Set[str] = set()

        for transaction_id in batch.deletions:
            removed = self._transactions.pop(transaction_id)
            touched.add(removed.instrument_id)

        stamped: List[Transaction] = []
        for tx in batch.transactions:
            seq = self._next_sequence()
            record = replace(tx, transaction_id=f"tx-{seq:06d}", sequence=seq, created_at=now)
            self._transactions[record.transaction_id] = record
            stamped.append(record)
            touched.add(record.instrument_id)

        confirmations: List[Transaction] = []
        for tx in batch.confirmations:
            self._transactions[tx.transaction_id] = tx
            confirmations.append(tx)
            touched.add(tx.instrument_id)
        self._audits.extend(batch.audits)

        stamped_firm: List[FirmAccountTransaction] = []
        for ftx in batch.firm_transactions:
            seq = self._next_sequence()
            record = replace(ftx, transaction_id=f"ftx-{seq:06d}", sequence=seq, created_at=now)
            self._firm_transactions[record.account_id].append(record)
            stamped_firm.append(record)
            touched.add(record.account_id)

        stamped_advance: List[AdvanceEntry] = []
        for entry in batch.advance_entries:
            seq = self._next_sequence()
            record = replace(entry, entry_id=f"adv-{seq:06d}", sequence=seq, created_at=now)
            self._advance_entries.setdefault(record.counterparty_id, []).append(record)
            stamped_advance.append(record)
            touched.add(record.counterparty_id)

        for instrument_id, active in batch.active_flags.items():
            current = self._instruments[instrument_id]
            if current.active != active:
                self._instruments[instrument_id] = replace(current, active=active)
                touched.add(instrument_id)

        versions = {}
        for entity_id in touched:
            self._versions[entity_id] = self._versions.get(entity_id, 0) + 1
            versions[entity_id] = self._versions[entity_id]

        logger.debug(
            "commit applied: %d tx, %d deletions, %d firm, %d advance, versions=%s",
            len(stamped), len(batch.deletions), len(stamped_firm),
            len(stamped_advance), versions,
        )

        return CommitReceipt(
            transactions=tuple(stamped),
            firm_transactions=tuple(stamped_firm),
            advance_entries=tuple(stamped_advance),
            confirmations=tuple(confirmations),
            versions=versions,
        )
