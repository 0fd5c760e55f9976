"""
Atomicity Conformance Tests

INVARIANT: A commit is all-or-nothing.

    ∀ batch B:
        commit(B) succeeds ⟹ every record in B is stored, each touched
                              entity's version advances by exactly one
        commit(B) fails    ⟹ the store is exactly as before

A payment's INTEREST row, PRINCIPAL row, advance CREDIT and active flag
travel in one batch, so partial application is impossible by construction.
"""

from datetime import date

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from lendbook import (
    AccountNotFound, AdvanceDirection, AdvanceEntry, CommitBatch,
    ConcurrentModification, EngineConfig, FirmAccount, FirmAccountTransaction,
    InMemoryStore, InstrumentNotFound, LendingEngine, Money, Transaction,
    TransactionKind,
)
from tests.fake_store import FIXED_NOW, ConflictingStore, make_instrument


DAY = date(2025, 2, 1)


def _seeded_store(store_cls=InMemoryStore, **kwargs):
    store = store_cls(clock=lambda: FIXED_NOW, **kwargs)
    store.add_instrument(make_instrument("L-1"))
    store.add_instrument(make_instrument("L-2"))
    store.add_firm_account(FirmAccount("cash", "Cash", Money.of("1000")))
    return store


def _snapshot(store):
    return (
        tuple(store.fetch_transactions("L-1")),
        tuple(store.fetch_transactions("L-2")),
        tuple(store.fetch_firm_transactions("cash")),
        tuple(store.fetch_advance_entries("C-1")),
        tuple(store.version_of(e) for e in ("L-1", "L-2", "cash", "C-1")),
        tuple(i.active for i in store.list_instruments()),
    )


def _pending_tx(instrument_id, cents):
    return Transaction(
        instrument_id=instrument_id,
        amount=Money.of(cents).scale(1, 100),
        kind=TransactionKind.PRINCIPAL,
        payment_date=DAY,
    )


class TestAtomicityProperties:
    """Property-based atomicity tests."""

    @given(
        st.lists(st.tuples(st.sampled_from(["L-1", "L-2"]), st.integers(1, 10_000)),
                 min_size=1, max_size=8),
        st.integers(min_value=0, max_value=8),
        st.sampled_from(["instrument", "account"]),
    )
    @settings(max_examples=60)
    def test_one_bad_record_rejects_the_whole_batch(self, rows, position, bad):
        """
        PROPERTY: A batch with one invalid record stores none of its records.
        """
        store = _seeded_store()
        store.append_transactions("L-1", [_pending_tx("L-1", 500)])
        before = _snapshot(store)

        transactions = [_pending_tx(i, c) for i, c in rows]
        firm = [FirmAccountTransaction(
            account_id="cash", kind="expense", amount=Money.of("5"), transaction_date=DAY,
        )]
        if bad == "instrument":
            transactions.insert(min(position, len(transactions)), _pending_tx("L-404", 100))
            expected = InstrumentNotFound
        else:
            firm.insert(min(position, len(firm)), FirmAccountTransaction(
                account_id="vault", kind="expense", amount=Money.of("5"), transaction_date=DAY,
            ))
            expected = AccountNotFound

        with pytest.raises(expected):
            store.commit(CommitBatch(
                transactions=tuple(transactions),
                firm_transactions=tuple(firm),
                active_flags={"L-2": False},
            ))
        assert _snapshot(store) == before

    @given(st.lists(st.tuples(st.sampled_from(["L-1", "L-2"]), st.integers(1, 10_000)),
                    min_size=1, max_size=8))
    @settings(max_examples=60)
    def test_successful_batch_bumps_each_entity_once(self, rows):
        """
        PROPERTY: Every touched entity advances by exactly one version per commit.
        """
        store = _seeded_store()
        receipt = store.commit(CommitBatch(
            transactions=tuple(_pending_tx(i, c) for i, c in rows),
        ))
        touched = {i for i, _ in rows}
        assert set(receipt.versions) == touched
        assert all(v == 1 for v in receipt.versions.values())
        assert len(receipt.transactions) == len(rows)

    @given(st.integers(min_value=1, max_value=5))
    @settings(max_examples=20)
    def test_exhausted_retries_leave_no_trace(self, max_retries):
        """
        PROPERTY: A payment that never wins its commit writes nothing.
        """
        store = _seeded_store(ConflictingStore, conflicts=max_retries)
        engine = LendingEngine(store, config=EngineConfig(max_retries=max_retries),
                               clock=lambda: FIXED_NOW)
        before = _snapshot(store)
        result = engine.record_payment("L-1", "1500", date(2025, 3, 15))
        assert result.rejected
        assert isinstance(result.error, ConcurrentModification)
        assert _snapshot(store) == before


class TestAtomicityExamples:
    """Example-based atomicity tests."""

    def test_overpayment_commits_rows_credit_and_flag_together(self):
        store = _seeded_store()
        engine = LendingEngine(store, clock=lambda: FIXED_NOW)
        result = engine.record_payment("L-1", "1500", date(2025, 3, 15))
        assert result.applied
        assert len(store.fetch_transactions("L-1")) == 2
        [credit] = store.fetch_advance_entries("C-1")
        assert credit.direction == AdvanceDirection.CREDIT
        assert credit.payment_ref == result.value.allocation.payment_ref
        assert not store.fetch_instrument("L-1").active

    def test_stale_advance_version_rejects_payment_batch(self):
        store = _seeded_store()
        before = _snapshot(store)
        with pytest.raises(ConcurrentModification):
            store.commit(CommitBatch(
                expected_versions={"L-1": 0, "C-1": 3},
                transactions=(_pending_tx("L-1", 100),),
                advance_entries=(AdvanceEntry(
                    counterparty_id="C-1", amount=Money.of("1"),
                    direction=AdvanceDirection.CREDIT, entry_date=DAY, reason="x",
                ),),
            ))
        assert _snapshot(store) == before

    def test_missing_funding_account_rejects_counterparty_payment(self):
        store = _seeded_store()
        engine = LendingEngine(store, clock=lambda: FIXED_NOW)
        before = _snapshot(store)
        result = engine.record_counterparty_payment(
            "C-1", "100", date(2025, 3, 15), funding_account_id="vault",
        )
        assert isinstance(result.error, AccountNotFound)
        assert _snapshot(store) == before
