"""
test_lending_scenarios.py - End-to-end lending scenario tests

Tests complete flows through LendingEngine and InMemoryStore:
- Monthly loan: partial interest, top-up, settlement, overpayment to advance
- Supplier bills paid oldest first from a funded firm account
- Firm-account cash book with transfers
- Advance credit carried to a later loan
- Legacy catalog rows with "simple" interest
- Concurrent payments against one instrument
- Weekly EMI collection round over catalog rows
"""

import threading
from datetime import date

import pytest

from lendbook import (
    Actor, CollectionStatus, DueStatus, EngineConfig, FirmAccount, InMemoryStore,
    InstrumentCategory, InterestMode, LendingEngine, Money, PRIVILEGE_LEDGER_WRITE,
    TransactionKind, load_instrument,
)
from tests.fake_store import FIXED_NOW, make_instrument


CLERK = Actor("clerk", frozenset({PRIVILEGE_LEDGER_WRITE}))


def _engine(*instruments, accounts=(), **config):
    store = InMemoryStore(clock=lambda: FIXED_NOW)
    for instrument in instruments:
        store.add_instrument(instrument)
    for account in accounts:
        store.add_firm_account(account)
    engine = LendingEngine(store, config=EngineConfig(**config), clock=lambda: FIXED_NOW)
    return store, engine


class TestMonthlyLoanLifecycle:
    """1000 lent at 10% monthly on 2025-01-15."""

    def test_partial_interest_then_settlement_then_overpayment(self):
        store, engine = _engine(make_instrument(due=date(2025, 3, 1)))

        # Two months in: 200 interest accrued, 150 covers part of it
        first = engine.record_payment("L-1", "150", date(2025, 3, 15))
        assert [(t.kind, t.amount) for t in first.value.transactions] == [
            (TransactionKind.INTEREST, Money.of("150")),
        ]
        summary = engine.instrument_summary("L-1", date(2025, 3, 15))
        assert summary.interest_outstanding == Money.of("50")
        assert summary.balance == Money.of("1000")
        assert summary.due_status == DueStatus.OVERDUE

        # Remaining 50 interest, then 400 principal
        second = engine.record_payment("L-1", "450", date(2025, 3, 15))
        assert second.value.allocation.split.to_dict() == {
            "interest_portion": "50.00",
            "principal_portion": "400.00",
            "overpayment": "0.00",
        }
        assert engine.instrument_position("L-1").principal_outstanding == Money.of("600")

        # Interest now accrues on 600 for the whole period: 600 * 10% * 3 = 180,
        # less 200 already paid, so nothing is owed; 900 clears 600 and leaves 300
        third = engine.record_payment("L-1", "900", date(2025, 4, 15))
        assert third.value.allocation.interest_outstanding == Money.zero()
        assert third.value.settled_instrument_ids == ("L-1",)
        assert engine.advance_balance("C-1") == Money.of("300")
        [credit] = store.fetch_advance_entries("C-1")
        assert credit.reason == "overpayment from payment of 900.00 on 2025-04-15"
        assert not store.fetch_instrument("L-1").active
        assert engine.reminders(date(2025, 4, 16)) == []

    def test_confirmed_history_survives(self):
        store, engine = _engine(make_instrument())
        [tx] = engine.record_payment("L-1", "150", date(2025, 3, 15)).value.transactions
        engine.confirm_transaction(tx.transaction_id, CLERK)
        assert engine.edit_transaction(tx.transaction_id, "10").rejected
        assert engine.record_payment("L-1", "50", date(2025, 3, 15)).applied
        assert engine.instrument_summary("L-1", date(2025, 3, 15)).interest_outstanding == Money.zero()


class TestSupplierBills:
    """Three bills from one supplier paid from the bank account."""

    @pytest.fixture
    def supplier(self):
        bills = [
            make_instrument("B-2", principal="250", mode=InterestMode.NONE,
                            origin=date(2025, 2, 1), counterparty_id="S-1",
                            category=InstrumentCategory.BILL),
            make_instrument("B-1", principal="400", mode=InterestMode.NONE,
                            origin=date(2025, 1, 10), counterparty_id="S-1",
                            category=InstrumentCategory.BILL),
            make_instrument("B-3", principal="600", mode=InterestMode.NONE,
                            origin=date(2025, 3, 1), counterparty_id="S-1",
                            category=InstrumentCategory.BILL),
        ]
        return _engine(*bills, accounts=[FirmAccount("bank", "Bank", Money.of("3000"))])

    def test_oldest_bill_first(self, supplier):
        store, engine = supplier
        result = engine.record_counterparty_payment(
            "S-1", "800", date(2025, 3, 20), funding_account_id="bank",
        )
        paid = {a.instrument_id: a.split.applied for a in result.value.allocation.allocations}
        assert paid == {"B-1": Money.of("400"), "B-2": Money.of("250"), "B-3": Money.of("150")}
        assert result.value.settled_instrument_ids == ("B-1", "B-2")
        assert [i.instrument_id for i in store.list_instruments("S-1", active_only=True)] == ["B-3"]
        assert engine.firm_account_balance("bank") == Money.of("2200")
        assert engine.advance_balance("S-1") == Money.zero()

    def test_every_record_shares_the_payment_ref(self, supplier):
        store, engine = supplier
        result = engine.record_counterparty_payment("S-1", "1300", date(2025, 3, 20))
        refs = {t.payment_ref for t in result.value.transactions}
        refs.update(e.payment_ref for e in result.value.advance_entries)
        assert refs == {result.value.allocation.payment_ref}
        assert engine.advance_balance("S-1") == Money.of("50")

    def test_transactions_grouped_by_instrument(self, supplier):
        _, engine = supplier
        engine.record_counterparty_payment("S-1", "500", date(2025, 3, 20))
        grouped = engine.transactions_by_instrument("S-1")
        assert sorted(grouped) == ["B-1", "B-2"]


class TestFirmCashBook:

    def test_cash_book_and_transfer(self):
        _, engine = _engine(accounts=[
            FirmAccount("cash", "Cash box", Money.of("5000")),
            FirmAccount("bank", "Bank", Money.of("0")),
        ])
        engine.record_firm_transaction("cash", "deposit", "1000", date(2025, 2, 1))
        engine.record_firm_transaction("cash", "withdrawal", "200", date(2025, 2, 5))
        engine.record_firm_transaction("cash", "expense", "300", date(2025, 2, 9),
                                       description="rent")
        assert engine.firm_account_balance("cash") == Money.of("5500")

        engine.transfer_between_accounts("cash", "bank", "2500", date(2025, 2, 10))
        assert engine.firm_account_balance("cash") == Money.of("3000")
        assert engine.firm_account_balance("bank") == Money.of("2500")
        assert engine.firm_account_balance("cash", date(2025, 2, 9)) == Money.of("5500")

    def test_adjustment_sign_is_configurable(self):
        _, engine = _engine(accounts=[FirmAccount("cash", "Cash", Money.of("100"))],
                            adjustment_sign=-1)
        engine.record_firm_transaction("cash", "Adjustment", "40", date(2025, 2, 1))
        assert engine.firm_account_balance("cash") == Money.of("60")


class TestAdvanceCarriedForward:

    def test_credit_from_one_loan_pays_the_next(self):
        store, engine = _engine(
            make_instrument("L-1", principal="500", mode=InterestMode.NONE),
            make_instrument("L-2", principal="200", mode=InterestMode.NONE,
                            origin=date(2025, 4, 1)),
        )
        engine.record_payment("L-1", "800", date(2025, 3, 1))
        assert engine.advance_balance("C-1") == Money.of("300")

        result = engine.apply_advance("L-2", date(2025, 4, 2))
        assert result.value.settled_instrument_ids == ("L-2",)
        assert engine.advance_balance("C-1") == Money.of("100")
        assert store.list_instruments(active_only=True) == []

        refund = engine.draw_advance("C-1", "100", date(2025, 4, 3), "cash refund")
        assert refund.applied
        assert engine.advance_balance("C-1") == Money.zero()


class TestLegacyCatalog:

    def test_simple_interest_row_accrues_daily(self):
        instrument = load_instrument({
            "id": "OLD-7",
            "counterparty_id": "C-7",
            "principal": "3650",
            "interest_rate": "10",
            "interest_type": "simple",
            "origin_date": date(2025, 1, 1),
        })
        assert instrument.interest_mode == InterestMode.DAILY
        _, engine = _engine(instrument)
        # 3650 * 10% * 73 / 365
        summary = engine.instrument_summary("OLD-7", date(2025, 3, 15))
        assert summary.interest_accrued == Money.of("73")


class TestConcurrentPayments:

    def test_parallel_payments_are_serialised(self):
        store, engine = _engine(make_instrument("L-1", principal="10000", mode=InterestMode.NONE))
        results = []

        def pay():
            results.append(engine.record_payment("L-1", "100", date(2025, 3, 1)))

        threads = [threading.Thread(target=pay) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.applied for r in results)
        assert engine.instrument_position("L-1").principal_outstanding == Money.of("8000")
        assert store.version_of("L-1") == 20


class TestWeeklyCollectionRound:
    """Two weekly-EMI customers on a Wednesday collection round."""

    def test_round_from_catalog_rows(self):
        rows = [
            {"id": "W-1", "counterparty_id": "C-1", "principal": "2000",
             "origin_date": date(2025, 1, 15), "emi_amount": "250"},
            {"id": "W-2", "counterparty_id": "C-2", "principal": "1000",
             "origin_date": date(2025, 1, 15), "emi_amount": "125", "emi_frequency": "weekly"},
        ]
        _, engine = _engine(*[load_instrument(row) for row in rows])
        day = date(2025, 3, 19)
        engine.record_payment("W-1", "250", day)

        by_id = {c.counterparty_id: c for c in engine.collection_status(day)}
        assert by_id["C-1"].status == CollectionStatus.PAID
        assert by_id["C-2"].status == CollectionStatus.PENDING
        summary = engine.collection_summary(day)
        assert summary.total_collected == Money.of("250")
        assert summary.pending_amount == Money.of("125")

        # Thursday: nobody is scheduled
        assert engine.collection_summary(date(2025, 3, 20)).scheduled_count == 0
