"""
test_replay.py - Unit tests for balance replay

Tests:
- Generic fold ordering by (date, sequence)
- SignTable registration and unknown kinds
- Instrument replay: principal / interest / legacy mixed payments
- Negative outstanding is clamped and logged, never raised
- Firm-account replay with the default and configured sign tables
- ReplayCache keying and invalidation
"""

import logging
import pytest
from datetime import date

from lendbook import (
    FIRM_ACCOUNT_SIGNS, INSTRUMENT_PRINCIPAL_SIGNS, EngineConfig, Money,
    ReplayCache, SignTable, TransactionKind, UnknownTransactionKind,
    replay_firm_account, replay_instrument,
)
from tests.fake_store import make_instrument, recorded_firm_tx, recorded_tx


# ============================================================================
# SIGN TABLES
# ============================================================================

class TestSignTable:

    def test_default_firm_signs(self):
        assert FIRM_ACCOUNT_SIGNS.sign("deposit") == 1
        assert FIRM_ACCOUNT_SIGNS.sign("partner_deposit") == 1
        assert FIRM_ACCOUNT_SIGNS.sign("income") == 1
        assert FIRM_ACCOUNT_SIGNS.sign("withdrawal") == -1
        assert FIRM_ACCOUNT_SIGNS.sign("partner_withdrawal") == -1
        assert FIRM_ACCOUNT_SIGNS.sign("expense") == -1
        assert FIRM_ACCOUNT_SIGNS.sign("refund") == -1
        assert FIRM_ACCOUNT_SIGNS.sign("adjustment") == 1

    def test_instrument_signs(self):
        assert INSTRUMENT_PRINCIPAL_SIGNS.sign(TransactionKind.PRINCIPAL) == -1
        assert INSTRUMENT_PRINCIPAL_SIGNS.sign(TransactionKind.MIXED) == -1
        assert INSTRUMENT_PRINCIPAL_SIGNS.sign(TransactionKind.INTEREST) == 0

    def test_unknown_kind_raises(self):
        with pytest.raises(UnknownTransactionKind):
            FIRM_ACCOUNT_SIGNS.sign("bonus")

    def test_with_kind_returns_new_table(self):
        extended = FIRM_ACCOUNT_SIGNS.with_kind("loan_disbursement", -1)
        assert extended.sign("loan_disbursement") == -1
        assert "loan_disbursement" not in FIRM_ACCOUNT_SIGNS

    def test_kind_lookup_is_case_insensitive(self):
        assert FIRM_ACCOUNT_SIGNS.sign("  Deposit ") == 1

    def test_invalid_sign_rejected(self):
        with pytest.raises(ValueError):
            SignTable({"deposit": 2})


# ============================================================================
# INSTRUMENT REPLAY
# ============================================================================

class TestReplayInstrument:

    def test_no_transactions(self):
        pos = replay_instrument(make_instrument(fees="25"), [])
        assert pos.principal_total == Money.of("1025")
        assert pos.principal_outstanding == Money.of("1025")
        assert pos.transaction_count == 0
        assert pos.last_transaction_id is None

    def test_principal_and_interest(self):
        txs = [
            recorded_tx("100", TransactionKind.INTEREST, sequence=1),
            recorded_tx("300", TransactionKind.PRINCIPAL, sequence=2),
        ]
        pos = replay_instrument(make_instrument(), txs)
        assert pos.principal_paid == Money.of("300")
        assert pos.interest_paid == Money.of("100")
        assert pos.principal_outstanding == Money.of("700")
        assert pos.balance == pos.principal_outstanding
        assert pos.totals_by_category["interest"] == Money.of("100")

    def test_legacy_mixed_payment_reduces_principal(self):
        txs = [recorded_tx("250", TransactionKind.parse("payment"))]
        pos = replay_instrument(make_instrument(), txs)
        assert txs[0].kind == TransactionKind.MIXED
        assert pos.principal_outstanding == Money.of("750")

    def test_order_of_input_does_not_matter(self):
        txs = [
            recorded_tx("100", payment_date=date(2025, 3, 1), sequence=3),
            recorded_tx("50", payment_date=date(2025, 2, 1), sequence=1),
            recorded_tx("25", payment_date=date(2025, 2, 1), sequence=2),
        ]
        forward = replay_instrument(make_instrument(), txs)
        backward = replay_instrument(make_instrument(), list(reversed(txs)))
        assert forward == backward
        assert forward.last_transaction_id == "tx-000003"

    def test_backdated_entry_sorts_by_date_then_sequence(self):
        txs = [
            recorded_tx("100", payment_date=date(2025, 3, 1), sequence=1),
            recorded_tx("40", payment_date=date(2025, 2, 1), sequence=2),
        ]
        pos = replay_instrument(make_instrument(), txs)
        assert pos.last_transaction_id == "tx-000001"
        assert pos.principal_outstanding == Money.of("860")

    def test_exclude_ids(self):
        txs = [recorded_tx("100", sequence=1), recorded_tx("200", sequence=2)]
        pos = replay_instrument(make_instrument(), txs, exclude_ids=["tx-000002"])
        assert pos.principal_outstanding == Money.of("900")
        assert pos.transaction_count == 1

    def test_foreign_transaction_rejected(self):
        with pytest.raises(ValueError):
            replay_instrument(make_instrument(), [recorded_tx("1", instrument_id="L-2")])

    def test_negative_outstanding_clamped_and_logged(self, caplog):
        txs = [recorded_tx("1200")]
        with caplog.at_level(logging.WARNING, logger="lendbook.replay"):
            pos = replay_instrument(make_instrument(), txs)
        assert pos.principal_outstanding == Money.zero()
        assert "clamping to 0" in caplog.text


# ============================================================================
# FIRM ACCOUNT REPLAY
# ============================================================================

class TestReplayFirmAccount:

    def test_opening_plus_signed_movements(self):
        txs = [
            recorded_firm_tx("deposit", "1000", sequence=1),
            recorded_firm_tx("withdrawal", "200", sequence=2),
            recorded_firm_tx("expense", "300", sequence=3),
        ]
        result = replay_firm_account(Money.of("5000"), txs)
        assert result.balance == Money.of("5500")
        assert result.entry_count == 3
        assert result.totals_by_category["expense"] == Money.of("300")

    def test_adjustment_sign_follows_config(self):
        txs = [recorded_firm_tx("adjustment", "50")]
        signs = EngineConfig(adjustment_sign=-1).firm_sign_table()
        assert replay_firm_account(Money.of("100"), txs, signs).balance == Money.of("50")
        assert replay_firm_account(Money.of("100"), txs).balance == Money.of("150")

    def test_unknown_kind_raises(self):
        with pytest.raises(UnknownTransactionKind):
            replay_firm_account(Money.zero(), [recorded_firm_tx("gift", "5")])

    def test_custom_kind_from_config(self):
        signs = EngineConfig(custom_firm_kinds={"loan_disbursement": -1}).firm_sign_table()
        txs = [recorded_firm_tx("loan_disbursement", "400")]
        assert replay_firm_account(Money.of("1000"), txs, signs).balance == Money.of("600")


# ============================================================================
# REPLAY CACHE
# ============================================================================

class TestReplayCache:

    def test_hit_on_same_history(self):
        cache = ReplayCache()
        txs = [recorded_tx("100", sequence=1)]
        calls = []

        def compute():
            calls.append(1)
            return replay_instrument(make_instrument(), txs)

        first = cache.get_or_compute("L-1", txs, compute)
        second = cache.get_or_compute("L-1", txs, compute)
        assert first is second
        assert len(calls) == 1
        assert cache.hits == 1

    def test_new_entry_changes_key(self):
        cache = ReplayCache()
        txs = [recorded_tx("100", sequence=1)]
        cache.get_or_compute("L-1", txs, lambda: "old")
        txs.append(recorded_tx("50", sequence=2))
        assert cache.get_or_compute("L-1", txs, lambda: "new") == "new"

    def test_invalidate(self):
        cache = ReplayCache()
        cache.get_or_compute("L-1", [], lambda: 1)
        cache.get_or_compute("L-2", [], lambda: 2)
        cache.invalidate("L-1")
        assert len(cache) == 1
        assert cache.get_or_compute("L-1", [], lambda: 3) == 3
