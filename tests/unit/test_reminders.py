"""
test_reminders.py - Unit tests for collection reminders
"""

from datetime import date

from lendbook import (
    DueStatus, InterestMode, Money, TransactionKind, compute_reminders,
    summarize_reminders,
)
from lendbook.reminders import classify_due_status
from tests.fake_store import make_instrument, recorded_tx


AS_OF = date(2025, 3, 15)


def _portfolio():
    return [
        make_instrument("L-1", due=date(2025, 3, 15)),
        make_instrument("L-2", due=date(2025, 3, 1), mode=InterestMode.NONE),
        make_instrument("L-3", due=date(2025, 4, 1)),
        make_instrument("L-4", due=None),
        make_instrument("L-5", due=date(2025, 2, 1), active=False),
        make_instrument("L-6", due=date(2025, 2, 20), mode=InterestMode.NONE),
    ]


class TestComputeReminders:

    def test_selects_due_active_instruments_with_principal(self):
        history = {"L-6": [recorded_tx("1000", instrument_id="L-6")]}
        reminders = compute_reminders(AS_OF, _portfolio(), history)
        assert [r.instrument_id for r in reminders] == ["L-2", "L-1"]

    def test_annotations(self):
        reminders = {r.instrument_id: r for r in compute_reminders(AS_OF, _portfolio(), {})}

        due_today = reminders["L-1"]
        assert due_today.due_status == DueStatus.DUE_TODAY
        assert due_today.days_overdue == 0
        assert due_today.interest_outstanding == Money.of("200")
        assert due_today.amount_due == Money.of("1200")

        overdue = reminders["L-2"]
        assert overdue.due_status == DueStatus.OVERDUE
        assert overdue.days_overdue == 14
        assert overdue.amount_due == Money.of("1000")

    def test_interest_paid_reduces_amount_due(self):
        history = {"L-1": [recorded_tx("150", TransactionKind.INTEREST,
                                       payment_date=date(2025, 3, 10), instrument_id="L-1")]}
        reminders = {r.instrument_id: r for r in compute_reminders(AS_OF, _portfolio(), history)}
        assert reminders["L-1"].interest_outstanding == Money.of("50")
        assert not reminders["L-1"].collected_on_date

    def test_collected_on_date(self):
        history = {"L-2": [recorded_tx("100", payment_date=AS_OF, instrument_id="L-2")]}
        reminders = {r.instrument_id: r for r in compute_reminders(AS_OF, _portfolio(), history)}
        assert reminders["L-2"].collected_on_date
        assert reminders["L-2"].principal_outstanding == Money.of("900")

    def test_payments_after_as_of_are_ignored(self):
        history = {"L-2": [recorded_tx("100", payment_date=date(2025, 3, 20), instrument_id="L-2")]}
        reminders = {r.instrument_id: r for r in compute_reminders(AS_OF, _portfolio(), history)}
        assert reminders["L-2"].principal_outstanding == Money.of("1000")
        assert reminders["L-2"].amount_due == Money.of("1000")
        assert not reminders["L-2"].collected_on_date

    def test_summary(self):
        history = {
            "L-2": [recorded_tx("100", payment_date=AS_OF, instrument_id="L-2")],
            "L-6": [recorded_tx("1000", instrument_id="L-6")],
        }
        summary = summarize_reminders(compute_reminders(AS_OF, _portfolio(), history))
        assert summary.total == 2
        assert summary.collected == 1
        assert summary.pending == 1
        assert summary.total_amount_due == Money.of("2100")


class TestClassifyDueStatus:

    def test_statuses(self):
        owed = Money.of("10")
        assert classify_due_status(None, AS_OF, owed) == DueStatus.NOT_DUE
        assert classify_due_status(date(2025, 4, 1), AS_OF, owed) == DueStatus.NOT_DUE
        assert classify_due_status(AS_OF, AS_OF, owed) == DueStatus.DUE_TODAY
        assert classify_due_status(date(2025, 3, 1), AS_OF, owed) == DueStatus.OVERDUE
        assert classify_due_status(date(2025, 3, 1), AS_OF, Money.of("0.01")) == DueStatus.SETTLED
