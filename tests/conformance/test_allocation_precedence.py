"""
Allocation Precedence Conformance Tests

INVARIANT: A payment covers interest first, then principal, and only then
becomes advance credit. Nothing is created or lost in the split.

    ∀ payments p, outstanding (i, q):
        interest + principal + overpayment = p
        principal > 0 ⟹ interest = i
        overpayment > 0 ⟹ interest = i ∧ principal = q

Counterparty payments extend the rule across instruments: the oldest open
instrument (by origin date) is settled before the next one receives anything.
"""

from datetime import date, timedelta
from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from lendbook import (
    InterestMode, Money, TransactionKind, calculate_split,
    compute_counterparty_allocation, compute_payment_allocation,
)
from tests.fake_store import ORIGIN, make_instrument


money = st.integers(min_value=0, max_value=1_000_000).map(lambda c: Money(Decimal(c).scaleb(-2)))
positive_money = st.integers(min_value=1, max_value=1_000_000).map(lambda c: Money(Decimal(c).scaleb(-2)))


class TestAllocationPrecedenceProperties:
    """Property-based allocation precedence tests."""

    @given(positive_money, money, money)
    @settings(max_examples=200)
    def test_split_conserves_incoming(self, incoming, interest, principal):
        """
        PROPERTY: The three portions always add up to the incoming amount.
        """
        split = calculate_split(incoming, interest, principal)
        total = split.interest_portion + split.principal_portion + split.overpayment
        assert total == incoming

    @given(positive_money, money, money)
    @settings(max_examples=200)
    def test_interest_before_principal_before_overpayment(self, incoming, interest, principal):
        """
        PROPERTY: A later bucket only receives money once earlier ones are full.
        """
        split = calculate_split(incoming, interest, principal)
        if split.principal_portion.is_positive():
            assert split.interest_portion == interest
        if split.overpayment.is_positive():
            assert split.interest_portion == interest
            assert split.principal_portion == principal
        assert split.interest_portion <= interest
        assert split.principal_portion <= principal

    @given(positive_money, st.integers(min_value=0, max_value=365))
    @settings(max_examples=100)
    def test_records_follow_split(self, incoming, days):
        """
        PROPERTY: Allocation emits INTEREST before PRINCIPAL and credits exactly the overpayment.
        """
        instrument = make_instrument(principal="2500", mode=InterestMode.DAILY, rate="18")
        allocation = compute_payment_allocation(
            instrument, [], ORIGIN + timedelta(days=days), incoming.amount,
        )
        kinds = [tx.kind for tx in allocation.new_transactions]
        assert kinds in (
            [], [TransactionKind.INTEREST], [TransactionKind.PRINCIPAL],
            [TransactionKind.INTEREST, TransactionKind.PRINCIPAL],
        )
        recorded = Money.sum(tx.amount for tx in allocation.new_transactions)
        credited = allocation.advance_credit.amount if allocation.advance_credit else Money.zero()
        assert recorded + credited == incoming

    @given(positive_money)
    @settings(max_examples=100)
    def test_counterparty_payment_is_oldest_first(self, incoming):
        """
        PROPERTY: A newer instrument receives nothing until every older one is settled.
        """
        instruments = [
            make_instrument("B-3", principal="300", mode=InterestMode.NONE, origin=date(2025, 3, 1)),
            make_instrument("B-1", principal="100", mode=InterestMode.NONE, origin=date(2025, 1, 1)),
            make_instrument("B-2", principal="200", mode=InterestMode.NONE, origin=date(2025, 2, 1)),
        ]
        result = compute_counterparty_allocation(
            instruments, {}, date(2025, 4, 1), incoming.amount,
        )
        paid = {a.instrument_id: a.split.applied for a in result.allocations}
        assert [a.instrument_id for a in result.allocations][:1] == ["B-1"]
        if paid.get("B-2", Money.zero()).is_positive():
            assert paid["B-1"] == Money.of("100")
        if paid.get("B-3", Money.zero()).is_positive():
            assert paid["B-2"] == Money.of("200")
        credited = result.advance_credit.amount if result.advance_credit else Money.zero()
        assert result.total_applied + credited == incoming


class TestAllocationPrecedenceExamples:
    """Example-based precedence tests."""

    def test_two_months_interest_absorbs_small_payment(self):
        allocation = compute_payment_allocation(make_instrument(), [], date(2025, 3, 15), "150")
        assert allocation.interest_outstanding == Money.of("200")
        assert allocation.split.interest_portion == Money.of("150")
        assert allocation.split.principal_portion == Money.zero()
        assert allocation.remaining_interest == Money.of("50")

    def test_overpayment_after_full_settlement(self):
        allocation = compute_payment_allocation(make_instrument(), [], date(2025, 3, 15), "1500")
        assert allocation.split.to_dict() == {
            "interest_portion": "200.00",
            "principal_portion": "1000.00",
            "overpayment": "300.00",
        }
        assert allocation.settles_instrument
