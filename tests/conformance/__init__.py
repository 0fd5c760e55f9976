"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending ledger.
Any compliant store or engine MUST pass these tests.

The tests are organized by invariant:
1. determinism.py - Replay and allocation are pure functions of their inputs
2. non_negativity.py - Outstanding figures and advance balances never go below zero
3. allocation_precedence.py - Interest first, then principal, then advance credit
4. atomicity.py - A commit applies every record or none
5. confirmation_immutability.py - Confirmed records cannot be edited or deleted

These tests use hypothesis for property-based testing.
"""
