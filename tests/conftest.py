"""
conftest.py - Shared pytest fixtures for lendbook tests

Provides common fixtures used across unit, conformance and functional tests:
- Actors with no, write, and admin privileges
- An InMemoryStore and LendingEngine on a fixed clock
- An engine with the default monthly loan and a funded cash account
"""

import pytest

from lendbook import (
    Actor, EngineConfig, FirmAccount, InMemoryStore, LendingEngine, Money,
    PRIVILEGE_LEDGER_ADMIN, PRIVILEGE_LEDGER_WRITE,
)

from tests.fake_store import FIXED_NOW, make_instrument


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def writer():
    return Actor("clerk", frozenset({PRIVILEGE_LEDGER_WRITE}))


@pytest.fixture
def admin():
    return Actor("owner", frozenset({PRIVILEGE_LEDGER_WRITE, PRIVILEGE_LEDGER_ADMIN}))


@pytest.fixture
def reader():
    return Actor("viewer", frozenset())


@pytest.fixture
def monthly_loan():
    return make_instrument()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def engine(store, clock):
    return LendingEngine(store, config=EngineConfig(), clock=clock)


@pytest.fixture
def loan_engine(store, engine, monthly_loan):
    """Engine with the monthly loan L-1 (counterparty C-1) and a 5000 cash account."""
    store.add_instrument(monthly_loan)
    store.add_firm_account(FirmAccount("cash", "Cash box", Money.of("5000")))
    return engine
