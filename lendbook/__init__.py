"""
lendbook - Ledger & Interest-Accrual Engine for a Small Lending Business

Balances are derived by replaying transaction history, never stored. Payments
are split interest first, then principal; overpayment becomes advance credit
for the counterparty. Confirmed transactions are frozen.

Usage:
    from datetime import date
    from decimal import Decimal
    from lendbook import (
        InMemoryStore, LendingEngine, Instrument, InstrumentCategory,
        InterestMode, Money,
    )

    store = InMemoryStore()
    store.add_instrument(Instrument(
        instrument_id="L-1",
        category=InstrumentCategory.LOAN,
        counterparty_id="C-1",
        principal=Money.of("1000"),
        interest_rate=Decimal("10"),
        interest_mode=InterestMode.MONTHLY,
        origin_date=date(2025, 1, 15),
    ))

    engine = LendingEngine(store)
    result = engine.record_payment("L-1", "150", date(2025, 3, 15))
    result.value.allocation.split.to_dict()
    # {'interest_portion': '150.00', 'principal_portion': '0.00', 'overpayment': '0.00'}
"""

# Money
from .money import (
    Money,
    MoneyLike,
    MONEY_PLACES,
    min_of,
    max_of,
)

# Core types
from .core import (
    TransactionLogStore,
    InstrumentCatalog,
    Instrument,
    Transaction,
    FirmAccount,
    FirmAccountTransaction,
    AdvanceEntry,
    ConfirmationAudit,
    Actor,
    CommitBatch,
    CommitReceipt,
    InterestMode,
    TransactionKind,
    InstrumentCategory,
    AdvanceDirection,
    ConfirmationState,
    ConfirmationAction,
    DueStatus,
    EmiFrequency,
    ExecuteResult,
    LendingError,
    InvalidAmount,
    InstrumentNotFound,
    AccountNotFound,
    TransactionNotFound,
    TransactionLocked,
    NegativeOutstandingInvariantViolation,
    ConcurrentModification,
    NotAuthorized,
    InsufficientAdvance,
    UnknownTransactionKind,
    ConfigurationError,
    parse_amount,
    load_instrument,
    group_by_instrument,
    SETTLEMENT_EPSILON,
    PAYMENT_MODE_CASH,
    PAYMENT_MODE_BANK,
    PAYMENT_MODE_ADVANCE,
    PRIVILEGE_LEDGER_WRITE,
    PRIVILEGE_LEDGER_ADMIN,
)

# Accrual
from .accrual import (
    Elapsed,
    compute_elapsed,
    calculate_accrued_interest,
    accrued_interest_for,
    normalize_interest_mode,
)

# Replay
from .replay import (
    SignTable,
    ReplayResult,
    InstrumentPosition,
    ReplayCache,
    FIRM_ACCOUNT_SIGNS,
    INSTRUMENT_PRINCIPAL_SIGNS,
    replay,
    replay_instrument,
    replay_firm_account,
    entries_as_of,
)

# Allocation
from .allocation import (
    PaymentSplit,
    PaymentAllocation,
    CounterpartyAllocation,
    EditReallocation,
    calculate_split,
    compute_payment_allocation,
    compute_counterparty_allocation,
    compute_edit_reallocation,
)

# Confirmation
from .confirmation import (
    confirm,
    administrative_unconfirm,
    ensure_mutable,
)

# Advance credit
from .advance import (
    advance_balance,
    credit_overpayment,
    plan_draw,
)

# Reminders
from .reminders import (
    Reminder,
    ReminderSummary,
    compute_reminders,
    summarize_reminders,
)

# EMI collection
from .collection import (
    CollectionStatus,
    CounterpartyCollection,
    CollectionSummary,
    is_emi_due,
    compute_collection_status,
    summarize_collections,
)

# Store, engine, configuration
from .store import InMemoryStore
from .engine import (
    LendingEngine,
    EngineResult,
    PaymentOutcome,
    InstrumentSummary,
    FirmAccountSummary,
)
from .config import EngineConfig
from .logging import setup_logging, get_logger, JsonFormatter


__all__ = [
    # Money
    'Money', 'MoneyLike', 'MONEY_PLACES', 'min_of', 'max_of',
    # Protocols
    'TransactionLogStore', 'InstrumentCatalog',
    # Records
    'Instrument', 'Transaction', 'FirmAccount', 'FirmAccountTransaction',
    'AdvanceEntry', 'ConfirmationAudit', 'Actor', 'CommitBatch', 'CommitReceipt',
    # Enums
    'InterestMode', 'TransactionKind', 'InstrumentCategory', 'AdvanceDirection',
    'ConfirmationState', 'ConfirmationAction', 'DueStatus', 'EmiFrequency',
    'ExecuteResult',
    # Exceptions
    'LendingError', 'InvalidAmount', 'InstrumentNotFound', 'AccountNotFound',
    'TransactionNotFound', 'TransactionLocked', 'NegativeOutstandingInvariantViolation',
    'ConcurrentModification', 'NotAuthorized', 'InsufficientAdvance',
    'UnknownTransactionKind', 'ConfigurationError',
    # Helpers and constants
    'parse_amount', 'load_instrument', 'group_by_instrument',
    'SETTLEMENT_EPSILON', 'PAYMENT_MODE_CASH', 'PAYMENT_MODE_BANK',
    'PAYMENT_MODE_ADVANCE', 'PRIVILEGE_LEDGER_WRITE', 'PRIVILEGE_LEDGER_ADMIN',
    # Accrual
    'Elapsed', 'compute_elapsed', 'calculate_accrued_interest',
    'accrued_interest_for', 'normalize_interest_mode',
    # Replay
    'SignTable', 'ReplayResult', 'InstrumentPosition', 'ReplayCache',
    'FIRM_ACCOUNT_SIGNS', 'INSTRUMENT_PRINCIPAL_SIGNS',
    'replay', 'replay_instrument', 'replay_firm_account', 'entries_as_of',
    # Allocation
    'PaymentSplit', 'PaymentAllocation', 'CounterpartyAllocation', 'EditReallocation',
    'calculate_split', 'compute_payment_allocation',
    'compute_counterparty_allocation', 'compute_edit_reallocation',
    # Confirmation
    'confirm', 'administrative_unconfirm', 'ensure_mutable',
    # Advance
    'advance_balance', 'credit_overpayment', 'plan_draw',
    # Reminders
    'Reminder', 'ReminderSummary', 'compute_reminders', 'summarize_reminders',
    # EMI collection
    'CollectionStatus', 'CounterpartyCollection', 'CollectionSummary',
    'is_emi_due', 'compute_collection_status', 'summarize_collections',
    # Engine
    'InMemoryStore', 'LendingEngine', 'EngineResult', 'PaymentOutcome',
    'InstrumentSummary', 'FirmAccountSummary', 'EngineConfig',
    # Logging
    'setup_logging', 'get_logger', 'JsonFormatter',
]

__version__ = '1.0.0'
