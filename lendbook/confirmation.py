"""
confirmation.py - One-Way Confirmation of Transactions

States:
    UNCONFIRMED -> CONFIRMED (terminal)

A confirmed transaction is permanent history: it can no longer be edited or
deleted. The only way back is administrative_unconfirm(), which needs the
ledger:admin privilege and a reason, and always produces an audit record.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from typing import Optional, Tuple

from .core import (
    Actor, ConfirmationAction, ConfirmationAudit, ExecuteResult, NotAuthorized,
    Transaction, TransactionLocked, PRIVILEGE_LEDGER_ADMIN, PRIVILEGE_LEDGER_WRITE,
)


def require_privilege(actor: Actor, privilege: str) -> None:
    if not actor.can(privilege):
        raise NotAuthorized(f"Actor {actor.actor_id} lacks privilege {privilege}")


def ensure_mutable(transaction: Transaction) -> None:
    """
    Raises:
        TransactionLocked: If the transaction is confirmed.
    """
    if transaction.confirmed:
        raise TransactionLocked(
            f"Transaction {transaction.transaction_id} was confirmed by "
            f"{transaction.confirmed_by} at {transaction.confirmed_at}; it cannot be changed"
        )


def confirm(
    transaction: Transaction,
    actor: Actor,
    at: datetime,
) -> Tuple[Transaction, ExecuteResult, Optional[ConfirmationAudit]]:
    """
    Confirm a transaction.

    Returns:
        (record, result, audit). For an already confirmed transaction the
        record is returned unchanged with ALREADY_APPLIED and audit is None.

    Raises:
        NotAuthorized: If actor lacks ledger:write.
    """
    require_privilege(actor, PRIVILEGE_LEDGER_WRITE)
    if transaction.confirmed:
        return transaction, ExecuteResult.ALREADY_APPLIED, None

    confirmed = replace(
        transaction, confirmed=True, confirmed_at=at, confirmed_by=actor.actor_id,
    )
    audit = ConfirmationAudit(
        transaction_id=transaction.transaction_id,
        action=ConfirmationAction.CONFIRM,
        actor_id=actor.actor_id,
        at=at,
    )
    return confirmed, ExecuteResult.APPLIED, audit


def administrative_unconfirm(
    transaction: Transaction,
    actor: Actor,
    at: datetime,
    reason: str,
) -> Tuple[Transaction, ConfirmationAudit]:
    """
    Revert a confirmed transaction to unconfirmed, with an audit record.

    Raises:
        NotAuthorized: If actor lacks ledger:admin.
        ValueError: If reason is empty or the transaction is not confirmed.
    """
    require_privilege(actor, PRIVILEGE_LEDGER_ADMIN)
    if not reason or not reason.strip():
        raise ValueError("administrative_unconfirm requires a reason")
    if not transaction.confirmed:
        raise ValueError(f"Transaction {transaction.transaction_id} is not confirmed")

    reverted = replace(
        transaction, confirmed=False, confirmed_at=None, confirmed_by=None,
    )
    audit = ConfirmationAudit(
        transaction_id=transaction.transaction_id,
        action=ConfirmationAction.UNCONFIRM,
        actor_id=actor.actor_id,
        at=at,
        reason=reason.strip(),
    )
    return reverted, audit
