from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from sqlalchemy import update

from backend.db import accounts

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
INCOME = "income"
EXPENSE = "expense"
TRANSFER = "transfer"


@dataclass(frozen=True)
class LedgerEntry:
    """The part of a transaction that moves account balances."""

    amount: Decimal
    type: str
    account_id: int
    transfer_account_id: Optional[int] = None


def balance_delta(txn_type: str, amount: Decimal) -> Decimal:
    amount = _coerce_amount(amount)
    if txn_type.strip().lower() == INCOME:
        return amount
    return -amount


def posting_changes(entry: LedgerEntry) -> dict[int, Decimal]:
    """Per-account deltas caused by posting ``entry``.

    A transfer is posted as two linked legs: a debit on the source account
    and a credit on ``transfer_account_id``.
    """
    txn_type = entry.type.strip().lower()
    amount = _coerce_amount(entry.amount)
    if txn_type == TRANSFER:
        if entry.transfer_account_id is None:
            raise ValueError("Transfers require a destination account.")
        if entry.transfer_account_id == entry.account_id:
            raise ValueError("Transfer destination must differ from the source account.")
        return {entry.account_id: -amount, entry.transfer_account_id: amount}
    return {entry.account_id: balance_delta(txn_type, amount)}


def reversal_changes(entry: LedgerEntry) -> dict[int, Decimal]:
    return {account_id: -delta for account_id, delta in posting_changes(entry).items()}


def update_changes(old: LedgerEntry, new: LedgerEntry) -> dict[int, Decimal]:
    """Reverse ``old`` and post ``new``, merged by account.

    Adjustments to the same account collapse into a single delta and zero
    deltas are dropped, so an unchanged amount produces no balance write.
    """
    return merge_changes(reversal_changes(old), posting_changes(new))


def merge_changes(*change_sets: Mapping[int, Decimal]) -> dict[int, Decimal]:
    merged: dict[int, Decimal] = {}
    for changes in change_sets:
        for account_id, delta in changes.items():
            merged[account_id] = merged.get(account_id, ZERO) + delta
    return {account_id: delta for account_id, delta in merged.items() if delta != ZERO}


def validate_category_direction(txn_type: str, category_type: str) -> None:
    txn_type = txn_type.strip().lower()
    if txn_type == TRANSFER:
        return
    if category_type.strip().lower() != txn_type:
        raise ValueError("Category type does not match transaction type.")


def apply_balance_changes(conn, user_id: int, changes: Mapping[int, Decimal]) -> None:
    """Apply ``changes`` server-side within the caller's transaction."""
    for account_id in sorted(changes):
        delta = changes[account_id]
        if delta == ZERO:
            continue
        result = conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
            .values(balance=accounts.c.balance + delta)
        )
        if result.rowcount != 1:
            raise LookupError(f"Account {account_id} not found.")
        logger.debug("Adjusted account %s balance by %s", account_id, delta)


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
