import unittest
from decimal import Decimal

from backend.ledger import (
    LedgerEntry,
    balance_delta,
    merge_changes,
    posting_changes,
    reversal_changes,
    update_changes,
    validate_category_direction,
)


class LedgerTests(unittest.TestCase):
    def test_income_credits_and_expense_debits(self) -> None:
        self.assertEqual(balance_delta("income", Decimal("100")), Decimal("100"))
        self.assertEqual(balance_delta("expense", Decimal("100")), Decimal("-100"))

    def test_transfer_moves_money_between_accounts(self) -> None:
        entry = LedgerEntry(amount=Decimal("250"), type="transfer", account_id=1, transfer_account_id=2)

        self.assertEqual(posting_changes(entry), {1: Decimal("-250"), 2: Decimal("250")})
        self.assertEqual(reversal_changes(entry), {1: Decimal("250"), 2: Decimal("-250")})

    def test_transfer_to_same_account_is_rejected(self) -> None:
        entry = LedgerEntry(amount=Decimal("10"), type="transfer", account_id=1, transfer_account_id=1)

        with self.assertRaises(ValueError):
            posting_changes(entry)

    def test_transfer_without_destination_is_rejected(self) -> None:
        entry = LedgerEntry(amount=Decimal("10"), type="transfer", account_id=1)

        with self.assertRaises(ValueError):
            posting_changes(entry)

    def test_amount_change_on_same_account_collapses_to_one_delta(self) -> None:
        old = LedgerEntry(amount=Decimal("150000"), type="expense", account_id=1)
        new = LedgerEntry(amount=Decimal("50000"), type="expense", account_id=1)

        self.assertEqual(update_changes(old, new), {1: Decimal("100000")})

    def test_unchanged_entry_produces_no_changes(self) -> None:
        entry = LedgerEntry(amount=Decimal("75"), type="income", account_id=3)

        self.assertEqual(update_changes(entry, entry), {})

    def test_moving_between_accounts_reverses_old_account(self) -> None:
        old = LedgerEntry(amount=Decimal("40"), type="expense", account_id=1)
        new = LedgerEntry(amount=Decimal("40"), type="income", account_id=2)

        self.assertEqual(update_changes(old, new), {1: Decimal("40"), 2: Decimal("40")})

    def test_merge_drops_zero_deltas(self) -> None:
        merged = merge_changes({1: Decimal("5"), 2: Decimal("1")}, {1: Decimal("-5")})

        self.assertEqual(merged, {2: Decimal("1")})

    def test_category_direction_must_match(self) -> None:
        validate_category_direction("income", "income")
        validate_category_direction("transfer", "expense")
        with self.assertRaises(ValueError):
            validate_category_direction("expense", "income")


if __name__ == "__main__":
    unittest.main()
