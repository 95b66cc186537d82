import unittest
from decimal import Decimal

from sqlalchemy import func, select

from finledger.db import account_balance_history, accounts, budgets, transaction_categories, transactions
from finledger.errors import (
    AccountNotFound,
    CategoryNotFound,
    InsufficientFunds,
    InvalidAmount,
    RateUnavailable,
    SameAccount,
    ValidationError,
)
from finledger.ledger import Ledger
from finledger.tests.support import (
    add_account,
    add_budget,
    add_category,
    add_user,
    balance_of,
    fetch_row,
    make_engine,
    make_rates,
)


def count_rows(engine, table) -> int:
    with engine.begin() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar_one()


class LedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.ledger = Ledger(self.engine, make_rates())
        self.user_id = add_user(self.engine)
        self.checking = add_account(self.engine, self.user_id, balance="100")
        self.euro = add_account(self.engine, self.user_id, name="Euro", currency="EUR", balance="10")

    def test_transfer_conserves_value_across_currencies(self) -> None:
        transaction = self.ledger.create_transfer(
            self.user_id,
            Decimal("50"),
            from_account_id=self.checking,
            to_account_id=self.euro,
            currency="USD",
        )

        self.assertEqual(transaction["type"], "transfer")
        self.assertEqual(balance_of(self.engine, self.checking), Decimal("50.00"))
        self.assertEqual(balance_of(self.engine, self.euro), Decimal("35.00"))
        with self.engine.begin() as conn:
            history = conn.execute(
                select(account_balance_history).order_by(account_balance_history.c.id)
            ).mappings().all()
        self.assertEqual([row["change_type"] for row in history], ["transfer_out", "transfer_in"])
        self.assertEqual(Decimal(str(history[0]["amount_changed"])), Decimal("-50.00"))
        self.assertEqual(Decimal(str(history[1]["amount_changed"])), Decimal("25.00"))

    def test_expense_changes_one_balance(self) -> None:
        self.ledger.create_expense(self.user_id, Decimal("30"), from_account_id=self.checking, currency="USD")

        self.assertEqual(balance_of(self.engine, self.checking), Decimal("70.00"))
        self.assertEqual(balance_of(self.engine, self.euro), Decimal("10.00"))
        self.assertEqual(count_rows(self.engine, account_balance_history), 1)

    def test_income_converts_into_account_currency(self) -> None:
        self.ledger.create_income(self.user_id, Decimal("40"), to_account_id=self.euro, currency="USD")

        self.assertEqual(balance_of(self.engine, self.euro), Decimal("30.00"))

    def test_non_positive_amount_leaves_nothing_behind(self) -> None:
        with self.assertRaises(InvalidAmount):
            self.ledger.create_expense(self.user_id, Decimal("0"), from_account_id=self.checking, currency="USD")

        self.assertEqual(balance_of(self.engine, self.checking), Decimal("100.00"))
        self.assertEqual(count_rows(self.engine, transactions), 0)

    def test_transfer_to_same_account_is_rejected(self) -> None:
        with self.assertRaises(SameAccount):
            self.ledger.create_transfer(
                self.user_id,
                Decimal("10"),
                from_account_id=self.checking,
                to_account_id=self.checking,
                currency="USD",
            )

        self.assertEqual(count_rows(self.engine, transactions), 0)

    def test_missing_destination_leaves_source_untouched(self) -> None:
        with self.assertRaises(AccountNotFound):
            self.ledger.create_transfer(
                self.user_id,
                Decimal("10"),
                from_account_id=self.checking,
                to_account_id=9999,
                currency="USD",
            )

        self.assertEqual(balance_of(self.engine, self.checking), Decimal("100.00"))
        self.assertEqual(count_rows(self.engine, account_balance_history), 0)

    def test_other_users_account_is_not_found(self) -> None:
        other_user = add_user(self.engine, email="bob@example.com")
        foreign = add_account(self.engine, other_user, balance="500")

        with self.assertRaises(AccountNotFound):
            self.ledger.create_expense(self.user_id, Decimal("5"), from_account_id=foreign, currency="USD")

        self.assertEqual(balance_of(self.engine, foreign), Decimal("500.00"))

    def test_insufficient_funds_rejects_debit(self) -> None:
        with self.assertRaises(InsufficientFunds):
            self.ledger.create_expense(self.user_id, Decimal("100.01"), from_account_id=self.checking, currency="USD")

        self.assertEqual(balance_of(self.engine, self.checking), Decimal("100.00"))
        self.assertEqual(count_rows(self.engine, transactions), 0)

    def test_invalid_category_rejects_whole_movement(self) -> None:
        other_user = add_user(self.engine, email="bob@example.com")
        foreign_category = add_category(self.engine, other_user)

        with self.assertRaises(CategoryNotFound):
            self.ledger.create_expense(
                self.user_id,
                Decimal("10"),
                from_account_id=self.checking,
                currency="USD",
                category_ids=[foreign_category],
            )

        self.assertEqual(balance_of(self.engine, self.checking), Decimal("100.00"))
        self.assertEqual(count_rows(self.engine, transactions), 0)

    def test_savings_goal_completed_when_target_reached(self) -> None:
        savings = add_account(
            self.engine,
            self.user_id,
            name="House",
            type="savings",
            balance="900",
            target_amount="1000",
        )
        funding = add_account(self.engine, self.user_id, name="Salary", balance="500")

        self.ledger.create_transfer(
            self.user_id,
            Decimal("150"),
            from_account_id=funding,
            to_account_id=savings,
            currency="USD",
        )

        account = fetch_row(self.engine, accounts, savings)
        self.assertEqual(Decimal(str(account["balance"])), Decimal("1050.00"))
        self.assertTrue(account["savings_completed"])

    def test_savings_goal_not_completed_below_target(self) -> None:
        savings = add_account(self.engine, self.user_id, type="savings", balance="900", target_amount="1000")

        self.ledger.create_income(self.user_id, Decimal("50"), to_account_id=savings, currency="USD")

        self.assertFalse(fetch_row(self.engine, accounts, savings)["savings_completed"])

    def test_categorized_expense_links_categories_and_counts_toward_budget(self) -> None:
        groceries = add_category(self.engine, self.user_id)
        budget_id = add_budget(self.engine, self.user_id, category_ids=[groceries], currency="EUR")

        transaction = self.ledger.create_expense(
            self.user_id,
            Decimal("20"),
            from_account_id=self.checking,
            currency="USD",
            category_ids=[groceries],
        )

        self.assertEqual(transaction["category_ids"], [groceries])
        self.assertEqual(count_rows(self.engine, transaction_categories), 1)
        self.assertEqual(Decimal(str(fetch_row(self.engine, budgets, budget_id)["spent"])), Decimal("10.00"))

    def test_adjust_balance_records_history_without_transaction(self) -> None:
        new_balance = self.ledger.adjust_balance(self.user_id, self.checking, Decimal("25"), "Correction")

        self.assertEqual(new_balance, Decimal("125.00"))
        self.assertEqual(count_rows(self.engine, transactions), 0)
        history = self.ledger.balance_history(self.user_id, self.checking)
        self.assertEqual(history[0]["change_type"], "manual_adjustment")

    def test_list_transactions_filters_by_account(self) -> None:
        self.ledger.create_expense(self.user_id, Decimal("5"), from_account_id=self.checking, currency="USD")
        self.ledger.create_income(self.user_id, Decimal("5"), to_account_id=self.euro, currency="EUR")

        rows = self.ledger.list_transactions(self.user_id, account_id=self.euro)

        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["type"], "income")


class AccountUpdateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.ledger = Ledger(self.engine, make_rates())
        self.user_id = add_user(self.engine)
        self.checking = add_account(self.engine, self.user_id, balance="100")

    def test_currency_change_converts_balance_and_records_history(self) -> None:
        account = self.ledger.update_account(self.user_id, self.checking, "Travel", currency="eur")

        self.assertEqual((account["name"], account["currency"]), ("Travel", "EUR"))
        self.assertEqual(balance_of(self.engine, self.checking), Decimal("50.00"))
        self.assertEqual(count_rows(self.engine, transactions), 0)
        history = self.ledger.balance_history(self.user_id, self.checking)
        self.assertEqual(history[0]["change_type"], "currency_change")
        self.assertEqual(history[0]["currency"], "EUR")
        self.assertEqual(history[0]["description"], "Currency changed from USD to EUR")
        self.assertEqual(Decimal(str(history[0]["previous_balance"])), Decimal("100.00"))
        self.assertEqual(Decimal(str(history[0]["new_balance"])), Decimal("50.00"))

    def test_rename_only_leaves_balance_and_history_alone(self) -> None:
        account = self.ledger.update_account(self.user_id, self.checking, "  Daily  ")

        self.assertEqual((account["name"], account["currency"]), ("Daily", "USD"))
        self.assertEqual(balance_of(self.engine, self.checking), Decimal("100.00"))
        self.assertEqual(count_rows(self.engine, account_balance_history), 0)

    def test_missing_rate_leaves_account_unchanged(self) -> None:
        with self.assertRaises(RateUnavailable):
            self.ledger.update_account(self.user_id, self.checking, "Yen", currency="JPY")

        account = fetch_row(self.engine, accounts, self.checking)
        self.assertEqual((account["name"], account["currency"]), ("Checking", "USD"))
        self.assertEqual(count_rows(self.engine, account_balance_history), 0)

    def test_savings_target_edit_reevaluates_goal(self) -> None:
        savings = add_account(
            self.engine,
            self.user_id,
            name="Holiday",
            type="savings",
            balance="900",
            target_amount="1000",
        )

        lowered = self.ledger.update_account(self.user_id, savings, "Holiday", target_amount=Decimal("800"))
        converted = self.ledger.update_account(self.user_id, savings, "Holiday", currency="RON")

        self.assertTrue(lowered["savings_completed"])
        self.assertEqual(Decimal(str(converted["target_amount"])), Decimal("3200.00"))
        self.assertEqual(balance_of(self.engine, savings), Decimal("3600.00"))
        self.assertTrue(converted["savings_completed"])

    def test_target_on_checking_account_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.ledger.update_account(self.user_id, self.checking, "Checking", target_amount=Decimal("50"))

    def test_other_users_account_is_not_found(self) -> None:
        stranger = add_user(self.engine, email="other@example.com")

        with self.assertRaises(AccountNotFound):
            self.ledger.update_account(stranger, self.checking, "Mine now")


if __name__ == "__main__":
    unittest.main()
