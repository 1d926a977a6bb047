import unittest
from datetime import date, timedelta
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy import func, insert, select
from sqlalchemy.pool import StaticPool

from backend import ledger, main, mailer
from backend.db import accounts, build_engine, metadata, transactions, users


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_engine("sqlite://", poolclass=StaticPool)
        metadata.create_all(self.engine)
        self.addCleanup(self.engine.dispose)

        engine_patch = mock.patch.object(main, "engine", self.engine)
        engine_patch.start()
        self.addCleanup(engine_patch.stop)
        settings_patch = mock.patch.object(
            main,
            "SMTP_SETTINGS",
            mailer.SMTPSettings(
                host=None, port=587, user=None, password=None, sender=None, base_url="http://test"
            ),
        )
        settings_patch.start()
        self.addCleanup(settings_patch.stop)

        self.client = TestClient(main.app)
        self.user_id = self.create_user("owner@example.com")
        self.headers = {"x-user-id": str(self.user_id)}

    def create_user(self, email: str) -> int:
        with self.engine.begin() as conn:
            user_id = conn.execute(
                insert(users)
                .values(name="Owner", email=email, hashed_password="unused", is_email_verified=True)
                .returning(users.c.id)
            ).scalar_one()
            main.seed_default_categories(conn, user_id)
        return user_id

    def category_id(self, name: str) -> int:
        response = self.client.get("/categories", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        return next(item["id"] for item in response.json() if item["name"] == name)

    def create_account(self, name: str = "Wallet", balance: str = "0") -> int:
        response = self.client.post(
            "/accounts",
            json={"name": name, "type": "cash", "balance": balance},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["id"]

    def balance(self, account_id: int) -> Decimal:
        with self.engine.begin() as conn:
            value = conn.execute(
                select(accounts.c.balance).where(accounts.c.id == account_id)
            ).scalar_one()
        return Decimal(str(value))

    def transaction_count(self) -> int:
        with self.engine.begin() as conn:
            return conn.execute(select(func.count()).select_from(transactions)).scalar_one()

    def post_transaction(self, **fields):
        payload = {"date": "2024-01-10", **fields}
        return self.client.post("/transactions", json=payload, headers=self.headers)


class IdentityTests(ApiTestCase):
    def test_missing_identity_is_unauthorized(self) -> None:
        response = self.client.get("/accounts")

        self.assertEqual(response.status_code, 401)

    def test_unknown_user_is_unauthorized(self) -> None:
        response = self.client.get("/accounts", headers={"x-user-id": "9999"})

        self.assertEqual(response.status_code, 401)

    def test_other_users_records_are_not_found(self) -> None:
        account_id = self.create_account()
        intruder = self.create_user("intruder@example.com")

        response = self.client.get(f"/accounts/{account_id}", headers={"x-user-id": str(intruder)})

        self.assertEqual(response.status_code, 404)


class TransactionBalanceTests(ApiTestCase):
    def test_create_update_delete_keeps_balance_consistent(self) -> None:
        account_id = self.create_account(balance="1000000")
        food = self.category_id("Food & Dining")

        created = self.post_transaction(
            account_id=account_id, category_id=food, amount="150000", type="expense"
        )
        self.assertEqual(created.status_code, 200, created.text)
        body = created.json()
        self.assertEqual(body["category"]["name"], "Food & Dining")
        self.assertEqual(body["account"]["id"], account_id)
        self.assertEqual(self.balance(account_id), Decimal("850000"))

        updated = self.client.put(
            f"/transactions/{body['id']}",
            json={
                "account_id": account_id,
                "category_id": food,
                "amount": "50000",
                "type": "expense",
                "date": "2024-01-10",
            },
            headers=self.headers,
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(self.balance(account_id), Decimal("950000"))

        deleted = self.client.delete(f"/transactions/{body['id']}", headers=self.headers)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.balance(account_id), Decimal("1000000"))

    def test_unchanged_update_leaves_balance_alone(self) -> None:
        account_id = self.create_account(balance="200")
        salary = self.category_id("Salary")
        txn = self.post_transaction(account_id=account_id, category_id=salary, amount="80", type="income").json()

        response = self.client.put(
            f"/transactions/{txn['id']}",
            json={
                "account_id": account_id,
                "category_id": salary,
                "amount": "80",
                "type": "income",
                "date": "2024-01-10",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(self.balance(account_id), Decimal("280"))

    def test_delete_then_recreate_matches_never_deleting(self) -> None:
        account_id = self.create_account(balance="200")
        food = self.category_id("Food & Dining")
        txn = self.post_transaction(account_id=account_id, category_id=food, amount="45", type="expense").json()

        self.client.delete(f"/transactions/{txn['id']}", headers=self.headers)
        self.post_transaction(account_id=account_id, category_id=food, amount="45", type="expense")

        self.assertEqual(self.balance(account_id), Decimal("155"))

    def test_category_direction_mismatch_is_rejected_without_side_effects(self) -> None:
        account_id = self.create_account(balance="500")

        response = self.post_transaction(
            account_id=account_id,
            category_id=self.category_id("Salary"),
            amount="100",
            type="expense",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.balance(account_id), Decimal("500"))
        listing = self.client.get("/transactions", headers=self.headers).json()
        self.assertEqual(listing["pagination"]["total"], 0)

    def test_non_positive_amount_is_rejected(self) -> None:
        account_id = self.create_account()

        response = self.post_transaction(
            account_id=account_id,
            category_id=self.category_id("Salary"),
            amount="0",
            type="income",
        )

        self.assertEqual(response.status_code, 400)

    def test_sub_cent_amounts_are_rejected(self) -> None:
        account_id = self.create_account(balance="100")
        food = self.category_id("Food & Dining")

        for amount in ("0.005", "0.001", "12.345"):
            response = self.post_transaction(
                account_id=account_id, category_id=food, amount=amount, type="expense"
            )
            self.assertEqual(response.status_code, 400, amount)

        self.assertEqual(self.balance(account_id), Decimal("100"))
        self.assertEqual(self.transaction_count(), 0)

    def test_cent_amount_round_trips_through_delete(self) -> None:
        account_id = self.create_account(balance="100")
        food = self.category_id("Food & Dining")
        txn = self.post_transaction(account_id=account_id, category_id=food, amount="0.01", type="expense")
        self.assertEqual(txn.status_code, 200, txn.text)
        self.assertEqual(self.balance(account_id), Decimal("99.99"))

        self.client.delete(f"/transactions/{txn.json()['id']}", headers=self.headers)

        self.assertEqual(self.balance(account_id), Decimal("100"))

    def test_failed_balance_write_rolls_back_new_row(self) -> None:
        account_id = self.create_account(balance="100")
        food = self.category_id("Food & Dining")

        with mock.patch.object(ledger, "apply_balance_changes", side_effect=RuntimeError("db down")):
            with self.assertRaises(RuntimeError):
                self.post_transaction(account_id=account_id, category_id=food, amount="40", type="expense")

        self.assertEqual(self.transaction_count(), 0)
        self.assertEqual(self.balance(account_id), Decimal("100"))

    def test_failure_after_balance_write_rolls_back_both(self) -> None:
        account_id = self.create_account(balance="100")
        food = self.category_id("Food & Dining")

        with mock.patch.object(main, "fetch_transaction", side_effect=RuntimeError("db down")):
            with self.assertRaises(RuntimeError):
                self.post_transaction(account_id=account_id, category_id=food, amount="40", type="expense")

        self.assertEqual(self.transaction_count(), 0)
        self.assertEqual(self.balance(account_id), Decimal("100"))

    def test_failed_delete_keeps_row_and_balance(self) -> None:
        account_id = self.create_account(balance="100")
        food = self.category_id("Food & Dining")
        txn = self.post_transaction(account_id=account_id, category_id=food, amount="40", type="expense").json()
        real_apply = ledger.apply_balance_changes

        def apply_then_fail(conn, user_id, changes):
            real_apply(conn, user_id, changes)
            raise RuntimeError("db down")

        with mock.patch.object(ledger, "apply_balance_changes", side_effect=apply_then_fail):
            with self.assertRaises(RuntimeError):
                self.client.delete(f"/transactions/{txn['id']}", headers=self.headers)

        self.assertEqual(self.transaction_count(), 1)
        self.assertEqual(self.balance(account_id), Decimal("60"))

    def test_balance_equals_initial_plus_signed_transactions(self) -> None:
        account_id = self.create_account(balance="100")
        salary = self.category_id("Salary")
        food = self.category_id("Food & Dining")

        self.post_transaction(account_id=account_id, category_id=salary, amount="400", type="income")
        self.post_transaction(account_id=account_id, category_id=food, amount="125.50", type="expense")
        self.post_transaction(account_id=account_id, category_id=food, amount="0.50", type="expense")

        self.assertEqual(self.balance(account_id), Decimal("374.00"))

    def test_moving_transaction_to_another_account(self) -> None:
        first = self.create_account("First", balance="100")
        second = self.create_account("Second", balance="100")
        food = self.category_id("Food & Dining")
        txn = self.post_transaction(account_id=first, category_id=food, amount="30", type="expense").json()

        response = self.client.put(
            f"/transactions/{txn['id']}",
            json={
                "account_id": second,
                "category_id": food,
                "amount": "30",
                "type": "expense",
                "date": "2024-01-10",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(self.balance(first), Decimal("100"))
        self.assertEqual(self.balance(second), Decimal("70"))

    def test_transfer_posts_both_legs(self) -> None:
        source = self.create_account("Checking", balance="500")
        destination = self.create_account("Savings", balance="0")

        response = self.post_transaction(
            account_id=source,
            transfer_account_id=destination,
            category_id=self.category_id("Other Expenses"),
            amount="200",
            type="transfer",
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["transfer_account"]["id"], destination)
        self.assertEqual(self.balance(source), Decimal("300"))
        self.assertEqual(self.balance(destination), Decimal("200"))

        self.client.delete(f"/transactions/{response.json()['id']}", headers=self.headers)
        self.assertEqual(self.balance(source), Decimal("500"))
        self.assertEqual(self.balance(destination), Decimal("0"))

    def test_transfer_to_same_account_is_rejected(self) -> None:
        account_id = self.create_account(balance="50")

        response = self.post_transaction(
            account_id=account_id,
            transfer_account_id=account_id,
            category_id=self.category_id("Other Expenses"),
            amount="10",
            type="transfer",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.balance(account_id), Decimal("50"))

    def test_listing_filters_and_paginates(self) -> None:
        account_id = self.create_account(balance="1000")
        food = self.category_id("Food & Dining")
        salary = self.category_id("Salary")
        for day in ("2024-01-01", "2024-01-02", "2024-01-03"):
            self.client.post(
                "/transactions",
                json={"account_id": account_id, "category_id": food, "amount": "1", "type": "expense", "date": day},
                headers=self.headers,
            )
        self.post_transaction(account_id=account_id, category_id=salary, amount="5", type="income")

        page = self.client.get(
            "/transactions", params={"type": "expense", "limit": 2}, headers=self.headers
        ).json()

        self.assertEqual(page["pagination"], {"page": 1, "limit": 2, "total": 3, "total_pages": 2})
        self.assertEqual([item["date"] for item in page["transactions"]], ["2024-01-03", "2024-01-02"])

    def test_account_with_transactions_cannot_be_deleted(self) -> None:
        account_id = self.create_account(balance="10")
        self.post_transaction(
            account_id=account_id,
            category_id=self.category_id("Food & Dining"),
            amount="1",
            type="expense",
        )

        response = self.client.delete(f"/accounts/{account_id}", headers=self.headers)

        self.assertEqual(response.status_code, 409)

    def test_unused_account_is_deactivated(self) -> None:
        account_id = self.create_account()

        response = self.client.delete(f"/accounts/{account_id}", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        listed = self.client.get("/accounts", headers=self.headers).json()
        self.assertEqual(listed, [])


class CategoryTests(ApiTestCase):
    def test_default_categories_are_seeded(self) -> None:
        response = self.client.get("/categories", params={"type": "income"}, headers=self.headers)

        names = {item["name"] for item in response.json()}
        self.assertEqual(names, {"Salary", "Freelance", "Investment", "Other Income"})

    def test_duplicate_name_conflicts(self) -> None:
        response = self.client.post(
            "/categories", json={"name": "Salary", "type": "income"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 409)

    def test_default_category_cannot_be_deleted(self) -> None:
        response = self.client.delete(
            f"/categories/{self.category_id('Salary')}", headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_custom_category_in_use_cannot_be_deleted(self) -> None:
        category = self.client.post(
            "/categories", json={"name": "Pets", "type": "expense"}, headers=self.headers
        ).json()
        account_id = self.create_account(balance="10")
        self.post_transaction(account_id=account_id, category_id=category["id"], amount="1", type="expense")

        response = self.client.delete(f"/categories/{category['id']}", headers=self.headers)

        self.assertEqual(response.status_code, 409)


class BudgetApiTests(ApiTestCase):
    def create_budget(self, **fields):
        payload = {"name": "Food", "amount": "1000", "period": "monthly", **fields}
        return self.client.post("/budgets", json=payload, headers=self.headers)

    def test_overlapping_budget_for_same_category_conflicts(self) -> None:
        food = self.category_id("Food & Dining")
        first = self.create_budget(category_id=food, start_date="2024-01-01", end_date="2024-01-31")
        self.assertEqual(first.status_code, 200, first.text)

        clash = self.create_budget(category_id=food, start_date="2024-01-15", end_date="2024-02-15")
        adjacent = self.create_budget(category_id=food, start_date="2024-02-01", end_date="2024-02-29")
        overall = self.create_budget(start_date="2024-01-01", end_date="2024-01-31")

        self.assertEqual(clash.status_code, 409)
        self.assertEqual(adjacent.status_code, 200)
        self.assertEqual(overall.status_code, 200)

    def test_update_cannot_move_budget_into_overlap(self) -> None:
        food = self.category_id("Food & Dining")
        self.create_budget(category_id=food, start_date="2024-01-01", end_date="2024-01-31")
        february = self.create_budget(
            category_id=food, start_date="2024-02-01", end_date="2024-02-29"
        ).json()

        clash = self.client.put(
            f"/budgets/{february['id']}", json={"start_date": "2024-01-20"}, headers=self.headers
        )
        rename = self.client.put(
            f"/budgets/{february['id']}", json={"name": "February food"}, headers=self.headers
        )

        self.assertEqual(clash.status_code, 409)
        self.assertEqual(rename.status_code, 200, rename.text)
        self.assertEqual(rename.json()["name"], "February food")
        self.assertEqual(rename.json()["start_date"], "2024-02-01")

    def test_budget_detail_reports_spending(self) -> None:
        food = self.category_id("Food & Dining")
        account_id = self.create_account(balance="5000")
        budget = self.create_budget(
            category_id=food, start_date="2024-01-01", end_date="2024-01-31"
        ).json()
        self.post_transaction(account_id=account_id, category_id=food, amount="900", type="expense")
        self.client.post(
            "/transactions",
            json={"account_id": account_id, "category_id": food, "amount": "50", "type": "expense", "date": "2024-02-01"},
            headers=self.headers,
        )

        detail = self.client.get(f"/budgets/{budget['id']}", headers=self.headers).json()

        self.assertEqual(Decimal(detail["total_spent"]), Decimal("900"))
        self.assertEqual(Decimal(detail["remaining"]), Decimal("100"))
        self.assertEqual(detail["status"], "good")
        self.assertEqual(len(detail["transactions"]), 1)

    def test_summary_flags_overbudget_current_budget(self) -> None:
        food = self.category_id("Food & Dining")
        account_id = self.create_account(balance="5000")
        created = self.create_budget(category_id=food)
        self.assertEqual(created.status_code, 200, created.text)
        self.post_transaction(
            account_id=account_id,
            category_id=food,
            amount="1000.01",
            type="expense",
            date=date.today().isoformat(),
        )

        summary = self.client.get("/budgets/summary", headers=self.headers).json()

        self.assertEqual(summary["overview"]["total_budgets"], 1)
        self.assertEqual(
            summary["overview"]["budgets_by_status"], {"good": 0, "warning": 0, "overbudget": 1}
        )
        self.assertEqual(len(summary["overbudget_categories"]), 1)
        self.assertIn("Budget exceeded", [item["title"] for item in summary["recommendations"]])

    def test_inverted_dates_are_rejected(self) -> None:
        response = self.create_budget(start_date="2024-02-01", end_date="2024-01-01")

        self.assertEqual(response.status_code, 400)

    def test_overall_budget_spanning_months_blocks_july(self) -> None:
        first = self.create_budget(name="Summer", start_date="2025-06-15", end_date="2025-07-15")
        self.assertEqual(first.status_code, 200, first.text)

        july = self.create_budget(name="July", start_date="2025-07-01", end_date="2025-07-31")

        self.assertEqual(july.status_code, 409)
        self.assertEqual(july.json()["detail"], "Budget for this period and category already exists.")

    def test_sub_cent_budget_amount_is_rejected(self) -> None:
        response = self.create_budget(amount="10.001", start_date="2024-01-01", end_date="2024-01-31")

        self.assertEqual(response.status_code, 400)

    def test_active_filter_skips_deactivated_budgets(self) -> None:
        today = date.today()
        budget = self.create_budget(
            start_date=(today - timedelta(days=1)).isoformat(),
            end_date=(today + timedelta(days=1)).isoformat(),
        ).json()
        deactivated = self.client.put(
            f"/budgets/{budget['id']}", json={"is_active": False}, headers=self.headers
        )
        self.assertEqual(deactivated.status_code, 200, deactivated.text)

        active = self.client.get("/budgets", params={"status": "active"}, headers=self.headers).json()
        everything = self.client.get("/budgets", headers=self.headers).json()
        summary = self.client.get("/budgets/summary", headers=self.headers).json()

        self.assertEqual(active, [])
        self.assertEqual(len(everything), 1)
        self.assertEqual(summary["active_budgets"], [])

    def test_summary_reports_trends_and_upcoming_budgets(self) -> None:
        today = date.today()
        food = self.category_id("Food & Dining")
        account_id = self.create_account(balance="5000")
        ending_soon = self.create_budget(
            name="Groceries",
            category_id=food,
            start_date=(today - timedelta(days=10)).isoformat(),
            end_date=(today + timedelta(days=3)).isoformat(),
        )
        self.assertEqual(ending_soon.status_code, 200, ending_soon.text)
        self.create_budget(
            name="Everything",
            start_date=(today - timedelta(days=10)).isoformat(),
            end_date=(today + timedelta(days=20)).isoformat(),
        )
        self.post_transaction(
            account_id=account_id, category_id=food, amount="100", type="expense", date=today.isoformat()
        )
        self.post_transaction(
            account_id=account_id,
            category_id=food,
            amount="70",
            type="expense",
            date=(today - timedelta(days=400)).isoformat(),
        )
        self.post_transaction(
            account_id=account_id,
            category_id=self.category_id("Salary"),
            amount="900",
            type="income",
            date=today.isoformat(),
        )

        summary = self.client.get("/budgets/summary", headers=self.headers).json()

        trends = {month: Decimal(value) for month, value in summary["spending_trends"].items()}
        self.assertEqual(trends, {today.strftime("%Y-%m"): Decimal("100")})
        self.assertEqual(len(summary["active_budgets"]), 2)
        self.assertEqual(len(summary["upcoming_budgets"]), 1)
        upcoming = summary["upcoming_budgets"][0]
        self.assertEqual(upcoming["id"], ending_soon.json()["id"])
        self.assertEqual(upcoming["days_until_end"], 3)
        self.assertEqual(Decimal(upcoming["total_spent"]), Decimal("100"))


class DashboardApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.today = date.today()
        self.account_id = self.create_account(balance="1000")
        self.food = self.category_id("Food & Dining")
        self.post_transaction(
            account_id=self.account_id,
            category_id=self.category_id("Salary"),
            amount="500",
            type="income",
            date=self.today.isoformat(),
        )
        self.post_transaction(
            account_id=self.account_id,
            category_id=self.food,
            amount="200",
            type="expense",
            date=self.today.isoformat(),
        )
        self.post_transaction(
            account_id=self.account_id,
            category_id=self.food,
            amount="50",
            type="expense",
            date=(self.today - timedelta(days=400)).isoformat(),
        )

    def summary(self, period: str):
        return self.client.get("/dashboard/summary", params={"period": period}, headers=self.headers)

    def test_month_totals_exclude_older_transactions(self) -> None:
        body = self.summary("month").json()

        self.assertEqual(body["start_date"], self.today.replace(day=1).isoformat())
        self.assertEqual(body["end_date"], self.today.isoformat())
        self.assertEqual(Decimal(body["total_income"]), Decimal("500"))
        self.assertEqual(Decimal(body["total_expense"]), Decimal("200"))
        self.assertEqual(Decimal(body["net_income"]), Decimal("300"))
        self.assertEqual(body["transaction_count"], 2)
        self.assertEqual(Decimal(body["total_balance"]), Decimal("1250"))
        self.assertEqual(len(body["recent_transactions"]), 3)
        self.assertEqual(body["category_stats"][0]["category"]["name"], "Food & Dining")
        self.assertEqual(Decimal(body["category_stats"][0]["total_spent"]), Decimal("200"))

    def test_week_and_year_ranges(self) -> None:
        week = self.summary("week").json()
        year = self.summary("year").json()

        self.assertEqual(week["start_date"], (self.today - timedelta(days=7)).isoformat())
        self.assertEqual(year["start_date"], date(self.today.year, 1, 1).isoformat())
        for body in (week, year):
            self.assertEqual(body["transaction_count"], 2)
            self.assertEqual(Decimal(body["total_expense"]), Decimal("200"))

    def test_unknown_period_is_rejected(self) -> None:
        self.assertEqual(self.summary("decade").status_code, 400)


class AuthTests(ApiTestCase):
    def test_registration_requires_email_verification(self) -> None:
        registered = self.client.post(
            "/auth/register",
            json={"name": "Dana", "email": "Dana@Example.com", "password": "hunter22"},
        )
        self.assertEqual(registered.status_code, 200, registered.text)
        self.assertTrue(registered.json()["requires_verification"])

        credentials = {"email": "dana@example.com", "password": "hunter22"}
        self.assertEqual(self.client.post("/auth/login", json=credentials).status_code, 403)

        with self.engine.begin() as conn:
            token = conn.execute(
                select(users.c.email_verification_token).where(users.c.email == "dana@example.com")
            ).scalar_one()
        verified = self.client.get("/auth/verify-email", params={"token": token})
        self.assertEqual(verified.status_code, 200, verified.text)

        login = self.client.post("/auth/login", json=credentials)
        self.assertEqual(login.status_code, 200)
        self.assertTrue(login.json()["is_email_verified"])

    def test_duplicate_email_conflicts(self) -> None:
        payload = {"name": "Dana", "email": "owner@example.com", "password": "hunter22"}

        response = self.client.post("/auth/register", json=payload)

        self.assertEqual(response.status_code, 409)

    def test_unknown_token_is_rejected(self) -> None:
        response = self.client.get("/auth/verify-email", params={"token": "nope"})

        self.assertEqual(response.status_code, 400)

    def register(self, email: str = "dana@example.com"):
        return self.client.post(
            "/auth/register", json={"name": "Dana", "email": email, "password": "hunter22"}
        )

    def stored_token(self, email: str = "dana@example.com") -> str | None:
        with self.engine.begin() as conn:
            return conn.execute(
                select(users.c.email_verification_token).where(users.c.email == email)
            ).scalar_one()

    def test_failed_email_does_not_undo_registration(self) -> None:
        configured = mailer.SMTPSettings(
            host="smtp.example.com",
            port=587,
            user="mailer",
            password="secret",
            sender="noreply@example.com",
            base_url="http://test",
        )
        failing_send = mock.patch.object(
            mailer, "send_email", side_effect=mailer.EmailDeliveryError("smtp down")
        )

        with mock.patch.object(main, "SMTP_SETTINGS", configured), failing_send as send:
            with self.assertLogs("backend.main", level="WARNING"):
                response = self.register()

        self.assertEqual(response.status_code, 200, response.text)
        send.assert_called_once()
        with self.engine.begin() as conn:
            user_count = conn.execute(
                select(func.count()).select_from(users).where(users.c.email == "dana@example.com")
            ).scalar_one()
        self.assertEqual(user_count, 1)

    def test_resend_verification_replaces_token(self) -> None:
        self.register()
        first_token = self.stored_token()

        resent = self.client.post("/auth/resend-verification", json={"email": "Dana@example.com"})

        self.assertEqual(resent.status_code, 200, resent.text)
        second_token = self.stored_token()
        self.assertNotEqual(first_token, second_token)
        stale = self.client.get("/auth/verify-email", params={"token": first_token})
        self.assertEqual(stale.status_code, 400)
        fresh = self.client.get("/auth/verify-email", params={"token": second_token})
        self.assertEqual(fresh.status_code, 200)
        self.assertIsNone(self.stored_token())

    def test_resend_for_verified_or_unknown_email_fails(self) -> None:
        verified = self.client.post("/auth/resend-verification", json={"email": "owner@example.com"})
        unknown = self.client.post("/auth/resend-verification", json={"email": "ghost@example.com"})

        self.assertEqual(verified.status_code, 400)
        self.assertEqual(unknown.status_code, 404)


class MoneyPrecisionTests(ApiTestCase):
    def test_sub_cent_opening_balance_is_rejected(self) -> None:
        response = self.client.post(
            "/accounts",
            json={"name": "Wallet", "type": "cash", "balance": "1.001"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_sub_cent_goal_amounts_are_rejected(self) -> None:
        for payload in (
            {"name": "Trip", "target_amount": "100.005"},
            {"name": "Trip", "target_amount": "100", "current_amount": "0.001"},
        ):
            response = self.client.post("/goals", json=payload, headers=self.headers)
            self.assertEqual(response.status_code, 400, payload)

    def test_amount_beyond_column_precision_is_rejected(self) -> None:
        response = self.client.post(
            "/accounts",
            json={"name": "Vault", "type": "savings", "balance": "10000000000"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)


class GoalApiTests(ApiTestCase):
    def test_goal_reports_progress(self) -> None:
        response = self.client.post(
            "/goals",
            json={"name": "Emergency fund", "target_amount": "3000", "current_amount": "750"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(response.json()["progress_percentage"]), Decimal("25.00"))


if __name__ == "__main__":
    unittest.main()
