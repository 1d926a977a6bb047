import calendar
import logging
import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from backend import ledger, mailer
from backend.budget_engine import (
    SUPPORTED_PERIODS,
    Budget,
    BudgetEvaluation,
    Transaction,
    evaluate_budget,
    generate_recommendations,
    percentage_of,
    period_window,
    round_percentage,
    summarize_budgets,
)
from backend.budget_overlap import BudgetWindow, find_overlap
from backend.db import (
    SYSTEM_DEFAULT_CURRENCY,
    accounts,
    budgets,
    categories,
    engine,
    goals,
    metadata,
    normalize_currency,
    transactions,
    users,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_verification_ttl_hours() -> int:
    raw = os.getenv("EMAIL_VERIFICATION_TTL_HOURS", "24")
    try:
        hours = int(raw)
    except ValueError:
        return 24
    return hours if hours > 0 else 24


VERIFICATION_TTL_HOURS = get_verification_ttl_hours()
SMTP_SETTINGS = mailer.SMTPSettings.from_env()
TWO_PLACES = Decimal("0.01")

DEFAULT_CATEGORIES = [
    {"name": "Salary", "icon": "💼", "color": "#10B981", "type": "income"},
    {"name": "Freelance", "icon": "💻", "color": "#6366F1", "type": "income"},
    {"name": "Investment", "icon": "📈", "color": "#8B5CF6", "type": "income"},
    {"name": "Other Income", "icon": "💰", "color": "#F59E0B", "type": "income"},
    {"name": "Food & Dining", "icon": "🍽️", "color": "#EF4444", "type": "expense"},
    {"name": "Transportation", "icon": "🚗", "color": "#F97316", "type": "expense"},
    {"name": "Shopping", "icon": "🛍️", "color": "#EC4899", "type": "expense"},
    {"name": "Entertainment", "icon": "🎬", "color": "#8B5CF6", "type": "expense"},
    {"name": "Bills & Utilities", "icon": "📄", "color": "#6B7280", "type": "expense"},
    {"name": "Healthcare", "icon": "🏥", "color": "#EF4444", "type": "expense"},
    {"name": "Education", "icon": "🎓", "color": "#3B82F6", "type": "expense"},
    {"name": "Travel", "icon": "✈️", "color": "#06B6D4", "type": "expense"},
    {"name": "Other Expenses", "icon": "💸", "color": "#6B7280", "type": "expense"},
]

source_accounts = accounts.alias("source_accounts")
transfer_accounts = accounts.alias("transfer_accounts")


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class TransactionType:
    values = {ledger.INCOME, ledger.EXPENSE, ledger.TRANSFER}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


class AccountType:
    values = {"checking", "savings", "credit_card", "cash", "investment", "loan"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid account type.")
        return normalized


class CategoryType:
    values = {ledger.INCOME, ledger.EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid category type.")
        return normalized


class BudgetPeriod:
    values = SUPPORTED_PERIODS

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid budget period.")
        return normalized


MAX_MONEY = Decimal("10000000000")


def check_money(value: Decimal, label: str) -> Decimal:
    # Money columns are Numeric(12, 2).
    if not value.is_finite() or value.as_tuple().exponent < -2:
        raise ValueError(f"{label} must have at most two decimal places.")
    if abs(value) >= MAX_MONEY:
        raise ValueError(f"{label} is too large.")
    return value


class RegisterPayload(BaseModel):
    name: str
    email: str
    password: str

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        payload.name = payload.name.strip()
        payload.email = payload.email.strip().lower()
        if not payload.name or not payload.email or not payload.password:
            raise ValueError("Name, email and password required.")
        if "@" not in payload.email:
            raise ValueError("Invalid email address.")
        return payload


class CredentialsPayload(BaseModel):
    email: str
    password: str


class ResendVerificationPayload(BaseModel):
    email: str


class UserResponse(BaseModel):
    id: int
    name: str | None = None
    email: str
    is_email_verified: bool
    created_at: datetime | None = None


class RegisterResponse(BaseModel):
    message: str
    user: UserResponse
    requires_verification: bool


class MessageResponse(BaseModel):
    message: str


class AccountPayload(BaseModel):
    name: str
    type: str
    currency: str | None = None
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.type = AccountType.validate(payload.type)
        payload.name = payload.name.strip()
        payload.description = payload.description.strip() if payload.description else None
        if payload.currency:
            payload.currency = normalize_currency(payload.currency)
        else:
            payload.currency = None
        if not payload.name:
            raise ValueError("Account name required.")
        return payload


class AccountCreatePayload(AccountPayload):
    balance: Decimal = Decimal("0")

    @classmethod
    def validate_payload(cls, payload: "AccountCreatePayload") -> "AccountCreatePayload":
        payload = super().validate_payload(payload)
        check_money(payload.balance, "Balance")
        return payload


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    balance: Decimal
    currency: str
    description: str | None = None
    is_active: bool
    created_at: datetime | None = None


class AccountSummary(BaseModel):
    id: int
    name: str
    type: str


class CategoryPayload(BaseModel):
    name: str
    type: str
    icon: str | None = None
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.type = CategoryType.validate(payload.type)
        payload.icon = payload.icon.strip() if payload.icon else None
        payload.color = payload.color.strip() if payload.color else None
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    icon: str | None = None
    color: str | None = None
    is_default: bool
    created_at: datetime | None = None


class CategorySummary(BaseModel):
    id: int
    name: str
    icon: str | None = None
    color: str | None = None
    type: str


class TransactionPayload(BaseModel):
    account_id: int
    category_id: int
    amount: Decimal
    type: str
    date: date
    transfer_account_id: int | None = None
    description: str | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        check_money(payload.amount, "Amount")
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        if payload.type == ledger.TRANSFER:
            if payload.transfer_account_id is None:
                raise ValueError("Transfers require a destination account.")
            if payload.transfer_account_id == payload.account_id:
                raise ValueError("Transfer destination must differ from the source account.")
        else:
            payload.transfer_account_id = None
        payload.description = payload.description.strip() if payload.description else None
        payload.notes = payload.notes.strip() if payload.notes else None
        return payload


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    account_id: int
    category_id: int
    transfer_account_id: int | None = None
    amount: Decimal
    type: str
    date: date
    description: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    category: CategorySummary | None = None
    account: AccountSummary | None = None
    transfer_account: AccountSummary | None = None


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    pagination: PaginationResponse


class BudgetPayload(BaseModel):
    name: str
    amount: Decimal
    period: str
    category_id: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    is_active: bool = True

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Budget name required.")
        check_money(payload.amount, "Budget amount")
        if payload.amount <= 0:
            raise ValueError("Budget amount must be greater than zero.")
        payload.period = BudgetPeriod.validate(payload.period)
        if payload.start_date is None and payload.end_date is None:
            payload.start_date, payload.end_date = period_window(payload.period, date.today())
        elif payload.start_date is None or payload.end_date is None:
            raise ValueError("Start and end date must be provided together.")
        if payload.start_date > payload.end_date:
            raise ValueError("Start date must be on or before end date.")
        return payload


class BudgetUpdatePayload(BaseModel):
    name: str | None = None
    amount: Decimal | None = None
    period: str | None = None
    category_id: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    is_active: bool | None = None

    def merged_with(self, existing) -> BudgetPayload:
        values = {
            "name": existing["name"],
            "amount": existing["amount"],
            "period": existing["period"],
            "category_id": existing["category_id"],
            "start_date": existing["start_date"],
            "end_date": existing["end_date"],
            "is_active": existing["is_active"],
        }
        for field_name in self.model_fields_set:
            value = getattr(self, field_name)
            # category_id may be cleared explicitly to widen the scope.
            if value is None and field_name != "category_id":
                continue
            values[field_name] = value
        return BudgetPayload.validate_payload(BudgetPayload(**values))


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    name: str
    category_id: int | None = None
    category: CategorySummary | None = None
    amount: Decimal
    period: str
    start_date: date
    end_date: date
    is_active: bool
    created_at: datetime | None = None
    total_spent: Decimal
    remaining: Decimal
    percentage_used: Decimal
    status: str


class BudgetDetailResponse(BudgetResponse):
    transactions: list[TransactionResponse]


class UpcomingBudgetResponse(BudgetResponse):
    days_until_end: int


class BudgetOverviewResponse(BaseModel):
    total_budgets: int
    total_budget_amount: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_percentage_used: Decimal
    budgets_by_status: dict[str, int]


class RecommendationResponse(BaseModel):
    type: str
    title: str
    message: str


class BudgetSummaryResponse(BaseModel):
    period: str
    overview: BudgetOverviewResponse
    active_budgets: list[BudgetResponse]
    spending_trends: dict[str, Decimal]
    overbudget_categories: list[BudgetResponse]
    upcoming_budgets: list[UpcomingBudgetResponse]
    recommendations: list[RecommendationResponse]


class CategoryStatResponse(BaseModel):
    category_id: int
    category: CategorySummary | None = None
    total_spent: Decimal


class DashboardSummaryResponse(BaseModel):
    period: str
    start_date: date
    end_date: date
    total_income: Decimal
    total_expense: Decimal
    net_income: Decimal
    transaction_count: int
    total_balance: Decimal
    recent_transactions: list[TransactionResponse]
    category_stats: list[CategoryStatResponse]


class GoalPayload(BaseModel):
    name: str
    target_amount: Decimal
    current_amount: Decimal = Decimal("0")
    target_date: date | None = None
    description: str | None = None
    is_completed: bool = False

    @classmethod
    def validate_payload(cls, payload: "GoalPayload") -> "GoalPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Goal name required.")
        check_money(payload.target_amount, "Target amount")
        check_money(payload.current_amount, "Current amount")
        if payload.target_amount <= 0:
            raise ValueError("Target amount must be greater than zero.")
        if payload.current_amount < 0:
            raise ValueError("Current amount cannot be negative.")
        payload.description = payload.description.strip() if payload.description else None
        return payload


class GoalResponse(BaseModel):
    id: int
    user_id: int
    name: str
    description: str | None = None
    target_amount: Decimal
    current_amount: Decimal
    target_date: date | None = None
    is_completed: bool
    progress_percentage: Decimal
    created_at: datetime | None = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=401, detail="Unknown user.")
    return user_id


def seed_default_categories(conn, user_id: int) -> None:
    conn.execute(
        insert(categories),
        [{**category, "user_id": user_id, "is_default": True} for category in DEFAULT_CATEGORIES],
    )


def send_best_effort(send, *args) -> None:
    try:
        send(SMTP_SETTINGS, *args)
    except mailer.EmailDeliveryError:
        logger.warning("Email delivery failed", exc_info=True)


def coerce_decimal(value: Decimal | float | int | str | None) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def money(value: Decimal | float | int | str | None) -> Decimal:
    return coerce_decimal(value).quantize(TWO_PLACES)


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(value.day, last_day)
    return date(year, month, day)


def get_dashboard_range(period: str, today: date) -> tuple[date, date]:
    normalized = period.strip().lower()
    if normalized == "week":
        return today - timedelta(days=7), today
    if normalized == "month":
        return today.replace(day=1), today
    if normalized == "year":
        return date(today.year, 1, 1), today
    raise ValueError("Unsupported period. Use 'week', 'month' or 'year'.")


def fetch_owned_account(conn, user_id: int, account_id: int):
    return conn.execute(
        select(accounts).where(
            accounts.c.id == account_id,
            accounts.c.user_id == user_id,
            accounts.c.is_active.is_(True),
        )
    ).mappings().first()


def fetch_owned_category(conn, user_id: int, category_id: int):
    return conn.execute(
        select(categories).where(categories.c.id == category_id, categories.c.user_id == user_id)
    ).mappings().first()


def account_response(row) -> AccountResponse:
    return AccountResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        balance=row["balance"],
        currency=row["currency"],
        description=row["description"],
        is_active=row["is_active"],
        created_at=row["created_at"],
    )


def category_response(row) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        icon=row["icon"],
        color=row["color"],
        is_default=row["is_default"],
        created_at=row["created_at"],
    )


def category_summary(row, category_id: int | None) -> CategorySummary | None:
    if category_id is None or row["category_name"] is None:
        return None
    return CategorySummary(
        id=category_id,
        name=row["category_name"],
        icon=row["category_icon"],
        color=row["category_color"],
        type=row["category_type"],
    )


def transaction_query():
    return select(
        transactions,
        categories.c.name.label("category_name"),
        categories.c.icon.label("category_icon"),
        categories.c.color.label("category_color"),
        categories.c.type.label("category_type"),
        source_accounts.c.name.label("account_name"),
        source_accounts.c.type.label("account_type"),
        transfer_accounts.c.name.label("transfer_account_name"),
        transfer_accounts.c.type.label("transfer_account_type"),
    ).select_from(
        transactions.outerjoin(categories, categories.c.id == transactions.c.category_id)
        .outerjoin(source_accounts, source_accounts.c.id == transactions.c.account_id)
        .outerjoin(transfer_accounts, transfer_accounts.c.id == transactions.c.transfer_account_id)
    )


def transaction_response(row) -> TransactionResponse:
    transfer_account = None
    if row["transfer_account_id"] is not None and row["transfer_account_name"] is not None:
        transfer_account = AccountSummary(
            id=row["transfer_account_id"],
            name=row["transfer_account_name"],
            type=row["transfer_account_type"],
        )
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        category_id=row["category_id"],
        transfer_account_id=row["transfer_account_id"],
        amount=row["amount"],
        type=row["type"],
        date=row["date"],
        description=row["description"],
        notes=row["notes"],
        created_at=row["created_at"],
        category=category_summary(row, row["category_id"]),
        account=AccountSummary(
            id=row["account_id"], name=row["account_name"], type=row["account_type"]
        )
        if row["account_name"] is not None
        else None,
        transfer_account=transfer_account,
    )


def fetch_transaction(conn, user_id: int, transaction_id: int):
    return conn.execute(
        transaction_query().where(
            transactions.c.id == transaction_id, transactions.c.user_id == user_id
        )
    ).mappings().first()


def ledger_entry(source) -> ledger.LedgerEntry:
    if isinstance(source, TransactionPayload):
        return ledger.LedgerEntry(
            amount=source.amount,
            type=source.type,
            account_id=source.account_id,
            transfer_account_id=source.transfer_account_id,
        )
    return ledger.LedgerEntry(
        amount=coerce_decimal(source["amount"]),
        type=source["type"],
        account_id=source["account_id"],
        transfer_account_id=source["transfer_account_id"],
    )


def check_transaction_references(conn, user_id: int, payload: TransactionPayload) -> None:
    if not fetch_owned_account(conn, user_id, payload.account_id):
        raise HTTPException(status_code=404, detail="Account not found.")
    if payload.transfer_account_id is not None and not fetch_owned_account(
        conn, user_id, payload.transfer_account_id
    ):
        raise HTTPException(status_code=404, detail="Transfer account not found.")
    category = fetch_owned_category(conn, user_id, payload.category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found.")
    try:
        ledger.validate_category_direction(payload.type, category["type"])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def budget_query():
    return select(
        budgets,
        categories.c.name.label("category_name"),
        categories.c.icon.label("category_icon"),
        categories.c.color.label("category_color"),
        categories.c.type.label("category_type"),
    ).select_from(budgets.outerjoin(categories, categories.c.id == budgets.c.category_id))


def budget_expense_conditions(user_id: int, row) -> list:
    conditions = [
        transactions.c.user_id == user_id,
        transactions.c.type == ledger.EXPENSE,
        transactions.c.date >= row["start_date"],
        transactions.c.date <= row["end_date"],
    ]
    if row["category_id"] is not None:
        conditions.append(transactions.c.category_id == row["category_id"])
    return conditions


def evaluate_budget_row(conn, user_id: int, row) -> BudgetEvaluation:
    """Evaluate a stored budget; every budget view goes through here."""
    txn_rows = conn.execute(
        select(
            transactions.c.amount,
            transactions.c.type,
            transactions.c.date,
            transactions.c.category_id,
            transactions.c.account_id,
        ).where(*budget_expense_conditions(user_id, row))
    ).mappings().all()
    txn_items = [
        Transaction(
            amount=coerce_decimal(txn["amount"]),
            type=txn["type"],
            date=txn["date"],
            category_id=txn["category_id"],
            account_id=txn["account_id"],
        )
        for txn in txn_rows
    ]
    budget = Budget(
        amount=coerce_decimal(row["amount"]),
        start_date=row["start_date"],
        end_date=row["end_date"],
        category_id=row["category_id"],
    )
    return evaluate_budget(txn_items, budget)


def budget_response(row, evaluation: BudgetEvaluation) -> BudgetResponse:
    return BudgetResponse(**budget_response_fields(row, evaluation))


def budget_response_fields(row, evaluation: BudgetEvaluation) -> dict:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "name": row["name"],
        "category_id": row["category_id"],
        "category": category_summary(row, row["category_id"]),
        "amount": evaluation.amount,
        "period": row["period"],
        "start_date": row["start_date"],
        "end_date": row["end_date"],
        "is_active": row["is_active"],
        "created_at": row["created_at"],
        "total_spent": evaluation.total_spent,
        "remaining": evaluation.remaining,
        "percentage_used": evaluation.percentage_used,
        "status": evaluation.status,
    }


def fetch_budget(conn, user_id: int, budget_id: int):
    return conn.execute(
        budget_query().where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    ).mappings().first()


def check_budget_overlap(conn, user_id: int, payload: BudgetPayload, budget_id: int | None = None) -> None:
    if payload.category_id is None:
        scope = budgets.c.category_id.is_(None)
    else:
        scope = budgets.c.category_id == payload.category_id
    rows = conn.execute(
        select(budgets.c.id, budgets.c.start_date, budgets.c.end_date, budgets.c.category_id).where(
            budgets.c.user_id == user_id, scope
        )
    ).mappings().all()
    candidate = BudgetWindow(
        start_date=payload.start_date,
        end_date=payload.end_date,
        category_id=payload.category_id,
        budget_id=budget_id,
    )
    existing = [
        BudgetWindow(
            start_date=row["start_date"],
            end_date=row["end_date"],
            category_id=row["category_id"],
            budget_id=row["id"],
        )
        for row in rows
    ]
    clash = find_overlap(candidate, existing)
    if clash:
        logger.info(
            "Rejected budget for user %s overlapping budget %s (%s..%s)",
            user_id,
            clash.budget_id,
            clash.start_date,
            clash.end_date,
        )
        raise HTTPException(
            status_code=409, detail="Budget for this period and category already exists."
        )


def goal_response(row) -> GoalResponse:
    target_amount = coerce_decimal(row["target_amount"])
    current_amount = coerce_decimal(row["current_amount"])
    return GoalResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        target_amount=target_amount,
        current_amount=current_amount,
        target_date=row["target_date"],
        is_completed=row["is_completed"],
        progress_percentage=round_percentage(percentage_of(current_amount, target_amount)),
        created_at=row["created_at"],
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/register", response_model=RegisterResponse)
def register(payload: RegisterPayload) -> RegisterResponse:
    try:
        payload = RegisterPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    hashed_password = hash_password(payload.password)
    token = mailer.generate_verification_token()
    expires = utc_now() + timedelta(hours=VERIFICATION_TTL_HOURS)

    stmt = (
        insert(users)
        .values(
            name=payload.name,
            email=payload.email,
            hashed_password=hashed_password,
            is_email_verified=False,
            email_verification_token=token,
            email_verification_expires=expires,
        )
        .returning(
            users.c.id,
            users.c.name,
            users.c.email,
            users.c.is_email_verified,
            users.c.created_at,
        )
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
            if row:
                seed_default_categories(conn, row["id"])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        logger.error("Insert returned no row for new user %s", payload.email)
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("Registered user %s", row["id"])
    send_best_effort(
        mailer.send_verification_email, row["email"], row["name"], token, VERIFICATION_TTL_HOURS
    )
    return RegisterResponse(
        message="Registration successful. Check your email to verify your account.",
        user=UserResponse(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            is_email_verified=row["is_email_verified"],
            created_at=row["created_at"],
        ),
        requires_verification=True,
    )


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        result = conn.execute(select(users).where(users.c.email == email))
        row = result.mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    if not row["is_email_verified"]:
        raise HTTPException(status_code=403, detail="Email address not verified.")

    return UserResponse(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        is_email_verified=row["is_email_verified"],
        created_at=row["created_at"],
    )


@app.get("/auth/verify-email", response_model=MessageResponse)
def verify_email(token: str | None = None) -> MessageResponse:
    if not token:
        raise HTTPException(status_code=400, detail="Verification token is required.")
    now = utc_now()
    with engine.begin() as conn:
        row = conn.execute(
            select(users.c.id, users.c.name, users.c.email).where(
                users.c.email_verification_token == token,
                users.c.email_verification_expires > now,
            )
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=400, detail="Invalid or expired verification token.")
        conn.execute(
            update(users)
            .where(users.c.id == row["id"])
            .values(
                is_email_verified=True,
                email_verified_at=now,
                email_verification_token=None,
                email_verification_expires=None,
            )
        )
    logger.info("Verified email for user %s", row["id"])
    send_best_effort(mailer.send_welcome_email, row["email"], row["name"])
    return MessageResponse(message="Email verified successfully. You can now sign in.")


@app.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(payload: ResendVerificationPayload) -> MessageResponse:
    email = payload.email.strip().lower()
    if not email:
        raise HTTPException(status_code=400, detail="Email required.")
    token = mailer.generate_verification_token()
    with engine.begin() as conn:
        row = conn.execute(
            select(users.c.id, users.c.name, users.c.email, users.c.is_email_verified).where(
                users.c.email == email
            )
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="User not found.")
        if row["is_email_verified"]:
            raise HTTPException(status_code=400, detail="Email is already verified.")
        conn.execute(
            update(users)
            .where(users.c.id == row["id"])
            .values(
                email_verification_token=token,
                email_verification_expires=utc_now() + timedelta(hours=VERIFICATION_TTL_HOURS),
            )
        )
    send_best_effort(
        mailer.send_verification_email, row["email"], row["name"], token, VERIFICATION_TTL_HOURS
    )
    return MessageResponse(message="Verification email sent.")


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == user_id, accounts.c.is_active.is_(True))
            .order_by(accounts.c.name.asc(), accounts.c.id.asc())
        )
        rows = result.mappings().all()
    return [account_response(row) for row in rows]


@app.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_owned_account(conn, user_id, account_id)
    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    return account_response(row)


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountCreatePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountCreatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(accounts)
        .values(
            user_id=user_id,
            name=payload.name,
            type=payload.type,
            balance=payload.balance,
            currency=payload.currency or SYSTEM_DEFAULT_CURRENCY,
            description=payload.description,
            is_active=True,
        )
        .returning(*accounts.c)
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        row = result.mappings().first()

    if not row:
        logger.error("Insert returned no row for new account of user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to create account.")
    return account_response(row)


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int, payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = {
        "name": payload.name,
        "type": payload.type,
        "description": payload.description,
    }
    if payload.currency:
        values["currency"] = payload.currency
    stmt = (
        update(accounts)
        .where(
            accounts.c.id == account_id,
            accounts.c.user_id == user_id,
            accounts.c.is_active.is_(True),
        )
        .values(**values)
        .returning(*accounts.c)
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        row = result.mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    return account_response(row)


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        if not fetch_owned_account(conn, user_id, account_id):
            raise HTTPException(status_code=404, detail="Account not found.")
        in_use = conn.execute(
            select(transactions.c.id)
            .where(
                transactions.c.user_id == user_id,
                or_(
                    transactions.c.account_id == account_id,
                    transactions.c.transfer_account_id == account_id,
                ),
            )
            .limit(1)
        ).first()
        if in_use:
            raise HTTPException(status_code=409, detail="Account has transactions.")
        conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
            .values(is_active=False)
        )
    return {"status": "deleted"}


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    type: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    conditions = [categories.c.user_id == user_id]
    if type:
        try:
            conditions.append(categories.c.type == CategoryType.validate(type))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        result = conn.execute(
            select(categories)
            .where(*conditions)
            .order_by(categories.c.is_default.desc(), categories.c.name.asc())
        )
        rows = result.mappings().all()
    return [category_response(row) for row in rows]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(categories)
        .values(
            user_id=user_id,
            name=payload.name,
            type=payload.type,
            icon=payload.icon,
            color=payload.color,
            is_default=False,
        )
        .returning(*categories.c)
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        logger.error("Insert returned no row for new category of user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return category_response(row)


@app.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            existing = fetch_owned_category(conn, user_id, category_id)
            if not existing:
                raise HTTPException(status_code=404, detail="Category not found.")
            if existing["is_default"]:
                raise HTTPException(status_code=400, detail="Default categories cannot be edited.")
            if payload.type != existing["type"] and category_has_transactions(conn, user_id, category_id):
                raise HTTPException(
                    status_code=409,
                    detail="Category type cannot change while transactions use it.",
                )
            result = conn.execute(
                update(categories)
                .where(categories.c.id == category_id, categories.c.user_id == user_id)
                .values(
                    name=payload.name,
                    type=payload.type,
                    icon=payload.icon,
                    color=payload.color,
                )
                .returning(*categories.c)
            )
            row = result.mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return category_response(row)


def category_has_transactions(conn, user_id: int, category_id: int) -> bool:
    match = conn.execute(
        select(transactions.c.id)
        .where(transactions.c.user_id == user_id, transactions.c.category_id == category_id)
        .limit(1)
    ).first()
    return bool(match)


def category_in_use(conn, user_id: int, category_id: int) -> bool:
    if category_has_transactions(conn, user_id, category_id):
        return True
    budget_match = conn.execute(
        select(budgets.c.id)
        .where(budgets.c.user_id == user_id, budgets.c.category_id == category_id)
        .limit(1)
    ).first()
    return bool(budget_match)


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_owned_category(conn, user_id, category_id)
        if not row:
            raise HTTPException(status_code=404, detail="Category not found.")
        if row["is_default"]:
            raise HTTPException(status_code=400, detail="Default categories cannot be deleted.")
        if category_in_use(conn, user_id, category_id):
            raise HTTPException(status_code=409, detail="Category is in use.")
        conn.execute(
            categories.delete().where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        )
    return {"status": "deleted"}


@app.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    type: str | None = None,
    category_id: int | None = None,
    account_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionListResponse:
    user_id = get_user_id(x_user_id)
    conditions = [transactions.c.user_id == user_id]
    if type:
        try:
            conditions.append(transactions.c.type == TransactionType.validate(type))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    if category_id is not None:
        conditions.append(transactions.c.category_id == category_id)
    if account_id is not None:
        conditions.append(
            or_(
                transactions.c.account_id == account_id,
                transactions.c.transfer_account_id == account_id,
            )
        )
    if start_date is not None:
        conditions.append(transactions.c.date >= start_date)
    if end_date is not None:
        conditions.append(transactions.c.date <= end_date)

    with engine.begin() as conn:
        total = conn.execute(
            select(func.count()).select_from(transactions).where(*conditions)
        ).scalar_one()
        rows = conn.execute(
            transaction_query()
            .where(*conditions)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).mappings().all()

    return TransactionListResponse(
        transactions=[transaction_response(row) for row in rows],
        pagination=PaginationResponse(
            page=page,
            limit=limit,
            total=total,
            total_pages=(total + limit - 1) // limit,
        ),
    )


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_transaction(conn, user_id, transaction_id)
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return transaction_response(row)


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    # The insert and the balance adjustment commit or roll back together.
    with engine.begin() as conn:
        check_transaction_references(conn, user_id, payload)
        result = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                account_id=payload.account_id,
                category_id=payload.category_id,
                transfer_account_id=payload.transfer_account_id,
                amount=payload.amount,
                type=payload.type,
                date=payload.date,
                description=payload.description,
                notes=payload.notes,
            )
            .returning(transactions.c.id)
        )
        transaction_id = result.scalar_one_or_none()
        if transaction_id is None:
            logger.error("Insert returned no row for new transaction of user %s", user_id)
            raise HTTPException(status_code=500, detail="Failed to create transaction.")
        ledger.apply_balance_changes(conn, user_id, ledger.posting_changes(ledger_entry(payload)))
        row = fetch_transaction(conn, user_id, transaction_id)

    return transaction_response(row)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        existing = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
        if not existing:
            raise HTTPException(status_code=404, detail="Transaction not found.")
        check_transaction_references(conn, user_id, payload)

        changes = ledger.update_changes(ledger_entry(existing), ledger_entry(payload))
        ledger.apply_balance_changes(conn, user_id, changes)
        conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .values(
                account_id=payload.account_id,
                category_id=payload.category_id,
                transfer_account_id=payload.transfer_account_id,
                amount=payload.amount,
                type=payload.type,
                date=payload.date,
                description=payload.description,
                notes=payload.notes,
            )
        )
        row = fetch_transaction(conn, user_id, transaction_id)

    return transaction_response(row)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        existing = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
        if not existing:
            raise HTTPException(status_code=404, detail="Transaction not found.")
        ledger.apply_balance_changes(conn, user_id, ledger.reversal_changes(ledger_entry(existing)))
        conn.execute(
            transactions.delete().where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        )
    return {"status": "deleted"}


@app.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(
    period: str | None = None,
    category_id: int | None = None,
    status: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BudgetResponse]:
    user_id = get_user_id(x_user_id)
    conditions = [budgets.c.user_id == user_id]
    if period:
        try:
            conditions.append(budgets.c.period == BudgetPeriod.validate(period))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    if category_id is not None:
        conditions.append(budgets.c.category_id == category_id)

    today = date.today()
    normalized_status = status.strip().lower() if status else None
    if normalized_status == "active":
        conditions.append(budgets.c.is_active.is_(True))
        conditions.append(budgets.c.start_date <= today)
        conditions.append(budgets.c.end_date >= today)
    elif normalized_status == "completed":
        conditions.append(budgets.c.end_date < today)
    elif normalized_status not in (None, "overbudget"):
        raise HTTPException(status_code=400, detail="Invalid budget status filter.")

    with engine.begin() as conn:
        rows = conn.execute(
            budget_query()
            .where(*conditions)
            .order_by(budgets.c.created_at.desc(), budgets.c.id.desc())
        ).mappings().all()
        evaluated = [budget_response(row, evaluate_budget_row(conn, user_id, row)) for row in rows]

    if normalized_status == "overbudget":
        evaluated = [item for item in evaluated if item.status == "overbudget"]
    return evaluated


@app.get("/budgets/summary", response_model=BudgetSummaryResponse)
def budget_summary(
    period: str = "monthly",
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetSummaryResponse:
    user_id = get_user_id(x_user_id)
    try:
        normalized_period = BudgetPeriod.validate(period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    today = date.today()
    trend_start = shift_month_keep_day(today, -6)
    with engine.begin() as conn:
        rows = conn.execute(
            budget_query()
            .where(
                budgets.c.user_id == user_id,
                budgets.c.period == normalized_period,
                budgets.c.is_active.is_(True),
                budgets.c.start_date <= today,
                budgets.c.end_date >= today,
            )
            .order_by(budgets.c.end_date.asc(), budgets.c.id.asc())
        ).mappings().all()
        evaluated = [(row, evaluate_budget_row(conn, user_id, row)) for row in rows]
        trend_rows = conn.execute(
            select(transactions.c.date, transactions.c.amount).where(
                transactions.c.user_id == user_id,
                transactions.c.type == ledger.EXPENSE,
                transactions.c.date >= trend_start,
                transactions.c.date <= today,
            )
        ).mappings().all()

    evaluations = [evaluation for _, evaluation in evaluated]
    portfolio = summarize_budgets(evaluations)

    spending_trends: dict[str, Decimal] = {}
    for row in trend_rows:
        month_key = row["date"].strftime("%Y-%m")
        spending_trends[month_key] = spending_trends.get(month_key, Decimal("0")) + coerce_decimal(
            row["amount"]
        )

    active_budgets = [budget_response(row, evaluation) for row, evaluation in evaluated]
    overbudget = sorted(
        (item for item in active_budgets if item.status == "overbudget"),
        key=lambda item: abs(item.remaining),
        reverse=True,
    )[:5]
    upcoming = []
    for row, evaluation in evaluated:
        days_until_end = (row["end_date"] - today).days
        if 0 < days_until_end <= 7:
            upcoming.append(
                UpcomingBudgetResponse(
                    **budget_response_fields(row, evaluation), days_until_end=days_until_end
                )
            )
    upcoming.sort(key=lambda item: item.end_date)

    recommendations = generate_recommendations(
        evaluations, portfolio.total_spent, portfolio.total_budget_amount
    )
    return BudgetSummaryResponse(
        period=normalized_period,
        overview=BudgetOverviewResponse(
            total_budgets=portfolio.total_budgets,
            total_budget_amount=portfolio.total_budget_amount,
            total_spent=portfolio.total_spent,
            total_remaining=portfolio.total_remaining,
            overall_percentage_used=portfolio.overall_percentage_used,
            budgets_by_status=portfolio.budgets_by_status,
        ),
        active_budgets=active_budgets,
        spending_trends=dict(sorted(spending_trends.items())),
        overbudget_categories=overbudget,
        upcoming_budgets=upcoming,
        recommendations=[
            RecommendationResponse(type=item.type, title=item.title, message=item.message)
            for item in recommendations
        ],
    )


@app.get("/budgets/{budget_id}", response_model=BudgetDetailResponse)
def get_budget(
    budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetDetailResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = fetch_budget(conn, user_id, budget_id)
        if not row:
            raise HTTPException(status_code=404, detail="Budget not found.")
        evaluation = evaluate_budget_row(conn, user_id, row)
        txn_rows = conn.execute(
            transaction_query()
            .where(*budget_expense_conditions(user_id, row))
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()

    return BudgetDetailResponse(
        **budget_response_fields(row, evaluation),
        transactions=[transaction_response(txn) for txn in txn_rows],
    )


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if payload.category_id is not None and not fetch_owned_category(
            conn, user_id, payload.category_id
        ):
            raise HTTPException(status_code=404, detail="Category not found.")
        check_budget_overlap(conn, user_id, payload)

        result = conn.execute(
            insert(budgets)
            .values(
                user_id=user_id,
                name=payload.name,
                category_id=payload.category_id,
                amount=payload.amount,
                period=payload.period,
                start_date=payload.start_date,
                end_date=payload.end_date,
                is_active=payload.is_active,
            )
            .returning(budgets.c.id)
        )
        budget_id = result.scalar_one_or_none()
        if budget_id is None:
            logger.error("Insert returned no row for new budget of user %s", user_id)
            raise HTTPException(status_code=500, detail="Failed to create budget.")
        row = fetch_budget(conn, user_id, budget_id)
        evaluation = evaluate_budget_row(conn, user_id, row)

    return budget_response(row, evaluation)


@app.put("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        existing = fetch_budget(conn, user_id, budget_id)
        if not existing:
            raise HTTPException(status_code=404, detail="Budget not found.")
        try:
            merged = payload.merged_with(existing)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if merged.category_id is not None and not fetch_owned_category(
            conn, user_id, merged.category_id
        ):
            raise HTTPException(status_code=404, detail="Category not found.")
        check_budget_overlap(conn, user_id, merged, budget_id=budget_id)

        conn.execute(
            update(budgets)
            .where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
            .values(
                name=merged.name,
                category_id=merged.category_id,
                amount=merged.amount,
                period=merged.period,
                start_date=merged.start_date,
                end_date=merged.end_date,
                is_active=merged.is_active,
            )
        )
        row = fetch_budget(conn, user_id, budget_id)
        evaluation = evaluate_budget_row(conn, user_id, row)

    return budget_response(row, evaluation)


@app.delete("/budgets/{budget_id}")
def delete_budget(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = budgets.delete().where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Budget not found.")
    return {"status": "deleted"}


@app.get("/dashboard/summary", response_model=DashboardSummaryResponse)
def dashboard_summary(
    period: str = "month",
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardSummaryResponse:
    user_id = get_user_id(x_user_id)
    today = date.today()
    try:
        start_date, end_date = get_dashboard_range(period, today)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    in_range = [
        transactions.c.user_id == user_id,
        transactions.c.date >= start_date,
        transactions.c.date <= end_date,
    ]
    total_expr = func.coalesce(func.sum(transactions.c.amount), 0)
    spent_expr = func.sum(transactions.c.amount).label("total_spent")
    with engine.begin() as conn:
        total_income = conn.execute(
            select(total_expr).where(*in_range, transactions.c.type == ledger.INCOME)
        ).scalar_one()
        total_expense = conn.execute(
            select(total_expr).where(*in_range, transactions.c.type == ledger.EXPENSE)
        ).scalar_one()
        transaction_count = conn.execute(
            select(func.count()).select_from(transactions).where(*in_range)
        ).scalar_one()
        total_balance = conn.execute(
            select(func.coalesce(func.sum(accounts.c.balance), 0)).where(
                accounts.c.user_id == user_id, accounts.c.is_active.is_(True)
            )
        ).scalar_one()
        recent_rows = conn.execute(
            transaction_query()
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .limit(5)
        ).mappings().all()
        stat_rows = conn.execute(
            select(
                transactions.c.category_id,
                spent_expr,
                categories.c.name.label("category_name"),
                categories.c.icon.label("category_icon"),
                categories.c.color.label("category_color"),
                categories.c.type.label("category_type"),
            )
            .select_from(
                transactions.outerjoin(categories, categories.c.id == transactions.c.category_id)
            )
            .where(*in_range, transactions.c.type == ledger.EXPENSE)
            .group_by(
                transactions.c.category_id,
                categories.c.name,
                categories.c.icon,
                categories.c.color,
                categories.c.type,
            )
            .order_by(spent_expr.desc())
            .limit(5)
        ).mappings().all()

    income = money(total_income)
    expense = money(total_expense)
    return DashboardSummaryResponse(
        period=period.strip().lower(),
        start_date=start_date,
        end_date=end_date,
        total_income=income,
        total_expense=expense,
        net_income=income - expense,
        transaction_count=int(transaction_count or 0),
        total_balance=money(total_balance),
        recent_transactions=[transaction_response(row) for row in recent_rows],
        category_stats=[
            CategoryStatResponse(
                category_id=row["category_id"],
                category=category_summary(row, row["category_id"]),
                total_spent=money(row["total_spent"]),
            )
            for row in stat_rows
        ],
    )


@app.get("/goals", response_model=list[GoalResponse])
def list_goals(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[GoalResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(goals)
            .where(goals.c.user_id == user_id)
            .order_by(goals.c.is_completed.asc(), goals.c.created_at.desc(), goals.c.id.desc())
        ).mappings().all()
    return [goal_response(row) for row in rows]


@app.get("/goals/{goal_id}", response_model=GoalResponse)
def get_goal(goal_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(goals).where(goals.c.id == goal_id, goals.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Goal not found.")
    return goal_response(row)


@app.post("/goals", response_model=GoalResponse)
def create_goal(
    payload: GoalPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = GoalPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(goals)
        .values(
            user_id=user_id,
            name=payload.name,
            description=payload.description,
            target_amount=payload.target_amount,
            current_amount=payload.current_amount,
            target_date=payload.target_date,
            is_completed=payload.is_completed,
        )
        .returning(*goals.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        logger.error("Insert returned no row for new goal of user %s", user_id)
        raise HTTPException(status_code=500, detail="Failed to create goal.")
    return goal_response(row)


@app.put("/goals/{goal_id}", response_model=GoalResponse)
def update_goal(
    goal_id: int,
    payload: GoalPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> GoalResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = GoalPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(goals)
        .where(goals.c.id == goal_id, goals.c.user_id == user_id)
        .values(
            name=payload.name,
            description=payload.description,
            target_amount=payload.target_amount,
            current_amount=payload.current_amount,
            target_date=payload.target_date,
            is_completed=payload.is_completed,
        )
        .returning(*goals.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Goal not found.")
    return goal_response(row)


@app.delete("/goals/{goal_id}")
def delete_goal(goal_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = goals.delete().where(goals.c.id == goal_id, goals.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Goal not found.")
    return {"status": "deleted"}
