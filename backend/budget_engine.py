from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence

ZERO = Decimal("0")
HUNDRED = Decimal("100")
WARNING_RATIO = Decimal("0.1")
TWO_PLACES = Decimal("0.01")

STATUS_GOOD = "good"
STATUS_WARNING = "warning"
STATUS_OVERBUDGET = "overbudget"
STATUSES = (STATUS_GOOD, STATUS_WARNING, STATUS_OVERBUDGET)

SUPPORTED_PERIODS = {"weekly", "monthly", "quarterly", "yearly"}


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    category_id: Optional[int] = None
    account_id: Optional[int] = None


@dataclass(frozen=True)
class Budget:
    amount: Decimal
    start_date: date
    end_date: date
    category_id: Optional[int] = None


@dataclass(frozen=True)
class BudgetEvaluation:
    amount: Decimal
    total_spent: Decimal
    remaining: Decimal
    percentage_used: Decimal
    status: str


@dataclass(frozen=True)
class BudgetPortfolio:
    total_budgets: int
    total_budget_amount: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_percentage_used: Decimal
    budgets_by_status: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class Recommendation:
    type: str
    title: str
    message: str


def evaluate_budget(transactions: Iterable[Transaction], budget: Budget) -> BudgetEvaluation:
    """Measure how much of ``budget`` its window's expenses have consumed.

    Only expense transactions dated inside the inclusive window count; a
    budget without a category aggregates every expense category.
    """
    if budget.start_date > budget.end_date:
        raise ValueError("start_date must be on or before end_date.")

    amount = _coerce_amount(budget.amount)
    total_spent = ZERO
    for txn in transactions:
        if txn.type.strip().lower() != "expense":
            continue
        if not budget.start_date <= txn.date <= budget.end_date:
            continue
        if budget.category_id is not None and txn.category_id != budget.category_id:
            continue
        total_spent += _coerce_amount(txn.amount)

    remaining = amount - total_spent
    return BudgetEvaluation(
        amount=amount,
        total_spent=total_spent,
        remaining=remaining,
        percentage_used=round_percentage(percentage_of(total_spent, amount)),
        status=budget_status(amount, remaining),
    )


def budget_status(amount: Decimal, remaining: Decimal) -> str:
    if remaining < ZERO:
        return STATUS_OVERBUDGET
    if remaining < amount * WARNING_RATIO:
        return STATUS_WARNING
    return STATUS_GOOD


def percentage_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= ZERO:
        return ZERO
    return part / whole * HUNDRED


def round_percentage(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def summarize_budgets(evaluations: Sequence[BudgetEvaluation]) -> BudgetPortfolio:
    total_budget_amount = sum((item.amount for item in evaluations), ZERO)
    total_spent = sum((item.total_spent for item in evaluations), ZERO)
    budgets_by_status = {status: 0 for status in STATUSES}
    for item in evaluations:
        budgets_by_status[item.status] = budgets_by_status.get(item.status, 0) + 1
    return BudgetPortfolio(
        total_budgets=len(evaluations),
        total_budget_amount=total_budget_amount,
        total_spent=total_spent,
        total_remaining=total_budget_amount - total_spent,
        overall_percentage_used=round_percentage(percentage_of(total_spent, total_budget_amount)),
        budgets_by_status=budgets_by_status,
    )


def generate_recommendations(
    evaluations: Sequence[BudgetEvaluation],
    total_spent: Decimal,
    total_budget: Decimal,
) -> List[Recommendation]:
    recommendations: List[Recommendation] = []

    overbudget_count = sum(1 for item in evaluations if item.status == STATUS_OVERBUDGET)
    if overbudget_count > 0:
        recommendations.append(
            Recommendation(
                type="warning",
                title="Budget exceeded",
                message=(
                    f"You have exceeded {overbudget_count} "
                    f"{_pluralize('budget', overbudget_count)}. Consider cutting back "
                    "on spending or adjusting the limits."
                ),
            )
        )

    warning_count = sum(1 for item in evaluations if item.status == STATUS_WARNING)
    if warning_count > 0:
        recommendations.append(
            Recommendation(
                type="info",
                title="Approaching budget limit",
                message=(
                    f"{warning_count} {_pluralize('budget', warning_count)} "
                    f"{'is' if warning_count == 1 else 'are'} almost used up. "
                    "Keep a closer eye on spending."
                ),
            )
        )

    overall_percentage = percentage_of(_coerce_amount(total_spent), _coerce_amount(total_budget))
    if overall_percentage > 90:
        recommendations.append(
            Recommendation(
                type="warning",
                title="High total spending",
                message="You have used more than 90% of your total budget. Consider saving more.",
            )
        )
    elif overall_percentage < 50:
        recommendations.append(
            Recommendation(
                type="success",
                title="Budget well managed",
                message="You are managing your budget well. Consider putting more into savings.",
            )
        )

    if not evaluations:
        recommendations.append(
            Recommendation(
                type="info",
                title="Create your first budget",
                message="Start managing your money by creating a budget for your expense categories.",
            )
        )

    return recommendations


def period_window(period: str, anchor: date) -> tuple[date, date]:
    """Return the calendar window of ``period`` that contains ``anchor``."""
    normalized = period.strip().lower()
    if normalized == "weekly":
        start = anchor - timedelta(days=anchor.weekday())
        return start, start + timedelta(days=6)
    if normalized == "monthly":
        start = anchor.replace(day=1)
        return start, _shift_month(start, 1) - timedelta(days=1)
    if normalized == "quarterly":
        start = date(anchor.year, ((anchor.month - 1) // 3) * 3 + 1, 1)
        return start, _shift_month(start, 3) - timedelta(days=1)
    if normalized == "yearly":
        return date(anchor.year, 1, 1), date(anchor.year, 12, 31)
    raise ValueError(f"Unsupported period: {period}")


def _shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    return date(month_index // 12, month_index % 12 + 1, 1)


def _pluralize(word: str, count: int) -> str:
    return word if count == 1 else word + "s"


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
