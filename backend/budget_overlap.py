from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional


@dataclass(frozen=True)
class BudgetWindow:
    start_date: date
    end_date: date
    category_id: Optional[int] = None
    budget_id: Optional[int] = None


def ranges_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    """Closed-interval overlap.

    Same result as checking whether either start or end of one range falls
    inside the other, or one range contains the other. Touching boundaries
    (one range ends the day the other starts) count as overlapping.
    """
    return start_a <= end_b and start_b <= end_a


def find_overlap(
    candidate: BudgetWindow, existing: Iterable[BudgetWindow]
) -> Optional[BudgetWindow]:
    if candidate.start_date > candidate.end_date:
        raise ValueError("Start date must be on or before end date.")
    for window in existing:
        if candidate.budget_id is not None and window.budget_id == candidate.budget_id:
            continue
        if window.category_id != candidate.category_id:
            continue
        if ranges_overlap(
            window.start_date, window.end_date, candidate.start_date, candidate.end_date
        ):
            return window
    return None
