"""Budget performance: pure functions over already-loaded rows.

Nothing here touches the database or keeps state between calls, so the same
inputs always produce equal reports. The services load rows and call in.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from models import BudgetStatus

UNKNOWN_CATEGORY = "Unknown category"


class BudgetLike(Protocol):
    id: int
    amount_cents: int
    start_date: date
    end_date: date


class AllocationLike(Protocol):
    category_id: int
    amount_cents: int


class ExpenseLike(Protocol):
    category_id: int
    amount_cents: int
    date: date
    budget_id: Optional[int]


@dataclass(frozen=True)
class CategoryPerformance:
    category_id: int
    category_name: str
    allocated_cents: int
    spent_cents: int
    remaining_cents: int
    is_allocated: bool
    progress_pct: float


@dataclass(frozen=True)
class PerformanceReport:
    budget_id: int
    allocated_cents: int
    spent_cents: int
    remaining_cents: int
    categories: tuple[CategoryPerformance, ...]

    @property
    def unallocated_spent_cents(self) -> int:
        return sum(c.spent_cents for c in self.categories if not c.is_allocated)


def category_progress(allocated_cents: int, spent_cents: int) -> float:
    """Percent of the allocation used; spending with nothing planned is 100."""
    if allocated_cents == 0:
        return 100.0 if spent_cents > 0 else 0.0
    return round(spent_cents / allocated_cents * 100, 1)


def compute_performance(
    budget: BudgetLike,
    allocations: Iterable[AllocationLike],
    expenses: Iterable[ExpenseLike],
    category_names: Optional[Mapping[int, str]] = None,
) -> PerformanceReport:
    """Allocated/spent/remaining for a budget and each category it touches.

    ``expenses`` must already be restricted to the ones attributable to the
    budget (see :func:`select_attributable`). Categories with spending but no
    allocation are reported with ``is_allocated=False``. Budget-level spent is
    the sum of every expense, so it always equals the sum over categories.
    """
    names = category_names or {}

    allocated_by_category: dict[int, int] = {}
    for allocation in allocations:
        allocated_by_category[allocation.category_id] = (
            allocated_by_category.get(allocation.category_id, 0)
            + allocation.amount_cents
        )

    spent_by_category: dict[int, int] = {}
    for expense in expenses:
        spent_by_category[expense.category_id] = (
            spent_by_category.get(expense.category_id, 0) + expense.amount_cents
        )

    rows: list[CategoryPerformance] = []
    for category_id in sorted(set(allocated_by_category) | set(spent_by_category)):
        allocated = allocated_by_category.get(category_id, 0)
        spent = spent_by_category.get(category_id, 0)
        rows.append(
            CategoryPerformance(
                category_id=category_id,
                category_name=names.get(category_id, UNKNOWN_CATEGORY),
                allocated_cents=allocated,
                spent_cents=spent,
                remaining_cents=allocated - spent,
                is_allocated=category_id in allocated_by_category,
                progress_pct=category_progress(allocated, spent),
            )
        )

    total_spent = sum(spent_by_category.values())
    return PerformanceReport(
        budget_id=budget.id,
        allocated_cents=sum(allocated_by_category.values()),
        spent_cents=total_spent,
        remaining_cents=budget.amount_cents - total_spent,
        categories=tuple(rows),
    )


def classify(
    budget: BudgetLike,
    performance: PerformanceReport,
    today: date,
    warning_ratio: float = 0.8,
) -> BudgetStatus:
    if today > budget.end_date:
        return BudgetStatus.expired
    if today < budget.start_date:
        return BudgetStatus.inactive
    spent = performance.spent_cents
    if spent > budget.amount_cents:
        return BudgetStatus.over_budget
    # Decimal keeps the threshold exact for any cent amount.
    if spent >= Decimal(str(warning_ratio)) * budget.amount_cents:
        return BudgetStatus.warning
    return BudgetStatus.on_track


@dataclass(frozen=True)
class BudgetCoverage:
    """The parts of a budget that decide who owns an unlinked expense."""

    budget_id: int
    start_date: date
    end_date: date
    allocated_category_ids: frozenset[int]

    def covers(self, on: date) -> bool:
        return self.start_date <= on <= self.end_date


def owning_budget_id(
    category_id: int, on: date, coverages: Sequence[BudgetCoverage]
) -> Optional[int]:
    """Pick the single budget an expense without ``budget_id`` counts toward.

    Among the budgets covering ``on``, one that allocates the category wins;
    ties go to the most recent start date, then the highest id.
    """
    candidates = [c for c in coverages if c.covers(on)]
    if not candidates:
        return None
    best = max(
        candidates,
        key=lambda c: (category_id in c.allocated_category_ids, c.start_date, c.budget_id),
    )
    return best.budget_id


def select_attributable(
    budget: BudgetLike,
    expenses: Iterable[ExpenseLike],
    coverages: Sequence[BudgetCoverage],
) -> list[ExpenseLike]:
    """Expenses that count toward ``budget``.

    ``coverages`` describes every budget of the same user (including this
    one). Expenses outside the budget's dates never count; linked expenses
    count only for their own budget.
    """
    selected: list[ExpenseLike] = []
    for expense in expenses:
        if not budget.start_date <= expense.date <= budget.end_date:
            continue
        if expense.budget_id is not None:
            if expense.budget_id == budget.id:
                selected.append(expense)
            continue
        if owning_budget_id(expense.category_id, expense.date, coverages) == budget.id:
            selected.append(expense)
    return selected
