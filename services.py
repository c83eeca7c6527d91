from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from errors import AuthorizationError, NotFoundError, ValidationError
from models import (
    Budget,
    BudgetAllocation,
    BudgetPeriod,
    BudgetStatus,
    Category,
    Expense,
    Subcategory,
    User,
    UserRole,
)
from performance import (
    BudgetCoverage,
    PerformanceReport,
    classify,
    compute_performance,
    select_attributable,
)
from periods import resolve_range, today_local
from schemas import (
    AllocationIn,
    AllocationPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    ExpenseIn,
    SubcategoryIn,
)

logger = logging.getLogger(__name__)

# Largest value a 64-bit INTEGER column holds.
MAX_AMOUNT_CENTS = 2**63 - 1


@dataclass(frozen=True)
class Actor:
    user_id: int
    is_admin: bool = False

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, is_admin=user.is_admin)


def _check_amount(amount_cents: Optional[int], what: str) -> int:
    if amount_cents is None:
        raise ValidationError(f"{what} amount is required")
    if amount_cents < 0:
        raise ValidationError(
            f"{what} amount must not be negative", reason="negative_amount"
        )
    if amount_cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{what} amount is too large", reason="amount_too_large")
    return amount_cents


def _check_range(start: date, end: date) -> None:
    if end < start:
        raise ValidationError(
            "End date must not be before start date", reason="invalid_date_range"
        )


def load_budget(session: Session, actor: Actor, budget_id: int) -> Budget:
    budget = session.get(Budget, budget_id)
    if not budget:
        raise NotFoundError("Budget not found", reason="budget_not_found")
    if budget.user_id != actor.user_id and not actor.is_admin:
        raise AuthorizationError("You don't have permission to access this budget")
    return budget


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found", reason="user_not_found")
        return user

    def create(self, name: str, email: str, *, admin: bool = False) -> User:
        existing = self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )
        if existing:
            raise ValidationError("User with this email already exists")
        user = User(
            name=name.strip(),
            email=email.strip(),
            role=UserRole.admin if admin else UserRole.user,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_create: user_id={user.id} admin={admin}")
        return user


class CategoryService:
    """Read side of the category store, plus the CRUD the API exposes."""

    def __init__(self, session: Session, actor: Actor) -> None:
        self.session = session
        self.actor = actor

    @staticmethod
    def visible_to(owner_id: int):
        return or_(Category.is_system.is_(True), Category.user_id == owner_id)

    def list_visible(self, owner_id: Optional[int] = None) -> list[Category]:
        owner_id = owner_id or self.actor.user_id
        stmt = (
            select(Category)
            .options(joinedload(Category.subcategories))
            .where(self.visible_to(owner_id))
            .order_by(Category.is_system.desc(), Category.name)
        )
        return self.session.scalars(stmt).unique().all()

    def get_visible(self, category_id: int, owner_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or not (category.is_system or category.user_id == owner_id):
            raise NotFoundError("Category not found", reason="category_not_found")
        return category

    def create(self, data: CategoryIn, *, is_system: bool = False) -> Category:
        if is_system and not self.actor.is_admin:
            raise AuthorizationError("Only admins can create system categories")
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.actor.user_id,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValidationError(
                "Category with this name already exists", reason="duplicate_category"
            )
        category = Category(
            user_id=self.actor.user_id,
            name=data.name.strip(),
            description=data.description,
            is_system=is_system,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def add_subcategory(self, data: SubcategoryIn) -> Subcategory:
        category = self.get_visible(data.category_id, self.actor.user_id)
        sub = Subcategory(
            category_id=category.id,
            user_id=self.actor.user_id,
            name=data.name.strip(),
        )
        self.session.add(sub)
        self.session.commit()
        self.session.refresh(sub)
        return sub

    def delete(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found", reason="category_not_found")
        if category.user_id != self.actor.user_id and not self.actor.is_admin:
            raise AuthorizationError("You don't have permission to delete this category")

        allocation_count = self.session.scalar(
            select(func.count(BudgetAllocation.id)).where(
                BudgetAllocation.category_id == category_id
            )
        )
        expense_count = self.session.scalar(
            select(func.count(Expense.id)).where(
                Expense.category_id == category_id, Expense.deleted_at.is_(None)
            )
        )
        if allocation_count or expense_count:
            raise ValidationError(
                f"Category is used by {allocation_count} budget allocation(s) and "
                f"{expense_count} expense(s)",
                reason="category_in_use",
            )
        self.session.delete(category)
        self.session.commit()


class ExpenseService:
    """Minimal expense ledger: enough to record what budgets are measured on."""

    def __init__(self, session: Session, actor: Actor) -> None:
        self.session = session
        self.actor = actor

    def create(self, data: ExpenseIn) -> Expense:
        amount = _check_amount(data.amount_cents, "Expense")
        categories = CategoryService(self.session, self.actor)
        category = categories.get_visible(data.category_id, self.actor.user_id)
        if data.subcategory_id is not None:
            sub = self.session.get(Subcategory, data.subcategory_id)
            if not sub or sub.category_id != category.id:
                raise ValidationError(
                    "Subcategory does not belong to the category",
                    reason="invalid_subcategory",
                )
        if data.budget_id is not None:
            budget = self.session.get(Budget, data.budget_id)
            if not budget or budget.user_id != self.actor.user_id:
                raise NotFoundError("Budget not found", reason="budget_not_found")

        expense = Expense(
            user_id=self.actor.user_id,
            category_id=category.id,
            subcategory_id=data.subcategory_id,
            budget_id=data.budget_id,
            amount_cents=amount,
            date=data.date,
            description=data.description.strip(),
            merchant=data.merchant,
            notes=data.notes,
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def soft_delete(self, expense_id: int) -> None:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.deleted_at is not None:
            raise NotFoundError("Expense not found", reason="expense_not_found")
        if expense.user_id != self.actor.user_id and not self.actor.is_admin:
            raise AuthorizationError("You don't have permission to delete this expense")
        expense.deleted_at = datetime.utcnow()
        self.session.commit()

    def in_range(self, user_id: int, start: date, end: date) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == user_id,
                Expense.deleted_at.is_(None),
                Expense.date.between(start, end),
            )
            .order_by(Expense.date, Expense.id)
        )
        return self.session.scalars(stmt).all()


class AllocationStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def for_budget(self, budget_id: int) -> list[BudgetAllocation]:
        stmt = (
            select(BudgetAllocation)
            .options(joinedload(BudgetAllocation.category))
            .where(BudgetAllocation.budget_id == budget_id)
            .order_by(BudgetAllocation.category_id)
        )
        return self.session.scalars(stmt).all()

    def find(self, budget_id: int, category_id: int) -> Optional[BudgetAllocation]:
        return self.session.scalar(
            select(BudgetAllocation).where(
                BudgetAllocation.budget_id == budget_id,
                BudgetAllocation.category_id == category_id,
            )
        )

    def get(self, allocation_id: int) -> BudgetAllocation:
        allocation = self.session.get(BudgetAllocation, allocation_id)
        if not allocation:
            raise NotFoundError("Allocation not found", reason="allocation_not_found")
        return allocation

    def category_ids_by_budget(self, budget_ids: list[int]) -> dict[int, frozenset[int]]:
        if not budget_ids:
            return {}
        rows = self.session.execute(
            select(BudgetAllocation.budget_id, BudgetAllocation.category_id).where(
                BudgetAllocation.budget_id.in_(budget_ids)
            )
        ).all()
        grouped: dict[int, set[int]] = {budget_id: set() for budget_id in budget_ids}
        for row in rows:
            grouped[row.budget_id].add(row.category_id)
        return {budget_id: frozenset(ids) for budget_id, ids in grouped.items()}


class AllocationManager:
    """Validated writes to budget allocations.

    At most one allocation exists per (budget, category): writing a category
    that is already allocated replaces the amount on the existing row. Writes
    never recompute performance; reads always do.
    """

    def __init__(self, session: Session, actor: Actor) -> None:
        self.session = session
        self.actor = actor
        self.store = AllocationStore(session)

    def _check_subcategory(
        self, category_id: int, subcategory_id: Optional[int]
    ) -> None:
        if subcategory_id is None:
            return
        sub = self.session.get(Subcategory, subcategory_id)
        if not sub or sub.category_id != category_id:
            raise ValidationError(
                "Subcategory does not belong to the category",
                reason="invalid_subcategory",
            )

    def list_allocations(self, budget_id: int) -> list[BudgetAllocation]:
        load_budget(self.session, self.actor, budget_id)
        return self.store.for_budget(budget_id)

    def upsert_allocation(
        self,
        budget_id: int,
        category_id: int,
        subcategory_id: Optional[int],
        amount_cents: int,
    ) -> BudgetAllocation:
        amount = _check_amount(amount_cents, "Allocation")
        budget = load_budget(self.session, self.actor, budget_id)
        CategoryService(self.session, self.actor).get_visible(
            category_id, budget.user_id
        )
        self._check_subcategory(category_id, subcategory_id)

        allocation = self.store.find(budget_id, category_id)
        created = allocation is None
        if allocation:
            allocation.amount_cents = amount
            allocation.subcategory_id = subcategory_id
        else:
            allocation = BudgetAllocation(
                budget_id=budget_id,
                category_id=category_id,
                subcategory_id=subcategory_id,
                amount_cents=amount,
            )
            self.session.add(allocation)
        try:
            self.session.flush()
        except IntegrityError:
            # Lost an insert race for this category; last write wins.
            self.session.rollback()
            allocation = self.store.find(budget_id, category_id)
            if allocation is None:
                raise
            allocation.amount_cents = amount
            allocation.subcategory_id = subcategory_id
            created = False
        self.session.commit()
        self.session.refresh(allocation)
        logger.info(
            f"allocation_upsert: budget_id={budget_id} category_id={category_id} "
            f"allocation_id={allocation.id} amount_cents={amount} created={created}"
        )
        return allocation

    def create_from(self, budget_id: int, data: AllocationIn) -> BudgetAllocation:
        return self.upsert_allocation(
            budget_id, data.category_id, data.subcategory_id, data.amount_cents
        )

    def update_allocation(
        self, allocation_id: int, data: AllocationPatch
    ) -> BudgetAllocation:
        allocation = self.store.get(allocation_id)
        budget = load_budget(self.session, self.actor, allocation.budget_id)

        category_id = allocation.category_id
        if data.category_id is not None and data.category_id != category_id:
            CategoryService(self.session, self.actor).get_visible(
                data.category_id, budget.user_id
            )
            clash = self.store.find(budget.id, data.category_id)
            if clash and clash.id != allocation.id:
                raise ValidationError(
                    "Category already has an allocation in this budget",
                    reason="category_already_allocated",
                )
            category_id = data.category_id

        subcategory_id = allocation.subcategory_id
        if "subcategory_id" in data.model_fields_set:
            subcategory_id = data.subcategory_id
        elif category_id != allocation.category_id:
            subcategory_id = None
        self._check_subcategory(category_id, subcategory_id)

        amount = allocation.amount_cents
        if data.amount_cents is not None:
            amount = _check_amount(data.amount_cents, "Allocation")

        allocation.category_id = category_id
        allocation.subcategory_id = subcategory_id
        allocation.amount_cents = amount
        self.session.commit()
        self.session.refresh(allocation)
        logger.info(
            f"allocation_update: allocation_id={allocation.id} "
            f"category_id={category_id} amount_cents={amount}"
        )
        return allocation

    def delete_allocation(self, allocation_id: int) -> None:
        allocation = self.store.get(allocation_id)
        budget_id = allocation.budget_id
        load_budget(self.session, self.actor, budget_id)
        self.session.delete(allocation)
        self.session.commit()
        logger.info(
            f"allocation_delete: allocation_id={allocation_id} budget_id={budget_id}"
        )


@dataclass
class BudgetFilters:
    user_id: Optional[int] = None
    search: Optional[str] = None
    status: Optional[str] = None
    period: Optional[BudgetPeriod] = None
    category_id: Optional[int] = None
    page: int = 1
    size: Optional[int] = None


@dataclass(frozen=True)
class BudgetSummary:
    budget: Budget
    performance: PerformanceReport
    status: BudgetStatus


@dataclass(frozen=True)
class BudgetDetail:
    budget: Budget
    allocations: list[BudgetAllocation]
    performance: PerformanceReport
    status: BudgetStatus


@dataclass(frozen=True)
class BudgetListing:
    budgets: list[BudgetSummary]
    total_count: int
    total_amount_cents: int
    avg_amount_cents: int
    active_count: int
    page: int
    size: int


STATUS_FILTERS = {status.value for status in BudgetStatus} | {"active"}


class BudgetService:
    def __init__(
        self,
        session: Session,
        actor: Actor,
        *,
        today: Optional[date] = None,
        warning_ratio: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.actor = actor
        self.today = today or today_local()
        self.warning_ratio = (
            settings.warning_ratio if warning_ratio is None else warning_ratio
        )
        self.default_page_size = settings.default_page_size
        self.max_page_size = settings.max_page_size
        self.allocations = AllocationStore(session)

    # -- performance -------------------------------------------------------

    def _reports_for(self, budgets: list[Budget]) -> dict[int, PerformanceReport]:
        """Performance for each budget, computed per owner in one pass.

        Every budget of an owner takes part in deciding where that owner's
        unlinked expenses land, so list and detail views agree.
        """
        reports: dict[int, PerformanceReport] = {}
        by_user: dict[int, list[Budget]] = {}
        for budget in budgets:
            by_user.setdefault(budget.user_id, []).append(budget)

        expenses_svc = ExpenseService(self.session, self.actor)
        for user_id, user_budgets in by_user.items():
            all_budgets = self.session.scalars(
                select(Budget).where(Budget.user_id == user_id)
            ).all()
            allocated = self.allocations.category_ids_by_budget(
                [b.id for b in all_budgets]
            )
            coverages = [
                BudgetCoverage(
                    budget_id=b.id,
                    start_date=b.start_date,
                    end_date=b.end_date,
                    allocated_category_ids=allocated.get(b.id, frozenset()),
                )
                for b in all_budgets
            ]
            start = min(b.start_date for b in user_budgets)
            end = max(b.end_date for b in user_budgets)
            expenses = expenses_svc.in_range(user_id, start, end)
            names = {
                c.id: c.name
                for c in self.session.scalars(
                    select(Category).where(
                        Category.id.in_(sorted({e.category_id for e in expenses}))
                    )
                )
            }

            for budget in user_budgets:
                budget_allocations = self.allocations.for_budget(budget.id)
                names.update({a.category_id: a.category.name for a in budget_allocations})
                attributable = select_attributable(budget, expenses, coverages)
                reports[budget.id] = compute_performance(
                    budget, budget_allocations, attributable, names
                )
        return reports

    def performance(self, budget_id: int) -> PerformanceReport:
        budget = load_budget(self.session, self.actor, budget_id)
        return self._reports_for([budget])[budget.id]

    def status_for(self, budget: Budget, report: PerformanceReport) -> BudgetStatus:
        return classify(budget, report, self.today, self.warning_ratio)

    def get_budget_detail(self, budget_id: int) -> BudgetDetail:
        budget = load_budget(self.session, self.actor, budget_id)
        report = self._reports_for([budget])[budget.id]
        logger.debug(
            f"budget_detail: budget_id={budget.id} spent_cents={report.spent_cents} "
            f"categories={len(report.categories)}"
        )
        return BudgetDetail(
            budget=budget,
            allocations=self.allocations.for_budget(budget.id),
            performance=report,
            status=self.status_for(budget, report),
        )

    # -- listing -----------------------------------------------------------

    def _page_size(self, size: Optional[int]) -> int:
        if size is None:
            return self.default_page_size
        if size < 1:
            raise ValidationError("Page size must be positive", reason="invalid_page")
        return min(size, self.max_page_size)

    def list_budgets(self, filters: BudgetFilters) -> BudgetListing:
        """Budgets with computed status and spending, newest first.

        Non-admins only ever see their own budgets. Aggregates cover every
        budget matching the filters, not just the requested page.
        """
        if filters.page < 1:
            raise ValidationError("Page must be at least 1", reason="invalid_page")
        size = self._page_size(filters.size)
        if filters.status and filters.status not in STATUS_FILTERS:
            raise ValidationError(
                f"Unknown status filter: {filters.status}", reason="invalid_status"
            )

        user_id = filters.user_id
        if not self.actor.is_admin:
            if user_id is not None and user_id != self.actor.user_id:
                raise AuthorizationError("Only admins can list other users' budgets")
            user_id = self.actor.user_id

        stmt = (
            select(Budget)
            .join(User, Budget.user_id == User.id)
            .options(joinedload(Budget.user))
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        if user_id is not None:
            stmt = stmt.where(Budget.user_id == user_id)
        if filters.period:
            stmt = stmt.where(Budget.period == filters.period)
        if filters.category_id is not None:
            stmt = stmt.where(
                Budget.allocations.any(
                    BudgetAllocation.category_id == filters.category_id
                )
            )
        if filters.search and filters.search.strip():
            needle = filters.search.strip().lower()
            stmt = stmt.where(
                or_(
                    func.lower(Budget.name).contains(needle, autoescape=True),
                    func.lower(User.name).contains(needle, autoescape=True),
                    func.lower(User.email).contains(needle, autoescape=True),
                )
            )
        budgets = self.session.scalars(stmt).unique().all()

        reports = self._reports_for(list(budgets))
        summaries: list[BudgetSummary] = []
        for budget in budgets:
            report = reports[budget.id]
            status = self.status_for(budget, report)
            if filters.status == "active" and not status.is_active:
                continue
            if filters.status and filters.status != "active" and status.value != filters.status:
                continue
            summaries.append(BudgetSummary(budget=budget, performance=report, status=status))

        total_amount = sum(s.budget.amount_cents for s in summaries)
        total_count = len(summaries)
        offset = (filters.page - 1) * size
        return BudgetListing(
            budgets=summaries[offset : offset + size],
            total_count=total_count,
            total_amount_cents=total_amount,
            avg_amount_cents=round(total_amount / total_count) if total_count else 0,
            active_count=sum(1 for s in summaries if s.status.is_active),
            page=filters.page,
            size=size,
        )

    # -- writes ------------------------------------------------------------

    def create_budget(self, data: BudgetIn) -> Budget:
        amount = _check_amount(data.amount_cents, "Budget")
        owner_id = self.actor.user_id
        if data.user_id is not None and data.user_id != self.actor.user_id:
            if not self.actor.is_admin:
                raise AuthorizationError("Only admins can create budgets for other users")
            owner_id = data.user_id
        if not self.session.get(User, owner_id):
            raise ValidationError("Invalid user ID", reason="user_not_found")
        start, end = resolve_range(data.period, data.start_date, data.end_date)

        categories = CategoryService(self.session, self.actor)
        seeded = [
            categories.get_visible(category_id, owner_id).id
            for category_id in dict.fromkeys(data.category_ids)
        ]

        budget = Budget(
            user_id=owner_id,
            name=data.name.strip(),
            amount_cents=amount,
            period=data.period,
            start_date=start,
            end_date=end,
            notes=data.notes,
        )
        budget.allocations = [
            BudgetAllocation(category_id=category_id, amount_cents=0)
            for category_id in seeded
        ]
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(
            f"budget_create: budget_id={budget.id} user_id={owner_id} "
            f"amount_cents={amount} seeded_allocations={len(seeded)}"
        )
        return budget

    def update_budget(self, budget_id: int, data: BudgetPatch) -> Budget:
        budget = load_budget(self.session, self.actor, budget_id)
        amount = budget.amount_cents
        if data.amount_cents is not None:
            amount = _check_amount(data.amount_cents, "Budget")
        start = data.start_date or budget.start_date
        end = data.end_date or budget.end_date
        _check_range(start, end)

        budget.amount_cents = amount
        if data.name is not None:
            budget.name = data.name.strip()
        if data.period is not None:
            budget.period = data.period
        if "notes" in data.model_fields_set:
            budget.notes = data.notes
        budget.start_date = start
        budget.end_date = end
        self.session.commit()
        self.session.refresh(budget)
        logger.info(f"budget_update: budget_id={budget.id}")
        return budget

    def delete_budget(self, budget_id: int) -> None:
        """Delete a budget and its allocations; its expenses stay, unlinked."""
        budget = load_budget(self.session, self.actor, budget_id)
        # Allocations are written by id, so the loaded collection may be stale.
        self.session.refresh(budget, attribute_names=["allocations"])
        allocation_count = len(budget.allocations)
        unlinked = self.session.execute(
            update(Expense)
            .where(Expense.budget_id == budget.id)
            .values(budget_id=None)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        self.session.delete(budget)
        self.session.commit()
        logger.info(
            f"budget_delete: budget_id={budget_id} "
            f"allocations_removed={allocation_count} expenses_unlinked={unlinked}"
        )
