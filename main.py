import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from errors import AuthorizationError, BudgetEngineError, NotFoundError
from models import Budget, BudgetAllocation, BudgetPeriod, Category, Expense, User
from performance import PerformanceReport
from schemas import (
    AllocationIn,
    AllocationPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    ExpenseIn,
    SubcategoryIn,
)
from services import (
    Actor,
    AllocationManager,
    BudgetFilters,
    BudgetService,
    BudgetSummary,
    CategoryService,
    ExpenseService,
    UserService,
)
from sessions import read_session_token

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Tracker")


def _http_error(exc: BudgetEngineError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"storage_error: path={request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"detail": {"message": "Storage failure", "reason": "storage_error"}},
    )


def current_user(request: Request, db: Session = Depends(get_db)) -> User:
    token = request.cookies.get(get_settings().session_cookie, "")
    user_id = read_session_token(token)
    user = db.get(User, user_id) if user_id is not None else None
    if not user:
        raise HTTPException(
            status_code=401,
            detail={"message": "Not authenticated", "reason": "unauthenticated"},
        )
    return user


def current_actor(user: User = Depends(current_user)) -> Actor:
    return Actor.from_user(user)


def admin_actor(actor: Actor = Depends(current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(
            status_code=403, detail={"message": "Admin only", "reason": "forbidden"}
        )
    return actor


def budget_to_dict(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "userId": budget.user_id,
        "name": budget.name,
        "amountCents": budget.amount_cents,
        "period": budget.period.value,
        "startDate": budget.start_date.isoformat(),
        "endDate": budget.end_date.isoformat(),
        "notes": budget.notes,
        "createdAt": budget.created_at.isoformat(),
    }


def allocation_to_dict(allocation: BudgetAllocation) -> dict[str, object]:
    return {
        "id": allocation.id,
        "budgetId": allocation.budget_id,
        "categoryId": allocation.category_id,
        "categoryName": allocation.category.name if allocation.category else None,
        "subcategoryId": allocation.subcategory_id,
        "amountCents": allocation.amount_cents,
    }


def category_rows(report: PerformanceReport) -> list[dict[str, object]]:
    return [
        {
            "categoryId": row.category_id,
            "categoryName": row.category_name,
            "allocatedCents": row.allocated_cents,
            "spentCents": row.spent_cents,
            "remainingCents": row.remaining_cents,
            "isAllocated": row.is_allocated,
            "progressPct": row.progress_pct,
        }
        for row in report.categories
    ]


def performance_to_dict(report: PerformanceReport) -> dict[str, object]:
    return {
        "budgetId": report.budget_id,
        "allocatedCents": report.allocated_cents,
        "spentCents": report.spent_cents,
        "remainingCents": report.remaining_cents,
        "unallocatedSpentCents": report.unallocated_spent_cents,
        "categories": category_rows(report),
    }


def summary_to_dict(summary: BudgetSummary, *, with_owner: bool) -> dict[str, object]:
    data = budget_to_dict(summary.budget)
    data.update(
        {
            "status": summary.status.value,
            "allocatedCents": summary.performance.allocated_cents,
            "spentCents": summary.performance.spent_cents,
            "remainingCents": summary.performance.remaining_cents,
        }
    )
    if with_owner:
        data["userName"] = summary.budget.user.name
        data["userEmail"] = summary.budget.user.email
        data["categories"] = category_rows(summary.performance)
    return data


def category_to_dict(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "isSystem": category.is_system,
        "subcategories": [
            {"id": sub.id, "name": sub.name} for sub in category.subcategories
        ],
    }


def expense_to_dict(expense: Expense) -> dict[str, object]:
    return {
        "id": expense.id,
        "categoryId": expense.category_id,
        "subcategoryId": expense.subcategory_id,
        "budgetId": expense.budget_id,
        "amountCents": expense.amount_cents,
        "date": expense.date.isoformat(),
        "description": expense.description,
        "merchant": expense.merchant,
    }


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": f"{name} must be an integer", "reason": "invalid_query"},
        ) from exc


def filters_from_request(request: Request) -> BudgetFilters:
    period_param = request.query_params.get("period")
    period = None
    if period_param:
        try:
            period = BudgetPeriod(period_param)
        except ValueError as exc:
            raise HTTPException(
                status_code=400,
                detail={"message": "Unknown period", "reason": "invalid_query"},
            ) from exc
    page = _int_param(request, "page")
    return BudgetFilters(
        user_id=_int_param(request, "userId"),
        search=request.query_params.get("search"),
        status=request.query_params.get("status") or None,
        period=period,
        category_id=_int_param(request, "category"),
        page=1 if page is None else page,
        size=_int_param(request, "size"),
    )


def listing_response(service: BudgetService, request: Request, *, with_owner: bool):
    try:
        listing = service.list_budgets(filters_from_request(request))
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return {
        "budgets": [summary_to_dict(s, with_owner=with_owner) for s in listing.budgets],
        "totalCount": listing.total_count,
        "totalAmountCents": listing.total_amount_cents,
        "avgAmountCents": listing.avg_amount_cents,
        "activeCount": listing.active_count,
        "page": listing.page,
        "size": listing.size,
    }


def detail_response(service: BudgetService, budget_id: int) -> dict[str, object]:
    detail = service.get_budget_detail(budget_id)
    return {
        "budget": budget_to_dict(detail.budget),
        "allocations": [allocation_to_dict(a) for a in detail.allocations],
        "performance": performance_to_dict(detail.performance),
        "status": detail.status.value,
    }


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# -- user budgets ------------------------------------------------------------


@app.get("/api/budgets")
def list_my_budgets(
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    own = Actor(user_id=actor.user_id, is_admin=False)
    return listing_response(BudgetService(db, own), request, with_owner=False)


@app.post("/api/budgets", status_code=201)
def create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    own = Actor(user_id=actor.user_id, is_admin=False)
    try:
        budget = BudgetService(db, own).create_budget(data)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return budget_to_dict(budget)


@app.get("/api/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    own = Actor(user_id=actor.user_id, is_admin=False)
    try:
        return detail_response(BudgetService(db, own), budget_id)
    except AuthorizationError as exc:
        # Someone else's budget is indistinguishable from a missing one here.
        raise _http_error(
            NotFoundError("Budget not found", reason="budget_not_found")
        ) from exc
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    data: BudgetPatch,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        budget = BudgetService(db, actor).update_budget(budget_id, data)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return budget_to_dict(budget)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        BudgetService(db, actor).delete_budget(budget_id)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/budgets/{budget_id}/performance")
def get_budget_performance(
    budget_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        report = BudgetService(db, actor).performance(budget_id)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return performance_to_dict(report)


# -- allocations -------------------------------------------------------------


@app.get("/api/budgets/{budget_id}/allocations")
def list_allocations(
    budget_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        allocations = AllocationManager(db, actor).list_allocations(budget_id)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return [allocation_to_dict(a) for a in allocations]


@app.post("/api/budgets/{budget_id}/allocations", status_code=201)
def upsert_allocation(
    budget_id: int,
    data: AllocationIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        allocation = AllocationManager(db, actor).create_from(budget_id, data)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return allocation_to_dict(allocation)


@app.patch("/api/budget-allocations/{allocation_id}")
def update_allocation(
    allocation_id: int,
    data: AllocationPatch,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        allocation = AllocationManager(db, actor).update_allocation(allocation_id, data)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return allocation_to_dict(allocation)


@app.delete("/api/budget-allocations/{allocation_id}", status_code=204)
def delete_allocation(
    allocation_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        AllocationManager(db, actor).delete_allocation(allocation_id)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# -- categories & expenses ---------------------------------------------------


@app.get("/api/categories")
def list_categories(
    db: Session = Depends(get_db), actor: Actor = Depends(current_actor)
):
    return [category_to_dict(c) for c in CategoryService(db, actor).list_visible()]


@app.post("/api/categories", status_code=201)
def create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        category = CategoryService(db, actor).create(data)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return category_to_dict(category)


@app.post("/api/subcategories", status_code=201)
def create_subcategory(
    data: SubcategoryIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        sub = CategoryService(db, actor).add_subcategory(data)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return {"id": sub.id, "categoryId": sub.category_id, "name": sub.name}


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        CategoryService(db, actor).delete(category_id)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/expenses", status_code=201)
def create_expense(
    data: ExpenseIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        expense = ExpenseService(db, actor).create(data)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return expense_to_dict(expense)


@app.delete("/api/expenses/{expense_id}", status_code=204)
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    try:
        ExpenseService(db, actor).soft_delete(expense_id)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# -- admin -------------------------------------------------------------------


@app.get("/api/admin/budgets")
def admin_list_budgets(
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_actor),
):
    return listing_response(BudgetService(db, actor), request, with_owner=True)


@app.get("/api/admin/budgets/{budget_id}")
def admin_get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_actor),
):
    try:
        data = detail_response(BudgetService(db, actor), budget_id)
        owner = UserService(db).get(data["budget"]["userId"])
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    data["budget"].update({"userName": owner.name, "userEmail": owner.email})
    return data


@app.post("/api/admin/budgets", status_code=201)
def admin_create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_actor),
):
    if data.user_id is None:
        raise HTTPException(
            status_code=400,
            detail={"message": "userId is required", "reason": "validation_error"},
        )
    try:
        budget = BudgetService(db, actor).create_budget(data)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return budget_to_dict(budget)


@app.patch("/api/admin/budgets/{budget_id}")
def admin_update_budget(
    budget_id: int,
    data: BudgetPatch,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_actor),
):
    try:
        budget = BudgetService(db, actor).update_budget(budget_id, data)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return budget_to_dict(budget)


@app.delete("/api/admin/budgets/{budget_id}", status_code=204)
def admin_delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(admin_actor),
):
    try:
        BudgetService(db, actor).delete_budget(budget_id)
    except BudgetEngineError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
