from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from conftest import add_budget, add_category, add_expense, make_engine
from config import get_settings
from database import get_db
from main import app
from models import User, UserRole
from periods import today_local
from sessions import issue_session_token


@pytest.fixture
def api():
    engine = make_engine()
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    db = SessionLocal()
    alice = User(name="Alice Moreau", email="alice@example.com")
    bob = User(name="Bob Nguyen", email="bob@example.com")
    admin = User(name="Ada Admin", email="admin@example.com", role=UserRole.admin)
    db.add_all([alice, bob, admin])
    db.commit()

    def client_for(user=None) -> TestClient:
        cookies = {}
        if user is not None:
            cookies[get_settings().session_cookie] = issue_session_token(user.id)
        return TestClient(app, cookies=cookies)

    try:
        yield db, client_for, (alice, bob, admin)
    finally:
        app.dependency_overrides.clear()
        db.close()


def _current_budget(db, owner, **kwargs):
    today = today_local()
    return add_budget(
        db,
        owner,
        start=today - timedelta(days=5),
        end=today + timedelta(days=20),
        **kwargs,
    )


def test_requests_without_session_are_rejected(api) -> None:
    _, client_for, _ = api
    response = client_for().get("/api/budgets")
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "unauthenticated"

    tampered = TestClient(app, cookies={get_settings().session_cookie: "nope"})
    assert tampered.get("/api/budgets").status_code == 401


def test_admin_routes_require_admin(api) -> None:
    _, client_for, (alice, _, admin) = api
    assert client_for(alice).get("/api/admin/budgets").status_code == 403
    assert client_for(admin).get("/api/admin/budgets").status_code == 200


def test_budget_detail_reports_performance(api) -> None:
    db, client_for, (alice, _, _) = api
    food = add_category(db, alice, "Food")
    fun = add_category(db, alice, "Fun")
    budget = _current_budget(db, alice, amount_cents=10_000)
    add_expense(db, alice, fun, 8_500, today_local())
    client = client_for(alice)

    created = client.post(
        f"/api/budgets/{budget.id}/allocations",
        json={"categoryId": food.id, "amount": "40.00"},
    )
    assert created.status_code == 201
    assert created.json()["amountCents"] == 4_000

    body = client.get(f"/api/budgets/{budget.id}").json()
    assert body["status"] == "warning"
    assert [a["categoryName"] for a in body["allocations"]] == ["Food"]
    performance = body["performance"]
    assert performance["allocatedCents"] == 4_000
    assert performance["spentCents"] == 8_500
    assert performance["remainingCents"] == 1_500
    assert performance["unallocatedSpentCents"] == 8_500
    rows = {row["categoryId"]: row for row in performance["categories"]}
    assert rows[fun.id]["isAllocated"] is False
    assert rows[fun.id]["progressPct"] == 100.0
    assert rows[food.id]["spentCents"] == 0

    assert client.get(f"/api/budgets/{budget.id}/performance").json() == performance


def test_foreign_budget_reads_as_missing_and_writes_as_forbidden(api) -> None:
    db, client_for, (alice, bob, _) = api
    budget = _current_budget(db, alice)
    food = add_category(db, alice, "Food", is_system=True)
    client = client_for(bob)

    response = client.get(f"/api/budgets/{budget.id}")
    assert response.status_code == 404
    assert response.json()["detail"]["reason"] == "budget_not_found"
    assert client.get("/api/budgets/9999").status_code == 404

    assert client.patch(f"/api/budgets/{budget.id}", json={"name": "x"}).status_code == 403
    assert client.delete(f"/api/budgets/{budget.id}").status_code == 403
    response = client.post(
        f"/api/budgets/{budget.id}/allocations",
        json={"categoryId": food.id, "amountCents": 100},
    )
    assert response.status_code == 403


def test_negative_allocation_is_a_validation_error(api) -> None:
    db, client_for, (alice, _, _) = api
    food = add_category(db, alice, "Food")
    budget = _current_budget(db, alice)

    response = client_for(alice).post(
        f"/api/budgets/{budget.id}/allocations",
        json={"categoryId": food.id, "amountCents": -100},
    )
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "negative_amount"


def test_oversized_amount_is_a_validation_error(api) -> None:
    db, client_for, (alice, _, _) = api
    client = client_for(alice)

    response = client.post("/api/budgets", json={"name": "Huge", "amountCents": 10**20})
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "amount_too_large"

    response = client.post(
        "/api/budgets", json={"name": "Huge", "amount": "1" + "0" * 40}
    )
    assert response.status_code in (400, 422)


def test_conflicting_amount_fields_are_rejected(api) -> None:
    db, client_for, (alice, _, _) = api
    food = add_category(db, alice, "Food")
    budget = _current_budget(db, alice)
    client = client_for(alice)

    response = client.post(
        f"/api/budgets/{budget.id}/allocations",
        json={"categoryId": food.id, "amount": "12.34", "amountCents": 999},
    )
    assert response.status_code == 422

    response = client.post(
        f"/api/budgets/{budget.id}/allocations",
        json={"categoryId": food.id, "amount": "12.34", "amountCents": 1_234},
    )
    assert response.status_code == 201
    assert response.json()["amountCents"] == 1_234


def test_allocation_patch_and_delete(api) -> None:
    db, client_for, (alice, _, _) = api
    food = add_category(db, alice, "Food")
    rent = add_category(db, alice, "Rent")
    budget = _current_budget(db, alice)
    client = client_for(alice)
    first = client.post(
        f"/api/budgets/{budget.id}/allocations",
        json={"categoryId": food.id, "amountCents": 100},
    ).json()
    client.post(
        f"/api/budgets/{budget.id}/allocations",
        json={"categoryId": rent.id, "amountCents": 200},
    )

    response = client.patch(
        f"/api/budget-allocations/{first['id']}", json={"categoryId": rent.id}
    )
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "category_already_allocated"

    response = client.patch(
        f"/api/budget-allocations/{first['id']}", json={"amountCents": 250}
    )
    assert response.json()["amountCents"] == 250

    assert client.delete(f"/api/budget-allocations/{first['id']}").status_code == 204
    remaining = client.get(f"/api/budgets/{budget.id}/allocations").json()
    assert [a["categoryId"] for a in remaining] == [rent.id]
    assert client.delete(f"/api/budget-allocations/{first['id']}").status_code == 404


def test_create_and_delete_budget(api) -> None:
    db, client_for, (alice, _, _) = api
    food = add_category(db, alice, "Food")
    client = client_for(alice)

    response = client.post(
        "/api/budgets",
        json={
            "name": "Week",
            "amountCents": 5_000,
            "period": "weekly",
            "startDate": "2025-01-06",
            "categoryIds": [food.id],
        },
    )
    assert response.status_code == 201
    budget = response.json()
    assert budget["endDate"] == "2025-01-12"

    expense = client.post(
        "/api/expenses",
        json={
            "categoryId": food.id,
            "budgetId": budget["id"],
            "amount": "12.50",
            "date": "2025-01-07",
            "description": "Market",
        },
    )
    assert expense.status_code == 201

    assert client.delete(f"/api/budgets/{budget['id']}").status_code == 204
    assert client.get(f"/api/budgets/{budget['id']}").status_code == 404

    response = client.post(
        "/api/budgets",
        json={
            "name": "Backwards",
            "amountCents": 1,
            "startDate": "2025-02-01",
            "endDate": "2025-01-01",
        },
    )
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "invalid_date_range"


def test_user_listing_only_shows_own_budgets(api) -> None:
    db, client_for, (alice, bob, _) = api
    mine = _current_budget(db, alice, name="Mine")
    _current_budget(db, bob, name="Bob's")

    body = client_for(alice).get("/api/budgets").json()
    assert [b["id"] for b in body["budgets"]] == [mine.id]
    assert "userName" not in body["budgets"][0]
    assert body["totalCount"] == 1


def test_admin_listing_shape_and_filters(api) -> None:
    db, client_for, (alice, bob, admin) = api
    food = add_category(db, alice, "Food", is_system=True)
    groceries = _current_budget(db, alice, name="Groceries", amount_cents=10_000)
    _current_budget(db, bob, name="Travel", amount_cents=30_000)
    add_expense(db, alice, food, 9_000, today_local())
    client = client_for(admin)

    body = client.get("/api/admin/budgets").json()
    assert body["totalCount"] == 2
    assert body["totalAmountCents"] == 40_000
    assert body["avgAmountCents"] == 20_000
    assert body["activeCount"] == 2
    assert body["page"] == 1
    first = body["budgets"][-1]
    assert first["id"] == groceries.id
    assert first["userName"] == "Alice Moreau"
    assert first["userEmail"] == "alice@example.com"
    assert first["spentCents"] == 9_000
    assert first["status"] == "warning"
    assert first["categories"] == [
        {
            "categoryId": food.id,
            "categoryName": "Food",
            "allocatedCents": 0,
            "spentCents": 9_000,
            "remainingCents": -9_000,
            "isAllocated": False,
            "progressPct": 100.0,
        }
    ]
    assert body["budgets"][0]["categories"] == []

    filtered = client.get(
        "/api/admin/budgets", params={"userId": bob.id, "status": "on-track"}
    ).json()
    assert [b["name"] for b in filtered["budgets"]] == ["Travel"]
    assert client.get("/api/admin/budgets", params={"search": "GROC"}).json()[
        "totalCount"
    ] == 1
    assert client.get("/api/admin/budgets", params={"status": "bogus"}).status_code == 400
    assert client.get("/api/admin/budgets", params={"page": "x"}).status_code == 400
    for page in ("0", "-1"):
        response = client.get("/api/admin/budgets", params={"page": page})
        assert response.status_code == 400
        assert response.json()["detail"]["reason"] == "invalid_page"

    detail = client.get(f"/api/admin/budgets/{groceries.id}").json()
    assert detail["budget"]["userEmail"] == "alice@example.com"


def test_admin_creates_budget_for_user(api) -> None:
    db, client_for, (alice, _, admin) = api
    client = client_for(admin)

    missing_owner = client.post("/api/admin/budgets", json={"name": "x", "amountCents": 1})
    assert missing_owner.status_code == 400

    response = client.post(
        "/api/admin/budgets",
        json={"name": "Assigned", "amountCents": 7_500, "userId": alice.id},
    )
    assert response.status_code == 201
    created = response.json()
    assert created["userId"] == alice.id

    patched = client.patch(
        f"/api/admin/budgets/{created['id']}", json={"amount": "80.00"}
    ).json()
    assert patched["amountCents"] == 8_000
    assert client.delete(f"/api/admin/budgets/{created['id']}").status_code == 204


def test_category_endpoints(api) -> None:
    db, client_for, (alice, _, _) = api
    client = client_for(alice)

    created = client.post("/api/categories", json={"name": "Books"})
    assert created.status_code == 201
    category_id = created.json()["id"]
    sub = client.post(
        "/api/subcategories", json={"categoryId": category_id, "name": "Comics"}
    )
    assert sub.status_code == 201

    duplicate = client.post("/api/categories", json={"name": "books"})
    assert duplicate.json()["detail"]["reason"] == "duplicate_category"

    listed = client.get("/api/categories").json()
    assert listed[0]["subcategories"] == [{"id": sub.json()["id"], "name": "Comics"}]
    assert client.delete(f"/api/categories/{category_id}").status_code == 204
