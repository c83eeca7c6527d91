import os
import tempfile

# database.py builds its engine at import time; keep it out of the repo.
os.environ.setdefault("BUDGETS_DATA_DIR", tempfile.mkdtemp(prefix="budgets-test-"))

from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import Budget, BudgetPeriod, Category, Expense, User, UserRole


def make_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


def make_session(engine=None):
    SessionLocal = sessionmaker(
        bind=engine or make_engine(), autoflush=False, expire_on_commit=False
    )
    return SessionLocal()


@pytest.fixture
def session():
    db = make_session()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def people(session):
    alice = User(name="Alice Moreau", email="alice@example.com")
    bob = User(name="Bob Nguyen", email="bob@example.com")
    admin = User(name="Ada Admin", email="admin@example.com", role=UserRole.admin)
    session.add_all([alice, bob, admin])
    session.commit()
    return alice, bob, admin


def add_category(session, owner: User, name: str, *, is_system: bool = False) -> Category:
    category = Category(user_id=owner.id, name=name, is_system=is_system)
    session.add(category)
    session.commit()
    return category


def add_budget(
    session,
    owner: User,
    *,
    name: str = "January",
    amount_cents: int = 10_000,
    start: date = date(2025, 1, 1),
    end: date = date(2025, 1, 31),
    period: BudgetPeriod = BudgetPeriod.monthly,
) -> Budget:
    budget = Budget(
        user_id=owner.id,
        name=name,
        amount_cents=amount_cents,
        period=period,
        start_date=start,
        end_date=end,
    )
    session.add(budget)
    session.commit()
    return budget


def add_expense(
    session,
    owner: User,
    category: Category,
    amount_cents: int,
    on: date,
    *,
    budget: Budget = None,
) -> Expense:
    expense = Expense(
        user_id=owner.id,
        category_id=category.id,
        budget_id=budget.id if budget else None,
        amount_cents=amount_cents,
        date=on,
        description=f"{category.name} purchase",
    )
    session.add(expense)
    session.commit()
    return expense
