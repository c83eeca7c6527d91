import datetime as dt
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from models import BudgetPeriod


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AmountMixin(ApiModel):
    """Accepts either integer ``amountCents`` or a decimal ``amount``.

    Sign checks are left to the services so negative amounts surface as a
    ``negative_amount`` validation error rather than a schema error.
    """

    amount_cents: Optional[int] = None
    amount: Optional[Decimal] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def normalize_amount(self):
        if self.amount is None:
            return self
        try:
            cents = to_cents(self.amount)
        except InvalidOperation as exc:
            raise ValueError("amount is out of range") from exc
        if self.amount_cents is None:
            self.amount_cents = cents
        elif self.amount_cents != cents:
            raise ValueError("amount and amountCents disagree")
        return self


class BudgetIn(AmountMixin):
    name: str = Field(..., min_length=1, max_length=120)
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    category_ids: list[int] = Field(default_factory=list)
    user_id: Optional[int] = None

    @model_validator(mode="after")
    def require_amount(self):
        if self.amount_cents is None and self.amount is None:
            raise ValueError("Budget amount is required")
        return self


class BudgetPatch(AmountMixin):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class AllocationIn(AmountMixin):
    category_id: int
    subcategory_id: Optional[int] = None

    @model_validator(mode="after")
    def require_amount(self):
        if self.amount_cents is None and self.amount is None:
            raise ValueError("Allocation amount is required")
        return self


class AllocationPatch(AmountMixin):
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None


class CategoryIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class SubcategoryIn(ApiModel):
    category_id: int
    name: str = Field(..., min_length=1, max_length=100)


class ExpenseIn(AmountMixin):
    category_id: int
    subcategory_id: Optional[int] = None
    budget_id: Optional[int] = None
    date: dt.date
    description: str = Field(..., min_length=1, max_length=200)
    merchant: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def require_amount(self):
        if self.amount_cents is None and self.amount is None:
            raise ValueError("Expense amount is required")
        return self
