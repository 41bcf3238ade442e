from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from models import CategoryType, PropertyStatus
from periods import compare_months, normalize_month


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    parent_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value


class PropertyIn(BaseModel):
    nickname: Optional[str] = Field(default=None, max_length=120)
    street: str = Field(default="", max_length=200)
    city: str = Field(default="", max_length=120)
    state: str = Field(default="", max_length=40)
    zip: str = Field(default="", max_length=20)
    status: PropertyStatus = PropertyStatus.active
    zillow_estimated_value_cents: Optional[int] = Field(default=None, ge=0)
    redfin_estimated_value_cents: Optional[int] = Field(default=None, ge=0)


class TransactionIn(BaseModel):
    date: date
    category_id: int
    amount_cents: int
    payee: Optional[str] = Field(default=None, max_length=200)
    memo: Optional[str] = None
    statement_month: Optional[str] = None

    @field_validator("amount_cents")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("Amount must not be zero")
        return value

    @field_validator("statement_month")
    @classmethod
    def _month(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return normalize_month(value)


class RecurringTransactionIn(BaseModel):
    category_id: int
    amount_cents: int = Field(..., gt=0)
    memo: Optional[str] = None
    day_of_month: int = Field(default=1, ge=1, le=31)
    start_month: str
    end_month: Optional[str] = None
    is_active: bool = True

    @field_validator("day_of_month")
    @classmethod
    def _clamp_day(cls, value: int) -> int:
        return min(max(value, 1), 28)

    @field_validator("start_month")
    @classmethod
    def _start(cls, value: str) -> str:
        return normalize_month(value)

    @field_validator("end_month")
    @classmethod
    def _end(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return normalize_month(value)

    @model_validator(mode="after")
    def _range(self) -> "RecurringTransactionIn":
        if self.end_month and compare_months(self.end_month, self.start_month) < 0:
            raise ValueError("End month must not be before start month")
        return self


class AnnualAmountIn(BaseModel):
    category_id: int
    year: int = Field(..., ge=1900, le=2200)
    amount_cents: int
    note: Optional[str] = Field(default=None, max_length=200)


class LoanSnapshotIn(BaseModel):
    loan_label: str = Field(default="Mortgage", min_length=1, max_length=120)
    as_of_date: date
    balance_cents: int = Field(..., ge=0)


class ProfitLossFilter(BaseModel):
    start: date
    end: date
    property_id: Optional[int] = None
    category_id: Optional[int] = None
    include_transfers: bool = False
    include_annual_totals: bool = True
