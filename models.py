from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class PropertyStatus(str, Enum):
    active = "active"
    inactive = "inactive"


class TransactionSource(str, Enum):
    manual = "manual"
    recurring = "recurring"


class ValuationSource(str, Enum):
    zillow = "zillow"
    redfin = "redfin"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


def signed_amount_cents(amount_cents: int, category_type: CategoryType) -> int:
    """Apply the ledger sign convention: income positive, expense negative.

    Transfers keep whatever sign the caller supplied.
    """
    if category_type == CategoryType.income:
        return abs(amount_cents)
    if category_type == CategoryType.expense:
        return -abs(amount_cents)
    return amount_cents


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id", back_populates="children"
    )
    children: Mapped[list["Category"]] = relationship(
        "Category", back_populates="parent"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("type", "name", name="uq_category_type_name"),
        Index("ix_categories_parent", "parent_id"),
    )


class Property(Base, TimestampMixin):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    nickname: Mapped[Optional[str]] = mapped_column(String(120))
    street: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    city: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    state: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    zip: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    status: Mapped[PropertyStatus] = mapped_column(
        SAEnum(PropertyStatus), default=PropertyStatus.active, nullable=False
    )
    zillow_estimated_value_cents: Mapped[Optional[int]] = mapped_column(Integer)
    redfin_estimated_value_cents: Mapped[Optional[int]] = mapped_column(Integer)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="property", cascade="all, delete-orphan"
    )
    recurring_transactions: Mapped[list["RecurringTransaction"]] = relationship(
        "RecurringTransaction",
        back_populates="property",
        cascade="all, delete-orphan",
    )
    annual_amounts: Mapped[list["AnnualCategoryAmount"]] = relationship(
        "AnnualCategoryAmount", cascade="all, delete-orphan"
    )
    loan_snapshots: Mapped[list["LoanSnapshot"]] = relationship(
        "LoanSnapshot", cascade="all, delete-orphan"
    )

    @property
    def label(self) -> str:
        if self.nickname and self.nickname.strip():
            return self.nickname.strip()
        tail = " ".join(part for part in (self.state, self.zip) if part)
        address = ", ".join(part for part in (self.street, self.city, tail) if part)
        return address or f"Property #{self.id}"

    def estimated_value_cents(self, source: ValuationSource) -> Optional[int]:
        if source == ValuationSource.redfin:
            return self.redfin_estimated_value_cents
        return self.zillow_estimated_value_cents


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payee: Mapped[Optional[str]] = mapped_column(String(200))
    memo: Mapped[Optional[str]] = mapped_column(Text)
    statement_month: Mapped[Optional[str]] = mapped_column(String(7))
    source: Mapped[TransactionSource] = mapped_column(
        SAEnum(TransactionSource), default=TransactionSource.manual, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    property: Mapped["Property"] = relationship(
        "Property", back_populates="transactions"
    )
    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_property_date", "property_id", "date"),
        Index("ix_transactions_category_date", "category_id", "date"),
    )


class RecurringTransaction(Base, TimestampMixin):
    __tablename__ = "recurring_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    memo: Mapped[Optional[str]] = mapped_column(Text)
    day_of_month: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_month: Mapped[str] = mapped_column(String(7), nullable=False)
    end_month: Mapped[Optional[str]] = mapped_column(String(7))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    property: Mapped["Property"] = relationship(
        "Property", back_populates="recurring_transactions"
    )
    category: Mapped["Category"] = relationship("Category")
    postings: Mapped[list["RecurringPosting"]] = relationship(
        "RecurringPosting",
        back_populates="recurring_transaction",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_recurring_property_active", "property_id", "is_active"),
    )


class RecurringPosting(Base):
    __tablename__ = "recurring_postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recurring_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("recurring_transactions.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    recurring_transaction: Mapped["RecurringTransaction"] = relationship(
        "RecurringTransaction", back_populates="postings"
    )
    transaction: Mapped[Optional["Transaction"]] = relationship("Transaction")

    __table_args__ = (
        UniqueConstraint(
            "recurring_transaction_id", "month", name="uq_recurring_posting_month"
        ),
    )


class AnnualCategoryAmount(Base, TimestampMixin):
    __tablename__ = "annual_category_amounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "property_id", "category_id", "year", name="uq_annual_property_category_year"
        ),
    )


class LoanSnapshot(Base, TimestampMixin):
    __tablename__ = "loan_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id"), nullable=False
    )
    loan_label: Mapped[str] = mapped_column(
        String(120), nullable=False, default="Mortgage"
    )
    as_of_date: Mapped[date] = mapped_column(Date, nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_loan_balance_positive"),
        Index("ix_loan_snapshot_property_date", "property_id", "as_of_date"),
    )
