from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from category_tree import (
    CategoryDeleteAction,
    TreeEntry,
    ensure_parent_type,
    ensure_type_change_allowed,
    ensure_valid_parent,
    normalize_name,
    resolve_delete,
    walk_tree,
)
from errors import DuplicateNameError, InvalidArgumentError, NotFoundError
from models import (
    AnnualCategoryAmount,
    Category,
    LoanSnapshot,
    Property,
    PropertyStatus,
    RecurringTransaction,
    Transaction,
    TransactionSource,
    signed_amount_cents,
)
from periods import Period
from recurrence import PostingSummary, RecurringEngine, ScheduledRule
from schemas import (
    AnnualAmountIn,
    CategoryIn,
    LoanSnapshotIn,
    PropertyIn,
    RecurringTransactionIn,
    TransactionIn,
)


logger = logging.getLogger(__name__)


@dataclass
class TransactionFilters:
    category_id: Optional[int] = None
    query: Optional[str] = None
    include_deleted: bool = False


class PropertyService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, property_id: int) -> Property:
        prop = self.session.get(Property, property_id)
        if not prop:
            raise NotFoundError("Property not found")
        return prop

    def list_all(self, include_inactive: bool = True) -> list[Property]:
        stmt = select(Property).order_by(Property.status, Property.id)
        if not include_inactive:
            stmt = stmt.where(Property.status == PropertyStatus.active)
        return self.session.scalars(stmt).all()

    def create(self, data: PropertyIn) -> Property:
        prop = Property(**data.model_dump())
        self.session.add(prop)
        self.session.commit()
        self.session.refresh(prop)
        logger.info(f"property_created: id={prop.id}")
        return prop

    def update(self, property_id: int, data: PropertyIn) -> Property:
        prop = self.get(property_id)
        for field_name, value in data.model_dump().items():
            setattr(prop, field_name, value)
        self.session.commit()
        self.session.refresh(prop)
        return prop

    def set_estimated_values(
        self,
        property_id: int,
        *,
        zillow_cents: Optional[int] = None,
        redfin_cents: Optional[int] = None,
    ) -> Property:
        prop = self.get(property_id)
        prop.zillow_estimated_value_cents = zillow_cents
        prop.redfin_estimated_value_cents = redfin_cents
        self.session.commit()
        return prop

    def set_status(self, property_id: int, status: PropertyStatus) -> Property:
        prop = self.get(property_id)
        prop.status = status
        self.session.commit()
        return prop


class CategoryService:
    """Category mutations, validated against the whole tree.

    Every check reads the same session transaction the write is applied in, and
    nothing is flushed until all checks pass.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def list_all(self, include_inactive: bool = True) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.name, Category.id)
        if not include_inactive:
            stmt = stmt.where(Category.active.is_(True))
        return self.session.scalars(stmt).all()

    def list_tree(self) -> list[tuple[Category, int]]:
        categories = self.list_all()
        by_id = {category.id: category for category in categories}
        entries: list[TreeEntry] = walk_tree(
            categories,
            sort_key=lambda c: (c.type.value, c.name.casefold(), c.id),
        )
        return [(by_id[entry.id], entry.depth) for entry in entries]

    def create(self, data: CategoryIn) -> Category:
        if data.parent_id is not None:
            parent = self.session.get(Category, data.parent_id)
            if not parent:
                raise NotFoundError("Parent category not found")
            ensure_parent_type(parent.type, data.type)
        self._ensure_unique_name(data)

        category = Category(
            name=data.name.strip(),
            type=data.type,
            parent_id=data.parent_id,
            active=True,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        logger.info(
            f"category_created: id={category.id} type={category.type.value} "
            f"parent_id={category.parent_id}"
        )
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)

        if data.parent_id is not None:
            ensure_valid_parent(self._nodes(), category.id, data.parent_id)
            parent = self.session.get(Category, data.parent_id)
            if not parent:
                raise NotFoundError("Parent category not found")
            ensure_parent_type(parent.type, data.type)

        ensure_type_change_allowed(
            category.type,
            data.type,
            child_count=self._child_count(category.id),
            transaction_count=self._transaction_count(category.id),
        )
        self._ensure_unique_name(data, exclude_id=category.id)

        category.name = data.name.strip()
        category.type = data.type
        category.parent_id = data.parent_id
        self.session.commit()
        self.session.refresh(category)
        logger.info(f"category_updated: id={category.id}")
        return category

    def resolve_delete(self, category_id: int) -> CategoryDeleteAction:
        category = self.get(category_id)
        return resolve_delete(
            child_count=self._child_count(category.id),
            transaction_count=self._transaction_count(category.id),
            other_references=self._rule_and_annual_count(category.id),
        )

    def delete(self, category_id: int) -> CategoryDeleteAction:
        action = self.resolve_delete(category_id)
        category = self.get(category_id)
        if action == CategoryDeleteAction.deactivate:
            category.active = False
        else:
            self.session.delete(category)
        self.session.commit()
        logger.info(f"category_deleted: id={category_id} action={action.value}")
        return action

    def set_active(self, category_id: int, active: bool) -> Category:
        category = self.get(category_id)
        if not active and category.active:
            active_children = self.session.execute(
                select(func.count(Category.id)).where(
                    Category.parent_id == category.id, Category.active.is_(True)
                )
            ).scalar_one()
            if active_children:
                raise InvalidArgumentError("Deactivate child categories first")
        category.active = active
        self.session.commit()
        return category

    def _nodes(self) -> list[Category]:
        return self.session.scalars(select(Category)).all()

    def _child_count(self, category_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Category.id)).where(Category.parent_id == category_id)
            ).scalar_one()
            or 0
        )

    def _transaction_count(self, category_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category_id
                )
            ).scalar_one()
            or 0
        )

    def _rule_and_annual_count(self, category_id: int) -> int:
        rules = self.session.execute(
            select(func.count(RecurringTransaction.id)).where(
                RecurringTransaction.category_id == category_id
            )
        ).scalar_one()
        annual = self.session.execute(
            select(func.count(AnnualCategoryAmount.id)).where(
                AnnualCategoryAmount.category_id == category_id
            )
        ).scalar_one()
        return int(rules or 0) + int(annual or 0)

    def _ensure_unique_name(self, data: CategoryIn, exclude_id: Optional[int] = None) -> None:
        wanted = normalize_name(data.name)
        stmt = select(Category.id, Category.name).where(Category.type == data.type)
        for row in self.session.execute(stmt):
            if row.id != exclude_id and normalize_name(row.name) == wanted:
                raise DuplicateNameError("Category with this name already exists")


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _active_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        if not category.active:
            raise InvalidArgumentError("Category is inactive")
        return category

    def create(
        self,
        property_id: int,
        data: TransactionIn,
        *,
        source: TransactionSource = TransactionSource.manual,
    ) -> Transaction:
        PropertyService(self.session).get(property_id)
        category = self._active_category(data.category_id)
        txn = Transaction(
            property_id=property_id,
            category_id=category.id,
            date=data.date,
            amount_cents=signed_amount_cents(data.amount_cents, category.type),
            payee=(data.payee or "").strip() or None,
            memo=(data.memo or "").strip() or None,
            statement_month=data.statement_month,
            source=source,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(
        self,
        transaction_id: int,
        *,
        property_id: Optional[int] = None,
        include_deleted: bool = False,
    ) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id)
        )
        if property_id is not None:
            stmt = stmt.where(Transaction.property_id == property_id)
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(
        self, property_id: int, transaction_id: int, data: TransactionIn
    ) -> Transaction:
        txn = self.get(transaction_id, property_id=property_id)
        if data.category_id != txn.category_id:
            category = self._active_category(data.category_id)
        else:
            category = txn.category
        txn.category_id = category.id
        txn.date = data.date
        txn.amount_cents = signed_amount_cents(data.amount_cents, category.type)
        txn.payee = (data.payee or "").strip() or None
        txn.memo = (data.memo or "").strip() or None
        txn.statement_month = data.statement_month
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def soft_delete(self, property_id: int, transaction_id: int) -> None:
        txn = self.get(transaction_id, property_id=property_id)
        txn.deleted_at = datetime.utcnow()
        self.session.commit()

    def restore(self, property_id: int, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id, property_id=property_id, include_deleted=True)
        txn.deleted_at = None
        self.session.commit()
        return txn

    def list_for_property(
        self,
        property_id: int,
        period: Optional[Period] = None,
        filters: Optional[TransactionFilters] = None,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.property))
            .where(Transaction.property_id == property_id)
            .order_by(Transaction.date, Transaction.id)
        )
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if not filters.include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        if filters.category_id is not None:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.query:
            pattern = f"%{filters.query.strip()}%"
            stmt = stmt.where(
                Transaction.memo.ilike(pattern) | Transaction.payee.ilike(pattern)
            )
        return self.session.scalars(stmt).all()


class RecurringTransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, rule_id: int) -> RecurringTransaction:
        rule = self.session.get(RecurringTransaction, rule_id)
        if not rule:
            raise NotFoundError("Recurring transaction not found")
        return rule

    def list_for_property(self, property_id: int) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .options(joinedload(RecurringTransaction.category))
            .where(RecurringTransaction.property_id == property_id)
            .order_by(
                RecurringTransaction.day_of_month,
                RecurringTransaction.created_at,
                RecurringTransaction.id,
            )
        )
        return self.session.scalars(stmt).all()

    def create(self, property_id: int, data: RecurringTransactionIn) -> RecurringTransaction:
        PropertyService(self.session).get(property_id)
        category = self.session.get(Category, data.category_id)
        if not category:
            raise NotFoundError("Category not found")
        rule = RecurringTransaction(property_id=property_id, **data.model_dump())
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        logger.info(f"recurring_created: id={rule.id} property_id={property_id}")
        return rule

    def update(self, rule_id: int, data: RecurringTransactionIn) -> RecurringTransaction:
        rule = self.get(rule_id)
        if data.category_id != rule.category_id:
            if not self.session.get(Category, data.category_id):
                raise NotFoundError("Category not found")
        for field_name, value in data.model_dump().items():
            setattr(rule, field_name, value)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def set_active(self, rule_id: int, is_active: bool) -> None:
        rule = self.get(rule_id)
        rule.is_active = is_active
        self.session.commit()

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.delete(rule)
        self.session.commit()

    def post_up_to_month(
        self, property_id: int, target_month: Optional[str] = None
    ) -> PostingSummary:
        """Post due months in a write transaction of its own.

        Any open transaction is committed first so the rules and postings are
        read under the write lock rather than from an older snapshot.
        """
        if self.session.in_transaction():
            self.session.commit()
        self.session.connection(execution_options={"sqlite_begin_immediate": True})
        try:
            summary = RecurringEngine(self.session).post_up_to_month(
                property_id, target_month
            )
        except Exception:
            self.session.rollback()
            raise
        self.session.commit()
        return summary

    def scheduled_for_month(self, property_id: int, month: str) -> list[ScheduledRule]:
        PropertyService(self.session).get(property_id)
        return RecurringEngine(self.session).scheduled_for_month(property_id, month)


class AnnualAmountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_property(self, property_id: int) -> list[AnnualCategoryAmount]:
        stmt = (
            select(AnnualCategoryAmount)
            .options(joinedload(AnnualCategoryAmount.category))
            .where(AnnualCategoryAmount.property_id == property_id)
            .order_by(AnnualCategoryAmount.year.desc(), AnnualCategoryAmount.id)
        )
        return self.session.scalars(stmt).all()

    def upsert(self, property_id: int, data: AnnualAmountIn) -> AnnualCategoryAmount:
        PropertyService(self.session).get(property_id)
        category = self.session.get(Category, data.category_id)
        if not category:
            raise NotFoundError("Category not found")
        row = self.session.scalar(
            select(AnnualCategoryAmount).where(
                AnnualCategoryAmount.property_id == property_id,
                AnnualCategoryAmount.category_id == category.id,
                AnnualCategoryAmount.year == data.year,
            )
        )
        if not row:
            row = AnnualCategoryAmount(
                property_id=property_id, category_id=category.id, year=data.year
            )
            self.session.add(row)
        row.amount_cents = signed_amount_cents(data.amount_cents, category.type)
        row.note = data.note
        self.session.commit()
        self.session.refresh(row)
        return row

    def delete(self, annual_id: int) -> None:
        row = self.session.get(AnnualCategoryAmount, annual_id)
        if not row:
            raise NotFoundError("Annual amount not found")
        self.session.delete(row)
        self.session.commit()


class LoanSnapshotService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_property(self, property_id: int) -> list[LoanSnapshot]:
        stmt = (
            select(LoanSnapshot)
            .where(LoanSnapshot.property_id == property_id)
            .order_by(LoanSnapshot.as_of_date.desc(), LoanSnapshot.id.desc())
        )
        return self.session.scalars(stmt).all()

    def create(self, property_id: int, data: LoanSnapshotIn) -> LoanSnapshot:
        PropertyService(self.session).get(property_id)
        snapshot = LoanSnapshot(
            property_id=property_id,
            loan_label=data.loan_label.strip(),
            as_of_date=data.as_of_date,
            balance_cents=data.balance_cents,
        )
        self.session.add(snapshot)
        self.session.commit()
        self.session.refresh(snapshot)
        return snapshot

    def delete(self, snapshot_id: int) -> None:
        snapshot = self.session.get(LoanSnapshot, snapshot_id)
        if not snapshot:
            raise NotFoundError("Loan snapshot not found")
        self.session.delete(snapshot)
        self.session.commit()

    def balances_as_of(self, property_ids: list[int], target: date) -> dict[int, int]:
        """Summed loan balance per property at ``target``.

        Each loan label contributes its most recent snapshot on or before
        ``target``; properties without snapshots are absent from the result.
        """
        if not property_ids:
            return {}
        stmt = (
            select(LoanSnapshot)
            .where(
                LoanSnapshot.property_id.in_(property_ids),
                LoanSnapshot.as_of_date <= target,
            )
            .order_by(
                LoanSnapshot.property_id,
                LoanSnapshot.loan_label,
                LoanSnapshot.as_of_date.desc(),
                LoanSnapshot.id.desc(),
            )
        )
        balances: dict[int, int] = {}
        seen: set[tuple[int, str]] = set()
        for snapshot in self.session.scalars(stmt):
            key = (snapshot.property_id, snapshot.loan_label)
            if key in seen:
                continue
            seen.add(key)
            balances[snapshot.property_id] = (
                balances.get(snapshot.property_id, 0) + snapshot.balance_cents
            )
        return balances

    def balance_as_of(self, property_id: int, target: date) -> int:
        return self.balances_as_of([property_id], target).get(property_id, 0)
