"""Read-only financial reports over the ledger.

All money is integer cents: income positive, expense negative. Decimal is used
only for proration of annual amounts and for the ROE ratio. Every ordering
carries a final id tie-break so identical data renders identically.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional, Union

from sqlalchemy import extract, func, select
from sqlalchemy.orm import Session

from category_tree import compute_descendants, walk_tree
from errors import InvalidArgumentError
from models import (
    AnnualCategoryAmount,
    Category,
    CategoryType,
    Property,
    RecurringPosting,
    RecurringTransaction,
    Transaction,
    ValuationSource,
    signed_amount_cents,
)
from periods import (
    days_in_year,
    format_month,
    month_in_range,
    months_between,
    overlap_days_in_year,
    resolve_lookback,
    utc_today,
    year_period,
)
from schemas import ProfitLossFilter
from services import LoanSnapshotService


logger = logging.getLogger(__name__)

UNKNOWN_PROPERTY = "Unknown property"
UNKNOWN_CATEGORY = "Unknown category"
TYPE_RANK = {CategoryType.income: 0, CategoryType.expense: 1, CategoryType.transfer: 2}
RENTAL_TOKENS = ("rent", "rental", "lease")
RENTAL_EXCLUDE_TOKENS = (
    "late fee",
    "application",
    "deposit",
    "reimbursement",
    "utility",
    "hoa",
    "laundry",
)


class ColumnType(str, Enum):
    text = "text"
    number = "number"
    currency = "currency"


@dataclass(frozen=True)
class ReportColumn:
    key: str
    header: str
    type: ColumnType = ColumnType.text


@dataclass
class ReportTable:
    columns: list[ReportColumn]
    rows: list[dict[str, Any]]


@dataclass(frozen=True)
class Totals:
    income_total: int = 0
    expense_total: int = 0
    net_total: int = 0


@dataclass(frozen=True)
class PropertyTotals:
    property_id: int
    property_label: str
    income_total: int = 0
    expense_total: int = 0
    net_total: int = 0


@dataclass
class ProfitLossRow:
    property_id: int
    property_label: str
    category_id: int
    category_name: str
    parent_category_name: Optional[str]
    category_type: CategoryType
    count: int
    amount: int


@dataclass
class ProfitLossReport:
    start: date
    end: date
    rows: list[ProfitLossRow]
    subtotals: list[PropertyTotals]
    totals: Totals
    kind: str = field(default="profit_loss", init=False)

    def subtotal_for(self, property_id: int) -> Optional[PropertyTotals]:
        for subtotal in self.subtotals:
            if subtotal.property_id == property_id:
                return subtotal
        return None

    def table(self) -> ReportTable:
        columns = [
            ReportColumn("property", "Property"),
            ReportColumn("type", "Type"),
            ReportColumn("parent", "Parent category"),
            ReportColumn("category", "Category"),
            ReportColumn("count", "Count", ColumnType.number),
            ReportColumn("amount", "Amount", ColumnType.currency),
        ]
        rows = [
            {
                "property": row.property_label,
                "type": row.category_type.value,
                "parent": row.parent_category_name,
                "category": row.category_name,
                "count": row.count,
                "amount": row.amount,
            }
            for row in self.rows
        ]
        return ReportTable(columns, rows)


@dataclass
class NetProfitReport:
    window: str
    start: date
    end: date
    rows: list[PropertyTotals]
    totals: Totals
    kind: str = field(default="net_profit", init=False)

    def table(self) -> ReportTable:
        return _totals_table(self.rows)


@dataclass(frozen=True)
class YearNetProfitRow:
    year: int
    income_total: int
    expense_total: int
    net_total: int


@dataclass
class NetProfitByYearReport:
    property_id: int
    property_label: str
    window: str
    rows: list[YearNetProfitRow]
    kind: str = field(default="net_profit_by_year", init=False)

    def table(self) -> ReportTable:
        columns = [
            ReportColumn("year", "Year", ColumnType.number),
            ReportColumn("income", "Income", ColumnType.currency),
            ReportColumn("expenses", "Expenses", ColumnType.currency),
            ReportColumn("net", "Net profit", ColumnType.currency),
        ]
        rows = [
            {
                "year": row.year,
                "income": row.income_total,
                "expenses": row.expense_total,
                "net": row.net_total,
            }
            for row in self.rows
        ]
        return ReportTable(columns, rows)


@dataclass(frozen=True)
class ReturnOnEquityRow:
    property_id: int
    property_label: str
    value: Optional[int]
    loan_balance: int
    equity: Optional[int]
    net_cash_flow: int
    roe_pct: Optional[Decimal]


@dataclass
class ReturnOnEquityReport:
    year: int
    valuation_source: ValuationSource
    rows: list[ReturnOnEquityRow]
    profit_loss_rows: list[ProfitLossRow]
    kind: str = field(default="return_on_equity", init=False)

    def table(self) -> ReportTable:
        columns = [
            ReportColumn("property", "Property"),
            ReportColumn("value", "Value", ColumnType.currency),
            ReportColumn("loan_balance", "Loan balance", ColumnType.currency),
            ReportColumn("equity", "Equity", ColumnType.currency),
            ReportColumn("net_cash_flow", "Net cash flow", ColumnType.currency),
            ReportColumn("roe_pct", "ROE %", ColumnType.number),
        ]
        rows = [
            {
                "property": row.property_label,
                "value": row.value,
                "loan_balance": row.loan_balance,
                "equity": row.equity,
                "net_cash_flow": row.net_cash_flow,
                "roe_pct": row.roe_pct,
            }
            for row in self.rows
        ]
        return ReportTable(columns, rows)


@dataclass(frozen=True)
class PropertyRef:
    id: int
    label: str


@dataclass(frozen=True)
class TrendPoint:
    year: int
    amounts: dict[int, int]


@dataclass
class TrendReport:
    kind: str
    category_id: int
    property_id: Optional[int]
    years: list[int] = field(default_factory=list)
    properties: list[PropertyRef] = field(default_factory=list)
    series_raw: list[TrendPoint] = field(default_factory=list)
    series_display: list[TrendPoint] = field(default_factory=list)

    def table(self) -> ReportTable:
        columns = [ReportColumn("year", "Year", ColumnType.number)]
        columns.extend(
            ReportColumn(f"p{prop.id}", prop.label, ColumnType.currency)
            for prop in self.properties
        )
        rows = []
        for point in self.series_raw:
            row: dict[str, Any] = {"year": point.year}
            for prop in self.properties:
                row[f"p{prop.id}"] = point.amounts.get(prop.id, 0)
            rows.append(row)
        return ReportTable(columns, rows)


@dataclass(frozen=True)
class IncomeVsExpensesRow:
    year: int
    income: int
    expenses: int
    net: int
    expense_base: int
    income_above: int
    expense_overage: int


@dataclass
class IncomeVsExpensesReport:
    property_id: Optional[int]
    rows: list[IncomeVsExpensesRow]
    kind: str = field(default="income_vs_expenses_by_year", init=False)

    def table(self) -> ReportTable:
        columns = [
            ReportColumn("year", "Year", ColumnType.number),
            ReportColumn("income", "Income", ColumnType.currency),
            ReportColumn("expenses", "Expenses", ColumnType.currency),
            ReportColumn("net", "Net", ColumnType.currency),
        ]
        rows = [
            {
                "year": row.year,
                "income": row.income,
                "expenses": row.expenses,
                "net": row.net,
            }
            for row in self.rows
        ]
        return ReportTable(columns, rows)


@dataclass(frozen=True)
class CategoryTotalRow:
    category_id: int
    name: str
    depth: int
    amount: int


@dataclass
class ExpensesByCategoryReport:
    start: date
    end: date
    rows: list[CategoryTotalRow]
    total: int
    kind: str = field(default="expenses_by_category", init=False)

    def table(self) -> ReportTable:
        columns = [
            ReportColumn("category", "Category"),
            ReportColumn("amount", "Amount", ColumnType.currency),
        ]
        rows = [
            {"category": ("  " * row.depth) + row.name, "amount": row.amount}
            for row in self.rows
        ]
        return ReportTable(columns, rows)


@dataclass(frozen=True)
class MonthTotals:
    month: str
    income_total: int
    expense_total: int
    net_total: int


@dataclass
class ProfitLossByMonthReport:
    start: date
    end: date
    months: list[MonthTotals]
    totals: Totals
    kind: str = field(default="profit_loss_by_month", init=False)

    def table(self) -> ReportTable:
        columns = [
            ReportColumn("month", "Month"),
            ReportColumn("income", "Income", ColumnType.currency),
            ReportColumn("expenses", "Expenses", ColumnType.currency),
            ReportColumn("net", "Net", ColumnType.currency),
        ]
        rows = [
            {
                "month": row.month,
                "income": row.income_total,
                "expenses": row.expense_total,
                "net": row.net_total,
            }
            for row in self.months
        ]
        return ReportTable(columns, rows)


@dataclass(frozen=True)
class SourceSplitTotals:
    transactional: int = 0
    annual: int = 0
    total: int = 0


@dataclass(frozen=True)
class IncomeCategoryRow:
    category_id: int
    category_name: str
    transactional: int
    annual: int
    total: int


@dataclass
class IncomeByCategoryReport:
    start: date
    end: date
    rows: list[IncomeCategoryRow]
    totals: SourceSplitTotals
    kind: str = field(default="income_by_category", init=False)

    def table(self) -> ReportTable:
        columns = [
            ReportColumn("category", "Category"),
            ReportColumn("transactional", "Transactions", ColumnType.currency),
            ReportColumn("annual", "Annual amounts", ColumnType.currency),
            ReportColumn("total", "Total", ColumnType.currency),
        ]
        rows = [
            {
                "category": row.category_name,
                "transactional": row.transactional,
                "annual": row.annual,
                "total": row.total,
            }
            for row in self.rows
        ]
        return ReportTable(columns, rows)


@dataclass(frozen=True)
class PropertySplitRow:
    property_id: int
    property_label: str
    transactional: int
    annual: int
    total: int


def _split_table(rows: list[PropertySplitRow]) -> ReportTable:
    columns = [
        ReportColumn("property", "Property"),
        ReportColumn("transactional", "Transactions", ColumnType.currency),
        ReportColumn("annual", "Annual amounts", ColumnType.currency),
        ReportColumn("total", "Total", ColumnType.currency),
    ]
    return ReportTable(
        columns,
        [
            {
                "property": row.property_label,
                "transactional": row.transactional,
                "annual": row.annual,
                "total": row.total,
            }
            for row in rows
        ],
    )


@dataclass
class ExpensesByPropertyReport:
    start: date
    end: date
    rows: list[PropertySplitRow]
    totals: SourceSplitTotals
    kind: str = field(default="expenses_by_property", init=False)

    def table(self) -> ReportTable:
        return _split_table(self.rows)


@dataclass
class RentalIncomeByPropertyReport:
    start: date
    end: date
    include_other_income: bool
    rows: list[PropertySplitRow]
    totals: SourceSplitTotals
    kind: str = field(default="rental_income_by_property", init=False)

    def table(self) -> ReportTable:
        return _split_table(self.rows)


@dataclass(frozen=True)
class RecurringExpenseRow:
    recurring_transaction_id: int
    property_id: int
    property_label: str
    category_id: int
    category_name: str
    memo: Optional[str]
    monthly_amount: int
    months_in_range: list[str]
    expected_total: int
    posted_total: int
    variance: int
    missing_months: list[str]


@dataclass(frozen=True)
class RecurringExpenseTotals:
    expected_total: int = 0
    posted_total: int = 0
    variance: int = 0


@dataclass(frozen=True)
class OtherExpenseTotals:
    other_transactional: int = 0
    annual: int = 0
    all_expense: int = 0


@dataclass
class RecurringExpensesOverviewReport:
    start: date
    end: date
    include_inactive: bool
    rows: list[RecurringExpenseRow]
    totals: RecurringExpenseTotals
    other_totals: OtherExpenseTotals
    kind: str = field(default="recurring_expenses_overview", init=False)

    def table(self) -> ReportTable:
        columns = [
            ReportColumn("property", "Property"),
            ReportColumn("category", "Category"),
            ReportColumn("memo", "Memo"),
            ReportColumn("monthly", "Monthly amount", ColumnType.currency),
            ReportColumn("months", "Months", ColumnType.number),
            ReportColumn("expected", "Expected", ColumnType.currency),
            ReportColumn("posted", "Posted", ColumnType.currency),
            ReportColumn("variance", "Variance", ColumnType.currency),
            ReportColumn("missing", "Missing months"),
        ]
        rows = [
            {
                "property": row.property_label,
                "category": row.category_name,
                "memo": row.memo,
                "monthly": row.monthly_amount,
                "months": len(row.months_in_range),
                "expected": row.expected_total,
                "posted": row.posted_total,
                "variance": row.variance,
                "missing": " ".join(row.missing_months),
            }
            for row in self.rows
        ]
        return ReportTable(columns, rows)


def _totals_table(rows: list[PropertyTotals]) -> ReportTable:
    columns = [
        ReportColumn("property", "Property"),
        ReportColumn("income", "Income", ColumnType.currency),
        ReportColumn("expenses", "Expenses", ColumnType.currency),
        ReportColumn("net", "Net profit", ColumnType.currency),
    ]
    return ReportTable(
        columns,
        [
            {
                "property": row.property_label,
                "income": row.income_total,
                "expenses": row.expense_total,
                "net": row.net_total,
            }
            for row in rows
        ],
    )


def prorate_annual_amount(amount_cents: int, start: date, end: date, year: int) -> int:
    """Share of a once-a-year amount that falls inside ``[start, end]``."""
    overlap = overlap_days_in_year(start, end, year)
    if overlap <= 0:
        return 0
    total_days = days_in_year(year)
    if overlap >= total_days:
        return amount_cents
    share = Decimal(amount_cents) * Decimal(overlap) / Decimal(total_days)
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_roe_pct(net_cash_flow: int, equity: Optional[int]) -> Optional[Decimal]:
    if equity is None or equity <= 0:
        return None
    ratio = Decimal(net_cash_flow) / Decimal(equity) * Decimal(100)
    return ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def rank_net_profit(rows: list[PropertyTotals]) -> list[PropertyTotals]:
    return sorted(
        rows, key=lambda row: (-row.net_total, row.property_label, row.property_id)
    )


def _sum_totals(rows: list[PropertyTotals]) -> Totals:
    income = sum(row.income_total for row in rows)
    expense = sum(row.expense_total for row in rows)
    return Totals(income, expense, income + expense)


def spread_annual_by_month(amount_cents: int) -> list[int]:
    """Twelve whole-cent monthly shares of a yearly amount that sum back to it."""
    shares = []
    previous = 0
    for month in range(1, 13):
        cumulative = (Decimal(amount_cents) * month / 12).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        shares.append(int(cumulative) - previous)
        previous = int(cumulative)
    return shares


def is_rental_income_category(name: str) -> bool:
    lowered = name.casefold()
    if any(token in lowered for token in RENTAL_EXCLUDE_TOKENS):
        return False
    return any(token in lowered for token in RENTAL_TOKENS)


def _split_totals(rows) -> SourceSplitTotals:
    transactional = sum(row.transactional for row in rows)
    annual = sum(row.annual for row in rows)
    return SourceSplitTotals(transactional, annual, transactional + annual)


class ReportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _categories(self) -> dict[int, Category]:
        return {c.id: c for c in self.session.scalars(select(Category)).all()}

    def _properties(self, property_id: Optional[int] = None) -> list[Property]:
        stmt = select(Property).order_by(
            Property.status, Property.created_at.desc(), Property.id.desc()
        )
        if property_id is not None:
            stmt = stmt.where(Property.id == property_id)
        return self.session.scalars(stmt).all()

    def _category_scope(
        self, categories: dict[int, Category], category_id: Optional[int]
    ) -> Optional[list[int]]:
        if category_id is None:
            return None
        if category_id not in categories:
            return []
        scope = compute_descendants(categories.values(), category_id)
        scope.add(category_id)
        return sorted(scope)

    def profit_loss_by_property(self, filters: ProfitLossFilter) -> ProfitLossReport:
        if filters.start > filters.end:
            raise InvalidArgumentError("Start date must not be after end date")

        categories = self._categories()
        properties = {p.id: p for p in self._properties()}
        allowed_types = [CategoryType.income, CategoryType.expense]
        if filters.include_transfers:
            allowed_types.append(CategoryType.transfer)
        scope = self._category_scope(categories, filters.category_id)

        row_map: dict[tuple[int, int], ProfitLossRow] = {}

        def upsert(property_id: int, category_id: int, amount: int, count: int) -> None:
            key = (property_id, category_id)
            existing = row_map.get(key)
            if existing:
                existing.amount += amount
                existing.count += count
                return
            category = categories.get(category_id)
            prop = properties.get(property_id)
            row_map[key] = ProfitLossRow(
                property_id=property_id,
                property_label=prop.label if prop else UNKNOWN_PROPERTY,
                category_id=category_id,
                category_name=category.name if category else UNKNOWN_CATEGORY,
                parent_category_name=(
                    category.parent.name if category and category.parent else None
                ),
                category_type=category.type if category else CategoryType.expense,
                count=count,
                amount=amount,
            )

        stmt = (
            select(
                Transaction.property_id,
                Transaction.category_id,
                func.count(Transaction.id).label("count"),
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("amount"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.deleted_at.is_(None),
                Transaction.date.between(filters.start, filters.end),
                Category.type.in_(allowed_types),
            )
            .group_by(Transaction.property_id, Transaction.category_id)
        )
        if filters.property_id is not None:
            stmt = stmt.where(Transaction.property_id == filters.property_id)
        if scope is not None:
            stmt = stmt.where(Transaction.category_id.in_(scope))
        for row in self.session.execute(stmt):
            upsert(row.property_id, row.category_id, int(row.amount), int(row.count))

        if filters.include_annual_totals:
            annual_stmt = (
                select(AnnualCategoryAmount)
                .join(Category, Category.id == AnnualCategoryAmount.category_id)
                .where(
                    AnnualCategoryAmount.year.between(
                        filters.start.year, filters.end.year
                    ),
                    Category.type.in_(allowed_types),
                )
                .order_by(AnnualCategoryAmount.id)
            )
            if filters.property_id is not None:
                annual_stmt = annual_stmt.where(
                    AnnualCategoryAmount.property_id == filters.property_id
                )
            if scope is not None:
                annual_stmt = annual_stmt.where(
                    AnnualCategoryAmount.category_id.in_(scope)
                )
            for annual in self.session.scalars(annual_stmt):
                share = prorate_annual_amount(
                    annual.amount_cents, filters.start, filters.end, annual.year
                )
                if share == 0:
                    continue
                upsert(annual.property_id, annual.category_id, share, 0)

        rows = sorted(
            row_map.values(),
            key=lambda r: (
                r.property_label,
                r.property_id,
                TYPE_RANK.get(r.category_type, 99),
                (r.parent_category_name or "").casefold(),
                r.category_name.casefold(),
                r.category_id,
            ),
        )

        sums: dict[int, list[int]] = {}
        labels: dict[int, str] = {}
        for row in rows:
            bucket = sums.setdefault(row.property_id, [0, 0])
            labels[row.property_id] = row.property_label
            if row.category_type == CategoryType.income:
                bucket[0] += row.amount
            elif row.category_type == CategoryType.expense:
                bucket[1] += row.amount
        subtotals = sorted(
            (
                PropertyTotals(pid, labels[pid], income, expense, income + expense)
                for pid, (income, expense) in sums.items()
            ),
            key=lambda s: (s.property_label, s.property_id),
        )
        return ProfitLossReport(
            start=filters.start,
            end=filters.end,
            rows=rows,
            subtotals=subtotals,
            totals=_sum_totals(subtotals),
        )

    def net_profit_by_property(
        self, years: str = "all", today: Optional[date] = None
    ) -> NetProfitReport:
        period = resolve_lookback(years, today or utc_today())
        report = self.profit_loss_by_property(
            ProfitLossFilter(start=period.start, end=period.end)
        )
        rows = rank_net_profit(report.subtotals)
        return NetProfitReport(
            window=period.slug,
            start=period.start,
            end=period.end,
            rows=rows,
            totals=_sum_totals(rows),
        )

    def net_profit_for_property(
        self, property_id: int, years: str = "all", today: Optional[date] = None
    ) -> PropertyTotals:
        period = resolve_lookback(years, today or utc_today())
        report = self.profit_loss_by_property(
            ProfitLossFilter(start=period.start, end=period.end, property_id=property_id)
        )
        subtotal = report.subtotal_for(property_id)
        if subtotal:
            return subtotal
        prop = self.session.get(Property, property_id)
        return PropertyTotals(property_id, prop.label if prop else UNKNOWN_PROPERTY)

    def net_profit_by_year_for_property(
        self, property_id: int, years: str = "all", today: Optional[date] = None
    ) -> NetProfitByYearReport:
        period = resolve_lookback(years, today or utc_today())
        buckets: dict[int, list[int]] = {}

        stmt = (
            select(Transaction.date, Transaction.amount_cents, Category.type)
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.property_id == property_id,
                Transaction.deleted_at.is_(None),
                Transaction.date.between(period.start, period.end),
                Category.type.in_([CategoryType.income, CategoryType.expense]),
            )
        )
        for txn_date, amount, category_type in self.session.execute(stmt):
            bucket = buckets.setdefault(txn_date.year, [0, 0])
            bucket[0 if category_type == CategoryType.income else 1] += int(amount)

        annual_stmt = (
            select(AnnualCategoryAmount, Category.type)
            .join(Category, Category.id == AnnualCategoryAmount.category_id)
            .where(
                AnnualCategoryAmount.property_id == property_id,
                AnnualCategoryAmount.year.between(period.start.year, period.end.year),
                Category.type.in_([CategoryType.income, CategoryType.expense]),
            )
        )
        for annual, category_type in self.session.execute(annual_stmt):
            share = prorate_annual_amount(
                annual.amount_cents, period.start, period.end, annual.year
            )
            bucket = buckets.setdefault(annual.year, [0, 0])
            bucket[0 if category_type == CategoryType.income else 1] += share

        if period.slug == "all":
            years_to_include = list(buckets)
        else:
            years_to_include = list(range(period.start.year, period.end.year + 1))
        years_to_include.sort(reverse=True)

        rows = []
        for year in years_to_include:
            income, expense = buckets.get(year, [0, 0])
            rows.append(YearNetProfitRow(year, income, expense, income + expense))

        prop = self.session.get(Property, property_id)
        return NetProfitByYearReport(
            property_id=property_id,
            property_label=prop.label if prop else UNKNOWN_PROPERTY,
            window=period.slug,
            rows=rows,
        )

    def return_on_equity(
        self,
        year: int,
        valuation_source: Union[ValuationSource, str] = ValuationSource.zillow,
        property_id: Optional[int] = None,
    ) -> ReturnOnEquityReport:
        try:
            year = int(year)
        except (TypeError, ValueError) as exc:
            raise InvalidArgumentError(f"Invalid year: {year!r}") from exc
        if not 1900 <= year <= 2200:
            raise InvalidArgumentError(f"Invalid year: {year!r}")
        try:
            source = ValuationSource(valuation_source)
        except ValueError as exc:
            raise InvalidArgumentError(
                f"Unknown valuation source: {valuation_source!r}"
            ) from exc

        period = year_period(year)
        properties = self._properties(property_id)
        profit_loss = self.profit_loss_by_property(
            ProfitLossFilter(start=period.start, end=period.end, property_id=property_id)
        )
        balances = LoanSnapshotService(self.session).balances_as_of(
            [p.id for p in properties], period.end
        )

        rows = []
        for prop in properties:
            value = prop.estimated_value_cents(source)
            loan_balance = balances.get(prop.id, 0)
            equity = None if value is None else value - loan_balance
            subtotal = profit_loss.subtotal_for(prop.id)
            net_cash_flow = subtotal.net_total if subtotal else 0
            rows.append(
                ReturnOnEquityRow(
                    property_id=prop.id,
                    property_label=prop.label,
                    value=value,
                    loan_balance=loan_balance,
                    equity=equity,
                    net_cash_flow=net_cash_flow,
                    roe_pct=compute_roe_pct(net_cash_flow, equity),
                )
            )

        rows.sort(
            key=lambda r: (
                r.roe_pct is None,
                -(r.roe_pct or Decimal(0)),
                r.property_label,
                r.property_id,
            )
        )
        return ReturnOnEquityReport(
            year=year,
            valuation_source=source,
            rows=rows,
            profit_loss_rows=profit_loss.rows,
        )

    def expense_trend_by_year(
        self, category_id: Optional[int], property_id: Optional[int] = None
    ) -> TrendReport:
        return self._trend_by_year(
            "expense_trend", CategoryType.expense, category_id, property_id
        )

    def income_trend_by_year(
        self, category_id: Optional[int], property_id: Optional[int] = None
    ) -> TrendReport:
        return self._trend_by_year(
            "income_trend", CategoryType.income, category_id, property_id
        )

    def _trend_by_year(
        self,
        kind: str,
        expected_type: CategoryType,
        category_id: Optional[int],
        property_id: Optional[int],
    ) -> TrendReport:
        if category_id is None:
            raise InvalidArgumentError("A category is required for this report")
        report = TrendReport(kind=kind, category_id=category_id, property_id=property_id)

        categories = self._categories()
        root = categories.get(category_id)
        if root is None or root.type != expected_type:
            logger.warning(
                f"report_degraded: kind={kind} category_id={category_id} "
                "reason=unknown_or_wrong_type"
            )
            return report
        scope = self._category_scope(categories, category_id)
        properties = {p.id: p for p in self._properties(property_id)}
        if not properties:
            return report

        totals: dict[tuple[int, int], int] = {}
        year_col = extract("year", Transaction.date)
        stmt = (
            select(
                Transaction.property_id,
                year_col.label("year"),
                func.sum(Transaction.amount_cents).label("total"),
            )
            .where(
                Transaction.deleted_at.is_(None),
                Transaction.category_id.in_(scope),
                Transaction.property_id.in_(list(properties)),
            )
            .group_by(Transaction.property_id, year_col)
        )
        for row in self.session.execute(stmt):
            key = (row.property_id, int(row.year))
            totals[key] = totals.get(key, 0) + int(row.total or 0)

        annual_stmt = (
            select(
                AnnualCategoryAmount.property_id,
                AnnualCategoryAmount.year,
                func.sum(AnnualCategoryAmount.amount_cents).label("total"),
            )
            .where(
                AnnualCategoryAmount.category_id.in_(scope),
                AnnualCategoryAmount.property_id.in_(list(properties)),
            )
            .group_by(AnnualCategoryAmount.property_id, AnnualCategoryAmount.year)
        )
        for row in self.session.execute(annual_stmt):
            key = (row.property_id, int(row.year))
            totals[key] = totals.get(key, 0) + int(row.total or 0)

        if not totals:
            return report

        contributing = sorted(
            {pid for pid, _year in totals},
            key=lambda pid: (properties[pid].label, pid),
        )
        report.years = sorted({year for _pid, year in totals})
        report.properties = [PropertyRef(pid, properties[pid].label) for pid in contributing]
        report.series_raw = [
            TrendPoint(year, {pid: totals.get((pid, year), 0) for pid in contributing})
            for year in report.years
        ]
        report.series_display = [
            TrendPoint(point.year, {pid: abs(v) for pid, v in point.amounts.items()})
            for point in report.series_raw
        ]
        return report

    def income_vs_expenses_by_year(
        self, property_id: Optional[int] = None
    ) -> IncomeVsExpensesReport:
        income_by_year: dict[int, int] = {}
        expense_by_year: dict[int, int] = {}
        year_col = extract("year", Transaction.date)

        stmt = (
            select(
                Category.type,
                year_col.label("year"),
                func.sum(Transaction.amount_cents).label("total"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.deleted_at.is_(None),
                Category.type.in_([CategoryType.income, CategoryType.expense]),
            )
            .group_by(Category.type, year_col)
        )
        annual_stmt = (
            select(
                Category.type,
                AnnualCategoryAmount.year,
                func.sum(AnnualCategoryAmount.amount_cents).label("total"),
            )
            .join(Category, Category.id == AnnualCategoryAmount.category_id)
            .where(Category.type.in_([CategoryType.income, CategoryType.expense]))
            .group_by(Category.type, AnnualCategoryAmount.year)
        )
        if property_id is not None:
            stmt = stmt.where(Transaction.property_id == property_id)
            annual_stmt = annual_stmt.where(
                AnnualCategoryAmount.property_id == property_id
            )

        for category_type, year, total in [
            *self.session.execute(stmt),
            *self.session.execute(annual_stmt),
        ]:
            target = (
                income_by_year if category_type == CategoryType.income else expense_by_year
            )
            target[int(year)] = target.get(int(year), 0) + int(total or 0)

        years = set(income_by_year) | set(expense_by_year)
        if not years:
            return IncomeVsExpensesReport(property_id=property_id, rows=[])

        rows = []
        for year in range(min(years), max(years) + 1):
            income = income_by_year.get(year, 0)
            expenses = expense_by_year.get(year, 0)
            magnitude = abs(expenses)
            rows.append(
                IncomeVsExpensesRow(
                    year=year,
                    income=income,
                    expenses=expenses,
                    net=income - magnitude,
                    expense_base=magnitude,
                    income_above=max(income - magnitude, 0),
                    expense_overage=max(magnitude - income, 0),
                )
            )
        return IncomeVsExpensesReport(property_id=property_id, rows=rows)

    def expenses_by_category(self, filters: ProfitLossFilter) -> ExpensesByCategoryReport:
        if filters.start > filters.end:
            raise InvalidArgumentError("Start date must not be after end date")
        allowed_types = [CategoryType.expense]
        if filters.include_transfers:
            allowed_types.append(CategoryType.transfer)
        categories = [
            c for c in self._categories().values() if c.type in allowed_types
        ]
        if not categories:
            return ExpensesByCategoryReport(filters.start, filters.end, [], 0)
        allowed_ids = [c.id for c in categories]

        direct: dict[int, int] = {}
        stmt = (
            select(
                Transaction.category_id,
                func.sum(Transaction.amount_cents).label("total"),
            )
            .where(
                Transaction.deleted_at.is_(None),
                Transaction.category_id.in_(allowed_ids),
                Transaction.date.between(filters.start, filters.end),
            )
            .group_by(Transaction.category_id)
        )
        if filters.property_id is not None:
            stmt = stmt.where(Transaction.property_id == filters.property_id)
        for row in self.session.execute(stmt):
            direct[row.category_id] = int(row.total or 0)

        if filters.include_annual_totals:
            annual_stmt = select(AnnualCategoryAmount).where(
                AnnualCategoryAmount.category_id.in_(allowed_ids),
                AnnualCategoryAmount.year.between(filters.start.year, filters.end.year),
            )
            if filters.property_id is not None:
                annual_stmt = annual_stmt.where(
                    AnnualCategoryAmount.property_id == filters.property_id
                )
            for annual in self.session.scalars(annual_stmt):
                share = prorate_annual_amount(
                    annual.amount_cents, filters.start, filters.end, annual.year
                )
                direct[annual.category_id] = direct.get(annual.category_id, 0) + share

        by_id = {c.id: c for c in categories}
        entries = walk_tree(categories, sort_key=lambda c: (c.name.casefold(), c.id))
        rolled: dict[int, int] = {}
        # children always follow their parent in depth-first order
        for entry in reversed(entries):
            rolled[entry.id] = rolled.get(entry.id, 0) + direct.get(entry.id, 0)
            parent_id = by_id[entry.id].parent_id
            if parent_id in by_id and entry.depth > 0:
                rolled[parent_id] = rolled.get(parent_id, 0) + rolled[entry.id]

        rows = [
            CategoryTotalRow(entry.id, by_id[entry.id].name, entry.depth, rolled[entry.id])
            for entry in entries
            if rolled.get(entry.id, 0) != 0
        ]
        total = sum(rolled[entry.id] for entry in entries if entry.depth == 0)
        return ExpensesByCategoryReport(filters.start, filters.end, rows, total)

    def _allowed_types(
        self, base: CategoryType, include_transfers: bool
    ) -> list[CategoryType]:
        return [base, CategoryType.transfer] if include_transfers else [base]

    def _transactional_by(
        self, key_col, filters: ProfitLossFilter, category_ids: list[int]
    ) -> dict[int, int]:
        totals: dict[int, int] = {}
        if not category_ids:
            return totals
        stmt = (
            select(key_col, func.sum(Transaction.amount_cents))
            .where(
                Transaction.deleted_at.is_(None),
                Transaction.category_id.in_(category_ids),
                Transaction.date.between(filters.start, filters.end),
            )
            .group_by(key_col)
        )
        if filters.property_id is not None:
            stmt = stmt.where(Transaction.property_id == filters.property_id)
        for key, total in self.session.execute(stmt):
            totals[key] = int(total or 0)
        return totals

    def _annual_by(
        self,
        key: str,
        filters: ProfitLossFilter,
        category_ids: list[int],
        negative_only: bool = False,
    ) -> dict[int, int]:
        totals: dict[int, int] = {}
        if not category_ids or not filters.include_annual_totals:
            return totals
        stmt = (
            select(AnnualCategoryAmount)
            .where(
                AnnualCategoryAmount.category_id.in_(category_ids),
                AnnualCategoryAmount.year.between(filters.start.year, filters.end.year),
            )
            .order_by(AnnualCategoryAmount.id)
        )
        if negative_only:
            stmt = stmt.where(AnnualCategoryAmount.amount_cents < 0)
        if filters.property_id is not None:
            stmt = stmt.where(AnnualCategoryAmount.property_id == filters.property_id)
        for annual in self.session.scalars(stmt):
            share = prorate_annual_amount(
                annual.amount_cents, filters.start, filters.end, annual.year
            )
            if share == 0:
                continue
            target = getattr(annual, key)
            totals[target] = totals.get(target, 0) + share
        return totals

    def profit_loss_by_month(self, filters: ProfitLossFilter) -> ProfitLossByMonthReport:
        if filters.start > filters.end:
            raise InvalidArgumentError("Start date must not be after end date")
        categories = self._categories()
        allowed_types = [CategoryType.income, CategoryType.expense]
        if filters.include_transfers:
            allowed_types.append(CategoryType.transfer)
        scope = self._category_scope(categories, filters.category_id)

        buckets: dict[str, list[int]] = {
            month: [0, 0]
            for month in months_between(
                format_month(filters.start.year, filters.start.month),
                format_month(filters.end.year, filters.end.month),
            )
        }

        def add(month: str, category_type: CategoryType, amount: int) -> None:
            bucket = buckets.get(month)
            if bucket is None:
                return
            # transfers land on the side their sign points to
            if category_type == CategoryType.income or (
                category_type == CategoryType.transfer and amount > 0
            ):
                bucket[0] += amount
            else:
                bucket[1] += amount

        stmt = (
            select(Transaction.date, Transaction.amount_cents, Category.type)
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.deleted_at.is_(None),
                Transaction.date.between(filters.start, filters.end),
                Category.type.in_(allowed_types),
            )
        )
        if filters.property_id is not None:
            stmt = stmt.where(Transaction.property_id == filters.property_id)
        if scope is not None:
            stmt = stmt.where(Transaction.category_id.in_(scope))
        for txn_date, amount, category_type in self.session.execute(stmt):
            add(format_month(txn_date.year, txn_date.month), category_type, int(amount))

        if filters.include_annual_totals:
            annual_stmt = (
                select(AnnualCategoryAmount, Category.type)
                .join(Category, Category.id == AnnualCategoryAmount.category_id)
                .where(
                    AnnualCategoryAmount.year.between(
                        filters.start.year, filters.end.year
                    ),
                    Category.type.in_(allowed_types),
                )
                .order_by(AnnualCategoryAmount.id)
            )
            if filters.property_id is not None:
                annual_stmt = annual_stmt.where(
                    AnnualCategoryAmount.property_id == filters.property_id
                )
            if scope is not None:
                annual_stmt = annual_stmt.where(
                    AnnualCategoryAmount.category_id.in_(scope)
                )
            for annual, category_type in self.session.execute(annual_stmt):
                shares = spread_annual_by_month(annual.amount_cents)
                for index, share in enumerate(shares, start=1):
                    add(format_month(annual.year, index), category_type, share)

        months = [
            MonthTotals(month, income, expense, income + expense)
            for month, (income, expense) in sorted(buckets.items())
        ]
        income_total = sum(m.income_total for m in months)
        expense_total = sum(m.expense_total for m in months)
        return ProfitLossByMonthReport(
            start=filters.start,
            end=filters.end,
            months=months,
            totals=Totals(income_total, expense_total, income_total + expense_total),
        )

    def income_by_category(self, filters: ProfitLossFilter) -> IncomeByCategoryReport:
        if filters.start > filters.end:
            raise InvalidArgumentError("Start date must not be after end date")
        categories = self._categories()
        allowed_types = self._allowed_types(CategoryType.income, filters.include_transfers)
        scope = self._category_scope(categories, filters.category_id)
        income_categories = {
            c.id: c
            for c in categories.values()
            if c.type in allowed_types and (scope is None or c.id in scope)
        }
        ids = sorted(income_categories)

        transactional = self._transactional_by(Transaction.category_id, filters, ids)
        annual = self._annual_by("category_id", filters, ids)

        rows = []
        for category_id, category in income_categories.items():
            txn_amount = abs(transactional.get(category_id, 0))
            annual_amount = abs(annual.get(category_id, 0))
            if txn_amount == 0 and annual_amount == 0:
                continue
            rows.append(
                IncomeCategoryRow(
                    category_id=category_id,
                    category_name=category.name,
                    transactional=txn_amount,
                    annual=annual_amount,
                    total=txn_amount + annual_amount,
                )
            )
        rows.sort(key=lambda r: (-r.total, r.category_name.casefold(), r.category_id))
        return IncomeByCategoryReport(filters.start, filters.end, rows, _split_totals(rows))

    def _split_by_property(
        self,
        filters: ProfitLossFilter,
        category_ids: list[int],
        negative_annual_only: bool = False,
    ) -> list[PropertySplitRow]:
        transactional = self._transactional_by(
            Transaction.property_id, filters, category_ids
        )
        annual = self._annual_by(
            "property_id", filters, category_ids, negative_only=negative_annual_only
        )
        rows = []
        for prop in self._properties(filters.property_id):
            txn_amount = transactional.get(prop.id, 0)
            annual_amount = annual.get(prop.id, 0)
            if txn_amount == 0 and annual_amount == 0:
                continue
            rows.append(
                PropertySplitRow(
                    property_id=prop.id,
                    property_label=prop.label,
                    transactional=txn_amount,
                    annual=annual_amount,
                    total=txn_amount + annual_amount,
                )
            )
        return rows

    def expenses_by_property(self, filters: ProfitLossFilter) -> ExpensesByPropertyReport:
        if filters.start > filters.end:
            raise InvalidArgumentError("Start date must not be after end date")
        allowed_types = self._allowed_types(CategoryType.expense, filters.include_transfers)
        ids = sorted(c.id for c in self._categories().values() if c.type in allowed_types)
        rows = self._split_by_property(filters, ids, negative_annual_only=True)
        # largest expense (most negative) first
        rows.sort(key=lambda r: (r.total, r.property_label, r.property_id))
        return ExpensesByPropertyReport(filters.start, filters.end, rows, _split_totals(rows))

    def rental_income_by_property(
        self, filters: ProfitLossFilter, include_other_income: bool = False
    ) -> RentalIncomeByPropertyReport:
        if filters.start > filters.end:
            raise InvalidArgumentError("Start date must not be after end date")
        allowed_types = self._allowed_types(CategoryType.income, filters.include_transfers)
        ids = sorted(
            c.id
            for c in self._categories().values()
            if c.type in allowed_types
            and (include_other_income or is_rental_income_category(c.name))
        )
        rows = self._split_by_property(filters, ids)
        rows.sort(key=lambda r: (-r.total, r.property_label, r.property_id))
        return RentalIncomeByPropertyReport(
            start=filters.start,
            end=filters.end,
            include_other_income=include_other_income,
            rows=rows,
            totals=_split_totals(rows),
        )

    def recurring_expenses_overview(
        self, filters: ProfitLossFilter, include_inactive: bool = False
    ) -> RecurringExpensesOverviewReport:
        """Expected versus posted amounts of recurring expense rules over a range.

        Also reports the rest of the range's expenses: transactions no
        recurring rule posted, and prorated annual expense amounts.
        """
        if filters.start > filters.end:
            raise InvalidArgumentError("Start date must not be after end date")
        months = months_between(
            format_month(filters.start.year, filters.start.month),
            format_month(filters.end.year, filters.end.month),
        )

        rule_stmt = (
            select(RecurringTransaction)
            .join(Category, Category.id == RecurringTransaction.category_id)
            .where(Category.type == CategoryType.expense)
            .order_by(RecurringTransaction.id)
        )
        if filters.property_id is not None:
            rule_stmt = rule_stmt.where(
                RecurringTransaction.property_id == filters.property_id
            )
        if not include_inactive:
            rule_stmt = rule_stmt.where(RecurringTransaction.is_active.is_(True))
        rules = self.session.scalars(rule_stmt).all()

        postings: list[RecurringPosting] = []
        if rules and months:
            postings = self.session.scalars(
                select(RecurringPosting).where(
                    RecurringPosting.recurring_transaction_id.in_([r.id for r in rules]),
                    RecurringPosting.month.in_(months),
                )
            ).all()
        posted_ids = sorted({p.transaction_id for p in postings if p.transaction_id})

        live_amounts: dict[int, int] = {}
        if posted_ids:
            ledger_stmt = (
                select(Transaction.id, Transaction.amount_cents)
                .join(Category, Category.id == Transaction.category_id)
                .where(
                    Transaction.id.in_(posted_ids),
                    Transaction.deleted_at.is_(None),
                )
            )
            if filters.property_id is not None:
                ledger_stmt = ledger_stmt.where(
                    Transaction.property_id == filters.property_id
                )
            if not filters.include_transfers:
                ledger_stmt = ledger_stmt.where(Category.type != CategoryType.transfer)
            live_amounts = {
                txn_id: int(amount) for txn_id, amount in self.session.execute(ledger_stmt)
            }

        rows = []
        for rule in rules:
            applicable = [
                m for m in months if month_in_range(m, rule.start_month, rule.end_month)
            ]
            if not applicable:
                continue
            monthly = signed_amount_cents(rule.amount_cents, CategoryType.expense)
            posted_total = 0
            posted_months = set()
            for posting in postings:
                if posting.recurring_transaction_id != rule.id:
                    continue
                if posting.transaction_id not in live_amounts:
                    continue
                posted_months.add(posting.month)
                posted_total += live_amounts[posting.transaction_id]
            expected = monthly * len(applicable)
            rows.append(
                RecurringExpenseRow(
                    recurring_transaction_id=rule.id,
                    property_id=rule.property_id,
                    property_label=rule.property.label,
                    category_id=rule.category_id,
                    category_name=rule.category.name,
                    memo=rule.memo,
                    monthly_amount=monthly,
                    months_in_range=applicable,
                    expected_total=expected,
                    posted_total=posted_total,
                    variance=posted_total - expected,
                    missing_months=[m for m in applicable if m not in posted_months],
                )
            )
        rows.sort(
            key=lambda r: (
                r.property_label,
                r.category_name.casefold(),
                (r.memo or "").casefold(),
                r.recurring_transaction_id,
            )
        )
        expected_total = sum(r.expected_total for r in rows)
        posted_total = sum(r.posted_total for r in rows)
        totals = RecurringExpenseTotals(
            expected_total, posted_total, posted_total - expected_total
        )

        allowed_types = self._allowed_types(CategoryType.expense, filters.include_transfers)
        other_stmt = (
            select(func.coalesce(func.sum(Transaction.amount_cents), 0))
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.deleted_at.is_(None),
                Transaction.date.between(filters.start, filters.end),
                Category.type.in_(allowed_types),
            )
        )
        if filters.property_id is not None:
            other_stmt = other_stmt.where(Transaction.property_id == filters.property_id)
        if posted_ids:
            other_stmt = other_stmt.where(Transaction.id.not_in(posted_ids))
        other_transactional = int(self.session.scalar(other_stmt) or 0)

        expense_ids = sorted(
            c.id for c in self._categories().values() if c.type == CategoryType.expense
        )
        annual = sum(self._annual_by("category_id", filters, expense_ids).values())

        logger.info(
            f"recurring_overview: rules={len(rows)} months={len(months)} "
            f"variance={totals.variance}"
        )
        return RecurringExpensesOverviewReport(
            start=filters.start,
            end=filters.end,
            include_inactive=include_inactive,
            rows=rows,
            totals=totals,
            other_totals=OtherExpenseTotals(
                other_transactional=other_transactional,
                annual=annual,
                all_expense=posted_total + other_transactional + annual,
            ),
        )
