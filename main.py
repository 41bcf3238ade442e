import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_report, export_transactions
from database import SessionLocal
from errors import LedgerError, NotFoundError
from models import (
    AnnualCategoryAmount,
    Category,
    LoanSnapshot,
    Property,
    PropertyStatus,
    RecurringTransaction,
    Transaction,
)
from periods import LookbackWindow, resolve_lookback, utc_today
from reports import ReportService, ReportTable
from schemas import (
    AnnualAmountIn,
    CategoryIn,
    LoanSnapshotIn,
    ProfitLossFilter,
    PropertyIn,
    RecurringTransactionIn,
    TransactionIn,
)
from services import (
    AnnualAmountService,
    CategoryService,
    LoanSnapshotService,
    PropertyService,
    RecurringTransactionService,
    TransactionFilters,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Property Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.debug(f"request_rejected: path={request.url.path} errors={len(exc.errors())}")
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


class ActiveToggle(BaseModel):
    active: bool


class EstimatedValuesIn(BaseModel):
    zillow_cents: Optional[int] = None
    redfin_cents: Optional[int] = None


class PostRecurringIn(BaseModel):
    target_month: Optional[str] = None


def category_out(category: Category, depth: Optional[int] = None) -> dict:
    data = {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "parent_id": category.parent_id,
        "active": category.active,
    }
    if depth is not None:
        data["depth"] = depth
    return data


def property_out(prop: Property) -> dict:
    return {
        "id": prop.id,
        "label": prop.label,
        "nickname": prop.nickname,
        "street": prop.street,
        "city": prop.city,
        "state": prop.state,
        "zip": prop.zip,
        "status": prop.status.value,
        "zillow_estimated_value_cents": prop.zillow_estimated_value_cents,
        "redfin_estimated_value_cents": prop.redfin_estimated_value_cents,
    }


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "property_id": txn.property_id,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "date": txn.date.isoformat(),
        "amount_cents": txn.amount_cents,
        "payee": txn.payee,
        "memo": txn.memo,
        "statement_month": txn.statement_month,
        "source": txn.source.value,
        "deleted": txn.deleted_at is not None,
    }


def rule_out(rule: RecurringTransaction) -> dict:
    return {
        "id": rule.id,
        "property_id": rule.property_id,
        "category_id": rule.category_id,
        "amount_cents": rule.amount_cents,
        "memo": rule.memo,
        "day_of_month": rule.day_of_month,
        "start_month": rule.start_month,
        "end_month": rule.end_month,
        "is_active": rule.is_active,
    }


def annual_out(row: AnnualCategoryAmount) -> dict:
    return {
        "id": row.id,
        "property_id": row.property_id,
        "category_id": row.category_id,
        "year": row.year,
        "amount_cents": row.amount_cents,
        "note": row.note,
    }


def loan_out(snapshot: LoanSnapshot) -> dict:
    return {
        "id": snapshot.id,
        "property_id": snapshot.property_id,
        "loan_label": snapshot.loan_label,
        "as_of_date": snapshot.as_of_date.isoformat(),
        "balance_cents": snapshot.balance_cents,
    }


def csv_response(csv_text: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def profit_loss_filter(
    start: date,
    end: date,
    property_id: Optional[int] = None,
    category_id: Optional[int] = None,
    include_transfers: bool = False,
    include_annual_totals: bool = True,
) -> ProfitLossFilter:
    return ProfitLossFilter(
        start=start,
        end=end,
        property_id=property_id,
        category_id=category_id,
        include_transfers=include_transfers,
        include_annual_totals=include_annual_totals,
    )


@app.get("/api/version")
def api_version():
    return {"version": APP_VERSION}


# Categories


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [category_out(c, depth) for c, depth in CategoryService(db).list_tree()]


@app.post("/api/categories", status_code=201)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return category_out(category)


@app.put("/api/categories/{category_id}")
def update_category(category_id: int, payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).update(category_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return category_out(category)


@app.get("/api/categories/{category_id}/delete-action")
def category_delete_action(category_id: int, db: Session = Depends(get_db)):
    try:
        action = CategoryService(db).resolve_delete(category_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"action": action.value}


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        action = CategoryService(db).delete(category_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"action": action.value}


@app.post("/api/categories/{category_id}/active")
def set_category_active(
    category_id: int, payload: ActiveToggle, db: Session = Depends(get_db)
):
    try:
        category = CategoryService(db).set_active(category_id, payload.active)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return category_out(category)


# Properties


@app.get("/api/properties")
def list_properties(db: Session = Depends(get_db)):
    return [property_out(p) for p in PropertyService(db).list_all()]


@app.post("/api/properties", status_code=201)
def create_property(payload: PropertyIn, db: Session = Depends(get_db)):
    return property_out(PropertyService(db).create(payload))


@app.put("/api/properties/{property_id}")
def update_property(property_id: int, payload: PropertyIn, db: Session = Depends(get_db)):
    try:
        prop = PropertyService(db).update(property_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return property_out(prop)


@app.post("/api/properties/{property_id}/valuations")
def set_property_valuations(
    property_id: int, payload: EstimatedValuesIn, db: Session = Depends(get_db)
):
    try:
        prop = PropertyService(db).set_estimated_values(
            property_id,
            zillow_cents=payload.zillow_cents,
            redfin_cents=payload.redfin_cents,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return property_out(prop)


@app.post("/api/properties/{property_id}/status/{status}")
def set_property_status(
    property_id: int, status: PropertyStatus, db: Session = Depends(get_db)
):
    try:
        prop = PropertyService(db).set_status(property_id, status)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return property_out(prop)


# Transactions


@app.get("/api/properties/{property_id}/transactions")
def list_transactions(
    property_id: int,
    years: LookbackWindow = LookbackWindow.all,
    category_id: Optional[int] = None,
    q: Optional[str] = None,
    include_deleted: bool = False,
    db: Session = Depends(get_db),
):
    period = resolve_lookback(years, utc_today())
    filters = TransactionFilters(
        category_id=category_id, query=q, include_deleted=include_deleted
    )
    items = TransactionService(db).list_for_property(property_id, period, filters)
    return [transaction_out(txn) for txn in items]


@app.post("/api/properties/{property_id}/transactions", status_code=201)
def create_transaction(
    property_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).create(property_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return transaction_out(txn)


@app.put("/api/properties/{property_id}/transactions/{transaction_id}")
def update_transaction(
    property_id: int,
    transaction_id: int,
    payload: TransactionIn,
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db).update(property_id, transaction_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return transaction_out(txn)


@app.delete("/api/properties/{property_id}/transactions/{transaction_id}", status_code=204)
def delete_transaction(property_id: int, transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).soft_delete(property_id, transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/properties/{property_id}/transactions/{transaction_id}/restore")
def restore_transaction(
    property_id: int, transaction_id: int, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).restore(property_id, transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return transaction_out(txn)


@app.get("/api/properties/{property_id}/transactions/export.csv")
def export_property_transactions(
    property_id: int,
    years: LookbackWindow = LookbackWindow.all,
    db: Session = Depends(get_db),
):
    period = resolve_lookback(years, utc_today())
    items = TransactionService(db).list_for_property(property_id, period)
    filename = f"transactions_{property_id}_{period.start}_{period.end}.csv"
    return csv_response(export_transactions(items), filename)


# Recurring rules


@app.get("/api/properties/{property_id}/recurring")
def list_recurring(property_id: int, db: Session = Depends(get_db)):
    return [rule_out(r) for r in RecurringTransactionService(db).list_for_property(property_id)]


@app.post("/api/properties/{property_id}/recurring", status_code=201)
def create_recurring(
    property_id: int, payload: RecurringTransactionIn, db: Session = Depends(get_db)
):
    try:
        rule = RecurringTransactionService(db).create(property_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return rule_out(rule)


@app.put("/api/recurring/{rule_id}")
def update_recurring(
    rule_id: int, payload: RecurringTransactionIn, db: Session = Depends(get_db)
):
    try:
        rule = RecurringTransactionService(db).update(rule_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return rule_out(rule)


@app.post("/api/recurring/{rule_id}/active")
def toggle_recurring(rule_id: int, payload: ActiveToggle, db: Session = Depends(get_db)):
    service = RecurringTransactionService(db)
    try:
        service.set_active(rule_id, payload.active)
        rule = service.get(rule_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return rule_out(rule)


@app.delete("/api/recurring/{rule_id}", status_code=204)
def delete_recurring(rule_id: int, db: Session = Depends(get_db)):
    try:
        RecurringTransactionService(db).delete(rule_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/properties/{property_id}/recurring/post")
def post_recurring(
    property_id: int, payload: PostRecurringIn, db: Session = Depends(get_db)
):
    try:
        summary = RecurringTransactionService(db).post_up_to_month(
            property_id, payload.target_month
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return summary


@app.get("/api/properties/{property_id}/recurring/scheduled")
def scheduled_recurring(property_id: int, month: str, db: Session = Depends(get_db)):
    try:
        scheduled = RecurringTransactionService(db).scheduled_for_month(property_id, month)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return [
        {
            "rule": rule_out(item.rule),
            "due_date": item.due_date.isoformat(),
            "already_posted": item.already_posted,
        }
        for item in scheduled
    ]


# Annual amounts and loans


@app.get("/api/properties/{property_id}/annual-amounts")
def list_annual_amounts(property_id: int, db: Session = Depends(get_db)):
    return [annual_out(r) for r in AnnualAmountService(db).list_for_property(property_id)]


@app.put("/api/properties/{property_id}/annual-amounts")
def upsert_annual_amount(
    property_id: int, payload: AnnualAmountIn, db: Session = Depends(get_db)
):
    try:
        row = AnnualAmountService(db).upsert(property_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return annual_out(row)


@app.delete("/api/annual-amounts/{annual_id}", status_code=204)
def delete_annual_amount(annual_id: int, db: Session = Depends(get_db)):
    try:
        AnnualAmountService(db).delete(annual_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/properties/{property_id}/loans")
def list_loans(property_id: int, db: Session = Depends(get_db)):
    return [loan_out(s) for s in LoanSnapshotService(db).list_for_property(property_id)]


@app.post("/api/properties/{property_id}/loans", status_code=201)
def create_loan_snapshot(
    property_id: int, payload: LoanSnapshotIn, db: Session = Depends(get_db)
):
    try:
        snapshot = LoanSnapshotService(db).create(property_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return loan_out(snapshot)


@app.delete("/api/loans/{snapshot_id}", status_code=204)
def delete_loan_snapshot(snapshot_id: int, db: Session = Depends(get_db)):
    try:
        LoanSnapshotService(db).delete(snapshot_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


# Reports


def _report_or_csv(report, export: bool, filename: str):
    if export:
        table: ReportTable = report.table()
        return csv_response(export_report(table), filename)
    return report


@app.get("/api/reports/profit-loss")
def report_profit_loss(
    filters: ProfitLossFilter = Depends(profit_loss_filter),
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).profit_loss_by_property(filters)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(report, export, f"profit_loss_{filters.start}_{filters.end}.csv")


@app.get("/api/reports/net-profit")
def report_net_profit(
    years: LookbackWindow = LookbackWindow.all,
    export: bool = False,
    db: Session = Depends(get_db),
):
    report = ReportService(db).net_profit_by_property(years)
    return _report_or_csv(report, export, f"net_profit_{years.value}.csv")


@app.get("/api/reports/net-profit/{property_id}")
def report_net_profit_for_property(
    property_id: int,
    years: LookbackWindow = LookbackWindow.all,
    db: Session = Depends(get_db),
):
    return ReportService(db).net_profit_for_property(property_id, years)


@app.get("/api/reports/net-profit/{property_id}/by-year")
def report_net_profit_by_year(
    property_id: int,
    years: LookbackWindow = LookbackWindow.all,
    export: bool = False,
    db: Session = Depends(get_db),
):
    report = ReportService(db).net_profit_by_year_for_property(property_id, years)
    return _report_or_csv(report, export, f"net_profit_{property_id}_by_year.csv")


@app.get("/api/reports/roe")
def report_return_on_equity(
    year: int,
    valuation_source: Optional[str] = None,
    property_id: Optional[int] = None,
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).return_on_equity(
            year, valuation_source or settings.default_valuation, property_id
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(report, export, f"roe_{year}.csv")


@app.get("/api/reports/expense-trend")
def report_expense_trend(
    category_id: Optional[int] = None,
    property_id: Optional[int] = None,
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).expense_trend_by_year(category_id, property_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(report, export, f"expense_trend_{category_id}.csv")


@app.get("/api/reports/income-trend")
def report_income_trend(
    category_id: Optional[int] = None,
    property_id: Optional[int] = None,
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).income_trend_by_year(category_id, property_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(report, export, f"income_trend_{category_id}.csv")


@app.get("/api/reports/income-vs-expenses")
def report_income_vs_expenses(
    property_id: Optional[int] = None,
    export: bool = False,
    db: Session = Depends(get_db),
):
    report = ReportService(db).income_vs_expenses_by_year(property_id)
    return _report_or_csv(report, export, "income_vs_expenses.csv")


@app.get("/api/reports/expenses-by-category")
def report_expenses_by_category(
    filters: ProfitLossFilter = Depends(profit_loss_filter),
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).expenses_by_category(filters)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(
        report, export, f"expenses_by_category_{filters.start}_{filters.end}.csv"
    )


@app.get("/api/reports/profit-loss-by-month")
def report_profit_loss_by_month(
    filters: ProfitLossFilter = Depends(profit_loss_filter),
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).profit_loss_by_month(filters)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(
        report, export, f"profit_loss_by_month_{filters.start}_{filters.end}.csv"
    )


@app.get("/api/reports/income-by-category")
def report_income_by_category(
    filters: ProfitLossFilter = Depends(profit_loss_filter),
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).income_by_category(filters)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(
        report, export, f"income_by_category_{filters.start}_{filters.end}.csv"
    )


@app.get("/api/reports/expenses-by-property")
def report_expenses_by_property(
    filters: ProfitLossFilter = Depends(profit_loss_filter),
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).expenses_by_property(filters)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(
        report, export, f"expenses_by_property_{filters.start}_{filters.end}.csv"
    )


@app.get("/api/reports/rental-income")
def report_rental_income(
    filters: ProfitLossFilter = Depends(profit_loss_filter),
    include_other_income: bool = False,
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).rental_income_by_property(filters, include_other_income)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(
        report, export, f"rental_income_{filters.start}_{filters.end}.csv"
    )


@app.get("/api/reports/recurring-expenses")
def report_recurring_expenses(
    filters: ProfitLossFilter = Depends(profit_loss_filter),
    include_inactive: bool = False,
    export: bool = False,
    db: Session = Depends(get_db),
):
    try:
        report = ReportService(db).recurring_expenses_overview(filters, include_inactive)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _report_or_csv(
        report, export, f"recurring_expenses_{filters.start}_{filters.end}.csv"
    )
