from datetime import date

import pytest
from pydantic import ValidationError

from errors import InvalidArgumentError, NotFoundError
from models import CategoryType
from periods import Period
from schemas import AnnualAmountIn, CategoryIn, LoanSnapshotIn, PropertyIn, TransactionIn
from services import (
    AnnualAmountService,
    CategoryService,
    LoanSnapshotService,
    PropertyService,
    TransactionFilters,
    TransactionService,
)


def _property(session, nickname="Elm Ct"):
    return PropertyService(session).create(PropertyIn(nickname=nickname))


def _category(session, name, type_):
    return CategoryService(session).create(CategoryIn(name=name, type=type_))


def test_amount_sign_follows_category_type(session):
    prop = _property(session)
    rent = _category(session, "Rent", CategoryType.income)
    taxes = _category(session, "Taxes", CategoryType.expense)
    move = _category(session, "Owner draw", CategoryType.transfer)
    service = TransactionService(session)

    income = service.create(
        prop.id, TransactionIn(date=date(2024, 1, 1), category_id=rent.id, amount_cents=-1500)
    )
    expense = service.create(
        prop.id, TransactionIn(date=date(2024, 1, 2), category_id=taxes.id, amount_cents=900)
    )
    transfer = service.create(
        prop.id, TransactionIn(date=date(2024, 1, 3), category_id=move.id, amount_cents=-300)
    )

    assert income.amount_cents == 1500
    assert expense.amount_cents == -900
    assert transfer.amount_cents == -300


def test_inactive_category_cannot_be_used(session):
    prop = _property(session)
    old = _category(session, "Old", CategoryType.expense)
    CategoryService(session).set_active(old.id, False)

    with pytest.raises(InvalidArgumentError):
        TransactionService(session).create(
            prop.id, TransactionIn(date=date(2024, 1, 1), category_id=old.id, amount_cents=1)
        )


def test_unknown_property_is_rejected(session):
    rent = _category(session, "Rent", CategoryType.income)
    with pytest.raises(NotFoundError):
        TransactionService(session).create(
            77, TransactionIn(date=date(2024, 1, 1), category_id=rent.id, amount_cents=1)
        )


def test_soft_delete_and_restore(session):
    prop = _property(session)
    rent = _category(session, "Rent", CategoryType.income)
    service = TransactionService(session)
    txn = service.create(
        prop.id, TransactionIn(date=date(2024, 2, 1), category_id=rent.id, amount_cents=100)
    )

    service.soft_delete(prop.id, txn.id)
    assert service.list_for_property(prop.id) == []
    with pytest.raises(NotFoundError):
        service.get(txn.id)

    service.restore(prop.id, txn.id)
    assert [t.id for t in service.list_for_property(prop.id)] == [txn.id]


def test_list_filters_by_period_and_text(session):
    prop = _property(session)
    repairs = _category(session, "Repairs", CategoryType.expense)
    service = TransactionService(session)
    service.create(
        prop.id,
        TransactionIn(
            date=date(2023, 5, 1), category_id=repairs.id, amount_cents=10, payee="Plumber Co"
        ),
    )
    service.create(
        prop.id,
        TransactionIn(
            date=date(2024, 5, 1), category_id=repairs.id, amount_cents=20, memo="Roof patch"
        ),
    )

    in_2024 = service.list_for_property(
        prop.id, Period("2024", date(2024, 1, 1), date(2024, 12, 31))
    )
    plumber = service.list_for_property(prop.id, filters=TransactionFilters(query="plumb"))

    assert [t.memo for t in in_2024] == ["Roof patch"]
    assert [t.payee for t in plumber] == ["Plumber Co"]


def test_transaction_payload_validation():
    with pytest.raises(ValidationError):
        TransactionIn(date=date(2024, 1, 1), category_id=1, amount_cents=0)
    with pytest.raises(ValidationError):
        TransactionIn(
            date=date(2024, 1, 1), category_id=1, amount_cents=1, statement_month="2024-13"
        )
    payload = TransactionIn(
        date=date(2024, 1, 1), category_id=1, amount_cents=1, statement_month=" 2024-01 "
    )
    assert payload.statement_month == "2024-01"


def test_annual_amount_upsert_replaces_row(session):
    prop = _property(session)
    taxes = _category(session, "Property tax", CategoryType.expense)
    service = AnnualAmountService(session)

    first = service.upsert(
        prop.id, AnnualAmountIn(category_id=taxes.id, year=2024, amount_cents=250000)
    )
    second = service.upsert(
        prop.id, AnnualAmountIn(category_id=taxes.id, year=2024, amount_cents=260000)
    )

    assert first.id == second.id
    assert second.amount_cents == -260000
    assert len(service.list_for_property(prop.id)) == 1


def test_loan_balances_sum_latest_snapshot_per_label(session):
    prop = _property(session)
    service = LoanSnapshotService(session)
    service.create(
        prop.id, LoanSnapshotIn(as_of_date=date(2024, 1, 1), balance_cents=300000)
    )
    service.create(
        prop.id, LoanSnapshotIn(as_of_date=date(2024, 6, 1), balance_cents=290000)
    )
    service.create(
        prop.id,
        LoanSnapshotIn(loan_label="HELOC", as_of_date=date(2024, 3, 1), balance_cents=5000),
    )
    service.create(
        prop.id, LoanSnapshotIn(as_of_date=date(2025, 1, 1), balance_cents=1)
    )

    assert service.balance_as_of(prop.id, date(2024, 12, 31)) == 295000
    assert service.balance_as_of(prop.id, date(2023, 12, 31)) == 0


def test_loan_balance_cannot_be_negative():
    with pytest.raises(ValidationError):
        LoanSnapshotIn(as_of_date=date(2024, 1, 1), balance_cents=-1)
