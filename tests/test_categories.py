from datetime import date

import pytest

from category_tree import CategoryDeleteAction
from errors import (
    CycleDetectedError,
    DuplicateNameError,
    InvalidArgumentError,
    NotFoundError,
    TypeLockedError,
    TypeMismatchError,
)
from models import Category, CategoryType
from schemas import CategoryIn, PropertyIn, RecurringTransactionIn, TransactionIn
from services import (
    CategoryService,
    PropertyService,
    RecurringTransactionService,
    TransactionService,
)


def _category(session, name, type_=CategoryType.expense, parent_id=None) -> Category:
    return CategoryService(session).create(
        CategoryIn(name=name, type=type_, parent_id=parent_id)
    )


def test_create_child_requires_matching_parent_type(session):
    utilities = _category(session, "Utilities")
    child = _category(session, "Water", parent_id=utilities.id)
    assert child.parent_id == utilities.id

    with pytest.raises(TypeMismatchError):
        _category(session, "Rent", CategoryType.income, parent_id=utilities.id)


def test_create_with_unknown_parent(session):
    with pytest.raises(NotFoundError):
        _category(session, "Orphan", parent_id=999)


def test_duplicate_names_are_rejected_case_insensitively(session):
    _category(session, "Repairs")
    with pytest.raises(DuplicateNameError):
        _category(session, "  repairs ")
    # same name under another type is allowed
    _category(session, "Repairs", CategoryType.income)


def test_reparent_under_descendant_is_a_cycle(session):
    a = _category(session, "A")
    b = _category(session, "B", parent_id=a.id)
    c = _category(session, "C", parent_id=b.id)
    service = CategoryService(session)

    with pytest.raises(CycleDetectedError):
        service.update(a.id, CategoryIn(name="A", type=CategoryType.expense, parent_id=c.id))
    with pytest.raises(CycleDetectedError):
        service.update(a.id, CategoryIn(name="A", type=CategoryType.expense, parent_id=a.id))

    session.refresh(a)
    assert a.parent_id is None


def test_cycle_is_reported_before_type_mismatch(session):
    a = _category(session, "A")
    b = _category(session, "B", parent_id=a.id)
    c = _category(session, "C", parent_id=b.id)

    with pytest.raises(CycleDetectedError):
        CategoryService(session).update(
            a.id, CategoryIn(name="A", type=CategoryType.income, parent_id=c.id)
        )


def test_reparent_to_sibling_branch(session):
    a = _category(session, "A")
    b = _category(session, "B")
    c = _category(session, "C", parent_id=a.id)

    updated = CategoryService(session).update(
        c.id, CategoryIn(name="C", type=CategoryType.expense, parent_id=b.id)
    )
    assert updated.parent_id == b.id


def test_type_change_blocked_with_children(session):
    parent = _category(session, "Insurance")
    _category(session, "Flood", parent_id=parent.id)

    with pytest.raises(TypeLockedError):
        CategoryService(session).update(
            parent.id, CategoryIn(name="Insurance", type=CategoryType.income)
        )


def test_type_change_blocked_with_transactions(session):
    prop = PropertyService(session).create(PropertyIn(nickname="Duplex"))
    rent = _category(session, "Rent", CategoryType.income)
    TransactionService(session).create(
        prop.id, TransactionIn(date=date(2024, 1, 1), category_id=rent.id, amount_cents=100)
    )

    with pytest.raises(TypeLockedError):
        CategoryService(session).update(
            rent.id, CategoryIn(name="Rent", type=CategoryType.expense)
        )


def test_type_change_allowed_when_unused(session):
    misc = _category(session, "Misc")
    updated = CategoryService(session).update(
        misc.id, CategoryIn(name="Misc", type=CategoryType.income)
    )
    assert updated.type == CategoryType.income


def test_delete_unused_category_is_hard_delete(session):
    misc = _category(session, "Misc")
    service = CategoryService(session)

    assert service.delete(misc.id) == CategoryDeleteAction.hard_delete
    with pytest.raises(NotFoundError):
        service.get(misc.id)


def test_delete_used_category_deactivates(session):
    prop = PropertyService(session).create(PropertyIn(nickname="Cabin"))
    repairs = _category(session, "Repairs")
    TransactionService(session).create(
        prop.id,
        TransactionIn(date=date(2024, 3, 1), category_id=repairs.id, amount_cents=5000),
    )
    service = CategoryService(session)

    assert service.resolve_delete(repairs.id) == CategoryDeleteAction.deactivate
    assert service.delete(repairs.id) == CategoryDeleteAction.deactivate
    assert service.get(repairs.id).active is False


def test_delete_category_referenced_by_rule_deactivates(session):
    prop = PropertyService(session).create(PropertyIn(nickname="Cabin"))
    hoa = _category(session, "HOA")
    RecurringTransactionService(session).create(
        prop.id,
        RecurringTransactionIn(category_id=hoa.id, amount_cents=2500, start_month="2024-01"),
    )

    assert CategoryService(session).delete(hoa.id) == CategoryDeleteAction.deactivate


def test_deactivate_requires_inactive_children(session):
    parent = _category(session, "Utilities")
    child = _category(session, "Gas", parent_id=parent.id)
    service = CategoryService(session)

    with pytest.raises(InvalidArgumentError):
        service.set_active(parent.id, False)

    service.set_active(child.id, False)
    assert service.set_active(parent.id, False).active is False


def test_list_tree_orders_by_type_then_name(session):
    utilities = _category(session, "Utilities")
    _category(session, "Water", parent_id=utilities.id)
    _category(session, "Electric", parent_id=utilities.id)
    _category(session, "Rent", CategoryType.income)

    tree = [(c.name, depth) for c, depth in CategoryService(session).list_tree()]
    assert tree == [
        ("Utilities", 0),
        ("Electric", 1),
        ("Water", 1),
        ("Rent", 0),
    ]
