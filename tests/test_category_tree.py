from dataclasses import dataclass
from typing import Optional

import pytest

from category_tree import (
    CategoryDeleteAction,
    compute_descendants,
    ensure_parent_type,
    ensure_type_change_allowed,
    ensure_valid_parent,
    normalize_name,
    resolve_delete,
    walk_tree,
)
from errors import CycleDetectedError, TypeLockedError, TypeMismatchError
from models import CategoryType


@dataclass
class Node:
    id: int
    parent_id: Optional[int]


def _tree() -> list[Node]:
    # 1 -> 2 -> 4, 1 -> 3, 5 standalone
    return [Node(1, None), Node(2, 1), Node(3, 1), Node(4, 2), Node(5, None)]


def test_descendants_exclude_root_and_cover_all_levels():
    assert compute_descendants(_tree(), 1) == {2, 3, 4}
    assert compute_descendants(_tree(), 4) == set()
    assert compute_descendants(_tree(), 99) == set()


def test_descendants_terminate_on_corrupt_cycle():
    nodes = [Node(1, 3), Node(2, 1), Node(3, 2)]
    assert compute_descendants(nodes, 1) == {2, 3}


def test_descendants_handle_deep_chains():
    nodes = [Node(1, None)] + [Node(i, i - 1) for i in range(2, 5001)]
    assert len(compute_descendants(nodes, 1)) == 4999


def test_parent_cannot_be_self():
    with pytest.raises(CycleDetectedError):
        ensure_valid_parent(_tree(), 2, 2)


def test_parent_cannot_be_descendant():
    with pytest.raises(CycleDetectedError):
        ensure_valid_parent(_tree(), 1, 4)


def test_valid_reparent_passes():
    ensure_valid_parent(_tree(), 4, 3)
    ensure_valid_parent(_tree(), 2, None)


def test_parent_type_must_match():
    ensure_parent_type(CategoryType.expense, CategoryType.expense)
    with pytest.raises(TypeMismatchError):
        ensure_parent_type(CategoryType.income, CategoryType.expense)


def test_type_change_locked_by_usage():
    ensure_type_change_allowed(
        CategoryType.income, CategoryType.expense, child_count=0, transaction_count=0
    )
    ensure_type_change_allowed(
        CategoryType.income, CategoryType.income, child_count=3, transaction_count=9
    )
    with pytest.raises(TypeLockedError):
        ensure_type_change_allowed(
            CategoryType.income, CategoryType.expense, child_count=1, transaction_count=0
        )
    with pytest.raises(TypeLockedError):
        ensure_type_change_allowed(
            CategoryType.income, CategoryType.expense, child_count=0, transaction_count=1
        )


@pytest.mark.parametrize(
    "children,transactions,other,expected",
    [
        (0, 0, 0, CategoryDeleteAction.hard_delete),
        (1, 0, 0, CategoryDeleteAction.deactivate),
        (0, 4, 0, CategoryDeleteAction.deactivate),
        (0, 0, 2, CategoryDeleteAction.deactivate),
    ],
)
def test_resolve_delete(children, transactions, other, expected):
    assert (
        resolve_delete(
            child_count=children, transaction_count=transactions, other_references=other
        )
        == expected
    )


def test_normalize_name_ignores_case_and_spacing():
    assert normalize_name("  Property   Tax ") == normalize_name("property tax")


def test_walk_tree_is_depth_first_with_depths():
    entries = walk_tree(_tree())
    assert [(e.id, e.depth) for e in entries] == [(1, 0), (2, 1), (4, 2), (3, 1), (5, 0)]


def test_walk_tree_treats_orphans_as_roots():
    entries = walk_tree([Node(7, 42), Node(8, 7)])
    assert [(e.id, e.depth) for e in entries] == [(7, 0), (8, 1)]
