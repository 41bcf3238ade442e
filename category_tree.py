"""Pure helpers over the category arena.

Categories are handled as a flat collection plus a ``parent_id -> children``
index; every traversal uses an explicit stack so depth is bounded only by
memory, and a corrupt (cyclic) parent chain cannot loop forever.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol

from errors import CycleDetectedError, TypeLockedError, TypeMismatchError


class CategoryNode(Protocol):
    id: int
    parent_id: Optional[int]


class CategoryDeleteAction(str, Enum):
    hard_delete = "hard_delete"
    deactivate = "deactivate"


@dataclass(frozen=True)
class TreeEntry:
    id: int
    depth: int


def build_children_index(
    categories: Iterable[CategoryNode],
) -> dict[Optional[int], list[int]]:
    index: dict[Optional[int], list[int]] = {}
    for category in categories:
        index.setdefault(category.parent_id, []).append(category.id)
    for children in index.values():
        children.sort()
    return index


def compute_descendants(categories: Iterable[CategoryNode], root_id: int) -> set[int]:
    """Every category below ``root_id``; never contains ``root_id`` itself."""
    index = build_children_index(categories)
    descendants: set[int] = set()
    stack = list(index.get(root_id, []))
    while stack:
        current = stack.pop()
        if current == root_id or current in descendants:
            continue
        descendants.add(current)
        stack.extend(index.get(current, []))
    return descendants


def ensure_valid_parent(
    categories: Iterable[CategoryNode], category_id: int, parent_id: Optional[int]
) -> None:
    if parent_id is None:
        return
    if parent_id == category_id:
        raise CycleDetectedError("A category cannot be its own parent")
    if parent_id in compute_descendants(categories, category_id):
        raise CycleDetectedError(
            "A category cannot be assigned to one of its descendants"
        )


def ensure_parent_type(parent_type, requested_type) -> None:
    if parent_type != requested_type:
        raise TypeMismatchError("Parent category type must match")


def ensure_type_change_allowed(
    current_type, requested_type, *, child_count: int, transaction_count: int
) -> None:
    if current_type == requested_type:
        return
    if child_count > 0 or transaction_count > 0:
        raise TypeLockedError(
            "Category type cannot change while it has transactions or children"
        )


def resolve_delete(
    *, child_count: int, transaction_count: int, other_references: int = 0
) -> CategoryDeleteAction:
    if child_count > 0 or transaction_count > 0 or other_references > 0:
        return CategoryDeleteAction.deactivate
    return CategoryDeleteAction.hard_delete


def normalize_name(name: str) -> str:
    return " ".join(name.split()).casefold()


def walk_tree(categories: Iterable[CategoryNode], sort_key=None) -> list[TreeEntry]:
    """Depth-first display order with depth, roots first.

    Nodes whose parent is missing from ``categories`` are treated as roots.
    """
    nodes = list(categories)
    known = {node.id for node in nodes}
    index: dict[Optional[int], list[CategoryNode]] = {}
    for node in nodes:
        parent = node.parent_id if node.parent_id in known else None
        index.setdefault(parent, []).append(node)
    key = sort_key or (lambda node: node.id)
    for children in index.values():
        children.sort(key=key)

    entries: list[TreeEntry] = []
    seen: set[int] = set()
    stack = [(node, 0) for node in reversed(index.get(None, []))]
    while stack:
        node, depth = stack.pop()
        if node.id in seen:
            continue
        seen.add(node.id)
        entries.append(TreeEntry(node.id, depth))
        for child in reversed(index.get(node.id, [])):
            stack.append((child, depth + 1))
    return entries
