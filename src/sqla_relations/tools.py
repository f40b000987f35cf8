"""Row grouping, key collection and naming helpers."""

from __future__ import annotations

import re
from collections.abc import Callable, Hashable, Iterable
from functools import lru_cache
from typing import Any, TypeVar

import sqlalchemy as sa


K = TypeVar("K", bound=Hashable)
R = TypeVar("R")

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def group_rows(rows: Iterable[R], key: Callable[[R], K]) -> dict[K, list[R]]:
    """Group *rows* by ``key(row)`` in a single pass.

    Rows do not need to be sorted; within a group they keep their input order.

    Example:
        >>> group_rows([(1, "a"), (2, "b"), (1, "c")], key=lambda r: r[0])
        {1: [(1, 'a'), (1, 'c')], 2: [(2, 'b')]}
    """
    groups: dict[K, list[R]] = {}
    for row in rows:
        groups.setdefault(key(row), []).append(row)

    return groups


def unique_values(values: Iterable[Any]) -> list[Any]:
    """Drop ``None`` and duplicates from *values*, keeping first-seen order."""
    seen: set[Any] = set()
    out: list[Any] = []
    for value in values:
        if value is None or value in seen:
            continue
        seen.add(value)
        out.append(value)

    return out


@lru_cache(maxsize=256)
def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_case(name: str) -> str:
    """Convert a class name such as ``BlogPost`` to ``blog_post`` (cached)."""
    return _snake_case(name)


def _find_from_by_name(root: sa.FromClause, name: str) -> sa.FromClause | None:
    """Find a table/alias called *name* in the FROM tree (iterative)."""
    stack: list[sa.FromClause] = [root]
    while stack:
        node = stack.pop()
        if isinstance(node, sa.Join):
            stack.append(node.left)
            stack.append(node.right)
            continue
        if getattr(node, "name", None) == name:
            return node
        element = getattr(node, "element", None)
        if element is not None:
            stack.append(element)
    return None


def resolve_column(
    query: sa.Select[Any],
    ref: str,
    *,
    table: sa.FromClause | None = None,
) -> sa.ColumnElement[Any]:
    """Resolve a column reference against *query*.

    ``ref`` is either a bare key, looked up on *table* (the model table of a
    query builder), or ``"table.column"``, looked up on the matching FROM
    element of *query* (joined through-tables included).

    Raises ``ValueError`` if the table or the column cannot be found.
    """
    table_name, sep, col_name = ref.rpartition(".")
    if not sep:
        if table is None:
            raise ValueError(f"Expected 'table.column' format, got {ref!r}")
        try:
            return table.c[col_name]
        except KeyError:
            raise ValueError(
                f"Column {col_name!r} not found on {getattr(table, 'name', table)!r}. "
                f"Available: {[c.key for c in table.c]}"
            ) from None

    for root in query.get_final_froms():
        found = _find_from_by_name(root, table_name)
        if found is not None and hasattr(found, "c"):
            try:
                return found.c[col_name]
            except KeyError:
                raise ValueError(
                    f"Column {col_name!r} not found in {table_name!r}. "
                    f"Available: {[c.key for c in found.c]}"
                ) from None
    raise ValueError(f"Table {table_name!r} not found in query")
