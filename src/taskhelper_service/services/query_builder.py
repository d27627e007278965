"""Filter objects and the single query-construction function used by list endpoints."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


@dataclass(frozen=True)
class Condition:
    """One WHERE predicate: column = value, or column IN (values)."""

    column: str
    value: Any
    op: Literal["=", "in"] = "="


@dataclass(frozen=True)
class PageQuery:
    """
    A keyset-paginated listing over one table.

    Rows are ordered by (created_at, id) descending. ``cursor`` is the id of
    the last row of the previous page; the next page starts strictly after it.
    """

    table: str
    conditions: tuple[Condition, ...] = field(default_factory=tuple)
    cursor: str | None = None
    limit: int = 20

    def where(self, column: str, value: Any) -> PageQuery:
        """Return a copy with an equality predicate added, skipping None values."""
        if value is None:
            return self
        return PageQuery(
            table=self.table,
            conditions=(*self.conditions, Condition(column, value)),
            cursor=self.cursor,
            limit=self.limit,
        )

    def where_in(self, column: str, values: list[Any] | tuple[Any, ...]) -> PageQuery:
        """Return a copy with an IN predicate added."""
        return PageQuery(
            table=self.table,
            conditions=(*self.conditions, Condition(column, tuple(values), "in")),
            cursor=self.cursor,
            limit=self.limit,
        )


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        msg = f"Invalid SQL identifier: {name!r}"
        raise ValueError(msg)
    return name


def build_page_query(query: PageQuery) -> tuple[str, list[object]]:
    """
    Build the SELECT for one page of results.

    One extra row beyond ``limit`` is requested so the caller can tell whether
    a further page exists.
    """
    if query.limit < 1:
        msg = "limit must be >= 1"
        raise ValueError(msg)

    table = _check_identifier(query.table)
    clauses: list[str] = []
    params: list[object] = []

    for condition in query.conditions:
        column = _check_identifier(condition.column)
        if condition.op == "in":
            values = tuple(condition.value)
            if not values:
                clauses.append("0")
                continue
            placeholders = ", ".join("?" for _ in values)
            clauses.append(f"{column} IN ({placeholders})")
            params.extend(values)
        else:
            clauses.append(f"{column} = ?")
            params.append(condition.value)

    if query.cursor is not None:
        clauses.append(f"(created_at, id) < (SELECT created_at, id FROM {table} WHERE id = ?)")
        params.append(query.cursor)

    sql = f"SELECT * FROM {table}"  # nosec B608
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
    params.append(query.limit + 1)
    return sql, params


def split_page(
    rows: list[dict[str, Any]],
    limit: int,
) -> tuple[list[dict[str, Any]], str | None]:
    """Trim the look-ahead row and compute the next cursor."""
    items = rows[:limit]
    next_cursor = str(items[-1]["id"]) if len(rows) > limit and items else None
    return items, next_cursor
