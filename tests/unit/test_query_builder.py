"""Query builder tests."""

from __future__ import annotations

import pytest

from taskhelper_service.services.query_builder import PageQuery, build_page_query, split_page


@pytest.mark.unit
def test_unfiltered_query_orders_newest_first() -> None:
    sql, params = build_page_query(PageQuery("tasks", limit=10))
    assert sql == "SELECT * FROM tasks ORDER BY created_at DESC, id DESC LIMIT ?"
    assert params == [11]


@pytest.mark.unit
def test_where_skips_none_values() -> None:
    query = PageQuery("bookings").where("status", None).where("client_id", "u-1")
    sql, params = build_page_query(query)
    assert "status" not in sql
    assert "client_id = ?" in sql
    assert params[0] == "u-1"


@pytest.mark.unit
def test_conditions_and_cursor_combine() -> None:
    query = (
        PageQuery("tasks", cursor="t-9", limit=5)
        .where("client_id", "u-1")
        .where_in("state", ["matching", "posted"])
    )
    sql, params = build_page_query(query)
    assert "client_id = ? AND state IN (?, ?) AND (created_at, id) < " in sql
    assert params == ["u-1", "matching", "posted", "t-9", 6]


@pytest.mark.unit
def test_empty_in_list_matches_nothing() -> None:
    sql, params = build_page_query(PageQuery("tasks").where_in("state", []))
    assert " WHERE 0 " in sql
    assert params == [21]


@pytest.mark.unit
def test_queries_are_immutable() -> None:
    base = PageQuery("tasks")
    filtered = base.where("state", "draft")
    assert base.conditions == ()
    assert len(filtered.conditions) == 1


@pytest.mark.unit
@pytest.mark.parametrize("name", ["tasks; DROP TABLE tasks", "Tasks", "1tasks"])
def test_unsafe_identifiers_are_rejected(name: str) -> None:
    with pytest.raises(ValueError, match="Invalid SQL identifier"):
        build_page_query(PageQuery(name))


@pytest.mark.unit
def test_zero_limit_is_rejected() -> None:
    with pytest.raises(ValueError, match="limit"):
        build_page_query(PageQuery("tasks", limit=0))


@pytest.mark.unit
class TestSplitPage:
    def test_lookahead_row_yields_cursor(self) -> None:
        rows = [{"id": "c"}, {"id": "b"}, {"id": "a"}]
        items, cursor = split_page(rows, 2)
        assert [row["id"] for row in items] == ["c", "b"]
        assert cursor == "b"

    def test_last_page_has_no_cursor(self) -> None:
        items, cursor = split_page([{"id": "a"}], 2)
        assert len(items) == 1
        assert cursor is None
