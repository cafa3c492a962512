"""Tests for keyset (cursor) pagination on created_at."""
import datetime

import pytest

from tests.conftest import USER
from todo_mcp.exceptions import ErrorCode, SearchError
from todo_mcp.services.search_service import parse_cursor


class TestCursorPagination:
    """Tests for SearchService.search_cursor."""

    def test_pages_through_everything_once(self, search_service, make_todo):
        created = [make_todo(f"Task {i}") for i in range(25)]

        first = search_service.search_cursor(USER, limit=20)
        second = search_service.search_cursor(USER, cursor=first.next_cursor, limit=20)

        assert len(first.items) == 20
        assert first.has_more is True
        assert first.items[0].title == "Task 24"
        assert len(second.items) == 5
        assert second.has_more is False

        seen = [row.id for row in first.items + second.items]
        assert len(set(seen)) == 25
        assert set(seen) == {todo.id for todo in created}

    def test_newest_first(self, search_service, make_todo):
        for i in range(3):
            make_todo(f"Task {i}")

        page = search_service.search_cursor(USER)

        created = [row.created_at for row in page.items]
        assert created == sorted(created, reverse=True)

    def test_exact_page_has_no_more(self, search_service, make_todo):
        for i in range(20):
            make_todo(f"Task {i}")

        page = search_service.search_cursor(USER, limit=20)

        assert len(page.items) == 20
        assert page.has_more is False

    def test_empty_page(self, search_service):
        page = search_service.search_cursor(USER)

        assert page.items == []
        assert page.has_more is False
        assert page.next_cursor is None

    def test_next_cursor_is_last_created_at(self, search_service, make_todo):
        for i in range(3):
            make_todo(f"Task {i}")

        page = search_service.search_cursor(USER, limit=2)

        assert page.next_cursor == page.items[-1].created_at

    def test_accepts_iso_string_cursor(self, search_service, make_todo):
        for i in range(6):
            make_todo(f"Task {i}")

        first = search_service.search_cursor(USER, limit=3)
        second = search_service.search_cursor(
            USER, cursor=first.next_cursor.isoformat(), limit=3
        )

        assert [row.title for row in second.items] == ["Task 2", "Task 1", "Task 0"]

    def test_accepts_zulu_suffix(self, search_service, make_todo):
        """Cursors from non-Python callers often end in Z instead of +00:00."""
        for i in range(4):
            make_todo(f"Task {i}")

        first = search_service.search_cursor(USER, limit=2)
        zulu = first.next_cursor.isoformat().replace("+00:00", "Z")
        second = search_service.search_cursor(USER, cursor=zulu, limit=2)

        assert [row.title for row in second.items] == ["Task 1", "Task 0"]

    def test_filters_by_term(self, search_service, make_todo):
        make_todo("Buy milk")
        make_todo("Bread")
        make_todo("milk")

        page = search_service.search_cursor(USER, term="milk")

        assert [row.title for row in page.items] == ["milk", "Buy milk"]

    def test_filters_by_category(self, search_service, make_todo, make_category):
        work = make_category("Work")
        make_todo("Report", category_id=work.id)
        make_todo("Groceries")

        page = search_service.search_cursor(USER, category_id=work.id)

        assert [row.title for row in page.items] == ["Report"]

    def test_invalid_cursor_is_rejected(self, search_service):
        with pytest.raises(SearchError) as exc_info:
            search_service.search_cursor(USER, cursor="yesterday-ish")

        assert exc_info.value.code == ErrorCode.SEARCH_INVALID_QUERY


class TestParseCursor:
    """Tests for parse_cursor."""

    @pytest.mark.parametrize(
        "raw", ["2026-01-01T00:00:00Z", "2026-01-01T00:00:00+00:00", "2026-01-01T00:00:00"]
    )
    def test_utc_spellings_agree(self, raw):
        expected = datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)
        assert parse_cursor(raw) == expected

    @pytest.mark.parametrize("raw", [None, ""])
    def test_missing_cursor(self, raw):
        assert parse_cursor(raw) is None
