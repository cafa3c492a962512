"""Tests for the data models and exception hierarchy."""
import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from todo_mcp.exceptions import (ErrorCode, NotFoundOrDeniedError,
                                 PartialFailureError, PermissionDeniedError,
                                 TodoError, TransientNetworkError,
                                 VersionConflictError)
from todo_mcp.models.schema import (BulkResult, Category, CursorPage, Todo,
                                    ensure_timezone_aware, generate_id,
                                    to_storage_time)


class TestTodoModel:
    """Tests for the Todo model."""

    def test_defaults(self):
        todo = Todo(user_id="u1", title="Buy milk")

        assert todo.version == 1
        assert todo.is_complete is False
        assert todo.category_id is None
        assert todo.created_at.tzinfo is not None
        assert len(todo.id) == 36

    def test_blank_title_rejected(self):
        with pytest.raises(PydanticValidationError):
            Todo(user_id="u1", title="  ")

    def test_version_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            Todo(user_id="u1", title="x", version=0)

    def test_extra_fields_forbidden(self):
        with pytest.raises(PydanticValidationError):
            Todo(user_id="u1", title="x", priority="high")


class TestCategoryModel:
    """Tests for the Category model."""

    def test_color_is_normalized(self):
        assert Category(user_id="u1", name="Work", color="#ef4444").color == "#EF4444"

    @pytest.mark.parametrize("color", ["red", "#FFF", "EF4444", "#GGGGGG"])
    def test_bad_color(self, color):
        with pytest.raises(PydanticValidationError):
            Category(user_id="u1", name="Work", color=color)

    def test_name_is_trimmed(self):
        assert Category(user_id="u1", name="  Work ").name == "Work"


class TestTimeHelpers:
    """Tests for timezone helpers."""

    def test_naive_is_treated_as_utc(self):
        naive = datetime.datetime(2026, 1, 1, 12, 0)
        assert ensure_timezone_aware(naive).tzinfo == datetime.timezone.utc

    def test_storage_time_is_naive_utc(self):
        plus_two = datetime.timezone(datetime.timedelta(hours=2))
        aware = datetime.datetime(2026, 1, 1, 14, 0, tzinfo=plus_two)

        assert to_storage_time(aware) == datetime.datetime(2026, 1, 1, 12, 0)

    def test_ids_are_unique(self):
        assert generate_id() != generate_id()


class TestResults:
    """Tests for structured results."""

    def test_bulk_result_default_key(self):
        assert BulkResult(success=True, affected_count=2).to_dict()["updated_count"] == 2

    def test_empty_cursor_page(self):
        assert CursorPage(items=[], has_more=False).next_cursor is None


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_all_are_todo_errors(self):
        for error in (
            NotFoundOrDeniedError("todo", "t1"),
            VersionConflictError("t1", 1, 2),
            PartialFailureError("bulk_delete", 3, 1),
            PermissionDeniedError(),
            TransientNetworkError("locked"),
        ):
            assert isinstance(error, TodoError)

    def test_to_dict(self):
        data = VersionConflictError("t1", 1, 3).to_dict()

        assert data["error"] == "VersionConflictError"
        assert data["code"] == ErrorCode.VERSION_CONFLICT.value
        assert data["code_name"] == "VERSION_CONFLICT"
        assert data["details"] == {
            "todo_id": "t1", "expected_version": 1, "actual_version": 3
        }

    def test_str_includes_code(self):
        assert str(PermissionDeniedError()) == "[PERMISSION_DENIED] Not authenticated"

    def test_not_found_hides_ownership(self):
        error = NotFoundOrDeniedError("todo", "t1")
        assert error.message == "Todo not found or access denied"

    def test_partial_failure_truncates_details(self):
        missing = [f"id-{i}" for i in range(15)]

        error = PartialFailureError("bulk_delete", 20, 5, missing_ids=missing)

        assert len(error.details["missing_ids"]) == 10
        assert error.missing_ids == missing

    def test_partial_failure_rejects_negative_counts(self):
        with pytest.raises(ValueError):
            PartialFailureError("bulk_delete", -1, 0)

    def test_only_transient_errors_are_retryable(self):
        assert TransientNetworkError("locked").retryable
        assert not VersionConflictError("t1", 1).retryable
        assert not PermissionDeniedError().retryable
