"""Tests for optimistic-lock single-row updates."""
import pytest

from tests.conftest import OTHER_USER, USER
from todo_mcp.exceptions import NotFoundOrDeniedError, VersionConflictError


def _update(service, todo_id, expected_version, user_id=USER, title="Updated",
            is_complete=True, category_id=None):
    return service.update_todo_with_version(
        user_id, todo_id, title=title, is_complete=is_complete,
        category_id=category_id, expected_version=expected_version,
    )


class TestUpdateWithVersion:
    """Tests for TodoService.update_todo_with_version."""

    def test_matching_version_succeeds(self, todo_service, make_todo):
        """The update applies and reports old version + 1."""
        todo = make_todo("Buy milk")

        result = _update(todo_service, todo.id, expected_version=1)

        assert result.success
        assert result.new_version == 2
        assert result.error_message is None
        stored = todo_service.get_todo(USER, todo.id)
        assert stored.title == "Updated"
        assert stored.is_complete is True

    def test_stale_version_conflicts(self, todo_service, make_todo):
        """A second writer holding the old version gets VERSION_CONFLICT."""
        todo = make_todo("Buy milk")

        first = _update(todo_service, todo.id, expected_version=1, title="First")
        second = _update(todo_service, todo.id, expected_version=1, title="Second")

        assert first.success
        assert not second.success
        assert second.is_conflict
        assert second.error_code == "VERSION_CONFLICT"
        assert second.new_version == 0
        assert todo_service.get_todo(USER, todo.id).title == "First"

    def test_conflicting_update_changes_nothing(self, todo_service, make_todo):
        """A rejected update leaves the version untouched."""
        todo = make_todo("Buy milk")
        _update(todo_service, todo.id, expected_version=5)
        assert todo_service.get_todo(USER, todo.id).version == 1

    def test_missing_todo_is_not_found(self, todo_service):
        result = _update(todo_service, "does-not-exist", expected_version=1)
        assert not result.success
        assert result.error_code == "NOT_FOUND_OR_DENIED"

    def test_other_users_todo_is_not_found(self, todo_service, make_todo):
        """Another user's todo looks exactly like a missing one."""
        todo = make_todo("Private", user_id=OTHER_USER)

        result = _update(todo_service, todo.id, expected_version=1)

        assert result.error_code == "NOT_FOUND_OR_DENIED"
        assert todo_service.get_todo(OTHER_USER, todo.id).title == "Private"

    def test_foreign_category_is_rejected(self, todo_service, make_todo, make_category):
        """Moving into another user's category fails validation."""
        todo = make_todo("Buy milk")
        foreign = make_category("Work", user_id=OTHER_USER)

        result = _update(todo_service, todo.id, expected_version=1, category_id=foreign.id)

        assert not result.success
        assert result.error_code == "CATEGORY_NOT_FOUND"
        assert todo_service.get_todo(USER, todo.id).version == 1

    def test_own_category_is_accepted(self, todo_service, make_todo, make_category):
        todo = make_todo("Buy milk")
        work = make_category("Work")

        result = _update(todo_service, todo.id, expected_version=1, category_id=work.id)

        assert result.success
        assert todo_service.get_todo(USER, todo.id).category_id == work.id

    def test_blank_title_is_rejected(self, todo_service, make_todo):
        todo = make_todo("Buy milk")
        result = _update(todo_service, todo.id, expected_version=1, title="   ")
        assert result.error_code == "TODO_TITLE_REQUIRED"

    def test_result_serializes(self, todo_service, make_todo):
        todo = make_todo("Buy milk")
        result = _update(todo_service, todo.id, expected_version=1)
        assert result.to_dict() == {
            "success": True,
            "new_version": 2,
            "error": None,
            "error_code": None,
        }


class TestRepositoryErrors:
    """The repository raises; the service converts."""

    def test_conflict_reports_actual_version(self, todo_repository, make_todo):
        todo = make_todo("Buy milk")
        todo_repository.update_with_version(
            USER, todo.id, title="a", is_complete=False, category_id=None,
            expected_version=1,
        )

        with pytest.raises(VersionConflictError) as exc_info:
            todo_repository.update_with_version(
                USER, todo.id, title="b", is_complete=False, category_id=None,
                expected_version=1,
            )

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2

    def test_missing_raises_not_found(self, todo_repository):
        with pytest.raises(NotFoundOrDeniedError):
            todo_repository.update_with_version(
                USER, "missing", title="a", is_complete=False, category_id=None,
                expected_version=1,
            )

    def test_update_uses_model_version(self, todo_repository, make_todo):
        """Repository.update treats the model's version as the expectation."""
        todo = make_todo("Buy milk")
        updated = todo_repository.update(USER, todo.model_copy(update={"title": "Buy eggs"}))
        assert updated.version == 2
        assert updated.title == "Buy eggs"

        with pytest.raises(VersionConflictError):
            todo_repository.update(USER, todo)
