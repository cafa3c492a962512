"""Tests for store-maintained todo versioning and the storage invariants.

These tests cover:
- version starts at 1 and every UPDATE bumps it by exactly one
- the bump cannot be bypassed or forged by raw SQL
- user_id is immutable and categories must belong to the todo owner
"""
import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from tests.conftest import OTHER_USER, USER


class TestVersionTrigger:
    """Tests for the todos_version_bump trigger."""

    def test_new_todo_starts_at_version_one(self, make_todo, todo_repository):
        """A freshly created todo has version 1."""
        todo = make_todo("Buy milk")
        assert todo.version == 1
        assert todo_repository.get(USER, todo.id).version == 1

    def test_update_bumps_version_and_updated_at(self, make_todo, todo_repository):
        """A versioned update increments version and refreshes updated_at."""
        todo = make_todo("Buy milk")

        new_version = todo_repository.update_with_version(
            USER, todo.id, title="Buy oat milk", is_complete=False,
            category_id=None, expected_version=1,
        )

        stored = todo_repository.get(USER, todo.id)
        assert new_version == 2
        assert stored.version == 2
        assert stored.title == "Buy oat milk"
        assert stored.updated_at > todo.updated_at

    def test_raw_update_is_versioned(self, engine, make_todo, todo_repository):
        """Writes that bypass the repository still bump the version."""
        todo = make_todo("Buy milk")
        with engine.begin() as conn:
            conn.execute(
                text("UPDATE todos SET is_complete = 1 WHERE id = :id"), {"id": todo.id}
            )
            conn.execute(
                text("UPDATE todos SET title = 'Buy bread' WHERE id = :id"), {"id": todo.id}
            )

        assert todo_repository.get(USER, todo.id).version == 3

    def test_version_cannot_be_forged(self, engine, make_todo, todo_repository):
        """Setting version directly still yields old version + 1."""
        todo = make_todo("Buy milk")
        with engine.begin() as conn:
            conn.execute(
                text("UPDATE todos SET version = 99 WHERE id = :id"), {"id": todo.id}
            )

        assert todo_repository.get(USER, todo.id).version == 2

    def test_noop_update_still_bumps(self, make_todo, todo_repository):
        """Every successful UPDATE counts, even with identical values."""
        todo = make_todo("Buy milk")
        for expected in (1, 2, 3):
            todo_repository.update_with_version(
                USER, todo.id, title="Buy milk", is_complete=False,
                category_id=None, expected_version=expected,
            )
        assert todo_repository.get(USER, todo.id).version == 4

    def test_bulk_update_bumps_each_row_once(self, make_todo, todo_repository):
        """Bulk writes bump every touched row exactly once."""
        todos = [make_todo(f"Task {i}") for i in range(3)]
        todo_repository.bulk_update_complete(USER, [t.id for t in todos], True)

        for todo in todos:
            assert todo_repository.get(USER, todo.id).version == 2


class TestStorageInvariants:
    """Tests for the ownership triggers."""

    def test_user_id_is_immutable(self, engine, make_todo):
        """Reassigning a todo to another user is rejected by the store."""
        todo = make_todo("Buy milk")
        with pytest.raises(IntegrityError):
            with engine.begin() as conn:
                conn.execute(
                    text("UPDATE todos SET user_id = :other WHERE id = :id"),
                    {"other": OTHER_USER, "id": todo.id},
                )

    def test_insert_with_foreign_category_is_rejected(self, engine, make_category):
        """A todo may not reference another user's category."""
        foreign = make_category("Work", user_id=OTHER_USER)
        with pytest.raises(IntegrityError):
            with engine.begin() as conn:
                conn.execute(
                    text(
                        "INSERT INTO todos (id, user_id, title, is_complete, category_id, "
                        "created_at, updated_at, version) VALUES "
                        "('t1', :user, 'x', 0, :cat, '2026-01-01 00:00:00.000000', "
                        "'2026-01-01 00:00:00.000000', 1)"
                    ),
                    {"user": USER, "cat": foreign.id},
                )

    def test_update_to_foreign_category_is_rejected(self, engine, make_todo, make_category):
        """Moving a todo into another user's category is rejected."""
        todo = make_todo("Buy milk")
        foreign = make_category("Work", user_id=OTHER_USER)
        with pytest.raises(IntegrityError):
            with engine.begin() as conn:
                conn.execute(
                    text("UPDATE todos SET category_id = :cat WHERE id = :id"),
                    {"cat": foreign.id, "id": todo.id},
                )

    def test_category_names_unique_per_user(self, engine, make_category):
        """The (user_id, name) pair is unique at the store level."""
        make_category("Work")
        with pytest.raises(IntegrityError):
            with engine.begin() as conn:
                conn.execute(
                    text(
                        "INSERT INTO categories (id, user_id, name, color, created_at, "
                        "updated_at) VALUES ('c2', :user, 'Work', '#000000', "
                        "'2026-01-01 00:00:00.000000', '2026-01-01 00:00:00.000000')"
                    ),
                    {"user": USER},
                )
