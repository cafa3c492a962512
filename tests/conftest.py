"""Common test fixtures for the Todo MCP server."""

import datetime
import tempfile
from pathlib import Path

import pytest

from todo_mcp.config import config
from todo_mcp.models.db_models import init_db
from todo_mcp.models.schema import Category, Todo
from todo_mcp.services.provisioning import ProvisioningService
from todo_mcp.services.search_service import SearchService
from todo_mcp.services.stats_service import StatsService
from todo_mcp.services.todo_service import TodoService
from todo_mcp.storage.category_repository import CategoryRepository
from todo_mcp.storage.search_repository import SearchRepository
from todo_mcp.storage.todo_repository import TodoRepository

USER = "user-alice"
OTHER_USER = "user-bob"


@pytest.fixture
def temp_db_dir():
    """Create a temporary directory for the database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_db_dir, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "database_path", temp_db_dir / "test_todos.db")
    monkeypatch.setattr(config, "in_memory_db", False)
    monkeypatch.setattr(config, "retry_delay", 0.0)
    monkeypatch.setattr(config, "user_id", USER)
    yield config


@pytest.fixture
def engine(test_config):
    """A fresh file-backed database per test."""
    engine = init_db()
    yield engine
    engine.dispose()


@pytest.fixture
def todo_repository(engine):
    return TodoRepository(engine=engine)


@pytest.fixture
def category_repository(engine):
    return CategoryRepository(engine=engine)


@pytest.fixture
def search_repository(engine):
    return SearchRepository(engine=engine)


@pytest.fixture
def todo_service(todo_repository, category_repository):
    """Create a test TodoService sharing the test engine."""
    return TodoService(
        repository=todo_repository, category_repository=category_repository
    )


@pytest.fixture
def search_service(search_repository):
    return SearchService(repository=search_repository)


@pytest.fixture
def stats_service(engine):
    return StatsService(engine=engine)


@pytest.fixture
def provisioning_service(engine):
    return ProvisioningService(engine=engine)


@pytest.fixture
def make_todo(todo_repository):
    """Factory inserting todos with controllable created_at.

    Each call without an explicit ``created_at`` is one second newer than
    the previous one, so ordering by creation time is deterministic.
    """
    base = datetime.datetime(2026, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
    counter = {"n": 0}

    def _make(title, user_id=USER, category_id=None, is_complete=False, created_at=None):
        counter["n"] += 1
        if created_at is None:
            created_at = base + datetime.timedelta(seconds=counter["n"])
        todo = Todo(
            user_id=user_id,
            title=title,
            category_id=category_id,
            is_complete=is_complete,
            created_at=created_at,
            updated_at=created_at,
        )
        return todo_repository.create(user_id, todo)

    return _make


@pytest.fixture
def make_category(category_repository):
    """Factory inserting categories."""

    def _make(name, user_id=USER, color="#3B82F6"):
        return category_repository.create(
            user_id, Category(user_id=user_id, name=name, color=color)
        )

    return _make
