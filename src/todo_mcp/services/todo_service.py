"""Service layer for todo and category operations."""

import logging
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from todo_mcp.config import config
from todo_mcp.exceptions import (ErrorCode, NotFoundOrDeniedError, StorageError,
                                 TodoError, TransientNetworkError,
                                 ValidationError)
from todo_mcp.models.db_models import init_db
from todo_mcp.models.schema import (DEFAULT_CATEGORY_COLOR, BulkResult,
                                    BulkStrategy, Category, Todo,
                                    VersionedUpdateResult)
from todo_mcp.storage.category_repository import CategoryRepository
from todo_mcp.storage.todo_repository import TodoRepository
from todo_mcp.utils import retry_with_backoff

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("locked", "busy")


def translate_storage_error(error: SQLAlchemyError, operation: str) -> TodoError:
    """Map a SQLAlchemy failure onto the TodoError hierarchy.

    SQLite lock contention becomes a retryable TransientNetworkError;
    constraint and trigger violations become ValidationError.
    """
    if isinstance(error, OperationalError):
        text = str(error.orig if error.orig is not None else error).lower()
        if any(marker in text for marker in _TRANSIENT_MARKERS):
            return TransientNetworkError(
                "Database is busy, try again",
                operation=operation,
                original_error=error,
            )
    if isinstance(error, IntegrityError):
        return ValidationError(
            f"Constraint violated during {operation}",
            value=str(error.orig)[:100] if error.orig is not None else None,
        )
    return StorageError(
        f"Storage failure during {operation}",
        operation=operation,
        code=ErrorCode.STORAGE_WRITE_FAILED,
        original_error=error,
    )


class TodoService:
    """Service for managing todos and categories.

    Bulk and optimistic-lock operations never raise: every failure comes
    back as a structured result with ``success=False``. The remaining
    operations raise TodoError subclasses.
    """

    def __init__(
        self,
        repository: Optional[TodoRepository] = None,
        category_repository: Optional[CategoryRepository] = None,
        engine: Optional[Any] = None,
    ):
        """Initialize the service.

        Args:
            repository: Todo storage backend. Created with defaults if None.
            category_repository: Category storage backend. Created with
                defaults if None.
            engine: Pre-configured SQLAlchemy engine shared by repositories
                created here. Only used for repositories that are None.
        """
        if engine is None and (repository is None or category_repository is None):
            engine = init_db()
        self.repository = repository or TodoRepository(engine=engine)
        self.category_repository = category_repository or CategoryRepository(
            engine=engine
        )

    def _call(self, operation: str, fn, *args, **kwargs):
        """Run a repository call, converting storage errors to TodoError.

        Transient failures are retried with exponential backoff before the
        error reaches the caller.
        """
        def attempt():
            try:
                return fn(*args, **kwargs)
            except SQLAlchemyError as e:
                logger.error(f"{operation} failed: {e}")
                raise translate_storage_error(e, operation) from e

        return retry_with_backoff(
            attempt, max_retries=config.max_retries, base_delay=config.retry_delay
        )

    # =========================================================================
    # Todos
    # =========================================================================

    def create_todo(
        self, user_id: str, title: str, category_id: Optional[str] = None
    ) -> Todo:
        """Create a todo.

        Raises:
            ValidationError: Blank title or a category the user does not own.
        """
        if not title or not title.strip():
            raise ValidationError(
                "Title is required", field="title", code=ErrorCode.TODO_TITLE_REQUIRED
            )
        todo = Todo(user_id=user_id, title=title.strip(), category_id=category_id)
        return self._call("create_todo", self.repository.create, user_id, todo)

    def get_todo(self, user_id: str, todo_id: str) -> Todo:
        """Get a todo.

        Raises:
            NotFoundOrDeniedError: If absent or owned by someone else.
        """
        todo = self._call("get_todo", self.repository.get, user_id, todo_id)
        if todo is None:
            raise NotFoundOrDeniedError("todo", todo_id)
        return todo

    def list_todos(self, user_id: str) -> List[Todo]:
        """List a user's todos, newest first."""
        return self._call("list_todos", self.repository.get_all, user_id)

    def delete_todo(self, user_id: str, todo_id: str) -> None:
        """Delete a todo permanently."""
        self._call("delete_todo", self.repository.delete, user_id, todo_id)

    def update_todo_with_version(
        self,
        user_id: str,
        todo_id: str,
        title: str,
        is_complete: bool,
        category_id: Optional[str],
        expected_version: int,
    ) -> VersionedUpdateResult:
        """Optimistic-lock update.

        Returns:
            ``success=True`` with the new version, or ``success=False`` with
            ``error_code`` NOT_FOUND_OR_DENIED, VERSION_CONFLICT,
            VALIDATION_FAILED, CATEGORY_NOT_FOUND or a storage code.
        """
        try:
            new_version = self._call(
                "update_todo_with_version",
                self.repository.update_with_version,
                user_id,
                todo_id,
                title=title,
                is_complete=is_complete,
                category_id=category_id,
                expected_version=expected_version,
            )
        except TodoError as e:
            return VersionedUpdateResult(
                success=False,
                new_version=0,
                error_message=e.message,
                error_code=e.code.name,
            )
        return VersionedUpdateResult(success=True, new_version=new_version)

    # =========================================================================
    # Bulk operations
    # =========================================================================

    def _bulk(self, operation: str, count_key: str, fn, *args, **kwargs) -> BulkResult:
        try:
            affected = self._call(operation, fn, *args, **kwargs)
        except TodoError as e:
            return BulkResult(
                success=False,
                affected_count=0,
                count_key=count_key,
                error_message=e.message,
                error_code=e.code.name,
            )
        return BulkResult(success=True, affected_count=affected, count_key=count_key)

    def bulk_update_complete(
        self,
        user_id: str,
        todo_ids: Sequence[str],
        is_complete: bool,
        strategy: Optional[BulkStrategy] = None,
    ) -> BulkResult:
        """Mark every listed todo complete or incomplete, or none of them."""
        return self._bulk(
            "bulk_update_complete",
            "updated_count",
            self.repository.bulk_update_complete,
            user_id,
            todo_ids,
            is_complete,
            strategy=strategy,
        )

    def bulk_change_category(
        self,
        user_id: str,
        todo_ids: Sequence[str],
        category_id: Optional[str],
        strategy: Optional[BulkStrategy] = None,
    ) -> BulkResult:
        """Move every listed todo to a category (None clears it), or none of them."""
        return self._bulk(
            "bulk_change_category",
            "updated_count",
            self.repository.bulk_change_category,
            user_id,
            todo_ids,
            category_id,
            strategy=strategy,
        )

    def bulk_delete(
        self,
        user_id: str,
        todo_ids: Sequence[str],
        strategy: Optional[BulkStrategy] = None,
    ) -> BulkResult:
        """Delete every listed todo, or none of them."""
        return self._bulk(
            "bulk_delete",
            "deleted_count",
            self.repository.bulk_delete,
            user_id,
            todo_ids,
            strategy=strategy,
        )

    # =========================================================================
    # Categories
    # =========================================================================

    @staticmethod
    def _build_category(user_id: str, name: str, color: Optional[str]) -> Category:
        try:
            return Category(
                user_id=user_id, name=name, color=color or DEFAULT_CATEGORY_COLOR
            )
        except ValueError as e:
            # pydantic's ValidationError subclasses ValueError
            raise ValidationError(f"Invalid category: {e}", field="category") from e

    def create_category(
        self, user_id: str, name: str, color: Optional[str] = None
    ) -> Category:
        """Create a category.

        Raises:
            ValidationError: Blank name, bad color, or a duplicate name.
        """
        category = self._build_category(user_id, name or "", color)
        return self._call(
            "create_category", self.category_repository.create, user_id, category
        )

    def get_category(self, user_id: str, category_id: str) -> Category:
        category = self._call(
            "get_category", self.category_repository.get, user_id, category_id
        )
        if category is None:
            raise NotFoundOrDeniedError("category", category_id)
        return category

    def list_categories(self, user_id: str) -> List[Category]:
        """List a user's categories ordered by name."""
        return self._call(
            "list_categories", self.category_repository.get_all, user_id
        )

    def update_category(
        self,
        user_id: str,
        category_id: str,
        name: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Category:
        """Rename and/or recolor a category; omitted fields keep their value."""
        current = self.get_category(user_id, category_id)
        try:
            changed = current.model_copy()
            if name is not None:
                changed.name = name
            if color is not None:
                changed.color = color
        except ValueError as e:
            raise ValidationError(f"Invalid category: {e}", field="category") from e
        return self._call(
            "update_category", self.category_repository.update, user_id, changed
        )

    def delete_category(self, user_id: str, category_id: str) -> None:
        """Delete a category. Its todos are kept and become uncategorized."""
        self._call(
            "delete_category", self.category_repository.delete, user_id, category_id
        )

    def create_category_with_todos(
        self,
        user_id: str,
        name: str,
        color: Optional[str],
        titles: Sequence[str],
    ) -> Tuple[Category, List[Todo]]:
        """Create a category and todos in it atomically."""
        category = self._build_category(user_id, name or "", color)
        return self._call(
            "create_category_with_todos",
            self.repository.create_category_with_todos,
            user_id,
            category,
            [title.strip() if title else "" for title in titles],
        )
