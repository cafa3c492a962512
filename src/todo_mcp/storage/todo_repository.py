"""Repository for todo storage, optimistic-lock updates and bulk writes."""
import logging
from typing import Any, Callable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from todo_mcp.config import config
from todo_mcp.exceptions import (ErrorCode, NotFoundOrDeniedError,
                                 PartialFailureError, ValidationError,
                                 VersionConflictError)
from todo_mcp.models.db_models import (DBCategory, DBTodo, get_session_factory,
                                       init_db, user_session)
from todo_mcp.models.schema import (BulkStrategy, Category, Todo,
                                    ensure_timezone_aware, to_storage_time)
from todo_mcp.storage.base import Repository
from todo_mcp.storage.category_repository import require_owned_category

logger = logging.getLogger(__name__)

# Builds the DML statement for one bulk write given its id predicate
StatementBuilder = Callable[[Any], Any]


def dedupe_ids(todo_ids: Sequence[str]) -> List[str]:
    """Drop repeated ids, keeping first-seen order."""
    return list(dict.fromkeys(todo_ids))


def _validate_title(title: str) -> str:
    if title is None or not title.strip():
        raise ValidationError(
            "Title cannot be empty", field="title", code=ErrorCode.TODO_TITLE_REQUIRED
        )
    return title


class TodoRepository(Repository[Todo]):
    """Repository for per-user todos.

    ``version`` and ``updated_at`` are maintained by a database trigger on
    every UPDATE, so no method here writes them. Every write carries an
    explicit ``user_id`` predicate in addition to the session-level row
    isolation.
    """

    def __init__(self, engine=None):
        """Initialize the repository.

        Args:
            engine: SQLAlchemy engine. If None, uses default from config.
        """
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        logger.info("TodoRepository initialized")

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, user_id: str, todo: Todo) -> Todo:
        """Create a new todo.

        Raises:
            ValidationError: If the title is blank or the category is not
                owned by ``user_id``.
        """
        if todo.user_id != user_id:
            raise ValidationError("Todo owner does not match the caller", field="user_id")
        _validate_title(todo.title)
        with user_session(self.session_factory, user_id) as session:
            if todo.category_id is not None:
                require_owned_category(session, user_id, todo.category_id)
            session.add(self._model_to_db(todo))
            session.commit()

        logger.info(f"Created todo {todo.id} for {user_id}")
        return todo.model_copy(update={"version": 1})

    def get(self, user_id: str, id: str) -> Optional[Todo]:
        """Get a todo by ID, or None if absent or not owned."""
        with user_session(self.session_factory, user_id) as session:
            db_todo = session.scalar(
                select(DBTodo).where(DBTodo.id == id, DBTodo.user_id == user_id)
            )
            if not db_todo:
                return None
            return self._db_to_model(db_todo)

    def get_all(self, user_id: str) -> List[Todo]:
        """Get all of a user's todos, newest first."""
        with user_session(self.session_factory, user_id) as session:
            rows = session.scalars(
                select(DBTodo)
                .where(DBTodo.user_id == user_id)
                .order_by(DBTodo.created_at.desc())
            ).all()
            return [self._db_to_model(row) for row in rows]

    def update(self, user_id: str, todo: Todo) -> Todo:
        """Update a todo, using ``todo.version`` as the expected version.

        Returns:
            The todo as stored after the update.
        """
        self.update_with_version(
            user_id,
            todo.id,
            title=todo.title,
            is_complete=todo.is_complete,
            category_id=todo.category_id,
            expected_version=todo.version,
        )
        return self.get(user_id, todo.id)

    def delete(self, user_id: str, id: str) -> None:
        """Delete a todo permanently.

        Raises:
            NotFoundOrDeniedError: If the todo is absent or not owned.
        """
        with user_session(self.session_factory, user_id) as session:
            result = session.execute(
                delete(DBTodo)
                .where(DBTodo.id == id, DBTodo.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundOrDeniedError("todo", id)
            session.commit()

        logger.info(f"Deleted todo {id} for {user_id}")

    # ------------------------------------------------------------------
    # Optimistic locking
    # ------------------------------------------------------------------

    def update_with_version(
        self,
        user_id: str,
        todo_id: str,
        title: str,
        is_complete: bool,
        category_id: Optional[str],
        expected_version: int,
    ) -> int:
        """Update a todo only if its version still equals ``expected_version``.

        Args:
            user_id: Caller.
            todo_id: Todo to update.
            title: New title.
            is_complete: New completion flag.
            category_id: New category, or None to clear it.
            expected_version: Version the caller last read.

        Returns:
            The new version (``expected_version + 1``).

        Raises:
            NotFoundOrDeniedError: If no todo with this id is owned by the caller.
            VersionConflictError: If the todo exists but was modified since.
            ValidationError: If the title is blank or the category is not owned.
        """
        _validate_title(title)
        with user_session(self.session_factory, user_id) as session:
            if category_id is not None:
                require_owned_category(session, user_id, category_id)

            result = session.execute(
                update(DBTodo)
                .where(
                    DBTodo.id == todo_id,
                    DBTodo.user_id == user_id,
                    DBTodo.version == expected_version,
                )
                .values(title=title, is_complete=is_complete, category_id=category_id)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                current = session.scalar(
                    select(DBTodo.version).where(
                        DBTodo.id == todo_id, DBTodo.user_id == user_id
                    )
                )
                if current is None:
                    raise NotFoundOrDeniedError("todo", todo_id)
                logger.warning(
                    f"Version conflict on todo {todo_id}: expected {expected_version}, "
                    f"found {current}"
                )
                raise VersionConflictError(todo_id, expected_version, current)

            session.commit()

        new_version = expected_version + 1
        logger.info(f"Updated todo {todo_id} to version {new_version}")
        return new_version

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def bulk_update_complete(
        self,
        user_id: str,
        todo_ids: Sequence[str],
        is_complete: bool,
        strategy: Optional[BulkStrategy] = None,
    ) -> int:
        """Set ``is_complete`` on every listed todo, or on none of them.

        Returns:
            Number of todos updated (equal to the number of distinct ids).

        Raises:
            PartialFailureError: If any id is missing or owned by someone else.
        """
        def build(id_clause):
            return (
                update(DBTodo)
                .where(id_clause, DBTodo.user_id == user_id)
                .values(is_complete=is_complete)
            )

        return self._bulk_operation(
            user_id, todo_ids, "bulk_update_complete", build, strategy
        )

    def bulk_change_category(
        self,
        user_id: str,
        todo_ids: Sequence[str],
        category_id: Optional[str],
        strategy: Optional[BulkStrategy] = None,
    ) -> int:
        """Move every listed todo to ``category_id`` (None clears it).

        The target category is checked before any todo is touched.

        Raises:
            ValidationError: If the category is absent or not owned.
            PartialFailureError: If any id is missing or owned by someone else.
        """
        def check_category(session: Session) -> None:
            if category_id is not None:
                require_owned_category(session, user_id, category_id)

        def build(id_clause):
            return (
                update(DBTodo)
                .where(id_clause, DBTodo.user_id == user_id)
                .values(category_id=category_id)
            )

        return self._bulk_operation(
            user_id, todo_ids, "bulk_change_category", build, strategy,
            before_write=check_category,
        )

    def bulk_delete(
        self,
        user_id: str,
        todo_ids: Sequence[str],
        strategy: Optional[BulkStrategy] = None,
    ) -> int:
        """Delete every listed todo, or none of them.

        Returns:
            Number of todos deleted.

        Raises:
            PartialFailureError: If any id is missing or owned by someone else.
        """
        def build(id_clause):
            return delete(DBTodo).where(id_clause, DBTodo.user_id == user_id)

        return self._bulk_operation(user_id, todo_ids, "bulk_delete", build, strategy)

    def _bulk_operation(
        self,
        user_id: str,
        todo_ids: Sequence[str],
        operation_name: str,
        build_statement: StatementBuilder,
        strategy: Optional[BulkStrategy] = None,
        before_write: Optional[Callable[[Session], None]] = None,
    ) -> int:
        """Template method for all-or-nothing bulk writes.

        Handles id de-duplication, ascending-id row locking,
        the set-based or iterative write, and the affected-count check.
        Any exception leaves the session uncommitted, so nothing is applied.

        Args:
            user_id: Caller.
            todo_ids: Requested ids; duplicates count once.
            operation_name: Name for logging and error reporting.
            build_statement: Callable(id_clause) -> DML statement.
            strategy: Write strategy; defaults to ``config.bulk_strategy``.
            before_write: Optional Callable(session) run before locking.

        Returns:
            Number of rows affected.
        """
        ids = dedupe_ids(todo_ids)
        strategy = BulkStrategy(strategy or config.bulk_strategy)

        with user_session(self.session_factory, user_id) as session:
            if before_write is not None:
                before_write(session)
            # Zero requested rows match zero affected rows
            if not ids:
                logger.debug(f"{operation_name}: no ids given for {user_id}")
                return 0

            # Lock in ascending id order so concurrent bulk writers cannot deadlock
            locked_ids = list(
                session.scalars(
                    select(DBTodo.id)
                    .where(DBTodo.id.in_(ids), DBTodo.user_id == user_id)
                    .order_by(DBTodo.id)
                    .with_for_update()
                )
            )

            if strategy is BulkStrategy.SET_BASED:
                result = session.execute(
                    build_statement(DBTodo.id.in_(ids)),
                    execution_options={"synchronize_session": False},
                )
                affected = result.rowcount
            else:
                affected = 0
                for todo_id in sorted(ids):
                    result = session.execute(
                        build_statement(DBTodo.id == todo_id),
                        execution_options={"synchronize_session": False},
                    )
                    affected += result.rowcount

            if affected != len(ids):
                locked = set(locked_ids)
                missing = [todo_id for todo_id in ids if todo_id not in locked]
                logger.warning(
                    f"{operation_name} rejected for {user_id}: "
                    f"{affected} of {len(ids)} todos matched, rolling back"
                )
                raise PartialFailureError(
                    operation=operation_name,
                    requested_count=len(ids),
                    affected_count=affected,
                    missing_ids=missing,
                )

            session.commit()

        logger.info(
            f"{operation_name}: {affected} todos for {user_id} ({strategy.value})"
        )
        return affected

    # ------------------------------------------------------------------
    # Composite writes
    # ------------------------------------------------------------------

    def create_category_with_todos(
        self, user_id: str, category: Category, titles: Sequence[str]
    ) -> Tuple[Category, List[Todo]]:
        """Create a category and its first todos in a single transaction.

        Either the category and every todo are stored, or nothing is.

        Raises:
            ValidationError: If any title is blank or the name is taken.
        """
        if category.user_id != user_id:
            raise ValidationError("Category owner does not match the caller", field="user_id")
        for title in titles:
            _validate_title(title)

        todos = [
            Todo(user_id=user_id, title=title, category_id=category.id)
            for title in titles
        ]
        with user_session(self.session_factory, user_id) as session:
            taken = session.scalar(
                select(DBCategory.id).where(
                    DBCategory.user_id == user_id, DBCategory.name == category.name
                )
            )
            if taken is not None:
                raise ValidationError(
                    f"Category '{category.name}' already exists",
                    field="name",
                    value=category.name,
                    code=ErrorCode.CATEGORY_ALREADY_EXISTS,
                )
            session.add(
                DBCategory(
                    id=category.id,
                    user_id=user_id,
                    name=category.name,
                    color=category.color,
                    created_at=to_storage_time(category.created_at),
                    updated_at=to_storage_time(category.updated_at),
                )
            )
            try:
                # Category row must exist before the ownership trigger sees the todos
                session.flush()
                session.add_all([self._model_to_db(todo) for todo in todos])
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ValidationError(
                    f"Could not create category '{category.name}' with todos",
                    field="name",
                    value=category.name,
                ) from e

        logger.info(
            f"Created category {category.id} with {len(todos)} todos for {user_id}"
        )
        return category, todos

    @staticmethod
    def _model_to_db(todo: Todo) -> DBTodo:
        return DBTodo(
            id=todo.id,
            user_id=todo.user_id,
            title=todo.title,
            is_complete=todo.is_complete,
            category_id=todo.category_id,
            created_at=to_storage_time(todo.created_at),
            updated_at=to_storage_time(todo.updated_at),
            version=1,
        )

    @staticmethod
    def _db_to_model(db_todo: DBTodo) -> Todo:
        return Todo(
            id=db_todo.id,
            user_id=db_todo.user_id,
            title=db_todo.title,
            is_complete=db_todo.is_complete,
            category_id=db_todo.category_id,
            created_at=ensure_timezone_aware(db_todo.created_at),
            updated_at=ensure_timezone_aware(db_todo.updated_at),
            version=db_todo.version,
        )
