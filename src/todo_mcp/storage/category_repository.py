"""Repository for category storage and retrieval."""
import logging
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from todo_mcp.exceptions import ErrorCode, NotFoundOrDeniedError, ValidationError
from todo_mcp.models.db_models import (DBCategory, get_session_factory, init_db,
                                       user_session)
from todo_mcp.models.schema import Category, ensure_timezone_aware, to_storage_time
from todo_mcp.storage.base import Repository

logger = logging.getLogger(__name__)


def owned_category_exists(session: Session, user_id: str, category_id: str) -> bool:
    """Check that a category exists and belongs to ``user_id``."""
    found = session.scalar(
        select(DBCategory.id).where(
            DBCategory.id == category_id, DBCategory.user_id == user_id
        )
    )
    return found is not None


def require_owned_category(session: Session, user_id: str, category_id: str) -> None:
    """Raise ValidationError unless the category is owned by ``user_id``."""
    if not owned_category_exists(session, user_id, category_id):
        raise ValidationError(
            "Category not found or access denied",
            field="category_id",
            value=category_id,
            code=ErrorCode.CATEGORY_NOT_FOUND,
        )


class CategoryRepository(Repository[Category]):
    """Repository for per-user categories.

    Category names are unique per user. Deleting a category never deletes
    todos; the database sets their ``category_id`` to NULL.
    """

    def __init__(self, engine=None):
        """Initialize the repository.

        Args:
            engine: SQLAlchemy engine. If None, uses default from config.
        """
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        logger.info("CategoryRepository initialized")

    def create(self, user_id: str, category: Category) -> Category:
        """Create a new category.

        Args:
            user_id: Owner of the category.
            category: Category to create; its ``user_id`` must match.

        Returns:
            The created category.

        Raises:
            ValidationError: If the user already has a category with this name.
        """
        if category.user_id != user_id:
            raise ValidationError(
                "Category owner does not match the caller", field="user_id"
            )
        with user_session(self.session_factory, user_id) as session:
            self._ensure_name_free(session, user_id, category.name)
            session.add(self._model_to_db(category))
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise self._duplicate_name(category.name) from e

        logger.info(f"Created category {category.id} ({category.name}) for {user_id}")
        return category

    def get(self, user_id: str, id: str) -> Optional[Category]:
        """Get a category by ID.

        Returns:
            The category if it exists and is owned by ``user_id``, None otherwise.
        """
        with user_session(self.session_factory, user_id) as session:
            db_category = session.scalar(
                select(DBCategory).where(
                    DBCategory.id == id, DBCategory.user_id == user_id
                )
            )
            if not db_category:
                return None
            return self._db_to_model(db_category)

    def get_all(self, user_id: str) -> List[Category]:
        """Get all of a user's categories ordered by name."""
        with user_session(self.session_factory, user_id) as session:
            rows = session.scalars(
                select(DBCategory)
                .where(DBCategory.user_id == user_id)
                .order_by(DBCategory.name)
            ).all()
            return [self._db_to_model(row) for row in rows]

    def update(self, user_id: str, category: Category) -> Category:
        """Rename or recolor a category.

        Raises:
            NotFoundOrDeniedError: If the category is absent or not owned.
            ValidationError: If the new name collides with another category.
        """
        with user_session(self.session_factory, user_id) as session:
            self._ensure_name_free(session, user_id, category.name, exclude_id=category.id)
            try:
                result = session.execute(
                    update(DBCategory)
                    .where(DBCategory.id == category.id, DBCategory.user_id == user_id)
                    .values(name=category.name, color=category.color)
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError as e:
                session.rollback()
                raise self._duplicate_name(category.name) from e
            if result.rowcount == 0:
                raise NotFoundOrDeniedError("category", category.id)
            session.commit()

            db_category = session.scalar(
                select(DBCategory).where(
                    DBCategory.id == category.id, DBCategory.user_id == user_id
                )
            )
            updated = self._db_to_model(db_category)

        logger.info(f"Updated category {category.id} for {user_id}")
        return updated

    def delete(self, user_id: str, id: str) -> None:
        """Delete a category; its todos become uncategorized.

        Raises:
            NotFoundOrDeniedError: If the category is absent or not owned.
        """
        with user_session(self.session_factory, user_id) as session:
            result = session.execute(
                delete(DBCategory)
                .where(DBCategory.id == id, DBCategory.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundOrDeniedError("category", id)
            session.commit()

        logger.info(f"Deleted category {id} for {user_id}")

    def _ensure_name_free(
        self,
        session: Session,
        user_id: str,
        name: str,
        exclude_id: Optional[str] = None,
    ) -> None:
        query = select(DBCategory.id).where(
            DBCategory.user_id == user_id, DBCategory.name == name
        )
        if exclude_id:
            query = query.where(DBCategory.id != exclude_id)
        if session.scalar(query) is not None:
            raise self._duplicate_name(name)

    @staticmethod
    def _duplicate_name(name: str) -> ValidationError:
        return ValidationError(
            f"Category '{name}' already exists",
            field="name",
            value=name,
            code=ErrorCode.CATEGORY_ALREADY_EXISTS,
        )

    @staticmethod
    def _model_to_db(category: Category) -> DBCategory:
        return DBCategory(
            id=category.id,
            user_id=category.user_id,
            name=category.name,
            color=category.color,
            created_at=to_storage_time(category.created_at),
            updated_at=to_storage_time(category.updated_at),
        )

    @staticmethod
    def _db_to_model(db_category: DBCategory) -> Category:
        return Category(
            id=db_category.id,
            user_id=db_category.user_id,
            name=db_category.name,
            color=db_category.color,
            created_at=ensure_timezone_aware(db_category.created_at),
            updated_at=ensure_timezone_aware(db_category.updated_at),
        )
