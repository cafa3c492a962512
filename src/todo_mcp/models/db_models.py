"""SQLAlchemy database models for the Todo MCP server."""
import datetime
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Index, Integer,
                        String, Text, UniqueConstraint, create_engine, event,
                        text)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (ORMExecuteState, Session, declarative_base,
                            relationship, sessionmaker, with_loader_criteria)
from sqlalchemy.pool import QueuePool, StaticPool

from todo_mcp.config import config
from todo_mcp.exceptions import PermissionDeniedError
from todo_mcp.models.schema import DEFAULT_CATEGORY_COLOR
from todo_mcp.utils import fold_case, trigram_similarity

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()


def _utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form SQLite stores."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class UserOwned:
    """Mixin for rows that belong to exactly one user.

    Every ORM SELECT issued from a user-scoped session is filtered on
    ``user_id`` through this mixin (see ``user_session``).
    """
    user_id = Column(String(255), nullable=False, index=True)


class DBProfile(Base):
    """Database model for a user profile."""
    __tablename__ = "profiles"
    id = Column(String(255), primary_key=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Profile(id='{self.id}')>"


class DBCategory(UserOwned, Base):
    """Database model for a category."""
    __tablename__ = "categories"
    id = Column(String(36), primary_key=True)
    name = Column(Text, nullable=False)
    color = Column(String(7), default=DEFAULT_CATEGORY_COLOR, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    todos = relationship("DBTodo", back_populates="category", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
    )

    def __repr__(self) -> str:
        return f"<Category(id='{self.id}', name='{self.name}')>"


class DBTodo(UserOwned, Base):
    """Database model for a todo.

    ``version`` and ``updated_at`` are maintained by the
    ``todos_version_bump`` trigger; application code never writes them.
    """
    __tablename__ = "todos"
    id = Column(String(36), primary_key=True)
    title = Column(Text, nullable=False)
    is_complete = Column(Boolean, default=False, nullable=False)
    category_id = Column(
        String(36), ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    version = Column(Integer, default=1, nullable=False)

    category = relationship("DBCategory", back_populates="todos")

    __table_args__ = (
        Index("ix_todos_user_created", "user_id", "created_at"),
        Index("ix_todos_user_complete", "user_id", "is_complete"),
        Index("ix_todos_user_category", "user_id", "category_id"),
    )

    def __repr__(self) -> str:
        return f"<Todo(id='{self.id}', title='{self.title}', version={self.version})>"


# Storage-level invariants. Each statement is idempotent.
_TRIGGERS = (
    # Versioning: any UPDATE bumps version and refreshes updated_at.
    # recursive_triggers is off, so the inner UPDATE does not re-fire.
    """
    CREATE TRIGGER IF NOT EXISTS todos_version_bump
    AFTER UPDATE ON todos
    FOR EACH ROW
    BEGIN
        UPDATE todos
        SET version = OLD.version + 1,
            updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
        WHERE id = NEW.id;
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS todos_user_immutable
    BEFORE UPDATE OF user_id ON todos
    FOR EACH ROW WHEN NEW.user_id IS NOT OLD.user_id
    BEGIN
        SELECT RAISE(ABORT, 'todos.user_id is immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS todos_category_owner_insert
    BEFORE INSERT ON todos
    FOR EACH ROW WHEN NEW.category_id IS NOT NULL AND NOT EXISTS (
        SELECT 1 FROM categories
        WHERE id = NEW.category_id AND user_id = NEW.user_id
    )
    BEGIN
        SELECT RAISE(ABORT, 'category does not belong to the todo owner');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS todos_category_owner_update
    BEFORE UPDATE OF category_id ON todos
    FOR EACH ROW WHEN NEW.category_id IS NOT NULL AND NOT EXISTS (
        SELECT 1 FROM categories
        WHERE id = NEW.category_id AND user_id = NEW.user_id
    )
    BEGIN
        SELECT RAISE(ABORT, 'category does not belong to the todo owner');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS categories_updated_at
    AFTER UPDATE ON categories
    FOR EACH ROW
    BEGIN
        UPDATE categories
        SET updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
        WHERE id = NEW.id;
    END
    """,
)


def create_db_engine(url: Optional[str] = None) -> Engine:
    """Create an engine with the connection hooks every store needs.

    Each new DBAPI connection gets foreign keys enabled, WAL journaling
    for file databases, plus the ``similarity`` and ``unicode_lower`` SQL
    functions used by search.
    """
    url = url or config.get_db_url()
    in_memory = url in ("sqlite://", "sqlite:///:memory:")

    if in_memory:
        # One shared connection, otherwise every checkout sees an empty database
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        # SQLite is single-writer, so a small pool is ideal
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
            connect_args={"timeout": 15, "check_same_thread": False},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.create_function(
            "similarity", 2, trigram_similarity, deterministic=True
        )
        dbapi_connection.create_function(
            "unicode_lower", 1, fold_case, deterministic=True
        )
        cursor = dbapi_connection.cursor()
        # Required for ON DELETE SET NULL on todos.category_id
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return engine


def init_db(url: Optional[str] = None) -> Engine:
    """Initialize the database: tables, indexes and invariant triggers.

    Safe to call against an existing database.
    """
    engine = create_db_engine(url)
    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        for ddl in _TRIGGERS:
            conn.execute(text(ddl))
    logger.info(f"Database initialized: {engine.url}")
    return engine


def _apply_owner_criteria(execute_state: ORMExecuteState) -> None:
    """Restrict ORM SELECTs on user-owned rows to the session's user."""
    user_id = execute_state.session.info.get("user_id")
    if user_id is None:
        return
    if (
        execute_state.is_select
        and not execute_state.is_column_load
        and not execute_state.is_relationship_load
    ):
        execute_state.statement = execute_state.statement.options(
            with_loader_criteria(
                UserOwned,
                lambda cls: cls.user_id == user_id,
                include_aliases=True,
            )
        )


def get_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the engine with row isolation."""
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    event.listen(factory, "do_orm_execute", _apply_owner_criteria)
    return factory


@contextmanager
def user_session(factory: sessionmaker, user_id: str) -> Iterator[Session]:
    """Open a session whose ORM reads only see ``user_id``'s rows.

    Writes still carry explicit ``user_id`` predicates.
    """
    if not user_id:
        raise PermissionDeniedError()
    with factory() as session:
        session.info["user_id"] = user_id
        yield session
