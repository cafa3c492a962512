"""Data models for the Todo MCP server."""

import datetime
import re
import uuid
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

# Hex color used by the UI palette, e.g. "#3B82F6"
HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")

DEFAULT_CATEGORY_COLOR = "#3B82F6"

# Starter categories created for every new user
DEFAULT_CATEGORIES = (
    ("Work", "#EF4444"),
    ("Personal", "#10B981"),
    ("Study", "#8B5CF6"),
    ("Shopping", "#F59E0B"),
)

UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_COLOR = "#6B7280"


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive datetimes; everything stored is UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def to_storage_time(dt_value: datetime.datetime) -> datetime.datetime:
    """Convert a datetime to the naive UTC form stored in the database."""
    if dt_value.tzinfo is None:
        return dt_value
    return dt_value.astimezone(timezone.utc).replace(tzinfo=None)


def generate_id() -> str:
    """Generate a random UUID4 string id."""
    return str(uuid.uuid4())


class BulkStrategy(str, Enum):
    """How bulk operations write their rows.

    Both strategies produce identical observable results.
    """

    SET_BASED = "set_based"  # One statement matching every id
    ITERATIVE = "iterative"  # One statement per id, counts accumulated


class StatsRange(str, Enum):
    """Time window for statistics."""

    ALL = "all"
    WEEK = "week"
    MONTH = "month"


class Profile(BaseModel):
    """Per-user profile row; its id is the external user id."""

    id: str = Field(..., description="External user id")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}


class Category(BaseModel):
    """A named, colored bucket for todos, owned by one user."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the category")
    user_id: str = Field(..., description="Owner")
    name: str = Field(..., description="Name, unique per user")
    color: str = Field(default=DEFAULT_CATEGORY_COLOR, description="Hex color")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate that the name is not empty."""
        if not v.strip():
            raise ValueError("Category name cannot be empty")
        return v.strip()

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if not HEX_COLOR_PATTERN.match(v):
            raise ValueError(f"Color must be a hex value like #3B82F6, got '{v}'")
        return v.upper()


class Todo(BaseModel):
    """A to-do item owned by one user."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the todo")
    user_id: str = Field(..., description="Owner (immutable)")
    title: str = Field(..., description="Title of the todo")
    is_complete: bool = Field(default=False)
    category_id: Optional[str] = Field(default=None)
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the todo was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the todo was last updated (UTC)"
    )
    version: int = Field(default=1, ge=1, description="Optimistic-lock version")

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Validate that the title is not empty."""
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v


@dataclass
class BulkResult:
    """Outcome of a bulk operation.

    Attributes:
        success: True only if every requested id was processed.
        affected_count: Rows changed; always 0 on failure.
        count_key: Serialized name of the count ("updated_count" or "deleted_count").
        error_message: Human-readable reason on failure.
        error_code: ErrorCode name on failure.
    """

    success: bool
    affected_count: int
    count_key: str = "updated_count"
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def updated_count(self) -> int:
        return self.affected_count

    @property
    def deleted_count(self) -> int:
        return self.affected_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            self.count_key: self.affected_count,
            "error": self.error_message,
            "error_code": self.error_code,
        }


@dataclass
class VersionedUpdateResult:
    """Outcome of an optimistic-lock update.

    Attributes:
        success: Whether the row was updated.
        new_version: The version after the update; 0 on failure.
        error_message: Human-readable reason on failure.
        error_code: ErrorCode name on failure (NOT_FOUND_OR_DENIED,
            VERSION_CONFLICT, VALIDATION_FAILED, ...).
    """

    success: bool
    new_version: int
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_conflict(self) -> bool:
        return self.error_code == "VERSION_CONFLICT"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "new_version": self.new_version,
            "error": self.error_message,
            "error_code": self.error_code,
        }


@dataclass
class SearchRow:
    """A todo joined with its category plus a computed relevance rank."""

    id: str
    title: str
    is_complete: bool
    category_id: Optional[str]
    created_at: datetime.datetime
    version: int
    category_name: Optional[str]
    category_color: Optional[str]
    rank: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "is_complete": self.is_complete,
            "category_id": self.category_id,
            "created_at": self.created_at.isoformat(),
            "version": self.version,
            "category_name": self.category_name,
            "category_color": self.category_color,
            "rank": round(self.rank, 4),
        }


@dataclass
class CursorPage:
    """One page of cursor pagination.

    ``next_cursor`` is the ``created_at`` of the last row, or None when
    the page is empty.
    """

    items: List[SearchRow]
    has_more: bool

    @property
    def next_cursor(self) -> Optional[datetime.datetime]:
        if not self.items:
            return None
        return self.items[-1].created_at


@dataclass(frozen=True)
class PaginationInfo:
    """Totals for offset pagination."""

    total_count: int
    total_pages: int
    items_per_page: int


@dataclass(frozen=True)
class Suggestion:
    """An autocomplete suggestion and how many titles share it."""

    suggestion: str
    count: int


@dataclass
class CategoryStats:
    """Completion statistics for one category (or the uncategorized bucket)."""

    category_id: Optional[str]
    category_name: str
    category_color: str
    total_count: int = 0
    completed_count: int = 0
    completion_rate: int = 0


@dataclass
class OverallStats:
    """Completion statistics across all of a user's todos."""

    total_todos: int
    completed_todos: int
    pending_todos: int
    total_categories: int
    completion_rate: int
    most_used_category: Optional[str] = None
    least_used_category: Optional[str] = None
    # Per-bucket spread; the uncategorized bucket counts as a bucket
    categories_used: int = 0
    max_todos_in_category: int = 0
    min_todos_in_category: int = 0
    avg_todos_per_category: float = 0.0
    first_todo_at: Optional[datetime.datetime] = None
    last_todo_at: Optional[datetime.datetime] = None
    categories: List[CategoryStats] = field(default_factory=list)


@dataclass(frozen=True)
class CompletionRate:
    """Completion rate of todos created within a period."""

    total_todos: int
    completed_todos: int
    completion_rate: Optional[float]


@dataclass(frozen=True)
class DailyStats:
    """Todos created on one UTC day, with running totals.

    ``moving_avg_7days`` averages ``todos_created`` over this day and the
    six preceding days that had any todos.
    """

    day: datetime.date
    todos_created: int
    todos_completed: int
    cumulative_todos: int
    moving_avg_7days: float


@dataclass(frozen=True)
class CategoryRanking:
    """Where a category stands among the user's categories.

    ``usage_rank`` and ``completion_rank`` leave gaps after ties;
    ``dense_usage_rank`` does not.
    """

    category_id: str
    category_name: str
    total_todos: int
    completion_rate: float
    usage_rank: int
    completion_rank: int
    dense_usage_rank: int
