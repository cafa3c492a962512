"""MCP server implementation for the todo store."""

import json
import logging
import uuid
from typing import List, Optional

from mcp.server.fastmcp import FastMCP
from sqlalchemy.exc import SQLAlchemyError

from todo_mcp.config import config
from todo_mcp.exceptions import PermissionDeniedError, TodoError
from todo_mcp.models.db_models import init_db
from todo_mcp.models.schema import SearchRow, StatsRange
from todo_mcp.observability import metrics, timed_operation
from todo_mcp.services.search_service import SearchService
from todo_mcp.services.stats_service import StatsService
from todo_mcp.services.todo_service import TodoService

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500


def _validate_title_length(title: Optional[str]) -> None:
    """Validate input string lengths at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValueError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters"
        )


def _split_ids(value: str) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _format_rows(rows: List[SearchRow], show_rank: bool = True) -> str:
    output = ""
    for i, row in enumerate(rows, 1):
        mark = "x" if row.is_complete else " "
        output += f"{i}. [{mark}] {row.title}\n"
        output += f"   ID: {row.id} | Version: {row.version}\n"
        if row.category_name:
            output += f"   Category: {row.category_name} ({row.category_color})\n"
        output += f"   Created: {row.created_at.isoformat()}"
        if show_rank:
            output += f" | Rank: {row.rank:.2f}"
        output += "\n\n"
    return output


class TodoMcpServer:
    """MCP server exposing the todo store as tools.

    The acting user is ``config.user_id``, the identity verified by the
    host process. Tool arguments never select the user.
    """

    def __init__(self, engine=None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by all services.
                When None, one is created from config.
        """
        self.mcp = FastMCP(config.server_name, version=config.server_version)
        engine = engine or init_db()
        self.todo_service = TodoService(engine=engine)
        self.search_service = SearchService(engine=engine)
        self.stats_service = StatsService(engine=engine)
        self.initialize()
        self._register_tools()

    def initialize(self) -> None:
        """Initialize services."""
        logger.info("Todo MCP server initialized")

    @staticmethod
    def _user_id() -> str:
        if not config.user_id:
            raise PermissionDeniedError("No verified user identity configured")
        return config.user_id

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Generate a unique error ID for traceability in logs
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, TodoError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            # Log full detail but return generic ref to avoid leaking internals
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        elif isinstance(error, SQLAlchemyError):
            logger.error(f"Database error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A database error occurred (ref: {error_id})"
        else:
            # Unexpected errors - log with full stack trace but return generic message
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        # ------------------------------------------------------------------
        # Todos
        # ------------------------------------------------------------------

        @self.mcp.tool(name="todo_create")
        def todo_create(title: str, category_id: Optional[str] = None) -> str:
            """Create a new todo.
            Args:
                title: The todo text
                category_id: Optional category to file it under
            """
            with timed_operation("todo_create", title=title[:30]) as op:
                try:
                    _validate_title_length(title)
                    todo = self.todo_service.create_todo(
                        self._user_id(), title, category_id=category_id
                    )
                    op["todo_id"] = todo.id
                    return f"Todo created successfully with ID: {todo.id} (version {todo.version})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_get")
        def todo_get(todo_id: str) -> str:
            """Retrieve a todo by ID.
            Args:
                todo_id: The ID of the todo
            Returns:
                The todo with its current version (pass it to todo_update).
            """
            with timed_operation("todo_get", todo_id=todo_id) as op:
                try:
                    todo = self.todo_service.get_todo(self._user_id(), todo_id)
                    op["found"] = True
                    result = f"# {todo.title}\n"
                    result += f"ID: {todo.id}\n"
                    result += f"Version: {todo.version}\n"
                    result += f"Complete: {'yes' if todo.is_complete else 'no'}\n"
                    result += f"Category: {todo.category_id or 'none'}\n"
                    result += f"Created: {todo.created_at.isoformat()}\n"
                    result += f"Updated: {todo.updated_at.isoformat()}\n"
                    return result
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_list")
        def todo_list() -> str:
            """List all of your todos, newest first."""
            with timed_operation("todo_list") as op:
                try:
                    todos = self.todo_service.list_todos(self._user_id())
                    op["result_count"] = len(todos)
                    if not todos:
                        return "No todos found."
                    output = f"Found {len(todos)} todos:\n\n"
                    for i, todo in enumerate(todos, 1):
                        mark = "x" if todo.is_complete else " "
                        output += f"{i}. [{mark}] {todo.title} (ID: {todo.id}, v{todo.version})\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_delete")
        def todo_delete(todo_id: str) -> str:
            """Delete a todo permanently.
            Args:
                todo_id: The ID of the todo to delete
            """
            with timed_operation("todo_delete", todo_id=todo_id):
                try:
                    self.todo_service.delete_todo(self._user_id(), todo_id)
                    return f"Todo {todo_id} deleted successfully."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_update")
        def todo_update(
            todo_id: str,
            title: str,
            is_complete: bool,
            expected_version: int,
            category_id: Optional[str] = None,
        ) -> str:
            """Update a todo if nobody else changed it since you read it.

            All fields are replaced. Get the current values and version
            with todo_get first.

            Args:
                todo_id: The ID of the todo
                title: New title
                is_complete: New completion state
                expected_version: Version returned by todo_get
                category_id: New category ID, or omit to clear the category
            Returns:
                The new version, or a CONFLICT error if the version is stale.
            """
            with timed_operation("todo_update", todo_id=todo_id) as op:
                try:
                    _validate_title_length(title)
                    result = self.todo_service.update_todo_with_version(
                        self._user_id(),
                        todo_id,
                        title=title,
                        is_complete=is_complete,
                        category_id=category_id,
                        expected_version=expected_version,
                    )
                    if result.is_conflict:
                        op["error"] = result.error_code
                        return (
                            f"CONFLICT: {result.error_message}. "
                            f"Fetch the todo again with todo_get and retry."
                        )
                    if not result.success:
                        op["error"] = result.error_code
                        return f"Error: {result.error_message}"
                    op["new_version"] = result.new_version
                    return f"Todo {todo_id} updated to version {result.new_version}."
                except Exception as e:
                    return self.format_error_response(e)

        # ------------------------------------------------------------------
        # Bulk operations
        # ------------------------------------------------------------------

        @self.mcp.tool(name="todo_bulk_complete")
        def todo_bulk_complete(todo_ids: str, is_complete: bool = True) -> str:
            """Mark several todos complete (or incomplete) in one transaction.

            Either every todo is updated or none is.

            Args:
                todo_ids: Comma-separated todo IDs
                is_complete: Completion state to set (default: True)
            """
            with timed_operation("todo_bulk_complete") as op:
                try:
                    ids = _split_ids(todo_ids)
                    op["requested"] = len(ids)
                    result = self.todo_service.bulk_update_complete(
                        self._user_id(), ids, is_complete
                    )
                    if not result.success:
                        op["error"] = result.error_code
                        return f"Error: {result.error_message} No todos were changed."
                    state = "complete" if is_complete else "incomplete"
                    return f"Marked {result.updated_count} todos {state}."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_bulk_change_category")
        def todo_bulk_change_category(
            todo_ids: str, category_id: Optional[str] = None
        ) -> str:
            """Move several todos to a category in one transaction.

            Args:
                todo_ids: Comma-separated todo IDs
                category_id: Target category ID, or omit to uncategorize
            """
            with timed_operation("todo_bulk_change_category") as op:
                try:
                    ids = _split_ids(todo_ids)
                    op["requested"] = len(ids)
                    result = self.todo_service.bulk_change_category(
                        self._user_id(), ids, category_id or None
                    )
                    if not result.success:
                        op["error"] = result.error_code
                        return f"Error: {result.error_message} No todos were changed."
                    return f"Moved {result.updated_count} todos."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_bulk_delete")
        def todo_bulk_delete(todo_ids: str) -> str:
            """Delete several todos in one transaction.

            Args:
                todo_ids: Comma-separated todo IDs
            """
            with timed_operation("todo_bulk_delete") as op:
                try:
                    ids = _split_ids(todo_ids)
                    op["requested"] = len(ids)
                    result = self.todo_service.bulk_delete(self._user_id(), ids)
                    if not result.success:
                        op["error"] = result.error_code
                        return f"Error: {result.error_message} No todos were deleted."
                    return f"Successfully deleted {result.deleted_count} todos."
                except Exception as e:
                    return self.format_error_response(e)

        # ------------------------------------------------------------------
        # Search
        # ------------------------------------------------------------------

        @self.mcp.tool(name="todo_search")
        def todo_search(
            query: Optional[str] = None,
            category_id: Optional[str] = None,
            limit: int = 20,
            offset: int = 0,
        ) -> str:
            """Search todos by title, best matches first.

            Exact title matches rank above prefix matches, which rank above
            substring matches, which rank above fuzzy (trigram) matches.

            Args:
                query: Search text; omit to list everything newest first
                category_id: Only search this category
                limit: Maximum number of results (default: 20)
                offset: Results to skip, for paging
            """
            with timed_operation("todo_search", query=(query or "")[:30]) as op:
                try:
                    rows = self.search_service.search(
                        self._user_id(), term=query, category_id=category_id,
                        limit=limit, offset=offset,
                    )
                    op["result_count"] = len(rows)
                    if not rows:
                        return "No matching todos found."
                    return f"Found {len(rows)} matching todos:\n\n" + _format_rows(rows)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_search_cursor")
        def todo_search_cursor(
            cursor: Optional[str] = None,
            limit: int = 20,
            query: Optional[str] = None,
            category_id: Optional[str] = None,
        ) -> str:
            """Page through todos newest first using a cursor.

            Args:
                cursor: next_cursor from the previous page; omit for the first page
                limit: Page size (default: 20)
                query: Optional search text
                category_id: Optional category filter
            """
            with timed_operation("todo_search_cursor") as op:
                try:
                    page = self.search_service.search_cursor(
                        self._user_id(), cursor=cursor, limit=limit,
                        term=query, category_id=category_id,
                    )
                    op["result_count"] = len(page.items)
                    output = _format_rows(page.items, show_rank=bool(query))
                    if not page.items:
                        output = "No more todos.\n"
                    output += f"has_more: {str(page.has_more).lower()}\n"
                    if page.has_more and page.next_cursor:
                        output += f"next_cursor: {page.next_cursor.isoformat()}\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_pagination_info")
        def todo_pagination_info(
            query: Optional[str] = None, category_id: Optional[str] = None
        ) -> str:
            """Count matching todos and pages for todo_search.
            Args:
                query: Optional search text
                category_id: Optional category filter
            """
            with timed_operation("todo_pagination_info"):
                try:
                    info = self.search_service.pagination_info(
                        self._user_id(), term=query, category_id=category_id
                    )
                    return json.dumps(
                        {
                            "total_count": info.total_count,
                            "total_pages": info.total_pages,
                            "items_per_page": info.items_per_page,
                        }
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_search_advanced")
        def todo_search_advanced(
            query: Optional[str] = None,
            category_id: Optional[str] = None,
            is_complete: Optional[bool] = None,
            limit: int = 20,
            offset: int = 0,
        ) -> str:
            """Multi-keyword search; todos matching more keywords rank higher.

            Args:
                query: Space-separated keywords; a todo matches if any keyword
                    appears in its title
                category_id: Only this category
                is_complete: Only complete (true) or incomplete (false) todos
                limit: Maximum number of results (default: 20)
                offset: Results to skip
            """
            with timed_operation("todo_search_advanced") as op:
                try:
                    rows = self.search_service.search_advanced(
                        self._user_id(), term=query, category_id=category_id,
                        is_complete=is_complete, limit=limit, offset=offset,
                    )
                    op["result_count"] = len(rows)
                    if not rows:
                        return "No matching todos found."
                    return f"Found {len(rows)} matching todos:\n\n" + _format_rows(rows)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_suggestions")
        def todo_suggestions(query: str, limit: int = 5) -> str:
            """Autocomplete todo titles starting with the given text.
            Args:
                query: Title prefix
                limit: Maximum suggestions (default: 5)
            """
            with timed_operation("todo_suggestions") as op:
                try:
                    suggestions = self.search_service.suggestions(
                        self._user_id(), query, limit=limit
                    )
                    op["result_count"] = len(suggestions)
                    if not suggestions:
                        return "No suggestions."
                    return "\n".join(
                        f"{s.suggestion} ({s.count})" for s in suggestions
                    )
                except Exception as e:
                    return self.format_error_response(e)

        # ------------------------------------------------------------------
        # Categories
        # ------------------------------------------------------------------

        @self.mcp.tool(name="category_create")
        def category_create(name: str, color: Optional[str] = None) -> str:
            """Create a category.
            Args:
                name: Category name (unique per user)
                color: Hex color such as #3B82F6 (default: #3B82F6)
            """
            with timed_operation("category_create", name=name[:30]):
                try:
                    category = self.todo_service.create_category(
                        self._user_id(), name, color
                    )
                    return f"Category '{category.name}' created with ID: {category.id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="category_list")
        def category_list() -> str:
            """List your categories."""
            with timed_operation("category_list") as op:
                try:
                    categories = self.todo_service.list_categories(self._user_id())
                    op["result_count"] = len(categories)
                    if not categories:
                        return "No categories found."
                    output = f"Found {len(categories)} categories:\n\n"
                    for category in categories:
                        output += f"- {category.name} {category.color} (ID: {category.id})\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="category_update")
        def category_update(
            category_id: str, name: Optional[str] = None, color: Optional[str] = None
        ) -> str:
            """Rename or recolor a category.
            Args:
                category_id: The category ID
                name: New name (optional)
                color: New hex color (optional)
            """
            with timed_operation("category_update", category_id=category_id):
                try:
                    category = self.todo_service.update_category(
                        self._user_id(), category_id, name=name, color=color
                    )
                    return f"Category {category.id} is now '{category.name}' {category.color}."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="category_delete")
        def category_delete(category_id: str) -> str:
            """Delete a category. Its todos are kept and become uncategorized.
            Args:
                category_id: The category ID
            """
            with timed_operation("category_delete", category_id=category_id):
                try:
                    self.todo_service.delete_category(self._user_id(), category_id)
                    return f"Category {category_id} deleted; its todos are now uncategorized."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="category_create_with_todos")
        def category_create_with_todos(
            name: str, titles: str, color: Optional[str] = None
        ) -> str:
            """Create a category together with its first todos, atomically.
            Args:
                name: Category name
                titles: JSON array of todo titles, e.g. ["Milk", "Eggs"]
                color: Hex color (optional)
            """
            with timed_operation("category_create_with_todos") as op:
                try:
                    title_list = json.loads(titles)
                    if not isinstance(title_list, list) or not all(
                        isinstance(t, str) for t in title_list
                    ):
                        return "Error: titles must be a JSON array of strings."
                    for title in title_list:
                        _validate_title_length(title)
                    op["todo_count"] = len(title_list)
                    category, todos = self.todo_service.create_category_with_todos(
                        self._user_id(), name, color, title_list
                    )
                    output = f"Category '{category.name}' created with ID: {category.id}\n"
                    for todo in todos:
                        output += f"- {todo.title} (ID: {todo.id})\n"
                    return output
                except json.JSONDecodeError as e:
                    return f"Error: Invalid JSON - {e}"
                except Exception as e:
                    return self.format_error_response(e)

        # ------------------------------------------------------------------
        # Statistics
        # ------------------------------------------------------------------

        @self.mcp.tool(name="todo_stats")
        def todo_stats(time_range: str = "all") -> str:
            """Completion statistics overall and per category.
            Args:
                time_range: "all", "week" (last 7 days) or "month" (last month)
            """
            with timed_operation("todo_stats", time_range=time_range):
                try:
                    try:
                        range_enum = StatsRange(time_range.lower())
                    except ValueError:
                        return f"Invalid time range: {time_range}. Valid ranges are: {', '.join(r.value for r in StatsRange)}"
                    stats = self.stats_service.overall_stats(self._user_id(), range_enum)
                    output = "# Todo Statistics\n\n"
                    output += f"**Total:** {stats.total_todos}\n"
                    output += f"**Completed:** {stats.completed_todos}\n"
                    output += f"**Pending:** {stats.pending_todos}\n"
                    output += f"**Categories:** {stats.total_categories}\n"
                    output += f"**Completion Rate:** {stats.completion_rate}%\n"
                    if stats.most_used_category:
                        output += f"**Most Used:** {stats.most_used_category}\n"
                    if (
                        stats.least_used_category
                        and stats.least_used_category != stats.most_used_category
                    ):
                        output += f"**Least Used:** {stats.least_used_category}\n"
                    if stats.total_todos:
                        output += (
                            f"**Per Bucket:** max {stats.max_todos_in_category}, "
                            f"min {stats.min_todos_in_category}, "
                            f"avg {stats.avg_todos_per_category}\n"
                        )
                    if stats.first_todo_at and stats.last_todo_at:
                        output += (
                            f"**Active:** {stats.first_todo_at.date().isoformat()} to "
                            f"{stats.last_todo_at.date().isoformat()}\n"
                        )
                    if stats.categories:
                        output += "\n## By Category\n"
                        for bucket in stats.categories:
                            output += (
                                f"- {bucket.category_name}: {bucket.completed_count}/"
                                f"{bucket.total_count} ({bucket.completion_rate}%)\n"
                            )
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_stats_daily")
        def todo_stats_daily(time_range: str = "month") -> str:
            """Todos created and completed per day, with running totals.
            Args:
                time_range: "all", "week" (last 7 days) or "month" (last month)
            """
            with timed_operation("todo_stats_daily", time_range=time_range) as op:
                try:
                    try:
                        range_enum = StatsRange(time_range.lower())
                    except ValueError:
                        return f"Invalid time range: {time_range}. Valid ranges are: {', '.join(r.value for r in StatsRange)}"
                    days = self.stats_service.daily_stats(self._user_id(), range_enum)
                    op["days"] = len(days)
                    if not days:
                        return "No todos created in this period."
                    output = "# Daily Activity\n\n"
                    output += "| Day | Created | Completed | Total | 7-day avg |\n"
                    output += "|---|---|---|---|---|\n"
                    for day in days:
                        output += (
                            f"| {day.day.isoformat()} | {day.todos_created} | "
                            f"{day.todos_completed} | {day.cumulative_todos} | "
                            f"{day.moving_avg_7days:.2f} |\n"
                        )
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="category_rankings")
        def category_rankings(above_average: bool = False) -> str:
            """Rank categories by usage and completion rate.
            Args:
                above_average: Only list categories whose completion rate beats
                    the average of categories that have todos
            """
            with timed_operation("category_rankings", above_average=above_average) as op:
                try:
                    user_id = self._user_id()
                    if above_average:
                        rankings = self.stats_service.high_performing_categories(user_id)
                    else:
                        rankings = self.stats_service.category_rankings(user_id)
                    op["result_count"] = len(rankings)
                    if not rankings:
                        return "No categories to rank."
                    output = "# Category Rankings\n\n"
                    for ranking in rankings:
                        output += (
                            f"{ranking.usage_rank}. {ranking.category_name}: "
                            f"{ranking.total_todos} todos, {ranking.completion_rate:.2f}% done "
                            f"(completion rank {ranking.completion_rank}, "
                            f"dense usage rank {ranking.dense_usage_rank})\n"
                        )
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="todo_metrics")
        def todo_metrics() -> str:
            """Server health and per-tool timing metrics."""
            try:
                summary = metrics.get_summary()
                output = "## Server Metrics\n"
                output += f"**Uptime:** {summary['uptime_seconds']:.0f} seconds\n"
                output += f"**Operations:** {summary['total_operations']}\n"
                output += f"**Success Rate:** {summary['overall_success_rate']:.1%}\n"
                output += f"**Errors:** {summary['total_errors']}\n\n"
                for name, data in sorted(metrics.get_metrics().items()):
                    output += (
                        f"- {name}: {data['count']} calls, "
                        f"avg {data['avg_duration_ms']}ms, "
                        f"{data['error_count']} errors\n"
                    )
                return output
            except Exception as e:
                return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
