"""Service for searching and paginating todos."""

import datetime
import logging
from typing import Any, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from todo_mcp.exceptions import ErrorCode, SearchError
from todo_mcp.models.schema import (CursorPage, PaginationInfo, SearchRow,
                                    Suggestion, ensure_timezone_aware)
from todo_mcp.storage.search_repository import SearchRepository

logger = logging.getLogger(__name__)

# Upper bound on a single page; larger requests are clamped
MAX_PAGE_SIZE = 100


def parse_cursor(
    cursor: Union[str, datetime.datetime, None]
) -> Optional[datetime.datetime]:
    """Parse a cursor given as an ISO-8601 string or datetime.

    Raises:
        SearchError: If the string is not a valid timestamp.
    """
    if cursor is None or cursor == "":
        return None
    if isinstance(cursor, datetime.datetime):
        return ensure_timezone_aware(cursor)
    # fromisoformat only accepts a "Z" suffix from Python 3.11
    text = cursor[:-1] + "+00:00" if cursor.endswith(("Z", "z")) else cursor
    try:
        return ensure_timezone_aware(datetime.datetime.fromisoformat(text))
    except ValueError as e:
        raise SearchError(
            f"Invalid cursor: {cursor}", query=cursor, code=ErrorCode.SEARCH_INVALID_QUERY
        ) from e


class SearchService:
    """Service for ranked search, pagination and suggestions."""

    def __init__(
        self,
        repository: Optional[SearchRepository] = None,
        engine: Optional[Any] = None,
    ):
        """Initialize the search service.

        Args:
            repository: Query backend. Created with defaults if None.
            engine: Pre-configured SQLAlchemy engine for a new repository.
        """
        self.repository = repository or SearchRepository(engine=engine)

    @staticmethod
    def _page(limit: Optional[int], offset: int = 0) -> Optional[int]:
        if limit is not None and limit < 1:
            raise SearchError(
                f"limit must be positive, got {limit}",
                code=ErrorCode.SEARCH_INVALID_QUERY,
            )
        if offset < 0:
            raise SearchError(
                f"offset must not be negative, got {offset}",
                code=ErrorCode.SEARCH_INVALID_QUERY,
            )
        return min(limit, MAX_PAGE_SIZE) if limit is not None else None

    def _run(self, operation: str, query_text: Optional[str], fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"{operation} failed: {e}")
            raise SearchError(f"{operation} failed", query=query_text) from e

    def search(
        self,
        user_id: str,
        term: Optional[str] = None,
        category_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[SearchRow]:
        """Ranked search with offset pagination."""
        limit = self._page(limit, offset)
        return self._run(
            "search", term, self.repository.search,
            user_id, term=term, category_id=category_id, limit=limit, offset=offset,
        )

    def search_cursor(
        self,
        user_id: str,
        cursor: Union[str, datetime.datetime, None] = None,
        limit: Optional[int] = None,
        term: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> CursorPage:
        """Cursor pagination, newest first."""
        limit = self._page(limit)
        return self._run(
            "search_cursor", term, self.repository.search_cursor,
            user_id, cursor=parse_cursor(cursor), limit=limit, term=term,
            category_id=category_id,
        )

    def pagination_info(
        self,
        user_id: str,
        term: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> PaginationInfo:
        """Totals for offset pagination of ``search``."""
        return self._run(
            "pagination_info", term, self.repository.pagination_info,
            user_id, term=term, category_id=category_id,
        )

    def search_advanced(
        self,
        user_id: str,
        term: Optional[str] = None,
        category_id: Optional[str] = None,
        is_complete: Optional[bool] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[SearchRow]:
        """Multi-keyword search with hard filters."""
        limit = self._page(limit, offset)
        return self._run(
            "search_advanced", term, self.repository.search_advanced,
            user_id, term=term, category_id=category_id, is_complete=is_complete,
            limit=limit, offset=offset,
        )

    def suggestions(
        self, user_id: str, query: Optional[str], limit: Optional[int] = None
    ) -> List[Suggestion]:
        """Autocomplete suggestions for a title prefix."""
        limit = self._page(limit)
        return self._run(
            "suggestions", query, self.repository.suggestions,
            user_id, query, limit=limit,
        )
