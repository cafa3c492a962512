"""Read-side queries: ranked search, pagination and suggestions.

All ranking happens in SQL. The ``similarity`` and ``unicode_lower``
functions are registered on every connection by ``todo_mcp.models.db_models``.
Titles are folded with ``unicode_lower`` so they compare against terms
lowercased in Python.
"""
import datetime
import logging
import math
from typing import List, Optional

from sqlalchemy import (Float, Integer, String, case, cast, func, literal, or_,
                        select, true)

from todo_mcp.config import config
from todo_mcp.models.db_models import (DBCategory, DBTodo, get_session_factory,
                                       init_db, user_session)
from todo_mcp.models.schema import (CursorPage, PaginationInfo, SearchRow,
                                    Suggestion, ensure_timezone_aware,
                                    to_storage_time, utc_now)
from todo_mcp.utils import escape_like_pattern, normalize_query, split_keywords

logger = logging.getLogger(__name__)

# Suggestions longer than this are cut to SUGGESTION_CUT chars plus "..."
SUGGESTION_MAX_LENGTH = 50
SUGGESTION_CUT = 47


def _like(column, pattern: str):
    return column.like(pattern, escape="\\")


def _folded_title():
    return func.unicode_lower(DBTodo.title, type_=String)


class SearchRepository:
    """Ranked, user-scoped queries over todos joined with their categories.

    Ranking tiers come from config: exact title match, then prefix, then
    substring, then trigram similarity above ``similarity_threshold``. Rows
    in a higher tier always sort ahead of rows in a lower one; ties break
    on ``created_at`` descending.
    """

    def __init__(self, engine=None):
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        logger.info("SearchRepository initialized")

    def _ranking(self, term: Optional[str]):
        """Build (rank, tier, match) expressions for a search term.

        An empty term matches every row with rank 0.
        """
        q = normalize_query(term)
        if not q:
            return literal(0.0, Float), literal(0, Integer), true()

        title = _folded_title()
        pattern = escape_like_pattern(q)
        exact = title == q
        prefix = _like(title, f"{pattern}%")
        substring = _like(title, f"%{pattern}%")
        similarity = func.similarity(title, q, type_=Float)

        rank = case(
            (exact, literal(config.exact_match_rank, Float)),
            (prefix, literal(config.prefix_match_rank, Float)),
            (substring, literal(config.substring_match_rank, Float)),
            else_=similarity,
        )
        tier = case((exact, 3), (prefix, 2), (substring, 1), else_=0)
        match = or_(substring, similarity > config.similarity_threshold)
        return rank, tier, match

    def _row_query(self, user_id: str, rank, category_id: Optional[str]):
        query = (
            select(
                DBTodo.id,
                DBTodo.title,
                DBTodo.is_complete,
                DBTodo.category_id,
                DBTodo.created_at,
                DBTodo.version,
                DBCategory.name.label("category_name"),
                DBCategory.color.label("category_color"),
                rank.label("rank"),
            )
            .select_from(DBTodo)
            .outerjoin(DBCategory, DBTodo.category_id == DBCategory.id)
            .where(DBTodo.user_id == user_id)
        )
        if category_id is not None:
            query = query.where(DBTodo.category_id == category_id)
        return query

    @staticmethod
    def _to_row(row) -> SearchRow:
        return SearchRow(
            id=row.id,
            title=row.title,
            is_complete=bool(row.is_complete),
            category_id=row.category_id,
            created_at=ensure_timezone_aware(row.created_at),
            version=row.version,
            category_name=row.category_name,
            category_color=row.category_color,
            rank=float(row.rank or 0.0),
        )

    def search(
        self,
        user_id: str,
        term: Optional[str] = None,
        category_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[SearchRow]:
        """Ranked search with offset pagination.

        Args:
            user_id: Caller.
            term: Search term; None or blank lists everything newest first.
            category_id: Optional category filter.
            limit: Page size; defaults to ``config.default_search_limit``.
            offset: Rows to skip.

        Returns:
            Matching rows ordered by tier, rank, then created_at descending.
        """
        limit = limit or config.default_search_limit
        rank, tier, match = self._ranking(term)
        query = (
            self._row_query(user_id, rank, category_id)
            .where(match)
            .order_by(tier.desc(), rank.desc(), DBTodo.created_at.desc())
            .limit(limit)
            .offset(max(offset, 0))
        )
        with user_session(self.session_factory, user_id) as session:
            rows = [self._to_row(row) for row in session.execute(query)]

        logger.debug(f"search '{term}' for {user_id}: {len(rows)} rows")
        return rows

    def search_cursor(
        self,
        user_id: str,
        cursor: Optional[datetime.datetime] = None,
        limit: Optional[int] = None,
        term: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> CursorPage:
        """Keyset pagination on ``created_at`` descending.

        Returns rows strictly older than ``cursor`` (None means from the
        newest row). One extra row is fetched to decide ``has_more``. Rows
        sharing the cursor's exact ``created_at`` are not revisited.
        """
        limit = limit or config.default_search_limit
        if cursor is None:
            cursor = utc_now() + datetime.timedelta(days=1)
        rank, _, match = self._ranking(term)
        query = (
            self._row_query(user_id, rank, category_id)
            .where(match, DBTodo.created_at < to_storage_time(cursor))
            .order_by(DBTodo.created_at.desc())
            .limit(limit + 1)
        )
        with user_session(self.session_factory, user_id) as session:
            rows = [self._to_row(row) for row in session.execute(query)]

        has_more = len(rows) > limit
        return CursorPage(items=rows[:limit], has_more=has_more)

    def pagination_info(
        self,
        user_id: str,
        term: Optional[str] = None,
        category_id: Optional[str] = None,
    ) -> PaginationInfo:
        """Count the rows ``search`` would return across all pages."""
        _, _, match = self._ranking(term)
        query = select(func.count(DBTodo.id)).where(DBTodo.user_id == user_id, match)
        if category_id is not None:
            query = query.where(DBTodo.category_id == category_id)
        with user_session(self.session_factory, user_id) as session:
            total = session.scalar(query) or 0

        per_page = config.items_per_page
        return PaginationInfo(
            total_count=total,
            total_pages=math.ceil(total / per_page),
            items_per_page=per_page,
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
        """Multi-keyword search ranked by the fraction of keywords matched.

        A row qualifies when any keyword is a substring of its title. With
        no keywords every row qualifies with rank 0. ``category_id`` and
        ``is_complete`` are hard filters.
        """
        limit = limit or config.default_search_limit
        keywords = split_keywords(term)
        if keywords:
            title = _folded_title()
            hits = [
                case((_like(title, f"%{escape_like_pattern(kw)}%"), 1), else_=0)
                for kw in keywords
            ]
            matched = hits[0]
            for hit in hits[1:]:
                matched = matched + hit
            rank = cast(matched, Float) / float(len(keywords))
            qualifies = matched > 0
        else:
            rank = literal(0.0, Float)
            qualifies = true()

        query = self._row_query(user_id, rank, category_id).where(qualifies)
        if is_complete is not None:
            query = query.where(DBTodo.is_complete == is_complete)
        query = (
            query.order_by(rank.desc(), DBTodo.created_at.desc())
            .limit(limit)
            .offset(max(offset, 0))
        )
        with user_session(self.session_factory, user_id) as session:
            return [self._to_row(row) for row in session.execute(query)]

    def suggestions(
        self, user_id: str, query: Optional[str], limit: Optional[int] = None
    ) -> List[Suggestion]:
        """Autocomplete titles starting with ``query``.

        Long titles are truncated before grouping, so titles sharing their
        first characters collapse into one counted suggestion.
        """
        q = normalize_query(query)
        if not q:
            return []
        limit = limit or config.suggestion_limit

        truncated = case(
            (
                func.length(DBTodo.title) > SUGGESTION_MAX_LENGTH,
                func.substr(DBTodo.title, 1, SUGGESTION_CUT, type_=String) + "...",
            ),
            else_=DBTodo.title,
        )
        candidates = (
            select(truncated.label("suggestion"))
            .where(
                DBTodo.user_id == user_id,
                _like(_folded_title(), f"{escape_like_pattern(q)}%"),
            )
            .subquery()
        )
        count = func.count().label("count")
        stmt = (
            select(candidates.c.suggestion, count)
            .group_by(candidates.c.suggestion)
            .order_by(count.desc(), candidates.c.suggestion.asc())
            .limit(limit)
        )
        with user_session(self.session_factory, user_id) as session:
            return [
                Suggestion(suggestion=row.suggestion, count=row.count)
                for row in session.execute(stmt)
            ]

