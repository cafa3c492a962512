"""Completion statistics: per category, overall, per day and ranked."""

import calendar
import datetime
import logging
from typing import Any, List, Optional

from sqlalchemy import Float, String, case, func, select

from todo_mcp.models.db_models import (DBCategory, DBTodo, get_session_factory,
                                       init_db, user_session)
from todo_mcp.models.schema import (UNCATEGORIZED_COLOR, UNCATEGORIZED_NAME,
                                    CategoryRanking, CategoryStats,
                                    CompletionRate, DailyStats, OverallStats,
                                    StatsRange, ensure_timezone_aware,
                                    to_storage_time, utc_now)

logger = logging.getLogger(__name__)


def _percent(part: int, whole: int) -> int:
    """Whole-number percentage, rounding halves up."""
    if whole == 0:
        return 0
    return int(part * 100 / whole + 0.5)


def range_start(
    time_range: StatsRange, now: Optional[datetime.datetime] = None
) -> Optional[datetime.datetime]:
    """Earliest ``created_at`` included by a stats range, or None for all.

    ``week`` is the last 7 days; ``month`` goes back one calendar month,
    clamping the day (March 31 -> February 28/29).
    """
    now = now or utc_now()
    time_range = StatsRange(time_range)
    if time_range is StatsRange.WEEK:
        return now - datetime.timedelta(days=7)
    if time_range is StatsRange.MONTH:
        year, month = (now.year - 1, 12) if now.month == 1 else (now.year, now.month - 1)
        day = min(now.day, calendar.monthrange(year, month)[1])
        return now.replace(year=year, month=month, day=day)
    return None


class StatsService:
    """Aggregates todo completion for one user at a time."""

    def __init__(self, engine: Optional[Any] = None):
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)

    def category_stats(
        self, user_id: str, time_range: StatsRange = StatsRange.ALL
    ) -> List[CategoryStats]:
        """Per-category totals, including an "Uncategorized" bucket.

        Only buckets holding at least one todo are returned, largest first.
        """
        since = range_start(time_range)
        total = func.count(DBTodo.id)
        completed = func.sum(case((DBTodo.is_complete, 1), else_=0))
        query = (
            select(
                DBTodo.category_id,
                DBCategory.name,
                DBCategory.color,
                total.label("total"),
                completed.label("completed"),
            )
            .select_from(DBTodo)
            .outerjoin(DBCategory, DBTodo.category_id == DBCategory.id)
            .where(DBTodo.user_id == user_id)
            .group_by(DBTodo.category_id, DBCategory.name, DBCategory.color)
            .order_by(total.desc(), DBCategory.name)
        )
        if since is not None:
            query = query.where(DBTodo.created_at >= to_storage_time(since))

        with user_session(self.session_factory, user_id) as session:
            rows = session.execute(query).all()

        stats = []
        for row in rows:
            done = int(row.completed or 0)
            stats.append(
                CategoryStats(
                    category_id=row.category_id,
                    category_name=row.name if row.category_id else UNCATEGORIZED_NAME,
                    category_color=row.color if row.category_id else UNCATEGORIZED_COLOR,
                    total_count=row.total,
                    completed_count=done,
                    completion_rate=_percent(done, row.total),
                )
            )
        return stats

    def overall_stats(
        self, user_id: str, time_range: StatsRange = StatsRange.ALL
    ) -> OverallStats:
        """Totals across all categories plus most/least used category.

        Also reports how todos spread over buckets (max, min and average per
        bucket, uncategorized included) and the first and last creation time.
        """
        since = range_start(time_range)
        buckets = self.category_stats(user_id, time_range)
        span = select(func.min(DBTodo.created_at), func.max(DBTodo.created_at)).where(
            DBTodo.user_id == user_id
        )
        if since is not None:
            span = span.where(DBTodo.created_at >= to_storage_time(since))
        with user_session(self.session_factory, user_id) as session:
            category_count = session.scalar(
                select(func.count(DBCategory.id)).where(DBCategory.user_id == user_id)
            ) or 0
            first, last = session.execute(span).one()

        total = sum(b.total_count for b in buckets)
        completed = sum(b.completed_count for b in buckets)
        used = [b for b in buckets if b.category_id is not None]
        sizes = [b.total_count for b in buckets]
        return OverallStats(
            total_todos=total,
            completed_todos=completed,
            pending_todos=total - completed,
            total_categories=category_count,
            completion_rate=_percent(completed, total),
            most_used_category=used[0].category_name if used else None,
            least_used_category=used[-1].category_name if used else None,
            categories_used=len(used),
            max_todos_in_category=max(sizes, default=0),
            min_todos_in_category=min(sizes, default=0),
            avg_todos_per_category=round(total / len(sizes), 2) if sizes else 0.0,
            first_todo_at=ensure_timezone_aware(first) if first else None,
            last_todo_at=ensure_timezone_aware(last) if last else None,
            categories=buckets,
        )

    def completion_rate_for_period(
        self,
        user_id: str,
        start: datetime.datetime,
        end: datetime.datetime,
    ) -> CompletionRate:
        """Completion of todos created between ``start`` and ``end`` inclusive.

        The rate is a percentage rounded to 2 decimals, or None when no todo
        falls in the period.
        """
        query = select(
            func.count(DBTodo.id),
            func.sum(case((DBTodo.is_complete, 1), else_=0)),
        ).where(
            DBTodo.user_id == user_id,
            DBTodo.created_at.between(to_storage_time(start), to_storage_time(end)),
        )
        with user_session(self.session_factory, user_id) as session:
            total, completed = session.execute(query).one()

        total = total or 0
        completed = int(completed or 0)
        rate = round(completed * 100.0 / total, 2) if total else None
        logger.debug(f"Completion for {user_id} {start}..{end}: {completed}/{total}")
        return CompletionRate(
            total_todos=total, completed_todos=completed, completion_rate=rate
        )

    def daily_stats(
        self, user_id: str, time_range: StatsRange = StatsRange.ALL
    ) -> List[DailyStats]:
        """Todos created per UTC day, oldest first.

        Days without todos are skipped, so the 7-day moving average spans
        the last seven active days.
        """
        since = range_start(time_range)
        day = func.date(DBTodo.created_at, type_=String)
        per_day = (
            select(
                day.label("day"),
                func.count(DBTodo.id).label("created"),
                func.sum(case((DBTodo.is_complete, 1), else_=0)).label("completed"),
            )
            .where(DBTodo.user_id == user_id)
            .group_by(day)
        )
        if since is not None:
            per_day = per_day.where(DBTodo.created_at >= to_storage_time(since))
        per_day = per_day.subquery()

        query = select(
            per_day.c.day,
            per_day.c.created,
            per_day.c.completed,
            func.sum(per_day.c.created)
            .over(order_by=per_day.c.day, rows=(None, 0))
            .label("cumulative"),
            func.avg(per_day.c.created)
            .over(order_by=per_day.c.day, rows=(-6, 0))
            .label("moving_avg"),
        ).order_by(per_day.c.day)

        with user_session(self.session_factory, user_id) as session:
            rows = session.execute(query).all()

        return [
            DailyStats(
                day=datetime.date.fromisoformat(row.day),
                todos_created=row.created,
                todos_completed=int(row.completed or 0),
                cumulative_todos=int(row.cumulative),
                moving_avg_7days=round(float(row.moving_avg), 2),
            )
            for row in rows
        ]

    def _ranked_categories(self, user_id: str):
        total = func.count(DBTodo.id)
        completed = func.sum(case((DBTodo.is_complete, 1), else_=0))
        rate = func.round(completed * 100.0 / total, 2, type_=Float)
        counts = (
            select(
                DBCategory.id.label("category_id"),
                DBCategory.name.label("category_name"),
                total.label("total"),
                case((total > 0, rate), else_=0.0).label("rate"),
            )
            .select_from(DBCategory)
            .outerjoin(DBTodo, DBTodo.category_id == DBCategory.id)
            .where(DBCategory.user_id == user_id)
            .group_by(DBCategory.id, DBCategory.name)
            .subquery()
        )
        usage_rank = func.rank().over(order_by=counts.c.total.desc()).label("usage_rank")
        query = select(
            counts,
            usage_rank,
            func.rank().over(order_by=counts.c.rate.desc()).label("completion_rank"),
            func.dense_rank()
            .over(order_by=counts.c.total.desc())
            .label("dense_usage_rank"),
            # AVG skips the NULLs, so empty categories do not drag it down
            func.avg(case((counts.c.total > 0, counts.c.rate)))
            .over()
            .label("average_rate"),
        ).order_by(usage_rank, counts.c.category_name)

        with user_session(self.session_factory, user_id) as session:
            return session.execute(query).all()

    @staticmethod
    def _to_ranking(row) -> CategoryRanking:
        return CategoryRanking(
            category_id=row.category_id,
            category_name=row.category_name,
            total_todos=row.total,
            completion_rate=float(row.rate),
            usage_rank=row.usage_rank,
            completion_rank=row.completion_rank,
            dense_usage_rank=row.dense_usage_rank,
        )

    def category_rankings(self, user_id: str) -> List[CategoryRanking]:
        """Every category ranked by usage and by completion rate.

        Empty categories take part with 0 todos and a 0% rate.
        """
        return [self._to_ranking(row) for row in self._ranked_categories(user_id)]

    def high_performing_categories(self, user_id: str) -> List[CategoryRanking]:
        """Categories whose completion rate beats the user's average.

        The average is taken over categories holding at least one todo.
        """
        return [
            self._to_ranking(row)
            for row in self._ranked_categories(user_id)
            if row.average_rate is not None and row.rate > row.average_rate
        ]
