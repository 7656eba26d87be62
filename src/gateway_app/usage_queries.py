from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gateway_app.db_models import RequestLog


def _sum_cost(column: Any) -> Any:
    return func.coalesce(func.sum(column), 0.0)


def day_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """Whole-day window: start of ``start`` up to (excluding) the day after ``end``."""
    return datetime.combine(start, time.min), datetime.combine(end + timedelta(days=1), time.min)


def day_timestamp(day: str) -> int:
    return calendar.timegm(date.fromisoformat(day).timetuple())


async def fetch_daily_costs(
    session: AsyncSession,
    *,
    api_key_id: int,
    start: date,
    end: date,
) -> list[dict[str, Any]]:
    window_start, window_end = day_bounds(start, end)
    day_bucket = func.date(RequestLog.created_at)
    rows = await session.execute(
        select(day_bucket, _sum_cost(RequestLog.cost))
        .where(
            RequestLog.api_key_id == api_key_id,
            RequestLog.created_at >= window_start,
            RequestLog.created_at < window_end,
        )
        .group_by(day_bucket)
        .order_by(day_bucket.asc())
    )

    return [{"day": str(row[0]), "cost": float(row[1])} for row in rows]


async def fetch_request_logs_page(
    session: AsyncSession,
    *,
    api_key_id: int,
    page: int,
    per_page: int,
) -> tuple[list[RequestLog], int]:
    total = (
        await session.execute(
            select(func.count(RequestLog.id)).where(RequestLog.api_key_id == api_key_id)
        )
    ).scalar_one()

    rows = await session.scalars(
        select(RequestLog)
        .where(RequestLog.api_key_id == api_key_id)
        .order_by(RequestLog.created_at.desc(), RequestLog.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(rows), int(total)
