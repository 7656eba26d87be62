from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from gateway_app.auth import get_api_key, get_db_session
from gateway_app.db_models import ApiKey, as_utc, epoch_seconds, utcnow
from gateway_app.errors import BadRequest
from gateway_app.usage_queries import (
    day_timestamp,
    fetch_daily_costs,
    fetch_request_logs_page,
)

router = APIRouter(prefix="/v1", tags=["billing"])

DATE_FORMAT = "%Y-%m-%d"
MAX_PER_PAGE = 100


class SubscriptionResponse(BaseModel):
    object: str = "billing_subscription"
    has_payment_method: bool = True
    hard_limit_usd: float
    soft_limit_usd: float
    system_hard_limit_usd: float
    access_until: int
    balance: float
    used: float


class UsageLineItem(BaseModel):
    name: str = "API Usage"
    cost: float


class DailyCost(BaseModel):
    timestamp: int
    line_items: list[UsageLineItem]


class UsageResponse(BaseModel):
    object: str = "billing_usage"
    total_usage: float
    daily_costs: list[DailyCost]


class LogItem(BaseModel):
    id: int
    model_name: str
    tokens: int
    prompt_tokens: int
    completion_tokens: int
    cost: float
    latency_ms: int
    status_code: int
    is_stream: bool
    created_at: datetime


class LogListResponse(BaseModel):
    data: list[LogItem]
    total: int
    page: int
    per_page: int


def _parse_day(value: str | None, field: str) -> date:
    if not value:
        return utcnow().date()
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError as exc:
        raise BadRequest(f"Invalid {field}: expected YYYY-MM-DD") from exc


@router.get("/dashboard/billing/subscription", response_model=SubscriptionResponse)
async def get_subscription(api_key: ApiKey = Depends(get_api_key)) -> SubscriptionResponse:
    total_quota = float(api_key.total_quota or 0)
    used_quota = float(api_key.used_quota or 0)
    return SubscriptionResponse(
        hard_limit_usd=total_quota,
        soft_limit_usd=total_quota,
        system_hard_limit_usd=total_quota,
        access_until=epoch_seconds(api_key.expired_at),
        balance=max(0.0, total_quota - used_quota),
        used=used_quota,
    )


@router.get("/dashboard/billing/usage", response_model=UsageResponse)
async def get_usage(
    start_date: str | None = Query(default=None),
    end_date: str | None = Query(default=None),
    api_key: ApiKey = Depends(get_api_key),
    session: AsyncSession = Depends(get_db_session),
) -> UsageResponse:
    """Cost per UTC day over an inclusive date range; ``total_usage`` is in cents."""
    start = _parse_day(start_date, "start_date")
    end = _parse_day(end_date, "end_date")

    rows = await fetch_daily_costs(session, api_key_id=api_key.id, start=start, end=end)
    total_cost = sum(row["cost"] for row in rows)
    return UsageResponse(
        total_usage=total_cost * 100,
        daily_costs=[
            DailyCost(
                timestamp=day_timestamp(row["day"]),
                line_items=[UsageLineItem(cost=row["cost"])],
            )
            for row in rows
        ],
    )


@router.get("/logs", response_model=LogListResponse)
async def list_logs(
    page: int = Query(default=1),
    per_page: int = Query(default=20),
    api_key: ApiKey = Depends(get_api_key),
    session: AsyncSession = Depends(get_db_session),
) -> LogListResponse:
    page = max(1, page)
    per_page = min(MAX_PER_PAGE, max(1, per_page))

    rows, total = await fetch_request_logs_page(
        session, api_key_id=api_key.id, page=page, per_page=per_page
    )
    return LogListResponse(
        data=[
            LogItem(
                id=row.id,
                model_name=row.model_id,
                tokens=row.total_tokens,
                prompt_tokens=row.prompt_tokens,
                completion_tokens=row.completion_tokens,
                cost=float(row.cost or 0),
                latency_ms=row.latency_ms,
                status_code=row.status_code,
                is_stream=row.is_stream,
                created_at=as_utc(row.created_at),
            )
            for row in rows
        ],
        total=total,
        page=page,
        per_page=per_page,
    )
