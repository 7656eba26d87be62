import logging
from datetime import datetime, timedelta

from gateway_app.db_models import ApiKey, utcnow
from gateway_app.errors import QuotaExceeded
from gateway_app.logging_config import log_anomaly
from gateway_app.stores import CredentialStore

logger = logging.getLogger(__name__)


def next_utc_midnight(now: datetime) -> datetime:
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


def next_utc_month_start(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1)
    return datetime(now.year, now.month + 1, 1)


def _is_due(reset_at: datetime | None, now: datetime) -> bool:
    return reset_at is None or now >= reset_at


def check_quota(api_key: ApiKey) -> None:
    """Admission check against usage recorded so far.

    The prospective cost of the request is unknown here, so a single large
    request may push usage past a ceiling; the next request is the one that
    gets rejected. Ceilings are checked total, daily, monthly, and only the
    first exhausted one is reported.
    """
    total_quota = float(api_key.total_quota or 0)
    if total_quota > 0 and float(api_key.used_quota or 0) >= total_quota:
        raise QuotaExceeded("Total quota exceeded")

    if api_key.daily_quota is not None:
        daily_quota = float(api_key.daily_quota)
        if daily_quota > 0 and float(api_key.daily_used or 0) >= daily_quota:
            raise QuotaExceeded("Daily quota exceeded")

    if api_key.monthly_quota is not None:
        monthly_quota = float(api_key.monthly_quota)
        if monthly_quota > 0 and float(api_key.monthly_used or 0) >= monthly_quota:
            raise QuotaExceeded("Monthly quota exceeded")


class QuotaManager:
    def __init__(self, store: CredentialStore):
        self._store = store

    async def lazy_reset(self, api_key: ApiKey, now: datetime | None = None) -> ApiKey:
        """Zeroes daily/monthly counters whose period has rolled over.

        The stored reset is a compare-and-set, so evaluating this more than
        once in the same period resets at most once. The in-memory snapshot is
        updated to match and returned.
        """
        now = now or utcnow()

        if api_key.daily_quota is not None and _is_due(api_key.daily_reset_at, now):
            next_reset = next_utc_midnight(now)
            applied = await self._store.reset_if_due(
                api_key.id, "daily_used", now=now, next_reset_at=next_reset
            )
            logger.debug("Daily quota reset for key %s (applied=%s)", api_key.id, applied)
            api_key.daily_used = 0.0
            api_key.daily_reset_at = next_reset

        if api_key.monthly_quota is not None and _is_due(api_key.monthly_reset_at, now):
            next_reset = next_utc_month_start(now)
            applied = await self._store.reset_if_due(
                api_key.id, "monthly_used", now=now, next_reset_at=next_reset
            )
            logger.debug("Monthly quota reset for key %s (applied=%s)", api_key.id, applied)
            api_key.monthly_used = 0.0
            api_key.monthly_reset_at = next_reset

        return api_key

    async def debit(
        self, api_key_id: int, cost: float, now: datetime | None = None
    ) -> bool:
        if cost <= 0:
            return False

        try:
            await self._store.atomic_increment(
                api_key_id,
                {"used_quota": cost, "daily_used": cost, "monthly_used": cost},
                set_values={"last_used_at": now or utcnow()},
            )
        except Exception as exc:
            logger.exception("Failed to debit %.6f from API key %s", cost, api_key_id)
            log_anomaly("debit_failed", api_key_id=api_key_id, cost=cost, error=str(exc))
            return False
        return True
