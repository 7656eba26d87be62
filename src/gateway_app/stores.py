from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway_app.db_models import ApiKey, ModelConfig, Source

COUNTER_FIELDS = frozenset({"used_quota", "daily_used", "monthly_used"})
RESET_PAIRS = {
    "daily_used": "daily_reset_at",
    "monthly_used": "monthly_reset_at",
}


class CredentialStore:
    """Point lookups and single-statement mutations on ``api_keys``.

    Every counter change is one UPDATE with the arithmetic done by the
    database, so concurrent requests on the same key never lose increments.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def find_by_token(self, token: str) -> ApiKey | None:
        async with self._session_maker() as session:
            return await session.scalar(select(ApiKey).where(ApiKey.key == token))

    async def get(self, key_id: int) -> ApiKey | None:
        async with self._session_maker() as session:
            return await session.get(ApiKey, key_id)

    async def atomic_increment(
        self,
        key_id: int,
        fields: dict[str, float],
        *,
        set_values: dict[str, Any] | None = None,
    ) -> int:
        unknown = set(fields) - COUNTER_FIELDS
        if unknown:
            raise ValueError(f"Not an incrementable field: {sorted(unknown)}")

        columns = ApiKey.__table__.c
        values: dict[str, Any] = {
            name: func.coalesce(columns[name], 0) + amount
            for name, amount in fields.items()
        }
        values.update(set_values or {})

        async with self._session_maker() as session:
            result = await session.execute(
                update(ApiKey)
                .where(ApiKey.id == key_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount or 0

    async def update(self, key_id: int, fields: dict[str, Any]) -> int:
        async with self._session_maker() as session:
            result = await session.execute(
                update(ApiKey)
                .where(ApiKey.id == key_id)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount or 0

    async def reset_if_due(
        self,
        key_id: int,
        counter_field: str,
        *,
        now: datetime,
        next_reset_at: datetime,
    ) -> bool:
        """Compare-and-set reset of a periodic counter.

        Zeroes ``counter_field`` and advances its reset timestamp only while
        the stored timestamp is unset or already due, so two requests racing
        across a period boundary perform a single effective reset.
        """
        reset_field = RESET_PAIRS[counter_field]
        columns = ApiKey.__table__.c
        async with self._session_maker() as session:
            result = await session.execute(
                update(ApiKey)
                .where(ApiKey.id == key_id)
                .where(
                    or_(columns[reset_field].is_(None), columns[reset_field] <= now)
                )
                .values({counter_field: 0.0, reset_field: next_reset_at})
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return bool(result.rowcount)


class SourceStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def list_enabled(self) -> list[Source]:
        async with self._session_maker() as session:
            rows = await session.scalars(
                select(Source)
                .where(Source.is_enabled.is_(True))
                .order_by(Source.priority.desc(), Source.id.asc())
            )
            return list(rows)


class PricingStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def find_by_model_id(self, model_id: str) -> ModelConfig | None:
        async with self._session_maker() as session:
            return await session.scalar(
                select(ModelConfig).where(ModelConfig.model_id == model_id)
            )

    async def list_enabled(self) -> list[ModelConfig]:
        async with self._session_maker() as session:
            rows = await session.scalars(
                select(ModelConfig)
                .where(ModelConfig.is_enabled.is_(True))
                .order_by(ModelConfig.model_id.asc())
            )
            return list(rows)
