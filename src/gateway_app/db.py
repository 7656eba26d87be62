import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gateway_app.config import get_database_url, parse_int_env
from gateway_app.db_models import Base

logger = logging.getLogger(__name__)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA temp_store=MEMORY",
    "PRAGMA foreign_keys=ON",
)


def sqlite_busy_timeout_ms() -> int:
    return parse_int_env("SQLITE_BUSY_TIMEOUT_MS", 5000, minimum=1000)


def create_db_engine(database_url: str) -> AsyncEngine:
    """Async engine; SQLite connections get WAL mode and a busy timeout so
    concurrent counter updates wait for the write lock instead of failing."""
    if make_url(database_url).get_backend_name() != "sqlite":
        return create_async_engine(database_url)

    busy_timeout_ms = sqlite_busy_timeout_ms()
    engine = create_async_engine(
        database_url, connect_args={"timeout": busy_timeout_ms / 1000}
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
        cursor.close()

    return engine


async def init_db_runtime(
    root_dir: Path,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    database_url = get_database_url(root_dir)
    engine = create_db_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database ready (%s)", make_url(database_url).get_backend_name())
    return engine, async_sessionmaker(engine, expire_on_commit=False)
