import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from gateway_app.db import create_db_engine
from gateway_app.db_models import ApiKey, Base, ModelConfig, Source


@pytest_asyncio.fixture
async def session_maker(tmp_path) -> async_sessionmaker:
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield maker
    finally:
        await engine.dispose()


async def _add(session_maker: async_sessionmaker, row):
    async with session_maker() as session:
        session.add(row)
        await session.commit()
        await session.refresh(row)
        return row


@pytest.fixture
def make_key(session_maker: async_sessionmaker):
    async def _make(**overrides) -> ApiKey:
        fields = {
            "name": "alice",
            "key": "sk-alice",
            "is_enabled": True,
            "allowed_models": [],
            "total_quota": 10.0,
            "used_quota": 0.0,
            "rpm": 60,
            "tpm": 100000,
        }
        fields.update(overrides)
        return await _add(session_maker, ApiKey(**fields))

    return _make


@pytest.fixture
def make_source(session_maker: async_sessionmaker):
    async def _make(**overrides) -> Source:
        fields = {
            "name": "primary",
            "base_url": "https://upstream.test/",
            "api_key": "upstream-secret",
            "models": [],
            "priority": 0,
            "weight": 1,
            "is_enabled": True,
        }
        fields.update(overrides)
        return await _add(session_maker, Source(**fields))

    return _make


@pytest.fixture
def make_model(session_maker: async_sessionmaker):
    async def _make(**overrides) -> ModelConfig:
        fields = {
            "model_id": "gpt-4o-mini",
            "display_name": "GPT-4o mini",
            "input_price": 1.0,
            "output_price": 2.0,
            "is_enabled": True,
        }
        fields.update(overrides)
        return await _add(session_maker, ModelConfig(**fields))

    return _make


@pytest_asyncio.fixture
async def seeded_key(make_key) -> ApiKey:
    return await make_key()


@pytest_asyncio.fixture
async def seeded_source(make_source) -> Source:
    return await make_source()


@pytest_asyncio.fixture
async def seeded_model(make_model) -> ModelConfig:
    return await make_model()

