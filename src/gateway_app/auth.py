from datetime import datetime
from typing import AsyncGenerator

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway_app.db_models import ApiKey, utcnow
from gateway_app.errors import Forbidden, Unauthenticated
from gateway_app.stores import CredentialStore

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def parse_authorization(authorization: str | None) -> str | None:
    """Returns the token with an optional ``Bearer`` prefix removed.

    None means the header was absent; an empty string means it held nothing
    usable.
    """
    if authorization is None:
        return None
    value = authorization.strip()
    scheme, _, rest = value.partition(" ")
    if scheme.lower() == "bearer":
        value = rest
    return value.strip()


async def authenticate(
    store: CredentialStore,
    authorization: str | None,
    *,
    now: datetime | None = None,
) -> ApiKey:
    token = parse_authorization(authorization)
    if token is None:
        raise Unauthenticated("Missing Authorization header")
    if not token:
        raise Unauthenticated("Invalid Authorization header")

    api_key = await store.find_by_token(token)
    if api_key is None:
        raise Unauthenticated("Invalid API key")

    if not api_key.is_enabled:
        raise Forbidden("API key is disabled")

    if api_key.expired_at is not None and api_key.expired_at < (now or utcnow()):
        raise Forbidden("API key has expired")

    return api_key


def check_model_permission(allowed_models: list[str] | None, model_id: str) -> bool:
    if not allowed_models:
        return True
    return model_id in allowed_models


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    session_maker: async_sessionmaker[AsyncSession] = request.app.state.db_session_maker
    async with session_maker() as session:
        yield session


def get_credential_store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


async def get_api_key(
    store: CredentialStore = Depends(get_credential_store),
    authorization: str | None = Depends(api_key_header),
) -> ApiKey:
    return await authenticate(store, authorization)
