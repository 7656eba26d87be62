import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from gateway_app.config import (
    GatewaySettings,
    get_cors_settings,
    get_gateway_settings,
    parse_int_env,
)
from gateway_app.db import init_db_runtime
from gateway_app.errors import GatewayError, InternalError, gateway_error_response
from gateway_app.gateway import Gateway
from gateway_app.logging_config import configure_logging
from gateway_app.pricing import PricingCalculator
from gateway_app.quota import QuotaManager
from gateway_app.rate_limit import RateLimiter
from gateway_app.request_logger import RequestLogger, prune_request_logs
from gateway_app.routers import billing_router, gateway_router
from gateway_app.stores import CredentialStore, PricingStore, SourceStore
from gateway_app.upstream import UpstreamForwarder

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[2]


def create_app(
    *,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    http_client: httpx.AsyncClient | None = None,
    settings: GatewaySettings | None = None,
) -> FastAPI:
    """Builds the gateway application.

    ``session_maker`` and ``http_client`` may be supplied by the caller (tests
    pass a temporary database and a mock transport); anything supplied is
    left open at shutdown.
    """
    settings = settings or get_gateway_settings()
    cors_settings = get_cors_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, anomaly_log_dir=settings.anomaly_log_dir)

        engine = None
        db_session_maker = session_maker
        if db_session_maker is None:
            engine, db_session_maker = await init_db_runtime(ROOT_DIR)

        await prune_request_logs(
            db_session_maker, retention_days=settings.request_log_retention_days
        )

        client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                settings.upstream_timeout_seconds,
                connect=settings.upstream_connect_timeout_seconds,
            )
        )

        credential_store = CredentialStore(db_session_maker)
        pricing_store = PricingStore(db_session_maker)
        rate_limiter = RateLimiter()
        request_logger = RequestLogger(
            db_session_maker,
            queue_maxsize=settings.request_log_queue_maxsize,
            batch_size=settings.request_log_batch_size,
            flush_interval_seconds=settings.request_log_flush_interval_seconds,
        )

        app.state.settings = settings
        app.state.db_session_maker = db_session_maker
        app.state.credential_store = credential_store
        app.state.pricing_store = pricing_store
        app.state.rate_limiter = rate_limiter
        app.state.request_logger = request_logger
        app.state.gateway = Gateway(
            credentials=credential_store,
            sources=SourceStore(db_session_maker),
            pricing=PricingCalculator(pricing_store),
            quota=QuotaManager(credential_store),
            rate_limiter=rate_limiter,
            forwarder=UpstreamForwarder(client),
            request_logger=request_logger,
            enforce_tpm=settings.enforce_tpm,
        )

        await request_logger.start()
        rate_limiter.start_sweeper(settings.rate_limit_sweep_interval_seconds)
        logger.info("Gateway started (enforce_tpm=%s)", settings.enforce_tpm)
        try:
            yield
        finally:
            await app.state.gateway.drain(timeout=settings.settlement_drain_timeout_seconds)
            await request_logger.stop()
            await rate_limiter.stop_sweeper()
            if http_client is None:
                await client.aclose()
            if engine is not None:
                await engine.dispose()
            logger.info("Gateway stopped")

    app = FastAPI(title="LLM Gateway", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_settings.allow_origins,
        allow_credentials=cors_settings.allow_credentials,
        allow_methods=cors_settings.allow_methods,
        allow_headers=cors_settings.allow_headers,
    )

    @app.exception_handler(GatewayError)
    async def handle_gateway_error(_request: Request, exc: GatewayError):
        return gateway_error_response(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(_request: Request, exc: StarletteHTTPException):
        return gateway_error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return gateway_error_response(400, message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_request: Request, exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        error = InternalError("Internal server error")
        return gateway_error_response(error.status_code, error.message)

    @app.get("/")
    def read_root():
        return {"status": "ok", "service": "llm-gateway"}

    app.include_router(gateway_router)
    app.include_router(billing_router)
    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "gateway_app.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=parse_int_env("PORT", 8000, minimum=1),
        log_level=get_gateway_settings().log_level.lower(),
    )


if __name__ == "__main__":
    run()
