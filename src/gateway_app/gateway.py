import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Coroutine

from fastapi.responses import Response

from gateway_app.auth import authenticate, check_model_permission
from gateway_app.db_models import ApiKey, Source
from gateway_app.errors import (
    BadRequest,
    Forbidden,
    GatewayError,
    InternalError,
    NoUpstreamAvailable,
    gateway_error_response,
)
from gateway_app.logging_config import log_anomaly
from gateway_app.pricing import PricingCalculator
from gateway_app.quota import QuotaManager, check_quota
from gateway_app.rate_limit import RateLimiter
from gateway_app.request_logger import RequestLogEntry, RequestLogger
from gateway_app.source_router import select_source
from gateway_app.stores import CredentialStore, SourceStore
from gateway_app.token_usage import EMPTY_USAGE, TokenUsage
from gateway_app.upstream import UpstreamForwarder

logger = logging.getLogger(__name__)


@dataclass
class AdmittedRequest:
    api_key: ApiKey
    body: dict[str, Any]
    model_id: str
    is_stream: bool
    source: Source


def _parse_body(raw_body: bytes) -> dict[str, Any]:
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise BadRequest("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise BadRequest("Invalid JSON body")
    return body


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class Gateway:
    """
    Runs one chat completion through admission, forwarding and settlement.

    Admission failures return an error envelope before anything is recorded.
    Once an upstream has been chosen every outcome produces exactly one
    request log record. Settlement (pricing, debit, log) runs as a tracked
    background task so the caller never waits on bookkeeping.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        sources: SourceStore,
        pricing: PricingCalculator,
        quota: QuotaManager,
        rate_limiter: RateLimiter,
        forwarder: UpstreamForwarder,
        request_logger: RequestLogger,
        enforce_tpm: bool = False,
        rng: random.Random | None = None,
    ):
        self._credentials = credentials
        self._sources = sources
        self._pricing = pricing
        self._quota = quota
        self._rate_limiter = rate_limiter
        self._forwarder = forwarder
        self._request_logger = request_logger
        self._enforce_tpm = enforce_tpm
        self._rng = rng
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._pending)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self, timeout: float | None = None) -> bool:
        """Waits for bookkeeping tasks; returns False if ``timeout`` expired.

        Tasks still running at the deadline are cancelled and reported as a
        ``settlement_timeout`` anomaly.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._pending:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            _, still_pending = await asyncio.wait(list(self._pending), timeout=remaining)
            if still_pending:
                log_anomaly(
                    "settlement_timeout",
                    pending=len(still_pending),
                    tasks=sorted(task.get_name() for task in still_pending),
                )
                for task in still_pending:
                    task.cancel()
                await asyncio.gather(*still_pending, return_exceptions=True)
                return False
        return True

    async def admit(self, authorization: str | None, raw_body: bytes) -> AdmittedRequest:
        api_key = await authenticate(self._credentials, authorization)

        body = _parse_body(raw_body)
        model_id = body.get("model")
        if not model_id:
            raise BadRequest("Missing required field: model")
        if not isinstance(model_id, str):
            raise BadRequest("Field 'model' must be a string")

        if not check_model_permission(api_key.allowed_models, model_id):
            raise Forbidden(f'Model "{model_id}" is not allowed for this API key')

        api_key = await self._quota.lazy_reset(api_key)
        check_quota(api_key)

        if self._enforce_tpm:
            self._rate_limiter.check_tpm(api_key.id, api_key.tpm)
        self._rate_limiter.check_rpm(api_key.id, api_key.rpm)

        source = select_source(await self._sources.list_enabled(), model_id, self._rng)
        if source is None:
            raise NoUpstreamAvailable(f'No available upstream source for model "{model_id}"')

        return AdmittedRequest(
            api_key=api_key,
            body=body,
            model_id=model_id,
            is_stream=body.get("stream") is True,
            source=source,
        )

    async def handle_chat_completion(
        self, authorization: str | None, raw_body: bytes
    ) -> Response:
        started = time.monotonic()
        try:
            admitted = await self.admit(authorization, raw_body)
        except GatewayError as exc:
            return gateway_error_response(exc.status_code, exc.message)

        try:
            if admitted.is_stream:
                return await self._forward_stream(admitted, started)
            return await self._forward_non_stream(admitted)
        except GatewayError as exc:
            logger.warning(
                "Forwarding to %s failed: %s", admitted.source.name, exc.message
            )
            error = exc
        except Exception as exc:
            logger.exception("Unexpected error forwarding to %s", admitted.source.name)
            error = InternalError(str(exc) or type(exc).__name__)

        self._append_log(
            admitted,
            status_code=error.status_code,
            latency_ms=_elapsed_ms(started),
            error_msg=error.message,
        )
        return gateway_error_response(error.status_code, error.message)

    async def _forward_non_stream(self, admitted: AdmittedRequest) -> Response:
        result = await self._forwarder.forward_non_stream(admitted.source, admitted.body)
        self._spawn(
            self._settle(
                admitted,
                usage=result.usage,
                status_code=result.status_code,
                latency_ms=result.latency_ms,
                error_msg=result.error_msg,
            ),
            name=f"settle-{admitted.api_key.id}",
        )
        return result.response

    async def _forward_stream(self, admitted: AdmittedRequest, started: float) -> Response:
        result = await self._forwarder.forward_stream(admitted.source, admitted.body)
        self._spawn(
            self._settle_stream(admitted, result.usage, result.status_code, result.error_msg, started),
            name=f"settle-stream-{admitted.api_key.id}",
        )
        return result.response

    async def _settle_stream(
        self,
        admitted: AdmittedRequest,
        usage_future: "asyncio.Future[TokenUsage]",
        status_code: int,
        error_msg: str | None,
        started: float,
    ) -> None:
        usage = await usage_future
        await self._settle(
            admitted,
            usage=usage,
            status_code=status_code,
            latency_ms=_elapsed_ms(started),
            error_msg=error_msg,
        )

    async def _settle(
        self,
        admitted: AdmittedRequest,
        *,
        usage: TokenUsage,
        status_code: int,
        latency_ms: int,
        error_msg: str | None,
    ) -> None:
        api_key = admitted.api_key
        try:
            cost = await self._pricing.calculate(admitted.model_id, usage)
        except Exception as exc:
            logger.exception("Pricing lookup failed for model %s", admitted.model_id)
            log_anomaly(
                "pricing_failed",
                api_key_id=api_key.id,
                model_id=admitted.model_id,
                total_tokens=usage.total_tokens,
                error=str(exc),
            )
            cost = 0.0

        await self._quota.debit(api_key.id, cost)
        if self._enforce_tpm and usage.total_tokens > 0:
            self._rate_limiter.record_tokens(api_key.id, usage.total_tokens)

        self._append_log(
            admitted,
            status_code=status_code,
            latency_ms=latency_ms,
            usage=usage,
            cost=cost,
            error_msg=error_msg,
        )

    def _append_log(
        self,
        admitted: AdmittedRequest,
        *,
        status_code: int,
        latency_ms: int,
        usage: TokenUsage = EMPTY_USAGE,
        cost: float = 0.0,
        error_msg: str | None = None,
    ) -> None:
        self._request_logger.append(
            RequestLogEntry(
                api_key_id=admitted.api_key.id,
                key_name=admitted.api_key.name,
                model_id=admitted.model_id,
                source_id=admitted.source.id,
                status_code=status_code,
                is_stream=admitted.is_stream,
                latency_ms=latency_ms,
                usage=usage,
                cost=cost,
                error_msg=error_msg,
            )
        )
