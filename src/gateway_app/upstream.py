import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from gateway_app.db_models import Source
from gateway_app.errors import UpstreamError
from gateway_app.logging_config import log_anomaly
from gateway_app.token_usage import (
    EMPTY_USAGE,
    StreamUsageTracker,
    TokenUsage,
    UsageStatus,
    extract_usage_from_response,
)

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
ERROR_MESSAGE_LIMIT = 500
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def build_upstream_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}{CHAT_COMPLETIONS_PATH}"


def _upstream_headers(source: Source) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {source.api_key}",
    }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _transport_error(exc: httpx.TransportError) -> UpstreamError:
    detail = str(exc) or type(exc).__name__
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamError(f"Upstream request timed out: {detail}")
    return UpstreamError(f"Upstream request failed: {detail}")


def _error_response(status_code: int, body: bytes) -> Response:
    return Response(content=body, status_code=status_code, media_type="application/json")


def _error_text(response: httpx.Response, body: bytes) -> str:
    text = body.decode("utf-8", errors="replace")
    return (text or response.reason_phrase or f"HTTP {response.status_code}")[:ERROR_MESSAGE_LIMIT]


@dataclass
class UpstreamResult:
    response: Response
    usage: TokenUsage
    latency_ms: int
    status_code: int
    error_msg: str | None = None


@dataclass
class StreamForwardResult:
    response: Response
    usage: "asyncio.Future[TokenUsage]"
    latency_ms: int
    status_code: int
    error_msg: str | None = None


class UpstreamStream:
    """
    Relays an upstream SSE body to the caller line by line.

    Bytes are buffered until a newline so a line split across network reads
    is observed whole; each line is re-emitted byte for byte. The ``usage``
    future resolves exactly once, with the last usage block seen (zero when
    none arrived), whether the stream ends, fails, or is closed early by the
    caller.
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._tracker = StreamUsageTracker()
        self._iterator: AsyncIterator[bytes] | None = None
        self._upstream_closed = False
        self.usage: asyncio.Future[TokenUsage] = asyncio.get_running_loop().create_future()

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._iterator is None:
            self._iterator = self._relay()
        return self._iterator

    @property
    def tracker(self) -> StreamUsageTracker:
        return self._tracker

    def _observe(self, raw_line: bytes) -> None:
        self._tracker.ingest_line(raw_line.decode("utf-8", errors="replace"))

    async def _relay(self) -> AsyncIterator[bytes]:
        buffer = b""
        try:
            async for chunk in self._response.aiter_bytes():
                buffer += chunk
                while True:
                    newline = buffer.find(b"\n")
                    if newline < 0:
                        break
                    line, buffer = buffer[: newline + 1], buffer[newline + 1 :]
                    self._observe(line)
                    yield line
            if buffer:
                self._observe(buffer)
                yield buffer
        finally:
            await self._finish()

    async def _finish(self) -> None:
        if not self.usage.done():
            if self._tracker.malformed_chunks:
                log_anomaly(
                    "usage_malformed",
                    malformed_chunks=self._tracker.malformed_chunks,
                    detail=self._tracker.last_malformed_detail,
                )
            self.usage.set_result(self._tracker.usage)
        if not self._upstream_closed:
            await self._response.aclose()
            self._upstream_closed = True

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._finish()


class RelayStreamingResponse(StreamingResponse):
    """Closes the relay however the ASGI call ends.

    Depending on the server's ASGI version a client disconnect either cancels
    the send loop or raises out of it, and in the second case Starlette never
    runs ``background``; the ``finally`` here covers both.
    """

    def __init__(self, stream: UpstreamStream, **kwargs: Any):
        super().__init__(stream, **kwargs)
        self.stream = stream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.stream.aclose()


class UpstreamForwarder:
    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def forward_non_stream(self, source: Source, body: dict[str, Any]) -> UpstreamResult:
        payload = {**body, "stream": False}
        started = time.monotonic()
        try:
            response = await self._client.post(
                build_upstream_url(source.base_url),
                json=payload,
                headers=_upstream_headers(source),
            )
        except httpx.TransportError as exc:
            raise _transport_error(exc) from exc
        latency_ms = _elapsed_ms(started)

        if not response.is_success:
            error_msg = _error_text(response, response.content)
            logger.warning(
                "Upstream %s returned %d: %s", source.name, response.status_code, error_msg
            )
            return UpstreamResult(
                response=_error_response(response.status_code, response.content),
                usage=EMPTY_USAGE,
                latency_ms=latency_ms,
                status_code=response.status_code,
                error_msg=error_msg,
            )

        data = response.json()
        extraction = extract_usage_from_response(data)
        if extraction.status is UsageStatus.MALFORMED:
            log_anomaly("usage_malformed", source_id=source.id, detail=extraction.detail)

        return UpstreamResult(
            response=JSONResponse(content=copy.deepcopy(data), status_code=response.status_code),
            usage=extraction.usage,
            latency_ms=latency_ms,
            status_code=response.status_code,
        )

    async def forward_stream(self, source: Source, body: dict[str, Any]) -> StreamForwardResult:
        stream_options = body.get("stream_options")
        stream_options = dict(stream_options) if isinstance(stream_options, dict) else {}
        stream_options["include_usage"] = True
        payload = {**body, "stream": True, "stream_options": stream_options}

        request = self._client.build_request(
            "POST",
            build_upstream_url(source.base_url),
            json=payload,
            headers=_upstream_headers(source),
        )
        started = time.monotonic()
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            raise _transport_error(exc) from exc
        latency_ms = _elapsed_ms(started)

        if not response.is_success:
            try:
                error_body = await response.aread()
            except httpx.TransportError as exc:
                logger.warning("Could not read upstream error body from %s: %s", source.name, exc)
                error_body = b""
            finally:
                await response.aclose()
            error_msg = _error_text(response, error_body)
            logger.warning(
                "Upstream %s returned %d for stream: %s",
                source.name,
                response.status_code,
                error_msg,
            )
            usage: asyncio.Future[TokenUsage] = asyncio.get_running_loop().create_future()
            usage.set_result(EMPTY_USAGE)
            return StreamForwardResult(
                response=_error_response(response.status_code, error_body),
                usage=usage,
                latency_ms=latency_ms,
                status_code=response.status_code,
                error_msg=error_msg,
            )

        stream = UpstreamStream(response)
        return StreamForwardResult(
            response=RelayStreamingResponse(
                stream,
                status_code=response.status_code,
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            ),
            usage=stream.usage,
            latency_ms=latency_ms,
            status_code=response.status_code,
        )
