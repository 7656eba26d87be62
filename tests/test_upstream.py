import asyncio
import json

import httpx
import pytest

from gateway_app.db_models import Source
from gateway_app.errors import UpstreamError
from gateway_app.token_usage import TokenUsage
from gateway_app.upstream import UpstreamForwarder, UpstreamStream, build_upstream_url


def _source() -> Source:
    return Source(
        id=5,
        name="primary",
        base_url="https://upstream.test/",
        api_key="upstream-secret",
        models=[],
        priority=0,
        weight=1,
        is_enabled=True,
    )


def _sse(payload) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


STREAM_BODY = (
    _sse({"choices": [{"delta": {"content": "Hel"}}], "usage": None})
    + b": keep-alive\n\n"
    + _sse({"choices": [{"delta": {"content": "lo"}}], "usage": None})
    + _sse({"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}})
    + b"data: [DONE]\n\n"
)


async def _chunks(body: bytes, size: int):
    for start in range(0, len(body), size):
        yield body[start : start + size]


def test_build_upstream_url_strips_trailing_slash() -> None:
    assert build_upstream_url("https://a.test/") == "https://a.test/v1/chat/completions"
    assert build_upstream_url("https://a.test") == "https://a.test/v1/chat/completions"


@pytest.mark.asyncio
async def test_non_stream_forwards_body_and_extracts_usage() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "choices": [{"message": {"role": "assistant", "content": "hi"}}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await UpstreamForwarder(client).forward_non_stream(
            _source(), {"model": "gpt-4o-mini", "messages": [], "stream": "yes", "temperature": 0.2}
        )

    assert seen["url"] == "https://upstream.test/v1/chat/completions"
    assert seen["auth"] == "Bearer upstream-secret"
    assert seen["body"]["stream"] is False
    assert seen["body"]["temperature"] == 0.2
    assert result.status_code == 200
    assert result.usage == TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    assert json.loads(result.response.body)["id"] == "chatcmpl-1"
    assert result.error_msg is None


@pytest.mark.asyncio
async def test_non_stream_error_is_passed_through() -> None:
    error_body = {"error": {"message": "model overloaded", "type": "server_error"}}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(529, json=error_body)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await UpstreamForwarder(client).forward_non_stream(_source(), {"model": "m"})

    assert result.status_code == 529
    assert result.response.status_code == 529
    assert json.loads(result.response.body) == error_body
    assert result.usage == TokenUsage()
    assert "model overloaded" in result.error_msg


@pytest.mark.asyncio
async def test_timeout_maps_to_bad_gateway() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UpstreamError) as exc_info:
            await UpstreamForwarder(client).forward_non_stream(_source(), {"model": "m"})

    assert exc_info.value.status_code == 502
    assert "timed out" in exc_info.value.message


@pytest.mark.asyncio
async def test_connect_error_maps_to_bad_gateway_for_streams() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UpstreamError) as exc_info:
            await UpstreamForwarder(client).forward_stream(_source(), {"model": "m", "stream": True})

    assert exc_info.value.status_code == 502
    assert exc_info.value.message == "Upstream request failed: connection refused"


@pytest.mark.asyncio
async def test_stream_is_relayed_verbatim_across_split_reads() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_chunks(STREAM_BODY, 7),
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await UpstreamForwarder(client).forward_stream(
            _source(),
            {"model": "m", "stream": True, "stream_options": {"foo": "bar"}},
        )
        relayed = b"".join([chunk async for chunk in result.response.body_iterator])
        usage = await asyncio.wait_for(result.usage, timeout=1)

    assert seen["body"]["stream"] is True
    assert seen["body"]["stream_options"] == {"foo": "bar", "include_usage": True}
    assert relayed == STREAM_BODY
    assert usage == TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    assert result.response.media_type == "text/event-stream"
    assert result.response.headers["cache-control"] == "no-cache"


@pytest.mark.asyncio
async def test_trailing_partial_line_is_flushed() -> None:
    body = b"data: {\"choices\": []}\n\ndata: [DONE]"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_chunks(body, 5))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await UpstreamForwarder(client).forward_stream(_source(), {"model": "m"})
        relayed = b"".join([chunk async for chunk in result.response.body_iterator])

    assert relayed == body
    assert (await result.usage) == TokenUsage()


@pytest.mark.asyncio
async def test_stream_error_status_returns_body_and_zero_usage() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "bad upstream key"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await UpstreamForwarder(client).forward_stream(_source(), {"model": "m"})

    assert result.status_code == 401
    assert result.usage.done()
    assert result.usage.result() == TokenUsage()
    assert json.loads(result.response.body) == {"error": {"message": "bad upstream key"}}
    assert "bad upstream key" in result.error_msg


@pytest.mark.asyncio
async def test_closing_mid_stream_resolves_usage_once() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_chunks(STREAM_BODY, 16))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        request = client.build_request("POST", "https://upstream.test/v1/chat/completions")
        response = await client.send(request, stream=True)
        stream = UpstreamStream(response)

        received = []
        async for line in stream:
            received.append(line)
            if len(received) == 3:
                break
        await stream.aclose()
        await stream.aclose()

    assert stream.usage.done()
    assert stream.usage.result() == TokenUsage()
    assert response.is_closed


@pytest.mark.asyncio
async def test_closing_before_iteration_resolves_usage() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_chunks(STREAM_BODY, 16))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        request = client.build_request("POST", "https://upstream.test/v1/chat/completions")
        response = await client.send(request, stream=True)
        stream = UpstreamStream(response)

        await stream.aclose()

    assert stream.usage.result() == TokenUsage()
    assert response.is_closed


@pytest.mark.asyncio
async def test_malformed_usage_in_stream_is_counted() -> None:
    body = b"data: {\"usage\": \"lots\"}\n\ndata: {not json\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_chunks(body, 64))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        request = client.build_request("POST", "https://upstream.test/v1/chat/completions")
        stream = UpstreamStream(await client.send(request, stream=True))
        async for _ in stream:
            pass

    assert stream.tracker.malformed_chunks == 2
    assert stream.usage.result() == TokenUsage()
