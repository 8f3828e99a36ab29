import json

import httpx
import pytest

from dingbridge.streaming import (
    DONE,
    CompletionError,
    build_media_system_prompt,
    parse_sse_line,
    stream_completion,
)
from tests.fakes import sse


def test_parse_sse_line() -> None:
    chunk = json.dumps({"choices": [{"delta": {"content": "hi"}}]})
    assert parse_sse_line(f"data: {chunk}") == "hi"
    assert parse_sse_line("data: [DONE]") is DONE
    assert parse_sse_line("data: {not json") is None
    assert parse_sse_line(": keep-alive") is None
    assert parse_sse_line("") is None
    assert parse_sse_line('data: {"choices": []}') is None
    assert parse_sse_line('data: {"choices": [{"delta": {}}]}') is None


async def _collect(http: httpx.AsyncClient, **kwargs) -> list[str]:
    out: list[str] = []
    async for chunk in stream_completion(
        http,
        gateway_url="http://gateway.test",
        user_content="question",
        session_key="dingtalk:user-1:1",
        **kwargs,
    ):
        out.append(chunk)
    return out


@pytest.mark.anyio
async def test_stream_yields_deltas_until_done() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = sse("hello ", "world") + b"data: " + json.dumps(
            {"choices": [{"delta": {"content": "ignored"}}]}
        ).encode() + b"\n"
        return httpx.Response(200, content=body, request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        chunks = await _collect(http, system_prompts=["be brief"], auth="gw-secret")

    assert chunks == ["hello ", "world"]
    request = seen[0]
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer gw-secret"
    payload = json.loads(request.content)
    assert payload == {
        "model": "default",
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "question"},
        ],
        "stream": True,
        "user": "dingtalk:user-1:1",
    }


@pytest.mark.anyio
async def test_stream_skips_malformed_lines_and_ends_on_close() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = b"data: {broken\n\nevent: ping\n\n" + sse("ok", done=False)
        return httpx.Response(200, content=body, request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        chunks = await _collect(http)

    assert chunks == ["ok"]


@pytest.mark.anyio
async def test_no_auth_header_without_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=sse(), request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        assert await _collect(http) == []

    assert "authorization" not in seen[0].headers


@pytest.mark.anyio
async def test_non_2xx_raises_completion_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="upstream down", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(CompletionError) as excinfo:
            await _collect(http)

    assert excinfo.value.status == 502
    assert excinfo.value.body == "upstream down"


def test_media_prompt_mentions_markers() -> None:
    prompt = build_media_system_prompt()
    for tag in ("DINGTALK_FILE", "DINGTALK_VIDEO", "DINGTALK_AUDIO"):
        assert f"[{tag}]" in prompt
