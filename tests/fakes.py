from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import anyio
import httpx

from dingbridge.dingtalk.client import DingTalkClient
from dingbridge.dingtalk.token import TokenCache
from dingbridge.settings import DingTalkSettings

Responder = Callable[[httpx.Request], httpx.Response] | dict[str, Any] | httpx.Response

WEBHOOK_URL = "https://oapi.dingtalk.com/robot/sendBySession?session=abc"


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_: float) -> None:
    return None


def make_settings(**overrides: Any) -> DingTalkSettings:
    data: dict[str, Any] = {
        "client_id": "ding-app",
        "client_secret": "app-secret-value",
        "robot_code": "robot-1",
    }
    data.update(overrides)
    return DingTalkSettings.model_validate(data)


class FakeDingTalk:
    """Routes requests by (method, path) and records everything it sees."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Responder]] = {}
        self.on("POST", "/v1.0/oauth2/accessToken", {"accessToken": "tok-1", "expireIn": 7200})
        self.on(
            "GET",
            "/gettoken",
            {"errcode": 0, "access_token": "oapi-1", "expires_in": 7200},
        )
        self.on("POST", "/v1.0/card/instances/createAndDeliver", {"success": True})
        self.on("PUT", "/v1.0/card/instances", {"success": True})
        self.on("PUT", "/v1.0/card/streaming", {"success": True})
        self.on("POST", "/v1.0/robot/groupMessages/send", {"processQueryKey": "pqk-g"})
        self.on("POST", "/v1.0/robot/oToMessages/batchSend", {"processQueryKey": "pqk-u"})
        self.on("POST", "/media/upload", {"errcode": 0, "media_id": "@media-1"})
        self.on("POST", "/robot/sendBySession", {"errcode": 0})

    def on(self, method: str, path: str, *responses: Responder) -> None:
        """Queue responses; the last one repeats."""
        self._routes[(method, path)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "no route"}, request=request)
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(responder):
            return responder(request)
        if isinstance(responder, httpx.Response):
            return httpx.Response(
                responder.status_code,
                content=responder.content,
                headers=responder.headers,
                request=request,
            )
        return httpx.Response(200, json=responder, request=request)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            req
            for req in self.requests
            if req.method == method and req.url.path == path
        ]

    def bodies(self, method: str, path: str) -> list[dict[str, Any]]:
        return [json.loads(req.content) for req in self.calls(method, path)]

    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def make_client(
    fake: FakeDingTalk,
    http: httpx.AsyncClient,
    settings: DingTalkSettings | None = None,
    clock: Callable[[], float] | None = None,
) -> DingTalkClient:
    tokens = TokenCache(http=http, sleep=no_sleep, **({"clock": clock} if clock else {}))
    return DingTalkClient(settings or make_settings(), tokens=tokens, http=http)


def sse(*chunks: str, done: bool = True) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": chunk}}]})
        for chunk in chunks
    ]
    if done:
        lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


def inbound_payload(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "msgId": "msg-1",
        "msgtype": "text",
        "text": {"content": "hello"},
        "senderId": "$:sender-raw",
        "senderStaffId": "user-1",
        "senderNick": "Alice",
        "conversationId": "cid-dm-1",
        "conversationType": "1",
        "chatbotUserId": "bot-1",
        "sessionWebhook": WEBHOOK_URL,
    }
    data.update(overrides)
    return data


class FakeCompletion:
    """Completion backend that replays fixed chunks and records each call."""

    def __init__(
        self, *chunks: str, error: Exception | None = None, pause: float = 0.0
    ) -> None:
        self.chunks = chunks
        self.error = error
        self.pause = pause
        self.calls: list[dict[str, Any]] = []

    def __call__(
        self, *, user_content: str, system_prompts: Any, session_key: str
    ) -> Any:
        self.calls.append(
            {
                "user_content": user_content,
                "system_prompts": list(system_prompts),
                "session_key": session_key,
            }
        )
        return self._stream()

    async def _stream(self) -> Any:
        for chunk in self.chunks:
            if self.pause:
                await anyio.sleep(self.pause)
            yield chunk
        if self.error is not None:
            raise self.error


def webhook_texts(fake: FakeDingTalk) -> list[str]:
    texts = []
    for body in fake.bodies("POST", "/robot/sendBySession"):
        if body["msgtype"] == "markdown":
            texts.append(body["markdown"]["text"])
        else:
            texts.append(body["text"]["content"])
    return texts
