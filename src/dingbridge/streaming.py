"""Streaming chat completions from the agent gateway."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence

import httpx
import msgspec

from .logging import get_logger

logger = get_logger(__name__)

COMPLETIONS_PATH = "/v1/chat/completions"
DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
CONNECT_TIMEOUT_S = 10.0


class CompletionError(RuntimeError):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Gateway error: {status} - {body[:500]}")
        self.status = status
        self.body = body


class _Delta(msgspec.Struct, forbid_unknown_fields=False):
    content: str | None = None


class _Choice(msgspec.Struct, forbid_unknown_fields=False):
    delta: _Delta | None = None


class _Chunk(msgspec.Struct, forbid_unknown_fields=False):
    choices: list[_Choice] = msgspec.field(default_factory=list)


class _Done:
    pass


DONE = _Done()
_CHUNK_DECODER = msgspec.json.Decoder(_Chunk)


def parse_sse_line(line: str) -> str | _Done | None:
    """Decode one event-stream line into a delta, DONE, or None to skip."""
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX) :].strip()
    if data == DONE_SENTINEL:
        return DONE
    if not data:
        return None
    try:
        chunk = _CHUNK_DECODER.decode(data)
    except (msgspec.DecodeError, msgspec.ValidationError):
        return None
    if not chunk.choices:
        return None
    delta = chunk.choices[0].delta
    if delta is None or not delta.content:
        return None
    return delta.content


def build_messages(user_content: str, system_prompts: Sequence[str]) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": prompt} for prompt in system_prompts]
    messages.append({"role": "user", "content": user_content})
    return messages


async def stream_completion(
    http: httpx.AsyncClient,
    *,
    gateway_url: str,
    user_content: str,
    system_prompts: Sequence[str] = (),
    session_key: str,
    auth: str = "",
) -> AsyncIterator[str]:
    url = f"{gateway_url.rstrip('/')}{COMPLETIONS_PATH}"
    headers = {"Content-Type": "application/json"}
    if auth:
        headers["Authorization"] = f"Bearer {auth}"
    payload = {
        "model": "default",
        "messages": build_messages(user_content, system_prompts),
        "stream": True,
        "user": session_key,
    }
    logger.info(
        "stream.start",
        url=url,
        session_key=session_key,
        messages=len(payload["messages"]),
    )
    chunks = 0
    async with http.stream(
        "POST",
        url,
        json=payload,
        headers=headers,
        timeout=httpx.Timeout(CONNECT_TIMEOUT_S, read=None),
    ) as resp:
        if not resp.is_success:
            body = (await resp.aread()).decode("utf-8", errors="replace")
            logger.error("stream.http_error", status=resp.status_code, body=body)
            raise CompletionError(resp.status_code, body or "(no body)")
        async for line in resp.aiter_lines():
            parsed = parse_sse_line(line)
            if parsed is None:
                continue
            if parsed is DONE:
                logger.info("stream.completed", chunks=chunks)
                return
            chunks += 1
            yield parsed
    logger.info("stream.closed", chunks=chunks)


def build_media_system_prompt() -> str:
    return """## DingTalk image and file display rules

You are chatting with the user inside DingTalk.

### 1. Images

To show an image, reference the local file path directly; it is uploaded automatically.

Correct:
```markdown
![description](file:///path/to/image.jpg)
![description](/tmp/screenshot.png)
![description](/Users/xxx/photo.jpg)
```

Do not:
- run curl to upload anything yourself
- guess or construct URLs
- escape the path (for example with backslashes)

### 2. Video

Share a video only when the user asks you to share, send or upload it. Add this at the end of the reply:

```
[DINGTALK_VIDEO]{"path":"<local video path>"}[/DINGTALK_VIDEO]
```

Supported: mp4, at most 20MB.

### 3. Audio

Share audio only when the user asks you to share, send or upload it. Add this at the end of the reply:

```
[DINGTALK_AUDIO]{"path":"<local audio path>"}[/DINGTALK_AUDIO]
```

Supported: ogg, amr, at most 20MB.

### 4. Files

Share a file only when the user asks you to share, send or upload it. Add this at the end of the reply:

```
[DINGTALK_FILE]{"path":"<local file path>","fileName":"<file name>","fileType":"<extension>"}[/DINGTALK_FILE]
```

Files must not exceed 20MB; tell the user when a file is too large."""
