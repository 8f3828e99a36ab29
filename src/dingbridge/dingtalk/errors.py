from __future__ import annotations

import httpx


class DingTalkApiError(Exception):
    def __init__(self, status: int, body: str, url: str | None = None) -> None:
        super().__init__(f"DingTalk API error {status}: {body[:500]}")
        self.status = status
        self.body = body
        self.url = url


class DingTalkAuthError(DingTalkApiError):
    pass


def raise_for_response(resp: httpx.Response) -> None:
    if resp.is_success:
        return
    body = resp.text
    url = str(resp.request.url) if resp.request is not None else None
    if resp.status_code == 401:
        raise DingTalkAuthError(resp.status_code, body, url)
    raise DingTalkApiError(resp.status_code, body, url)
