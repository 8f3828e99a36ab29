"""Access token cache for the DingTalk open API and the legacy OAPI."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import anyio
import httpx

from ..logging import get_logger
from ..retry import retry_with_backoff
from ..settings import DingTalkSettings
from .errors import DingTalkApiError, raise_for_response

logger = get_logger(__name__)

DINGTALK_API = "https://api.dingtalk.com"
DINGTALK_OAPI = "https://oapi.dingtalk.com"

TOKEN_REFRESH_MARGIN_S = 60.0
TOKEN_REFRESH_THRESHOLD_S = 90 * 60.0
DEFAULT_OAPI_EXPIRES_S = 7200
CONTROL_TIMEOUT_S = 10.0


@dataclass(slots=True)
class CachedToken:
    token: str
    expiry: float


class TokenCache:
    """Bearer tokens keyed by client id.

    Concurrent callers are not serialized; a race produces duplicate fetches
    and the last write wins.
    """

    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        api_base: str = DINGTALK_API,
        oapi_base: str = DINGTALK_OAPI,
        refresh_margin_s: float = TOKEN_REFRESH_MARGIN_S,
    ) -> None:
        self._http = http
        self._clock = clock
        self._sleep = sleep
        self._api_base = api_base
        self._oapi_base = oapi_base
        self._refresh_margin_s = refresh_margin_s
        self._tokens: dict[str, CachedToken] = {}
        self._oapi_tokens: dict[str, CachedToken] = {}

    def _valid(
        self, cached: CachedToken | None, margin_s: float
    ) -> CachedToken | None:
        if cached is None:
            return None
        if cached.expiry > self._clock() + margin_s:
            return cached
        return None

    async def get_token(
        self,
        settings: DingTalkSettings,
        *,
        force: bool = False,
        min_validity_s: float | None = None,
    ) -> str:
        client_id = settings.client_id
        margin = max(self._refresh_margin_s, min_validity_s or 0.0)
        if not force:
            cached = self._valid(self._tokens.get(client_id), margin)
            if cached is not None:
                logger.debug("token.cache_hit", client_id=client_id)
                return cached.token

        logger.info("token.refresh", client_id=client_id, forced=force)

        async def fetch() -> str:
            resp = await self._http.post(
                f"{self._api_base}/v1.0/oauth2/accessToken",
                json={
                    "appKey": client_id,
                    "appSecret": settings.client_secret.get_secret_value(),
                },
                timeout=CONTROL_TIMEOUT_S,
            )
            raise_for_response(resp)
            payload = resp.json()
            token = payload.get("accessToken") if isinstance(payload, dict) else None
            if not isinstance(token, str) or not token:
                raise DingTalkApiError(resp.status_code, resp.text, str(resp.request.url))
            expire_in = payload.get("expireIn") or DEFAULT_OAPI_EXPIRES_S
            self._tokens[client_id] = CachedToken(
                token=token, expiry=self._clock() + float(expire_in)
            )
            logger.info("token.refreshed", client_id=client_id, expires_in=expire_in)
            return token

        return await retry_with_backoff(
            fetch, attempts=4, sleep=self._sleep, label="token.fetch"
        )

    async def get_oapi_token(self, settings: DingTalkSettings) -> str | None:
        """Legacy OAPI token used for media upload; None when unavailable."""
        client_id = settings.client_id
        cached = self._valid(self._oapi_tokens.get(client_id), self._refresh_margin_s)
        if cached is not None:
            return cached.token
        try:
            resp = await self._http.get(
                f"{self._oapi_base}/gettoken",
                params={
                    "appkey": client_id,
                    "appsecret": settings.client_secret.get_secret_value(),
                },
                timeout=CONTROL_TIMEOUT_S,
            )
            raise_for_response(resp)
            payload = resp.json()
        except (httpx.HTTPError, DingTalkApiError, ValueError) as exc:
            logger.error(
                "token.oapi.failed",
                client_id=client_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None
        if not isinstance(payload, dict):
            logger.error("token.oapi.invalid_payload", payload=payload)
            return None
        token = payload.get("access_token")
        if payload.get("errcode") != 0 or not isinstance(token, str) or not token:
            logger.warning("token.oapi.rejected", errmsg=payload.get("errmsg"))
            return None
        expires_in = payload.get("expires_in") or DEFAULT_OAPI_EXPIRES_S
        self._oapi_tokens[client_id] = CachedToken(
            token=token, expiry=self._clock() + float(expires_in)
        )
        logger.info("token.oapi.obtained", client_id=client_id, expires_in=expires_in)
        return token

    def should_refresh(self, client_id: str) -> bool:
        cached = self._tokens.get(client_id)
        if cached is None:
            return True
        return self._clock() > cached.expiry - TOKEN_REFRESH_THRESHOLD_S

    def expiry_for(self, client_id: str) -> float | None:
        cached = self._tokens.get(client_id)
        return cached.expiry if cached is not None else None

    def clear(self, client_id: str | None = None) -> None:
        if client_id is None:
            self._tokens.clear()
            self._oapi_tokens.clear()
            return
        self._tokens.pop(client_id, None)
        self._oapi_tokens.pop(client_id, None)
