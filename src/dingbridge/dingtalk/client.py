from __future__ import annotations

import json
import tempfile
import time
from pathlib import Path
from typing import Any

import anyio
import httpx

from ..logging import get_logger
from ..markdown import extract_title, has_markdown_features
from ..model import MediaKind, SendResult, UploadFailed, UploadOk, UploadResult
from ..settings import DingTalkSettings
from ..utils.files import (
    TEMP_PREFIX,
    format_bytes,
    format_megabytes,
    normalize_file_path,
)
from .errors import DingTalkApiError, raise_for_response
from .token import CONTROL_TIMEOUT_S, DINGTALK_API, DINGTALK_OAPI, TokenCache

logger = get_logger(__name__)

MEDIA_TIMEOUT_S = 60.0
MAX_MEDIA_BYTES = 20 * 1024 * 1024

_CONTENT_TYPES: dict[str, str] = {
    "image": "image/jpeg",
    "video": "video/mp4",
    "voice": "audio/amr",
    "file": "application/octet-stream",
}


def is_group_conversation(target: str) -> bool:
    return target.startswith("cid")


def content_type_for(kind: MediaKind) -> str:
    return _CONTENT_TYPES.get(kind, "application/octet-stream")


class DingTalkClient:
    def __init__(
        self,
        settings: DingTalkSettings,
        *,
        tokens: TokenCache,
        http: httpx.AsyncClient | None = None,
        api_base: str = DINGTALK_API,
        oapi_base: str = DINGTALK_OAPI,
        temp_dir: Path | None = None,
    ) -> None:
        self.settings = settings
        self.tokens = tokens
        self._http = http or httpx.AsyncClient(timeout=CONTROL_TIMEOUT_S)
        self._owns_http = http is None
        self._api_base = api_base
        self._oapi_base = oapi_base
        self._temp_dir = temp_dir or Path(tempfile.gettempdir())

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        body: dict[str, Any],
        timeout: float = CONTROL_TIMEOUT_S,
    ) -> Any:
        url = f"{self._api_base}{path}"
        logger.debug("dingtalk.request", method=method, path=path)
        resp = await self._http.request(
            method,
            url,
            json=body,
            headers={
                "x-acs-dingtalk-access-token": token,
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )
        if not resp.is_success:
            logger.error(
                "dingtalk.http_error",
                method=method,
                path=path,
                status=resp.status_code,
                body=resp.text,
            )
        raise_for_response(resp)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    # -- interactive cards --------------------------------------------------

    async def create_and_deliver_card(self, token: str, body: dict[str, Any]) -> Any:
        return await self._request(
            "POST", "/v1.0/card/instances/createAndDeliver", token=token, body=body
        )

    async def update_card_instance(self, token: str, body: dict[str, Any]) -> Any:
        return await self._request("PUT", "/v1.0/card/instances", token=token, body=body)

    async def stream_card(self, token: str, body: dict[str, Any]) -> Any:
        return await self._request("PUT", "/v1.0/card/streaming", token=token, body=body)

    # -- messages -----------------------------------------------------------

    async def reply_via_webhook(
        self,
        session_webhook: str,
        text: str,
        *,
        at_user_id: str | None = None,
        use_markdown: bool | None = None,
        title: str | None = None,
    ) -> Any:
        token = await self.tokens.get_token(self.settings)
        markdown = use_markdown if use_markdown is not None else has_markdown_features(text)
        body: dict[str, Any]
        if markdown:
            final_text = f"{text} @{at_user_id}" if at_user_id else text
            body = {
                "msgtype": "markdown",
                "markdown": {
                    "title": title or extract_title(text),
                    "text": final_text,
                },
            }
        else:
            body = {"msgtype": "text", "text": {"content": text}}
        if at_user_id:
            body["at"] = {"atUserIds": [at_user_id], "isAtAll": False}
        logger.debug("dingtalk.webhook.send", length=len(text), markdown=markdown)
        resp = await self._http.post(
            session_webhook,
            json=body,
            headers={"x-acs-dingtalk-access-token": token},
            timeout=CONTROL_TIMEOUT_S,
        )
        raise_for_response(resp)
        return resp.json() if resp.content else None

    async def _send_robot_message(
        self,
        recipient: str,
        *,
        msg_key: str,
        msg_param: dict[str, Any],
        is_group: bool | None = None,
    ) -> SendResult:
        group = is_group_conversation(recipient) if is_group is None else is_group
        body: dict[str, Any] = {
            "robotCode": self.settings.effective_robot_code,
            "msgKey": msg_key,
            "msgParam": json.dumps(msg_param, ensure_ascii=False),
        }
        if group:
            body["openConversationId"] = recipient
            path = "/v1.0/robot/groupMessages/send"
        else:
            body["userIds"] = [recipient]
            path = "/v1.0/robot/oToMessages/batchSend"
        try:
            token = await self.tokens.get_token(self.settings)
            payload = await self._request("POST", path, token=token, body=body)
        except (httpx.HTTPError, DingTalkApiError) as exc:
            logger.error(
                "dingtalk.send.failed",
                msg_key=msg_key,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return SendResult(ok=False, error=str(exc))
        key = payload.get("processQueryKey") if isinstance(payload, dict) else None
        if key:
            logger.info("dingtalk.send.ok", msg_key=msg_key, group=group)
            return SendResult(ok=True, process_query_key=key)
        message = payload.get("message") if isinstance(payload, dict) else None
        return SendResult(ok=False, error=message or "Unknown error")

    async def send_proactive(
        self,
        recipient: str,
        text: str,
        *,
        is_group: bool | None = None,
        use_markdown: bool | None = None,
        title: str | None = None,
    ) -> SendResult:
        markdown = use_markdown if use_markdown is not None else has_markdown_features(text)
        if markdown:
            return await self._send_robot_message(
                recipient,
                msg_key="sampleMarkdown",
                msg_param={"title": title or extract_title(text), "text": text},
                is_group=is_group,
            )
        return await self._send_robot_message(
            recipient,
            msg_key="sampleText",
            msg_param={"content": text},
            is_group=is_group,
        )

    async def send_message(
        self,
        recipient: str,
        text: str,
        *,
        session_webhook: str | None = None,
        is_group: bool | None = None,
        at_user_id: str | None = None,
        use_markdown: bool | None = None,
    ) -> SendResult:
        """Reply through the session webhook when present, else proactively."""
        if not session_webhook:
            return await self.send_proactive(
                recipient, text, is_group=is_group, use_markdown=use_markdown
            )
        try:
            await self.reply_via_webhook(
                session_webhook,
                text,
                at_user_id=at_user_id,
                use_markdown=use_markdown,
            )
        except (httpx.HTTPError, DingTalkApiError) as exc:
            logger.error(
                "dingtalk.webhook.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return SendResult(ok=False, error=str(exc))
        return SendResult(ok=True)

    async def send_thinking_indicator(self, session_webhook: str) -> None:
        try:
            await self.reply_via_webhook(
                session_webhook, "\N{THINKING FACE} thinking...", use_markdown=False
            )
        except (httpx.HTTPError, DingTalkApiError) as exc:
            logger.debug("dingtalk.thinking.failed", error=str(exc))

    async def send_file_message(
        self,
        recipient: str,
        media_id: str,
        file_name: str,
        file_type: str,
        *,
        is_group: bool | None = None,
    ) -> SendResult:
        return await self._send_robot_message(
            recipient,
            msg_key="sampleFile",
            msg_param={"mediaId": media_id, "fileName": file_name, "fileType": file_type},
            is_group=is_group,
        )

    async def send_video_message(
        self,
        recipient: str,
        video_media_id: str,
        pic_media_id: str,
        duration_s: int,
        *,
        is_group: bool | None = None,
    ) -> SendResult:
        return await self._send_robot_message(
            recipient,
            msg_key="sampleVideo",
            msg_param={
                "duration": str(duration_s),
                "videoMediaId": video_media_id,
                "videoType": "mp4",
                "picMediaId": pic_media_id,
            },
            is_group=is_group,
        )

    async def send_audio_message(
        self,
        recipient: str,
        media_id: str,
        duration_ms: str = "60000",
        *,
        is_group: bool | None = None,
    ) -> SendResult:
        return await self._send_robot_message(
            recipient,
            msg_key="sampleAudio",
            msg_param={"mediaId": media_id, "duration": duration_ms},
            is_group=is_group,
        )

    # -- media --------------------------------------------------------------

    async def upload_media(
        self,
        file_path: str,
        kind: MediaKind,
        *,
        oapi_token: str,
        max_bytes: int | None = MAX_MEDIA_BYTES,
    ) -> UploadResult:
        path = anyio.Path(normalize_file_path(file_path))
        try:
            stat = await path.stat()
        except FileNotFoundError:
            logger.warning("media.upload.not_found", path=str(path))
            return UploadFailed("not_found", str(path))
        except OSError as exc:
            logger.warning("media.upload.unreadable", path=str(path), error=str(exc))
            return UploadFailed("not_found", str(exc))
        if max_bytes is not None and stat.st_size > max_bytes:
            logger.warning(
                "media.upload.too_large",
                path=str(path),
                size=format_bytes(stat.st_size),
                limit=format_bytes(max_bytes),
            )
            return UploadFailed("too_large", format_megabytes(stat.st_size))

        logger.info(
            "media.upload.start",
            kind=kind,
            name=path.name,
            size=format_bytes(stat.st_size),
        )
        try:
            data = await path.read_bytes()
            resp = await self._http.post(
                f"{self._oapi_base}/media/upload",
                params={"access_token": oapi_token, "type": kind},
                files={"media": (path.name, data, content_type_for(kind))},
                timeout=MEDIA_TIMEOUT_S,
            )
            raise_for_response(resp)
            payload = resp.json()
        except (OSError, httpx.HTTPError, DingTalkApiError, ValueError) as exc:
            logger.error(
                "media.upload.failed",
                name=path.name,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return UploadFailed("upload_failed", str(exc))

        media_id = payload.get("media_id") if isinstance(payload, dict) else None
        if not isinstance(media_id, str) or not media_id:
            logger.warning("media.upload.missing_media_id", payload=payload)
            return UploadFailed("upload_failed", "missing media_id")
        logger.info("media.upload.ok", name=path.name, media_id=media_id)
        return UploadOk(media_id=media_id, size=stat.st_size)

    async def download_media(self, download_code: str) -> tuple[Path, str] | None:
        """Resolve a download code to a signed URL and save the bytes locally."""
        robot_code = self.settings.robot_code
        if not robot_code:
            logger.error("media.download.no_robot_code")
            return None
        try:
            token = await self.tokens.get_token(self.settings)
            payload = await self._request(
                "POST",
                "/v1.0/robot/messageFiles/download",
                token=token,
                body={"downloadCode": download_code, "robotCode": robot_code},
            )
            download_url = (
                payload.get("downloadUrl") if isinstance(payload, dict) else None
            )
            if not isinstance(download_url, str) or not download_url:
                logger.warning("media.download.no_url")
                return None
            resp = await self._http.get(download_url, timeout=MEDIA_TIMEOUT_S)
            raise_for_response(resp)
        except (httpx.HTTPError, DingTalkApiError) as exc:
            logger.error(
                "media.download.failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

        content_type = resp.headers.get("content-type", "application/octet-stream")
        ext = content_type.split("/", 1)[-1].split(";", 1)[0].strip() or "bin"
        target = self._temp_dir / f"{TEMP_PREFIX}{int(time.time() * 1000)}.{ext}"
        await anyio.Path(target).write_bytes(resp.content)
        logger.info("media.download.ok", path=str(target), content_type=content_type)
        return target, content_type
