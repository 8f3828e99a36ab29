"""Unprompted sends to users or groups: AI card first, plain message fallback."""

from __future__ import annotations

from collections.abc import Sequence

import httpx

from .card.engine import CardEngine
from .dingtalk.client import DingTalkClient
from .dingtalk.errors import DingTalkApiError
from .logging import get_logger
from .model import CardTarget, SendResult
from .postprocess.context import PostProcessContext
from .postprocess.pipeline import run_pipeline

logger = get_logger(__name__)

PROACTIVE_ACCOUNT = "proactive"


class ProactiveSender:
    def __init__(
        self,
        client: DingTalkClient,
        engine: CardEngine | None = None,
    ) -> None:
        self.client = client
        self.engine = engine or CardEngine(client)

    async def _postprocess(self, target: CardTarget, content: str) -> str:
        settings = self.client.settings
        oapi_token = (
            await self.client.tokens.get_oapi_token(settings)
            if settings.enable_media_upload
            else None
        )
        result = await run_pipeline(
            content,
            PostProcessContext(
                client=self.client,
                target=target,
                oapi_token=oapi_token,
                enable_video_processing=settings.enable_video_processing,
            ),
        )
        return result.text.strip()

    async def _send_card(
        self, target: CardTarget, content: str
    ) -> tuple[SendResult, str | None]:
        """Returns the result and the post-processed text, if processing ran."""
        card = await self.engine.create(target)
        if card is None:
            return SendResult(ok=False, error="Failed to create AI card"), None
        final = await self._postprocess(target, content)
        if not final:
            logger.info("proactive.card.empty", card_id=card.card_instance_id)
            return SendResult(ok=True), final
        try:
            await self.engine.finish(card, final)
        except (httpx.HTTPError, DingTalkApiError) as exc:
            failed = SendResult(
                ok=False, error=str(exc), card_instance_id=card.card_instance_id
            )
            return failed, final
        logger.info("proactive.card.sent", card_id=card.card_instance_id)
        sent = SendResult(ok=True, card_instance_id=card.card_instance_id, used_card=True)
        return sent, final

    async def _send_plain(
        self,
        recipients: Sequence[str],
        content: str,
        *,
        is_group: bool,
        title: str | None = None,
        use_markdown: bool | None = None,
        processed: str | None = None,
    ) -> SendResult:
        result = SendResult(ok=False, error="no recipients")
        for recipient in recipients:
            target = CardTarget(
                account_id=PROACTIVE_ACCOUNT,
                conversation_id=recipient,
                is_group=is_group,
                user_id=None if is_group else recipient,
            )
            text = (
                processed
                if processed is not None
                else await self._postprocess(target, content)
            )
            result = await self.client.send_proactive(
                recipient,
                text or content,
                is_group=is_group,
                use_markdown=use_markdown,
                title=title,
            )
            if not result.ok:
                return result
        return result

    async def send_to_user(
        self,
        user_ids: str | Sequence[str],
        content: str,
        *,
        use_card: bool = True,
        fallback: bool = True,
        title: str | None = None,
        use_markdown: bool | None = None,
    ) -> SendResult:
        recipients = [user_ids] if isinstance(user_ids, str) else list(user_ids)
        if not recipients:
            return SendResult(ok=False, error="user_ids cannot be empty")
        if use_card and len(recipients) == 1:
            user_id = recipients[0]
            target = CardTarget(
                account_id=PROACTIVE_ACCOUNT,
                conversation_id=user_id,
                is_group=False,
                user_id=user_id,
            )
            result, processed = await self._send_card(target, content)
            if result.ok or not fallback:
                return result
            logger.warning("proactive.card_fallback", user_id=user_id, error=result.error)
            return await self._send_plain(
                recipients,
                content,
                is_group=False,
                title=title,
                use_markdown=use_markdown,
                processed=processed,
            )
        return await self._send_plain(
            recipients, content, is_group=False, title=title, use_markdown=use_markdown
        )

    async def send_to_group(
        self,
        conversation_id: str,
        content: str,
        *,
        use_card: bool = True,
        fallback: bool = True,
        title: str | None = None,
        use_markdown: bool | None = None,
    ) -> SendResult:
        if not conversation_id:
            return SendResult(ok=False, error="conversation_id cannot be empty")
        if use_card:
            target = CardTarget(
                account_id=PROACTIVE_ACCOUNT,
                conversation_id=conversation_id,
                is_group=True,
            )
            result, processed = await self._send_card(target, content)
            if result.ok or not fallback:
                return result
            logger.warning(
                "proactive.card_fallback",
                conversation_id=conversation_id,
                error=result.error,
            )
            return await self._send_plain(
                [conversation_id],
                content,
                is_group=True,
                title=title,
                use_markdown=use_markdown,
                processed=processed,
            )
        return await self._send_plain(
            [conversation_id],
            content,
            is_group=True,
            title=title,
            use_markdown=use_markdown,
        )

    async def send_proactive(
        self,
        content: str,
        *,
        user_id: str | None = None,
        user_ids: Sequence[str] | None = None,
        conversation_id: str | None = None,
        use_card: bool = True,
        fallback: bool = True,
        title: str | None = None,
    ) -> SendResult:
        if user_id or user_ids:
            return await self.send_to_user(
                list(user_ids) if user_ids else [user_id or ""],
                content,
                use_card=use_card,
                fallback=fallback,
                title=title,
            )
        if conversation_id:
            return await self.send_to_group(
                conversation_id,
                content,
                use_card=use_card,
                fallback=fallback,
                title=title,
            )
        return SendResult(
            ok=False, error="Must specify user_id, user_ids, or conversation_id"
        )
