"""Inbound message orchestration: policy, session, card or batch reply."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol
from weakref import WeakValueDictionary

import anyio
import httpx

from .card.cache import CardCache
from .card.engine import CardEngine
from .dingtalk.client import DingTalkClient
from .dingtalk.parsing import IncomingMessage, prompt_text
from .group import (
    GroupRoster,
    group_system_prompt,
    is_group_allowed,
    is_user_allowed_in_group,
)
from .logging import get_logger
from .model import CardInstance, CardTarget
from .policy import access_denied_notice, is_sender_allowed
from .postprocess.context import PostProcessContext
from .postprocess.markers import clean_media_markers
from .postprocess.pipeline import run_pipeline
from .session import SessionStore, is_new_session_command
from .settings import DingTalkSettings
from .streaming import build_media_system_prompt, stream_completion

logger = get_logger(__name__)

PUSH_EVERY_S = 0.3
NEW_SESSION_REPLY = "✨ New session started. Previous context has been cleared."
CARD_DONE_FALLBACK = "✅ Done"
BATCH_EMPTY_REPLY = "(no response)"


class Completion(Protocol):
    def __call__(
        self,
        *,
        user_content: str,
        system_prompts: Sequence[str],
        session_key: str,
    ) -> AsyncIterator[str]: ...


def gateway_completion(http: httpx.AsyncClient, settings: DingTalkSettings) -> Completion:
    def complete(
        *, user_content: str, system_prompts: Sequence[str], session_key: str
    ) -> AsyncIterator[str]:
        return stream_completion(
            http,
            gateway_url=settings.gateway_url,
            user_content=user_content,
            system_prompts=system_prompts,
            session_key=session_key,
            auth=settings.gateway_auth,
        )

    return complete


@dataclass(slots=True)
class Turn:
    message: IncomingMessage
    text: str
    session_key: str

    @property
    def to(self) -> str:
        return self.message.reply_to

    @property
    def at_user_id(self) -> str | None:
        return self.message.sender_id if self.message.is_group else None


class CardPusher:
    """Throttled full-content pushes of partial text into one card."""

    def __init__(
        self,
        engine: CardEngine,
        card: CardInstance,
        *,
        push_every: float,
        clock: Callable[[], float],
    ) -> None:
        self.engine = engine
        self.card = card
        self.push_every = push_every
        self.clock = clock
        self.last_push_at: float | None = None
        self.last_rendered: str | None = None

    async def offer(self, accumulated: str) -> None:
        now = self.clock()
        if self.last_push_at is not None and now - self.last_push_at < self.push_every:
            return
        rendered = clean_media_markers(accumulated)
        if not rendered or rendered == self.last_rendered:
            return
        await self.engine.push(self.card, rendered, finalize=False)
        self.last_push_at = now
        self.last_rendered = rendered


class MessageHandler:
    def __init__(
        self,
        *,
        account_id: str,
        client: DingTalkClient,
        engine: CardEngine,
        cards: CardCache,
        sessions: SessionStore,
        completion: Completion,
        roster: GroupRoster | None = None,
        clock: Callable[[], float] = time.monotonic,
        push_every: float = PUSH_EVERY_S,
    ) -> None:
        self.account_id = account_id
        self.client = client
        self.engine = engine
        self.cards = cards
        self.sessions = sessions
        self.completion = completion
        self.roster = roster or GroupRoster()
        self.clock = clock
        self.push_every = push_every
        self._turn_locks: WeakValueDictionary[str, anyio.Lock] = WeakValueDictionary()

    def _lock_for(self, target: CardTarget) -> anyio.Lock:
        lock = self._turn_locks.get(target.key)
        if lock is None:
            lock = anyio.Lock()
            self._turn_locks[target.key] = lock
        return lock

    @property
    def settings(self) -> DingTalkSettings:
        return self.client.settings

    async def handle(self, message: IncomingMessage) -> None:
        self.cards.cleanup()
        if message.is_from_bot:
            logger.debug("handler.skip_self", message_id=message.message_id)
            return
        text = prompt_text(message)
        if not text:
            logger.debug("handler.skip_empty", message_id=message.message_id)
            return

        settings = self.settings
        logger.info(
            "handler.received",
            message_id=message.message_id,
            sender_id=message.sender_id,
            group=message.is_group,
            length=len(text),
        )
        if not await self._check_access(message):
            return

        if settings.enable_session_commands and is_new_session_command(text):
            self.sessions.resolve(
                message.sender_id, force_new=True, timeout_s=settings.session_timeout_s
            )
            await self.client.send_message(
                message.reply_to,
                NEW_SESSION_REPLY,
                session_webhook=message.session_webhook,
                is_group=message.is_group,
                at_user_id=message.sender_id if message.is_group else None,
            )
            return

        session = self.sessions.resolve(
            message.sender_id, timeout_s=settings.session_timeout_s
        )
        logger.info(
            "handler.session",
            session_key=session.session_key,
            is_new=session.is_new,
            timed_out=session.timed_out,
        )
        if message.is_group:
            self.roster.note(message.conversation_id, message.sender_id, message.sender_nick)

        turn = Turn(message=message, text=text, session_key=session.session_key)
        # one reply at a time per conversation; a second message waits for the first
        lock = self._lock_for(self._target(turn))
        if lock.locked():
            logger.info("handler.turn_queued", message_id=message.message_id)
        async with lock:
            if settings.message_type == "card":
                await self._handle_card(turn)
            else:
                await self._handle_batch(turn)

    async def _check_access(self, message: IncomingMessage) -> bool:
        settings = self.settings
        if message.is_direct:
            if settings.dm_policy != "allowlist":
                return True
            if is_sender_allowed(settings.allow_from, message.sender_id):
                return True
            logger.info("handler.dm_blocked", sender_id=message.sender_id)
            await self.client.send_message(
                message.sender_id,
                access_denied_notice(message.sender_id),
                session_webhook=message.session_webhook,
                is_group=False,
            )
            return False
        if not is_group_allowed(settings, message.conversation_id):
            logger.info("handler.group_blocked", group_id=message.conversation_id)
            return False
        if not is_user_allowed_in_group(
            settings, message.conversation_id, message.sender_id
        ):
            logger.info(
                "handler.group_user_blocked",
                group_id=message.conversation_id,
                sender_id=message.sender_id,
            )
            return False
        return True

    def _system_prompts(self, message: IncomingMessage, *, with_roster: bool) -> list[str]:
        settings = self.settings
        prompts: list[str] = []
        if settings.enable_media_upload:
            prompts.append(build_media_system_prompt())
        if message.is_group:
            group_prompt = group_system_prompt(settings, message.conversation_id)
            if group_prompt:
                prompts.append(group_prompt)
            if with_roster:
                members = self.roster.format(message.conversation_id)
                if members:
                    prompts.append(f"Current group members: {members}")
        return prompts

    async def _oapi_token(self) -> str | None:
        if not self.settings.enable_media_upload:
            return None
        return await self.client.tokens.get_oapi_token(self.settings)

    def _target(self, turn: Turn) -> CardTarget:
        message = turn.message
        return CardTarget(
            account_id=self.account_id,
            conversation_id=turn.to,
            is_group=message.is_group,
            user_id=None if message.is_group else message.sender_id,
        )

    async def _handle_card(self, turn: Turn) -> None:
        target = self._target(turn)
        card = await self.cards.get_or_create(target)
        if card is None:
            logger.warning("handler.card_fallback", target=target.key)
            await self._handle_batch(turn)
            return
        logger.info("handler.card", card_id=card.card_instance_id)

        prompts = self._system_prompts(turn.message, with_roster=True)
        oapi_token = await self._oapi_token()
        pusher = CardPusher(
            self.engine, card, push_every=self.push_every, clock=self.clock
        )
        accumulated = ""
        try:
            async for chunk in self.completion(
                user_content=turn.text,
                system_prompts=prompts,
                session_key=turn.session_key,
            ):
                accumulated += chunk
                await pusher.offer(accumulated)
            logger.info("handler.stream_done", length=len(accumulated))
            result = await run_pipeline(
                accumulated,
                PostProcessContext(
                    client=self.client,
                    target=target,
                    oapi_token=oapi_token,
                    enable_video_processing=self.settings.enable_video_processing,
                ),
            )
            final = result.text.strip() or CARD_DONE_FALLBACK
            await self.engine.finish(card, final)
        except Exception as exc:
            logger.error(
                "handler.card_error",
                card_id=card.card_instance_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            interrupted = clean_media_markers(accumulated)
            interrupted += f"\n\n⚠️ Response interrupted: {exc}"
            try:
                await self.engine.finish(card, interrupted.strip())
            except Exception as finish_exc:
                logger.error(
                    "handler.card_finish_error",
                    card_id=card.card_instance_id,
                    error=str(finish_exc),
                )

    async def _handle_batch(self, turn: Turn) -> None:
        message = turn.message
        settings = self.settings
        if settings.show_thinking and message.session_webhook:
            await self.client.send_thinking_indicator(message.session_webhook)

        prompts = self._system_prompts(message, with_roster=False)
        oapi_token = await self._oapi_token()
        use_markdown = {"text": False, "auto": None}.get(settings.message_type, True)
        response = ""
        try:
            async for chunk in self.completion(
                user_content=turn.text,
                system_prompts=prompts,
                session_key=turn.session_key,
            ):
                response += chunk
            result = await run_pipeline(
                response,
                PostProcessContext(
                    client=self.client,
                    target=self._target(turn),
                    oapi_token=oapi_token,
                    enable_video_processing=settings.enable_video_processing,
                ),
            )
            sent = await self.client.send_message(
                turn.to,
                result.text or BATCH_EMPTY_REPLY,
                session_webhook=message.session_webhook,
                is_group=message.is_group,
                at_user_id=turn.at_user_id,
                use_markdown=use_markdown,
            )
            logger.info("handler.batch_sent", ok=sent.ok, length=len(result.text))
        except Exception as exc:
            logger.error(
                "handler.batch_error",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self.client.send_message(
                turn.to,
                f"Sorry, something went wrong while handling your request: {exc}",
                session_webhook=message.session_webhook,
                is_group=message.is_group,
                at_user_id=turn.at_user_id,
            )
