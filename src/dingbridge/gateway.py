"""Inbound transport boundary: ack, dedup, decode, dispatch to the handler."""

from __future__ import annotations

import tempfile
from collections.abc import AsyncIterable, Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio
import httpx

from .card.cache import CardCache
from .card.engine import CardEngine
from .dingtalk.client import DingTalkClient
from .dingtalk.parsing import InboundDecodeError, parse_inbound
from .dingtalk.token import TokenCache
from .group import GroupRoster
from .handler import Completion, MessageHandler, gateway_completion
from .logging import get_logger
from .session import DedupStore, SessionStore
from .settings import DingTalkSettings
from .utils.files import sweep_temp_files

logger = get_logger(__name__)

Ack = Callable[[], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class InboundEvent:
    message_id: str
    data: bytes | str | dict[str, Any]
    ack: Ack | None = None


class Gateway:
    def __init__(
        self,
        *,
        handler: MessageHandler,
        dedup: DedupStore,
        temp_dir: Path | None = None,
    ) -> None:
        self.handler = handler
        self.dedup = dedup
        self.temp_dir = temp_dir or Path(tempfile.gettempdir())

    @property
    def account_id(self) -> str:
        return self.handler.account_id

    def start(self) -> None:
        removed = sweep_temp_files(self.temp_dir)
        logger.info("gateway.start", account_id=self.account_id, temp_removed=removed)

    async def dispatch(
        self,
        message_id: str,
        data: bytes | str | dict[str, Any],
        ack: Ack | None = None,
    ) -> bool:
        """Handle one delivery; returns False when it was dropped."""
        if ack is not None:
            try:
                await ack()
            except Exception as exc:
                logger.warning("gateway.ack_failed", message_id=message_id, error=str(exc))

        if message_id:
            if self.dedup.is_duplicate(message_id):
                logger.info("gateway.duplicate", message_id=message_id)
                return False
            self.dedup.mark_seen(message_id)

        try:
            message = parse_inbound(data)
        except InboundDecodeError as exc:
            logger.error("gateway.decode_failed", message_id=message_id, error=str(exc))
            return False

        if not message_id:
            if self.dedup.is_duplicate(message.message_id):
                logger.info("gateway.duplicate", message_id=message.message_id)
                return False
            self.dedup.mark_seen(message.message_id)

        try:
            await self.handler.handle(message)
        except Exception:
            logger.exception("gateway.handler_failed", message_id=message.message_id)
            return False
        return True

    async def run(self, events: AsyncIterable[InboundEvent]) -> None:
        self.start()
        try:
            async with anyio.create_task_group() as tg:
                async for event in events:
                    tg.start_soon(self.dispatch, event.message_id, event.data, event.ack)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        expired = self.dedup.sweep()
        removed = self.handler.cards.cleanup()
        logger.info(
            "gateway.shutdown",
            account_id=self.account_id,
            dedup_expired=expired,
            cards_removed=removed,
        )


def build_gateway(
    settings: DingTalkSettings,
    *,
    account_id: str = "default",
    http: httpx.AsyncClient,
    tokens: TokenCache | None = None,
    completion: Completion | None = None,
    sessions: SessionStore | None = None,
    dedup: DedupStore | None = None,
    temp_dir: Path | None = None,
) -> Gateway:
    tokens = tokens or TokenCache(http=http)
    client = DingTalkClient(settings, tokens=tokens, http=http, temp_dir=temp_dir)
    engine = CardEngine(client)
    handler = MessageHandler(
        account_id=account_id,
        client=client,
        engine=engine,
        cards=CardCache(engine),
        sessions=sessions or SessionStore(),
        completion=completion or gateway_completion(http, settings),
        roster=GroupRoster(),
    )
    return Gateway(handler=handler, dedup=dedup or DedupStore(), temp_dir=temp_dir)
