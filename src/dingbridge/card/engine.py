"""Interactive AI card lifecycle: create, switch to active, stream, finalize."""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import anyio
import httpx

from ..dingtalk.client import DingTalkClient
from ..dingtalk.errors import DingTalkApiError, DingTalkAuthError
from ..dingtalk.token import TOKEN_REFRESH_THRESHOLD_S
from ..logging import get_logger
from ..model import CardInstance, CardState, CardTarget
from ..retry import retry_with_backoff
from ..settings import DingTalkSettings

logger = get_logger(__name__)

DEFAULT_CARD_TEMPLATE_ID = "382e4302-551d-4880-bf29-a30acfab2e71.schema"
CONTENT_KEY = "content"
CARD_ORDER = json.dumps({"order": ["msgContent"]})

CardCall = Callable[[str, dict[str, Any]], Awaitable[Any]]


def new_card_id() -> str:
    return f"card_{uuid.uuid4()}"


def build_create_body(
    target: CardTarget, *, card_id: str, template_id: str, robot_code: str
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "cardTemplateId": template_id,
        "outTrackId": card_id,
        "cardData": {"cardParamMap": {}},
        "callbackType": "STREAM",
        "imGroupOpenSpaceModel": {"supportForward": True},
        "imRobotOpenSpaceModel": {"supportForward": True},
        "userIdType": 1,
    }
    if target.is_group:
        body["openSpaceId"] = f"dtv1.card//IM_GROUP.{target.conversation_id}"
        body["imGroupOpenDeliverModel"] = {"robotCode": robot_code}
    else:
        body["openSpaceId"] = f"dtv1.card//IM_ROBOT.{target.recipient}"
        body["imRobotOpenDeliverModel"] = {"spaceType": "IM_ROBOT"}
    return body


def build_status_body(card_id: str, state: CardState, content: str) -> dict[str, Any]:
    return {
        "outTrackId": card_id,
        "cardData": {
            "cardParamMap": {
                "flowStatus": state.value,
                "msgContent": content,
                "staticMsgContent": "",
                "sys_full_json_obj": CARD_ORDER,
            }
        },
    }


def build_stream_body(card_id: str, content: str, *, finalize: bool) -> dict[str, Any]:
    return {
        "outTrackId": card_id,
        "guid": str(uuid.uuid4()),
        "key": CONTENT_KEY,
        "content": content,
        "isFull": True,
        "isFinalize": finalize,
        "isError": False,
    }


class CardClosedError(RuntimeError):
    def __init__(self, card_id: str, state: CardState) -> None:
        super().__init__(f"card {card_id} is already {state.name.lower()}")
        self.card_id = card_id
        self.state = state


class CardEngine:
    """Drives one account's cards through the streaming card protocol.

    Content is always sent as a full replacement; callers hold the complete
    accumulated text and serialize pushes per card.

    A terminal card refuses further pushes. The only exception is a single
    finalizing push on a FAILED card, which lets the caller leave the user
    a visible error message.
    """

    def __init__(
        self,
        client: DingTalkClient,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        create_attempts: int = 3,
        refresh_threshold_s: float = TOKEN_REFRESH_THRESHOLD_S,
    ) -> None:
        self._client = client
        self._tokens = client.tokens
        self._clock = clock
        self._sleep = sleep
        self._create_attempts = create_attempts
        self._refresh_threshold_s = refresh_threshold_s

    @property
    def settings(self) -> DingTalkSettings:
        return self._client.settings

    async def create(self, target: CardTarget) -> CardInstance | None:
        """Create and deliver a card; None on any failure."""
        settings = self.settings
        card_id = new_card_id()
        body = build_create_body(
            target,
            card_id=card_id,
            template_id=settings.card_template_id or DEFAULT_CARD_TEMPLATE_ID,
            robot_code=settings.effective_robot_code,
        )
        logger.info(
            "card.create",
            card_id=card_id,
            group=target.is_group,
            conversation_id=target.conversation_id,
        )
        try:
            token = await self._tokens.get_token(settings)

            async def deliver() -> Any:
                return await self._client.create_and_deliver_card(token, body)

            await retry_with_backoff(
                deliver,
                attempts=self._create_attempts,
                sleep=self._sleep,
                label="card.create",
            )
        except (httpx.HTTPError, DingTalkApiError) as exc:
            logger.error(
                "card.create.failed",
                card_id=card_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

        now = self._clock()
        return CardInstance(
            card_instance_id=card_id,
            access_token=token,
            conversation_id=target.conversation_id,
            account_id=target.account_id,
            created_at=now,
            last_updated=now,
            settings=settings,
            token_issued_at=now,
        )

    async def _refresh_if_stale(self, card: CardInstance) -> None:
        now = self._clock()
        if now - card.token_issued_at <= self._refresh_threshold_s:
            return
        try:
            card.access_token = await self._tokens.get_token(
                card.settings, min_validity_s=self._refresh_threshold_s
            )
        except (httpx.HTTPError, DingTalkApiError) as exc:
            logger.warning(
                "card.token_refresh.failed",
                card_id=card.card_instance_id,
                error=str(exc),
            )
            return
        card.token_issued_at = now
        logger.debug("card.token_refreshed", card_id=card.card_instance_id)

    async def _call(self, card: CardInstance, call: CardCall, body: dict[str, Any]) -> None:
        try:
            await call(card.access_token, body)
        except DingTalkAuthError:
            logger.warning("card.unauthorized", card_id=card.card_instance_id)
            card.access_token = await self._tokens.get_token(card.settings, force=True)
            card.token_issued_at = self._clock()
            await call(card.access_token, body)

    async def push(self, card: CardInstance, content: str, *, finalize: bool = False) -> None:
        if card.state.is_terminal:
            if not finalize or card.state is not CardState.FAILED or card.failure_finalized:
                logger.warning(
                    "card.push.closed",
                    card_id=card.card_instance_id,
                    state=card.state.name,
                    finalize=finalize,
                )
                raise CardClosedError(card.card_instance_id, card.state)
            card.failure_finalized = True
        await self._refresh_if_stale(card)
        try:
            if not card.inputing_started:
                card.inputing_started = True
                await self._call(
                    card,
                    self._client.update_card_instance,
                    build_status_body(card.card_instance_id, CardState.INPUTING, ""),
                )
            await self._call(
                card,
                self._client.stream_card,
                build_stream_body(card.card_instance_id, content, finalize=finalize),
            )
        except Exception as exc:
            card.state = CardState.FAILED
            card.touch(self._clock())
            logger.error(
                "card.push.failed",
                card_id=card.card_instance_id,
                finalize=finalize,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise

        card.touch(self._clock())
        if not card.state.is_terminal:
            card.state = CardState.FINISHED if finalize else CardState.INPUTING
        logger.debug(
            "card.pushed",
            card_id=card.card_instance_id,
            length=len(content),
            finalize=finalize,
            state=card.state.name,
        )

    async def finish(self, card: CardInstance, content: str) -> None:
        await self.push(card, content, finalize=True)
        try:
            await self._call(
                card,
                self._client.update_card_instance,
                build_status_body(card.card_instance_id, CardState.FINISHED, content),
            )
        except (httpx.HTTPError, DingTalkApiError) as exc:
            logger.warning(
                "card.finish_status.failed",
                card_id=card.card_instance_id,
                error=str(exc),
            )
            return
        logger.info("card.finished", card_id=card.card_instance_id, length=len(content))
