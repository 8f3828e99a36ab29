"""Dingbridge domain model types (cards, targets, sessions, upload results)."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Literal, TypeAlias

from .settings import DingTalkSettings


class CardState(str, enum.Enum):
    PROCESSING = "1"
    INPUTING = "2"
    FINISHED = "3"
    # Declared by the card protocol; never entered by the engine.
    EXECUTING = "4"
    FAILED = "5"

    @property
    def is_terminal(self) -> bool:
        return self in (CardState.FINISHED, CardState.FAILED)


def target_key(account_id: str, conversation_id: str) -> str:
    return f"{account_id}:{conversation_id}"


@dataclass(frozen=True, slots=True)
class CardTarget:
    account_id: str
    conversation_id: str
    is_group: bool
    user_id: str | None = None

    @property
    def key(self) -> str:
        return target_key(self.account_id, self.conversation_id)

    @property
    def recipient(self) -> str:
        """Conversation id for groups, user id for direct chats."""
        if self.is_group:
            return self.conversation_id
        return self.user_id or self.conversation_id


@dataclass(slots=True)
class CardInstance:
    card_instance_id: str
    access_token: str
    conversation_id: str
    account_id: str
    created_at: float
    last_updated: float
    settings: DingTalkSettings
    state: CardState = CardState.PROCESSING
    inputing_started: bool = False
    token_issued_at: float = field(default=0.0)
    failure_finalized: bool = False

    def __post_init__(self) -> None:
        if not self.token_issued_at:
            self.token_issued_at = self.created_at

    def touch(self, now: float) -> None:
        self.last_updated = max(self.last_updated, now)


@dataclass(frozen=True, slots=True)
class SessionContext:
    session_key: str
    is_new: bool
    forced: bool = False
    timed_out: bool = False


MediaKind: TypeAlias = Literal["image", "file", "video", "voice"]
UploadFailure: TypeAlias = Literal["not_found", "too_large", "upload_failed"]


@dataclass(frozen=True, slots=True)
class UploadOk:
    media_id: str
    size: int


@dataclass(frozen=True, slots=True)
class UploadFailed:
    reason: UploadFailure
    detail: str = ""


UploadResult: TypeAlias = UploadOk | UploadFailed


@dataclass(frozen=True, slots=True)
class SendResult:
    ok: bool
    error: str | None = None
    process_query_key: str | None = None
    card_instance_id: str | None = None
    used_card: bool = False
