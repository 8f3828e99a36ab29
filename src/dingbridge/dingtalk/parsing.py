"""Normalize robot callback payloads into one parsed message shape."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, TypeAlias

import msgspec

from ..logging import get_logger
from .api_models import (
    ChatRecordEntry,
    InboundCallback,
    RepliedContent,
    RepliedMessage,
    RepliedText,
    RichTextItem,
)

logger = get_logger(__name__)

MediaBodyKind: TypeAlias = Literal["image", "audio", "video", "file"]

_CHAT_RECORD_PLACEHOLDERS: dict[str, str] = {
    "picture": "[image]",
    "image": "[image]",
    "video": "[video]",
    "file": "[file]",
    "voice": "[voice]",
    "audio": "[voice]",
}


class InboundDecodeError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class TextBody:
    text: str


@dataclass(frozen=True, slots=True)
class RichTextBody:
    text: str


@dataclass(frozen=True, slots=True)
class ChatRecord:
    sender: str
    content: str
    created_at_ms: int | None = None


@dataclass(frozen=True, slots=True)
class ChatRecordBody:
    records: tuple[ChatRecord, ...]


@dataclass(frozen=True, slots=True)
class MediaBody:
    kind: MediaBodyKind
    download_code: str | None
    file_name: str | None = None
    recognition: str | None = None


@dataclass(frozen=True, slots=True)
class UnrecognizedBody:
    msgtype: str
    text: str | None = None


MessageBody: TypeAlias = (
    TextBody | RichTextBody | ChatRecordBody | MediaBody | UnrecognizedBody
)


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    message_id: str
    sender_id: str
    sender_nick: str
    conversation_id: str
    is_group: bool
    body: MessageBody
    quote: str | None = None
    chatbot_user_id: str | None = None
    session_webhook: str | None = None
    conversation_title: str | None = None
    raw_sender_id: str = ""
    raw_sender_staff_id: str | None = None

    @property
    def is_direct(self) -> bool:
        return not self.is_group

    @property
    def reply_to(self) -> str:
        """User id for direct chats, conversation id for groups."""
        return self.conversation_id if self.is_group else self.sender_id

    @property
    def is_from_bot(self) -> bool:
        bot = self.chatbot_user_id
        if not bot:
            return False
        return bot in (self.raw_sender_id, self.raw_sender_staff_id)


def _rich_text_items(items: list[RichTextItem]) -> str:
    parts: list[str] = []
    for item in items:
        kind = item.msg_type or item.type
        if kind == "text":
            value = item.content if item.content is not None else item.text
            if value:
                parts.append(value)
        elif kind == "picture":
            parts.append("[image]")
    return "".join(parts)


def _quoted_text(replied: Any) -> str | None:
    if replied is None:
        return None
    if isinstance(replied, str):
        return replied or None
    try:
        msg = msgspec.convert(replied, type=RepliedMessage)
    except (msgspec.ValidationError, TypeError):
        logger.debug("inbound.quote.unrecognized", kind=type(replied).__name__)
        return None

    content = msg.content
    if isinstance(content, str) and content:
        return content
    if isinstance(content, RepliedContent):
        if content.rich_text:
            text = _rich_text_items(content.rich_text)
            if text:
                return text
        if content.text:
            return content.text
    text = msg.text
    if isinstance(text, str) and text:
        return text
    if isinstance(text, RepliedText) and text.content:
        return text.content
    if msg.rich_text:
        joined = _rich_text_items(msg.rich_text)
        if joined:
            return joined
    return None


def _extract_quote(callback: InboundCallback) -> str | None:
    text = callback.text
    replied = text.replied_msg if text is not None else None
    if replied is None:
        replied = callback.replied_msg
    flagged = callback.is_reply_msg or (text is not None and text.is_reply_msg)
    if replied is None:
        if flagged:
            logger.info("inbound.quote.missing", msg_id=callback.msg_id)
        return None
    quoted = _quoted_text(replied)
    if quoted is None:
        return None
    return f'[quoted reply: "{quoted.strip()}"]'


def _decode_chat_record(raw: str | None) -> tuple[ChatRecord, ...]:
    if not raw:
        return ()
    try:
        entries = msgspec.json.decode(raw, type=list[ChatRecordEntry])
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
        logger.warning("inbound.chat_record.invalid", error=str(exc))
        return ()
    records: list[ChatRecord] = []
    for entry in entries:
        kind = entry.msg_type or "unknown"
        placeholder = _CHAT_RECORD_PLACEHOLDERS.get(kind)
        if placeholder is not None:
            content = placeholder
        else:
            content = entry.content or f"[{kind} message]"
        records.append(
            ChatRecord(
                sender=entry.sender_nick or "unknown",
                content=content,
                created_at_ms=entry.create_at,
            )
        )
    return tuple(records)


def _decode_body(callback: InboundCallback) -> MessageBody:
    msgtype = callback.msgtype or "text"
    content = callback.content
    if msgtype == "text":
        return TextBody(text=(callback.text.content if callback.text else "").strip())
    if msgtype == "richText":
        parts: list[str] = []
        for item in (content.rich_text if content else None) or []:
            if item.type == "text" and item.text:
                parts.append(item.text)
            elif item.type == "at" and item.at_name:
                parts.append(f"@{item.at_name} ")
        return RichTextBody(text="".join(parts).strip())
    if msgtype == "chatRecord":
        return ChatRecordBody(
            records=_decode_chat_record(content.chat_record if content else None)
        )
    if msgtype in ("picture", "audio", "video", "file"):
        kind: MediaBodyKind = "image" if msgtype == "picture" else msgtype  # type: ignore[assignment]
        return MediaBody(
            kind=kind,
            download_code=content.download_code if content else None,
            file_name=content.file_name if content else None,
            recognition=content.recognition if content else None,
        )
    fallback = callback.text.content.strip() if callback.text else None
    return UnrecognizedBody(msgtype=msgtype, text=fallback or None)


def parse_inbound(data: bytes | str | dict[str, Any]) -> IncomingMessage:
    try:
        if isinstance(data, dict):
            callback = msgspec.convert(data, type=InboundCallback)
        else:
            callback = msgspec.json.decode(data, type=InboundCallback)
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
        raise InboundDecodeError(f"invalid robot callback: {exc}") from exc

    sender_id = callback.sender_staff_id or callback.sender_id
    return IncomingMessage(
        message_id=callback.msg_id,
        sender_id=sender_id,
        sender_nick=callback.sender_nick or "Unknown",
        conversation_id=callback.conversation_id,
        is_group=callback.conversation_type == "2",
        body=_decode_body(callback),
        quote=_extract_quote(callback),
        chatbot_user_id=callback.chatbot_user_id,
        session_webhook=callback.session_webhook,
        conversation_title=callback.conversation_title,
        raw_sender_id=callback.sender_id,
        raw_sender_staff_id=callback.sender_staff_id,
    )


def render_chat_record(records: tuple[ChatRecord, ...]) -> str:
    if not records:
        return "[chat record]"
    lines = [f"[chat record - {len(records)} messages]"]
    for idx, record in enumerate(records, start=1):
        stamp = ""
        if record.created_at_ms:
            when = datetime.fromtimestamp(record.created_at_ms / 1000)
            stamp = f" ({when:%Y-%m-%d %H:%M:%S})"
        lines.append(f"[{idx}] {record.sender}{stamp}: {record.content}")
    return "\n".join(lines)


def body_text(body: MessageBody) -> str:
    match body:
        case TextBody(text=text):
            return text
        case RichTextBody(text=text):
            return text or "[rich text message]"
        case ChatRecordBody(records=records):
            return render_chat_record(records)
        case MediaBody(kind="image"):
            return "[image]"
        case MediaBody(kind="audio", recognition=recognition):
            return recognition or "[voice message]"
        case MediaBody(kind="video"):
            return "[video]"
        case MediaBody(kind="file", file_name=file_name):
            return f"[file: {file_name or 'file'}]"
        case UnrecognizedBody(msgtype=msgtype, text=text):
            return text or f"[{msgtype} message]"
    return ""


def prompt_text(message: IncomingMessage) -> str:
    """Text handed to the completion backend, quote prefix included."""
    text = body_text(message.body)
    if isinstance(message.body, ChatRecordBody) or not message.quote:
        return text
    if not text:
        return ""
    return f"{message.quote}\n{text}"
