from __future__ import annotations

from typing import Any

import msgspec

__all__ = [
    "AtUser",
    "ChatRecordEntry",
    "InboundCallback",
    "MediaContent",
    "RepliedContent",
    "RepliedMessage",
    "RepliedText",
    "RichTextItem",
    "TextContent",
]


class AtUser(msgspec.Struct, rename="camel", forbid_unknown_fields=False):
    dingtalk_id: str | None = None
    staff_id: str | None = None


class RichTextItem(msgspec.Struct, rename="camel", forbid_unknown_fields=False):
    type: str | None = None
    msg_type: str | None = None
    text: str | None = None
    content: str | None = None
    at_name: str | None = None
    download_code: str | None = None


class RepliedText(msgspec.Struct, forbid_unknown_fields=False):
    content: str | None = None


class RepliedContent(msgspec.Struct, rename="camel", forbid_unknown_fields=False):
    rich_text: list[RichTextItem] | None = None
    text: str | None = None


class RepliedMessage(msgspec.Struct, rename="camel", forbid_unknown_fields=False):
    content: str | RepliedContent | None = None
    text: str | RepliedText | None = None
    rich_text: list[RichTextItem] | None = None
    msg_type: str | None = None


class TextContent(msgspec.Struct, rename="camel", forbid_unknown_fields=False):
    content: str = ""
    is_reply_msg: bool = False
    replied_msg: Any = None


class MediaContent(msgspec.Struct, rename="camel", forbid_unknown_fields=False):
    download_code: str | None = None
    file_name: str | None = None
    recognition: str | None = None
    duration: int | None = None
    rich_text: list[RichTextItem] | None = None
    chat_record: str | None = None


class ChatRecordEntry(msgspec.Struct, rename="camel", forbid_unknown_fields=False):
    sender_id: str | None = None
    sender_staff_id: str | None = None
    sender_nick: str | None = None
    msg_type: str | None = None
    content: str | None = None
    download_code: str | None = None
    create_at: int | None = None


class InboundCallback(msgspec.Struct, rename="camel", forbid_unknown_fields=False):
    msg_id: str
    conversation_id: str
    sender_id: str = ""
    msgtype: str = "text"
    create_at: int | None = None
    sender_staff_id: str | None = None
    sender_nick: str | None = None
    sender_corp_id: str | None = None
    conversation_type: str = "1"
    conversation_title: str | None = None
    chatbot_corp_id: str | None = None
    chatbot_user_id: str | None = None
    robot_code: str | None = None
    session_webhook: str | None = None
    session_webhook_expired_time: int | None = None
    is_in_at_list: bool | None = None
    at_users: list[AtUser] | None = None
    text: TextContent | None = None
    content: MediaContent | None = None
    is_reply_msg: bool = False
    replied_msg: Any = None
