from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

_PREFIX_RE = re.compile(r"^(dingtalk|dd|ding):", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class AllowList:
    entries: tuple[str, ...]
    wildcard: bool
    configured: bool

    def allows(self, sender_id: str | None) -> bool:
        if not self.configured or self.wildcard:
            return True
        if not sender_id:
            return False
        return sender_id.lower() in {entry.lower() for entry in self.entries}


def normalize_allow_from(values: Iterable[str] | None) -> AllowList:
    raw = [str(value).strip() for value in values or ()]
    raw = [value for value in raw if value]
    return AllowList(
        entries=tuple(_PREFIX_RE.sub("", value) for value in raw if value != "*"),
        wildcard="*" in raw,
        configured=bool(raw),
    )


def is_sender_allowed(values: Iterable[str] | None, sender_id: str | None) -> bool:
    return normalize_allow_from(values).allows(sender_id)


def access_denied_notice(sender_id: str) -> str:
    return (
        "⛔ Access restricted\n\n"
        f"Your user id: `{sender_id}`\n\n"
        "Ask an administrator to add this id to the allowlist."
    )
