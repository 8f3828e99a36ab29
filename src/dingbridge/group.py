from __future__ import annotations

from .logging import get_logger
from .policy import is_sender_allowed
from .settings import DingTalkSettings, GroupSettings

logger = get_logger(__name__)

WILDCARD = "*"


def resolve_group_config(
    settings: DingTalkSettings, group_id: str
) -> GroupSettings | None:
    groups = settings.groups
    if group_id in groups:
        return groups[group_id]
    return groups.get(WILDCARD)


def group_system_prompt(settings: DingTalkSettings, group_id: str) -> str | None:
    config = resolve_group_config(settings, group_id)
    if config is None or not config.system_prompt:
        return None
    return config.system_prompt.strip() or None


def is_group_allowed(settings: DingTalkSettings, group_id: str) -> bool:
    if settings.group_policy == "open":
        return True
    return is_sender_allowed(settings.group_allowlist, group_id)


def is_user_allowed_in_group(
    settings: DingTalkSettings, group_id: str, user_id: str
) -> bool:
    config = resolve_group_config(settings, group_id)
    if config is None or not config.allow_from:
        return True
    return is_sender_allowed(config.allow_from, user_id)


class GroupRoster:
    """Members seen per group, kept in memory for the process lifetime."""

    def __init__(self) -> None:
        self._groups: dict[str, dict[str, str]] = {}

    def note(self, group_id: str, user_id: str, name: str) -> None:
        if not user_id or not name:
            return
        roster = self._groups.setdefault(group_id, {})
        if roster.get(user_id) == name:
            return
        roster[user_id] = name
        logger.debug("group.member_noted", group_id=group_id, user_id=user_id)

    def format(self, group_id: str) -> str | None:
        roster = self._groups.get(group_id)
        if not roster:
            return None
        return ", ".join(f"{name} ({user_id})" for user_id, name in roster.items())
