"""Per-sender session continuity and inbound message dedup."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from .logging import get_logger
from .model import SessionContext

logger = get_logger(__name__)

SESSION_SCOPE = "dingtalk"
DEDUP_WINDOW_S = 5 * 60.0
DEDUP_SWEEP_EVERY = 100

NEW_SESSION_COMMANDS = frozenset(
    {"/new", "/reset", "/clear", "新会话", "重新开始", "清空对话"}
)


def is_new_session_command(text: str) -> bool:
    return text.strip().lower() in NEW_SESSION_COMMANDS


@dataclass(slots=True)
class SessionRecord:
    session_key: str
    epoch_ms: int
    last_activity: float


class SessionStore:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        scope: str = SESSION_SCOPE,
    ) -> None:
        self._clock = clock
        self._scope = scope
        self._sessions: dict[str, SessionRecord] = {}

    def _mint(self, sender_id: str, now: float) -> SessionRecord:
        epoch_ms = int(now * 1000)
        previous = self._sessions.get(sender_id)
        if previous is not None and epoch_ms <= previous.epoch_ms:
            epoch_ms = previous.epoch_ms + 1
        record = SessionRecord(
            session_key=f"{self._scope}:{sender_id}:{epoch_ms}",
            epoch_ms=epoch_ms,
            last_activity=now,
        )
        self._sessions[sender_id] = record
        return record

    def resolve(
        self, sender_id: str, *, force_new: bool = False, timeout_s: float
    ) -> SessionContext:
        now = self._clock()
        existing = self._sessions.get(sender_id)
        if force_new:
            record = self._mint(sender_id, now)
            logger.info("session.reset", sender_id=sender_id, session_key=record.session_key)
            return SessionContext(record.session_key, is_new=True, forced=True)
        if existing is None:
            record = self._mint(sender_id, now)
            logger.info("session.created", sender_id=sender_id, session_key=record.session_key)
            return SessionContext(record.session_key, is_new=True)
        elapsed = now - existing.last_activity
        if elapsed > timeout_s:
            record = self._mint(sender_id, now)
            logger.info(
                "session.timed_out",
                sender_id=sender_id,
                idle_min=round(elapsed / 60),
                session_key=record.session_key,
            )
            return SessionContext(record.session_key, is_new=True, timed_out=True)
        existing.last_activity = max(existing.last_activity, now)
        return SessionContext(existing.session_key, is_new=False)

    def touch(self, sender_id: str) -> None:
        record = self._sessions.get(sender_id)
        if record is not None:
            record.last_activity = max(record.last_activity, self._clock())

    def get(self, sender_id: str) -> SessionRecord | None:
        return self._sessions.get(sender_id)

    def delete(self, sender_id: str) -> None:
        self._sessions.pop(sender_id, None)

    def sweep(self, max_age_s: float) -> int:
        now = self._clock()
        stale = [
            sender
            for sender, record in self._sessions.items()
            if now - record.last_activity > max_age_s
        ]
        for sender in stale:
            del self._sessions[sender]
        if stale:
            logger.debug("session.sweep", removed=len(stale))
        return len(stale)

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


class DedupStore:
    """Message ids seen within a sliding window."""

    def __init__(
        self,
        *,
        window_s: float = DEDUP_WINDOW_S,
        sweep_every: int = DEDUP_SWEEP_EVERY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._window_s = window_s
        self._sweep_every = sweep_every
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._inserts = 0

    def is_duplicate(self, message_id: str) -> bool:
        if not message_id:
            return False
        seen_at = self._seen.get(message_id)
        if seen_at is None:
            return False
        return self._clock() - seen_at <= self._window_s

    def mark_seen(self, message_id: str) -> None:
        if not message_id:
            return
        self._seen[message_id] = self._clock()
        self._inserts += 1
        if self._inserts >= self._sweep_every:
            self._inserts = 0
            self.sweep()

    def sweep(self) -> int:
        now = self._clock()
        expired = [
            message_id
            for message_id, seen_at in self._seen.items()
            if now - seen_at > self._window_s
        ]
        for message_id in expired:
            del self._seen[message_id]
        return len(expired)

    def clear(self) -> None:
        self._seen.clear()
        self._inserts = 0

    def __len__(self) -> int:
        return len(self._seen)
