from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

import anyio

from ..logging import get_logger
from ..model import CardInstance, CardTarget, target_key
from .engine import CardEngine

logger = get_logger(__name__)

CARD_RETENTION_S = 60 * 60.0


@dataclass(frozen=True, slots=True)
class CacheStats:
    total_cards: int
    active_targets: int


class CardCache:
    """At most one non-terminal card mapped per target.

    Creation for a target is single-flight: a per-target lock is held across
    the lookup and the create call.
    """

    def __init__(
        self,
        engine: CardEngine,
        *,
        clock: Callable[[], float] = time.time,
        retention_s: float = CARD_RETENTION_S,
    ) -> None:
        self._engine = engine
        self._clock = clock
        self._retention_s = retention_s
        self._cards: dict[str, CardInstance] = {}
        self._active: dict[str, str] = {}
        self._locks: dict[str, anyio.Lock] = {}

    def _lock_for(self, key: str) -> anyio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = anyio.Lock()
            self._locks[key] = lock
        return lock

    def active_for(self, account_id: str, conversation_id: str) -> CardInstance | None:
        key = target_key(account_id, conversation_id)
        card_id = self._active.get(key)
        if card_id is None:
            return None
        card = self._cards.get(card_id)
        if card is None or card.state.is_terminal:
            self._active.pop(key, None)
            return None
        return card

    async def get_or_create(self, target: CardTarget) -> CardInstance | None:
        key = target.key
        async with self._lock_for(key):
            existing = self.active_for(target.account_id, target.conversation_id)
            if existing is not None:
                logger.debug(
                    "card_cache.reuse", key=key, card_id=existing.card_instance_id
                )
                return existing
            card = await self._engine.create(target)
            if card is None:
                return None
            self._cards[card.card_instance_id] = card
            self._active[key] = card.card_instance_id
            logger.debug("card_cache.stored", key=key, card_id=card.card_instance_id)
            return card

    def get(self, card_instance_id: str) -> CardInstance | None:
        return self._cards.get(card_instance_id)

    def remove_active(self, account_id: str, conversation_id: str) -> None:
        self._active.pop(target_key(account_id, conversation_id), None)

    def cleanup(self) -> int:
        now = self._clock()
        expired = [
            card_id
            for card_id, card in self._cards.items()
            if card.state.is_terminal and now - card.last_updated > self._retention_s
        ]
        for card_id in expired:
            del self._cards[card_id]
        if expired:
            dropped = set(expired)
            for key, card_id in list(self._active.items()):
                if card_id in dropped:
                    del self._active[key]
        for key, lock in list(self._locks.items()):
            if key not in self._active and not lock.locked():
                del self._locks[key]
        if expired:
            logger.debug("card_cache.cleanup", removed=len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        return CacheStats(total_cards=len(self._cards), active_targets=len(self._active))

    def clear(self) -> None:
        self._cards.clear()
        self._active.clear()
        self._locks.clear()
