from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import anyio
import httpx

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 4
DEFAULT_BASE_DELAY_S = 1.0
DEFAULT_MAX_DELAY_S = 10.0


def is_transient(exc: BaseException) -> bool:
    """Network failures, rate limits and server errors are worth retrying."""
    if isinstance(exc, httpx.TransportError):
        return True
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    return False


def backoff_delay(
    attempt: int,
    *,
    base_delay: float = DEFAULT_BASE_DELAY_S,
    max_delay: float = DEFAULT_MAX_DELAY_S,
    jitter: Callable[[], float] = random.random,
) -> float:
    return min(base_delay * (2**attempt) + jitter(), max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_S,
    max_delay: float = DEFAULT_MAX_DELAY_S,
    should_retry: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    jitter: Callable[[], float] = random.random,
    label: str | None = None,
) -> T:
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            if attempt == attempts - 1 or not should_retry(exc):
                logger.error(
                    "retry.exhausted",
                    label=label,
                    attempts=attempt + 1,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                raise
            delay = backoff_delay(
                attempt, base_delay=base_delay, max_delay=max_delay, jitter=jitter
            )
            logger.warning(
                "retry.attempt_failed",
                label=label,
                attempt=attempt + 1,
                error=str(exc),
                retry_in=round(delay, 3),
            )
            await sleep(delay)
    raise AssertionError("unreachable")
