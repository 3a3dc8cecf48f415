"""Capped exponential backoff for idempotent persistence calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import HistoryEngineError, PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 10.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def backoff_delay(
    attempt: int,
    *,
    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS,
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> float:
    """Delay before retry number ``attempt`` (0-based), capped."""
    delay = initial_delay_seconds * (backoff_multiplier**attempt)
    return min(delay, max_delay_seconds)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS,
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying transient persistence failures.

    Driver exceptions are normalized to ``PersistenceError`` first. Permanent
    codes and engine errors (authentication, archived standard) are raised on
    the first failure; transient codes are retried until ``max_attempts``.
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except PersistenceError as exc:
            error = exc
        except HistoryEngineError:
            raise
        except Exception as exc:
            error = PersistenceError.from_exception(exc)
            if error.code == "unknown":
                raise

        if not error.is_retryable() or attempt >= attempts - 1:
            raise error

        delay = backoff_delay(
            attempt,
            initial_delay_seconds=initial_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_multiplier=backoff_multiplier,
        )
        logger.warning(
            "Persistence call failed (code=%s), retrying in %.1fs (attempt=%d/%d)",
            error.code,
            delay,
            attempt + 1,
            attempts,
        )
        await sleep(delay)

    raise AssertionError("unreachable")
