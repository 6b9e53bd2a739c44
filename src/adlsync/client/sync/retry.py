"""Retry logic with exponential backoff and jitter.

This module provides:
- backoff_delay: Delay for the n-th retry, capped and jittered
- retry_with_backoff: Retry a coroutine on retryable errors
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 2
DEFAULT_INITIAL_BACKOFF = 0.3  # seconds
DEFAULT_MAX_BACKOFF = 5.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.25  # +/- fraction of the delay


def backoff_delay(
    attempt: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    jitter: float = DEFAULT_JITTER,
    rng: random.Random | None = None,
) -> float:
    """Compute the delay before retry number ``attempt`` (0-based).

    The base delay grows as ``initial * multiplier ** attempt`` up to
    ``max_backoff``; jitter then spreads it by up to ``+/- jitter`` of itself.
    """
    base = min(initial_backoff * multiplier**attempt, max_backoff)
    if jitter <= 0:
        return base
    spread = base * jitter
    return max(0.0, base + (rng or random).uniform(-spread, spread))


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``func()`` with exponential backoff retry.

    Args:
        func: Coroutine factory to execute.
        max_retries: Maximum number of retry attempts.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable_exceptions: Tuple of exception types to retry on.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        Result of the coroutine.

    Raises:
        The last exception if all retries fail, or any non-retryable error.
    """
    attempt = 0
    while True:
        try:
            return await func()
        except retryable_exceptions as e:
            if attempt >= max_retries:
                logger.warning("All %d retries failed: %s", max_retries, e)
                raise

            delay = backoff_delay(attempt, initial_backoff, max_backoff, backoff_multiplier)
            attempt += 1
            logger.info(
                "Attempt %d/%d failed: %s. Retrying in %.1fs...",
                attempt,
                max_retries + 1,
                e,
                delay,
            )
            await sleep(delay)
