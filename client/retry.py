"""Retry with exponential backoff and jitter for transient failures."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from client.config import ClientConfig
from client.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float, max_jitter: float) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1) + jitter."""
    return base_delay * (2 ** (attempt - 1)) + random.uniform(0, max_jitter)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    config: ClientConfig,
    *,
    context: str,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run `operation`, retrying only on TransientError, at most `config.max_retries` attempts.

    Any other SyncError propagates on the first occurrence. A Retry-After
    the server sent (e.g. with a 429) stretches the delay, up to
    `config.max_retry_after`.
    """
    attempts = max(1, config.max_retries)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientError as e:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", context, attempt, e)
                raise
            delay = backoff_delay(attempt, config.retry_base_delay, config.retry_max_jitter)
            if e.retry_after is not None:
                # The server said when to come back; never sooner than that
                delay = max(delay, min(e.retry_after, config.max_retry_after))
            logger.warning("%s attempt %d failed, retrying in %.2fs: %s", context, attempt, delay, e)
            await sleep(delay)
    raise AssertionError("unreachable")
