"""
Retry with exponential backoff for TaskPulse's I/O edges.

Used by the event bus publisher (Redis XADD) and the digest consumer
(mail transport). Both callers bound the number of attempts and escalate
to a log / dead-letter path once the attempts are spent.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


def compute_backoff(
    attempt: int,
    base_delay: float,
    multiplier: float = 2.0,
    jitter_pct: float = 0.25,
    max_delay: float = 60.0,
) -> float:
    """
    Delay before retry number ``attempt`` (0-indexed).

    Backoff schedule (with base_delay=2, multiplier=2):
        Attempt 1: ~2s  (± 25% jitter → 1.5s-2.5s)
        Attempt 2: ~4s  (± 25% jitter → 3.0s-5.0s)
        Attempt 3: ~8s  (± 25% jitter → 6.0s-10.0s)
    """
    delay = min(base_delay * (multiplier ** attempt), max_delay)
    jitter = delay * jitter_pct * (2 * random.random() - 1)
    return max(0.0, delay + jitter)


async def call_with_retry(
    func: Callable[[], Awaitable[Any]],
    max_attempts: int = 3,
    base_delay: float = 2.0,
    multiplier: float = 2.0,
    jitter_pct: float = 0.25,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    operation_name: str = "operation",
) -> Any:
    """
    Await ``func()`` up to ``max_attempts`` times.

    Non-matching exceptions pass through immediately. The last retryable
    exception is re-raised once the attempts are exhausted.
    """
    for attempt in range(max_attempts):
        try:
            return await func()
        except retryable_exceptions as e:
            if attempt == max_attempts - 1:
                logger.error(
                    f"{operation_name} failed after {max_attempts} attempts: {e}"
                )
                raise

            delay = compute_backoff(attempt, base_delay, multiplier, jitter_pct)
            logger.warning(
                f"{operation_name} attempt {attempt + 1}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"{operation_name}: max_attempts must be >= 1")

