"""Bounded exponential backoff for transient upstream failures."""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger("ExpenseFlow.Retry")

T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` up to ``attempts`` times.

    Waits ``base_delay * 2**n`` (capped at ``max_delay``) between attempts.
    Only exceptions listed in ``retry_on`` are retried; the last one is
    re-raised once the budget is exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"❌ {label} failed after {attempt} attempt(s): {e}")
                raise
            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.warning(
                f"⚠️ {label} attempt {attempt}/{attempts} failed: {e} "
                f"- retrying in {delay:.2f}s"
            )
            await sleep(delay)

    raise AssertionError("unreachable")
