"""
Bounded retry for writes that must eventually succeed.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> T:
    """Run ``operation`` up to ``attempts`` times, sleeping base_delay * 2^n between tries.

    The last error is re-raised once attempts are exhausted.
    """
    last_error = None
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            logger.warning(f"[RETRY] {label} attempt {attempt + 1}/{attempts} failed: {e}")
            if attempt < attempts - 1:
                await asyncio.sleep(base_delay * (2 ** attempt))

    logger.error(f"[RETRY] {label} failed after {attempts} attempts: {last_error}")
    raise last_error
