import asyncio
import functools
import random
from typing import Callable, Optional, Tuple, Type

from tradeloop.exceptions import RetryableProviderError
from tradeloop.monitoring.logger import get_logger

logger = get_logger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_backoff: float,
    jitter_ratio: float = 0.25,
    retry_after: Optional[float] = None,
) -> float:
    """
    Seconds to wait before retry number ``attempt`` (0-based).

    Exponential from ``base_delay`` with up to ``jitter_ratio`` extra random
    wait; a server ``retry_after`` hint raises the floor. Capped at ``max_backoff``.
    """
    delay = min(base_delay * (2 ** attempt), max_backoff)
    delay += random.uniform(0, delay * jitter_ratio)
    if retry_after:
        delay = max(delay, float(retry_after))
    return min(delay, max_backoff)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Tuple[Type[Exception], ...] = (RetryableProviderError,),
    jitter_ratio: float = 0.25,
):
    """
    Decorator to retry async functions on transient errors.

    Only ``transient_errors`` are retried; anything else propagates on the
    first attempt. The last error is re-raised once retries are exhausted.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types worth retrying
        jitter_ratio: Extra random wait as a fraction of the backoff
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except transient_errors as e:
                    if attempt >= max_retries:
                        logger.warning(
                            "RETRIES_EXHAUSTED",
                            func=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise
                    wait = backoff_delay(
                        attempt,
                        base_delay,
                        max_backoff,
                        jitter_ratio,
                        getattr(e, "retry_after", None),
                    )
                    logger.warning(
                        "TRANSIENT_ERROR_RETRYING",
                        func=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        wait_seconds=round(wait, 2),
                        error=str(e),
                    )
                    await asyncio.sleep(wait)
                    attempt += 1

        return wrapper
    return decorator
