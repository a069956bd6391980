"""Retry decorator with exponential backoff for transient I/O."""

import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


def is_transient(error: Exception) -> bool:
    """Errors flagged ``transient = False`` are not worth another attempt."""
    return getattr(error, "transient", True)


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Optional[Callable[[Exception], bool]] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Retry a coroutine with exponential backoff.

    Args:
        max_attempts: Maximum number of calls, including the first
        base_delay: Delay before the second call (doubles each attempt)
        max_delay: Upper bound on any single delay
        exceptions: Exception types that may be retried
        retry_if: Optional predicate; a caught exception it rejects is
            re-raised at once

    Returns:
        Decorated coroutine function. The last exception is re-raised
        once attempts are exhausted.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        logger.error(f"{func.__qualname__} failed permanently: {e}")
                        raise
                    if attempt >= max_attempts:
                        logger.error(f"{func.__qualname__} gave up after {attempt} attempts: {e}")
                        raise
                    delay = min(base_delay * 2 ** (attempt - 1), max_delay)
                    logger.warning(
                        f"{func.__qualname__} attempt {attempt}/{max_attempts} failed, "
                        f"retrying in {delay:.2f}s: {e}"
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
