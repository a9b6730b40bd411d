"""Retry decorator for network operations with exponential backoff."""
import asyncio
import functools
import time
from typing import Tuple, Type

from dockhand.core.logger import get_logger

logger = get_logger(__name__)


def retry(
    max_attempts: int = 3,
    delay: float = 2.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
):
    """Retry decorator with exponential backoff.

    Works on plain functions and on coroutine functions; coroutines wait
    with ``asyncio.sleep`` so the event loop keeps running between attempts.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay in seconds between attempts
        backoff: Backoff multiplier for each retry
        exceptions: Exception types that trigger a retry

    Example:
        @retry(max_attempts=3, exceptions=(requests.RequestException,))
        async def fetch(self):
            ...
    """

    def delays():
        current = delay
        for _ in range(max_attempts - 1):
            yield current
            current *= backoff

    def announce_retry(func, attempt: int, error: Exception, wait: float) -> None:
        logger.warning(f"{func.__name__} failed (attempt {attempt}/{max_attempts}): {error}")
        logger.info(f"Retrying in {wait:.1f}s...")

    def decorator(func):
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                for attempt, wait in enumerate(delays(), start=1):
                    try:
                        return await func(*args, **kwargs)
                    except exceptions as e:
                        announce_retry(func, attempt, e, wait)
                        await asyncio.sleep(wait)
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    logger.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                    raise

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt, wait in enumerate(delays(), start=1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    announce_retry(func, attempt, e, wait)
                    time.sleep(wait)
            try:
                return func(*args, **kwargs)
            except exceptions as e:
                logger.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                raise

        return wrapper

    return decorator
