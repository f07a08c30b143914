"""Retry logic with exponential backoff for transient infrastructure failures."""

import asyncio
import logging
from typing import Any, Callable, Optional, Tuple, Type

from edgedispatch.core.utils.backoff import get_backoff_delay
from edgedispatch.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class RetryExhaustedError(Exception):
    """Raised when max retry attempts are exceeded."""

    pass


async def retry_with_backoff(
    func: Callable[..., Any],
    *args: Any,
    max_attempts: Optional[int] = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter: float = 0.2,
    retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    **kwargs: Any,
) -> Any:
    """Execute async function with retry and exponential backoff.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        max_attempts: Maximum number of attempts (default: 3). None retries
            until the call succeeds or the surrounding task is cancelled.
        base_delay: Base delay between retries in seconds (default: 0.5)
        max_delay: Maximum delay between retries (default: 10.0)
        jitter: Jitter factor (0.0-1.0) to add randomness (default: 0.2)
        retryable_exceptions: Tuple of exception types to retry on
            (default: (PersistenceError,))
        **kwargs: Keyword arguments for func

    Returns:
        Result from successful function call

    Raises:
        RetryExhaustedError: If max attempts exceeded
        Exception: If non-retryable exception occurs
    """
    if retryable_exceptions is None:
        retryable_exceptions = (PersistenceError,)

    if max_attempts is not None and max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    name = getattr(func, "__name__", repr(func))
    attempt = 0
    while True:
        try:
            result = await func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"{name} succeeded on attempt {attempt + 1}")
            return result

        except retryable_exceptions as e:
            if max_attempts is not None and attempt >= max_attempts - 1:
                logger.warning(f"Max retries ({max_attempts}) exhausted for {name}")
                raise RetryExhaustedError(
                    f"Failed after {max_attempts} attempts: {e}"
                ) from e

            delay = get_backoff_delay(attempt, base_delay, max_delay, jitter=jitter)
            logger.warning(
                f"{name} failed (attempt {attempt + 1}): {e}, retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1
