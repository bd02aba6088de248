"""Retry with exponential backoff for transient item failures."""

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from ..exceptions import ProviderError, RateLimitError
from ..utils import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY

logger = logging.getLogger(__name__)

T = TypeVar("T")


def calculate_retry_delay(attempt: int, base_delay: float) -> float:
    """Calculate delay before next retry using exponential backoff.

    Args:
        attempt: Number of the failed attempt (1-based)
        base_delay: Delay after the first failure in seconds

    Returns:
        Delay in seconds
    """
    delay = base_delay * (2 ** (attempt - 1))
    # Add jitter: +/- 25% of the delay
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(delay + jitter, 0.0)


def should_retry(error: BaseException, attempt: int, max_attempts: int) -> bool:
    """Only errors marked retryable are retried, up to max_attempts."""
    if attempt >= max_attempts:
        return False
    return isinstance(error, ProviderError) and error.retryable


def call_with_retry(
    fn: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_DELAY,
    description: str = "",
    sleep: Callable[[float], None] = time.sleep,
    before_retry: Optional[Callable[[], None]] = None,
) -> T:
    """Run ``fn`` and retry it on transient provider errors.

    Args:
        fn: Operation to run; it must be safe to call again from scratch
        max_attempts: Total attempts including the first one
        base_delay: Backoff base in seconds (doubled on every attempt)
        description: Item description for log messages
        sleep: Sleep function (replaced in tests)
        before_retry: Called before each new attempt (e.g. a cancellation
            check)

    Returns:
        The result of the first successful attempt

    Raises:
        The last error once the attempts are exhausted, or immediately for
        non-retryable errors
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except ProviderError as e:
            if not should_retry(e, attempt, max_attempts):
                raise
            if isinstance(e, RateLimitError) and e.retry_after is not None:
                delay = e.retry_after
            else:
                delay = calculate_retry_delay(attempt, base_delay)
            logger.debug(
                f"Attempt {attempt}/{max_attempts} for {description} failed: {e}. "
                f"Retrying in {delay:.2f}s"
            )
            if delay > 0:
                sleep(delay)
            if before_retry is not None:
                before_retry()
