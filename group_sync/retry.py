"""
Retry handling for directory API calls.

Graph answers throttled requests with 429 and a Retry-After header, and
occasionally fails with a 5xx while a tenant is busy. Such calls are repeated
with a growing pause; every other failure is raised straight away.
"""

import time
import logging
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset((429, 500, 502, 503, 504))

TRANSIENT_MESSAGES = (
    'timed out',
    'timeout',
    'connection reset',
    'connection refused',
    'connection aborted',
    'remote end closed connection',
    'temporary failure',
    'service unavailable',
    'too many requests',
)


class RetryableError(Exception):
    """Mixin for errors that are always worth another attempt."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when every attempt of a call failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def is_retryable_error(exception: Exception) -> bool:
    """Tell whether an exception looks like a transient failure."""
    if isinstance(exception, (RetryableError, ConnectionError, TimeoutError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        return status_code in RETRYABLE_STATUS_CODES

    message = str(exception).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGES)


class RetryPolicy:
    """
    How often, and how patiently, a failing call is repeated.

    Args:
        max_attempts: Total number of attempts, the first one included
        delay: Pause after the first failure, in seconds
        backoff: Factor applied to the pause after each further failure
        retry_on: Exception types that are candidates for a retry
        should_retry: Predicate deciding on a caught exception; those it
            rejects are raised at once
    """

    def __init__(self, max_attempts: int = 3, delay: float = 1.0, backoff: float = 1.0,
                 retry_on: Tuple[Type[Exception], ...] = (Exception,),
                 should_retry: Optional[Callable[[Exception], bool]] = None):
        self.max_attempts = max(1, max_attempts)
        self.delay = delay
        self.backoff = backoff
        self.retry_on = retry_on
        self.should_retry = should_retry

    def wait_time(self, failed_attempts: int, error: Exception) -> float:
        """Pause before the next attempt; a server supplied Retry-After wins when longer."""
        pause = self.delay * (self.backoff ** (failed_attempts - 1))
        return max(pause, getattr(error, 'retry_after', None) or 0)

    def call(self, func: Callable, *args, description: Optional[str] = None, **kwargs) -> Any:
        """
        Call func until it succeeds or the attempts are used up.

        Raises:
            MaxRetriesExceeded: If every attempt failed with a retryable error
        """
        description = description or getattr(func, '__name__', 'operation')

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = func(*args, **kwargs)
            except self.retry_on as e:
                if self.should_retry is not None and not self.should_retry(e):
                    raise
                if attempt == self.max_attempts:
                    raise MaxRetriesExceeded(attempt, e) from e

                wait = self.wait_time(attempt, e)
                logger.warning(f"{description} failed on attempt {attempt}, "
                               f"retrying in {wait:.1f}s due to {type(e).__name__}: {e}")
                time.sleep(wait)
                continue

            if attempt > 1:
                logger.info(f"{description} succeeded on attempt {attempt}")
            return result
