"""
Retry helpers for directory and registry listing calls.
"""

import time
import logging
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Type

logger = logging.getLogger(__name__)

# Substrings of error messages from transient network failures
TRANSIENT_MESSAGES = (
    'timeout',
    'timed out',
    'connection reset',
    'connection refused',
    'connection error',
    'network is unreachable',
    'temporary failure',
    'service unavailable',
    'too many requests',
)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def backoff_delays(delay: float, backoff: float) -> Iterator[float]:
    """Yield ``delay``, ``delay * backoff``, ``delay * backoff**2`` and so on."""
    while True:
        yield delay
        delay *= backoff


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function, retrying failures listed in ``exceptions``.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts (including the first one)
        delay: Delay before the first retry in seconds
        backoff: Delay multiplier applied after every retry
        exceptions: Exception types to catch
        should_retry: Predicate deciding whether a caught exception is transient.
            Non-transient exceptions are re-raised immediately.
        on_retry: Called with the failed attempt number and its exception

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all attempts fail
    """
    kwargs = kwargs or {}
    max_attempts = max(1, max_attempts)
    delays = backoff_delays(delay, backoff)

    attempt = 0
    while True:
        attempt += 1
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt >= max_attempts:
                raise MaxRetriesExceeded(attempt, e)

            wait = next(delays)
            logger.debug(f"Attempt {attempt} failed with {type(e).__name__}: {e}; retrying in {wait:.1f}s")
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")
            time.sleep(wait)
            continue

        if attempt > 1:
            logger.info(f"Operation succeeded on attempt {attempt}")
        return result


def retry_with_config(func: Callable, config: Optional[Dict[str, Any]], operation_name: str,
                      *args, **kwargs) -> Any:
    """
    Call ``func`` with the ``error_handling`` settings.

    ``max_retries`` counts retries after the first attempt. Only errors
    recognised by :func:`is_retryable_error` are retried.
    """
    config = config or {}
    return retry_call(
        func, args, kwargs,
        max_attempts=config.get('max_retries', 3) + 1,
        delay=config.get('retry_wait_seconds', 5),
        backoff=config.get('retry_backoff', 1.0),
        should_retry=is_retryable_error,
        on_retry=create_retry_callback(operation_name),
    )


def is_retryable_error(exception: Exception) -> bool:
    """
    Tell transient failures from permanent ones.

    Connection errors and timeouts are transient. Errors carrying an HTTP
    ``status_code`` are transient for 429 and 5xx only. Anything else is
    judged by its message.
    """
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        return status_code == 429 or 500 <= status_code < 600

    message = str(exception).lower()
    return any(pattern in message for pattern in TRANSIENT_MESSAGES)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Build an ``on_retry`` callback that logs a warning naming the operation."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
