"""
Retry utilities for the collaborators around the reconciliation core.

The core itself never retries: a failed page aborts the run. Transport-level
retries live here and are used by the LDAP client when binding and by the
REST store for read-only lookups.
"""

import time
import logging
from typing import Callable, Any, Dict, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Raised by collaborators for failures that are worth another attempt."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function, retrying on the given exception types.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first
        delay: Initial delay between attempts in seconds
        backoff: Delay multiplier applied after each failed attempt
        exceptions: Exception types that trigger another attempt
        on_retry: Optional callback invoked with (attempt, exception)

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all attempts fail
    """
    if kwargs is None:
        kwargs = {}

    max_attempts = max(1, int(max_attempts))
    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            last_exception = e

            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}; "
                         f"retrying in {current_delay:.1f} seconds")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def retry_settings(error_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Translate the ``error_handling`` config section into retry_call keyword arguments.

    ``max_retries`` counts retries, so the attempt count is one more.
    """
    error_config = error_config or {}
    return {
        'max_attempts': int(error_config.get('max_retries', 3)) + 1,
        'delay': float(error_config.get('retry_wait_seconds', 1.0)),
        'backoff': float(error_config.get('retry_backoff', 1.0)),
    }


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception indicates a transient failure.

    Args:
        exception: Exception to check

    Returns:
        True for network errors, RetryableError and 429/5xx HTTP statuses
    """
    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if isinstance(status_code, int) and (status_code == 429 or 500 <= status_code < 600):
        return True

    error_msg = str(exception).lower()
    transient_patterns = (
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'network is unreachable',
        'temporary failure',
        'service unavailable',
    )
    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a retry callback that logs each failed attempt.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
