import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from spice.common.context import CancelContext, Cancelled
from spice.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryOptions:
    max_attempts: int = 3
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 5.0


class RetryableError(Exception):
    """
    Error that carries an explicit retry decision.

    Errors that are not RetryableError are retried by default.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class MaxRetriesExceeded(Exception):
    """Raised when every attempt failed. The last error is chained."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"max retries exceeded after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_retryable(error: Exception) -> bool:
    if isinstance(error, RetryableError):
        return error.retryable
    return True


def with_retry(
    ctx: Optional[CancelContext],
    operation: Callable[[], T],
    options: Optional[RetryOptions] = None,
) -> T:
    """
    Run operation with bounded exponential backoff.

    Args:
        ctx: Cancellation context; a cancel during a backoff wait aborts at once
        operation: Zero-argument callable to attempt
        options: Attempts and delays, defaults to RetryOptions()

    Raises:
        Cancelled: If ctx is cancelled between attempts
        MaxRetriesExceeded: If every attempt failed
        Exception: A non-retryable error from operation, unchanged
    """
    options = options or RetryOptions()
    delay = options.initial_delay
    last_error: Optional[Exception] = None

    for attempt in range(1, options.max_attempts + 1):
        if ctx is not None:
            ctx.raise_if_cancelled()

        try:
            return operation()
        except Cancelled:
            raise
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e

        if attempt == options.max_attempts:
            break

        logger.warning(
            "Attempt %d/%d failed: %s (retrying in %.2fs)",
            attempt,
            options.max_attempts,
            last_error,
            delay,
        )
        if ctx is not None:
            if ctx.wait(delay):
                raise Cancelled("operation cancelled during retry backoff")
        else:
            time.sleep(delay)

        delay = min(delay * options.multiplier, options.max_delay)

    raise MaxRetriesExceeded(options.max_attempts, last_error) from last_error
