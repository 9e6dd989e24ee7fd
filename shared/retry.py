"""Bounded retry for filesystem operations prone to transient contention."""

import errno
import time
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")

# errno values worth a second attempt (locks, busy devices, flaky shares)
TRANSIENT_ERRNOS = {
    errno.EAGAIN,
    errno.EBUSY,
    errno.EINTR,
    errno.EIO,
    errno.ETIMEDOUT,
    errno.ESTALE,
    errno.ECONNRESET,
}


def is_transient_error(exc: BaseException) -> bool:
    """Return True if an exception is likely to succeed on a retry."""
    if isinstance(exc, (BlockingIOError, InterruptedError, TimeoutError)):
        return True
    if isinstance(exc, OSError):
        return exc.errno in TRANSIENT_ERRNOS
    return False


def retry_call(
    func: Callable[..., T],
    *args: Any,
    attempts: int = 2,
    delay: float = 0.5,
    retry_on: Optional[Callable[[BaseException], bool]] = None,
    **kwargs: Any,
) -> T:
    """
    Call a function, retrying a bounded number of times.

    Args:
        func: Callable to invoke
        attempts: Total number of attempts (1 means no retry)
        delay: Seconds to sleep before each retry, doubled every time
        retry_on: Predicate deciding whether an exception is retryable
            (defaults to is_transient_error)

    Returns:
        Whatever func returns

    Raises:
        The last exception raised by func once attempts are exhausted, or
        immediately if the exception is not retryable
    """
    should_retry = retry_on or is_transient_error
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if attempt >= attempts or not should_retry(e):
                raise
            if delay > 0:
                time.sleep(delay * (2 ** (attempt - 1)))

    raise AssertionError("unreachable")
