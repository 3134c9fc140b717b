"""
Retry with exponential backoff for transient API failures.
"""

import random
import re
import time
from typing import Callable, Optional, TypeVar, Union

from oslo_log import log as logging

from truenas_block.exceptions import (
    TrueNASAPIConnectionError,
    TrueNASAPITimeout,
    TrueNASAuthError,
    TrueNASResourceAlreadyExists,
    TrueNASResourceNotFound,
    TrueNASTransientError,
    ValidationError,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY = 1.0
MAX_JITTER = 0.2

_RETRYABLE_PATTERNS = [
    r"timeout",
    r"timed out",
    r"connection refused",
    r"connection reset",
    r"broken pipe",
    r"network (is )?unreachable",
    r"host (is )?unreachable",
    r"no route to host",
    r"temporary failure",
    r"service unavailable",
    r"\b50[234]\b",
    r"\b429\b",
    r"too many requests",
    r"rate limit",
    r"ssl.*error",
    r"connection.*failed",
]

_PERMANENT_PATTERNS = [
    r"\b40[134]\b",
    r"enoent",
    r"instancenotfound",
    r"does not exist",
    r"not found",
    r"already exists",
    r"invalid.*key",
    r"authentication.*failed",
    r"validation.*error",
    r"invalid.*parameter",
    r"einval",
    r"invalid params",
]

_RETRYABLE_RE = re.compile("|".join(_RETRYABLE_PATTERNS), re.IGNORECASE)
_PERMANENT_RE = re.compile("|".join(_PERMANENT_PATTERNS), re.IGNORECASE)


def is_retryable(error: Union[BaseException, str]) -> bool:
    """
    Classify a failure as transient.

    Typed errors are classified by type; anything else by message. Permanent
    patterns win over transient ones and unknown failures are not retried.
    """
    if isinstance(error, (TrueNASAPITimeout, TrueNASAPIConnectionError)):
        return True
    if isinstance(
        error,
        (TrueNASAuthError, TrueNASResourceNotFound, TrueNASResourceAlreadyExists, ValidationError),
    ):
        return False
    if isinstance(error, TrueNASTransientError):
        return True

    message = getattr(error, "message", None) or str(error)
    if _PERMANENT_RE.search(message):
        return False
    return bool(_RETRYABLE_RE.search(message))


def backoff_delay(attempt: int, initial_delay: float = DEFAULT_INITIAL_DELAY) -> float:
    """Delay before retry ``attempt`` (1-based): ``initial * 2**(attempt-1)`` plus 0-20% jitter."""
    interval = float(initial_delay * (2 ** (attempt - 1)))
    return interval + interval * random.uniform(0, MAX_JITTER)


def retry_with_backoff(
    func: Callable[[], T],
    operation: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[BaseException], None]] = None,
) -> T:
    """
    Call ``func`` and retry transient failures.

    Args:
        func: Zero-argument callable performing the operation
        operation: Operation name used in log and error messages
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry in seconds
        sleep: Sleep function
        on_retry: Hook called with the failure before each retry

    Returns:
        Result of ``func``

    Raises:
        TrueNASTransientError: Transient failures persisted past ``max_retries``
        Exception: Non-transient failures are re-raised unchanged
    """
    attempt = 0
    while True:
        try:
            return func()
        except Exception as e:
            if not is_retryable(e):
                raise
            attempt += 1
            if attempt > max_retries:
                LOG.error("%s failed after %d retries: %s", operation, max_retries, e)
                raise TrueNASTransientError(
                    f"{operation} failed after {max_retries} retries: {e}",
                    attempts=attempt,
                    status_code=getattr(e, "status_code", None),
                    method=operation,
                ) from e

            delay = backoff_delay(attempt, initial_delay)
            LOG.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                operation,
                attempt,
                max_retries + 1,
                e,
                delay,
            )
            if on_retry is not None:
                on_retry(e)
            sleep(delay)
