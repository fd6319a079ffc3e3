"""Retry helpers for idempotent remote calls."""

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from zkpool.exceptions import TransientTransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 4
DEFAULT_BASE_SECONDS = 0.25


def backoff_delay(attempt: int, base: float = DEFAULT_BASE_SECONDS, cap: float = 30.0) -> float:
    """Exponential delay for the given zero-based attempt, bounded by cap."""
    return min(cap, base * (2 ** attempt))


def with_retry(
    fn: Callable[[], T],
    attempts: int = DEFAULT_ATTEMPTS,
    base: float = DEFAULT_BASE_SECONDS,
    retry_on: Tuple[Type[BaseException], ...] = (TransientTransportError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn, retrying transient failures with exponential backoff.

    Only use this for calls that mutate nothing remotely. The last error is
    re-raised once attempts run out.

    Args:
        fn: Zero-argument callable
        attempts: Total number of calls
        base: Delay before the second call, doubled each time
        retry_on: Exception types that trigger a retry
        sleep: Sleep function (tests pass a no-op)

    Returns:
        Whatever fn returns
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(attempts):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts - 1:
                raise
            delay = backoff_delay(attempt, base)
            logger.warning("Attempt %d/%d failed (%s), retrying in %.2fs", attempt + 1, attempts, e, delay)
            sleep(delay)
    raise AssertionError("unreachable")

