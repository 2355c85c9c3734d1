"""Bounded retry with exponential backoff for collaborator calls."""

from collections.abc import Callable
import logging
from typing import TypeVar

from controlplane.errors import RetryBudgetExhausted, TransientError
from controlplane.shared.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 1.0


def call_with_retry(
    operation: str,
    fn: Callable[[], T],
    retries: int = DEFAULT_RETRIES,
    backoff: float = DEFAULT_BACKOFF_SECONDS,
    clock: Clock | None = None,
) -> T:
    """Call ``fn``; retry TransientError up to ``retries`` attempts with doubling backoff.

    Any other exception propagates on the first occurrence. When every attempt
    fails transiently, raises RetryBudgetExhausted carrying the last error.
    """
    if retries < 1:
        raise ValueError(f"retries must be at least 1, got {retries}")
    clock = clock or SystemClock()
    attempt = 0
    while True:
        try:
            return fn()
        except TransientError as e:
            attempt += 1
            if attempt >= retries:
                raise RetryBudgetExhausted(operation, retries, e) from e
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                operation,
                attempt,
                retries,
                e,
                delay,
            )
            clock.sleep(delay)
