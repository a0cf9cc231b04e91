"""
retry.py — Retry-then-fallback as a reusable combinator.

The generator's policy is "try, retry once, then write a safe fallback".
Keeping it out of the batch loop means it can be tested without a
completion service, and other callers can use different attempt counts.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(
    fn: Callable[[], T],
    attempts: int = 2,
    fallback: Optional[Callable[[Exception], T]] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    delay: float = 0.0,
    backoff: float = 2.0,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn() up to `attempts` times.

    Exceptions outside `retry_on` propagate immediately. When every attempt
    fails, fallback(last_error) is returned if given, otherwise the last
    error is re-raised. Delays grow exponentially: delay, delay*backoff, ...

    Args:
        fn:       Zero-argument callable doing the work.
        attempts: Total tries, including the first.
        fallback: Builds a substitute result from the final error.
        retry_on: Exception types that count as a failed attempt.
        delay:    Seconds before the second attempt.
        label:    Used in log messages.
        sleep:    Injected for tests.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts:
                logger.warning("%s attempt %d/%d failed: %s", label, attempt, attempts, exc)
                if fallback is None:
                    raise
                logger.error("%s failed after %d attempts; using fallback", label, attempts)
                return fallback(exc)

            wait = delay * (backoff ** (attempt - 1))
            logger.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.1fs.",
                label, attempt, attempts, exc, wait,
            )
            if wait > 0:
                sleep(wait)
            attempt += 1
