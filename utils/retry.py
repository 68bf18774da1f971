"""
Bounded retry loop for upstream calls.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .errors import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_call(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    delay_s: float = 1.0,
    backoff: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "upstream call",
) -> T:
    """
    Call ``fn`` up to ``max_attempts`` times.

    Only ``UpstreamError`` (and its ``UpstreamTimeout`` subclass) is
    retried; anything else propagates at once.  Errors flagged
    ``permanent`` (HTTP 4xx other than 429) fail fast without using the
    rest of the budget.  The delay starts at ``delay_s`` and is multiplied
    by ``backoff`` after each failed attempt.

    Raises the last ``UpstreamError`` once the budget is spent.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    delay = delay_s
    attempt = 1
    while True:
        try:
            return fn()
        except UpstreamError as exc:
            if exc.permanent:
                logger.warning("%s failed permanently: %s", label, exc)
                raise
            if attempt >= max_attempts:
                logger.warning("%s failed: %s (giving up after %d attempts)", label, exc, max_attempts)
                raise
            logger.warning(
                "%s failed: %s (retrying in %.1fs, attempt %d/%d)",
                label, exc, delay, attempt + 1, max_attempts,
            )
        sleep(delay)
        delay *= backoff
        attempt += 1
