import concurrent.futures as cf
import logging
import os
import threading
import time
from typing import Callable, List, Optional

import overpy

from .errors import UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)

# Mirrors (first env var wins; otherwise hedge across these)
DEFAULT_MIRRORS = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://z.overpass-api.de/api/interpreter",
]

OVERPASS_MIN_INTERVAL_S = float(os.getenv("OVERPASS_MIN_INTERVAL_S", "1.2"))
OVERPASS_MAX_RETRIES = int(os.getenv("OVERPASS_MAX_RETRIES", "3"))
OVERPASS_BACKOFF_START_S = float(os.getenv("OVERPASS_BACKOFF_START_S", "1.5"))
OVERPASS_MAX_BACKOFF_S = float(os.getenv("OVERPASS_MAX_BACKOFF_S", "12.0"))
OVERPASS_HEDGE_MIRRORS = int(os.getenv("OVERPASS_HEDGE_MIRRORS", "2"))  # race the first 2 mirrors
OVERPASS_TIMEOUT_S = float(os.getenv("OVERPASS_TIMEOUT_S", "60"))


class OverpassThrottle:
    """
    Paced, hedged access to the Overpass API.

    Attempts are spaced at least ``min_interval_s`` apart across all
    threads.  Each attempt sends the query to up to ``hedge`` mirrors at
    once and returns the first successful result without waiting for the
    others.  An attempt with no answer within ``timeout_s`` counts as
    failed.  Failed attempts back off (x1.8, capped) up to
    ``max_retries`` attempts.  A 400 from Overpass is a malformed query
    and fails immediately.
    """

    def __init__(
        self,
        mirrors: Optional[List[str]] = None,
        *,
        min_interval_s: float = OVERPASS_MIN_INTERVAL_S,
        max_retries: int = OVERPASS_MAX_RETRIES,
        backoff_start_s: float = OVERPASS_BACKOFF_START_S,
        hedge: int = OVERPASS_HEDGE_MIRRORS,
        timeout_s: float = OVERPASS_TIMEOUT_S,
        api_factory: Callable[..., overpy.Overpass] = overpy.Overpass,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if mirrors is None:
            mirrors = [os.getenv("OVERPASS_URL")] if os.getenv("OVERPASS_URL") else DEFAULT_MIRRORS
        mirrors = [m for m in mirrors if m][: max(1, hedge)]
        self.apis = [api_factory(url=url) for url in mirrors]
        self.min_interval_s = min_interval_s
        self.max_retries = max(1, max_retries)
        self.backoff_start_s = backoff_start_s
        self.timeout_s = timeout_s
        self.sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def _wait_for_slot(self) -> None:
        """Reserve the next send slot; only the bookkeeping holds the lock."""
        with self._lock:
            now = time.monotonic()
            start = max(now, self._next_slot)
            self._next_slot = start + self.min_interval_s
        if start > now:
            self.sleep(start - now)

    def query(self, q: str) -> overpy.Result:
        backoff = self.backoff_start_s
        errors: List[BaseException] = []

        # one worker per mirror per attempt; hung calls are abandoned, never joined
        ex = cf.ThreadPoolExecutor(max_workers=len(self.apis) * self.max_retries)
        try:
            for attempt in range(1, self.max_retries + 1):
                self._wait_for_slot()
                futs = [ex.submit(api.query, q) for api in self.apis]
                try:
                    for fut in cf.as_completed(futs, timeout=self.timeout_s):
                        try:
                            return fut.result()
                        except overpy.exception.OverpassBadRequest as exc:
                            raise UpstreamError(f"Overpass rejected query: {exc}", status_code=400) from exc
                        except (overpy.exception.OverPyException, OSError) as exc:
                            errors.append(exc)
                except cf.TimeoutError as exc:
                    logger.warning("Overpass attempt %d/%d timed out after %.1fs", attempt, self.max_retries, self.timeout_s)
                    errors.append(exc)

                if attempt < self.max_retries:
                    logger.warning(
                        "Overpass attempt %d/%d failed (%s); backing off %.1fs",
                        attempt, self.max_retries, errors[-1] if errors else "no result", backoff,
                    )
                    self.sleep(backoff)
                    backoff = min(backoff * 1.8, OVERPASS_MAX_BACKOFF_S)
        finally:
            ex.shutdown(wait=False, cancel_futures=True)

        last = errors[-1] if errors else None
        timeouts = (cf.TimeoutError, TimeoutError, overpy.exception.OverpassGatewayTimeout)
        if last is not None and isinstance(last, timeouts):
            raise UpstreamTimeout(f"Overpass timed out after {self.max_retries} attempts")
        status = 429 if isinstance(last, overpy.exception.OverpassTooManyRequests) else None
        raise UpstreamError(f"Overpass mirrors failed after retries: {last}", status_code=status)
