import threading
import time
from functools import wraps
from typing import Any, Callable, Dict, Tuple, FrozenSet


def ttl_cache(seconds: int = 3600, clock: Callable[[], float] = time.monotonic):
    """
    In-process time-to-live memo for slow, rarely changing lookups.

    Each unique combination of positional and keyword arguments is cached
    alongside the time it was stored.  Entries older than ``seconds`` are
    recomputed on the next call.  Results that are ``None`` are not
    cached so a transient upstream failure is retried next time.

    The wrapper is safe to call from worker threads and exposes
    ``cache_clear()``.

    Parameters
    ----------
    seconds : int, optional
        Number of seconds to keep a cached result.  Defaults to 3600
        (one hour).
    clock : callable, optional
        Monotonic time source, injectable for tests.
    """
    def decorator(fn: Callable):
        cache: Dict[Tuple[Tuple[Any, ...], FrozenSet[Tuple[str, Any]]], Tuple[Any, float]] = {}
        lock = threading.Lock()

        @wraps(fn)
        def wrapper(*args, **kwargs):
            key = (args, frozenset(kwargs.items()))
            now = clock()

            with lock:
                hit = cache.get(key)
            if hit is not None and now - hit[1] < seconds:
                return hit[0]

            result = fn(*args, **kwargs)
            if result is not None:
                with lock:
                    cache[key] = (result, now)
            return result

        def cache_clear():
            with lock:
                cache.clear()

        wrapper.cache_clear = cache_clear  # type: ignore[attr-defined]
        return wrapper
    return decorator
