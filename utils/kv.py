"""
Redis-backed tiered cache.

Values are JSON-serialised and stored with ``SETEX`` so Redis enforces the
TTL.  Each data category has its own freshness policy in ``CACHE_TTL``.
The store is best-effort: when Redis is unreachable every read is a miss
and every write reports failure, with a warning in the log, so callers
simply proceed as if the cache were cold.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

import redis

from .errors import CacheUnavailable

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CACHE_PREFIX = os.getenv("CACHE_PREFIX", "")
REDIS_CONNECT_TIMEOUT_S = float(os.getenv("REDIS_CONNECT_TIMEOUT_S", "10"))

CACHE_TTL = {
    "usgs_current": 15 * 60,              # current station readings
    "historical_data": 60 * 60,           # historical series
    "waterways": 24 * 60 * 60,            # geometry, changes rarely
    "site_metadata": 24 * 60 * 60,        # station metadata
    "flood_stages": 7 * 24 * 60 * 60,     # stage thresholds
}

# key patterns per category, used by invalidate()
CATEGORY_PATTERNS = {
    "waterways": "waterways:*",
    "usgs": "usgs:*",
    "stations": "usgs:*",
    "history": "gauge_historical:*",
    "metadata": "gauge_metadata:*",
    "flood_stages": "flood_stages:*",
}


def stations_key(bbox_key: str, hours: int) -> str:
    return f"usgs:{bbox_key}:{hours}h"


def waterways_key(bbox_key: str) -> str:
    return f"waterways:{bbox_key}"


def history_key(site_id: str, hours: int, parameter_code: str) -> str:
    return f"gauge_historical:{site_id}:{parameter_code}:{hours}h"


def metadata_key(site_id: str) -> str:
    return f"gauge_metadata:{site_id}"


def flood_stages_key(site_id: str) -> str:
    return f"flood_stages:{site_id}"


class TieredCache:
    """
    get/set/multi-get/multi-set against Redis with per-call TTLs.

    Pass ``client`` to share an existing connection (or a test double);
    otherwise one is created lazily from ``url``.  An empty ``url``
    disables caching entirely.
    """

    def __init__(self, url: Optional[str] = REDIS_URL, client: Any = None, prefix: str = CACHE_PREFIX):
        self.url = url
        self.prefix = prefix
        self._client = client

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _redis(self):
        if self._client is None:
            if not self.url:
                raise CacheUnavailable("no REDIS_URL configured")
            self._client = redis.Redis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=REDIS_CONNECT_TIMEOUT_S,
            )
        return self._client

    def get(self, key: str) -> Optional[Any]:
        try:
            v = self._redis().get(self._k(key))
        except (CacheUnavailable, redis.exceptions.RedisError) as exc:
            logger.warning("cache get %s failed: %s", key, exc)
            return None
        if not v:
            return None
        try:
            return json.loads(v)
        except ValueError as exc:
            logger.warning("cache value for %s is not valid JSON: %s", key, exc)
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            self._redis().setex(self._k(key), int(ttl_seconds), json.dumps(value))
            return True
        except (CacheUnavailable, redis.exceptions.RedisError, TypeError, ValueError) as exc:
            logger.warning("cache set %s failed: %s", key, exc)
            return False

    def get_many(self, keys: List[str]) -> Dict[str, Any]:
        """One round trip; missing or unparsable keys are left out."""
        if not keys:
            return {}
        try:
            values = self._redis().mget([self._k(k) for k in keys])
        except (CacheUnavailable, redis.exceptions.RedisError) as exc:
            logger.warning("cache mget of %d keys failed: %s", len(keys), exc)
            return {}
        out: Dict[str, Any] = {}
        for key, v in zip(keys, values):
            if not v:
                continue
            try:
                out[key] = json.loads(v)
            except ValueError as exc:
                logger.warning("cache value for %s is not valid JSON: %s", key, exc)
        return out

    def set_many(self, items: Dict[str, Any], ttl_seconds: int) -> bool:
        if not items:
            return True
        try:
            pipe = self._redis().pipeline()
            for key, value in items.items():
                pipe.setex(self._k(key), int(ttl_seconds), json.dumps(value))
            pipe.execute()
            return True
        except (CacheUnavailable, redis.exceptions.RedisError, TypeError, ValueError) as exc:
            logger.warning("cache mset of %d keys failed: %s", len(items), exc)
            return False

    def delete(self, keys: Iterable[str]) -> int:
        keys = [self._k(k) for k in keys]
        if not keys:
            return 0
        try:
            return int(self._redis().delete(*keys))
        except (CacheUnavailable, redis.exceptions.RedisError) as exc:
            logger.warning("cache delete failed: %s", exc)
            return 0

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern; returns the count."""
        try:
            client = self._redis()
            keys = list(client.scan_iter(match=self._k(pattern), count=500))
            if not keys:
                return 0
            return int(client.delete(*keys))
        except (CacheUnavailable, redis.exceptions.RedisError) as exc:
            logger.warning("cache delete of %s failed: %s", pattern, exc)
            return 0

    def clear_all(self) -> bool:
        try:
            if self.prefix:
                self.delete_pattern("*")
            else:
                self._redis().flushdb()
            return True
        except (CacheUnavailable, redis.exceptions.RedisError) as exc:
            logger.warning("cache flush failed: %s", exc)
            return False

    def ttl(self, key: str) -> Optional[int]:
        try:
            return int(self._redis().ttl(self._k(key)))
        except (CacheUnavailable, redis.exceptions.RedisError) as exc:
            logger.warning("cache ttl %s failed: %s", key, exc)
            return None

    def ping(self) -> bool:
        try:
            return bool(self._redis().ping())
        except (CacheUnavailable, redis.exceptions.RedisError) as exc:
            logger.debug("cache ping failed: %s", exc)
            return False

    def key_count(self) -> Optional[int]:
        try:
            return int(self._redis().dbsize())
        except (CacheUnavailable, redis.exceptions.RedisError) as exc:
            logger.debug("cache dbsize failed: %s", exc)
            return None
