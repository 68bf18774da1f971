"""
Incremental historical-series cache.

Serves "last H hours of readings for station S" from a cached rolling
window, re-fetching only what is missing:

* a fresh record (covers the requested start, written within the
  historical TTL, and ending less than 30 minutes ago) is returned as-is;
* a stale record ending less than 2 hours ago is topped up with a delta
  fetch starting 30 minutes before its end, merged with existing points
  winning on timestamp collisions;
* otherwise the full window is fetched.

The resulting record is written back whole; cached values are never
mutated in place.  The bulk variant looks up every station in one
multi-get and fetches the misses in small concurrent batches, each
station succeeding or failing on its own.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .errors import UpstreamError
from .kv import CACHE_TTL, TieredCache, history_key
from .models import GAGE_HEIGHT, HistoryRecord, ReadingPoint
from .retry import retry_call
from .usgs import UsgsClient, to_millis

logger = logging.getLogger(__name__)

FRESH_GAP = timedelta(minutes=30)
DELTA_MAX_GAP = timedelta(hours=2)
DELTA_OVERLAP = timedelta(minutes=30)
HISTORY_BULK_CONCURRENCY = int(os.getenv("HISTORY_BULK_CONCURRENCY", "5"))
HISTORY_MAX_ATTEMPTS = int(os.getenv("HISTORY_MAX_ATTEMPTS", "3"))
HISTORY_RETRY_DELAY_S = float(os.getenv("HISTORY_RETRY_DELAY_S", "1.0"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_series(existing: Iterable[ReadingPoint], new: Iterable[ReadingPoint]) -> List[ReadingPoint]:
    """
    Union of two series, deduplicated by exact timestamp, ascending.

    On a timestamp collision the existing point is kept and the new one
    dropped.
    """
    merged: Dict[int, ReadingPoint] = {}
    for p in existing:
        merged.setdefault(p.time, p)
    for p in new:
        merged.setdefault(p.time, p)
    return sorted(merged.values(), key=lambda p: p.time)


def is_record_fresh(record: HistoryRecord, start_ms: int, now_ms: int) -> bool:
    """True when ``record`` can answer the request without an upstream call."""
    covers = record.from_time <= start_ms
    young = (now_ms - record.last_updated) < CACHE_TTL["historical_data"] * 1000
    recent = (now_ms - record.to_time) < FRESH_GAP.total_seconds() * 1000
    return covers and young and recent


class IncrementalHistorySync:
    def __init__(
        self,
        cache: TieredCache,
        client: UsgsClient,
        *,
        clock: Callable[[], datetime] = _utcnow,
        concurrency: int = HISTORY_BULK_CONCURRENCY,
        max_attempts: int = HISTORY_MAX_ATTEMPTS,
        retry_delay_s: float = HISTORY_RETRY_DELAY_S,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.cache = cache
        self.client = client
        self.clock = clock
        self.concurrency = max(1, concurrency)
        self.max_attempts = max_attempts
        self.retry_delay_s = retry_delay_s
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    def _fetch(self, site_id: str, start: datetime, end: datetime, parameter_code: str) -> List[ReadingPoint]:
        return retry_call(
            lambda: self.client.fetch_site_series(site_id, start, end, parameter_code),
            max_attempts=self.max_attempts,
            delay_s=self.retry_delay_s,
            label=f"history fetch {site_id}/{parameter_code}",
            **self._retry_kwargs,
        )

    def _load(self, key: str) -> Optional[HistoryRecord]:
        raw = self.cache.get(key)
        return self._decode(key, raw)

    @staticmethod
    def _decode(key: str, raw) -> Optional[HistoryRecord]:
        if not raw:
            return None
        try:
            return HistoryRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("discarding malformed history record %s: %s", key, exc)
            return None

    def get_history(
        self,
        site_id: str,
        hours: int,
        parameter_code: str = GAGE_HEIGHT,
        *,
        cached: Optional[HistoryRecord] = None,
        lookup: bool = True,
    ) -> List[ReadingPoint]:
        """
        Readings for ``site_id`` over the last ``hours``, ascending.

        ``cached``/``lookup`` let the bulk path hand over a record it has
        already read so the cache is not queried twice.  Upstream failure
        falls back to whatever cached data covers the window, and to an
        empty list when there is none.
        """
        key = history_key(site_id, hours, parameter_code)
        now = self.clock()
        start = now - timedelta(hours=hours)
        now_ms, start_ms = to_millis(now), to_millis(start)

        if cached is None and lookup:
            cached = self._load(key)

        if cached and is_record_fresh(cached, start_ms, now_ms):
            logger.debug("history cache hit for %s (%sh)", site_id, hours)
            return [p for p in cached.data if p.time >= start_ms]

        fetch_start = start
        existing: List[ReadingPoint] = []
        if cached and cached.from_time <= start_ms and (now_ms - cached.to_time) < DELTA_MAX_GAP.total_seconds() * 1000:
            cached_end = datetime.fromtimestamp(cached.to_time / 1000, tz=timezone.utc)
            fetch_start = max(start, cached_end - DELTA_OVERLAP)
            existing = [p for p in cached.data if p.time >= start_ms]
            logger.info("incrementally updating %s from %s", site_id, fetch_start.isoformat())

        try:
            fresh = self._fetch(site_id, fetch_start, now, parameter_code)
        except UpstreamError as exc:
            logger.error("history fetch for %s failed: %s", site_id, exc)
            if cached:
                return [p for p in cached.data if p.time >= start_ms]
            return []

        data = [p for p in merge_series(existing, fresh) if p.time >= start_ms]

        record = HistoryRecord(
            site_id=site_id,
            parameter_code=parameter_code,
            data=data,
            from_time=start_ms,
            to_time=now_ms,
            last_updated=now_ms,
        )
        self.cache.set(key, record.to_dict(), CACHE_TTL["historical_data"])
        logger.debug("cached history for %s (%d points)", site_id, len(data))
        return data

    def get_bulk_history(
        self,
        site_ids: List[str],
        hours: int,
        parameter_code: str = GAGE_HEIGHT,
    ) -> Dict[str, List[ReadingPoint]]:
        """
        History for many stations.

        One multi-get partitions the stations into cache hits and misses;
        misses are fetched in batches of ``concurrency``.  A station whose
        fetch raises ends up with an empty list without affecting others.
        """
        site_ids = list(dict.fromkeys(site_ids))
        keys = {sid: history_key(sid, hours, parameter_code) for sid in site_ids}
        cached_map = self.cache.get_many(list(keys.values()))

        now = self.clock()
        now_ms, start_ms = to_millis(now), to_millis(now - timedelta(hours=hours))

        result: Dict[str, List[ReadingPoint]] = {}
        to_fetch: Dict[str, Optional[HistoryRecord]] = {}
        for sid in site_ids:
            record = self._decode(keys[sid], cached_map.get(keys[sid]))
            if record and is_record_fresh(record, start_ms, now_ms):
                result[sid] = [p for p in record.data if p.time >= start_ms]
            else:
                to_fetch[sid] = record

        if to_fetch:
            logger.info("fetching history for %d of %d sites", len(to_fetch), len(site_ids))
            pending = list(to_fetch.items())
            with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
                for i in range(0, len(pending), self.concurrency):
                    batch = pending[i:i + self.concurrency]
                    futures = {
                        sid: executor.submit(
                            self.get_history, sid, hours, parameter_code, cached=record, lookup=False
                        )
                        for sid, record in batch
                    }
                    for sid, fut in futures.items():
                        try:
                            result[sid] = fut.result()
                        except Exception as exc:
                            logger.error("history for %s failed: %s", sid, exc)
                            result[sid] = []

        return {sid: result.get(sid, []) for sid in site_ids}
