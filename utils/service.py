"""
Water data service: the cached acquisition layer behind the HTTP API.

One :class:`WaterDataService` is built at process start and shared by all
request handlers.  It owns the cache, the upstream clients, the two grid
coordinators (telemetry and geometry), the incremental history sync and the
threshold store, and keeps per-category hit/miss counters and the region
preload status on the instance rather than in module globals.

Every read goes through the same steps: canonicalise the box, try the
cache, on a miss do the upstream work, cache what came back, and derive
overlay attributes (risk level, nearest station) before returning.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .bbox import TEXAS_BBOX, BoundingBox, canonicalize, shrink_to_limits, square_cell_limit, within_provider_limits
from .flood_risk import UNKNOWN, classify_station, max_level
from .flood_stages import StageThresholdStore
from .grid_fetch import FetchStatus, GridFetchCoordinator
from .history import IncrementalHistorySync
from .kv import (
    CACHE_TTL,
    CATEGORY_PATTERNS,
    TieredCache,
    metadata_key,
    stations_key,
    waterways_key,
)
from .models import GAGE_HEIGHT, GeometryFeature, ReadingPoint, Station
from .overpass_throttle import OverpassThrottle
from .spatial import MAX_GAUGE_DISTANCE_MILES, nearest_station
from .usgs import USGS_PARAMETER_CODES, UsgsClient, stations_from_timeseries
from .waterways import OVERPASS_GRID_SIZE, OVERPASS_MAX_CELL_DEG, fetch_waterways

logger = logging.getLogger(__name__)


@dataclass
class StationsResult:
    stations: List[Station]
    served_from_cache: bool
    status: str = FetchStatus.OK
    cells: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sites": [s.to_dict() for s in self.stations],
            "cached": self.served_from_cache,
            "status": self.status,
            "cells": self.cells,
        }


@dataclass
class WaterwaysResult:
    features: List[GeometryFeature]
    served_from_cache: bool
    status: str = FetchStatus.OK
    cells: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "waterways": [f.to_dict() for f in self.features],
            "cached": self.served_from_cache,
            "status": self.status,
            "cells": self.cells,
        }


class CacheStats:
    """Thread-safe hit/miss tallies per category."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, int]] = {}

    def record(self, category: str, hit: bool) -> None:
        with self._lock:
            c = self._counts.setdefault(category, {"hit": 0, "miss": 0})
            c["hit" if hit else "miss"] += 1

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {k: dict(v) for k, v in self._counts.items()}


class WaterDataService:
    def __init__(
        self,
        cache: Optional[TieredCache] = None,
        usgs: Optional[UsgsClient] = None,
        overpass: Optional[OverpassThrottle] = None,
        *,
        station_grid: Optional[GridFetchCoordinator[Station]] = None,
        waterway_grid: Optional[GridFetchCoordinator[GeometryFeature]] = None,
        history: Optional[IncrementalHistorySync] = None,
        thresholds: Optional[StageThresholdStore] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.cache = cache or TieredCache()
        self.usgs = usgs or UsgsClient()
        self.overpass = overpass or OverpassThrottle()
        self.clock = clock

        self.station_grid = station_grid or GridFetchCoordinator(
            fetch_cell=self._fetch_station_cell,
            identity=lambda s: s.id,
            is_cell_valid=within_provider_limits,
            name="usgs",
        )
        # OverpassThrottle retries internally; one attempt per cell
        self.waterway_grid = waterway_grid or GridFetchCoordinator(
            fetch_cell=lambda b: fetch_waterways(b, self.overpass),
            identity=lambda f: f.id,
            is_cell_valid=square_cell_limit(OVERPASS_MAX_CELL_DEG),
            rows=OVERPASS_GRID_SIZE,
            cols=OVERPASS_GRID_SIZE,
            max_attempts=1,
            name="overpass",
        )
        self.history = history or IncrementalHistorySync(self.cache, self.usgs, clock=clock)
        self.thresholds = thresholds or StageThresholdStore(self.cache)
        self.counters = CacheStats()
        self.preload_status: Dict[str, Optional[Any]] = {
            "usgs": None,
            "waterways": None,
            "usgs_error": None,
            "waterways_error": None,
        }

    # -- stations ---------------------------------------------------------

    def _fetch_station_cell(self, bbox: BoundingBox, hours: int = 8) -> List[Station]:
        series = self.usgs.fetch_bbox(bbox, hours=hours, parameter_codes=USGS_PARAMETER_CODES)
        return stations_from_timeseries(series)

    def _enrich(self, stations: List[Station]) -> List[Station]:
        """Attach stage thresholds and a risk level to each station."""
        found = self.thresholds.get_many([s.id for s in stations]) if stations else {}
        for s in stations:
            s.thresholds = found.get(s.id)
            s.risk_level = classify_station(s)
        return stations

    def get_stations(self, bbox: BoundingBox, hours: int = 8, use_grid: bool = True) -> StationsResult:
        """
        Stations with readings inside ``bbox`` for the last ``hours``.

        Oversized boxes are split into grid cells; with ``use_grid=False``
        they are shrunk around their centre to a provider-legal size
        instead.  Upstream failure yields an empty list and an ``error``
        status, never an exception.
        """
        key = stations_key(canonicalize(bbox), hours)
        cached = self.cache.get(key)
        if cached is not None:
            try:
                stations = [Station.from_dict(d) for d in cached.get("sites", [])]
                self.counters.record("usgs", True)
                logger.info("returning cached stations for %s", key)
                return StationsResult(stations, True, cached.get("status", FetchStatus.OK), cached.get("cells", {}))
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("discarding malformed cached stations %s: %s", key, exc)
        self.counters.record("usgs", False)

        if not use_grid and not within_provider_limits(bbox):
            shrunk = shrink_to_limits(bbox)
            logger.warning("bbox %s exceeds provider limits; shrunk to %s", canonicalize(bbox), canonicalize(shrunk))
            bbox = shrunk

        fetched = self.station_grid.fetch(bbox, hours=hours)

        result = StationsResult(self._enrich(fetched.entities), False, fetched.status, fetched.summary())
        # partial results are returned but never cached
        if fetched.status in (FetchStatus.OK, FetchStatus.NO_DATA):
            self.cache.set(key, result.to_dict(), CACHE_TTL["usgs_current"])
            self.cache_metadata(result.stations)
        return result

    # -- waterways --------------------------------------------------------

    def get_waterways(self, bbox: BoundingBox) -> WaterwaysResult:
        key = waterways_key(canonicalize(bbox))
        cached = self.cache.get(key)
        if cached is not None:
            try:
                features = [GeometryFeature.from_dict(d) for d in cached]
                self.counters.record("waterways", True)
                logger.info("returning %d cached waterways for %s", len(features), key)
                return WaterwaysResult(features, True)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("discarding malformed cached waterways %s: %s", key, exc)
        self.counters.record("waterways", False)

        fetched = self.waterway_grid.fetch(bbox)
        if fetched.status in (FetchStatus.OK, FetchStatus.NO_DATA):
            self.cache.set(key, [f.to_dict() for f in fetched.entities], CACHE_TTL["waterways"])
        return WaterwaysResult(fetched.entities, False, fetched.status, fetched.summary())

    # -- history ----------------------------------------------------------

    def get_history(self, station_id: str, hours: int = 24, parameter_code: str = GAGE_HEIGHT) -> List[ReadingPoint]:
        return self.history.get_history(station_id, hours, parameter_code)

    def get_bulk_history(
        self, station_ids: List[str], hours: int = 24, parameter_code: str = GAGE_HEIGHT
    ) -> Dict[str, List[ReadingPoint]]:
        return self.history.get_bulk_history(station_ids, hours, parameter_code)

    # -- overlays ---------------------------------------------------------

    def get_flood_overlay(
        self,
        bbox: BoundingBox,
        hours: int = 8,
        max_distance_miles: float = MAX_GAUGE_DISTANCE_MILES,
    ) -> Dict[str, Any]:
        """
        Waterways in ``bbox`` annotated with their nearest station's risk.

        Features with no station inside the cutoff are ``unknown``.
        """
        stations = self.get_stations(bbox, hours)
        waterways = self.get_waterways(bbox)

        segments = []
        for feature in waterways.features:
            station, distance = nearest_station(feature, stations.stations, max_distance_miles)
            segment = feature.to_dict()
            segment["flood_risk"] = station.risk_level if station else UNKNOWN
            segment["nearest_station"] = station.id if station else None
            segment["distance_miles"] = round(distance, 2) if distance is not None else None
            segments.append(segment)

        return {
            "segments": segments,
            "max_risk": max_level([s["flood_risk"] for s in segments]),
            "stations_status": stations.status,
            "waterways_status": waterways.status,
            "cached": stations.served_from_cache and waterways.served_from_cache,
        }

    # -- metadata and thresholds ------------------------------------------

    def cache_metadata(self, stations: List[Station]) -> bool:
        now = self.clock().isoformat()
        items = {
            metadata_key(s.id): {
                "id": s.id,
                "name": s.name,
                "latitude": s.latitude,
                "longitude": s.longitude,
                "site_type": s.site_type,
                "parameter_codes": sorted(s.readings),
                "last_updated": now,
            }
            for s in stations
        }
        return self.cache.set_many(items, CACHE_TTL["site_metadata"])

    def get_cached_metadata(self, station_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        found = self.cache.get_many([metadata_key(sid) for sid in station_ids])
        return {m["id"]: m for m in found.values() if isinstance(m, dict) and "id" in m}

    def get_stage_thresholds(self, station_id: str) -> Optional[Dict[str, Any]]:
        t = self.thresholds.get(station_id)
        return t.to_dict() if t else None

    # -- administration ---------------------------------------------------

    def invalidate(self, target: str) -> int:
        """
        Clear cache entries by category name or glob pattern.

        ``all`` flushes everything and returns -1 since the count is
        unknown; category names map onto ``CATEGORY_PATTERNS``; anything
        else is used as a pattern verbatim.
        """
        if target == "all":
            self.cache.clear_all()
            logger.info("cleared entire cache")
            return -1
        pattern = CATEGORY_PATTERNS.get(target, target)
        n = self.cache.delete_pattern(pattern)
        logger.info("cleared %d cache entries matching %s", n, pattern)
        return n

    def preload_region(self, bbox: BoundingBox = TEXAS_BBOX, hours: int = 8) -> Dict[str, Any]:
        """Warm stations and waterways for a large region, recording status."""
        for kind, fn in (("usgs", lambda: self.get_stations(bbox, hours)), ("waterways", lambda: self.get_waterways(bbox))):
            result = fn()
            ok = result.status != FetchStatus.ERROR
            self.preload_status[kind] = ok
            self.preload_status[f"{kind}_error"] = None if ok else f"status {result.status}: {result.cells}"
            logger.info("[PRELOAD] %s finished with status %s", kind, result.status)
        return dict(self.preload_status)

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": self.clock().isoformat(),
            "cache": {"connected": self.cache.ping(), "key_count": self.cache.key_count()},
        }

    def stats(self) -> Dict[str, Any]:
        return {
            "timestamp": self.clock().isoformat(),
            "cache": {"connected": self.cache.ping(), "key_count": self.cache.key_count()},
            "cache_stats": self.counters.snapshot(),
            "preload_status": dict(self.preload_status),
            "ttl": dict(CACHE_TTL),
        }
