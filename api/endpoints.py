"""
FastAPI endpoints exposing the water data service.

Every route is a thin adapter over :class:`utils.service.WaterDataService`,
which is built once at startup and read from ``request.app.state``.  Map
data routes (`/stations`, `/waterways`, `/flood-overlay`) never fail on
upstream trouble; they return whatever could be fetched along with a
status flag.  Malformed boxes are rejected with 400.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
import hashlib
import json
import os
import threading
import time

from utils.bbox import parse_bbox
from utils.errors import ValidationError
from utils.kv import CACHE_TTL
from utils.models import GAGE_HEIGHT
from utils.service import WaterDataService
from utils.spatial import MAX_GAUGE_DISTANCE_MILES

router = APIRouter()

RATE_LIMIT_PER_MIN = int(os.getenv("RATE_LIMIT_PER_MIN", "120"))
MAX_HOURS = 24 * 30
MAX_BULK_SITES = int(os.getenv("MAX_BULK_SITES", "100"))

ADMIN_ACTIONS = {
    "clear_all": "all",
    "clear_waterways": "waterways",
    "clear_usgs": "usgs",
    "clear_history": "history",
    "clear_metadata": "metadata",
    "clear_flood_stages": "flood_stages",
}


class RateLimiter:
    """
    Sliding one-minute window of request times per client IP.

    Lives on ``app.state`` so each app (and each test client) gets its own.
    """

    def __init__(self, per_minute: int = RATE_LIMIT_PER_MIN, clock=time.time):
        self.per_minute = per_minute
        self.clock = clock
        self._calls: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def check(self, client_ip: str) -> bool:
        now = self.clock()
        with self._lock:
            calls = [t for t in self._calls.get(client_ip, []) if now - t < 60]
            if len(calls) >= self.per_minute:
                self._calls[client_ip] = calls
                return False
            calls.append(now)
            self._calls[client_ip] = calls
            return True


def get_service(request: Request) -> WaterDataService:
    return request.app.state.service


def rate_limited(request: Request):
    """Raise 429 once a client exceeds the per-minute budget."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return
    # uses X-Forwarded-For if present
    client_ip = (request.headers.get("x-forwarded-for", "").split(",")[0].strip()
                 or (request.client.host if request.client else "unknown"))
    if not limiter.check(client_ip):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


def _bbox_or_400(north: float, south: float, east: float, west: float):
    try:
        return parse_bbox({"north": north, "south": south, "east": east, "west": west})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _cached_json(payload: Dict[str, Any], request: Request, hit: bool, max_age: int) -> Response:
    """
    JSON response with an ETag, honouring If-None-Match with a 304.

    The tag covers the data only, not the ``cached`` flag, so a tag taken
    from a miss still matches the hit that follows it.
    """
    body = json.dumps(payload, sort_keys=True)
    tagged = {k: v for k, v in payload.items() if k != "cached"}
    etag = hashlib.sha256(json.dumps(tagged, sort_keys=True).encode("utf-8")).hexdigest()
    headers = {
        "ETag": etag,
        "Cache-Control": f"public, max-age={max_age}",
        "X-Cache": "HIT" if hit else "MISS",
    }
    if request.headers.get("if-none-match") == etag:
        return Response(status_code=304, headers=headers)
    return Response(content=body, media_type="application/json", headers=headers)


@router.get("/stations", dependencies=[Depends(rate_limited)])
def stations(
    request: Request,
    north: float,
    south: float,
    east: float,
    west: float,
    hours: int = Query(8, ge=1, le=MAX_HOURS),
    grid: bool = True,
    service: WaterDataService = Depends(get_service),
):
    """
    Monitoring stations with recent readings inside a bounding box.

    Boxes larger than the telemetry provider accepts are split into a grid
    of cells; pass ``grid=false`` to shrink the box around its centre
    instead.  Each station carries its latest reading per parameter, its
    stage thresholds when known and a qualitative flood risk level.
    """
    bbox = _bbox_or_400(north, south, east, west)
    try:
        result = service.get_stations(bbox, hours, use_grid=grid)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _cached_json(result.to_dict(), request, result.served_from_cache, 300)


@router.get("/waterways", dependencies=[Depends(rate_limited)])
def waterways(
    request: Request,
    north: float,
    south: float,
    east: float,
    west: float,
    service: WaterDataService = Depends(get_service),
):
    """Rivers, streams, lakes and reservoirs inside a bounding box."""
    bbox = _bbox_or_400(north, south, east, west)
    result = service.get_waterways(bbox)
    return _cached_json(result.to_dict(), request, result.served_from_cache, 3600)


@router.get("/historical", dependencies=[Depends(rate_limited)])
def historical(
    site_id: str = Query(..., min_length=1),
    hours: int = Query(24, ge=1, le=MAX_HOURS),
    parameter_code: str = GAGE_HEIGHT,
    service: WaterDataService = Depends(get_service),
):
    points = service.get_history(site_id, hours, parameter_code)
    return {
        "site_id": site_id,
        "hours": hours,
        "parameter_code": parameter_code,
        "data": [p.to_dict() for p in points],
        "data_points": len(points),
    }


@router.get("/historical/bulk", dependencies=[Depends(rate_limited)])
def historical_bulk(
    site_ids: str = Query(..., description="Comma-separated USGS site ids"),
    hours: int = Query(24, ge=1, le=MAX_HOURS),
    parameter_code: str = GAGE_HEIGHT,
    service: WaterDataService = Depends(get_service),
):
    """History for many sites at once; failed sites come back empty."""
    ids = [s.strip() for s in site_ids.split(",") if s.strip()]
    if not ids:
        raise HTTPException(status_code=400, detail="site_ids must name at least one site")
    if len(ids) > MAX_BULK_SITES:
        raise HTTPException(status_code=400, detail=f"at most {MAX_BULK_SITES} sites per request")
    series = service.get_bulk_history(ids, hours, parameter_code)
    return {
        "hours": hours,
        "parameter_code": parameter_code,
        "sites": {sid: [p.to_dict() for p in pts] for sid, pts in series.items()},
    }


@router.get("/flood-overlay", dependencies=[Depends(rate_limited)])
def flood_overlay(
    north: float,
    south: float,
    east: float,
    west: float,
    hours: int = Query(8, ge=1, le=MAX_HOURS),
    max_distance_miles: float = Query(MAX_GAUGE_DISTANCE_MILES, gt=0),
    service: WaterDataService = Depends(get_service),
):
    """
    Waterways coloured by the flood risk of their nearest station.

    A waterway whose midpoint has no station within ``max_distance_miles``
    is reported as ``unknown``.
    """
    bbox = _bbox_or_400(north, south, east, west)
    return service.get_flood_overlay(bbox, hours, max_distance_miles)


@router.get("/flood-stages")
def flood_stages(
    site_id: str = Query(..., min_length=1),
    service: WaterDataService = Depends(get_service),
):
    thresholds = service.get_stage_thresholds(site_id)
    return {"site_id": site_id, "known": thresholds is not None, "thresholds": thresholds}


@router.get("/health")
def health(service: WaterDataService = Depends(get_service)):
    return service.health()


class CacheAction(BaseModel):
    action: str
    pattern: Optional[str] = None


@router.get("/admin/cache")
def admin_cache_stats(service: WaterDataService = Depends(get_service)):
    """Cache connectivity, key count, hit/miss tallies, preload status and TTLs."""
    return service.stats()


@router.post("/admin/cache")
def admin_cache_clear(body: CacheAction, service: WaterDataService = Depends(get_service)):
    """
    Clear cache entries.

    ``clear_pattern`` needs a ``pattern`` (Redis glob, e.g. ``usgs:*:8h``);
    the other actions clear one category or, for ``clear_all``, everything.
    """
    if body.action == "clear_pattern":
        if not body.pattern:
            raise HTTPException(status_code=400, detail="clear_pattern requires a pattern")
        target = body.pattern
    elif body.action in ADMIN_ACTIONS:
        target = ADMIN_ACTIONS[body.action]
    else:
        raise HTTPException(status_code=400, detail=f"unknown action {body.action!r}")

    cleared = service.invalidate(target)
    return {
        "success": True,
        "action": body.action,
        "cleared": None if cleared < 0 else cleared,
        "ttl": dict(CACHE_TTL),
    }
