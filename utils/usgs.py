"""
USGS NWIS instantaneous-values client.

The telemetry provider answers bounding-box and single-site queries with a
``value.timeSeries`` array, one entry per (site, parameter).  This module
converts that payload into :class:`~utils.models.TimeSeries` records at the
boundary, dropping the ``-999999`` missing-value sentinel and anything that
does not parse as a number, and groups series into
:class:`~utils.models.Station` records for the map.

Bounding-box queries are subject to the provider's size limits; callers
that may exceed them go through the grid coordinator instead of calling
:meth:`UsgsClient.fetch_bbox` directly.
"""

from __future__ import annotations

import logging
import math
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import requests

from .bbox import BoundingBox
from .errors import UpstreamError, UpstreamTimeout
from .models import (
    GAGE_HEIGHT,
    LAKE_ELEVATION,
    LAKE_ELEVATION_NAVD,
    RESERVOIR_STORAGE,
    STREAMFLOW,
    ReadingPoint,
    Station,
    TimeSeries,
)

logger = logging.getLogger(__name__)

USGS_BASE_URL = os.getenv("USGS_BASE_URL", "https://waterservices.usgs.gov/nwis/iv/")
USGS_TIMEOUT_S = float(os.getenv("USGS_TIMEOUT_S", "60"))
USGS_PARAMETER_CODES = os.getenv(
    "USGS_PARAMETER_CODES",
    ",".join([GAGE_HEIGHT, STREAMFLOW, LAKE_ELEVATION, RESERVOIR_STORAGE, LAKE_ELEVATION_NAVD]),
).split(",")

MISSING_VALUE = "-999999"

# reading used for the headline value, in order of preference
PRIMARY_PARAMETERS = [GAGE_HEIGHT, STREAMFLOW, LAKE_ELEVATION, LAKE_ELEVATION_NAVD, RESERVOIR_STORAGE]


def to_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(s: str) -> Optional[int]:
    try:
        return to_millis(datetime.fromisoformat(s.replace("Z", "+00:00")))
    except (AttributeError, TypeError, ValueError):
        return None


def parse_points(values: Iterable[Dict[str, Any]]) -> List[ReadingPoint]:
    """Sentinel-free, numeric, time-ascending points, first one per timestamp."""
    points: Dict[int, ReadingPoint] = {}
    for v in values:
        raw = v.get("value")
        if raw is None or str(raw).strip() == MISSING_VALUE:
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if math.isnan(value):
            continue
        t = _parse_time(v.get("dateTime", ""))
        if t is None:
            continue
        points.setdefault(t, ReadingPoint(time=t, value=value))
    return sorted(points.values(), key=lambda p: p.time)


def parse_timeseries(payload: Any) -> List[TimeSeries]:
    """
    Convert an NWIS JSON body into typed records.

    Raises ``UpstreamError`` when the body is not the expected shape;
    individual malformed series are skipped.
    """
    if not isinstance(payload, dict):
        raise UpstreamError("USGS response is not a JSON object")
    value = payload.get("value")
    if not isinstance(value, dict):
        raise UpstreamError("USGS response has no 'value' object")
    raw_series = value.get("timeSeries") or []

    out: List[TimeSeries] = []
    for ts in raw_series:
        try:
            source = ts["sourceInfo"]
            site_id = source["siteCode"][0]["value"]
            geo = source["geoLocation"]["geogLocation"]
            variable = ts.get("variable") or {}
            codes = variable.get("variableCode") or [{}]
            unit = (variable.get("unit") or {}).get("unitCode") or variable.get("unitCode")
            values = (ts.get("values") or [{}])[0].get("value") or []
            out.append(
                TimeSeries(
                    site_id=str(site_id),
                    site_name=source.get("siteName") or f"Site {site_id}",
                    latitude=float(geo["latitude"]),
                    longitude=float(geo["longitude"]),
                    parameter_code=str(codes[0].get("value", "")),
                    unit=unit,
                    points=parse_points(values),
                )
            )
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            logger.debug("skipping malformed time series: %s", exc)
            continue
    return out


def infer_site_type(parameter_codes: Iterable[str]) -> str:
    codes = set(parameter_codes)
    if RESERVOIR_STORAGE in codes:
        return "reservoir"
    if codes & {LAKE_ELEVATION, LAKE_ELEVATION_NAVD}:
        return "lake"
    return "river"


def stations_from_timeseries(series: Sequence[TimeSeries]) -> List[Station]:
    """
    Group series by site into stations, keeping first-seen site order.

    ``readings`` holds the latest value per parameter; ``series`` holds the
    points of the primary parameter (gage height when available).
    """
    grouped: Dict[str, List[TimeSeries]] = {}
    for ts in series:
        grouped.setdefault(ts.site_id, []).append(ts)

    stations = []
    for site_id, items in grouped.items():
        by_code = {ts.parameter_code: ts for ts in items}
        readings = {code: ts.points[-1].value for code, ts in by_code.items() if ts.points}
        primary = next((by_code[c] for c in PRIMARY_PARAMETERS if c in by_code and by_code[c].points), None)
        latest = max((ts.points[-1].time for ts in items if ts.points), default=None)
        first = items[0]
        stations.append(
            Station(
                id=site_id,
                name=first.site_name,
                latitude=first.latitude,
                longitude=first.longitude,
                site_type=infer_site_type(by_code),
                readings=readings,
                series=list(primary.points) if primary else [],
                last_updated=latest,
            )
        )
    return stations


class UsgsClient:
    """
    Thin client for the NWIS instantaneous-values service.

    Transport failures are mapped onto the layer's error taxonomy:
    timeouts become ``UpstreamTimeout``; non-2xx statuses and bodies that
    are not JSON become ``UpstreamError`` carrying the status code.
    """

    def __init__(
        self,
        base_url: str = USGS_BASE_URL,
        timeout: float = USGS_TIMEOUT_S,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "water-data-service", "Accept": "application/json"})

    def _get(self, params: Dict[str, str], timeout: Optional[float] = None) -> Any:
        timeout = timeout or self.timeout
        try:
            resp = self.session.get(self.base_url, params=params, timeout=timeout)
        except requests.Timeout as exc:
            raise UpstreamTimeout(f"USGS request timed out after {timeout}s") from exc
        except requests.RequestException as exc:
            raise UpstreamError(f"USGS network error: {exc}") from exc

        if resp.status_code != 200:
            raise UpstreamError(
                f"USGS returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(f"USGS returned invalid JSON: {exc}", status_code=resp.status_code) from exc

    def fetch_bbox(
        self,
        bbox: BoundingBox,
        hours: int = 8,
        parameter_codes: Optional[Sequence[str]] = None,
    ) -> List[TimeSeries]:
        """All active-site series inside ``bbox`` for the last ``hours``."""
        params = {
            "format": "json",
            "bBox": bbox.to_usgs_param(),
            "parameterCd": ",".join(parameter_codes or USGS_PARAMETER_CODES),
            "siteStatus": "active",
            "period": f"PT{int(hours)}H",
        }
        return parse_timeseries(self._get(params))

    def fetch_site_series(
        self,
        site_id: str,
        start: datetime,
        end: datetime,
        parameter_code: str = GAGE_HEIGHT,
    ) -> List[ReadingPoint]:
        """Points for one site and parameter between ``start`` and ``end``."""
        params = {
            "format": "json",
            "sites": site_id,
            "parameterCd": parameter_code,
            "startDT": _iso(start),
            "endDT": _iso(end),
        }
        series = parse_timeseries(self._get(params))
        for ts in series:
            if ts.site_id == site_id and ts.parameter_code == parameter_code:
                return ts.points
        return series[0].points if series else []
