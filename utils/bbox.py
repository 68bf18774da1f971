"""
Bounding boxes, cache keys and upstream size limits.

A bounding box is an axis-aligned rectangle in latitude/longitude degrees.
Boxes coming from the map UI are validated here, clamped to the valid
coordinate domain where that makes them usable, and turned into stable
cache keys.  Keys round every edge to three decimal places (about 100 m)
so two viewports that differ only by floating noise share one entry.

The telemetry provider refuses boxes taller than ~10 degrees or wider than
``3.5 * cos(center latitude)`` degrees; :func:`within_provider_limits`
encodes that rule and :func:`shrink_to_limits` produces the largest legal
box centred on an oversized one.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from .errors import ValidationError

KEY_PRECISION = 3
PROVIDER_PRECISION = 7

MAX_HEIGHT_DEG = float(os.getenv("USGS_MAX_HEIGHT_DEG", "10.0"))
MAX_WIDTH_FACTOR_DEG = float(os.getenv("USGS_MAX_WIDTH_FACTOR_DEG", "3.5"))


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float

    @property
    def height(self) -> float:
        return self.north - self.south

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def center_lat(self) -> float:
        return (self.north + self.south) / 2.0

    @property
    def center_lon(self) -> float:
        return (self.east + self.west) / 2.0

    def is_valid(self) -> bool:
        """True when south < north, west < east and all edges are in range."""
        return (
            self.south < self.north
            and self.west < self.east
            and -90.0 <= self.south
            and self.north <= 90.0
            and -180.0 <= self.west
            and self.east <= 180.0
        )

    def rounded(self, places: int = PROVIDER_PRECISION) -> "BoundingBox":
        return BoundingBox(
            north=round(self.north, places),
            south=round(self.south, places),
            east=round(self.east, places),
            west=round(self.west, places),
        )

    def to_usgs_param(self) -> str:
        """``west,south,east,north`` as the telemetry provider expects."""
        b = self.rounded()
        return f"{b.west},{b.south},{b.east},{b.north}"

    def to_overpass(self) -> str:
        """``south,west,north,east`` as Overpass QL expects."""
        b = self.rounded()
        return f"{b.south},{b.west},{b.north},{b.east}"

    def to_dict(self) -> Dict[str, float]:
        return {"north": self.north, "south": self.south, "east": self.east, "west": self.west}


TEXAS_BBOX = BoundingBox(north=36.5, south=25.8, east=-93.5, west=-106.7)


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def parse_bbox(raw: Mapping[str, Any]) -> BoundingBox:
    """
    Build a validated box from loosely typed input (query params, JSON).

    Non-numeric, NaN and infinite edges are rejected outright.  Edges that
    fall outside the coordinate domain are clamped first; only if the
    clamped box is still degenerate is a ``ValidationError`` raised.
    """
    edges: Dict[str, float] = {}
    for name in ("north", "south", "east", "west"):
        if name not in raw or raw[name] is None:
            raise ValidationError(f"missing bbox edge: {name}")
        try:
            v = float(raw[name])
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"bbox edge {name} is not a number: {raw[name]!r}") from exc
        if math.isnan(v) or math.isinf(v):
            raise ValidationError(f"bbox edge {name} must be finite")
        edges[name] = v

    bbox = BoundingBox(
        north=_clamp(edges["north"], -90.0, 90.0),
        south=_clamp(edges["south"], -90.0, 90.0),
        east=_clamp(edges["east"], -180.0, 180.0),
        west=_clamp(edges["west"], -180.0, 180.0),
    )
    if not bbox.is_valid():
        raise ValidationError(
            f"invalid bbox: N{bbox.north} S{bbox.south} E{bbox.east} W{bbox.west} "
            "(need south < north and west < east)"
        )
    return bbox


def canonicalize(bbox: BoundingBox) -> str:
    """
    Stable cache key fragment for a box.

    Pure function of the four edges; each edge is rounded to
    ``KEY_PRECISION`` decimals and emitted in ``south,west,north,east``
    order.  Callers reject NaN before reaching here.
    """
    def r(v: float) -> float:
        # normalise -0.0 so it keys the same as 0.0
        return round(v, KEY_PRECISION) + 0.0

    return f"{r(bbox.south)},{r(bbox.west)},{r(bbox.north)},{r(bbox.east)}"


def max_width_deg(center_lat: float) -> float:
    return MAX_WIDTH_FACTOR_DEG * math.cos(math.radians(center_lat))


def within_provider_limits(bbox: BoundingBox) -> bool:
    """The telemetry provider's own area-validity predicate."""
    if not bbox.is_valid():
        return False
    return bbox.height <= MAX_HEIGHT_DEG and bbox.width <= max_width_deg(bbox.center_lat)


def square_cell_limit(max_span_deg: float):
    """Validity predicate for providers that only cap the span in degrees."""
    def predicate(bbox: BoundingBox) -> bool:
        return bbox.is_valid() and bbox.height <= max_span_deg and bbox.width <= max_span_deg
    return predicate


def shrink_to_limits(bbox: BoundingBox) -> BoundingBox:
    """Largest provider-legal box sharing the centre of ``bbox``."""
    # stay a hair inside both limits so float error cannot push us over
    half_h = min(bbox.height, MAX_HEIGHT_DEG * 0.999999) / 2.0
    lat_c = bbox.center_lat
    south = _clamp(lat_c - half_h, -90.0, 90.0)
    north = _clamp(lat_c + half_h, -90.0, 90.0)
    half_w = min(bbox.width, max_width_deg((north + south) / 2.0) * 0.999999) / 2.0
    lon_c = bbox.center_lon
    shrunk = BoundingBox(
        north=north,
        south=south,
        east=_clamp(lon_c + half_w, -180.0, 180.0),
        west=_clamp(lon_c - half_w, -180.0, 180.0),
    )
    if not shrunk.is_valid():
        raise ValidationError("bbox cannot be shrunk to a provider-legal size")
    return shrunk
