"""
Waterway geometry from OpenStreetMap via the Overpass API.

Rivers, named streams, named water bodies and reservoirs inside a bounding
box are queried with their member ways and nodes, then converted into
:class:`~utils.models.GeometryFeature` records:

* ways become features directly, their node list giving the geometry;
* relations (multipolygon lakes and reservoirs) are assembled by stitching
  their ``outer`` member ways end to end into rings, keeping the largest;
* polygons are closed (first point repeated at the end) so map layers fill
  them correctly, and features with too few points are dropped.

By default only significant features are kept: named rivers and long
polylines, large lakes and reservoirs, and a list of well-known Central
Texas water bodies.  Pass ``major_only=False`` to keep everything.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import overpy

from .bbox import BoundingBox
from .models import GeometryFeature
from .overpass_throttle import OverpassThrottle

logger = logging.getLogger(__name__)

Coord = Tuple[float, float]

OVERPASS_QUERY_TIMEOUT_S = int(os.getenv("OVERPASS_QUERY_TIMEOUT_S", "60"))
OVERPASS_MAX_CELL_DEG = float(os.getenv("OVERPASS_MAX_CELL_DEG", "2.0"))
# 8x8 keeps every cell of a Texas-sized box under the span limit
OVERPASS_GRID_SIZE = int(os.getenv("OVERPASS_GRID_SIZE", "8"))

MAJOR_WATER_BODIES = [
    "lake travis", "lake austin", "lake georgetown", "lake buchanan", "canyon lake",
    "lake marble falls", "lake lyndon", "lady bird lake", "town lake", "inks lake",
    "lake walter", "granger lake", "stillhouse hollow", "belton lake", "somerville lake",
]
MAJOR_RIVERS = [
    "river", "colorado", "guadalupe", "san gabriel", "blanco", "pedernales",
    "brazos", "trinity", "llano", "nueces",
]
MIN_LAKE_POINTS = 50
MIN_RESERVOIR_POINTS = 30
MIN_RIVER_POINTS = 10


def _escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace('"', '\\"')


def build_query(bbox: BoundingBox, name_filter: Optional[str] = None) -> str:
    b = bbox.to_overpass()
    name = f'["name"~"{_escape(name_filter)}",i]' if name_filter else ""
    return f"""
    [out:json][timeout:{OVERPASS_QUERY_TIMEOUT_S}];
    (
      way["waterway"="river"]{name}({b});
      way["waterway"="stream"]["name"]{name}({b});
      way["natural"="water"]["name"]{name}({b});
      way["landuse"="reservoir"]["name"]{name}({b});
      relation["natural"="water"]["name"]{name}({b});
      relation["landuse"="reservoir"]["name"]{name}({b});
    );
    (._;>;);
    out body;
    """


def classify_kind(tags: Dict[str, Any]) -> Optional[str]:
    """river / stream / lake / reservoir, or None for untracked features."""
    name = tags.get("name")
    if tags.get("waterway") == "river":
        return "river"
    if tags.get("waterway") == "stream" and name:
        return "stream"
    if tags.get("natural") == "water" and name:
        lowered = name.lower()
        return "reservoir" if "reservoir" in lowered or "dam" in lowered else "lake"
    if tags.get("landuse") == "reservoir" and name:
        return "reservoir"
    return None


def close_ring(coords: List[Coord]) -> List[Coord]:
    if coords and coords[0] != coords[-1]:
        return coords + [coords[0]]
    return coords


def stitch_rings(segments: List[List[Coord]]) -> List[List[Coord]]:
    """Join way segments that share endpoints into as few chains as possible."""
    remaining = [list(s) for s in segments if len(s) >= 2]
    rings: List[List[Coord]] = []
    while remaining:
        current = remaining.pop(0)
        extended = True
        while extended and current[0] != current[-1]:
            extended = False
            for i, seg in enumerate(remaining):
                if seg[0] == current[-1]:
                    current = current + seg[1:]
                elif seg[-1] == current[-1]:
                    current = current + seg[-2::-1]
                elif seg[-1] == current[0]:
                    current = seg[:-1] + current
                elif seg[0] == current[0]:
                    current = seg[:0:-1] + current
                else:
                    continue
                remaining.pop(i)
                extended = True
                break
        rings.append(current)
    return rings


def _way_coords(way: overpy.Way) -> List[Coord]:
    nodes = way.get_nodes(resolve_missing=False)
    return [(float(n.lat), float(n.lon)) for n in nodes]


def _relation_coords(relation: overpy.Relation) -> List[Coord]:
    segments = []
    for member in relation.members:
        if not isinstance(member, overpy.RelationWay) or member.role != "outer":
            continue
        try:
            segments.append(_way_coords(member.resolve(resolve_missing=False)))
        except overpy.exception.DataIncomplete:
            logger.debug("relation %s: outer way %s missing from result", relation.id, member.ref)
    rings = stitch_rings(segments)
    if not rings:
        return []
    return max(rings, key=len)


def is_major(feature: GeometryFeature) -> bool:
    name = feature.name.lower()
    n = len(feature.coordinates)
    if feature.kind in ("lake", "reservoir"):
        return (
            any(w in name for w in MAJOR_WATER_BODIES)
            or ("lake" in name and n > MIN_LAKE_POINTS)
            or ("reservoir" in name and n > MIN_RESERVOIR_POINTS)
        )
    return any(r in name for r in MAJOR_RIVERS) or n > MIN_RIVER_POINTS


def parse_waterways(result: overpy.Result, major_only: bool = True) -> List[GeometryFeature]:
    """Convert an Overpass result into renderable features."""
    features: List[GeometryFeature] = []

    elements = [("way", w) for w in result.ways] + [("relation", r) for r in result.relations]
    for element_type, element in elements:
        kind = classify_kind(element.tags)
        if kind is None:
            continue
        try:
            coords = _way_coords(element) if element_type == "way" else _relation_coords(element)
        except overpy.exception.DataIncomplete:
            logger.debug("%s %s: nodes missing from result", element_type, element.id)
            continue

        feature = GeometryFeature(
            id=f"{element_type}/{element.id}",
            name=element.tags.get("name") or f"Unnamed {kind}",
            kind=kind,
            coordinates=coords,
        )
        if feature.is_polygon:
            feature.coordinates = close_ring(feature.coordinates)
        if not feature.is_renderable():
            continue
        if major_only and not is_major(feature):
            continue
        features.append(feature)

    return features


def fetch_waterways(
    bbox: BoundingBox,
    throttle: OverpassThrottle,
    name_filter: Optional[str] = None,
    major_only: bool = True,
) -> List[GeometryFeature]:
    """Query one provider-sized box; raises ``UpstreamError`` on failure."""
    result = throttle.query(build_query(bbox, name_filter))
    features = parse_waterways(result, major_only=major_only)
    logger.debug("Overpass returned %d waterways for %s", len(features), bbox.to_overpass())
    return features
