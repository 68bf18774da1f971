"""
Typed records for stations, readings, geometry and cached history.

Upstream JSON is converted into these records at the client boundary so
business logic never handles loosely typed maps.  Every record knows how
to round-trip through plain dicts because the cache stores JSON.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

POLYGON_KINDS = ("lake", "reservoir")
POLYLINE_KINDS = ("river", "stream")
FEATURE_KINDS = POLYLINE_KINDS + POLYGON_KINDS

# USGS parameter codes
GAGE_HEIGHT = "00065"
STREAMFLOW = "00060"
LAKE_ELEVATION = "00062"
LAKE_ELEVATION_NAVD = "62614"
RESERVOIR_STORAGE = "00054"


@dataclass
class ReadingPoint:
    """One reading; ``time`` is epoch milliseconds."""

    time: int
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"time": self.time, "value": self.value}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReadingPoint":
        return cls(time=int(d["time"]), value=float(d["value"]))


@dataclass
class TimeSeries:
    """One upstream time series: a single parameter at a single site."""

    site_id: str
    site_name: str
    latitude: float
    longitude: float
    parameter_code: str
    unit: Optional[str]
    points: List[ReadingPoint] = field(default_factory=list)


@dataclass
class StageThresholds:
    flood_stage: Optional[float] = None
    action_stage: Optional[float] = None
    moderate_flood_stage: Optional[float] = None
    major_flood_stage: Optional[float] = None
    source: Optional[str] = None
    confidence: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["StageThresholds"]:
        if not d:
            return None
        return cls(**{k: d.get(k) for k in cls.__dataclass_fields__})


@dataclass
class Station:
    id: str
    name: str
    latitude: float
    longitude: float
    site_type: str = "river"
    readings: Dict[str, float] = field(default_factory=dict)
    series: List[ReadingPoint] = field(default_factory=list)
    last_updated: Optional[int] = None
    thresholds: Optional[StageThresholds] = None
    risk_level: str = "unknown"

    @property
    def gage_height(self) -> Optional[float]:
        return self.readings.get(GAGE_HEIGHT)

    @property
    def streamflow(self) -> Optional[float]:
        return self.readings.get(STREAMFLOW)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "site_type": self.site_type,
            "readings": dict(self.readings),
            "series": [p.to_dict() for p in self.series],
            "last_updated": self.last_updated,
            "thresholds": self.thresholds.to_dict() if self.thresholds else None,
            "risk_level": self.risk_level,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Station":
        return cls(
            id=str(d["id"]),
            name=d.get("name") or f"Site {d['id']}",
            latitude=float(d["latitude"]),
            longitude=float(d["longitude"]),
            site_type=d.get("site_type", "river"),
            readings={k: float(v) for k, v in (d.get("readings") or {}).items()},
            series=[ReadingPoint.from_dict(p) for p in d.get("series") or []],
            last_updated=d.get("last_updated"),
            thresholds=StageThresholds.from_dict(d.get("thresholds")),
            risk_level=d.get("risk_level", "unknown"),
        )


@dataclass
class GeometryFeature:
    id: str
    name: str
    kind: str
    coordinates: List[Tuple[float, float]] = field(default_factory=list)

    @property
    def is_polygon(self) -> bool:
        return self.kind in POLYGON_KINDS

    def is_renderable(self) -> bool:
        """Polygons need 3+ points, polylines 2+."""
        return len(self.coordinates) >= (3 if self.is_polygon else 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "coordinates": [[lat, lon] for lat, lon in self.coordinates],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GeometryFeature":
        return cls(
            id=str(d["id"]),
            name=d.get("name", ""),
            kind=d["kind"],
            coordinates=[(float(lat), float(lon)) for lat, lon in d.get("coordinates", [])],
        )


@dataclass
class HistoryRecord:
    """
    Cached rolling window for one (station, parameter, hours) triple.

    ``from_time``/``to_time`` describe the range the data covers and
    ``last_updated`` is when it was written; all epoch milliseconds.
    """

    site_id: str
    parameter_code: str
    data: List[ReadingPoint]
    from_time: int
    to_time: int
    last_updated: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "site_id": self.site_id,
            "parameter_code": self.parameter_code,
            "data": [p.to_dict() for p in self.data],
            "from_time": self.from_time,
            "to_time": self.to_time,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            site_id=str(d["site_id"]),
            parameter_code=str(d.get("parameter_code", GAGE_HEIGHT)),
            data=[ReadingPoint.from_dict(p) for p in d.get("data", [])],
            from_time=int(d["from_time"]),
            to_time=int(d["to_time"]),
            last_updated=int(d["last_updated"]),
        )
