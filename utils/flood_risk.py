"""
Qualitative flood-risk classification for station readings.

With known stage thresholds the reading is compared against the flood
stage: at 120 % or more it is extreme, at or above flood stage high,
from 80 % moderate, from 50 % normal and below that low.  Without
thresholds the reading falls into parameter-specific heuristic bands
(gage height, streamflow and reservoir storage use different ranges).
The bands live in ``HEURISTIC_BANDS`` so they can be tuned without
touching the classification logic.

Classification is a pure function and monotonic: for fixed thresholds
and parameter, a larger reading never yields a lower level.
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence, Tuple

from .models import (
    GAGE_HEIGHT,
    LAKE_ELEVATION,
    LAKE_ELEVATION_NAVD,
    RESERVOIR_STORAGE,
    STREAMFLOW,
    StageThresholds,
    Station,
)

EXTREME = "extreme"
HIGH = "high"
MODERATE = "moderate"
NORMAL = "normal"
LOW = "low"
UNKNOWN = "unknown"

# ascending severity; unknown sorts below everything
RISK_ORDER = [UNKNOWN, LOW, NORMAL, MODERATE, HIGH, EXTREME]
RISK_RANK = {level: i for i, level in enumerate(RISK_ORDER)}

# (minimum ratio of reading to flood stage, level), highest first
STAGE_RATIO_BANDS: List[Tuple[float, str]] = [
    (1.2, EXTREME),
    (1.0, HIGH),
    (0.8, MODERATE),
    (0.5, NORMAL),
]

# per parameter: (minimum reading, level), highest first; below all -> low
HEURISTIC_BANDS: Dict[str, List[Tuple[float, str]]] = {
    GAGE_HEIGHT: [       # feet
        (20.0, EXTREME),
        (15.0, HIGH),
        (10.0, MODERATE),
        (2.0, NORMAL),
    ],
    STREAMFLOW: [        # cubic feet per second
        (1000.0, EXTREME),
        (500.0, HIGH),
        (300.0, MODERATE),
        (10.0, NORMAL),
    ],
    RESERVOIR_STORAGE: [  # acre-feet
        (500000.0, EXTREME),
        (250000.0, HIGH),
        (100000.0, MODERATE),
        (1000.0, NORMAL),
    ],
}


def _band(value: float, bands: Sequence[Tuple[float, str]]) -> str:
    for minimum, level in bands:
        if value >= minimum:
            return level
    return LOW


def classify(
    reading: Optional[float],
    thresholds: Optional[StageThresholds] = None,
    parameter_code: str = GAGE_HEIGHT,
) -> str:
    """
    Map a reading to one of ``RISK_ORDER``.

    Parameters
    ----------
    reading : float or None
        Latest reading; ``None`` or NaN yields ``unknown``.
    thresholds : StageThresholds, optional
        Used when it carries a positive ``flood_stage``.
    parameter_code : str
        Selects the heuristic band table when no thresholds apply.
        Parameters without a table classify as ``unknown``.
    """
    if reading is None or (isinstance(reading, float) and math.isnan(reading)):
        return UNKNOWN

    if thresholds is not None and thresholds.flood_stage and thresholds.flood_stage > 0:
        return _band(reading / thresholds.flood_stage, STAGE_RATIO_BANDS)

    bands = HEURISTIC_BANDS.get(parameter_code)
    if bands is None:
        return UNKNOWN
    return _band(reading, bands)


def classify_elevation(reading: Optional[float], thresholds: Optional[StageThresholds]) -> str:
    """
    Lake or reservoir pool elevation (ft MSL) stepped through the
    absolute action, flood and major stages.
    """
    if reading is None or (isinstance(reading, float) and math.isnan(reading)):
        return UNKNOWN
    if thresholds is None or not thresholds.flood_stage:
        return UNKNOWN
    if thresholds.major_flood_stage and reading >= thresholds.major_flood_stage:
        return EXTREME
    if reading >= thresholds.flood_stage:
        return HIGH
    if thresholds.action_stage and reading >= thresholds.action_stage:
        return MODERATE
    return NORMAL


def classify_station(station: Station) -> str:
    """
    Risk level for a station from its headline reading.

    Stage thresholds apply to gage height and, as absolute levels, to
    lake elevation; other parameters go straight to the heuristic bands.
    """
    if station.gage_height is not None:
        return classify(station.gage_height, station.thresholds, GAGE_HEIGHT)
    for code in (LAKE_ELEVATION, LAKE_ELEVATION_NAVD):
        if code in station.readings and station.thresholds is not None:
            return classify_elevation(station.readings[code], station.thresholds)
    for code in (STREAMFLOW, RESERVOIR_STORAGE):
        if code in station.readings:
            return classify(station.readings[code], None, code)
    return UNKNOWN


def max_level(levels: Sequence[str]) -> str:
    return max(levels, key=lambda lv: RISK_RANK.get(lv, 0), default=UNKNOWN)
