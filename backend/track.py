from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

from backend.models import LineConfig, TrackStation, VehicleFix


FALLBACK_POSITION = 50.0
MIN_POSITION = 1.0
MAX_POSITION = 99.0


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


def _planar_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    # Regional spans are short enough that a flat approximation orders stations correctly.
    return math.hypot(lat2 - lat1, lon2 - lon1)


def position_of(fix: VehicleFix, stations: Sequence[TrackStation]) -> float:
    """Place a vehicle on the 0-100 track diagram, clamped to [1, 99].

    Interpolates between the two stations nearest the fix. Returns 50 when the
    fix or the track lacks usable coordinates.
    """

    if not (_finite(fix.latitude) and _finite(fix.longitude)):
        return FALLBACK_POSITION
    located = [
        station
        for station in stations
        if _finite(station.latitude) and _finite(station.longitude)
    ]
    if len(located) < 2:
        return FALLBACK_POSITION

    by_distance = sorted(
        (
            (_planar_distance(fix.latitude, fix.longitude, station.latitude, station.longitude), station)
            for station in located
        ),
        key=lambda pair: pair[0],
    )
    (d_a, a), (d_b, b) = by_distance[0], by_distance[1]
    if a.position <= b.position:
        (d1, lower), (d2, upper) = (d_a, a), (d_b, b)
    else:
        (d1, lower), (d2, upper) = (d_b, b), (d_a, a)

    total = d1 + d2
    if total == 0:
        position = lower.position
    else:
        position = lower.position + (upper.position - lower.position) * d1 / total
    return min(MAX_POSITION, max(MIN_POSITION, position))


def place_vehicles(fixes: Sequence[VehicleFix], line: LineConfig) -> List[Tuple[VehicleFix, float]]:
    return [
        (fix, position_of(fix, line.track))
        for fix in fixes
        if fix.route_id == line.id
    ]
