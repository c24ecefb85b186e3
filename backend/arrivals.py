from __future__ import annotations

import logging
import math
from datetime import datetime, tzinfo
from typing import Dict, Iterable, List, Mapping, Sequence, Union
from zoneinfo import ZoneInfo

from backend.models import (
    NORTHBOUND,
    SOUTHBOUND,
    STATUS_APPROACHING,
    STATUS_ARRIVING,
    STATUS_SCHEDULED,
    AggregatedArrivals,
    LogicalStation,
    MergedArrival,
    RawArrival,
    direction_name,
)


logger = logging.getLogger(__name__)

ARRIVING_MAX_MINUTES = 1
APPROACHING_MAX_MINUTES = 5


def minutes_until(epoch_seconds: int, now_timestamp: int) -> int:
    """Round the gap to the nearest minute, halves up. May be negative."""

    return int(math.floor((epoch_seconds - now_timestamp) / 60 + 0.5))


def arrival_status(minutes_away: int) -> str:
    if minutes_away <= ARRIVING_MAX_MINUTES:
        return STATUS_ARRIVING
    if minutes_away <= APPROACHING_MAX_MINUTES:
        return STATUS_APPROACHING
    return STATUS_SCHEDULED


def _resolve_tz(timezone: Union[str, tzinfo]) -> tzinfo:
    return ZoneInfo(timezone) if isinstance(timezone, str) else timezone


def format_clock(epoch_seconds: int, timezone: Union[str, tzinfo]) -> str:
    local = datetime.fromtimestamp(epoch_seconds, tz=_resolve_tz(timezone))
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {suffix}"


def normalize(
    raw_arrivals: Iterable[RawArrival],
    wanted_route_id: str,
    now: int,
    timezone: Union[str, tzinfo],
) -> List[MergedArrival]:
    """Filter to one route and attach countdown, clock string and status.

    Output is ascending by ``epoch_seconds``; equal times keep feed order.
    """

    tz = _resolve_tz(timezone)
    merged: List[MergedArrival] = []
    for raw in raw_arrivals:
        if raw.route_id != wanted_route_id:
            continue
        minutes_away = minutes_until(raw.epoch_seconds, now)
        merged.append(
            MergedArrival(
                route_id=raw.route_id,
                trip_id=raw.trip_id,
                direction_id=raw.direction_id,
                epoch_seconds=raw.epoch_seconds,
                platform_id=raw.platform_id,
                minutes_away=minutes_away,
                time_formatted=format_clock(raw.epoch_seconds, tz),
                status=arrival_status(minutes_away),
            )
        )
    merged.sort(key=lambda arrival: arrival.epoch_seconds)
    return merged


def aggregate(
    station: LogicalStation,
    per_platform_arrivals: Mapping[str, Sequence[MergedArrival]],
) -> AggregatedArrivals:
    buckets: Dict[str, List[MergedArrival]] = {NORTHBOUND: [], SOUTHBOUND: []}
    unknown = 0

    for platform in station.platforms:
        for arrival in per_platform_arrivals.get(platform.stop_id, ()):
            direction = direction_name(arrival.direction_id)
            if direction is None:
                unknown += 1
                continue
            # Terminus platforms sometimes report a reverse-direction ghost trip.
            if not platform.serves(direction):
                continue
            buckets[direction].append(arrival)

    if unknown:
        logger.warning(
            "Dropped %s arrivals with unknown direction at station %s.", unknown, station.name
        )

    for arrivals in buckets.values():
        arrivals.sort(key=lambda arrival: arrival.epoch_seconds)

    return AggregatedArrivals(
        northbound=tuple(buckets[NORTHBOUND]),
        southbound=tuple(buckets[SOUTHBOUND]),
        unknown_direction_count=unknown,
    )
