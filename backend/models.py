from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple


NORTHBOUND = "northbound"
SOUTHBOUND = "southbound"
DIRECTIONS: Tuple[str, str] = (NORTHBOUND, SOUTHBOUND)

# Upstream convention: direction_id 0 is northbound, 1 is southbound.
DIRECTION_BY_ID = {0: NORTHBOUND, 1: SOUTHBOUND}

SOURCE_JSON = "json"
SOURCE_GTFS_RT = "gtfs_rt"
SOURCE_KINDS: Tuple[str, str] = (SOURCE_JSON, SOURCE_GTFS_RT)

STATUS_ARRIVING = "Arriving"
STATUS_APPROACHING = "Approaching"
STATUS_SCHEDULED = "Scheduled"


def direction_name(direction_id: Optional[int]) -> Optional[str]:
    """Map an upstream direction id to a bucket name, or None if unknown."""

    return DIRECTION_BY_ID.get(direction_id) if isinstance(direction_id, int) else None


@dataclass(frozen=True)
class RawArrival:
    route_id: str
    trip_id: str
    direction_id: Optional[int]
    epoch_seconds: int
    platform_id: str
    time_formatted: Optional[str] = None


@dataclass(frozen=True)
class MergedArrival:
    route_id: str
    trip_id: str
    direction_id: Optional[int]
    epoch_seconds: int
    platform_id: str
    minutes_away: int
    time_formatted: str
    status: str

    @property
    def display_minutes(self) -> int:
        return max(0, self.minutes_away)


@dataclass(frozen=True)
class DecodedFeed:
    platform_id: str
    arrivals: Tuple[RawArrival, ...]
    feed_timestamp: Optional[int] = None
    stop_name: Optional[str] = None
    skipped_entries: int = 0

    def feed_age_seconds(self, now: int) -> Optional[int]:
        if self.feed_timestamp is None:
            return None
        return max(0, now - self.feed_timestamp)


@dataclass(frozen=True)
class PlatformSpec:
    stop_id: str
    directions: Tuple[str, ...]

    def serves(self, direction: str) -> bool:
        return direction in self.directions


@dataclass(frozen=True)
class LogicalStation:
    id: str
    name: str
    platforms: Tuple[PlatformSpec, ...]

    @property
    def directions(self) -> Tuple[str, ...]:
        offered = {direction for platform in self.platforms for direction in platform.directions}
        return tuple(direction for direction in DIRECTIONS if direction in offered)

    @property
    def platform_ids(self) -> Tuple[str, ...]:
        return tuple(platform.stop_id for platform in self.platforms)


@dataclass(frozen=True)
class AggregatedArrivals:
    northbound: Tuple[MergedArrival, ...] = ()
    southbound: Tuple[MergedArrival, ...] = ()
    unknown_direction_count: int = 0


@dataclass(frozen=True)
class StationBoard:
    station_id: str
    station_name: str
    northbound: Tuple[MergedArrival, ...]
    southbound: Tuple[MergedArrival, ...]
    generated_at: int
    is_fallback: bool = False
    unknown_direction_count: int = 0
    decode_error_count: int = 0
    feed_age_seconds: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.northbound and not self.southbound

    @property
    def next_northbound(self) -> Optional[MergedArrival]:
        return self.northbound[0] if self.northbound else None

    @property
    def next_southbound(self) -> Optional[MergedArrival]:
        return self.southbound[0] if self.southbound else None


@dataclass(frozen=True)
class VehicleFix:
    route_id: str
    direction_id: Optional[int]
    latitude: Optional[float]
    longitude: Optional[float]
    label: str
    trip_id: Optional[str] = None


@dataclass(frozen=True)
class TrackStation:
    stop_id: str
    name: str
    position: float
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class LineConfig:
    id: str
    name: str
    source: str
    stations: Tuple[LogicalStation, ...]
    track: Tuple[TrackStation, ...] = ()
    feed_url: Optional[str] = None
    color: Optional[str] = None
    default_station: Optional[str] = None

    def station(self, station_id: str) -> Optional[LogicalStation]:
        for station in self.stations:
            if station.id == station_id:
                return station
        return None
