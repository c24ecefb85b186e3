from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, TypedDict

from backend.arrivals import arrival_status, minutes_until
from backend.config import DEFAULT_BOARD_SIZE
from backend.models import AggregatedArrivals, MergedArrival, StationBoard


class ArrivalView(TypedDict):
    route_id: str
    trip_id: str
    direction_id: Optional[int]
    platform_id: str
    epoch_seconds: int
    time_formatted: str
    minutes_away: int
    display_minutes: int
    status: str


class BoardView(TypedDict):
    station_id: str
    station_name: str
    northbound: List[ArrivalView]
    southbound: List[ArrivalView]
    next_northbound: Optional[ArrivalView]
    next_southbound: Optional[ArrivalView]
    no_upcoming_service: bool
    generated_at: int
    is_fallback: bool
    unknown_direction_count: int
    decode_error_count: int
    feed_age_seconds: Optional[int]


def build_board(
    aggregated: AggregatedArrivals,
    station_id: str,
    station_name: str,
    now: int,
    cap: int = DEFAULT_BOARD_SIZE,
    is_fallback: bool = False,
    decode_error_count: int = 0,
    feed_age_seconds: Optional[int] = None,
) -> StationBoard:
    cap = max(0, cap)
    return StationBoard(
        station_id=station_id,
        station_name=station_name,
        northbound=tuple(aggregated.northbound[:cap]),
        southbound=tuple(aggregated.southbound[:cap]),
        generated_at=now,
        is_fallback=is_fallback,
        unknown_direction_count=aggregated.unknown_direction_count,
        decode_error_count=decode_error_count,
        feed_age_seconds=feed_age_seconds,
    )


def arrival_to_dict(arrival: MergedArrival, now: int) -> ArrivalView:
    minutes_away = minutes_until(arrival.epoch_seconds, now)
    return {
        "route_id": arrival.route_id,
        "trip_id": arrival.trip_id,
        "direction_id": arrival.direction_id,
        "platform_id": arrival.platform_id,
        "epoch_seconds": arrival.epoch_seconds,
        "time_formatted": arrival.time_formatted,
        "minutes_away": minutes_away,
        "display_minutes": max(0, minutes_away),
        "status": arrival_status(minutes_away),
    }


def _arrivals_to_dicts(arrivals: Sequence[MergedArrival], now: int) -> List[ArrivalView]:
    return [arrival_to_dict(arrival, now) for arrival in arrivals]


def board_to_dict(board: StationBoard, now: int) -> BoardView:
    """Serialize a board, recomputing countdowns and status against ``now``."""

    northbound = _arrivals_to_dicts(board.northbound, now)
    southbound = _arrivals_to_dicts(board.southbound, now)
    return {
        "station_id": board.station_id,
        "station_name": board.station_name,
        "northbound": northbound,
        "southbound": southbound,
        "next_northbound": northbound[0] if northbound else None,
        "next_southbound": southbound[0] if southbound else None,
        "no_upcoming_service": board.is_empty,
        "generated_at": board.generated_at,
        "is_fallback": board.is_fallback,
        "unknown_direction_count": board.unknown_direction_count,
        "decode_error_count": board.decode_error_count,
        "feed_age_seconds": board.feed_age_seconds,
    }


def line_to_dict(boards: Dict[str, StationBoard], now: int) -> Dict[str, Any]:
    return {station_id: board_to_dict(board, now) for station_id, board in boards.items()}
