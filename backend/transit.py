from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

from backend.arrivals import aggregate, minutes_until, normalize
from backend.board import build_board
from backend.config import (
    CONFIG_PATH,
    DEFAULT_BOARD_SIZE,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_TIMEZONE,
    extract_lines,
    get_board_size,
    get_http_timeout,
    get_timezone,
    load_config,
)
from backend.errors import DecodeError, UpstreamUnavailable
from backend.fetchers.rtd import decode_trip_updates, fetch_feed_message, fetch_json_arrivals
from backend.models import (
    SOURCE_GTFS_RT,
    AggregatedArrivals,
    DecodedFeed,
    LineConfig,
    LogicalStation,
    StationBoard,
)


logger = logging.getLogger(__name__)

MAX_FETCH_WORKERS = 8

ERROR_UNAVAILABLE = "unavailable"
ERROR_DECODE = "decode"


@dataclass(frozen=True)
class PlatformFetch:
    platform_id: str
    feed: Optional[DecodedFeed] = None
    error: Optional[str] = None


TransitSnapshot = Dict[str, Dict[str, StationBoard]]


def _unique_platform_ids(line: LineConfig) -> List[str]:
    seen: List[str] = []
    for station in line.stations:
        for platform_id in station.platform_ids:
            if platform_id not in seen:
                seen.append(platform_id)
    return seen


def _fetch_json_platform(base_url: str, platform_id: str, timeout_seconds: float) -> PlatformFetch:
    try:
        return PlatformFetch(platform_id, feed=fetch_json_arrivals(base_url, platform_id, timeout_seconds))
    except UpstreamUnavailable as exc:
        logger.warning("Arrivals unavailable for platform %s: %s", platform_id, exc)
        return PlatformFetch(platform_id, error=ERROR_UNAVAILABLE)
    except DecodeError as exc:
        logger.error("Malformed arrivals for platform %s: %s", platform_id, exc)
        return PlatformFetch(platform_id, error=ERROR_DECODE)


def fetch_line_platforms(
    line: LineConfig,
    timeout_seconds: float,
    feed_messages: Optional[Mapping[str, object]] = None,
) -> Dict[str, PlatformFetch]:
    """Fetch and decode every platform of ``line``.

    For GTFS-RT lines ``feed_messages`` maps feed URL to an already-fetched
    FeedMessage, or to an error marker string when that fetch failed.
    """

    platform_ids = _unique_platform_ids(line)

    if line.source == SOURCE_GTFS_RT:
        message = (feed_messages or {}).get(line.feed_url)
        if message is None:
            message = _fetch_message_or_error(line.feed_url, timeout_seconds)
        if isinstance(message, str):
            return {pid: PlatformFetch(pid, error=message) for pid in platform_ids}
        return {pid: PlatformFetch(pid, feed=decode_trip_updates(message, pid)) for pid in platform_ids}

    workers = max(1, min(MAX_FETCH_WORKERS, len(platform_ids)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = list(
            executor.map(
                lambda pid: _fetch_json_platform(line.feed_url, pid, timeout_seconds),
                platform_ids,
            )
        )
    return {result.platform_id: result for result in results}


def _fetch_message_or_error(url: str, timeout_seconds: float):
    try:
        return fetch_feed_message(url, timeout_seconds)
    except UpstreamUnavailable as exc:
        logger.warning("GTFS-RT feed unavailable: %s", exc)
        return ERROR_UNAVAILABLE
    except DecodeError as exc:
        logger.error("GTFS-RT feed %s could not be decoded: %s", url, exc)
        return ERROR_DECODE


def build_station_board(
    line: LineConfig,
    station: LogicalStation,
    fetches: Mapping[str, PlatformFetch],
    now: int,
    timezone: str = DEFAULT_TIMEZONE,
    cap: int = DEFAULT_BOARD_SIZE,
) -> StationBoard:
    per_platform = {}
    is_fallback = False
    decode_errors = 0
    ages: List[int] = []
    for platform_id in station.platform_ids:
        fetch = fetches.get(platform_id)
        if fetch is None or fetch.feed is None:
            is_fallback = is_fallback or fetch is None or fetch.error == ERROR_UNAVAILABLE
            if fetch is not None and fetch.error == ERROR_DECODE:
                decode_errors += 1
            per_platform[platform_id] = []
            continue
        per_platform[platform_id] = normalize(fetch.feed.arrivals, line.id, now, timezone)
        age = fetch.feed.feed_age_seconds(now)
        if age is not None:
            ages.append(age)

    aggregated = aggregate(station, per_platform)
    return build_board(
        aggregated,
        station_id=station.id,
        station_name=station.name,
        now=now,
        cap=cap,
        is_fallback=is_fallback,
        decode_error_count=decode_errors,
        feed_age_seconds=max(ages) if ages else None,
    )


def build_line_boards(
    line: LineConfig,
    fetches: Mapping[str, PlatformFetch],
    now: int,
    timezone: str = DEFAULT_TIMEZONE,
    cap: int = DEFAULT_BOARD_SIZE,
) -> Dict[str, StationBoard]:
    boards: Dict[str, StationBoard] = {}
    for station in line.stations:
        boards[station.id] = build_station_board(line, station, fetches, now, timezone, cap)
    return boards


def _fallback_line_boards(line: LineConfig, now: int) -> Dict[str, StationBoard]:
    return {
        station.id: build_board(AggregatedArrivals(), station.id, station.name, now, is_fallback=True)
        for station in line.stations
    }


def refresh_lines(
    lines: Sequence[LineConfig],
    now: Optional[int] = None,
    timezone: str = DEFAULT_TIMEZONE,
    cap: int = DEFAULT_BOARD_SIZE,
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> TransitSnapshot:
    """Build a complete ``{line_id: {station_id: board}}`` snapshot.

    A shared GTFS-RT feed is fetched once per call. Nothing partial is
    returned: the caller installs the finished map in one step.
    """

    now_timestamp = int(time.time()) if now is None else now
    feed_messages: Dict[str, object] = {}
    for line in lines:
        if line.source == SOURCE_GTFS_RT and line.feed_url not in feed_messages:
            feed_messages[line.feed_url] = _fetch_message_or_error(line.feed_url, timeout_seconds)

    snapshot: TransitSnapshot = {}
    for line in lines:
        try:
            fetches = fetch_line_platforms(line, timeout_seconds, feed_messages)
            snapshot[line.id] = build_line_boards(line, fetches, now_timestamp, timezone, cap)
        except Exception as exc:
            logger.error("%s: board build failed, serving empty boards: %s", line.id, exc)
            snapshot[line.id] = _fallback_line_boards(line, now_timestamp)
            continue
        arrivals = sum(
            len(board.northbound) + len(board.southbound) for board in snapshot[line.id].values()
        )
        logger.info("%s: built %s boards with %s arrivals", line.id, len(snapshot[line.id]), arrivals)
    return snapshot


def _render_output(lines: Sequence[LineConfig], snapshot: TransitSnapshot, now: int) -> str:
    output_lines: List[str] = []
    output_lines.append(f"Loaded {len(lines)} lines from config.yaml")
    output_lines.append("")
    output_lines.append("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    for line in lines:
        output_lines.append(f"{line.name.upper()} ({line.id})")
        for station in line.stations:
            board = snapshot.get(line.id, {}).get(station.id)
            output_lines.append(f"  {station.name}:")
            if board is None or board.is_empty:
                output_lines.append("    (no upcoming service)")
                continue
            for label, arrivals in (("Northbound", board.northbound), ("Southbound", board.southbound)):
                if not arrivals:
                    continue
                summary = ", ".join(
                    f"{arrival.time_formatted} ({max(0, minutes_until(arrival.epoch_seconds, now))} min)"
                    for arrival in arrivals
                )
                output_lines.append(f"    {label}: {summary}")
        output_lines.append("")
    output_lines.append("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    output_lines.append(f"Last updated: {datetime.fromtimestamp(now).strftime('%Y-%m-%d %H:%M:%S')}")
    return "\n".join(output_lines)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    try:
        config = load_config(CONFIG_PATH)
        lines = extract_lines(config)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        return

    now = int(time.time())
    snapshot = refresh_lines(
        lines,
        now=now,
        timezone=get_timezone(config),
        cap=get_board_size(config),
        timeout_seconds=get_http_timeout(config),
    )
    print(_render_output(lines, snapshot, now))


if __name__ == "__main__":
    main()
