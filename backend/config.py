from __future__ import annotations

import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from backend.errors import ConfigError
from backend.models import (
    DIRECTIONS,
    SOURCE_GTFS_RT,
    SOURCE_KINDS,
    LineConfig,
    LogicalStation,
    PlatformSpec,
    TrackStation,
)


ROOT_DIR = Path(__file__).resolve().parents[1]
CONFIG_PATH = ROOT_DIR / "config.yaml"

DEFAULT_TIMEZONE = "America/Denver"
DEFAULT_BOARD_SIZE = 3
DEFAULT_HTTP_TIMEOUT_SECONDS = 10

CREDENTIAL_ENV_VARS: Tuple[str, ...] = ("GOOGLE_MAPS_API_KEY", "OPENWEATHER_API_KEY")

logger = logging.getLogger(__name__)


def load_config(config_path: Path = CONFIG_PATH) -> Dict[str, Any]:
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    logger.info("Loading config from %s", config_path)
    with config_path.open() as handle:
        data = yaml.safe_load(handle)
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping.")
    return data


def _safe_int(value: Any, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name, {})
    return value if isinstance(value, dict) else {}


def get_display_thresholds(config: Dict[str, Any]) -> Tuple[int, int]:
    display = _section(config, "display")
    warning = max(0, _safe_int(display.get("staleness_warning_sec", 90), 90))
    critical = max(0, _safe_int(display.get("staleness_critical_sec", 600), 600))
    if critical < warning:
        critical = warning
    return warning, critical


def get_poll_intervals(config: Dict[str, Any]) -> Dict[str, int]:
    """Return the polling interval in seconds for every scheduled feed."""

    transit = _section(config, "transit")
    weather = _section(config, "weather")
    drive = _section(config, "drive")
    return {
        "transit": max(5, _safe_int(transit.get("poll_interval_seconds", 30), 30)),
        "vehicles": max(5, _safe_int(transit.get("vehicle_poll_interval_seconds", 10), 10)),
        "weather": max(30, _safe_int(weather.get("poll_interval_seconds", 300), 300)),
        "drive": max(30, _safe_int(drive.get("poll_interval_seconds", 300), 300)),
    }


def get_http_timeout(config: Dict[str, Any]) -> float:
    http = _section(config, "http")
    timeout = _safe_float(http.get("timeout_seconds"))
    if timeout is None or timeout <= 0:
        return float(DEFAULT_HTTP_TIMEOUT_SECONDS)
    return timeout


def get_timezone(config: Dict[str, Any]) -> str:
    transit = _section(config, "transit")
    value = transit.get("timezone")
    return value.strip() if isinstance(value, str) and value.strip() else DEFAULT_TIMEZONE


def get_board_size(config: Dict[str, Any]) -> int:
    transit = _section(config, "transit")
    return max(1, _safe_int(transit.get("board_size", DEFAULT_BOARD_SIZE), DEFAULT_BOARD_SIZE))


def get_preferences_path(config: Dict[str, Any]) -> Path:
    prefs = _section(config, "preferences")
    raw = prefs.get("path")
    if isinstance(raw, str) and raw.strip():
        path = Path(raw.strip())
        return path if path.is_absolute() else ROOT_DIR / path
    return ROOT_DIR / "preferences.yaml"


def missing_credentials(environ: Optional[Dict[str, str]] = None) -> List[str]:
    env = os.environ if environ is None else environ
    return [name for name in CREDENTIAL_ENV_VARS if not env.get(name)]


def get_location(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    locations = _section(config, "locations")
    location = locations.get(name)
    if not isinstance(location, dict):
        raise ConfigError(f"Location '{name}' is not configured.")
    return {
        "name": location.get("name") or name,
        "address": location.get("address"),
        "lat": _safe_float(location.get("lat")),
        "lng": _safe_float(location.get("lng")),
    }


def _parse_directions(raw: Any, where: str) -> Tuple[str, ...]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"{where} must declare at least one direction.")
    directions: List[str] = []
    for value in raw:
        direction = str(value).strip().lower()
        if direction not in DIRECTIONS:
            raise ConfigError(f"{where} has unsupported direction '{value}'.")
        if direction not in directions:
            directions.append(direction)
    return tuple(directions)


def _parse_station(raw: Any, line_id: str) -> LogicalStation:
    if not isinstance(raw, dict):
        raise ConfigError(f"Line {line_id} has an invalid station entry.")
    station_id = str(raw.get("id") or "").strip()
    name = raw.get("name")
    if not station_id or not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Line {line_id} station entry missing id or name.")

    platforms_raw = raw.get("platforms")
    platforms: List[PlatformSpec] = []
    if isinstance(platforms_raw, list) and platforms_raw:
        for platform_raw in platforms_raw:
            if not isinstance(platform_raw, dict):
                raise ConfigError(f"Station {station_id} has an invalid platform entry.")
            stop_id = str(platform_raw.get("stop_id") or "").strip()
            if not stop_id:
                raise ConfigError(f"Station {station_id} platform missing stop_id.")
            platforms.append(
                PlatformSpec(
                    stop_id=stop_id,
                    directions=_parse_directions(
                        platform_raw.get("directions", list(DIRECTIONS)),
                        f"Station {station_id} platform {stop_id}",
                    ),
                )
            )
    else:
        # A station without explicit platforms is a single platform sharing its id.
        platforms.append(
            PlatformSpec(
                stop_id=station_id,
                directions=_parse_directions(
                    raw.get("directions", list(DIRECTIONS)), f"Station {station_id}"
                ),
            )
        )

    return LogicalStation(id=station_id, name=name.strip(), platforms=tuple(platforms))


def _parse_track(raw: Any, line_id: str) -> Tuple[TrackStation, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"Line {line_id} track must be a list.")
    track: List[TrackStation] = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ConfigError(f"Line {line_id} has an invalid track entry.")
        position = _safe_float(entry.get("position"))
        if position is None or not 0 <= position <= 100:
            raise ConfigError(f"Line {line_id} track position must be within 0-100.")
        track.append(
            TrackStation(
                stop_id=str(entry.get("stop_id") or "").strip(),
                name=str(entry.get("name") or "").strip(),
                position=position,
                latitude=_safe_float(entry.get("lat")),
                longitude=_safe_float(entry.get("lng")),
            )
        )
    track.sort(key=lambda station: station.position)
    return tuple(track)


def extract_lines(config: Dict[str, Any]) -> List[LineConfig]:
    transit = config.get("transit")
    if not isinstance(transit, dict):
        raise ConfigError("Config missing transit section.")
    lines_raw = transit.get("lines")
    if not isinstance(lines_raw, list):
        raise ConfigError("Config transit.lines must be a list.")
    feeds = transit.get("feeds", {}) if isinstance(transit.get("feeds"), dict) else {}

    lines: List[LineConfig] = []
    for line_raw in lines_raw:
        if not isinstance(line_raw, dict):
            raise ConfigError("Each line entry must be a mapping.")
        line_id = str(line_raw.get("id") or "").strip()
        if not line_id:
            raise ConfigError("Line entry missing id.")
        source = str(line_raw.get("source") or "").strip().lower()
        if source not in SOURCE_KINDS:
            raise ConfigError(f"Line {line_id} has unsupported source '{source}'.")
        stations_raw = line_raw.get("stations")
        if not isinstance(stations_raw, list) or not stations_raw:
            raise ConfigError(f"Line {line_id} must list at least one station.")
        stations = tuple(_parse_station(station, line_id) for station in stations_raw)

        feed_url = line_raw.get("feed_url")
        if not isinstance(feed_url, str) or not feed_url.strip():
            feed_key = "trip_updates_url" if source == SOURCE_GTFS_RT else "json_arrivals_url"
            feed_url = feeds.get(feed_key)
        if not isinstance(feed_url, str) or not feed_url.strip():
            raise ConfigError(f"Line {line_id} has no feed URL for source '{source}'.")

        default_station = str(line_raw.get("default_station") or stations[0].id).strip()
        if default_station not in {station.id for station in stations}:
            raise ConfigError(f"Line {line_id} default_station '{default_station}' is not a station.")

        lines.append(
            LineConfig(
                id=line_id,
                name=str(line_raw.get("name") or line_id).strip(),
                source=source,
                stations=stations,
                track=_parse_track(line_raw.get("track"), line_id),
                feed_url=feed_url.strip(),
                color=line_raw.get("color"),
                default_station=default_station,
            )
        )
    return lines


def get_vehicle_feed_url(config: Dict[str, Any]) -> Optional[str]:
    feeds = _section(_section(config, "transit"), "feeds")
    url = feeds.get("vehicle_positions_url")
    return url.strip() if isinstance(url, str) and url.strip() else None
