from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flask import Flask, abort, jsonify, request
from flask_cors import CORS

from backend.board import board_to_dict, line_to_dict
from backend.cache import Cache
from backend.config import (
    extract_lines,
    get_board_size,
    get_display_thresholds,
    get_http_timeout,
    get_location,
    get_poll_intervals,
    get_preferences_path,
    get_timezone,
    get_vehicle_feed_url,
    load_config,
    missing_credentials,
)
from backend.errors import ConfigError, DecodeError, UpstreamUnavailable
from backend.fetchers.google import FALLBACK_DRIVE_TIME, get_drive_time, resolve_coordinates
from backend.fetchers.rtd import fetch_vehicle_positions
from backend.fetchers.weather import FALLBACK_WEATHER, get_weather
from backend.health import get_health_status
from backend.models import LineConfig
from backend.preferences import PreferenceStore, PreferencesError
from backend.scheduler import FeedScheduler
from backend.track import place_vehicles
from backend.transit import refresh_lines


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

cache = Cache()
scheduler = FeedScheduler()

_PREFERENCE_STORE: Optional[PreferenceStore] = None
_PREFERENCE_LOCK = threading.Lock()


def _default_stations(lines: List[LineConfig]) -> Dict[str, str]:
    return {line.id: line.default_station or line.stations[0].id for line in lines}


def get_preference_store(config: Optional[Dict[str, Any]] = None) -> PreferenceStore:
    global _PREFERENCE_STORE
    with _PREFERENCE_LOCK:
        if _PREFERENCE_STORE is None:
            config = config if config is not None else load_config()
            _PREFERENCE_STORE = PreferenceStore(
                get_preferences_path(config),
                default_stations=_default_stations(extract_lines(config)),
            )
        return _PREFERENCE_STORE


def _compute_staleness_seconds(last_updated: Any, now: int) -> Optional[int]:
    if not isinstance(last_updated, int):
        return None
    return max(0, now - last_updated)


def _format_iso_utc(timestamp: Optional[int]) -> Optional[str]:
    if not isinstance(timestamp, int):
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def fetch_transit_task() -> None:
    sequence = cache.next_sequence("transit")
    try:
        config = load_config()
        lines = extract_lines(config)
        snapshot = refresh_lines(
            lines,
            timezone=get_timezone(config),
            cap=get_board_size(config),
            timeout_seconds=get_http_timeout(config),
        )
        if cache.set("transit", snapshot, sequence=sequence):
            logger.info("Transit: Built boards for %s lines", len(snapshot))
    except Exception as exc:
        cache.record_error("transit", str(exc))
        logger.error("Transit fetch failed: %s", exc)


def fetch_vehicles_task() -> None:
    sequence = cache.next_sequence("vehicles")
    try:
        config = load_config()
        url = get_vehicle_feed_url(config)
        if url is None:
            raise ConfigError("transit.feeds.vehicle_positions_url is not configured.")
        try:
            fixes, feed_timestamp = fetch_vehicle_positions(url, get_http_timeout(config))
        except (UpstreamUnavailable, DecodeError) as exc:
            cache.set(
                "vehicles",
                {"vehicles": (), "feed_timestamp": None, "is_fallback": True},
                sequence=sequence,
            )
            cache.record_error("vehicles", str(exc))
            logger.warning("Vehicle positions unavailable: %s", exc)
            return
        data = {"vehicles": tuple(fixes), "feed_timestamp": feed_timestamp, "is_fallback": False}
        if cache.set("vehicles", data, sequence=sequence):
            logger.info("Vehicles: Fetched %s positions", len(fixes))
    except Exception as exc:
        cache.record_error("vehicles", str(exc))
        logger.error("Vehicle fetch failed: %s", exc)


def fetch_weather_task() -> None:
    sequence = cache.next_sequence("weather")
    try:
        config = load_config()
        weather = config.get("weather", {}) if isinstance(config.get("weather"), dict) else {}
        location = get_location(config, str(weather.get("location", "home")))
        timeout_seconds = get_http_timeout(config)
        coords = resolve_coordinates(location, timeout_seconds=timeout_seconds)
        lat, lon = coords if coords is not None else (None, None)
        report = get_weather(lat, lon, timeout_seconds=timeout_seconds)
        if cache.set("weather", report, sequence=sequence):
            logger.info("Weather: %s°F, %s", report["temp_f"], report["description"])
    except Exception as exc:
        cache.record_error("weather", str(exc))
        logger.error("Weather fetch failed: %s", exc)


def fetch_drive_task() -> None:
    sequence = cache.next_sequence("drive")
    try:
        config = load_config()
        drive = config.get("drive", {}) if isinstance(config.get("drive"), dict) else {}
        legs = drive.get("legs", {}) if isinstance(drive.get("legs"), dict) else {}
        timeout_seconds = get_http_timeout(config)
        avoid_highways = get_preference_store(config).get()["avoid_highways"]

        results: Dict[str, Any] = {}
        for leg_name, leg in legs.items():
            if not isinstance(leg, dict):
                continue
            origin = resolve_coordinates(get_location(config, str(leg.get("origin"))), timeout_seconds=timeout_seconds)
            destination = resolve_coordinates(
                get_location(config, str(leg.get("destination"))), timeout_seconds=timeout_seconds
            )
            results[leg_name] = get_drive_time(
                origin, destination, avoid_highways, timeout_seconds=timeout_seconds
            )
        results["avoid_highways"] = avoid_highways
        if cache.set("drive", results, sequence=sequence):
            logger.info("Drive: Fetched %s legs", len(results) - 1)
    except Exception as exc:
        cache.record_error("drive", str(exc))
        logger.error("Drive time fetch failed: %s", exc)


FEED_TASKS = {
    "transit": fetch_transit_task,
    "vehicles": fetch_vehicles_task,
    "weather": fetch_weather_task,
    "drive": fetch_drive_task,
}


def _envelope(entry: Dict[str, Any], data: Any, now: int) -> Dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "last_updated": entry["last_updated"],
        "staleness_seconds": _compute_staleness_seconds(entry["last_updated"], now),
    }


def _find_line(lines: List[LineConfig], line_id: str) -> LineConfig:
    for line in lines:
        if line.id == line_id:
            return line
    abort(404, description=f"Unknown line {line_id}")


@app.route("/api/transit")
def api_transit() -> Any:
    entry = cache.get("transit")
    now = int(time.time())
    snapshot = entry["data"] or {}
    data = {line_id: line_to_dict(boards, now) for line_id, boards in snapshot.items()}
    return jsonify(_envelope(entry, data, now))


@app.route("/api/transit/<line_id>")
def api_transit_line(line_id: str) -> Any:
    config = load_config()
    line = _find_line(extract_lines(config), line_id)
    selected = get_preference_store(config).get()["selected_station"].get(line.id, line.default_station)

    entry = cache.get("transit")
    now = int(time.time())
    boards = (entry["data"] or {}).get(line.id, {})
    stations = [board_to_dict(boards[station.id], now) for station in line.stations if station.id in boards]
    data = {
        "line": {"id": line.id, "name": line.name, "color": line.color},
        "selected_station": selected,
        "selected": board_to_dict(boards[selected], now) if selected in boards else None,
        "stations": stations,
    }
    return jsonify(_envelope(entry, data, now))


@app.route("/api/vehicles")
def api_vehicles() -> Any:
    config = load_config()
    lines = extract_lines(config)
    entry = cache.get("vehicles")
    now = int(time.time())
    payload = entry["data"] or {"vehicles": (), "feed_timestamp": None, "is_fallback": True}

    by_line: Dict[str, List[Dict[str, Any]]] = {}
    for line in lines:
        by_line[line.id] = [
            {
                "label": fix.label,
                "route_id": fix.route_id,
                "direction_id": fix.direction_id,
                "trip_id": fix.trip_id,
                "lat": fix.latitude,
                "lng": fix.longitude,
                "track_position": position,
            }
            for fix, position in place_vehicles(payload["vehicles"], line)
        ]
    data = {
        "lines": by_line,
        "route_summary": {line_id: len(vehicles) for line_id, vehicles in by_line.items()},
        "feed_age_seconds": _compute_staleness_seconds(payload["feed_timestamp"], now),
        "is_fallback": payload["is_fallback"],
    }
    return jsonify(_envelope(entry, data, now))


@app.route("/api/weather")
def api_weather() -> Any:
    entry = cache.get("weather")
    now = int(time.time())
    return jsonify(_envelope(entry, entry["data"] or dict(FALLBACK_WEATHER), now))


@app.route("/api/drive")
def api_drive() -> Any:
    entry = cache.get("drive")
    now = int(time.time())
    data = entry["data"] or {
        "morning": dict(FALLBACK_DRIVE_TIME),
        "evening": dict(FALLBACK_DRIVE_TIME),
        "avoid_highways": get_preference_store().get()["avoid_highways"],
    }
    return jsonify(_envelope(entry, data, now))


@app.route("/api/preferences", methods=["GET"])
def api_preferences() -> Any:
    return jsonify({"success": True, "data": get_preference_store().get()})


@app.route("/api/preferences", methods=["PUT"])
def api_update_preferences() -> Any:
    changes = request.get_json(silent=True)
    if not isinstance(changes, dict):
        return jsonify({"success": False, "error": "Body must be a JSON object."}), 400

    config = load_config()
    store = get_preference_store(config)
    valid_stations = {line.id: {station.id for station in line.stations} for line in extract_lines(config)}
    previous = store.get()
    try:
        updated = store.update(changes, valid_stations=valid_stations)
    except PreferencesError as exc:
        return jsonify({"success": False, "error": str(exc)}), 400

    if updated["avoid_highways"] != previous["avoid_highways"] and "drive" in scheduler.job_names():
        scheduler.run_now("drive")
    return jsonify({"success": True, "data": updated})


@app.route("/api/refresh", methods=["POST"])
def api_refresh() -> Any:
    started = [thread.name for thread in scheduler.run_all_now()]
    return jsonify({"success": True, "started": started}), 202


def _build_frontend_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a small, read-only subset of config.yaml for the frontend."""

    display = config.get("display", {}) if isinstance(config.get("display"), dict) else {}
    intervals = get_poll_intervals(config)
    warning, critical = get_display_thresholds(config)
    return {
        "display": {
            "refresh_interval_ms": max(1000, int(display.get("refresh_interval_ms", 15000) or 15000)),
            "staleness_warning_sec": warning,
            "staleness_critical_sec": critical,
        },
        "refresh_intervals": intervals,
        "timezone": get_timezone(config),
        "lines": [
            {
                "id": line.id,
                "name": line.name,
                "color": line.color,
                "default_station": line.default_station,
                "stations": [
                    {
                        "id": station.id,
                        "name": station.name,
                        "directions": list(station.directions),
                    }
                    for station in line.stations
                ],
                "track": [
                    {"stop_id": stop.stop_id, "name": stop.name, "position": stop.position}
                    for stop in line.track
                ],
            }
            for line in extract_lines(config)
        ],
    }


@app.route("/api/config")
def api_config() -> Any:
    config = load_config()
    return jsonify({"success": True, "data": _build_frontend_config(config)})


@app.route("/health")
def health_alias() -> Any:
    return api_health()


@app.route("/api/health")
def api_health() -> Any:
    config = load_config()
    warning, critical = get_display_thresholds(config)
    warnings = [f"{name} is not set" for name in missing_credentials()]
    status = get_health_status(cache, warning, critical, warnings=warnings)
    status["server_time"] = _format_iso_utc(int(time.time()))
    return jsonify(status)


def _log_startup_health(config: Dict[str, Any]) -> None:
    warning, critical = get_display_thresholds(config)
    status = get_health_status(cache, warning, critical)
    logger.info("Health status at startup: %s", status["status"])


def main() -> None:
    try:
        config = load_config()
        extract_lines(config)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        return

    for name in missing_credentials():
        logger.warning("%s not found in environment; requests will use fallbacks.", name)

    get_preference_store(config)
    intervals = get_poll_intervals(config)

    logger.info("Starting background scheduler...")
    for name, task in FEED_TASKS.items():
        scheduler.register(name, task, intervals[name])
    scheduler.start()

    logger.info("Fetching initial data for %s...", ", ".join(FEED_TASKS))
    for thread in scheduler.run_all_now():
        thread.join()

    _log_startup_health(config)

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "5000"))
    logger.info("Flask server starting on http://%s:%s", host, port)
    try:
        app.run(host=host, port=port)
    finally:
        scheduler.shutdown()


if __name__ == "__main__":
    main()
