from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, Optional, Tuple, TypedDict

import requests

from backend.errors import UpstreamUnavailable


logger = logging.getLogger(__name__)

ROUTES_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
ROUTES_FIELD_MASK = "routes.duration,routes.distanceMeters,routes.staticDuration,routes.description"

REQUEST_TIMEOUT_SECONDS = 10
MILES_PER_METER = 0.000621371


class DriveTime(TypedDict):
    minutes: int
    distance_miles: float
    description: str
    is_fallback: bool


FALLBACK_DRIVE_TIME: DriveTime = {
    "minutes": 30,
    "distance_miles": 15,
    "description": "Estimated",
    "is_fallback": True,
}

_GEOCODE_CACHE: Dict[str, Tuple[float, float]] = {}
_GEOCODE_LOCK = threading.Lock()


def _api_key(api_key: Optional[str]) -> Optional[str]:
    return api_key if api_key is not None else os.environ.get("GOOGLE_MAPS_API_KEY")


def _waypoint(lat: float, lng: float) -> Dict[str, Any]:
    return {"location": {"latLng": {"latitude": lat, "longitude": lng}}}


def _parse_duration_seconds(value: Any) -> int:
    # The Routes API encodes durations as strings like "1234s".
    if isinstance(value, str):
        value = value.strip().rstrip("s")
    return int(float(value))


def fetch_route(
    origin: Tuple[float, float],
    destination: Tuple[float, float],
    avoid_highways: bool = False,
    api_key: Optional[str] = None,
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
) -> DriveTime:
    body = {
        "origin": _waypoint(*origin),
        "destination": _waypoint(*destination),
        "travelMode": "DRIVE",
        "routingPreference": "TRAFFIC_AWARE",
        "computeAlternativeRoutes": False,
        "routeModifiers": {
            "avoidTolls": False,
            "avoidHighways": bool(avoid_highways),
            "avoidFerries": True,
        },
        "languageCode": "en-US",
        "units": "IMPERIAL",
    }
    headers = {
        "Content-Type": "application/json",
        "X-Goog-Api-Key": _api_key(api_key) or "",
        "X-Goog-FieldMask": ROUTES_FIELD_MASK,
    }
    try:
        response = requests.post(ROUTES_URL, json=body, headers=headers, timeout=timeout_seconds)
        response.raise_for_status()
        payload = response.json()
    except requests.RequestException as exc:
        raise UpstreamUnavailable(f"Routes request failed: {exc}") from exc
    except ValueError as exc:
        raise UpstreamUnavailable("Routes response was not valid JSON.") from exc

    routes = payload.get("routes") if isinstance(payload, dict) else None
    if not isinstance(routes, list) or not routes:
        raise UpstreamUnavailable("Routes response contained no routes.")
    route = routes[0]
    try:
        duration_seconds = _parse_duration_seconds(route["duration"])
        distance_meters = float(route.get("distanceMeters", 0))
    except (KeyError, TypeError, ValueError) as exc:
        raise UpstreamUnavailable("Malformed route in Routes response.") from exc

    return {
        "minutes": int(round(duration_seconds / 60)),
        "distance_miles": round(distance_meters * MILES_PER_METER),
        "description": str(route.get("description") or ""),
        "is_fallback": False,
    }


def get_drive_time(
    origin: Optional[Tuple[float, float]],
    destination: Optional[Tuple[float, float]],
    avoid_highways: bool = False,
    api_key: Optional[str] = None,
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
) -> DriveTime:
    """Drive time between two coordinates, or the fixed estimate on any failure."""

    if origin is None or destination is None:
        logger.warning("Drive time requested without coordinates; using estimate.")
        return dict(FALLBACK_DRIVE_TIME)  # type: ignore[return-value]
    try:
        return fetch_route(origin, destination, avoid_highways, api_key, timeout_seconds)
    except Exception as exc:  # Any failure degrades to the estimate
        logger.error("Drive time API failed, using fallback: %s", exc)
        return dict(FALLBACK_DRIVE_TIME)  # type: ignore[return-value]


def geocode_address(
    address: str,
    api_key: Optional[str] = None,
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
) -> Optional[Tuple[float, float]]:
    key = address.strip()
    if not key:
        return None
    with _GEOCODE_LOCK:
        cached = _GEOCODE_CACHE.get(key)
    if cached is not None:
        return cached

    try:
        response = requests.get(
            GEOCODE_URL,
            params={"address": key, "key": _api_key(api_key) or ""},
            timeout=timeout_seconds,
        )
        response.raise_for_status()
        payload = response.json()
        location = payload["results"][0]["geometry"]["location"]
        coords = (float(location["lat"]), float(location["lng"]))
    except requests.RequestException as exc:
        logger.error("Geocoding failed for %s: %s", key, exc)
        return None
    except (KeyError, IndexError, TypeError, ValueError):
        logger.warning("Geocoding returned no result for %s.", key)
        return None

    with _GEOCODE_LOCK:
        _GEOCODE_CACHE[key] = coords
    return coords


def resolve_coordinates(
    location: Dict[str, Any],
    api_key: Optional[str] = None,
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
) -> Optional[Tuple[float, float]]:
    lat, lng = location.get("lat"), location.get("lng")
    if lat is not None and lng is not None:
        return float(lat), float(lng)
    address = location.get("address")
    if isinstance(address, str) and address.strip():
        return geocode_address(address, api_key, timeout_seconds)
    return None
