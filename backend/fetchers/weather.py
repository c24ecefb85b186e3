from __future__ import annotations

import logging
import os
from typing import Optional, TypedDict

import requests

from backend.errors import UpstreamUnavailable


logger = logging.getLogger(__name__)

WEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"
REQUEST_TIMEOUT_SECONDS = 10


class WeatherReport(TypedDict):
    temp_f: int
    feels_like_f: int
    description: str
    icon: str
    humidity_pct: int
    wind_mph: int
    is_fallback: bool


FALLBACK_WEATHER: WeatherReport = {
    "temp_f": 50,
    "feels_like_f": 48,
    "description": "Unavailable",
    "icon": "01d",
    "humidity_pct": 50,
    "wind_mph": 5,
    "is_fallback": True,
}


def fetch_weather(
    lat: float,
    lon: float,
    api_key: Optional[str] = None,
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
) -> WeatherReport:
    key = api_key if api_key is not None else os.environ.get("OPENWEATHER_API_KEY")
    try:
        response = requests.get(
            WEATHER_URL,
            params={"lat": lat, "lon": lon, "appid": key or "", "units": "imperial"},
            timeout=timeout_seconds,
        )
        response.raise_for_status()
        payload = response.json()
    except requests.RequestException as exc:
        raise UpstreamUnavailable(f"Weather request failed: {exc}") from exc
    except ValueError as exc:
        raise UpstreamUnavailable("Weather response was not valid JSON.") from exc

    try:
        main = payload["main"]
        conditions = payload["weather"][0]
        return {
            "temp_f": int(round(float(main["temp"]))),
            "feels_like_f": int(round(float(main["feels_like"]))),
            "description": str(conditions.get("description", "")),
            "icon": str(conditions.get("icon", "")),
            "humidity_pct": int(main.get("humidity", 0)),
            "wind_mph": int(round(float(payload.get("wind", {}).get("speed", 0)))),
            "is_fallback": False,
        }
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise UpstreamUnavailable("Malformed weather response.") from exc


def get_weather(
    lat: Optional[float],
    lon: Optional[float],
    api_key: Optional[str] = None,
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
) -> WeatherReport:
    if lat is None or lon is None:
        logger.warning("Weather requested without coordinates; using fallback.")
        return dict(FALLBACK_WEATHER)  # type: ignore[return-value]
    try:
        return fetch_weather(lat, lon, api_key, timeout_seconds)
    except Exception as exc:  # Any failure degrades to the fallback report
        logger.error("Weather API failed, using fallback: %s", exc)
        return dict(FALLBACK_WEATHER)  # type: ignore[return-value]
