"""Tests for drive time, geocoding, weather and arrival HTTP fetchers."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from backend.errors import UpstreamUnavailable
from backend.fetchers import google
from backend.fetchers.google import geocode_address, get_drive_time, resolve_coordinates
from backend.fetchers.rtd import fetch_json_arrivals
from backend.fetchers.weather import get_weather

HOME = (39.9129, -104.985)
GARAGE = (39.7489, -104.9896)


def _response(payload=None, status_error=None, content=None):
    response = MagicMock()
    response.json.return_value = payload
    response.content = content
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    else:
        response.raise_for_status.return_value = None
    return response


class TestDriveTime:
    @patch("backend.fetchers.google.requests.post")
    def test_provider_failure_returns_estimate(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("boom")

        result = get_drive_time(HOME, GARAGE, api_key="key")

        assert result == {
            "minutes": 30,
            "distance_miles": 15,
            "description": "Estimated",
            "is_fallback": True,
        }

    @patch("backend.fetchers.google.requests.post")
    def test_success(self, mock_post):
        mock_post.return_value = _response(
            {"routes": [{"duration": "1845s", "distanceMeters": 24140, "description": "I-25 S"}]}
        )

        result = get_drive_time(HOME, GARAGE, avoid_highways=True, api_key="key", timeout_seconds=4)

        assert result == {
            "minutes": 31,
            "distance_miles": 15,
            "description": "I-25 S",
            "is_fallback": False,
        }
        _, kwargs = mock_post.call_args
        assert kwargs["timeout"] == 4
        assert kwargs["json"]["routeModifiers"]["avoidHighways"] is True
        assert kwargs["headers"]["X-Goog-Api-Key"] == "key"

    @patch("backend.fetchers.google.requests.post")
    def test_empty_routes_returns_estimate(self, mock_post):
        mock_post.return_value = _response({"routes": []})
        assert get_drive_time(HOME, GARAGE, api_key="key")["is_fallback"] is True

    @patch("backend.fetchers.google.requests.post")
    def test_http_error_returns_estimate(self, mock_post):
        mock_post.return_value = _response({}, status_error=requests.HTTPError("403"))
        assert get_drive_time(HOME, GARAGE, api_key="key")["description"] == "Estimated"

    def test_missing_coordinates_returns_estimate(self):
        assert get_drive_time(None, GARAGE)["is_fallback"] is True


class TestGeocode:
    def setup_method(self):
        google._GEOCODE_CACHE.clear()

    @patch("backend.fetchers.google.requests.get")
    def test_geocode_is_cached(self, mock_get):
        mock_get.return_value = _response(
            {"results": [{"geometry": {"location": {"lat": 39.74, "lng": -104.99}}}]}
        )

        assert geocode_address("707 17th Street", api_key="key") == (39.74, -104.99)
        assert geocode_address("707 17th Street", api_key="key") == (39.74, -104.99)
        mock_get.assert_called_once()

    @patch("backend.fetchers.google.requests.get")
    def test_no_results(self, mock_get):
        mock_get.return_value = _response({"results": [], "status": "ZERO_RESULTS"})
        assert geocode_address("nowhere", api_key="key") is None

    @patch("backend.fetchers.google.requests.get")
    def test_network_failure(self, mock_get):
        mock_get.side_effect = requests.Timeout("slow")
        assert geocode_address("somewhere", api_key="key") is None

    @patch("backend.fetchers.google.requests.get")
    def test_resolve_prefers_configured_coordinates(self, mock_get):
        assert resolve_coordinates({"lat": 1.5, "lng": 2.5, "address": "x"}) == (1.5, 2.5)
        mock_get.assert_not_called()


class TestWeather:
    @patch("backend.fetchers.weather.requests.get")
    def test_success(self, mock_get):
        mock_get.return_value = _response(
            {
                "main": {"temp": 61.6, "feels_like": 59.2, "humidity": 40},
                "weather": [{"description": "clear sky", "icon": "01d"}],
                "wind": {"speed": 7.4},
            }
        )

        report = get_weather(39.9, -104.98, api_key="key")

        assert report == {
            "temp_f": 62,
            "feels_like_f": 59,
            "description": "clear sky",
            "icon": "01d",
            "humidity_pct": 40,
            "wind_mph": 7,
            "is_fallback": False,
        }
        _, kwargs = mock_get.call_args
        assert kwargs["params"]["units"] == "imperial"

    @patch("backend.fetchers.weather.requests.get")
    def test_timeout_returns_fallback(self, mock_get):
        mock_get.side_effect = requests.Timeout("slow")

        report = get_weather(39.9, -104.98, api_key="key")

        assert report["is_fallback"] is True
        assert report["temp_f"] == 50
        assert report["feels_like_f"] == 48
        assert report["description"] == "Unavailable"
        assert report["humidity_pct"] == 50
        assert report["wind_mph"] == 5

    @patch("backend.fetchers.weather.requests.get")
    def test_malformed_payload_returns_fallback(self, mock_get):
        mock_get.return_value = _response({"cod": 401})
        assert get_weather(39.9, -104.98, api_key="key")["is_fallback"] is True


class TestJsonArrivalsFetch:
    @patch("backend.fetchers.rtd.requests.get")
    def test_fetch_decodes(self, mock_get):
        mock_get.return_value = _response(
            content=b'{"arrivals": [{"routeId": "117N", "directionId": 0, "arrivalTime": 1700000000}]}'
        )

        feed = fetch_json_arrivals("https://example.test/api/rtd/arrivals/", "35254", 5)

        assert len(feed.arrivals) == 1
        args, kwargs = mock_get.call_args
        assert args[0] == "https://example.test/api/rtd/arrivals/35254"
        assert kwargs["timeout"] == 5

    @patch("backend.fetchers.rtd.requests.get")
    def test_network_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("down")
        with pytest.raises(UpstreamUnavailable):
            fetch_json_arrivals("https://example.test", "35254", 5)

    @patch("backend.fetchers.rtd.requests.get")
    def test_non_2xx(self, mock_get):
        mock_get.return_value = _response(status_error=requests.HTTPError("500"))
        with pytest.raises(UpstreamUnavailable):
            fetch_json_arrivals("https://example.test", "35254", 5)
