"""Tests for the Flask API and scheduled feed tasks."""

import copy
import time
from unittest.mock import MagicMock, patch

import pytest

import backend.app as app_module
from backend.board import build_board
from backend.cache import Cache
from backend.errors import UpstreamUnavailable
from backend.fetchers.google import FALLBACK_DRIVE_TIME
from backend.models import AggregatedArrivals, MergedArrival, VehicleFix

CONFIG = {
    "display": {"staleness_warning_sec": 60, "staleness_critical_sec": 120},
    "locations": {
        "home": {"name": "Home", "lat": 39.91, "lng": -104.98},
        "garage": {"name": "Garage", "lat": 39.75, "lng": -104.99},
    },
    "weather": {"location": "home"},
    "drive": {
        "legs": {
            "morning": {"origin": "home", "destination": "garage"},
            "evening": {"origin": "garage", "destination": "home"},
        }
    },
    "transit": {
        "feeds": {
            "json_arrivals_url": "https://example.test/arrivals",
            "vehicle_positions_url": "https://example.test/VehiclePosition.pb",
        },
        "lines": [
            {
                "id": "117N",
                "name": "N Line",
                "source": "json",
                "default_station": "35254",
                "stations": [
                    {"id": "35365", "name": "Eastlake & 124th", "directions": ["southbound"]},
                    {"id": "35254", "name": "112th / Northglenn"},
                ],
                "track": [
                    {"stop_id": "35254", "name": "112th", "position": 20, "lat": 0.0, "lng": 0.0},
                    {"stop_id": "35365", "name": "124th", "position": 70, "lat": 0.0, "lng": 1.0},
                ],
            }
        ],
    },
}


@pytest.fixture
def config(tmp_path):
    data = copy.deepcopy(CONFIG)
    data["preferences"] = {"path": str(tmp_path / "prefs.yaml")}
    return data


@pytest.fixture
def client(config, monkeypatch):
    monkeypatch.setattr(app_module, "load_config", lambda *args, **kwargs: copy.deepcopy(config))
    monkeypatch.setattr(app_module, "cache", Cache())
    monkeypatch.setattr(app_module, "scheduler", MagicMock())
    monkeypatch.setattr(app_module, "_PREFERENCE_STORE", None)
    app_module.app.config["TESTING"] = True
    return app_module.app.test_client()


def _arrival(now, offset, direction_id):
    return MergedArrival(
        route_id="117N",
        trip_id=f"t{offset}",
        direction_id=direction_id,
        epoch_seconds=now + offset,
        platform_id="35254",
        minutes_away=offset // 60,
        time_formatted="5:07 PM",
        status="Scheduled",
    )


def _snapshot(now):
    return {
        "117N": {
            "35365": build_board(AggregatedArrivals(), "35365", "Eastlake & 124th", now),
            "35254": build_board(
                AggregatedArrivals(northbound=(_arrival(now, 400, 0),), southbound=(_arrival(now, 60, 1),)),
                "35254",
                "112th / Northglenn",
                now,
            ),
        }
    }


def test_transit_empty(client):
    response = client.get("/api/transit")
    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["data"] == {}
    assert body["last_updated"] is None


def test_transit_all_lines(client):
    now = int(time.time())
    app_module.cache.set("transit", _snapshot(now))

    body = client.get("/api/transit").get_json()

    board = body["data"]["117N"]["35254"]
    assert board["next_northbound"]["minutes_away"] == 7
    assert board["next_northbound"]["status"] == "Scheduled"
    assert board["next_southbound"]["status"] == "Arriving"
    assert body["data"]["117N"]["35365"]["no_upcoming_service"] is True
    assert body["staleness_seconds"] >= 0


def test_transit_line_uses_selected_station(client):
    now = int(time.time())
    app_module.cache.set("transit", _snapshot(now))

    body = client.get("/api/transit/117N").get_json()["data"]

    assert body["line"]["name"] == "N Line"
    assert body["selected_station"] == "35254"
    assert body["selected"]["station_name"] == "112th / Northglenn"
    assert [board["station_id"] for board in body["stations"]] == ["35365", "35254"]


def test_transit_unknown_line(client):
    assert client.get("/api/transit/999X").status_code == 404


def test_vehicles_track_positions(client):
    now = int(time.time())
    app_module.cache.set(
        "vehicles",
        {
            "vehicles": (
                VehicleFix("117N", 0, 0.0, 0.5, "4012", "trip-1"),
                VehicleFix("113G", 1, 5.0, 5.0, "3101"),
            ),
            "feed_timestamp": now - 5,
            "is_fallback": False,
        },
    )

    body = client.get("/api/vehicles").get_json()["data"]

    vehicles = body["lines"]["117N"]
    assert len(vehicles) == 1
    assert vehicles[0]["track_position"] == pytest.approx(45)
    assert vehicles[0]["label"] == "4012"
    assert body["route_summary"] == {"117N": 1}
    assert body["feed_age_seconds"] >= 5


def test_vehicles_before_first_fetch(client):
    body = client.get("/api/vehicles").get_json()["data"]
    assert body["is_fallback"] is True
    assert body["lines"] == {"117N": []}


def test_weather_fallback_before_first_fetch(client):
    data = client.get("/api/weather").get_json()["data"]
    assert data["is_fallback"] is True
    assert data["description"] == "Unavailable"


def test_drive_fallback_before_first_fetch(client):
    data = client.get("/api/drive").get_json()["data"]
    assert data["morning"] == FALLBACK_DRIVE_TIME
    assert data["avoid_highways"] is False


def test_preferences_round_trip(client):
    assert client.get("/api/preferences").get_json()["data"]["selected_station"] == {"117N": "35254"}

    response = client.put("/api/preferences", json={"theme": "light", "selected_station": {"117N": "35365"}})

    assert response.status_code == 200
    assert response.get_json()["data"]["theme"] == "light"
    assert client.get("/api/transit/117N").get_json()["data"]["selected_station"] == "35365"
    app_module.scheduler.run_now.assert_not_called()


def test_avoid_highways_change_refreshes_drive(client):
    app_module.scheduler.job_names.return_value = ["drive"]

    response = client.put("/api/preferences", json={"avoid_highways": True})

    assert response.status_code == 200
    app_module.scheduler.run_now.assert_called_once_with("drive")


@pytest.mark.parametrize(
    "body",
    [{"theme": "neon"}, {"selected_station": {"117N": "00000"}}, {"selected_station": {"999X": "35254"}}],
)
def test_preferences_validation(client, body):
    response = client.put("/api/preferences", json=body)
    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_preferences_requires_object(client):
    assert client.put("/api/preferences", json=["light"]).status_code == 400


def test_refresh(client):
    thread = MagicMock()
    thread.name = "transit-refresh"
    app_module.scheduler.run_all_now.return_value = [thread]

    response = client.post("/api/refresh")

    assert response.status_code == 202
    assert response.get_json()["started"] == ["transit-refresh"]


def test_frontend_config(client):
    data = client.get("/api/config").get_json()["data"]
    line = data["lines"][0]
    assert line["id"] == "117N"
    assert line["stations"][0]["directions"] == ["southbound"]
    assert [stop["position"] for stop in line["track"]] == [20, 70]
    assert data["refresh_intervals"]["vehicles"] == 10


def test_health_reports_missing_credentials(client, monkeypatch):
    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
    monkeypatch.setenv("OPENWEATHER_API_KEY", "abc")

    for path in ("/api/health", "/health"):
        body = client.get(path).get_json()
        assert body["warnings"] == ["GOOGLE_MAPS_API_KEY is not set"]
        assert body["status"] == "down"


class TestTasks:
    def test_transit_task_installs_snapshot(self, client):
        now = int(time.time())
        with patch("backend.app.refresh_lines", return_value=_snapshot(now)) as mock_refresh:
            app_module.fetch_transit_task()

        mock_refresh.assert_called_once()
        assert set(app_module.cache.get("transit")["data"]["117N"]) == {"35365", "35254"}

    def test_transit_task_records_error(self, client):
        with patch("backend.app.refresh_lines", side_effect=RuntimeError("boom")):
            app_module.fetch_transit_task()

        entry = app_module.cache.get("transit")
        assert entry["last_error"] == "boom"
        assert entry["data"] is None

    def test_transit_task_discards_late_result(self, client):
        stale_sequence = app_module.cache.next_sequence("transit")
        with patch("backend.app.refresh_lines", return_value={"fresh": {}}):
            app_module.fetch_transit_task()
        assert not app_module.cache.set("transit", {"stale": {}}, sequence=stale_sequence)
        assert "fresh" in app_module.cache.get("transit")["data"]

    def test_vehicles_task_falls_back(self, client):
        with patch("backend.app.fetch_vehicle_positions", side_effect=UpstreamUnavailable("down")):
            app_module.fetch_vehicles_task()

        entry = app_module.cache.get("vehicles")
        assert entry["data"]["is_fallback"] is True
        assert entry["data"]["vehicles"] == ()
        assert entry["error_count"] == 1

    def test_vehicles_task(self, client):
        fixes = [VehicleFix("117N", 0, 39.8, -104.9, "4012")]
        with patch("backend.app.fetch_vehicle_positions", return_value=(fixes, 123)):
            app_module.fetch_vehicles_task()
        data = app_module.cache.get("vehicles")["data"]
        assert data["vehicles"] == tuple(fixes)
        assert data["feed_timestamp"] == 123

    def test_weather_task(self, client):
        report = {"temp_f": 70, "description": "sunny", "is_fallback": False}
        with patch("backend.app.get_weather", return_value=report) as mock_weather:
            app_module.fetch_weather_task()

        args, _ = mock_weather.call_args
        assert args == (39.91, -104.98)
        assert app_module.cache.get("weather")["data"] == report

    def test_drive_task_uses_preferences(self, client):
        with patch("backend.app.get_drive_time", return_value=dict(FALLBACK_DRIVE_TIME)) as mock_drive:
            app_module.fetch_drive_task()

        data = app_module.cache.get("drive")["data"]
        assert set(data) == {"morning", "evening", "avoid_highways"}
        first_call = mock_drive.call_args_list[0]
        assert first_call.args[:3] == ((39.91, -104.98), (39.75, -104.99), False)
