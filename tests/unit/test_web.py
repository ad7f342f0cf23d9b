from dataclasses import replace
from unittest.mock import MagicMock

import pandas as pd
import pytest

from pelagic_tracks.errors import AllTiersFailedError, UpstreamError
from pelagic_tracks.live import parse_live_locations
from pelagic_tracks.service import TripQueryResult, TripService
from pelagic_tracks.trips import reconstruct_trips
from pelagic_tracks.web import create_app

SNAPSHOT = "\n".join([
    "Trip,Time,Lat,Lng,IMEI",
    "T1,2025-02-01 06:00:00+00,-6.1,39.2,111",
    "T2,2025-02-02 12:00:00+00,-6.3,39.4,222",
    "T3,2025-02-05 12:00:00+00,-6.3,39.4,111",
]) + "\n"


@pytest.fixture
def service():
    service = MagicMock(spec=TripService)
    service.cache_stats.return_value = {"hits": 3, "misses": 1, "hit_rate": "75.0%"}
    service.clear_cache.return_value = 4
    return service


@pytest.fixture
def app(settings, service, tmp_path):
    path = tmp_path / "snapshot.csv"
    path.write_text(SNAPSHOT)
    app = create_app(replace(settings, snapshot_path=str(path)), service)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json()["status"] == "ok"


class TestFallbackPoints:
    def test_filters_by_window_and_device(self, client):
        response = client.get("/fallback/points?dateFrom=2025-02-01&dateTo=2025-02-02&imeis=111")
        assert response.status_code == 200
        records = response.get_json()
        assert [r["tripId"] for r in records] == ["T1"]
        assert records[0]["imei"] == "111"

    def test_all_devices(self, client):
        response = client.get("/fallback/points?dateFrom=2025-02-01&dateTo=2025-02-02")
        assert [r["tripId"] for r in response.get_json()] == ["T1", "T2"]

    def test_accepts_full_timestamps(self, client):
        response = client.get("/fallback/points?dateFrom=2025-02-01T00:00:00Z&dateTo=2025-02-02T00:00:00Z")
        assert response.status_code == 200

    def test_missing_dates(self, client):
        response = client.get("/fallback/points?dateFrom=2025-02-01")
        assert response.status_code == 400
        assert "dateTo" in response.get_json()["error"]

    def test_inverted_dates(self, client):
        response = client.get("/fallback/points?dateFrom=2025-02-03&dateTo=2025-02-01")
        assert response.status_code == 400

    def test_no_snapshot(self, settings, service):
        app = create_app(settings, service)
        response = app.test_client().get("/fallback/points?dateFrom=2025-02-01&dateTo=2025-02-02")
        assert response.status_code == 404

    def test_bad_snapshot(self, settings, service, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("Trip,Time\nT1,2025-02-01 06:00:00+00\n")
        app = create_app(replace(settings, snapshot_path=str(path)), service)
        response = app.test_client().get("/fallback/points?dateFrom=2025-02-01&dateTo=2025-02-02")
        assert response.status_code == 500
        assert "Lat" in response.get_json()["details"]

    def test_undecodable_snapshot_is_json_error(self, settings, service, tmp_path):
        path = tmp_path / "snapshot.csv"
        path.write_bytes(b"\xff\xfeT\x00r\x00i\x00p\x00\n\x00")
        app = create_app(replace(settings, snapshot_path=str(path)), service)
        response = app.test_client().get("/fallback/points?dateFrom=2025-02-01&dateTo=2025-02-02")
        assert response.status_code == 500
        assert response.is_json
        assert response.get_json()["error"] == "Failed to read fallback snapshot"

    def test_parquet_directory(self, settings, service, tmp_path):
        frame = pd.DataFrame({
            "Trip": ["T1", "T2"],
            "Time": ["2025-02-01 06:00:00+00", "2025-02-09 06:00:00+00"],
            "Lat": [-6.1, -6.2],
            "Lng": [39.2, 39.3],
            "IMEI": ["111", "111"],
        })
        frame.to_parquet(tmp_path / "tracks.parquet", index=False)
        app = create_app(replace(settings, snapshot_path=str(tmp_path)), service)
        response = app.test_client().get("/fallback/points?dateFrom=2025-02-01&dateTo=2025-02-02&imeis=111")
        assert [r["tripId"] for r in response.get_json()] == ["T1"]


class TestTripsApi:
    def test_trips(self, client, service, make_point):
        points = [make_point("A", minutes=0), make_point("A", minutes=10, range_m=500)]
        service.get_trips.return_value = TripQueryResult(points=points, trips=reconstruct_trips(points))

        response = client.get("/api/trips?dateFrom=2025-02-01&dateTo=2025-02-03&imeis=864000000000001")

        assert response.status_code == 200
        body = response.get_json()
        assert len(body["points"]) == 2
        assert body["trips"][0]["id"] == "A"
        assert body["trips"][0]["duration_seconds"] == 600
        assert body["trips"][0]["start_time"] == "2025-02-02T15:00:00+00:00"
        args = service.get_trips.call_args.args
        assert args[2] == ["864000000000001"]

    def test_bad_date(self, client):
        assert client.get("/api/trips?dateFrom=yesterday&dateTo=2025-02-03").status_code == 400

    def test_upstream_failure(self, client, service):
        service.get_trips.side_effect = AllTiersFailedError([UpstreamError("down")])
        response = client.get("/api/trips?dateFrom=2025-02-01&dateTo=2025-02-03")
        assert response.status_code == 502
        assert "All data sources failed" in response.get_json()["error"]


class TestLiveLocationsApi:
    def test_live_locations(self, client, service):
        service.get_live_locations.return_value = parse_live_locations([
            {"imei": "111", "lat": 1.5, "lng": 2.5, "lastGpsTs": 1738508513},
        ])
        response = client.get("/api/live-locations?imeis=111")
        assert response.status_code == 200
        [loc] = response.get_json()
        assert loc["imei"] == "111"
        assert loc["last_gps_ts"] == "2025-02-02T15:01:53+00:00"

    def test_failure(self, client, service):
        service.get_live_locations.side_effect = UpstreamError("live down", status=503)
        assert client.get("/api/live-locations").status_code == 502

    def test_non_numeric_imei(self, client, service):
        service.get_live_locations.side_effect = ValueError("IMEIs must be numeric: abc")
        response = client.get("/api/live-locations?imeis=abc")
        assert response.status_code == 400
        assert "abc" in response.get_json()["error"]


class TestCacheEndpoints:
    def test_stats(self, client):
        assert client.get("/cache-stats").get_json()["hit_rate"] == "75.0%"

    def test_clear(self, client, service):
        response = client.post("/cache-clear")
        assert response.get_json() == {"status": "ok", "cleared": 4}
        service.clear_cache.assert_called_once()
