import os
from datetime import date
from unittest.mock import MagicMock

import pandas as pd
import pytest
import requests

from pelagic_tracks.errors import SnapshotError, UpstreamError
from pelagic_tracks.models import DateRange
from pelagic_tracks.snapshot import (
    SNAPSHOT_CACHE_NAME,
    SnapshotClient,
    download_snapshot,
    find_snapshot_file,
    load_snapshot_records,
    resolve_snapshot,
)

SNAPSHOT = "\n".join([
    "Trip,Time,Lat,Lng,IMEI",
    "T1,2025-02-01 06:00:00+00,-6.1,39.2,111",
    "T1,2025-02-01 07:00:00+00,-6.2,39.3,111",
    "T2,2025-02-02 23:59:59+00,-6.3,39.4,222",
    "T3,2025-02-03 00:00:00+00,-6.4,39.5,111",
    "T0,2025-01-31 23:59:59+00,-6.5,39.6,111",
    "T4,not-a-time,-6.6,39.7,111",
]) + "\n"

RANGE = DateRange(date(2025, 2, 1), date(2025, 2, 2))


@pytest.fixture
def snapshot_file(tmp_path):
    path = tmp_path / "snapshot.csv"
    path.write_text(SNAPSHOT)
    return path


class TestLoadSnapshotRecords:
    def test_window_covers_whole_end_day(self, snapshot_file):
        records = load_snapshot_records(snapshot_file, RANGE)
        assert [r["tripId"] for r in records] == ["T1", "T1", "T2"]

    def test_device_filter(self, snapshot_file):
        records = load_snapshot_records(snapshot_file, RANGE, ["111"])
        assert {r["imei"] for r in records} == {"111"}
        assert len(records) == 2

    def test_record_shape(self, snapshot_file):
        record = load_snapshot_records(snapshot_file, RANGE, ["222"])[0]
        assert record["time"] == "2025-02-02T23:59:59+00:00"
        assert record["latitude"] == -6.3
        assert record["longitude"] == 39.4
        assert record["speed"] == 0
        assert record["deviceId"] == "222"

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("Trip,Time\nT1,2025-02-01 06:00:00+00\n")
        with pytest.raises(SnapshotError, match="Lat, Lng"):
            load_snapshot_records(path, RANGE)

    def test_no_imei_column_returns_all(self, tmp_path, caplog):
        path = tmp_path / "noimei.csv"
        path.write_text("Trip,Time,Lat,Lng\nT1,2025-02-01 06:00:00+00,-6.1,39.2\n")
        with caplog.at_level("WARNING", logger="pelagic_tracks.snapshot"):
            records = load_snapshot_records(path, RANGE, ["111"])
        assert len(records) == 1
        assert records[0]["imei"] is None
        assert "no IMEI column" in caplog.text


@pytest.fixture
def parquet_file(tmp_path):
    frame = pd.DataFrame({
        "Trip": [101, 101, 102, 103],
        "Time": pd.to_datetime([
            "2025-02-01 06:00:00",
            "2025-02-02 23:59:59",
            "2025-02-02 12:00:00",
            "2025-02-03 00:00:00",
        ]),
        "Lat": [-6.1, -6.2, -6.3, -6.4],
        "Lng": [39.2, 39.3, 39.4, 39.5],
        "imei": [864000000000001, 864000000000001, 864000000000002, 864000000000001],
    })
    path = tmp_path / "tracks.parquet"
    frame.to_parquet(path, index=False)
    return path


class TestParquetSnapshot:
    def test_records_in_window(self, parquet_file):
        records = load_snapshot_records(parquet_file, RANGE)
        assert [r["tripId"] for r in records] == ["101", "101", "102"]
        assert records[1]["time"] == "2025-02-02T23:59:59+00:00"
        assert records[0]["latitude"] == -6.1

    def test_lowercase_imei_column_filters(self, parquet_file):
        records = load_snapshot_records(parquet_file, RANGE, ["864000000000002"])
        assert [r["tripId"] for r in records] == ["102"]
        assert records[0]["imei"] == "864000000000002"

    def test_corrupt_parquet(self, tmp_path):
        path = tmp_path / "broken.parquet"
        path.write_bytes(b"not parquet at all")
        with pytest.raises(SnapshotError, match="Failed to read snapshot"):
            load_snapshot_records(path, RANGE)


class TestUnreadableSnapshot:
    def test_undecodable_csv(self, tmp_path):
        path = tmp_path / "snapshot.csv"
        path.write_bytes(b"\xff\xfeT\x00r\x00i\x00p\x00\n\x00")
        with pytest.raises(SnapshotError, match="Failed to read snapshot"):
            load_snapshot_records(path, RANGE)

    def test_empty_csv(self, tmp_path):
        path = tmp_path / "snapshot.csv"
        path.write_text("")
        with pytest.raises(SnapshotError):
            load_snapshot_records(path, RANGE)


class TestFindSnapshotFile:
    def test_missing(self, tmp_path):
        assert find_snapshot_file(None) is None
        assert find_snapshot_file(tmp_path / "nope.csv") is None

    def test_directory_picks_newest(self, tmp_path):
        old = tmp_path / "old.csv"
        new = tmp_path / "new.csv"
        old.write_text("x")
        new.write_text("y")
        os.utime(old, (1_000_000, 1_000_000))
        os.utime(new, (2_000_000, 2_000_000))
        assert find_snapshot_file(tmp_path) == new

    def test_empty_directory(self, tmp_path):
        assert find_snapshot_file(tmp_path) is None

    def test_parquet_preferred_over_newer_csv(self, tmp_path):
        parquet = tmp_path / "tracks.parquet"
        csv_file = tmp_path / "tracks.csv"
        parquet.write_bytes(b"x")
        csv_file.write_text("y")
        os.utime(parquet, (1_000_000, 1_000_000))
        os.utime(csv_file, (2_000_000, 2_000_000))
        assert find_snapshot_file(tmp_path) == parquet


class TestDownloadSnapshot:
    def test_writes_latest(self, tmp_path, make_response, parquet_file):
        response = make_response()
        response._content = parquet_file.read_bytes()
        session = MagicMock(spec=requests.Session)
        session.get.return_value = response

        path = download_snapshot("https://storage.example.test/tracks.parquet", tmp_path / "dl", session=session)

        assert path == tmp_path / "dl" / SNAPSHOT_CACHE_NAME
        assert path.read_bytes() == parquet_file.read_bytes()
        assert session.get.call_args.kwargs["timeout"] == 30.0
        assert len(load_snapshot_records(path, RANGE)) == 3

    def test_http_error(self, tmp_path, make_response):
        session = MagicMock(spec=requests.Session)
        session.get.return_value = make_response(status=403)
        with pytest.raises(SnapshotError, match="403"):
            download_snapshot("https://storage.example.test/x", tmp_path, session=session)
        assert not (tmp_path / SNAPSHOT_CACHE_NAME).exists()


class TestResolveSnapshot:
    def test_local_file_wins(self, snapshot_file):
        session = MagicMock(spec=requests.Session)
        assert resolve_snapshot(snapshot_file, "https://storage.example.test/x", session=session) == snapshot_file
        session.get.assert_not_called()

    def test_downloads_into_empty_directory(self, tmp_path, make_response):
        session = MagicMock(spec=requests.Session)
        session.get.return_value = make_response(text="Trip,Time,Lat,Lng\n")
        path = resolve_snapshot(tmp_path, "https://storage.example.test/x", session=session)
        assert path == tmp_path / SNAPSHOT_CACHE_NAME

    def test_download_failure_is_none(self, tmp_path, caplog):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = requests.ConnectionError("unreachable")
        with caplog.at_level("ERROR", logger="pelagic_tracks.snapshot"):
            assert resolve_snapshot(tmp_path, "https://storage.example.test/x", session=session) is None
        assert "unreachable" in caplog.text

    def test_no_url(self, tmp_path):
        assert resolve_snapshot(tmp_path) is None


class TestSnapshotClient:
    def _client(self, response=None, side_effect=None):
        session = MagicMock(spec=requests.Session)
        session.get.return_value = response
        session.get.side_effect = side_effect
        return SnapshotClient("http://snapshot.example.test/", session=session), session

    def test_fetch_points(self, make_response):
        records = [
            {"time": "2025-02-01T06:00:00+00:00", "tripId": "T1", "latitude": -6.1, "longitude": 39.2, "imei": "111"},
            {"time": "2025-02-01T07:00:00+00:00", "tripId": "T1", "latitude": -6.2, "longitude": 39.3, "imei": None},
            {"tripId": "broken"},
        ]
        client, session = self._client(make_response(json_data=records))

        points = client.fetch_points(RANGE, ["111"], device_id="111")

        assert len(points) == 2
        assert all(p.device_id == "111" for p in points)
        args, kwargs = session.get.call_args
        assert args[0] == "http://snapshot.example.test/fallback/points"
        assert kwargs["params"] == {"dateFrom": "2025-02-01", "dateTo": "2025-02-02", "imeis": "111"}
        assert kwargs["timeout"] == 10.0

    def test_not_found_is_empty(self, make_response):
        client, _ = self._client(make_response(status=404))
        assert client.fetch_points(RANGE, ["111"]) == []

    def test_server_error_raises(self, make_response):
        client, _ = self._client(make_response(status=503))
        with pytest.raises(UpstreamError) as exc_info:
            client.fetch_points(RANGE, ["111"])
        assert exc_info.value.status == 503

    def test_timeout_raises(self):
        client, _ = self._client(side_effect=requests.Timeout("slow"))
        with pytest.raises(UpstreamError, match="Timed out"):
            client.fetch_points(RANGE, ["111"])

    def test_non_array_is_empty(self, make_response):
        client, _ = self._client(make_response(json_data={"error": "nope"}))
        assert client.fetch_points(RANGE, ["111"]) == []

    def test_non_json_is_empty(self, make_response):
        client, _ = self._client(make_response(text="<html>oops</html>"))
        assert client.fetch_points(RANGE, ["111"]) == []

    def test_not_configured(self):
        client = SnapshotClient(None)
        assert not client.configured
        assert client.fetch_points(RANGE, ["111"]) == []
