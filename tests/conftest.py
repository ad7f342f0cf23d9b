import json
from datetime import datetime, timedelta, timezone

import pytest
import requests

from pelagic_tracks.config import Settings
from pelagic_tracks.models import GpsPoint

POINTS_HEADER = (
    "Time,Boat,Trip,Lat,Lng,Speed (M/S),Range (Meters),Heading,"
    "Boat Name,Community,Trip Created,Trip Updated"
)


def _response(status: int = 200, text: str = "", json_data=None, url: str = "https://example.test/") -> requests.Response:
    """A real requests.Response so .ok, .json() and .text behave as in production."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.reason = "OK" if status < 400 else "Error"
    body = json.dumps(json_data) if json_data is not None else text
    response._content = body.encode("utf-8")
    response.encoding = "utf-8"
    return response


@pytest.fixture
def make_response():
    return _response


@pytest.fixture
def settings():
    return Settings(
        api_base_url="https://api.example.test/api",
        api_token="path-token",
        api_secret="secret",
        live_base_url="https://live.example.test/api",
        username="user@example.org",
        password="pw",
        customer_id="customer-1",
        snapshot_url="http://snapshot.example.test",
    )


@pytest.fixture
def two_trip_csv():
    """Trip A: 3 points over 90 minutes (rows out of order); trip B: 1 point."""
    return "\n".join([
        POINTS_HEADER,
        "2025-02-02 16:51:53+00,24422,A,-5.99000,39.19000,2.0,1500.0,90.0,Mashaallah,Fuji,2025-02-02 17:35:28+00,2025-02-05 05:53:07+00",
        "2025-02-03 08:00:00+00,24422,B,-6.10000,39.20000,0,0.0,0.0,Mashaallah,Fuji,2025-02-03 08:10:00+00,2025-02-03 09:00:00+00",
        "2025-02-02 15:21:53+00,24422,A,-5.99924,39.18637,0,0.0,0.0,Mashaallah,Fuji,2025-02-02 17:35:28+00,2025-02-05 05:53:07+00",
        "2025-02-02 16:06:53+00,24422,A,-5.99500,39.18800,3.5,800.0,45.0,Mashaallah,Fuji,2025-02-02 17:35:28+00,2025-02-05 05:53:07+00",
    ])


@pytest.fixture
def base_time():
    return datetime(2025, 2, 2, 15, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_point(base_time):
    def _make(trip_id="T1", minutes=0, range_m=0.0, speed=0.0, device_id="864000000000001"):
        return GpsPoint(
            time=base_time + timedelta(minutes=minutes),
            trip_id=trip_id,
            latitude=-6.0,
            longitude=39.2,
            speed=speed,
            range=range_m,
            boat="24422",
            boat_name="Kocha",
            community="Fuji",
            device_id=device_id,
        )
    return _make
