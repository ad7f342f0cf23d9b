"""Live device locations from the authenticated Pelagic Analytics API."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import requests

from pelagic_tracks.config import Settings
from pelagic_tracks.errors import ConfigurationError, UpstreamError
from pelagic_tracks.models import GpsPoint, LiveLocation
from pelagic_tracks.session import SessionManager

logger = logging.getLogger(__name__)

# Timestamps above this are milliseconds
MAX_SECONDS_TIMESTAMP = 9_999_999_999

RECENT_WINDOW = timedelta(hours=24)


def flatten_record(record: dict, prefix: str = "") -> dict[str, Any]:
    """Flatten nested dicts into dotted keys. Lists are kept as values."""
    flat: dict[str, Any] = {}
    for key, value in record.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten_record(value, name))
        else:
            flat[name] = value
    return flat


def convert_timestamp(value: Any) -> datetime | None:
    """Unix timestamp (seconds or milliseconds) to an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if ts != ts or ts <= 0:  # NaN or unset
        return None
    if ts > MAX_SECONDS_TIMESTAMP:
        ts /= 1000
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def parse_live_locations(data: Any) -> list[LiveLocation]:
    """Convert the device query response to LiveLocations.

    Records without an IMEI are dropped; a non-array payload gives [].
    """
    if not isinstance(data, list):
        logger.warning("Expected JSON array of devices, got %s", type(data).__name__)
        return []

    locations = []
    for index, device in enumerate(data):
        if not isinstance(device, dict):
            logger.warning("Skipping non-object device record at index %d", index)
            continue
        flat = flatten_record(device)
        imei = _optional_str(flat.get("imei"))
        if not imei:
            continue
        tz_name = flat.get("timezone") or "UTC"
        locations.append(LiveLocation(
            device_index=str(index + 1),
            boat_name=str(flat.get("boatName") or flat.get("boat.name") or ""),
            direct_customer_name=str(flat.get("directCustomerName") or flat.get("directCustomer.name") or ""),
            timezone=str(tz_name),
            last_seen=convert_timestamp(flat.get("lastSeen")),
            imei=imei,
            lat=_float(flat.get("lat")),
            lng=_float(flat.get("lng")),
            last_gps_ts=convert_timestamp(flat.get("lastGpsTs")),
            battery_state=_optional_str(flat.get("batteryState")),
            external_boat_id=_optional_str(flat.get("externalBoatId")),
        ))
    return locations


def is_location_recent(location: LiveLocation, now: datetime | None = None) -> bool:
    """True if the last GPS fix is within the last 24 hours."""
    if location.last_gps_ts is None:
        return False
    now = now or datetime.now(timezone.utc)
    return location.last_gps_ts > now - RECENT_WINDOW


def live_location_to_point(location: LiveLocation) -> GpsPoint:
    """Represent a live location as a single-point 'live-<imei>' trip."""
    ts = location.last_gps_ts or datetime.now(timezone.utc)
    return GpsPoint(
        time=ts,
        trip_id=f"live-{location.imei}",
        latitude=location.lat,
        longitude=location.lng,
        boat=location.external_boat_id or location.device_index,
        boat_name=location.boat_name,
        community=location.direct_customer_name,
        trip_created=ts,
        trip_updated=ts,
        device_id=location.imei,
    )


class LiveLocationClient:
    def __init__(
        self,
        settings: Settings,
        session_manager: SessionManager | None = None,
        session: requests.Session | None = None,
    ):
        self.settings = settings
        self.session = session or requests.Session()
        base = settings.live_base_url.rstrip("/")
        self.devices_url = f"{base}/pds/devices"
        self.session_manager = session_manager or SessionManager(
            f"{base}/auth/login",
            settings.username,
            settings.password,
            timeout=settings.auth_timeout,
            token_lifetime=settings.token_lifetime,
            session=self.session,
        )

    def _request_body(self, imeis: list[str]) -> dict:
        if not self.settings.customer_id:
            raise ConfigurationError(
                "customer_id not configured. Set it in pelagic-tracks.json or PELAGIC_CUSTOMER_ID."
            )
        bad = [i for i in imeis if not i.isdigit()]
        if bad:
            raise ValueError(f"IMEIs must be numeric: {', '.join(bad)}")
        return {
            "customers": [{"entityType": "CUSTOMER", "id": self.settings.customer_id}],
            "boats": [],
            "imeis": [int(i) for i in imeis],
        }

    def fetch_live_locations(self, imeis: Iterable[str] | None = None) -> list[LiveLocation]:
        """Latest known position per device; all customer devices if `imeis` is empty.

        Raises:
            ConfigurationError: If credentials or customer id are missing.
            AuthenticationError, AuthorizationError: If the session can't be established.
            UpstreamError: On timeouts or non-2xx responses.
        """
        ids = [str(i).strip() for i in imeis or () if str(i).strip()]
        body = self._request_body(ids)
        logger.debug("Fetching live locations for %s", ", ".join(ids) if ids else "all devices")

        def request(token: str) -> requests.Response:
            try:
                return self.session.post(
                    self.devices_url,
                    json=body,
                    headers={"X-Authorization": f"Bearer {token}"},
                    timeout=self.settings.live_timeout,
                )
            except requests.Timeout as e:
                raise UpstreamError(f"Timed out after {self.settings.live_timeout}s", upstream=self.devices_url) from e
            except requests.RequestException as e:
                raise UpstreamError(f"Request failed: {e}", upstream=self.devices_url) from e

        response = self.session_manager.with_token(request)
        try:
            data = response.json()
        except ValueError:
            logger.warning("Device query response from %s is not JSON", self.devices_url)
            return []
        locations = parse_live_locations(data)
        logger.debug("Retrieved %d live locations", len(locations))
        return locations

    def fetch_device_live_location(self, imei: str) -> LiveLocation | None:
        """Latest position of one device, or None when the API has nothing for it."""
        imei = str(imei).strip()
        for location in self.fetch_live_locations([imei]):
            if location.imei == imei:
                return location
        return None
