"""Client for the Pelagic Data telemetry API (points and trips as CSV)."""

import logging
from dataclasses import dataclass
from typing import Iterable

import requests

from pelagic_tracks.config import Settings
from pelagic_tracks.errors import ConfigurationError, UpstreamError
from pelagic_tracks.models import DateRange

logger = logging.getLogger(__name__)

# The API answers 500 with this file name in the body when it has nothing to
# export for the query. That's an upstream defect, not a failure.
EMPTY_EXPORT_SIGNATURE = "empty_api_points.csv"

# Anything shorter can't hold a header row
MIN_PAYLOAD_LENGTH = 5


@dataclass(frozen=True)
class FetchOptions:
    include_device_info: bool = True
    include_last_seen: bool = True
    include_errant: bool = False
    tags: tuple[str, ...] = ()

    def to_params(self) -> dict[str, str]:
        params = {}
        if self.include_device_info:
            params["deviceInfo"] = "true"
        if self.include_errant:
            params["errant"] = "true"
        if self.include_last_seen:
            params["withLastSeen"] = "true"
        if self.tags:
            params["tags"] = ",".join(self.tags)
        return params


def is_empty_payload(text: str | None) -> bool:
    return text is None or len(text.strip()) < MIN_PAYLOAD_LENGTH


def _device_params(device_ids: Iterable[str] | None) -> dict[str, str]:
    ids = [str(d) for d in device_ids or () if str(d)]
    return {"imeis": ",".join(ids)} if ids else {}


class PelagicClient:
    """Telemetry API calls. Every request carries the API secret header and a timeout."""

    def __init__(self, settings: Settings, session: requests.Session | None = None):
        self.settings = settings
        self.session = session or requests.Session()

    def _base(self) -> str:
        if not self.settings.api_token or not self.settings.api_secret:
            raise ConfigurationError(
                "Telemetry API credentials not configured. Set api_token and api_secret "
                "in pelagic-tracks.json or PELAGIC_API_TOKEN / PELAGIC_API_SECRET."
            )
        return f"{self.settings.api_base_url.rstrip('/')}/{self.settings.api_token}/v1"

    def _headers(self) -> dict[str, str]:
        return {"X-API-SECRET": self.settings.api_secret or ""}

    def _get_text(self, url: str, params: dict, timeout: float) -> str:
        """GET a CSV endpoint.

        Returns:
            Response body, or "" for the known empty-export 500.

        Raises:
            UpstreamError: On timeout, connection failure or any other non-2xx.
        """
        logger.debug("GET %s params=%s", url, params)
        try:
            response = self.session.get(url, params=params, headers=self._headers(), timeout=timeout)
        except requests.Timeout as e:
            raise UpstreamError(f"Timed out after {timeout}s", upstream=url) from e
        except requests.RequestException as e:
            raise UpstreamError(f"Request failed: {e}", upstream=url) from e

        if not response.ok:
            body = response.text or ""
            if response.status_code == 500 and EMPTY_EXPORT_SIGNATURE in body:
                logger.warning("Upstream reported an empty export for %s; treating as no data", url)
                return ""
            raise UpstreamError(
                f"Unexpected response: {body[:200]!r}",
                upstream=url,
                status=response.status_code,
            )

        logger.debug("Received %d bytes from %s", len(response.text), url)
        return response.text

    def fetch_points_csv(
        self,
        date_range: DateRange,
        device_ids: Iterable[str] | None = None,
        options: FetchOptions | None = None,
    ) -> str:
        """Point stream for a date window, optionally filtered to devices."""
        options = options or FetchOptions()
        url = f"{self._base()}/points/{date_range.date_from.isoformat()}/{date_range.date_to.isoformat()}"
        params = {**_device_params(device_ids), **options.to_params()}
        return self._get_text(url, params, self.settings.points_timeout)

    def fetch_trips_csv(self, date_range: DateRange, device_ids: Iterable[str] | None = None) -> str:
        """Trip metadata, one row per trip."""
        url = f"{self._base()}/trips/{date_range.date_from.isoformat()}/{date_range.date_to.isoformat()}"
        return self._get_text(url, _device_params(device_ids), self.settings.trip_timeout)

    def fetch_trip_points_csv(self, trip_id: str) -> str:
        """Point stream for a single trip."""
        url = f"{self._base()}/trips/{trip_id}/points"
        return self._get_text(url, {}, self.settings.trip_timeout)
