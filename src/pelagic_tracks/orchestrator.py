"""Point retrieval with a fallback chain.

Tiers, tried in order until one yields points:
1. primary   - one request to the telemetry API for the whole window
2. snapshot  - the local precomputed snapshot for the same window and devices
3. per_trip  - list the window's trips, then fetch each trip's points

The per-trip tier is last because it costs one request per trip. Queries
without a device filter (all devices) stop after the primary tier: the
fallbacks only make sense for a specific device scope.
"""

import logging
from datetime import date, datetime
from typing import Iterable

from pelagic_tracks.errors import AllTiersFailedError, UpstreamError
from pelagic_tracks.models import DateRange, GpsPoint
from pelagic_tracks.parser import SPEED_CONVERSION_THRESHOLD, parse_points_csv, parse_trip_ids_csv
from pelagic_tracks.pelagic import FetchOptions, PelagicClient, is_empty_payload
from pelagic_tracks.snapshot import SnapshotClient

logger = logging.getLogger(__name__)

TIER_PRIMARY = "primary"
TIER_SNAPSHOT = "snapshot"
TIER_PER_TRIP = "per_trip"

DEFAULT_MAX_TRIP_REQUESTS = 50


class _NoAnswer(Exception):
    """A tier was skipped without contacting anything."""


def _normalize_ids(device_ids: Iterable[str] | None) -> list[str]:
    ids = []
    for device_id in device_ids or ():
        device_id = str(device_id).strip()
        if device_id and device_id not in ids:
            ids.append(device_id)
    return ids


class FetchOrchestrator:
    def __init__(
        self,
        client: PelagicClient,
        snapshot: SnapshotClient | None = None,
        max_trip_requests: int = DEFAULT_MAX_TRIP_REQUESTS,
        speed_threshold: float = SPEED_CONVERSION_THRESHOLD,
    ):
        self.client = client
        self.snapshot = snapshot
        self.max_trip_requests = max_trip_requests
        self.speed_threshold = speed_threshold

    def fetch_points(
        self,
        date_from: date | datetime,
        date_to: date | datetime,
        device_ids: Iterable[str] | None = None,
        options: FetchOptions | None = None,
    ) -> list[GpsPoint]:
        """Fetch points for a window, walking the fallback chain as needed.

        Returns:
            Points from the first tier that has any, or [] if the tiers that
            answered had no data.

        Raises:
            AllTiersFailedError: If every tier that was tried raised.
            ConfigurationError: If API credentials are missing.
        """
        date_range = DateRange(date_from, date_to)
        ids = _normalize_ids(device_ids)
        # The payload has no per-row device id, so only a single-device query
        # can attribute points to a device.
        stamp = ids[0] if len(ids) == 1 else None

        errors: list[UpstreamError] = []
        answered = False

        try:
            points = self._fetch_primary(date_range, ids, stamp, options)
            answered = True
            if points:
                return points
            logger.info("Primary tier returned no points for %s..%s devices=%s",
                        date_range.date_from, date_range.date_to, ids or "all")
        except UpstreamError as e:
            e.tier = TIER_PRIMARY
            errors.append(e)
            logger.warning("Primary tier failed: %s", e)

        if not ids:
            logger.warning("No device filter and primary tier had no data; returning no points")
            return []

        fallbacks = [
            (TIER_SNAPSHOT, self._fetch_snapshot),
            (TIER_PER_TRIP, self._fetch_per_trip),
        ]
        for tier, fetch in fallbacks:
            try:
                points = fetch(date_range, ids, stamp)
            except _NoAnswer as e:
                logger.debug("Skipping %s tier: %s", tier, e)
                continue
            except UpstreamError as e:
                e.tier = tier
                errors.append(e)
                logger.warning("%s tier failed: %s", tier, e)
                continue
            answered = True
            if points:
                logger.info("Recovered %d points from %s tier", len(points), tier)
                return points
            logger.info("%s tier returned no points", tier)

        if errors and not answered:
            raise AllTiersFailedError(errors)
        return []

    def _fetch_primary(self, date_range, ids, stamp, options) -> list[GpsPoint]:
        text = self.client.fetch_points_csv(date_range, ids, options)
        if is_empty_payload(text):
            return []
        return parse_points_csv(text, stamp, self.speed_threshold)

    def _fetch_snapshot(self, date_range, ids, stamp) -> list[GpsPoint]:
        if self.snapshot is None or not self.snapshot.configured:
            raise _NoAnswer("no snapshot source configured")
        return self.snapshot.fetch_points(date_range, ids, stamp)

    def _fetch_per_trip(self, date_range, ids, stamp) -> list[GpsPoint]:
        trip_ids = parse_trip_ids_csv(self.client.fetch_trips_csv(date_range, ids))
        if not trip_ids:
            return []
        if len(trip_ids) > self.max_trip_requests:
            logger.warning("Found %d trips, fetching only the first %d", len(trip_ids), self.max_trip_requests)
            trip_ids = trip_ids[: self.max_trip_requests]

        points: list[GpsPoint] = []
        failures: list[UpstreamError] = []
        for trip_id in trip_ids:
            try:
                text = self.client.fetch_trip_points_csv(trip_id)
            except UpstreamError as e:
                failures.append(e)
                logger.warning("Failed to fetch points for trip %s: %s", trip_id, e)
                continue
            if is_empty_payload(text):
                continue
            for point in parse_points_csv(text, stamp, self.speed_threshold):
                point.trip_id = point.trip_id or trip_id
                points.append(point)

        if failures and len(failures) == len(trip_ids):
            raise failures[0]
        return points
