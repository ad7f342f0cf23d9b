"""Trip service: the entry point the dashboard layer calls.

Wires the fetch orchestrator, parser, trip reconstruction, live-location
client and cache together. One instance owns one cache and one session; share
the instance to share them.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Iterable

from pelagic_tracks.cache import AdaptiveCache, make_cache_key, ttl_for_range
from pelagic_tracks.config import Settings
from pelagic_tracks.live import LiveLocationClient
from pelagic_tracks.models import DateRange, GpsPoint, LiveLocation, Trip, utc_today
from pelagic_tracks.orchestrator import FetchOrchestrator
from pelagic_tracks.pelagic import FetchOptions, PelagicClient
from pelagic_tracks.snapshot import SnapshotClient
from pelagic_tracks.trips import reconstruct_trips

logger = logging.getLogger(__name__)

OP_POINTS = "points"
OP_TRIPS = "trips"
OP_LIVE = "live"

DATA_ERROR_MESSAGE = "Failed to retrieve vessel data. Please check your connection or try again later."
LIVE_ERROR_MESSAGE = "Failed to load live location data"


@dataclass
class TripQueryResult:
    points: list[GpsPoint]
    trips: list[Trip]


@dataclass
class DashboardData:
    points: list[GpsPoint] = field(default_factory=list)
    trips: list[Trip] = field(default_factory=list)
    live_locations: list[LiveLocation] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def data_available(self) -> bool:
        return bool(self.points or self.trips)


def _device_list(device_ids: Iterable[str] | None) -> list[str]:
    return [str(d).strip() for d in device_ids or () if str(d).strip()]


def _operation(name: str, options: FetchOptions | None) -> str:
    if options is None or options == FetchOptions():
        return name
    flags = "&".join(f"{k}={v}" for k, v in sorted(options.to_params().items()))
    return f"{name}[{flags}]"


class TripService:
    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        live_client: LiveLocationClient | None = None,
        cache: AdaptiveCache | None = None,
        settings: Settings | None = None,
    ):
        self.orchestrator = orchestrator
        self.live_client = live_client
        self.cache = cache or AdaptiveCache()
        self.settings = settings or Settings()

    def _ttl(self, date_range: DateRange) -> float:
        return ttl_for_range(
            date_range.date_to,
            today_ttl=self.settings.today_ttl,
            recent_ttl=self.settings.recent_ttl,
            historical_ttl=self.settings.historical_ttl,
        )

    def get_points(
        self,
        date_from: date | datetime,
        date_to: date | datetime,
        device_ids: Iterable[str] | None = None,
        options: FetchOptions | None = None,
    ) -> list[GpsPoint]:
        """Points for a window and device set, served from cache when fresh."""
        date_range = DateRange(date_from, date_to)
        ids = _device_list(device_ids)
        key = make_cache_key(_operation(OP_POINTS, options), date_range, ids)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit %s", key)
            return cached

        points = self.orchestrator.fetch_points(date_range.date_from, date_range.date_to, ids, options)
        self.cache.set(key, points, self._ttl(date_range))
        return points

    def get_trips(
        self,
        date_from: date | datetime,
        date_to: date | datetime,
        device_ids: Iterable[str] | None = None,
        options: FetchOptions | None = None,
    ) -> TripQueryResult:
        """Points and the trips reconstructed from them."""
        date_range = DateRange(date_from, date_to)
        ids = _device_list(device_ids)
        key = make_cache_key(_operation(OP_TRIPS, options), date_range, ids)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit %s", key)
            return cached

        points = self.get_points(date_range.date_from, date_range.date_to, ids, options)
        trips = reconstruct_trips(points, ids[0] if len(ids) == 1 else None)
        logger.info("Built %d trips from %d points", len(trips), len(points))
        result = TripQueryResult(points=points, trips=trips)
        self.cache.set(key, result, self._ttl(date_range))
        return result

    def get_live_locations(self, device_ids: Iterable[str] | None = None) -> list[LiveLocation]:
        """Live locations, cached with the shortest TTL."""
        if self.live_client is None:
            return []
        ids = _device_list(device_ids)
        today = utc_today()
        key = make_cache_key(OP_LIVE, DateRange(today, today), ids)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        locations = self.live_client.fetch_live_locations(ids)
        self.cache.set(key, locations, self.settings.today_ttl)
        return locations

    def get_dashboard(
        self,
        date_from: date | datetime,
        date_to: date | datetime,
        device_ids: Iterable[str] | None = None,
    ) -> DashboardData:
        """Trips and live locations fetched concurrently.

        A failing branch is logged and replaced with an empty result so the
        other branch's data is still returned. Live locations are skipped for
        unscoped (all devices) queries.
        """
        ids = _device_list(device_ids)
        data = DashboardData()

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="dashboard") as executor:
            trips_future = executor.submit(self.get_trips, date_from, date_to, ids)
            live_future = executor.submit(self.get_live_locations, ids) if ids else None

            try:
                result = trips_future.result()
                data.points, data.trips = result.points, result.trips
            except Exception:
                logger.exception("Error fetching trip data")
                data.errors.append(DATA_ERROR_MESSAGE)

            if live_future is not None:
                try:
                    data.live_locations = live_future.result()
                except Exception:
                    logger.exception("Error loading live locations")
                    data.errors.append(LIVE_ERROR_MESSAGE)

        if data.live_locations and data.trips:
            zones = {loc.imei: loc.timezone for loc in data.live_locations}
            # Copies, so cached trips stay untouched
            data.trips = [
                replace(trip, timezone=zones[trip.device_id]) if trip.device_id in zones else trip
                for trip in data.trips
            ]
        return data

    def cache_stats(self) -> dict:
        return self.cache.stats()

    def clear_cache(self) -> int:
        return self.cache.clear()


def build_service(settings: Settings) -> TripService:
    """Create a TripService with clients built from settings."""
    client = PelagicClient(settings)
    snapshot = SnapshotClient(settings.snapshot_url, timeout=settings.snapshot_timeout)
    orchestrator = FetchOrchestrator(
        client,
        snapshot,
        max_trip_requests=settings.max_trip_requests,
        speed_threshold=settings.speed_conversion_threshold,
    )
    return TripService(
        orchestrator,
        live_client=LiveLocationClient(settings),
        cache=AdaptiveCache(settings.cache_max_size),
        settings=settings,
    )
