"""Trip reconstruction and vessel insights from GPS point streams."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pelagic_tracks.models import GpsPoint, Trip

# Path length exceeds the max straight-line range from the start, so the
# distance reported for a trip is range * 1.2. This is an estimate, not an
# integral over the track.
DISTANCE_ESTIMATE_FACTOR = 1.2

ACTIVE_WINDOW = timedelta(hours=24)


def group_points_by_trip(points: list[GpsPoint]) -> dict[str, list[GpsPoint]]:
    """Partition points by trip id, keeping first-seen trip order."""
    groups: dict[str, list[GpsPoint]] = {}
    for point in points:
        groups.setdefault(point.trip_id, []).append(point)
    return groups


def build_trip(trip_id: str, points: list[GpsPoint], device_id: str | None = None) -> Trip:
    """Summarize one trip's points. `points` must be non-empty."""
    ordered = sorted(points, key=lambda p: p.time)
    first, last = ordered[0], ordered[-1]
    range_meters = max(p.range for p in ordered)

    return Trip(
        id=trip_id,
        start_time=first.time,
        end_time=last.time,
        device_id=first.device_id or device_id,
        boat=first.boat,
        boat_name=first.boat_name,
        community=first.community,
        duration_seconds=int((last.time - first.time).total_seconds()),
        range_meters=range_meters,
        distance_meters=range_meters * DISTANCE_ESTIMATE_FACTOR,
        created=first.trip_created,
        updated=last.trip_updated,
        last_seen=last.time,
        point_count=len(ordered),
    )


def reconstruct_trips(points: list[GpsPoint], device_id: str | None = None) -> list[Trip]:
    """Derive one Trip per distinct trip id in `points`.

    Trips are returned ordered by start time (then id), so the row order of
    the source payload does not affect the result.

    Args:
        points: Points in any order.
        device_id: Fallback device id for trips whose points carry none.
    """
    trips = [
        build_trip(trip_id, group, device_id)
        for trip_id, group in group_points_by_trip(points).items()
    ]
    trips.sort(key=lambda t: (t.start_time, t.id))
    return trips


@dataclass
class VesselInsights:
    active_trips: int = 0
    total_distance_km: float = 0.0
    avg_speed: float = 0.0  # km/h across all points


def calculate_vessel_insights(points: list[GpsPoint], now: datetime | None = None) -> VesselInsights:
    """Aggregate figures for a set of points.

    A trip counts as active if its latest point is within the last 24 hours.
    Total distance sums each trip's max range.
    """
    if not points:
        return VesselInsights()

    now = now or datetime.now(timezone.utc)
    groups = group_points_by_trip(points)

    active = sum(
        1 for group in groups.values()
        if max(p.time for p in group) > now - ACTIVE_WINDOW
    )
    total_km = sum(max(p.range for p in group) for group in groups.values()) / 1000
    avg_speed = sum(p.speed for p in points) / len(points)

    return VesselInsights(
        active_trips=active,
        total_distance_km=round(total_km, 1),
        avg_speed=round(avg_speed, 1),
    )


def trip_average_speed(points: list[GpsPoint]) -> float:
    """Mean speed over points that were actually moving."""
    moving = [p.speed for p in points if p.speed > 0]
    if not moving:
        return 0.0
    return sum(moving) / len(moving)


def vessel_status(last_seen: datetime | None, now: datetime | None = None) -> str:
    """'active' if seen in the last 24 hours, 'docked' if older, 'unknown' if never."""
    if last_seen is None:
        return "unknown"
    now = now or datetime.now(timezone.utc)
    return "active" if last_seen > now - ACTIVE_WINDOW else "docked"
