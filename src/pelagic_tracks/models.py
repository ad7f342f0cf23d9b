from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone


@dataclass
class GpsPoint:
    time: datetime  # timezone-aware, UTC
    trip_id: str
    latitude: float
    longitude: float
    speed: float = 0.0  # km/h
    heading: float = 0.0  # degrees, [0, 360)
    range: float = 0.0  # meters from trip start
    boat: str = ""  # upstream boat number
    boat_name: str = ""
    community: str = ""
    trip_created: datetime | None = None
    trip_updated: datetime | None = None
    device_id: str | None = None  # IMEI of the owning device, from the request
    extras: dict[str, str] = field(default_factory=dict)  # unrecognized CSV columns

    @property
    def last_seen(self) -> datetime:
        return self.trip_updated or self.time


@dataclass
class Trip:
    id: str
    start_time: datetime
    end_time: datetime
    device_id: str | None
    boat: str
    boat_name: str
    community: str
    duration_seconds: int
    range_meters: float
    distance_meters: float  # estimate, see trips.DISTANCE_ESTIMATE_FACTOR
    created: datetime | None
    updated: datetime | None
    last_seen: datetime
    point_count: int = 0
    timezone: str | None = None  # filled from live locations when available


@dataclass
class LiveLocation:
    device_index: str
    boat_name: str
    direct_customer_name: str  # community label
    timezone: str
    last_seen: datetime | None
    imei: str
    lat: float
    lng: float
    last_gps_ts: datetime | None
    battery_state: str | None = None
    external_boat_id: str | None = None


def utc_today() -> date:
    """Current calendar day in UTC, the clock every cache and query window uses."""
    return datetime.now(timezone.utc).date()


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar-day window used by every upstream query."""
    date_from: date
    date_to: date

    def __post_init__(self):
        object.__setattr__(self, "date_from", _as_date(self.date_from))
        object.__setattr__(self, "date_to", _as_date(self.date_to))
        if self.date_from > self.date_to:
            raise ValueError(
                f"date_from {self.date_from.isoformat()} is after date_to {self.date_to.isoformat()}"
            )

    @classmethod
    def last_days(cls, days: int, today: date | None = None) -> "DateRange":
        """Range covering the last `days` days up to and including today."""
        end = today or utc_today()
        return cls(end - timedelta(days=days), end)

    @property
    def days(self) -> int:
        return (self.date_to - self.date_from).days + 1
