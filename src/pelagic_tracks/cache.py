"""In-memory cache for query results with recency-based TTLs.

Entries expire sooner the closer the queried window is to today, since recent
telemetry keeps changing while historical data doesn't. The store is capped
and evicts the oldest-inserted entry when full. It only speeds things up:
dropping every entry must never change what callers get back.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Iterable

from pelagic_tracks.models import DateRange

TODAY_TTL_SECONDS = 60.0
RECENT_TTL_SECONDS = 180.0
HISTORICAL_TTL_SECONDS = 600.0
DEFAULT_MAX_SIZE = 100

RECENT_WINDOW = timedelta(hours=24)


def make_cache_key(operation: str, date_range: DateRange, device_ids: Iterable[str] | None) -> str:
    """Create a cache key from the query parameters.

    Device ids are de-duplicated and sorted so the same set in any order maps
    to one key; an empty set (all devices) is encoded as '*'.
    """
    ids = sorted({str(d).strip() for d in device_ids or () if str(d).strip()})
    devices = ",".join(ids) if ids else "*"
    return f"{operation}|{date_range.date_from.isoformat()}|{date_range.date_to.isoformat()}|{devices}"


def ttl_for_range(
    date_to: date | datetime,
    now: datetime | None = None,
    today_ttl: float = TODAY_TTL_SECONDS,
    recent_ttl: float = RECENT_TTL_SECONDS,
    historical_ttl: float = HISTORICAL_TTL_SECONDS,
) -> float:
    """Pick a TTL from how recent the query's upper bound is.

    - upper bound is today (or later): today_ttl
    - upper bound ended within the last 24 hours: recent_ttl
    - otherwise: historical_ttl
    """
    now = now or datetime.now(timezone.utc)
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    if isinstance(date_to, datetime):
        date_to = date_to.date()
    if date_to >= now.date():
        return today_ttl
    end_of_range = datetime.combine(date_to + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
    if now - end_of_range < RECENT_WINDOW:
        return recent_ttl
    return historical_ttl


@dataclass
class CacheStats:
    """Statistics for a cache instance."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> str:
        """Return hit rate as percentage string."""
        total = self.hits + self.misses
        if total == 0:
            return "0.0%"
        return f"{(self.hits / total * 100):.1f}%"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "hit_rate": self.hit_rate,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "size": self.size,
            "max_size": self.max_size,
        }


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    inserted_at: float
    expires_at: float


class AdaptiveCache:
    """Thread-safe bounded cache with per-entry expiry.

    Eviction is by insertion order: lookups do not refresh an entry's
    position, only set() does.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE, clock: Callable[[], float] = time.time):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = Lock()
        self._stats = CacheStats(max_size=max_size)

    def get(self, key: str) -> Any | None:
        """Get cached value, None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if self.clock() < entry.expires_at:
                    self._stats.hits += 1
                    return entry.value
                # Expired, remove it
                del self._entries[key]
                self._stats.expirations += 1
            self._stats.misses += 1
            return None

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store value; evicts the oldest-inserted entry if at capacity."""
        with self._lock:
            now = self.clock()
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                self._stats.evictions += 1
            self._entries[key] = CacheEntry(value=value, inserted_at=now, expires_at=now + ttl)

    def entry(self, key: str) -> CacheEntry | None:
        """Raw entry including timestamps, without touching stats or expiry."""
        with self._lock:
            return self._entries.get(key)

    def clear(self) -> int:
        """Clear all cached entries. Returns number of entries cleared."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._stats = CacheStats(max_size=self.max_size)
            return count

    def stats(self) -> dict:
        """Return cache statistics."""
        with self._lock:
            self._stats.size = len(self._entries)
            return self._stats.to_dict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
