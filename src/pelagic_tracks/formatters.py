"""Formatting utilities for display."""

from datetime import datetime, timezone


def format_duration(seconds: float) -> str:
    """Format seconds as Xh Ym string."""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    if hours > 0:
        return f"{hours}h {minutes:02d}m"
    return f"{minutes}m"


def format_distance(meters: float) -> str:
    """Format meters as km with one decimal, or whole meters below 1 km."""
    if meters < 1000:
        return f"{meters:.0f} m"
    return f"{meters / 1000:.1f} km"


def format_location_time(when: datetime | None, now: datetime | None = None) -> str:
    """Relative age of a fix: 'Just now', '5 min ago', '3 hours ago', '2 days ago' or a date."""
    if when is None:
        return "Never"
    now = now or datetime.now(timezone.utc)
    minutes = int((now - when).total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24

    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes} min ago"
    if hours < 24:
        return f"{hours} hours ago"
    if days < 7:
        return f"{days} days ago"
    return when.date().isoformat()
