"""Parsing of upstream point payloads into GpsPoint records.

The telemetry API returns CSV with this header (observed):
    Time,Boat,Trip,Lat,Lng,Speed (M/S),Range (Meters),Heading,Boat Name,Community,Trip Created,Trip Updated

Columns outside that set are kept on each point under a normalized key so
upstream schema additions are not lost.
"""

import csv
import logging
import math
import re
from datetime import datetime, timezone

from pelagic_tracks.models import GpsPoint

logger = logging.getLogger(__name__)

# Known approximation: the upstream column says m/s but some feeds already
# send km/h. Speeds below this value are treated as m/s and converted; at or
# above it they are assumed to be km/h already. Not confirmed against an
# upstream unit contract, so it is configurable (speed_conversion_threshold).
SPEED_CONVERSION_THRESHOLD = 20.0
MS_TO_KMH = 3.6

HEADER_FIELDS = {
    "Time": "time",
    "Boat": "boat",
    "Trip": "trip_id",
    "Lat": "latitude",
    "Lng": "longitude",
    "Speed (M/S)": "speed",
    "Range (Meters)": "range",
    "Heading": "heading",
    "Boat Name": "boat_name",
    "Community": "community",
    "Trip Created": "trip_created",
    "Trip Updated": "trip_updated",
}

TRIP_ID_HEADERS = ("Trip", "Trip ID", "ID", "Id", "id")

# "15:21:53+00" -> "15:21:53+00:00"; fromisoformat needs minutes in the offset
_HOUR_ONLY_OFFSET = re.compile(r"(\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)([+-]\d{2})$")


def normalize_header(header: str) -> str:
    """Key used for columns the parser does not know about."""
    return header.strip().lower().replace(" ", "")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an upstream timestamp into an aware UTC datetime.

    Accepts "2025-02-02 15:21:53+00", ISO 8601 with "Z" or a full offset, and
    naive values (taken as UTC). Returns None if the value can't be parsed.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _HOUR_ONLY_OFFSET.sub(r"\1\2:00", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def normalize_speed(speed: float, threshold: float = SPEED_CONVERSION_THRESHOLD) -> float:
    """Return speed in km/h using the magnitude heuristic described above."""
    if speed < 0:
        return 0.0
    if speed < threshold:
        return speed * MS_TO_KMH
    return speed


def normalize_heading(heading: float) -> float:
    return heading % 360.0


def _build_point(values: dict, extras: dict, device_id: str | None, threshold: float) -> GpsPoint | None:
    time = parse_timestamp(values.get("time"))
    lat = _parse_float(values.get("latitude"))
    lng = _parse_float(values.get("longitude"))
    if time is None or lat is None or lng is None:
        return None

    return GpsPoint(
        time=time,
        trip_id=(values.get("trip_id") or "").strip(),
        latitude=lat,
        longitude=lng,
        speed=normalize_speed(_parse_float(values.get("speed")) or 0.0, threshold),
        heading=normalize_heading(_parse_float(values.get("heading")) or 0.0),
        range=_parse_float(values.get("range")) or 0.0,
        boat=(values.get("boat") or "").strip(),
        boat_name=(values.get("boat_name") or "").strip(),
        community=(values.get("community") or "").strip(),
        trip_created=parse_timestamp(values.get("trip_created")),
        trip_updated=parse_timestamp(values.get("trip_updated")),
        device_id=device_id,
        extras=extras,
    )


def _lines(text: str) -> list[tuple[int, str]]:
    """Physical lines with their 1-based line numbers, BOM and blank lines dropped."""
    lines = text.lstrip("\ufeff").splitlines()
    return [(num, line) for num, line in enumerate(lines, start=1) if line.strip()]


def _split_line(line: str) -> list[str]:
    """Split one CSV line into fields.

    Each line gets its own reader, so an unbalanced quote or an oversized
    field only affects that line. Raises csv.Error on unparseable input.
    """
    return next(csv.reader([line], strict=True), [])


def parse_points_csv(
    text: str | None,
    device_id: str | None = None,
    speed_threshold: float = SPEED_CONVERSION_THRESHOLD,
) -> list[GpsPoint]:
    """Parse a points CSV payload into GpsPoints in file order.

    Empty or header-only input gives an empty list. Rows that can't be split,
    have the wrong number of fields, a missing/non-numeric coordinate or an
    unparseable time are skipped and logged; the rest of the file is still
    parsed. The payload is line-based: quoted fields can't span lines.

    Args:
        text: Raw CSV text from the telemetry API.
        device_id: Device identifier stamped on every point (the payload has none).
        speed_threshold: See SPEED_CONVERSION_THRESHOLD.
    """
    if not text or not text.strip():
        logger.debug("Empty points payload")
        return []

    lines = _lines(text)
    if not lines:
        return []
    header_num, header_line = lines[0]
    try:
        headers = [h.strip() for h in _split_line(header_line)]
    except csv.Error as e:
        logger.warning("Unreadable CSV header on line %d: %s", header_num, e)
        return []
    columns = [(HEADER_FIELDS.get(h), normalize_header(h)) for h in headers]

    points: list[GpsPoint] = []
    skipped = 0
    for line_num, line in lines[1:]:
        try:
            row = _split_line(line)
        except csv.Error as e:
            skipped += 1
            logger.warning("Skipping CSV line %d: %s", line_num, e)
            continue
        if len(row) != len(headers):
            skipped += 1
            logger.warning(
                "Skipping CSV line %d: expected %d fields, got %d",
                line_num, len(headers), len(row),
            )
            continue

        values = {}
        extras = {}
        for (field_name, extra_key), cell in zip(columns, row):
            if field_name:
                values[field_name] = cell
            else:
                extras[extra_key] = cell.strip()

        point = _build_point(values, extras, device_id, speed_threshold)
        if point is None:
            skipped += 1
            logger.warning("Skipping CSV line %d: invalid time or coordinates: %r", line_num, row)
            continue
        points.append(point)

    if skipped:
        logger.warning("Parsed %d points, skipped %d malformed rows", len(points), skipped)
    else:
        logger.debug("Parsed %d points", len(points))
    return points


def parse_trip_ids_csv(text: str | None) -> list[str]:
    """Extract distinct trip identifiers, in file order, from a trips CSV."""
    if not text or not text.strip():
        return []

    lines = _lines(text)
    if not lines:
        return []
    try:
        fieldnames = [f.strip() for f in _split_line(lines[0][1])]
    except csv.Error as e:
        logger.warning("Unreadable trips CSV header: %s", e)
        return []
    id_index = next((fieldnames.index(h) for h in TRIP_ID_HEADERS if h in fieldnames), None)
    if id_index is None:
        logger.warning("Trips CSV has no trip id column; headers: %s", fieldnames)
        return []

    trip_ids: list[str] = []
    seen = set()
    for line_num, line in lines[1:]:
        try:
            row = _split_line(line)
        except csv.Error as e:
            logger.warning("Skipping trips CSV line %d: %s", line_num, e)
            continue
        trip_id = row[id_index].strip() if id_index < len(row) else ""
        if trip_id and trip_id not in seen:
            seen.add(trip_id)
            trip_ids.append(trip_id)
    return trip_ids


def point_from_record(record: object, device_id: str | None = None) -> GpsPoint | None:
    """Build a GpsPoint from a snapshot JSON record, or None if unusable.

    Snapshot records use the camelCase keys served by /fallback/points and
    carry speeds that are already in km/h.
    """
    if not isinstance(record, dict):
        return None
    time = parse_timestamp(record.get("time") or record.get("timestamp"))
    lat = _parse_float(record.get("latitude"))
    lng = _parse_float(record.get("longitude"))
    if time is None or lat is None or lng is None:
        return None

    record_device = record.get("imei") or record.get("deviceId")
    return GpsPoint(
        time=time,
        trip_id=str(record.get("tripId") or ""),
        latitude=lat,
        longitude=lng,
        speed=max(_parse_float(record.get("speed")) or 0.0, 0.0),
        heading=normalize_heading(_parse_float(record.get("heading")) or 0.0),
        range=_parse_float(record.get("range")) or 0.0,
        boat=str(record.get("boat") or ""),
        boat_name=str(record.get("boatName") or ""),
        community=str(record.get("community") or ""),
        trip_created=parse_timestamp(record.get("tripCreated")),
        trip_updated=parse_timestamp(record.get("tripUpdated")),
        device_id=str(record_device) if record_device else device_id,
    )
