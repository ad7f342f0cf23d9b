"""Local snapshot fallback: a precomputed export of recent tracks.

The snapshot is a Parquet file (CSV is accepted too) with at least Trip, Time,
Lat and Lng columns and, usually, an IMEI column. It is served as JSON by
/fallback/points (see web.py) and consumed by SnapshotClient when the
telemetry API has nothing to offer.
"""

import json
import logging
import math
import tempfile
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

import pandas as pd
import requests

from pelagic_tracks.errors import SnapshotError, UpstreamError
from pelagic_tracks.models import DateRange, GpsPoint
from pelagic_tracks.parser import parse_timestamp, point_from_record

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("Trip", "Time", "Lat", "Lng")
IMEI_COLUMNS = ("IMEI", "imei")

# Preferred first when a directory holds both
SNAPSHOT_PATTERNS = ("*.parquet", "*.csv")
SNAPSHOT_CACHE_NAME = "latest.parquet"
DEFAULT_SNAPSHOT_DIR = Path(tempfile.gettempdir()) / "pelagic-tracks-snapshot"


def find_snapshot_file(path: str | Path | None) -> Path | None:
    """Resolve the snapshot to read.

    A directory resolves to its most recently modified .parquet file, or its
    most recent .csv file if it has no Parquet files.
    """
    if not path:
        return None
    path = Path(path).expanduser()
    if path.is_dir():
        for pattern in SNAPSHOT_PATTERNS:
            candidates = sorted(path.glob(pattern), key=lambda p: p.stat().st_mtime, reverse=True)
            if candidates:
                return candidates[0]
        return None
    if path.exists():
        return path
    return None


def download_snapshot(
    url: str,
    directory: str | Path,
    timeout: float = 30.0,
    session: requests.Session | None = None,
) -> Path:
    """Download the snapshot at `url` into `directory` as latest.parquet.

    Raises:
        SnapshotError: If the download fails or the file can't be written.
    """
    directory = Path(directory)
    target = directory / SNAPSHOT_CACHE_NAME
    logger.info("Downloading fallback snapshot to %s", target)
    try:
        response = (session or requests).get(url, timeout=timeout)
    except requests.RequestException as e:
        raise SnapshotError(f"Snapshot download failed: {e}") from e
    if not response.ok:
        raise SnapshotError(f"Snapshot download failed: {response.status_code} {response.reason}")

    try:
        directory.mkdir(parents=True, exist_ok=True)
        partial = target.with_suffix(".part")
        partial.write_bytes(response.content)
        partial.replace(target)
    except OSError as e:
        raise SnapshotError(f"Failed to save snapshot to {target}: {e}") from e
    return target


def resolve_snapshot(
    path: str | Path | None,
    download_url: str | None = None,
    timeout: float = 30.0,
    session: requests.Session | None = None,
) -> Path | None:
    """Local snapshot if there is one, otherwise download it once when a URL is configured."""
    found = find_snapshot_file(path)
    if found is not None or not download_url:
        return found
    directory = Path(path).expanduser() if path and not Path(path).suffix else DEFAULT_SNAPSHOT_DIR
    try:
        return download_snapshot(download_url, directory, timeout, session)
    except SnapshotError as e:
        logger.error("%s", e)
        return None


def _window(date_range: DateRange) -> tuple[datetime, datetime]:
    start = datetime.combine(date_range.date_from, time.min, tzinfo=timezone.utc)
    end = datetime.combine(date_range.date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


def _read_frame(path: Path) -> pd.DataFrame:
    if path.suffix.lower() == ".parquet":
        return pd.read_parquet(path)
    return pd.read_csv(path, dtype=str, keep_default_na=False, encoding="utf-8")


def _timestamps(column: pd.Series) -> pd.Series:
    """Time column as UTC timestamps; unparseable values become NaT."""
    if pd.api.types.is_datetime64_any_dtype(column):
        return pd.to_datetime(column, utc=True)
    return pd.to_datetime(column.map(parse_timestamp), utc=True)


def _text(value: Any) -> str:
    """Identifier cell as text. Integral floats (IMEIs in a column with gaps) lose their '.0'."""
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _number(value: Any) -> float:
    try:
        number = float(value) if value not in (None, "") else 0.0
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def load_snapshot_records(
    path: Path,
    date_range: DateRange,
    device_ids: Iterable[str] | None = None,
) -> list[dict]:
    """Read snapshot rows within the date window as JSON-ready point records.

    The window covers date_from 00:00 UTC up to the end of date_to. If the
    snapshot has no IMEI column, device filtering is impossible and every row
    in the window is returned.

    Raises:
        SnapshotError: If required columns are missing or the file can't be read.
    """
    wanted = {str(d).strip() for d in device_ids or () if str(d).strip()}
    start, end = _window(date_range)

    try:
        frame = _read_frame(path)
    except (OSError, ValueError) as e:
        # ValueError covers decode errors and malformed Parquet/CSV
        raise SnapshotError(f"Failed to read snapshot {path}: {e}") from e

    missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
    if missing:
        raise SnapshotError(f"Snapshot {path} missing required columns: {', '.join(missing)}")
    imei_column = next((c for c in IMEI_COLUMNS if c in frame.columns), None)
    if wanted and imei_column is None:
        logger.warning("Snapshot %s has no IMEI column; returning all points in range", path)

    times = _timestamps(frame["Time"])
    mask = times.notna() & (times >= start) & (times < end)
    imeis = frame[imei_column].map(_text) if imei_column else pd.Series("", index=frame.index)
    if wanted and imei_column:
        mask &= imeis.isin(wanted)

    records = [
        _record(row, ts.to_pydatetime(), imei or None)
        for row, ts, imei in zip(frame[mask].to_dict("records"), times[mask], imeis[mask])
    ]
    logger.debug("Snapshot %s: %d points for %s..%s", path, len(records), date_range.date_from, date_range.date_to)
    return records


def _record(row: dict, ts: datetime, imei: str | None) -> dict:
    time_str = ts.isoformat()
    return {
        "time": time_str,
        "timestamp": time_str,
        "boat": "",
        "tripId": _text(row.get("Trip")),
        "latitude": _number(row.get("Lat")),
        "longitude": _number(row.get("Lng")),
        "speed": 0,
        "range": 0,
        "heading": 0,
        "boatName": "",
        "community": "",
        "tripCreated": "",
        "tripUpdated": "",
        "imei": imei,
        "deviceId": imei,
        "lastSeen": time_str,
    }


class SnapshotClient:
    """Fetches snapshot points from the /fallback/points endpoint."""

    def __init__(self, base_url: str | None, timeout: float = 10.0, session: requests.Session | None = None):
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def fetch_points(
        self,
        date_range: DateRange,
        device_ids: Iterable[str] | None = None,
        device_id: str | None = None,
    ) -> list[GpsPoint]:
        """Snapshot points for a window; records without their own IMEI get `device_id`.

        Raises:
            UpstreamError: If the endpoint is unreachable, times out or answers non-2xx.
        """
        if not self.base_url:
            return []
        url = f"{self.base_url.rstrip('/')}/fallback/points"
        params = {
            "dateFrom": date_range.date_from.isoformat(),
            "dateTo": date_range.date_to.isoformat(),
        }
        ids = [str(d) for d in device_ids or ()]
        if ids:
            params["imeis"] = ",".join(ids)

        logger.debug("GET %s params=%s", url, params)
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise UpstreamError(f"Timed out after {self.timeout}s", upstream=url) from e
        except requests.RequestException as e:
            raise UpstreamError(f"Request failed: {e}", upstream=url) from e

        # 404 means no snapshot is available, which is an empty answer
        if response.status_code == 404:
            logger.info("No snapshot available at %s", url)
            return []
        if not response.ok:
            raise UpstreamError("Snapshot request failed", upstream=url, status=response.status_code)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            logger.warning("Snapshot response from %s is not JSON", url)
            return []
        if not isinstance(data, list):
            logger.warning("Expected JSON array from %s, got %s", url, type(data).__name__)
            return []

        points = []
        for record in data:
            point = point_from_record(record, device_id)
            if point is None:
                logger.warning("Skipping unusable snapshot record: %r", record)
                continue
            points.append(point)
        return points
