"""HTTP endpoints: local snapshot fallback and a JSON API over TripService."""

import logging
from dataclasses import asdict
from datetime import date, datetime

from flask import Flask, current_app, jsonify, request

from pelagic_tracks import __version_date__
from pelagic_tracks.config import Settings, load_settings
from pelagic_tracks.errors import PelagicError, SnapshotError
from pelagic_tracks.models import DateRange
from pelagic_tracks.service import TripService, build_service
from pelagic_tracks.snapshot import load_snapshot_records, resolve_snapshot

logger = logging.getLogger(__name__)


def _serialize(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


def to_json(obj) -> dict:
    """Dataclass to a JSON-ready dict with ISO 8601 timestamps."""
    return _serialize(asdict(obj))


def _parse_date(value: str | None, name: str) -> date:
    if not value:
        raise ValueError(f"{name} is required (YYYY-MM-DD)")
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise ValueError(f"{name} must be a date (YYYY-MM-DD), got {value!r}") from None


def _imeis_arg() -> list[str]:
    raw = request.args.get("imeis", "")
    return [s.strip() for s in raw.split(",") if s.strip()]


def _service() -> TripService:
    return current_app.config["TRIP_SERVICE"]


def _settings() -> Settings:
    return current_app.config["SETTINGS"]


def create_app(settings: Settings | None = None, service: TripService | None = None) -> Flask:
    """Build the Flask app around one shared TripService."""
    settings = settings or load_settings()
    app = Flask(__name__)
    app.config["SETTINGS"] = settings
    app.config["TRIP_SERVICE"] = service or build_service(settings)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "version": __version_date__})

    @app.route("/fallback/points")
    def fallback_points():
        """Snapshot points for a window, filtered by IMEI when the snapshot allows it."""
        try:
            date_range = DateRange(
                _parse_date(request.args.get("dateFrom"), "dateFrom"),
                _parse_date(request.args.get("dateTo"), "dateTo"),
            )
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        settings = _settings()
        path = resolve_snapshot(
            settings.snapshot_path,
            settings.snapshot_download_url,
            timeout=settings.snapshot_download_timeout,
        )
        if path is None:
            return jsonify({"error": "No fallback snapshot file available"}), 404

        try:
            records = load_snapshot_records(path, date_range, _imeis_arg())
        except SnapshotError as e:
            logger.error("Error serving fallback snapshot points: %s", e)
            return jsonify({"error": "Failed to read fallback snapshot", "details": str(e)}), 500
        return jsonify(records)

    @app.route("/api/trips")
    def trips():
        try:
            date_from = _parse_date(request.args.get("dateFrom"), "dateFrom")
            date_to = _parse_date(request.args.get("dateTo"), "dateTo")
            result = _service().get_trips(date_from, date_to, _imeis_arg())
        except PelagicError as e:
            logger.error("Trip query failed: %s", e)
            return jsonify({"error": str(e)}), 502
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({
            "points": [to_json(p) for p in result.points],
            "trips": [to_json(t) for t in result.trips],
        })

    @app.route("/api/live-locations")
    def live_locations():
        try:
            locations = _service().get_live_locations(_imeis_arg())
        except PelagicError as e:
            logger.error("Live location query failed: %s", e)
            return jsonify({"error": str(e)}), 502
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify([to_json(loc) for loc in locations])

    @app.route("/cache-stats")
    def cache_stats():
        return jsonify(_service().cache_stats())

    @app.route("/cache-clear", methods=["GET", "POST"])
    def cache_clear():
        cleared = _service().clear_cache()
        return jsonify({"status": "ok", "cleared": cleared})

    return app
