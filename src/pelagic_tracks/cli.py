import argparse
import logging
import sys
from datetime import date
from pathlib import Path

from pelagic_tracks import __version_date__, get_git_hash
from pelagic_tracks.config import load_settings
from pelagic_tracks.errors import PelagicError
from pelagic_tracks.formatters import format_distance, format_duration, format_location_time
from pelagic_tracks.models import DateRange, GpsPoint, Trip, utc_today
from pelagic_tracks.parser import parse_points_csv
from pelagic_tracks.service import build_service
from pelagic_tracks.trips import calculate_vessel_insights, reconstruct_trips

DEFAULTS = {
    "days": 7,
    "host": "127.0.0.1",
    "port": 5050,
}


def _date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a date (YYYY-MM-DD): {value}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pelagic-tracks",
        description="Fetch vessel telemetry and reconstruct fishing trips.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"pelagic-tracks {__version_date__} ({get_git_hash()})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    trips = sub.add_parser("trips", help="Fetch points and summarize trips for a date range")
    trips.add_argument("--from", dest="date_from", type=_date, help="Start date (YYYY-MM-DD)")
    trips.add_argument("--to", dest="date_to", type=_date, help="End date (YYYY-MM-DD, default: today, UTC)")
    trips.add_argument(
        "--days",
        type=int,
        default=DEFAULTS["days"],
        help=f"Days back from --to when --from is not given (default: {DEFAULTS['days']})",
    )
    trips.add_argument("--imei", action="append", default=[], help="Device IMEI (repeatable)")

    live = sub.add_parser("live", help="Show live device locations")
    live.add_argument("--imei", action="append", default=[], help="Device IMEI (repeatable)")

    parse = sub.add_parser("parse", help="Summarize trips from a points CSV export")
    parse.add_argument("csv_file", help="Path to a points CSV file")
    parse.add_argument("--imei", help="Device IMEI to attribute the points to")
    parse.add_argument(
        "--speed-threshold",
        type=float,
        default=None,
        help="Speeds below this are treated as m/s (default: from config)",
    )

    serve = sub.add_parser("serve", help="Run the HTTP API and snapshot endpoint")
    serve.add_argument("--host", default=DEFAULTS["host"])
    serve.add_argument("--port", type=int, default=DEFAULTS["port"])
    serve.add_argument("--snapshot-path", help="Snapshot CSV file or directory")

    return parser


def print_trips(trips: list[Trip], points: list[GpsPoint]) -> None:
    print(f"Points:         {len(points)}")
    print(f"Trips:          {len(trips)}")
    insights = calculate_vessel_insights(points)
    print(f"Active trips:   {insights.active_trips}")
    print(f"Total range:    {insights.total_distance_km:.1f} km")
    print(f"Avg speed:      {insights.avg_speed:.1f} km/h")
    for trip in trips:
        label = trip.boat_name or f"Trip {trip.id}"
        if trip.community:
            label += f" ({trip.community})"
        print("")
        print(f"Trip {trip.id}: {label}")
        print(f"  Start:        {trip.start_time:%Y-%m-%d %H:%M} UTC")
        print(f"  End:          {trip.end_time:%Y-%m-%d %H:%M} UTC")
        print(f"  Duration:     {format_duration(trip.duration_seconds)}")
        print(f"  Range:        {format_distance(trip.range_meters)}")
        print(f"  Est. distance: {format_distance(trip.distance_meters)}")
        print(f"  Points:       {trip.point_count}")


def _run_parse(args, settings) -> int:
    path = Path(args.csv_file)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: File not found: {path}", file=sys.stderr)
        return 1

    threshold = args.speed_threshold
    if threshold is None:
        threshold = settings.speed_conversion_threshold
    points = parse_points_csv(text, args.imei, threshold)
    trips = reconstruct_trips(points, args.imei)

    print("=== Trip Summary ===")
    print(f"Source:         {path}")
    print_trips(trips, points)
    return 0


def _run_trips(args, settings) -> int:
    date_to = args.date_to or utc_today()
    if args.date_from:
        date_range = DateRange(args.date_from, date_to)
    else:
        date_range = DateRange.last_days(args.days, date_to)

    service = build_service(settings)
    result = service.get_trips(date_range.date_from, date_range.date_to, args.imei)

    print(f"=== Trips {date_range.date_from} .. {date_range.date_to} ===")
    print(f"Devices:        {', '.join(args.imei) if args.imei else 'all'}")
    print_trips(result.trips, result.points)
    return 0


def _run_live(args, settings) -> int:
    service = build_service(settings)
    locations = service.get_live_locations(args.imei)

    print("=== Live Locations ===")
    if not locations:
        print("No devices found.")
    for loc in locations:
        name = loc.boat_name or loc.external_boat_id or loc.imei
        print(f"{loc.imei}  {name:<20} {loc.lat:9.5f} {loc.lng:10.5f}  "
              f"last fix {format_location_time(loc.last_gps_ts)}"
              + (f"  battery {loc.battery_state}" if loc.battery_state else ""))
    return 0


def _run_serve(args, settings) -> int:
    from pelagic_tracks.web import create_app

    app = create_app(settings)
    app.run(host=args.host, port=args.port)
    return 0


COMMANDS = {
    "parse": _run_parse,
    "trips": _run_trips,
    "live": _run_live,
    "serve": _run_serve,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {"snapshot_path": getattr(args, "snapshot_path", None)}
    try:
        settings = load_settings(overrides)
        code = COMMANDS[args.command](args, settings)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except PelagicError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)
