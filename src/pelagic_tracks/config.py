"""Configuration loading.

Settings are merged from two JSON files and the environment:
1. ~/.config/pelagic-tracks/pelagic-tracks.json (global, loaded first)
2. ./pelagic-tracks.json (local, overrides global)
3. PELAGIC_* environment variables (override both, for credentials and URLs)

Config file format:
    {
        "api_token": "your-path-token",
        "api_secret": "your-api-secret",
        "username": "you@example.org",
        "password": "...",
        "customer_id": "775246b0-...",
        "snapshot_url": "http://localhost:5050",
        "snapshot_path": "~/pelagic-snapshots",
        "cache_max_size": 100,
        "speed_conversion_threshold": 20
    }
"""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path

CONFIG_DIR = Path.home() / ".config" / "pelagic-tracks"
CONFIG_PATH = CONFIG_DIR / "pelagic-tracks.json"
LOCAL_CONFIG_PATH = Path("pelagic-tracks.json")

DEFAULT_API_BASE_URL = "https://analytics.pelagicdata.com/api"

# Environment variable -> Settings field
ENV_OVERRIDES = {
    "PELAGIC_API_BASE_URL": "api_base_url",
    "PELAGIC_API_TOKEN": "api_token",
    "PELAGIC_API_SECRET": "api_secret",
    "PELAGIC_LIVE_BASE_URL": "live_base_url",
    "PELAGIC_USERNAME": "username",
    "PELAGIC_PASSWORD": "password",
    "PELAGIC_CUSTOMER_ID": "customer_id",
    "PELAGIC_SNAPSHOT_URL": "snapshot_url",
    "PELAGIC_SNAPSHOT_PATH": "snapshot_path",
    "PELAGIC_SNAPSHOT_DOWNLOAD_URL": "snapshot_download_url",
}


@dataclass(frozen=True)
class Settings:
    # Telemetry (points/trips) API, authenticated by path token + secret header
    api_base_url: str = DEFAULT_API_BASE_URL
    api_token: str | None = None
    api_secret: str | None = None
    # Live-location API, authenticated by username/password session
    live_base_url: str = DEFAULT_API_BASE_URL
    username: str | None = None
    password: str | None = None
    customer_id: str | None = None
    # Local snapshot fallback
    snapshot_url: str | None = None
    snapshot_path: str | None = None  # .parquet/.csv file or a directory of them
    snapshot_download_url: str | None = None  # fetched once when no local snapshot exists
    # Timeouts in seconds
    points_timeout: float = 15.0
    snapshot_timeout: float = 10.0
    snapshot_download_timeout: float = 30.0
    trip_timeout: float = 15.0
    auth_timeout: float = 10.0
    live_timeout: float = 15.0
    token_lifetime: float = 3600.0
    # Cache
    cache_max_size: int = 100
    today_ttl: float = 60.0
    recent_ttl: float = 180.0
    historical_ttl: float = 600.0
    # Parsing / fallback
    speed_conversion_threshold: float = 20.0
    max_trip_requests: int = 50


def _load_config() -> dict:
    """Load configuration from config files.

    Returns:
        Dict with merged config values, empty dict if no files exist.
    """
    config = {}
    for config_path in [CONFIG_PATH, LOCAL_CONFIG_PATH]:
        if config_path.exists():
            try:
                with config_path.open() as f:
                    config.update(json.load(f))
            except (json.JSONDecodeError, OSError):
                continue
    return config


def load_settings(overrides: dict | None = None) -> Settings:
    """Build Settings from config files, environment and explicit overrides.

    Unknown keys are ignored. Explicit overrides win over everything else.
    """
    config = _load_config()
    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config[key] = value
    if overrides:
        config.update({k: v for k, v in overrides.items() if v is not None})

    known = {f.name: f for f in fields(Settings)}
    values = {}
    for key, value in config.items():
        if key not in known:
            continue
        default = known[key].default
        # JSON and env values may arrive as strings
        if isinstance(default, int):
            values[key] = int(value)
        elif isinstance(default, float):
            values[key] = float(value)
        else:
            values[key] = value
    return Settings(**values)
