"""Relay configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: FLEET_<SECTION>_<KEY> (uppercase).
The unprefixed names used by earlier deployments (TRACCAR_URL, TRACCAR_EMAIL,
TRACCAR_PASSWORD, PORT, MAPBOX_TOKEN) are honoured as well.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class TraccarConfig:
    url: str = "http://localhost:8082"
    email: str = ""
    password: str = ""
    # None disables the transport timeout entirely.
    timeout_seconds: float | None = 5.0

    @property
    def socket_url(self) -> str:
        """WebSocket feed URL derived from the REST base URL."""
        base = self.url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return base + "/api/socket"


@dataclass
class MapConfig:
    mapbox_token: str = ""


@dataclass
class LivenessConfig:
    interval_seconds: float = 30.0


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"
    file: str = ""


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    traccar: TraccarConfig = field(default_factory=TraccarConfig)
    map: MapConfig = field(default_factory=MapConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _optional_float(value: str) -> float | None:
    if value.strip().lower() in ("", "none", "null"):
        return None
    return float(value)


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        # Legacy names first so the prefixed ones win when both are set.
        "PORT": lambda v: setattr(config.server, "port", int(v)),
        "TRACCAR_URL": lambda v: setattr(config.traccar, "url", v),
        "TRACCAR_EMAIL": lambda v: setattr(config.traccar, "email", v),
        "TRACCAR_PASSWORD": lambda v: setattr(config.traccar, "password", v),
        "MAPBOX_TOKEN": lambda v: setattr(config.map, "mapbox_token", v),
        "FLEET_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "FLEET_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "FLEET_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "FLEET_TRACCAR_URL": lambda v: setattr(config.traccar, "url", v),
        "FLEET_TRACCAR_EMAIL": lambda v: setattr(config.traccar, "email", v),
        "FLEET_TRACCAR_PASSWORD": lambda v: setattr(config.traccar, "password", v),
        "FLEET_TRACCAR_TIMEOUT": lambda v: setattr(config.traccar, "timeout_seconds", _optional_float(v)),
        "FLEET_MAP_MAPBOX_TOKEN": lambda v: setattr(config.map, "mapbox_token", v),
        "FLEET_LIVENESS_INTERVAL": lambda v: setattr(config.liveness, "interval_seconds", float(v)),
        "FLEET_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "FLEET_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
        "FLEET_LOG_FILE": lambda v: setattr(config.logging, "file", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    if config_path is None:
        config_path = Path(os.environ.get("FLEET_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section in ("server", "traccar", "map", "liveness", "logging"):
            target = getattr(config, section)
            for k, v in (raw.get(section) or {}).items():
                if hasattr(target, k):
                    setattr(target, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
