"""
Configuration dataclasses for the status poller.

This module defines all configuration structures used throughout the system,
including the device/room selection, OAuth and legacy credentials, rate
limiting, persistence, and logging configuration. ModuleConfig.from_dict
accepts the option names used by the display layer's config file.
"""

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .exceptions import ConfigurationError

MIN_POLL_INTERVAL_MS = 30_000
DEFAULT_POLL_INTERVAL_MS = 60_000

TEMPERATURE_UNITS = ("F", "C")
SORT_OPTIONS = ("name", "room", "capability")


@dataclass
class DeviceConfig:
    """An explicitly configured device."""

    id: str
    name: str
    room: Optional[str] = None


@dataclass
class OAuthConfig:
    """OAuth client credentials (only needed for the derived-key vault)."""

    client_id: str
    client_secret: str


@dataclass
class RateLimitConfig:
    """Self-throttling and backoff configuration."""

    max_requests: int = 250
    warn_threshold: int = 200
    window_seconds: float = 60.0
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30_000


@dataclass
class PersistenceConfig:
    """Where credentials and the cache live on disk."""

    state_dir: Path = field(default_factory=lambda: Path.home() / ".st_status")

    @property
    def key_file(self) -> Path:
        return self.state_dir / "oauth-key.bin"

    @property
    def data_file(self) -> Path:
        return self.state_dir / "oauth-data.enc"

    @property
    def legacy_token_file(self) -> Path:
        return self.state_dir / "oauth-tokens.enc"

    @property
    def cache_file(self) -> Path:
        return self.state_dir / ".cache.json"


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class ModuleConfig:
    """Main configuration combining all sub-configurations."""

    devices: list[DeviceConfig] = field(default_factory=list)
    rooms: list[str] = field(default_factory=list)
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    temperature_unit: str = "F"
    default_sort: str = "name"
    debug: bool = False
    test_mode: bool = False
    token: Optional[str] = None
    oauth: Optional[OAuthConfig] = None
    request_timeout_seconds: float = 15.0
    language: str = "en"
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def effective_poll_interval_ms(self) -> int:
        """Configured interval, never below the 30 second floor."""
        return max(self.poll_interval_ms or DEFAULT_POLL_INTERVAL_MS, MIN_POLL_INTERVAL_MS)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModuleConfig":
        """
        Build a ModuleConfig from display-layer options.

        Accepts both camelCase (pollInterval, testMode, clientId, ...) and
        snake_case option names.

        Raises:
            ConfigurationError: If a value has the wrong shape
        """
        if not isinstance(data, dict):
            raise ConfigurationError(
                code="invalid_config",
                message="Configuration must be an object",
                details={"type": type(data).__name__},
            )

        def pick(*names: str, default: Any = None) -> Any:
            for name in names:
                if name in data and data[name] is not None:
                    return data[name]
            return default

        raw_devices = pick("devices", default=[])
        if not isinstance(raw_devices, list):
            raise ConfigurationError(
                code="invalid_devices",
                message="'devices' must be a list",
            )
        devices = []
        for entry in raw_devices:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise ConfigurationError(
                    code="invalid_devices",
                    message="Each device needs at least an 'id'",
                    details={"device": entry},
                )
            devices.append(DeviceConfig(
                id=str(entry["id"]),
                name=str(entry.get("name") or entry["id"]),
                room=entry.get("room"),
            ))

        rooms = pick("rooms", default=[])
        if not isinstance(rooms, list) or not all(isinstance(r, str) for r in rooms):
            raise ConfigurationError(
                code="invalid_rooms",
                message="'rooms' must be a list of room names",
            )

        try:
            poll_interval_ms = int(pick("pollInterval", "poll_interval_ms",
                                        default=DEFAULT_POLL_INTERVAL_MS))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                code="invalid_poll_interval",
                message=f"'pollInterval' must be a number of milliseconds: {e}",
            ) from e

        temperature_unit = pick("temperatureUnit", "temperature_unit", default="F")
        if temperature_unit not in TEMPERATURE_UNITS:
            raise ConfigurationError(
                code="invalid_temperature_unit",
                message=f"'temperatureUnit' must be one of {TEMPERATURE_UNITS}",
            )

        default_sort = pick("defaultSort", "default_sort", default="name")
        if default_sort not in SORT_OPTIONS:
            raise ConfigurationError(
                code="invalid_sort",
                message=f"'defaultSort' must be one of {SORT_OPTIONS}",
            )

        oauth = None
        client_id = pick("clientId", "client_id")
        client_secret = pick("clientSecret", "client_secret")
        if client_id and client_secret:
            oauth = OAuthConfig(client_id=client_id, client_secret=client_secret)

        persistence = PersistenceConfig()
        state_dir = pick("stateDir", "state_dir")
        if state_dir:
            persistence = PersistenceConfig(state_dir=Path(state_dir))

        rate_data = pick("rateLimits", "rate_limits", default={}) or {}
        if not isinstance(rate_data, dict):
            raise ConfigurationError(
                code="invalid_rate_limits",
                message="'rateLimits' must be an object",
            )
        rate_limits = RateLimitConfig(
            max_requests=rate_data.get("max_requests", 250),
            warn_threshold=rate_data.get("warn_threshold", 200),
            window_seconds=rate_data.get("window_seconds", 60.0),
            backoff_base_ms=rate_data.get("backoff_base_ms", 1000),
            backoff_max_ms=rate_data.get("backoff_max_ms", 30_000),
        )

        debug = bool(pick("debug", default=False))
        logging_data = pick("logging", default={}) or {}
        if not isinstance(logging_data, dict):
            raise ConfigurationError(
                code="invalid_logging",
                message="'logging' must be an object",
            )
        logging_config = LoggingConfig(
            level="debug" if debug else logging_data.get("level", "info"),
            output_format=logging_data.get("output_format", "text"),
        )

        return cls(
            devices=devices,
            rooms=list(rooms),
            poll_interval_ms=poll_interval_ms,
            temperature_unit=temperature_unit,
            default_sort=default_sort,
            debug=debug,
            test_mode=bool(pick("testMode", "test_mode", default=False)),
            token=pick("token"),
            oauth=oauth,
            request_timeout_seconds=float(pick("requestTimeout", "request_timeout_seconds",
                                               default=15.0)),
            language=pick("language", default="en"),
            rate_limits=rate_limits,
            persistence=persistence,
            logging=logging_config,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to display-layer option names."""
        data: dict[str, Any] = {
            "devices": [
                {k: v for k, v in (("id", d.id), ("name", d.name), ("room", d.room)) if v is not None}
                for d in self.devices
            ],
            "rooms": list(self.rooms),
            "pollInterval": self.poll_interval_ms,
            "temperatureUnit": self.temperature_unit,
            "defaultSort": self.default_sort,
            "debug": self.debug,
            "testMode": self.test_mode,
            "language": self.language,
            "stateDir": str(self.persistence.state_dir),
            "logging": {
                "level": self.logging.level,
                "output_format": self.logging.output_format,
            },
        }
        if self.token:
            data["token"] = self.token
        if self.oauth:
            data["clientId"] = self.oauth.client_id
            data["clientSecret"] = self.oauth.client_secret
        return data


def config_hash(config: ModuleConfig) -> str:
    """
    Hash the configuration fields a cached snapshot depends on.

    Covers credential identity (legacy token or OAuth client id), the
    explicit device list and the room list.
    """
    relevant = {
        "token": config.token,
        "client_id": config.oauth.client_id if config.oauth else None,
        "devices": [[d.id, d.name, d.room] for d in config.devices],
        "rooms": list(config.rooms),
    }
    serialized = json.dumps(relevant, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
