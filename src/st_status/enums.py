"""
Enumeration types for the status poller.

These enums provide type-safe constants for log levels, error categories,
alert types, token lifecycle states and gateway event names.
"""

from enum import Enum


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ErrorCategory(Enum):
    """Failure categories observed by the alert state machine."""

    AUTH = "auth"
    SCOPE = "scope"
    NETWORK = "network"
    RATE_LIMIT = "rateLimit"
    OUTAGE = "outage"
    SCHEMA = "schema"


class AlertType(Enum):
    """Health alert types, one per error category."""

    AUTH = "auth"
    SCOPE = "scope"
    NETWORK = "network"
    RATE_LIMIT = "rateLimit"
    OUTAGE = "outage"
    SCHEMA = "schema"


class TokenState(Enum):
    """Token manager lifecycle states."""

    NO_CREDENTIALS = "no_credentials"
    HAS_CREDENTIALS = "has_credentials"
    VALID = "valid"
    REFRESH_PENDING = "refresh_pending"
    PERMANENTLY_FAILED = "permanently_failed"


class AuthMode(Enum):
    """How API requests are authenticated."""

    OAUTH = "oauth"
    LEGACY = "legacy"


class VaultVersion(Enum):
    """Envelope version discriminator for persisted credentials."""

    DERIVED_KEY = 1  # key derived from client id + secret
    STORED_KEY = 2  # random key kept in a separate key file


class GatewayEventType(Enum):
    """Events emitted to the display layer."""

    DEVICE_DATA = "device-data"
    LOADING = "loading"
    ERROR = "error"
    ALERT = "alert"
    ALERT_CLEAR = "alert-clear"
