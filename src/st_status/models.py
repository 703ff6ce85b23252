"""
Data models for the status poller.

This module defines the data structures for credentials, the encrypted
store envelope, resolved and normalized devices, the cache snapshot,
the alert state and the rate window.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .enums import AlertType


def to_iso(epoch_seconds: float) -> str:
    """Format an epoch timestamp as UTC ISO-8601."""
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[float]:
    """Parse an ISO-8601 timestamp to epoch seconds; None if unparseable."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


@dataclass
class CredentialRecord:
    """
    OAuth credentials and tokens.

    Owned by the token manager and only ever persisted through the
    credential vault. Timestamps are epoch seconds.
    """

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    expires_at: Optional[float] = None
    obtained_at: Optional[float] = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the encrypted payload layout."""
        return {
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "scope": self.scope,
            "expiresAt": to_iso(self.expires_at) if self.expires_at is not None else None,
            "obtainedAt": to_iso(self.obtained_at) if self.obtained_at is not None else None,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CredentialRecord":
        """Build a record from a decrypted payload (either vault generation)."""
        return cls(
            client_id=payload.get("clientId"),
            client_secret=payload.get("clientSecret"),
            access_token=payload.get("access_token") or payload.get("accessToken"),
            refresh_token=payload.get("refresh_token") or payload.get("refreshToken"),
            token_type=payload.get("token_type") or payload.get("tokenType") or "Bearer",
            scope=payload.get("scope"),
            expires_at=from_iso(payload.get("expiresAt")),
            obtained_at=from_iso(payload.get("obtainedAt")),
        )


@dataclass
class EncryptedEnvelope:
    """On-disk wrapper around an encrypted credential payload."""

    version: int
    ciphertext: str  # base64(nonce + tag + ciphertext)
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "encrypted": self.ciphertext,
            "updated": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Optional["EncryptedEnvelope"]:
        """Parse an envelope; None if the shape is wrong."""
        if not isinstance(data, dict):
            return None
        version = data.get("version")
        ciphertext = data.get("encrypted")
        if not isinstance(version, int) or not isinstance(ciphertext, str):
            return None
        return cls(
            version=version,
            ciphertext=ciphertext,
            updated_at=data.get("updated") or data.get("created") or "",
        )


@dataclass(frozen=True)
class ResolvedDevice:
    """A device confirmed to be in scope for polling."""

    id: str
    name: str
    room: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "room": self.room}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResolvedDevice":
        return cls(id=str(data["id"]), name=str(data.get("name") or data["id"]), room=data.get("room"))


@dataclass
class NormalizedDevice:
    """One device's headline status, rebuilt from scratch every cycle."""

    id: str
    name: str
    room: Optional[str]
    primary_capability: Optional[str]
    primary_state: Any
    temperature: Any = None
    humidity: Any = None
    battery: Any = None
    level: Any = None
    heating_setpoint: Any = None
    cooling_setpoint: Any = None
    capabilities: dict[str, Any] = field(default_factory=dict)

    # optional fields are omitted from the wire form when unset
    _OPTIONAL = (
        ("temperature", "temperature"),
        ("humidity", "humidity"),
        ("battery", "battery"),
        ("level", "level"),
        ("heating_setpoint", "heatingSetpoint"),
        ("cooling_setpoint", "coolingSetpoint"),
    )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the display-layer data contract."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "room": self.room,
            "primaryCapability": self.primary_capability,
            "primaryState": self.primary_state,
        }
        for attr, key in self._OPTIONAL:
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        data["capabilities"] = dict(self.capabilities)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NormalizedDevice":
        kwargs = {attr: data.get(key) for attr, key in cls._OPTIONAL}
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            room=data.get("room"),
            primary_capability=data.get("primaryCapability"),
            primary_state=data.get("primaryState"),
            capabilities=dict(data.get("capabilities") or {}),
            **kwargs,
        )


@dataclass
class CacheSnapshot:
    """Last-good state persisted for fast restart and offline display."""

    timestamp: str
    config_hash: str
    devices: list[ResolvedDevice] = field(default_factory=list)
    last_status: Optional[list[NormalizedDevice]] = None
    location_id: Optional[str] = None


@dataclass(frozen=True)
class AlertState:
    """The single active health alert."""

    type: AlertType
    message_key: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "messageKey": self.message_key}


@dataclass
class RateWindow:
    """Request count within the current fixed window."""

    request_count: int = 0
    window_reset_at: float = 0.0
