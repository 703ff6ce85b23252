"""
Cache Store module for the last-good device snapshot.

Persists the resolved device list, the last normalized snapshot and the
location id to a JSON file so a restart can show data immediately and a
failing cycle can fall back to known stale data. A cache written for a
different configuration (hash mismatch) or older than the TTL is
discarded as a whole.
"""

import json
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional

from .enums import LogLevel
from .exceptions import PersistenceError
from .models import CacheSnapshot, NormalizedDevice, ResolvedDevice, from_iso, to_iso

CACHE_TTL_SECONDS = 24 * 60 * 60

_UNSET = object()


class CacheStore:
    """
    JSON file cache bound to one configuration hash.

    Updates are merged into the current snapshot and written through
    immediately.
    """

    def __init__(
        self,
        file_path: Path,
        config_hash: str,
        clock: Callable[[], float] = time.time,
        logger: Optional[object] = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
    ) -> None:
        """
        Initialize the cache store.

        Args:
            file_path: Path to the cache file (JSON format)
            config_hash: Hash of the active configuration
            clock: Wall clock in epoch seconds
            logger: Optional AuditLogger
            ttl_seconds: Maximum snapshot age accepted on load
        """
        self._file_path = file_path
        self._config_hash = config_hash
        self._clock = clock
        self._logger = logger
        self._ttl_seconds = ttl_seconds
        self._snapshot: Optional[CacheSnapshot] = None

    @property
    def snapshot(self) -> Optional[CacheSnapshot]:
        return self._snapshot

    @property
    def config_hash(self) -> str:
        return self._config_hash

    def load(self) -> Optional[CacheSnapshot]:
        """
        Load the cache file.

        Returns:
            The snapshot, or None if the file is missing, unreadable, written
            for another configuration or expired
        """
        self._snapshot = None
        if not self._file_path.exists():
            return None

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
            snapshot = self._from_dict(raw_data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            self._log(LogLevel.WARN, "Unreadable cache file, ignoring", {
                "file_path": str(self._file_path),
                "error_message": str(e),
            })
            return None

        if snapshot.config_hash != self._config_hash:
            self._log(LogLevel.INFO, "Configuration changed, discarding cache", {})
            return None

        age = self.age_seconds(snapshot)
        if age is None or age > self._ttl_seconds:
            self._log(LogLevel.INFO, "Cache expired, discarding", {"age_seconds": age})
            return None

        self._snapshot = snapshot
        self._log(LogLevel.DEBUG, "Cache loaded", {
            "age_minutes": round(age / 60),
            "devices": len(snapshot.devices),
        })
        return snapshot

    def age_seconds(self, snapshot: Optional[CacheSnapshot] = None) -> Optional[float]:
        snapshot = snapshot or self._snapshot
        if snapshot is None:
            return None
        written = from_iso(snapshot.timestamp)
        if written is None:
            return None
        return self._clock() - written

    def invalidate(self) -> None:
        """Drop the in-memory snapshot; the next update starts a fresh one."""
        self._snapshot = None

    def update(
        self,
        devices: Optional[list[ResolvedDevice]] = None,
        last_status: Optional[list[NormalizedDevice]] = None,
        location_id: Any = _UNSET,
    ) -> CacheSnapshot:
        """
        Merge updates into the snapshot and write it to disk.

        Raises:
            PersistenceError: If the cache file cannot be written
        """
        now = to_iso(self._clock())
        if self._snapshot is None:
            self._snapshot = CacheSnapshot(timestamp=now, config_hash=self._config_hash)

        if devices is not None:
            self._snapshot.devices = list(devices)
        if last_status is not None:
            self._snapshot.last_status = list(last_status)
        if location_id is not _UNSET:
            self._snapshot.location_id = location_id
        self._snapshot.timestamp = now

        tmp = self._file_path.with_name(self._file_path.name + ".tmp")
        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self._to_dict(self._snapshot), f, indent=2)
            os.replace(tmp, self._file_path)
        except (OSError, TypeError, ValueError) as e:
            if tmp.exists():
                tmp.unlink()
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write cache file: {e}",
                details={"file_path": str(self._file_path)},
            ) from e

        self._log(LogLevel.DEBUG, "Cache updated", {})
        return self._snapshot

    @staticmethod
    def _to_dict(snapshot: CacheSnapshot) -> dict[str, Any]:
        return {
            "timestamp": snapshot.timestamp,
            "configHash": snapshot.config_hash,
            "devices": [d.to_dict() for d in snapshot.devices],
            "lastStatus": (
                [d.to_dict() for d in snapshot.last_status]
                if snapshot.last_status is not None else None
            ),
            "locationId": snapshot.location_id,
        }

    @staticmethod
    def _from_dict(data: dict[str, Any]) -> CacheSnapshot:
        last_status = data.get("lastStatus")
        return CacheSnapshot(
            timestamp=data["timestamp"],
            config_hash=data["configHash"],
            devices=[ResolvedDevice.from_dict(d) for d in data.get("devices") or []],
            last_status=(
                [NormalizedDevice.from_dict(d) for d in last_status]
                if last_status is not None else None
            ),
            location_id=data.get("locationId"),
        )

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "CacheStore", message, data)
