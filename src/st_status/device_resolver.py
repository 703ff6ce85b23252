"""
Device Resolver for the status poller.

Turns the configured device list or room names into the concrete list of
devices to poll. An explicit device list always wins and rooms are then
ignored entirely; otherwise every device in every matching room of the
account's primary location is used, deduplicated by id.
"""

from typing import Optional

from .cache_store import CacheStore
from .config import ModuleConfig
from .enums import LogLevel
from .exceptions import ApiError, PersistenceError
from .models import ResolvedDevice


class DeviceResolver:
    """
    Resolves devices once per process lifetime.

    A non-empty result is kept until invalidate() is called. An empty one
    does not count as resolved, so the next cycle checks again.
    """

    def __init__(
        self,
        client,
        cache: Optional[CacheStore] = None,
        logger: Optional[object] = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self._logger = logger
        self._devices: Optional[list[ResolvedDevice]] = None
        self._location_id: Optional[str] = None

    @property
    def devices(self) -> Optional[list[ResolvedDevice]]:
        return list(self._devices) if self._devices is not None else None

    @property
    def location_id(self) -> Optional[str]:
        return self._location_id

    @property
    def is_resolved(self) -> bool:
        return bool(self._devices)

    def restore(self, devices: list[ResolvedDevice], location_id: Optional[str]) -> None:
        """Seed the resolver from a valid cache snapshot."""
        self._devices = list(devices) if devices else None
        self._location_id = location_id

    def invalidate(self) -> None:
        self._devices = None
        self._location_id = None

    async def resolve(self, config: ModuleConfig) -> list[ResolvedDevice]:
        """
        Resolve the devices to poll.

        Returns:
            The device list; empty when neither devices nor rooms are configured

        Raises:
            StStatusError: If a lookup request fails
        """
        if config.devices:
            devices = [ResolvedDevice(id=d.id, name=d.name, room=d.room) for d in config.devices]
            self._log(LogLevel.DEBUG, "Using explicitly configured devices only", {
                "count": len(devices),
            })
        elif config.rooms:
            devices = await self._resolve_rooms(config.rooms)
        else:
            devices = []

        self._devices = devices
        self._log(LogLevel.INFO, "Resolved devices", {"count": len(devices)})
        self._persist(devices)
        return list(devices)

    async def _resolve_rooms(self, room_names: list[str]) -> list[ResolvedDevice]:
        self._log(LogLevel.DEBUG, "Resolving devices from rooms", {"rooms": list(room_names)})

        if not self._location_id:
            locations = await self._client.list_locations()
            location_id = locations[0].get("locationId") if locations else None
            if not location_id:
                raise ApiError(
                    code="no_locations",
                    message="No SmartThings locations found",
                )
            self._location_id = location_id
            self._log(LogLevel.DEBUG, "Using location", {"location_id": location_id})

        wanted = set(room_names)
        devices: list[ResolvedDevice] = []
        seen: set[str] = set()

        for room in await self._client.list_rooms(self._location_id):
            name = room.get("name")
            room_id = room.get("roomId")
            # Exact, case-sensitive match
            if name not in wanted or not room_id:
                continue
            self._log(LogLevel.DEBUG, "Fetching devices from room", {"room": name})
            for item in await self._client.list_room_devices(self._location_id, room_id):
                device_id = item.get("deviceId")
                if not device_id or device_id in seen:
                    continue
                seen.add(device_id)
                devices.append(ResolvedDevice(
                    id=device_id,
                    name=item.get("label") or item.get("name") or device_id,
                    room=name,
                ))
        return devices

    def _persist(self, devices: list[ResolvedDevice]) -> None:
        if self._cache is None:
            return
        try:
            self._cache.update(devices=devices, location_id=self._location_id)
        except PersistenceError as e:
            if self._logger:
                self._logger.log_error("DeviceResolver", "Failed to cache device list", error=e)

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "DeviceResolver", message, data)
