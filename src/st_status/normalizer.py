"""
Normalizer for device status payloads.

Maps the provider's per-device status payload

    {"components": {"main": {<capability>: {<attribute>: {"value": ...}}}}}

onto a NormalizedDevice. Every logical value is read through an explicit,
ordered list of probes; the first probe that finds a value wins. The
primary capability is picked from a fixed priority list, which encodes
which status matters most when a device exposes several.
"""

from dataclasses import dataclass
from typing import Any, Iterator, Optional

from .enums import ErrorCategory, LogLevel
from .models import NormalizedDevice, ResolvedDevice

MAIN_COMPONENT = "main"

# Order is significant: earlier entries win ties
CAPABILITY_PRIORITY = (
    "switch",
    "contactSensor",
    "contact",
    "motionSensor",
    "motion",
    "lock",
    "presenceSensor",
    "presence",
    "windowShade",
    "temperatureMeasurement",
    "battery",
)

CAPABILITY_NAMES = {
    "temperatureMeasurement": "temperature",
    "relativeHumidityMeasurement": "humidity",
    "contactSensor": "contact",
    "motionSensor": "motion",
    "presenceSensor": "presence",
    "windowShade": "blinds",
    "windowShadeLevel": "blinds",
    "switchLevel": "level",
}

_MISSING = object()


def canonical_capability(name: str) -> str:
    """Map a provider capability id to the short name used by the display."""
    return CAPABILITY_NAMES.get(name, name)


def extract_state(capability_data: Any) -> Any:
    """
    Return the value of the first attribute that carries a 'value' field.

    Only meaningful for single-attribute capabilities; attribute order is
    whatever the payload provides.
    """
    if not isinstance(capability_data, dict):
        return None
    for attribute in capability_data.values():
        if isinstance(attribute, dict) and "value" in attribute:
            return attribute["value"]
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class AttributeProbe:
    """component[capability][attribute]['value']"""

    capability: str
    attribute: str

    def read(self, component: dict) -> Any:
        attribute = _child(_child(component, self.capability), self.attribute)
        if isinstance(attribute, dict) and "value" in attribute:
            return attribute["value"]
        return _MISSING


@dataclass(frozen=True)
class DirectProbe:
    """component[capability]['value'], a flattened variant some devices use."""

    capability: str

    def read(self, component: dict) -> Any:
        capability = _child(component, self.capability)
        if isinstance(capability, dict) and "value" in capability:
            return capability["value"]
        return _MISSING


@dataclass(frozen=True)
class GenericProbe:
    """First attribute value of a capability, optionally numbers only."""

    capability: str
    numeric: bool = False

    def read(self, component: dict) -> Any:
        capability = _child(component, self.capability)
        if not capability:
            return _MISSING
        value = extract_state(capability)
        if value is None or (self.numeric and not _is_number(value)):
            return _MISSING
        return value


@dataclass(frozen=True)
class TruthyProbe:
    """Like AttributeProbe but skips empty values."""

    capability: str
    attribute: str

    def read(self, component: dict) -> Any:
        value = AttributeProbe(self.capability, self.attribute).read(component)
        return value if value is not _MISSING and value else _MISSING


def _child(data: Any, key: str) -> Any:
    return data.get(key) if isinstance(data, dict) else None


TEMPERATURE_PROBES = (
    AttributeProbe("temperatureMeasurement", "temperature"),
    AttributeProbe("temperature", "temperature"),
    DirectProbe("temperature"),
    GenericProbe("temperatureMeasurement", numeric=True),
    GenericProbe("temperature", numeric=True),
)

# Thermostats that report only through their own capability
THERMOSTAT_TEMPERATURE_PROBES = (
    AttributeProbe("thermostatTemperature", "temperature"),
)

HUMIDITY_PROBES = (
    AttributeProbe("relativeHumidityMeasurement", "humidity"),
    AttributeProbe("humidity", "humidity"),
    DirectProbe("humidity"),
    GenericProbe("relativeHumidityMeasurement", numeric=True),
    GenericProbe("humidity", numeric=True),
)

SHADE_LEVEL_PROBES = (
    AttributeProbe("windowShade", "shadeLevel"),
    AttributeProbe("windowShadeLevel", "shadeLevel"),
    AttributeProbe("switchLevel", "level"),
)

LOCK_PROBES = (
    AttributeProbe("lock", "lock"),
    GenericProbe("lock"),
)

BATTERY_PROBES = (
    AttributeProbe("battery", "battery"),
)

OPERATING_STATE_PROBES = (
    TruthyProbe("thermostatOperatingState", "thermostatOperatingState"),
    TruthyProbe("thermostatOperatingState", "operatingState"),
)

THERMOSTAT_MODE_PROBES = (
    TruthyProbe("thermostatMode", "thermostatMode"),
)

HEATING_SETPOINT_PROBES = (
    AttributeProbe("thermostatHeatingSetpoint", "heatingSetpoint"),
)

COOLING_SETPOINT_PROBES = (
    AttributeProbe("thermostatCoolingSetpoint", "coolingSetpoint"),
)


def first_match(probes, components: list[dict]) -> Any:
    """Evaluate probes against each component in turn; None if nothing matches."""
    for component in components:
        for probe in probes:
            value = probe.read(component)
            if value is not _MISSING:
                return value
    return None


class Normalizer:
    """
    Builds NormalizedDevice records from raw status payloads.

    Stateless apart from its collaborators: the same payload always
    yields the same record.
    """

    def __init__(
        self,
        observer: Optional[object] = None,
        logger: Optional[object] = None,
    ) -> None:
        """
        Args:
            observer: Receives record_failure(SCHEMA) for malformed payloads
            logger: Optional AuditLogger
        """
        self._observer = observer
        self._logger = logger

    def normalize(
        self,
        device: ResolvedDevice,
        raw_status: Any,
    ) -> Optional[NormalizedDevice]:
        """
        Normalize one device's status.

        Returns:
            The snapshot, or None if raw_status is not a well-formed object
        """
        components = self._components(raw_status)
        if components is None:
            self._log(LogLevel.WARN, "Malformed status payload", {"device_id": device.id})
            if self._observer is not None:
                self._observer.record_failure(ErrorCategory.SCHEMA)
            return None

        main = components.get(MAIN_COMPONENT)
        if not isinstance(main, dict):
            main = None
        main_only = [main] if main is not None else []
        ordered = list(self._ordered_components(components))

        primary_capability, primary_state = self._primary(main)
        temperature = first_match(TEMPERATURE_PROBES, ordered)
        if temperature is None:
            temperature = first_match(THERMOSTAT_TEMPERATURE_PROBES, main_only)

        heating = first_match(HEATING_SETPOINT_PROBES, main_only)
        cooling = first_match(COOLING_SETPOINT_PROBES, main_only)

        snapshot = NormalizedDevice(
            id=device.id,
            name=device.name,
            room=device.room,
            primary_capability=primary_capability,
            primary_state=primary_state,
            temperature=temperature,
            humidity=first_match(HUMIDITY_PROBES, ordered),
            battery=first_match(BATTERY_PROBES, main_only),
            level=first_match(SHADE_LEVEL_PROBES, main_only),
            heating_setpoint=heating,
            cooling_setpoint=cooling,
            capabilities=self._capabilities(main_only, heating, cooling),
        )

        if self._logger and self._logger.is_enabled_for(LogLevel.DEBUG):
            self._log(LogLevel.DEBUG, "Normalized device", {
                "device_id": device.id,
                "capabilities_present": sorted(main) if main else [],
                "primary_capability": primary_capability,
            })
        return snapshot

    def _primary(self, main: Optional[dict]) -> tuple[Optional[str], Any]:
        if not main:
            return None, None
        for capability in CAPABILITY_PRIORITY:
            if not main.get(capability):
                continue
            if capability == "lock":
                state = first_match(LOCK_PROBES, [main])
            elif capability == "windowShade":
                # Blinds report the numeric level, not the open/closed token
                state = first_match(SHADE_LEVEL_PROBES, [main])
            else:
                state = extract_state(main[capability])
            return canonical_capability(capability), state
        return None, None

    @staticmethod
    def _capabilities(main_only: list[dict], heating: Any, cooling: Any) -> dict[str, Any]:
        capabilities: dict[str, Any] = {}
        probes = (
            ("temperature", (AttributeProbe("temperatureMeasurement", "temperature"),)),
            ("humidity", (AttributeProbe("relativeHumidityMeasurement", "humidity"),)),
            ("thermostatOperatingState", OPERATING_STATE_PROBES),
            ("thermostatMode", THERMOSTAT_MODE_PROBES),
        )
        for key, key_probes in probes:
            value = first_match(key_probes, main_only)
            if value is not None:
                capabilities[key] = value
        if heating is not None:
            capabilities["heatingSetpoint"] = heating
        if cooling is not None:
            capabilities["coolingSetpoint"] = cooling
        return capabilities

    @staticmethod
    def _components(raw_status: Any) -> Optional[dict]:
        if not isinstance(raw_status, dict):
            return None
        components = raw_status.get("components")
        if not isinstance(components, dict):
            return None
        return components

    @staticmethod
    def _ordered_components(components: dict) -> Iterator[dict]:
        main = components.get(MAIN_COMPONENT)
        if isinstance(main, dict):
            yield main
        for name, component in components.items():
            if name != MAIN_COMPONENT and isinstance(component, dict):
                yield component

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "Normalizer", message, data)
