"""
Unit types and their capabilities.

Declarative table of what each kind of exposed unit supports and how its
attributes are read from upstream properties. Adding a unit type means adding
a table entry, not a class.

Attribute sources:
    channel      channelStates[<default channel id>].value  (0..100 %)
    sensor       sensorStates[<input id>].value
    binaryInput  binaryInputStates[<input id>].value
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


class Capability(str, Enum):
    """Capabilities a unit can have."""
    IDENTIFY = "identify"
    ON_OFF = "on_off"
    LEVEL = "level"
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    ILLUMINANCE = "illuminance"
    CONTACT = "contact"


# Attributes every unit has, independent of its capabilities
NODE_LABEL = "node_label"
REACHABLE = "reachable"
COMMON_ATTRIBUTES = (NODE_LABEL, REACHABLE)

MAX_LEVEL = 254


def percent_to_level(value: float) -> int:
    """0..100 % to 0..254."""
    return max(0, min(MAX_LEVEL, int(round(float(value) * MAX_LEVEL / 100))))


def level_to_percent(level: int) -> float:
    """0..254 to 0..100 %."""
    return max(0.0, min(100.0, float(level) * 100 / MAX_LEVEL))


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass
class AttributeSpec:
    """How one attribute is decoded from upstream and encoded back."""
    capability: Capability
    attribute: str
    source: str
    decode: Callable[[Any], Any]
    encode: Optional[Callable[[Any], Any]] = None  # None = read-only
    optimistic: bool = True  # update the cache before upstream confirms a write

    @property
    def writable(self) -> bool:
        return self.encode is not None


ATTRIBUTE_SPECS: Dict[Capability, List[AttributeSpec]] = {
    Capability.IDENTIFY: [],
    Capability.ON_OFF: [
        AttributeSpec(
            capability=Capability.ON_OFF,
            attribute="on_off",
            source="channel",
            decode=lambda v: float(v) > 0,
            encode=lambda on: 100.0 if on else 0.0,
        ),
    ],
    Capability.LEVEL: [
        AttributeSpec(
            capability=Capability.LEVEL,
            attribute="current_level",
            source="channel",
            decode=percent_to_level,
            encode=level_to_percent,
        ),
    ],
    Capability.TEMPERATURE: [
        AttributeSpec(Capability.TEMPERATURE, "measured_value", "sensor", _optional_float),
    ],
    Capability.HUMIDITY: [
        AttributeSpec(Capability.HUMIDITY, "measured_value", "sensor", _optional_float),
    ],
    Capability.ILLUMINANCE: [
        AttributeSpec(Capability.ILLUMINANCE, "measured_value", "sensor", _optional_float),
    ],
    Capability.CONTACT: [
        AttributeSpec(Capability.CONTACT, "state_value", "binaryInput", lambda v: bool(v) if v is not None else False),
    ],
}


@dataclass
class UnitType:
    """A kind of exposed unit."""
    name: str
    capabilities: Tuple[Capability, ...]
    description: str = ""
    attributes: List[AttributeSpec] = field(default_factory=list)

    def __post_init__(self):
        if not self.attributes:
            self.attributes = [spec for cap in self.capabilities for spec in ATTRIBUTE_SPECS[cap]]

    def spec_for(self, attribute: str) -> Optional[AttributeSpec]:
        for spec in self.attributes:
            if spec.attribute == attribute:
                return spec
        return None


UNIT_TYPES: Dict[str, UnitType] = {
    t.name: t for t in [
        UnitType("on_off_light", (Capability.IDENTIFY, Capability.ON_OFF), "Switched light"),
        UnitType("on_off_plug", (Capability.IDENTIFY, Capability.ON_OFF), "Switched plug-in unit"),
        UnitType("dimmable_light", (Capability.IDENTIFY, Capability.ON_OFF, Capability.LEVEL), "Dimmable light"),
        UnitType("dimmable_plug", (Capability.IDENTIFY, Capability.ON_OFF, Capability.LEVEL), "Dimmable plug-in unit"),
        UnitType("temperature_sensor", (Capability.IDENTIFY, Capability.TEMPERATURE), "Temperature sensor (°C)"),
        UnitType("humidity_sensor", (Capability.IDENTIFY, Capability.HUMIDITY), "Relative humidity sensor (%)"),
        UnitType("illuminance_sensor", (Capability.IDENTIFY, Capability.ILLUMINANCE), "Illuminance sensor (lux)"),
        UnitType("contact_sensor", (Capability.IDENTIFY, Capability.CONTACT), "Contact / binary input"),
        UnitType("composed", (), "Aggregate of several sub-units"),
    ]
}


# attribute -> function(new value, node attributes) -> derived {attribute: value}
DERIVATIONS: Dict[str, Callable[[Any, Dict[str, Any]], Dict[str, Any]]] = {
    "current_level": lambda level, attrs: {"on_off": level > 0},
}


def get_unit_type(name: str) -> UnitType:
    try:
        return UNIT_TYPES[name]
    except KeyError:
        raise ValueError(f"Unknown unit type '{name}'")


def _state_value(props: Dict[str, Any], table: str, key: Optional[str]):
    """Return (found, value) for props[table][key]["value"]."""
    states = props.get(table)
    if not isinstance(states, dict) or key is None:
        return False, None
    state = states.get(key)
    if not isinstance(state, dict):
        return False, None
    return True, state.get("value")


def attribute_updates(unit_type: str, source_key: Optional[str], props: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract attribute values for one unit from upstream device properties.

    Used for both the initial device description and pushed
    `changedproperties`; properties that are absent produce no update.
    """
    updates: Dict[str, Any] = {}

    if "name" in props and props["name"] is not None:
        updates[NODE_LABEL] = str(props["name"])

    for spec in get_unit_type(unit_type).attributes:
        table = "channelStates" if spec.source == "channel" else f"{spec.source}States"
        found, value = _state_value(props, table, source_key)
        if not found:
            continue
        if value is None and spec.source == "channel":
            continue
        updates[spec.attribute] = spec.decode(value)

    return updates
