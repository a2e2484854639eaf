"""
Build DeviceNode trees from upstream discovery data.

Mapping rules for one bridgeable upstream device:

1. An `x-p44-bridgeAs` hint ("on-off" or "level-control") defines the unit
   directly (light or plug-in unit depending on the output behaviour).
2. Otherwise the output function decides: switch -> on/off, dimmers (incl.
   colour and colour-temperature dimmers) -> dimmable. Then every sensor
   (temperature, humidity, illumination) and every binary input (except
   presence/motion) becomes a unit of its own.
3. One unit gives a SINGLE node; several give a COMPOSED node with the
   output first, then the inputs in upstream order.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from .description import (
    OUTPUT_FUNCTION_COLOR_DIMMER,
    OUTPUT_FUNCTION_CT_DIMMER,
    OUTPUT_FUNCTION_DIMMER,
    OUTPUT_FUNCTION_SWITCH,
    SENSOR_TYPE_HUMIDITY,
    SENSOR_TYPE_ILLUMINATION,
    SENSOR_TYPE_TEMPERATURE,
    UNSUPPORTED_BINARY_INPUT_TYPES,
    BridgeInfo,
    DeviceDescription,
)
from .node import DeviceNode, NodeKind

logger = logging.getLogger(__name__)

OUTPUT_ROLE = "output"
SENSOR_ROLE = "sensor"
BINARY_INPUT_ROLE = "binaryInput"

SENSOR_UNIT_TYPES = {
    SENSOR_TYPE_TEMPERATURE: "temperature_sensor",
    SENSOR_TYPE_HUMIDITY: "humidity_sensor",
    SENSOR_TYPE_ILLUMINATION: "illuminance_sensor",
}

# (unit_type, role, sub_id, source_key)
UnitSpec = Tuple[str, str, Optional[str], Optional[str]]

LIGHT_OUTPUT_FUNCTIONS = frozenset({
    OUTPUT_FUNCTION_SWITCH,
    OUTPUT_FUNCTION_DIMMER,
    OUTPUT_FUNCTION_CT_DIMMER,
    OUTPUT_FUNCTION_COLOR_DIMMER,
})


def parse_device(props: Dict[str, Any]) -> Optional[DeviceDescription]:
    """Validate one device property tree, None if unusable."""
    try:
        return DeviceDescription.model_validate(props)
    except ValidationError as e:
        logger.error(f"Ignoring malformed device description: {e}")
        return None


def parse_bridge_info(result: Dict[str, Any]) -> BridgeInfo:
    return BridgeInfo.model_validate(result)


def iter_device_descriptions(result: Dict[str, Any]) -> Iterator[Tuple[DeviceDescription, Dict[str, Any]]]:
    """Yield (description, raw properties) for every device in a root query result."""
    vdcs = result.get("x-p44-vdcs")
    if not isinstance(vdcs, dict):
        return
    for vdc_id, vdc in vdcs.items():
        devices = vdc.get("x-p44-devices") if isinstance(vdc, dict) else None
        if not isinstance(devices, dict):
            continue
        for props in devices.values():
            if not isinstance(props, dict):
                continue
            desc = parse_device(props)
            if desc is not None:
                yield desc, props


def _output_unit_type(desc: DeviceDescription) -> Optional[str]:
    light = desc.is_light
    if desc.bridge_as == "on-off":
        return "on_off_light" if light else "on_off_plug"
    if desc.bridge_as == "level-control":
        return "dimmable_light" if light else "dimmable_plug"
    if desc.bridge_as:
        logger.warning(f"Unknown bridgeAs hint '{desc.bridge_as}' on {desc.dsuid}, mapping automatically")

    output = desc.output_description
    if output is None or output.function is None:
        return None
    if light:
        if output.function not in LIGHT_OUTPUT_FUNCTIONS:
            logger.debug(f"No light unit for output function {output.function} of {desc.dsuid}")
            return None
        return "on_off_light" if output.function == OUTPUT_FUNCTION_SWITCH else "dimmable_light"
    return "on_off_plug" if output.function == OUTPUT_FUNCTION_SWITCH else "dimmable_plug"


def unit_specs(desc: DeviceDescription) -> List[UnitSpec]:
    """The units one upstream device maps to, in installation order."""
    units: List[UnitSpec] = []

    output_type = _output_unit_type(desc)
    if output_type is not None:
        units.append((output_type, OUTPUT_ROLE, None, desc.default_channel_id()))
        if desc.bridge_as in ("on-off", "level-control"):
            return units

    for input_id, sensor in (desc.sensor_descriptions or {}).items():
        unit_type = SENSOR_UNIT_TYPES.get(sensor.sensor_type)
        if unit_type is None:
            logger.debug(f"Skipping sensor {input_id} of {desc.dsuid}: type {sensor.sensor_type}")
            continue
        units.append((unit_type, SENSOR_ROLE, input_id, input_id))

    for input_id, binary_input in (desc.binary_input_descriptions or {}).items():
        if binary_input.input_type is None or binary_input.input_type in UNSUPPORTED_BINARY_INPUT_TYPES:
            logger.debug(f"Skipping binary input {input_id} of {desc.dsuid}: type {binary_input.input_type}")
            continue
        units.append(("contact_sensor", BINARY_INPUT_ROLE, input_id, input_id))

    return units


def build_from_description(desc: DeviceDescription) -> Optional[DeviceNode]:
    """
    Build the node tree for one upstream device.

    Returns None for devices that are not bridgeable or have nothing that
    can be exposed. Attribute values other than label and reachability are
    filled in later from the device's state properties.
    """
    if not desc.bridgeable:
        logger.debug(f"Device {desc.dsuid} is not bridgeable")
        return None

    units = unit_specs(desc)
    if not units:
        logger.info(f"Bridgeable device {desc.dsuid} ({desc.name}) has no mappable units")
        return None

    info = dict(
        name=desc.name or "",
        zone=desc.zone_name or "",
        vendor=desc.vendor_name or "",
        model=desc.model or "",
        serial=desc.display_id or desc.dsuid,
        config_url=desc.config_url or "",
        active=desc.active if desc.active is not None else True,
        bridgeable=True,
    )

    output = desc.output_description
    transition_time = output.recommended_transition_time if output is not None else None

    if len(units) == 1:
        unit_type, role, _, source_key = units[0]
        node = DeviceNode(
            base_identity=desc.dsuid,
            unit_type=unit_type,
            kind=NodeKind.SINGLE,
            source_key=source_key,
            default_transition_time=transition_time if role == OUTPUT_ROLE else None,
            **info,
        )
    else:
        node = DeviceNode(base_identity=desc.dsuid, unit_type="composed", **info)
        for unit_type, role, sub_id, source_key in units:
            node.add_child(DeviceNode(
                base_identity=desc.dsuid,
                unit_type=unit_type,
                kind=NodeKind.SUB,
                role=role,
                sub_id=sub_id,
                source_key=source_key,
                default_transition_time=transition_time if role == OUTPUT_ROLE else None,
                **info,
            ))

    for unit in node.walk():
        unit.attributes.update(unit.initial_attributes())

    logger.info(
        f"Mapped {desc.dsuid} ({desc.name}) to {node.unit_type}"
        + (f" with {len(node.children)} sub-units" if node.children else "")
    )
    return node
