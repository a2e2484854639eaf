"""
Models for upstream discovery data.

The upstream API describes devices as JSON property trees. These pydantic
models pick out the properties the bridge needs; everything else is ignored.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

# Properties queried for every device
DEVICE_PROPERTIES: Dict[str, Any] = {
    "dSUID": None,
    "name": None,
    "function": None,
    "x-p44-zonename": None,
    "outputDescription": None,
    "outputSettings": None,
    "vendorName": None,
    "model": None,
    "configURL": None,
    "displayId": None,
    "channelStates": None,
    "channelDescriptions": None,
    "sensorDescriptions": None,
    "sensorStates": None,
    "binaryInputDescriptions": None,
    "binaryInputStates": None,
    "active": None,
    "x-p44-bridgeable": None,
    "x-p44-bridged": None,
    "x-p44-bridgeAs": None,
}

# getProperty query on "root": bridge identity plus all devices of all vDCs
ROOT_QUERY: Dict[str, Any] = {
    "dSUID": None,
    "model": None,
    "name": None,
    "x-p44-deviceHardwareId": None,
    "x-p44-vdcs": {"*": {"x-p44-devices": {"*": DEVICE_PROPERTIES}}},
}

# Output functions
OUTPUT_FUNCTION_SWITCH = 0
OUTPUT_FUNCTION_DIMMER = 1
OUTPUT_FUNCTION_POSITIONAL = 2
OUTPUT_FUNCTION_CT_DIMMER = 3
OUTPUT_FUNCTION_COLOR_DIMMER = 4

# Sensor types
SENSOR_TYPE_TEMPERATURE = 1
SENSOR_TYPE_HUMIDITY = 2
SENSOR_TYPE_ILLUMINATION = 3

# Binary input types that are not exposed (presence and motion detectors)
UNSUPPORTED_BINARY_INPUT_TYPES = frozenset({1, 3, 5, 6})

LIGHT_GROUP = "1"


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ChannelDescription(_UpstreamModel):
    ds_index: Optional[int] = Field(default=None, alias="dsIndex")
    name: Optional[str] = None


class OutputDescription(_UpstreamModel):
    function: Optional[int] = None
    behaviour_type: Optional[str] = Field(default=None, alias="x-p44-behaviourType")
    recommended_transition_time: Optional[float] = Field(
        default=None, alias="x-p44-recommendedTransitionTime"
    )


class OutputSettings(_UpstreamModel):
    groups: Optional[Dict[str, Any]] = None


class SensorDescription(_UpstreamModel):
    sensor_type: Optional[int] = Field(default=None, alias="sensorType")
    min: Optional[float] = None
    max: Optional[float] = None
    resolution: Optional[float] = None


class BinaryInputDescription(_UpstreamModel):
    input_type: Optional[int] = Field(default=None, alias="inputType")


class DeviceDescription(_UpstreamModel):
    """One upstream device as returned by getProperty."""
    dsuid: str = Field(alias="dSUID")
    name: Optional[str] = None
    zone_name: Optional[str] = Field(default=None, alias="x-p44-zonename")
    active: Optional[bool] = None
    bridgeable: Optional[bool] = Field(default=None, alias="x-p44-bridgeable")
    bridged: Optional[bool] = Field(default=None, alias="x-p44-bridged")
    bridge_as: Optional[str] = Field(default=None, alias="x-p44-bridgeAs")
    vendor_name: Optional[str] = Field(default=None, alias="vendorName")
    model: Optional[str] = None
    config_url: Optional[str] = Field(default=None, alias="configURL")
    display_id: Optional[str] = Field(default=None, alias="displayId")
    output_description: Optional[OutputDescription] = Field(default=None, alias="outputDescription")
    output_settings: Optional[OutputSettings] = Field(default=None, alias="outputSettings")
    channel_descriptions: Optional[Dict[str, ChannelDescription]] = Field(
        default=None, alias="channelDescriptions"
    )
    sensor_descriptions: Optional[Dict[str, SensorDescription]] = Field(
        default=None, alias="sensorDescriptions"
    )
    binary_input_descriptions: Optional[Dict[str, BinaryInputDescription]] = Field(
        default=None, alias="binaryInputDescriptions"
    )

    @property
    def is_light(self) -> bool:
        """Outputs with light behaviour in the light group."""
        if self.output_description is None or self.output_description.behaviour_type != "light":
            return False
        groups = (self.output_settings.groups if self.output_settings else None) or {}
        return bool(groups.get(LIGHT_GROUP))

    def default_channel_id(self) -> Optional[str]:
        """Id of the channel with dsIndex 0."""
        for channel_id, channel in (self.channel_descriptions or {}).items():
            if channel.ds_index == 0:
                return channel_id
        return None


class BridgeInfo(_UpstreamModel):
    """Identity of the upstream system itself."""
    dsuid: Optional[str] = Field(default=None, alias="dSUID")
    name: Optional[str] = None
    model: Optional[str] = None
    hardware_id: Optional[str] = Field(default=None, alias="x-p44-deviceHardwareId")
