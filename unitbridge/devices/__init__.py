"""Device model: unit types, nodes, discovery parsing."""

from .builder import build_from_description, iter_device_descriptions, parse_device
from .capabilities import UNIT_TYPES, Capability, UnitType
from .node import DeviceNode, NodeKind, derive_identity
from .update import UpdateMode

__all__ = [
    "Capability",
    "DeviceNode",
    "NodeKind",
    "UNIT_TYPES",
    "UnitType",
    "UpdateMode",
    "build_from_description",
    "derive_identity",
    "iter_device_descriptions",
    "parse_device",
]
