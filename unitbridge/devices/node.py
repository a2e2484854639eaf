"""
DeviceNode: one exposed unit.

A single upstream device becomes either one SINGLE node, or a COMPOSED node
with ordered SUB nodes (one per output or input of the device). Sub-node
identities are derived from the upstream identity, so the same physical
sub-unit always gets the same identity.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from .capabilities import NODE_LABEL, REACHABLE, Capability, get_unit_type


class NodeKind(str, Enum):
    SINGLE = "single"
    COMPOSED = "composed"
    SUB = "sub"


def derive_identity(base: str, role: str, sub_id: Optional[str] = None) -> str:
    """Identity of a sub-unit: "<base>_<role>" or "<base>_<role>_<subId>"."""
    if sub_id is None or sub_id == "":
        return f"{base}_{role}"
    return f"{base}_{role}_{sub_id}"


@dataclass
class DeviceNode:
    """An exposed unit and its cached attribute values."""
    base_identity: str                      # identity of the upstream device
    unit_type: str
    kind: NodeKind = NodeKind.SINGLE
    role: Optional[str] = None              # sub-units only
    sub_id: Optional[str] = None            # sub-units only
    source_key: Optional[str] = None        # channel id or input id the attributes are read from
    default_transition_time: Optional[float] = None  # outputs only, used when a write gives none

    # Descriptive info
    name: str = ""
    zone: str = ""
    vendor: str = ""
    model: str = ""
    serial: str = ""
    config_url: str = ""

    # Upstream status (reachable = active and bridgeable)
    active: bool = True
    bridgeable: bool = True

    slot: Optional[int] = None              # None until assigned
    installed: bool = False
    attributes: Dict[str, Any] = field(default_factory=dict)
    children: List["DeviceNode"] = field(default_factory=list)
    parent: Optional["DeviceNode"] = field(default=None, repr=False)

    def __post_init__(self):
        get_unit_type(self.unit_type)
        if self.kind == NodeKind.SUB and not self.role:
            raise ValueError("sub-unit needs a role")

    @property
    def identity(self) -> str:
        if self.kind == NodeKind.SUB:
            return derive_identity(self.base_identity, self.role, self.sub_id)
        return self.base_identity

    @property
    def parent_identity(self) -> Optional[str]:
        return self.parent.identity if self.parent is not None else None

    @property
    def reachable(self) -> bool:
        return self.active and self.bridgeable

    @property
    def is_composed(self) -> bool:
        return self.kind == NodeKind.COMPOSED

    @property
    def capabilities(self):
        return get_unit_type(self.unit_type).capabilities

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def add_child(self, child: "DeviceNode") -> "DeviceNode":
        """Append a sub-unit; this node becomes (or stays) COMPOSED."""
        if self.kind == NodeKind.SUB:
            raise ValueError("sub-units cannot have children")
        if child.base_identity != self.base_identity:
            raise ValueError(
                f"sub-unit of {self.base_identity} has base identity {child.base_identity}"
            )
        child.kind = NodeKind.SUB
        child.parent = self
        self.kind = NodeKind.COMPOSED
        self.children.append(child)
        return child

    def walk(self) -> Iterator["DeviceNode"]:
        """This node, then its children in order."""
        yield self
        for child in self.children:
            yield child

    def get(self, attribute: str, default: Any = None) -> Any:
        return self.attributes.get(attribute, default)

    def initial_attributes(self) -> Dict[str, Any]:
        """Values that every unit exposes before any state is known."""
        return {NODE_LABEL: self.name, REACHABLE: self.reachable}

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "parent_identity": self.parent_identity,
            "unit_type": self.unit_type,
            "kind": self.kind.value,
            "slot": self.slot,
            "name": self.name,
            "zone": self.zone,
            "reachable": self.reachable,
            "attributes": dict(self.attributes),
            "children": [child.to_dict() for child in self.children],
        }
