"""
Downstream runtime interface.

The downstream device-model runtime exposes installed units at their slots.
Its wire format is not part of unitbridge; the bridge only needs to install
units and tell the runtime when an attribute changed. The runtime calls back
into SyncCoordinator.read_attribute() / write_attribute() / identify().
"""

import logging
from collections import deque
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple

from .devices.node import DeviceNode
from .exceptions import BridgeError

logger = logging.getLogger(__name__)

# Installs and reports kept by LoggingRuntime; older entries are discarded
DEFAULT_HISTORY = 1000


class DownstreamRuntime(ABC):
    """What the bridge needs from the downstream runtime."""

    @abstractmethod
    def install_unit(self, slot: int, node: DeviceNode) -> Optional[BridgeError]:
        """Expose `node` at `slot`. Returns an error or None."""
        pass

    @abstractmethod
    def report_attribute_changed(self, slot: int, attribute: str) -> None:
        """The value of `attribute` of the unit at `slot` changed."""
        pass


@dataclass
class AttributeReport:
    slot: int
    attribute: str
    value: object


class LoggingRuntime(DownstreamRuntime):
    """
    Runtime that keeps installed units in memory and logs every change.

    Used by `unitbridge run` when no real downstream runtime is attached.
    Only the most recent `history` installs and reports are kept.
    """

    def __init__(self, history: int = DEFAULT_HISTORY):
        self.units: Dict[int, DeviceNode] = {}
        self.install_order: Deque[Tuple[int, str]] = deque(maxlen=history)
        self.reports: Deque[AttributeReport] = deque(maxlen=history)

    def install_unit(self, slot: int, node: DeviceNode) -> Optional[BridgeError]:
        existing = self.units.get(slot)
        if existing is not None and existing is not node:
            return BridgeError(f"Slot {slot} is already occupied by {existing.identity}")
        self.units[slot] = node
        self.install_order.append((slot, node.identity))
        parent = f" (part of slot {node.parent.slot})" if node.parent is not None else ""
        logger.info(f"Installed {node.unit_type} '{node.name}' at slot {slot}{parent}")
        return None

    def report_attribute_changed(self, slot: int, attribute: str) -> None:
        node = self.units.get(slot)
        value = node.get(attribute) if node is not None else None
        self.reports.append(AttributeReport(slot, attribute, value))
        logger.info(f"Slot {slot}: {attribute} = {value!r}")

    def reports_for(self, slot: int) -> List[AttributeReport]:
        return [r for r in self.reports if r.slot == slot]
