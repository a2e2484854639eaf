"""
Bidirectional state synchronization.

Inbound: upstream notifications are routed by dSUID to the matching node and
applied with UpdateMode.from_upstream(), which reports changes downstream and
never sends them back upstream.

Outbound: writes from the downstream runtime are turned into upstream
notifications/calls with UpdateMode.from_downstream(), which sends the value
upstream and does not report it back to the downstream runtime that wrote it.
Derived attributes (e.g. on_off from current_level) are updated with a
chained mode so they are visible downstream without a second upstream send.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..devices.capabilities import DERIVATIONS, NODE_LABEL, REACHABLE, attribute_updates, get_unit_type
from ..devices.node import DeviceNode
from ..devices.update import UpdateMode
from ..downstream import DownstreamRuntime
from ..exceptions import BridgeError, UnknownUnitError
from ..upstream.calls import CallResult
from ..upstream.session import Session

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = 0

_MISSING = object()


class SyncCoordinator:
    """Applies every change once, in the right direction."""

    def __init__(self, session: Session, runtime: DownstreamRuntime):
        self.session = session
        self.runtime = runtime
        self._nodes: Dict[str, DeviceNode] = {}
        self._by_slot: Dict[int, DeviceNode] = {}

        # Callbacks
        self.on_new_bridgeable: Optional[Callable[[str], None]] = None
        self.on_global_notification: Optional[Callable[[str, Dict[str, Any]], None]] = None

    # --- node registry ---

    @property
    def nodes(self) -> List[DeviceNode]:
        return list(self._nodes.values())

    def register(self, node: DeviceNode) -> bool:
        """
        Make a node tree reachable for routing.

        Fails if any of its slots is already held by a different node.
        """
        for unit in node.walk():
            if unit.slot is None:
                continue
            holder = self._by_slot.get(unit.slot)
            if holder is not None and holder is not unit:
                logger.error(
                    f"Slot {unit.slot} is already held by {holder.identity}, "
                    f"not registering {unit.identity}"
                )
                return False

        self._nodes[node.base_identity] = node
        for unit in node.walk():
            if unit.slot is not None:
                self._by_slot[unit.slot] = unit
        return True

    def node_for(self, identity: str) -> Optional[DeviceNode]:
        """Top-level node for an upstream device identity."""
        return self._nodes.get(identity)

    def node_for_slot(self, slot: int) -> Optional[DeviceNode]:
        return self._by_slot.get(slot)

    # --- inbound (upstream -> downstream) ---

    def handle_notification(self, message: Dict[str, Any]) -> None:
        """Notification handler for the upstream session."""
        name = message.get("notification")
        identity = message.get("dSUID")

        if identity is None:
            if self.on_global_notification is not None:
                self.on_global_notification(name, message)
            else:
                logger.debug(f"Ignoring global notification '{name}'")
            return

        node = self._nodes.get(identity)
        if node is None:
            props = message.get("changedproperties")
            if name == "pushNotification" and isinstance(props, dict):
                if props.get("x-p44-bridgeable") is True:
                    logger.info(f"Device {identity} became bridgeable")
                    if self.on_new_bridgeable is not None:
                        self.on_new_bridgeable(identity)
                return
            logger.error(f"Notification '{name}' for unknown device {identity}")
            return

        if name == "pushNotification":
            props = message.get("changedproperties")
            if not isinstance(props, dict):
                logger.error(f"pushNotification for {identity} without changedproperties")
                return
            logger.debug(f"Push for {identity}: {props}")
            self.apply_push(node, props)
        elif name == "vanish":
            self.mark_vanished(node)
        else:
            logger.error(f"Cannot handle notification '{name}' for {identity}")

    def apply_push(self, node: DeviceNode, props: Dict[str, Any], mode: Optional[UpdateMode] = None) -> None:
        """Apply upstream properties to a node tree (composed nodes forward to each child)."""
        mode = mode or UpdateMode.from_upstream()
        for unit in node.walk():
            if "active" in props or "x-p44-bridgeable" in props:
                if "active" in props:
                    unit.active = bool(props["active"])
                if "x-p44-bridgeable" in props:
                    unit.bridgeable = bool(props["x-p44-bridgeable"])
                self.update_attribute(unit, REACHABLE, unit.reachable, mode)
            for attribute, value in attribute_updates(unit.unit_type, unit.source_key, props).items():
                self.update_attribute(unit, attribute, value, mode)

    def apply_initial(self, node: DeviceNode, props: Dict[str, Any]) -> None:
        """Fill the cache from a device description before installation."""
        self.apply_push(node, props, UpdateMode.initial())

    def mark_vanished(self, node: DeviceNode) -> None:
        """The upstream device is gone: unreachable, but its slots are kept."""
        logger.info(f"Device {node.identity} vanished, keeping slot {node.slot}")
        for unit in node.walk():
            unit.active = False
            unit.bridgeable = False
            self.update_attribute(unit, REACHABLE, False, UpdateMode.from_upstream())

    def update_attribute(
        self,
        node: DeviceNode,
        attribute: str,
        value: Any,
        mode: UpdateMode,
        transition_time: Optional[float] = None,
    ) -> Optional[BridgeError]:
        """
        Set one cached attribute and propagate it as `mode` says.

        Returns the error if sending upstream failed; the cache is left
        unchanged in that case.
        """
        old = node.attributes.get(attribute, _MISSING)
        if old == value and not mode.forced:
            return None

        if mode.toward_upstream:
            error = self._send_upstream(node, attribute, value, mode, transition_time)
            if error is not None:
                return error

        node.attributes[attribute] = value

        if mode.toward_downstream and node.installed and node.slot is not None:
            self.runtime.report_attribute_changed(node.slot, attribute)

        if not mode.suppress_derivation and not mode.already_chained:
            derive = DERIVATIONS.get(attribute)
            if derive is not None:
                unit_type = get_unit_type(node.unit_type)
                for derived, derived_value in derive(value, node.attributes).items():
                    if unit_type.spec_for(derived) is not None:
                        self.update_attribute(node, derived, derived_value, mode.chained())
        return None

    # --- outbound (downstream -> upstream) ---

    def read_attribute(self, slot: int, attribute: str) -> Any:
        node = self._by_slot.get(slot)
        if node is None:
            raise UnknownUnitError(f"No unit at slot {slot}")
        if attribute not in node.attributes:
            raise UnknownUnitError(f"Unit at slot {slot} has no attribute '{attribute}'")
        return node.attributes[attribute]

    def write_attribute(
        self,
        slot: int,
        attribute: str,
        value: Any,
        transition_time: Optional[float] = None,
        defer_apply: bool = False,
    ) -> Optional[BridgeError]:
        """Handle a write from the downstream runtime. Returns an error or None."""
        node = self._by_slot.get(slot)
        if node is None:
            return UnknownUnitError(f"No unit at slot {slot}")

        if attribute == NODE_LABEL:
            return self._write_label(node, str(value))

        spec = get_unit_type(node.unit_type).spec_for(attribute)
        if spec is None or not spec.writable:
            return UnknownUnitError(f"Attribute '{attribute}' of slot {slot} is not writable")

        mode = UpdateMode.from_downstream(defer_apply=defer_apply).with_flags(forced=True)
        if spec.optimistic:
            return self.update_attribute(node, attribute, value, mode, transition_time)
        return self._send_upstream(node, attribute, value, mode, transition_time)

    def identify(self, slot: int, duration_seconds: float) -> Optional[BridgeError]:
        """Start (duration > 0) or stop identification of the unit at `slot`."""
        node = self._by_slot.get(slot)
        if node is None:
            return UnknownUnitError(f"No unit at slot {slot}")
        duration = duration_seconds if duration_seconds > 0 else -1
        return self.session.notify("identify", {"dSUID": node.base_identity, "duration": duration})

    def _write_label(self, node: DeviceNode, label: str) -> Optional[BridgeError]:
        def confirmed(result: CallResult) -> None:
            if result.ok:
                self.update_attribute(node, NODE_LABEL, label, UpdateMode())
            else:
                logger.warning(f"Renaming {node.base_identity} failed: {result.error}")

        future = self.session.set_property(node.base_identity, "name", label, on_result=confirmed)
        if future.done():
            return future.result().error
        return None

    def _send_upstream(
        self,
        node: DeviceNode,
        attribute: str,
        value: Any,
        mode: UpdateMode,
        transition_time: Optional[float],
    ) -> Optional[BridgeError]:
        spec = get_unit_type(node.unit_type).spec_for(attribute)
        if spec is None or not spec.writable:
            return UnknownUnitError(f"Attribute '{attribute}' of {node.identity} cannot be sent upstream")

        if transition_time is None:
            transition_time = node.default_transition_time
        params = {
            "dSUID": node.base_identity,
            "channel": DEFAULT_CHANNEL,
            "value": spec.encode(value),
            "transitionTime": transition_time or 0,
            "apply_now": not mode.defer_apply,
        }
        logger.debug(f"Sending {attribute}={value!r} of {node.identity} upstream")
        return self.session.notify("setOutputChannelValue", params)
