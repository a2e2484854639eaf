"""
Identity -> slot registry.

Maps upstream device identities to small, stable downstream slot numbers and
keeps that mapping across restarts.

Persisted state (see store.py):
    slotmap               one status character per slot (" ", "d", "D")
    bindings/<identity>   the slot number bound to that identity

A discovery pass starts by downgrading every CONFIRMED slot to UNCONFIRMED,
then confirms the slot of every identity seen again and allocates new slots
(first FREE gap, else append) for identities seen for the first time. A slot
that stays UNCONFIRMED is never handed to anyone else, so a device that is
temporarily absent gets its old slot back when it returns.
"""

import logging
from typing import Dict, Iterable, List, Optional

from ..config import DEFAULT_SLOT_CAPACITY
from ..devices.node import DeviceNode
from ..exceptions import AllocationError, StoreError
from .slots import SlotMap, SlotStatus
from .store import JsonStore

logger = logging.getLogger(__name__)

MAP_KEY = "slotmap"
BINDING_PREFIX = "bindings/"


class IdentityRegistry:
    """
    Assigns slots to identities.

    Store failures never stop processing: they are logged as warnings and the
    registry carries on with its in-memory state for the rest of the session.
    """

    def __init__(self, store: JsonStore, capacity: int = DEFAULT_SLOT_CAPACITY):
        self.store = store
        self.capacity = capacity
        self._map = SlotMap(capacity)

        # Bindings seen or written during this process
        self._bindings: Dict[str, int] = {}
        # Live assignments this session (slot -> identity, identity -> slot)
        self._owners: Dict[int, str] = {}
        self._live: Dict[str, int] = {}

    @property
    def slot_map(self) -> SlotMap:
        return self._map

    @property
    def live_assignments(self) -> Dict[str, int]:
        return dict(self._live)

    # --- persistence ---

    def load(self) -> SlotMap:
        """Read the persisted SlotMap (keeps the in-memory map if unreadable)."""
        try:
            encoded = self.store.get(MAP_KEY, "")
        except StoreError as e:
            logger.warning(f"Cannot load slot map, continuing with in-memory state: {e}")
            return self._map

        if not isinstance(encoded, str):
            logger.warning(f"Ignoring malformed persisted slot map: {encoded!r}")
            encoded = ""
        if len(encoded) > self.capacity:
            logger.warning(
                f"Persisted slot map has {len(encoded)} slots, capacity is {self.capacity}; "
                f"ignoring the excess"
            )
        self._map = SlotMap.decode(encoded, self.capacity)
        return self._map

    def save_map(self) -> bool:
        try:
            self.store.put(MAP_KEY, self._map.encode())
        except StoreError as e:
            logger.warning(f"Cannot persist slot map: {e}")
            return False
        logger.debug(f"Persisted slot map '{self._map.encode()}'")
        return True

    def _binding_key(self, identity: str) -> str:
        return f"{BINDING_PREFIX}{identity}"

    def _read_binding(self, identity: str) -> Optional[int]:
        if identity in self._bindings:
            return self._bindings[identity]
        try:
            value = self.store.get(self._binding_key(identity))
        except StoreError as e:
            logger.warning(f"Cannot read binding for {identity}: {e}")
            return None
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            logger.warning(f"Ignoring malformed binding for {identity}: {value!r}")
            return None
        self._bindings[identity] = value
        return value

    def _write_binding(self, identity: str, slot: int) -> None:
        self._bindings[identity] = slot
        try:
            self.store.put(self._binding_key(identity), slot)
        except StoreError as e:
            logger.warning(f"Cannot persist binding {identity} -> {slot}: {e}")

    def _drop_binding(self, identity: str) -> None:
        self._bindings.pop(identity, None)
        try:
            self.store.delete(self._binding_key(identity))
        except StoreError as e:
            logger.warning(f"Cannot delete binding for {identity}: {e}")

    def _drop_stale_bindings(self, slot: int, identity: str) -> None:
        """
        Drop bindings of other identities to a slot that is being handed out.

        Such a binding is left behind when the process stops after writing a
        binding but before persisting the slot map.
        """
        for other, bound in self.bindings().items():
            if bound == slot and other != identity:
                logger.warning(f"Dropping stale binding {other} -> {slot}, the slot was never marked in use")
                self._drop_binding(other)

    # --- assignment ---

    def begin_pass(self) -> None:
        """Start a discovery pass: reload the map, nothing is confirmed yet."""
        self.load()
        self._map.downgrade_confirmed()
        self._owners.clear()
        self._live.clear()

    def assign(self, identity: str) -> Optional[int]:
        """
        Return the slot for `identity`, reusing its binding or allocating one.

        Returns None if no slot could be allocated. A newly allocated binding
        is persisted before this method returns.
        """
        if identity in self._live:
            return self._live[identity]

        slot = self._read_binding(identity)
        if slot is not None:
            if not self._map.contains(slot):
                logger.warning(
                    f"Binding {identity} -> {slot} is outside the slot map "
                    f"(length {len(self._map)}), discarding it"
                )
                self._drop_binding(identity)
                slot = None
            elif self._map[slot] == SlotStatus.CONFIRMED:
                logger.error(
                    f"Slot {slot} of {identity} is already in use by {self._owners.get(slot)}, "
                    f"allocating a new slot"
                )
                self._drop_binding(identity)
                slot = None
            else:
                if self._map[slot] == SlotStatus.FREE:
                    logger.info(f"Reclaiming free slot {slot} for {identity}")
                self._map.mark(slot, SlotStatus.CONFIRMED)
                logger.info(f"Reusing slot {slot} for {identity}")

        if slot is None:
            try:
                slot = self._map.allocate()
            except AllocationError as e:
                logger.error(f"Cannot assign a slot to {identity}: {e}")
                return None
            self._drop_stale_bindings(slot, identity)
            self._write_binding(identity, slot)
            logger.info(f"Assigned new slot {slot} to {identity}")

        self._owners[slot] = identity
        self._live[identity] = slot
        return slot

    def assign_pass(self, identities: Iterable[str]) -> Dict[str, Optional[int]]:
        """Run a complete discovery pass for plain identities."""
        self.begin_pass()
        result = {identity: self.assign(identity) for identity in identities}
        self.save_map()
        return result

    def assign_tree(self, node: DeviceNode) -> bool:
        """
        Assign slots to a node and (after it) its children.

        Children are left unassigned if the parent could not get a slot.
        """
        node.slot = self.assign(node.identity)
        if node.slot is None:
            if node.children:
                logger.error(f"Skipping {len(node.children)} sub-unit(s) of {node.identity}")
            return False
        for child in node.children:
            child.slot = self.assign(child.identity)
        return True

    def assign_nodes(self, nodes: List[DeviceNode]) -> List[DeviceNode]:
        """Run a complete discovery pass for a list of node trees.

        Returns the top-level nodes that received a slot.
        """
        self.begin_pass()
        assigned = [node for node in nodes if self.assign_tree(node)]
        self.save_map()
        return assigned

    def assign_additional(self, node: DeviceNode) -> bool:
        """Assign a node discovered after the initial pass and persist at once."""
        ok = self.assign_tree(node)
        self.save_map()
        return ok

    # --- queries ---

    def slot_of(self, identity: str) -> Optional[int]:
        if identity in self._live:
            return self._live[identity]
        slot = self._read_binding(identity)
        if slot is not None and self._map.contains(slot):
            return slot
        return None

    def identity_at(self, slot: int) -> Optional[str]:
        return self._owners.get(slot)

    def bindings(self) -> Dict[str, int]:
        """All known bindings, persisted and in-memory."""
        result: Dict[str, int] = {}
        try:
            for key in self.store.keys(BINDING_PREFIX):
                value = self.store.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    result[key[len(BINDING_PREFIX):]] = value
        except StoreError as e:
            logger.warning(f"Cannot read bindings: {e}")
        result.update(self._bindings)
        return result

    def forget(self, identity: str) -> bool:
        """
        Remove the binding of an identity and free its slot.

        Refused for identities confirmed in the current session. The slot is
        left as is if some other identity currently occupies it.
        """
        if identity in self._live:
            logger.error(f"Cannot forget {identity}: slot {self._live[identity]} is in use")
            return False

        slot = self._read_binding(identity)
        if slot is None:
            logger.info(f"No binding for {identity}")
            return False

        self._drop_binding(identity)
        if self._map.contains(slot) and slot not in self._owners:
            self._map.mark(slot, SlotStatus.FREE)
            self.save_map()
            logger.info(f"Forgot {identity}, slot {slot} is free again")
        else:
            logger.info(f"Forgot {identity} (slot {slot} not freed)")
        return True
