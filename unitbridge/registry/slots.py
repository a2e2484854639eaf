"""
SlotMap: which downstream slots exist and whether they are in use.

Persisted as a string with one status character per slot; the map length is
the string length.
"""

from enum import Enum
from typing import Iterator, List, Optional

from ..exceptions import AllocationError


class SlotStatus(str, Enum):
    """Status of one slot."""
    FREE = " "
    UNCONFIRMED = "d"   # known from a previous run, not seen yet this run
    CONFIRMED = "D"     # in use this run


class SlotMap:
    """
    Ordered, growable table of slot statuses.

    The length only ever grows (up to `capacity`); unused slots are marked
    FREE rather than removed.
    """

    def __init__(self, capacity: int, statuses: Optional[List[SlotStatus]] = None):
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        statuses = list(statuses or [])
        if len(statuses) > capacity:
            raise ValueError(f"{len(statuses)} slots exceed capacity {capacity}")
        self.capacity = capacity
        self._statuses = statuses

    def __len__(self) -> int:
        return len(self._statuses)

    def __getitem__(self, slot: int) -> SlotStatus:
        return self._statuses[slot]

    def __iter__(self) -> Iterator[SlotStatus]:
        return iter(self._statuses)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SlotMap):
            return NotImplemented
        return self.capacity == other.capacity and self._statuses == other._statuses

    def __repr__(self) -> str:
        return f"SlotMap({self.encode()!r}, capacity={self.capacity})"

    def encode(self) -> str:
        return "".join(status.value for status in self._statuses)

    @classmethod
    def decode(cls, encoded: str, capacity: int) -> "SlotMap":
        """
        Parse a persisted map.

        Unknown characters are read as FREE. Entries beyond `capacity` (e.g.
        after lowering the configured capacity) are dropped.
        """
        by_char = {status.value: status for status in SlotStatus}
        statuses = [by_char.get(ch, SlotStatus.FREE) for ch in encoded[:capacity]]
        return cls(capacity, statuses)

    def contains(self, slot: int) -> bool:
        return 0 <= slot < len(self._statuses)

    def downgrade_confirmed(self) -> None:
        """Start of a new run: nothing is confirmed yet."""
        self._statuses = [
            SlotStatus.UNCONFIRMED if s == SlotStatus.CONFIRMED else s
            for s in self._statuses
        ]

    def first_free(self) -> Optional[int]:
        for slot, status in enumerate(self._statuses):
            if status == SlotStatus.FREE:
                return slot
        return None

    def allocate(self) -> int:
        """
        Claim a new slot: the first FREE entry, else append.

        The slot is marked CONFIRMED. Raises AllocationError if the map is
        full.
        """
        slot = self.first_free()
        if slot is None:
            if len(self._statuses) >= self.capacity:
                raise AllocationError(f"All {self.capacity} slots are in use")
            slot = len(self._statuses)
            self._statuses.append(SlotStatus.FREE)
        self._statuses[slot] = SlotStatus.CONFIRMED
        return slot

    def mark(self, slot: int, status: SlotStatus) -> None:
        if not self.contains(slot):
            raise IndexError(f"slot {slot} out of range (length {len(self._statuses)})")
        self._statuses[slot] = status

    def count(self, status: SlotStatus) -> int:
        return sum(1 for s in self._statuses if s == status)
