"""Slot registry: persisted identity -> slot mapping."""

from .identity import IdentityRegistry
from .slots import SlotMap, SlotStatus
from .store import JsonStore

__all__ = ["IdentityRegistry", "JsonStore", "SlotMap", "SlotStatus"]
