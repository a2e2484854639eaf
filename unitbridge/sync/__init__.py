"""State synchronization between upstream devices and downstream units."""

from .coordinator import SyncCoordinator

__all__ = ["SyncCoordinator"]
