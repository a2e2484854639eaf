"""
unitbridge - expose upstream devices as stable downstream units.

Connects to an upstream device-management system over its JSON socket API,
maps every bridgeable device to one or more downstream slots that stay the
same across restarts, and keeps state in sync in both directions.
"""

__version__ = "0.1.0"

from .bridge import Bridge, BridgeState
from .config import ApiConfig, BridgeConfig, RegistryConfig
from .devices import DeviceNode, UpdateMode
from .downstream import DownstreamRuntime, LoggingRuntime
from .registry import IdentityRegistry, JsonStore, SlotMap, SlotStatus
from .sync import SyncCoordinator
from .upstream import BlockingSession, CallResult, Session

__all__ = [
    "ApiConfig",
    "BlockingSession",
    "Bridge",
    "BridgeConfig",
    "BridgeState",
    "CallResult",
    "DeviceNode",
    "DownstreamRuntime",
    "IdentityRegistry",
    "JsonStore",
    "LoggingRuntime",
    "RegistryConfig",
    "Session",
    "SlotMap",
    "SlotStatus",
    "SyncCoordinator",
    "UpdateMode",
    "__version__",
]
