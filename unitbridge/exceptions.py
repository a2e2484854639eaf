"""
Exception hierarchy for unitbridge.

Most of these are handed around as values (call results, connection status
callbacks, write results) rather than raised; see the individual components.
"""

from typing import Any, Optional


class BridgeError(Exception):
    """Base class for all unitbridge errors."""


class TransportError(BridgeError):
    """Resolve, connect, read or write failure on the upstream socket."""


class ConnectionLostError(TransportError):
    """The connection went away while a call was still pending."""


class ProtocolError(BridgeError):
    """Malformed or unexpected message on the upstream connection."""


class NotConnectedError(BridgeError):
    """Operation requires a connected session."""


class SessionBusyError(BridgeError):
    """A call is already outstanding in single-call mode."""


class CallTimeoutError(BridgeError):
    """No response arrived for a call within the configured timeout."""


class UpstreamCallError(BridgeError):
    """The upstream system answered a call with an error indication."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(f"[{code}] {message}" if code is not None else message)


class AllocationError(BridgeError):
    """No slot could be allocated (capacity exhausted)."""


class StoreError(BridgeError):
    """Reading or writing the persisted store failed."""


class UnknownUnitError(BridgeError):
    """No installed unit at the given slot, or no such attribute on it."""
