"""
Upstream API client.

The upstream device-management system speaks delimiter-framed JSON over a
TCP socket. Session is the event-driven client; BlockingSession is the
poll-until-event variant for use before the event loop runs.
"""

from .calls import CallResult, CallTracker, PendingCall
from .framing import MessageFramer
from .session import ConnectionState, Session, expand_property_path
from .standalone import BlockingSession

__all__ = [
    "BlockingSession",
    "CallResult",
    "CallTracker",
    "ConnectionState",
    "MessageFramer",
    "PendingCall",
    "Session",
    "expand_property_path",
]
