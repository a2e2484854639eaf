"""
Request/response correlation.

Every outgoing call gets a string id from a monotonically increasing
counter and is recorded as a PendingCall before its bytes are written.
Responses are matched by id only, never by position.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import BridgeError, UpstreamCallError

logger = logging.getLogger(__name__)


@dataclass
class CallResult:
    """Outcome of a single upstream call."""
    message: Optional[Dict[str, Any]] = None
    error: Optional[BridgeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def result(self) -> Any:
        """The `result` member of the response, if any."""
        if self.message is None:
            return None
        return self.message.get("result")


@dataclass
class PendingCall:
    """A call waiting for its response."""
    call_id: str
    method: str
    callback: Callable[[CallResult], None]
    timer: Any = field(default=None, repr=False)  # asyncio.TimerHandle when a timeout is armed


def result_from_response(message: Dict[str, Any]) -> CallResult:
    """Turn a response message into a CallResult, detecting error indications."""
    error = message.get("error")
    if error is None:
        return CallResult(message=message)
    if isinstance(error, dict):
        return CallResult(message=message, error=UpstreamCallError(
            str(error.get("message", "Unknown error")),
            code=error.get("code"),
            data=error.get("data"),
        ))
    return CallResult(message=message, error=UpstreamCallError(str(error)))


class CallTracker:
    """Ordered list of pending calls plus the id counter."""

    def __init__(self):
        self._counter = 0
        self._pending: List[PendingCall] = []

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending_ids(self) -> List[str]:
        return [call.call_id for call in self._pending]

    def next_id(self) -> str:
        self._counter += 1
        return str(self._counter)

    def add(self, call: PendingCall) -> None:
        self._pending.append(call)

    def pop(self, call_id: str) -> Optional[PendingCall]:
        """Remove and return the pending call with this id, if any."""
        for index, call in enumerate(self._pending):
            if call.call_id == call_id:
                del self._pending[index]
                if call.timer is not None:
                    call.timer.cancel()
                return call
        return None

    def abandon_all(self) -> List[PendingCall]:
        """Remove every pending call and return them (oldest first)."""
        calls, self._pending = self._pending, []
        for call in calls:
            if call.timer is not None:
                call.timer.cancel()
        return calls

    def resolve(self, message: Dict[str, Any]) -> bool:
        """
        Deliver a response to its pending call.

        Returns False if no pending call matches the response id; the message
        is dropped in that case.
        """
        call_id = str(message.get("id"))
        call = self.pop(call_id)
        if call is None:
            logger.error(f"Dropping response with unmatched id '{call_id}' (pending: {self.pending_ids})")
            return False
        logger.debug(f"Response for call {call_id} ({call.method})")
        call.callback(result_from_response(message))
        return True
