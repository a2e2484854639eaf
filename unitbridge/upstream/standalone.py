"""
Blocking upstream session for use before any event loop exists.

Runs the same framing and correlation logic as Session, but waits for
socket readiness with a selector and a timeout instead of being driven by
asyncio. Used during earliest startup (and by `unitbridge probe`). It must
not be used while an asyncio loop is running in the current thread.
"""

import asyncio
import logging
import selectors
import socket
import time
from typing import Any, Dict, List, Optional

from ..config import ApiConfig
from ..exceptions import (
    BridgeError,
    CallTimeoutError,
    ConnectionLostError,
    NotConnectedError,
    ProtocolError,
    TransportError,
)
from .calls import CallResult, CallTracker, PendingCall
from .framing import MessageFramer
from .session import NotificationHandler

logger = logging.getLogger(__name__)


def _ensure_no_running_loop() -> None:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return
    raise RuntimeError("BlockingSession cannot be used while an asyncio event loop is running")


class BlockingSession:
    """
    Poll-until-event client for the upstream API.

    Notifications arriving while waiting for a response go to the
    notification handler, or are queued in `notifications` if none is set.
    """

    def __init__(self, config: Optional[ApiConfig] = None):
        self.config = config or ApiConfig()
        self._framer = MessageFramer(self.config.delimiter_bytes)
        self._calls = CallTracker()
        self._sock: Optional[socket.socket] = None
        self._selector: Optional[selectors.BaseSelector] = None
        self._notification_handler: Optional[NotificationHandler] = None
        self.notifications: List[Dict[str, Any]] = []

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        self._notification_handler = handler

    def __enter__(self) -> "BlockingSession":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def connect(self) -> None:
        """Open the connection. Raises TransportError on failure."""
        _ensure_no_running_loop()
        if self._sock is not None:
            return

        host, port = self.config.host, self.config.port
        try:
            sock = socket.create_connection((host, port), timeout=self.config.connect_timeout_seconds)
        except OSError as e:
            raise TransportError(f"Cannot connect to {host}:{port}: {e}") from e

        self._sock = sock
        self._selector = selectors.DefaultSelector()
        self._selector.register(sock, selectors.EVENT_READ)
        self._framer.reset()
        logger.info(f"Connected to upstream API at {host}:{port} (blocking mode)")

    def close(self) -> None:
        self._teardown(ConnectionLostError("Session closed"))

    def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> CallResult:
        """Send a request and wait for its response."""
        _ensure_no_running_loop()
        if self._sock is None:
            return CallResult(error=NotConnectedError(f"Cannot call '{method}': not connected"))

        if timeout is None:
            timeout = self.config.call_timeout_seconds or None

        call_id = self._calls.next_id()
        message = dict(params or {})
        message["method"] = method
        message["id"] = call_id

        results: List[CallResult] = []
        self._calls.add(PendingCall(call_id=call_id, method=method, callback=results.append))
        error = self._send(message)
        if error is not None:
            self._calls.pop(call_id)
            return CallResult(error=error)

        deadline = time.monotonic() + timeout if timeout else None
        while not results:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._calls.pop(call_id)
                    return CallResult(error=CallTimeoutError(
                        f"No response to '{method}' within {timeout}s"
                    ))
            self.poll(remaining)
        return results[0]

    def notify(self, name: str, params: Optional[Dict[str, Any]] = None) -> Optional[BridgeError]:
        if self._sock is None:
            return NotConnectedError(f"Cannot send '{name}': not connected")
        message = dict(params or {})
        message["notification"] = name
        return self._send(message)

    def poll(self, timeout: Optional[float] = None) -> bool:
        """
        Wait up to `timeout` seconds for input and dispatch it.

        Returns True if anything was read. A transport failure closes the
        session and resolves all pending calls with ConnectionLostError.
        """
        if self._selector is None:
            return False

        events = self._selector.select(timeout)
        if not events:
            return False

        try:
            data = self._sock.recv(65536)
        except (BlockingIOError, socket.timeout):
            return False
        except OSError as e:
            logger.warning(f"Upstream read failed: {e}")
            self._teardown(ConnectionLostError(f"Read failed: {e}"))
            return False

        if not data:
            logger.warning("Connection closed by upstream")
            self._teardown(ConnectionLostError("Connection closed by upstream"))
            return False

        for frame in self._framer.feed(data):
            if frame.error is not None:
                logger.error(f"Dropping message: {frame.error}")
            elif "id" in frame.message:
                self._calls.resolve(frame.message)
            elif self._notification_handler is not None:
                try:
                    self._notification_handler(frame.message)
                except Exception:
                    logger.exception("Notification handler failed")
            else:
                self.notifications.append(frame.message)
        return True

    def _send(self, message: Dict[str, Any]) -> Optional[BridgeError]:
        try:
            data = self._framer.encode(message)
        except (TypeError, ValueError) as e:
            return ProtocolError(f"Cannot encode message: {e}")
        except ProtocolError as e:
            return e
        try:
            self._sock.sendall(data)
        except OSError as e:
            self._teardown(ConnectionLostError(f"Write failed: {e}"))
            return TransportError(f"Write failed: {e}")
        logger.debug(f">>> {data[:-1].decode('utf-8', errors='replace')}")
        return None

    def _teardown(self, reason: BridgeError) -> None:
        if self._selector is not None:
            self._selector.close()
            self._selector = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self._framer.reset()
        for call in self._calls.abandon_all():
            call.callback(CallResult(error=reason))
