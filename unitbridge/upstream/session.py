"""
Upstream session.

Owns the single socket connection to the upstream device-management API and
runs on the asyncio event loop:

- Connection lifecycle: DISCONNECTED -> CONNECTING -> CONNECTED
- Request/response correlation by string id (see calls.py)
- Delivery of unsolicited notifications to one registered handler
- Reconnect with a fixed delay after any transport failure

Every outcome is reported as a value. Calls resolve a future (and an optional
callback) with a CallResult; transport failures go to the connection status
callback. Nothing here raises into the caller for runtime conditions.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..config import ApiConfig
from ..exceptions import (
    BridgeError,
    CallTimeoutError,
    ConnectionLostError,
    NotConnectedError,
    ProtocolError,
    SessionBusyError,
    TransportError,
)
from .calls import CallResult, CallTracker, PendingCall
from .framing import Frame, MessageFramer

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

StatusCallback = Callable[[Optional[BridgeError]], None]
ResultCallback = Callable[[CallResult], None]
NotificationHandler = Callable[[Dict[str, Any]], None]


class ConnectionState(str, Enum):
    """State of the upstream connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def expand_property_path(path: str, value: Any) -> Dict[str, Any]:
    """Turn "a.b.c" and a value into {"a": {"b": {"c": value}}}."""
    keys = [k for k in path.split(".") if k]
    if not keys:
        raise ValueError(f"Invalid property path '{path}'")
    tree: Any = value
    for key in reversed(keys):
        tree = {key: tree}
    return tree


class Session:
    """
    Event-driven client for the upstream JSON socket API.

    Usage:
        session = Session(config.api)
        session.set_notification_handler(on_notification)
        await session.connect(on_status)
        result = await session.call("getProperty", {"dSUID": "root", "query": {...}})
    """

    def __init__(self, config: Optional[ApiConfig] = None):
        self.config = config or ApiConfig()
        self._framer = MessageFramer(self.config.delimiter_bytes)
        self._calls = CallTracker()
        self._state = ConnectionState.DISCONNECTED

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._retry_timer: Optional[asyncio.TimerHandle] = None

        self._auto_reconnect = False
        self._on_status: Optional[StatusCallback] = None
        self._notification_handler: Optional[NotificationHandler] = None

        self.connect_attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def awaiting_response(self) -> bool:
        """True while a call is outstanding in single-call mode."""
        return self.config.single_call and len(self._calls) > 0

    @property
    def pending_calls(self) -> int:
        return len(self._calls)

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_timer is not None

    def set_notification_handler(self, handler: Optional[NotificationHandler]) -> None:
        self._notification_handler = handler

    # --- connection lifecycle ---

    def connect(self, on_status: Optional[StatusCallback] = None) -> asyncio.Task:
        """
        Start connecting and keep the connection up until disconnect().

        `on_status` is called with None every time a connection is
        established and with the error every time one fails or drops.
        The returned task resolves with the outcome of the first attempt.
        """
        self._on_status = on_status
        self._auto_reconnect = True
        return self._start_attempt()

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting."""
        self._auto_reconnect = False
        self._cancel_retry()

        if self._connect_task and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass
        self._connect_task = None

        writer = self._writer
        read_task = self._read_task
        was_connected = self._state == ConnectionState.CONNECTED
        self._teardown(ConnectionLostError("Session disconnected"))
        self._state = ConnectionState.DISCONNECTED

        if read_task is not None:
            try:
                await read_task
            except asyncio.CancelledError:
                pass
        if writer is not None:
            try:
                await writer.wait_closed()
            except OSError:
                pass

        if was_connected:
            logger.info("Upstream session disconnected")

    def _start_attempt(self) -> asyncio.Task:
        self._cancel_retry()
        if self._connect_task is not None and not self._connect_task.done():
            return self._connect_task

        self._state = ConnectionState.CONNECTING
        self.connect_attempts += 1
        loop = asyncio.get_running_loop()
        self._connect_task = loop.create_task(self._attempt_connection())
        return self._connect_task

    async def _attempt_connection(self) -> Optional[BridgeError]:
        host, port = self.config.host, self.config.port
        logger.info(f"Connecting to upstream API at {host}:{port} (attempt {self.connect_attempts})")

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.config.connect_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = TransportError(f"Timed out connecting to {host}:{port}")
            self._connection_failed(error)
            return error
        except OSError as e:
            error = TransportError(f"Cannot connect to {host}:{port}: {e}")
            self._connection_failed(error)
            return error

        self._reader = reader
        self._writer = writer
        self._framer.reset()
        self._state = ConnectionState.CONNECTED
        logger.info(f"Connected to upstream API at {host}:{port}")

        self._read_task = asyncio.get_running_loop().create_task(self._read_loop(reader))
        self._report_status(None)
        return None

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    self._connection_failed(TransportError("Connection closed by upstream"))
                    return
                for frame in self._framer.feed(data):
                    self._dispatch(frame)
                if reader is not self._reader:
                    # torn down by a handler
                    return
        except OSError as e:
            self._connection_failed(TransportError(f"Read failed: {e}"))

    def _connection_failed(self, error: TransportError) -> None:
        logger.warning(f"Upstream connection failed: {error}")
        self._teardown(ConnectionLostError(f"Connection lost: {error}"))
        self._state = ConnectionState.DISCONNECTED
        self._report_status(error)
        if self._auto_reconnect:
            self._schedule_retry()

    def _teardown(self, reason: BridgeError) -> None:
        if self._read_task is not None:
            if self._read_task is not asyncio.current_task():
                self._read_task.cancel()
            self._read_task = None
        if self._writer is not None:
            self._writer.close()
        self._reader = None
        self._writer = None
        self._framer.reset()

        abandoned = self._calls.abandon_all()
        if abandoned:
            logger.warning(f"Resolving {len(abandoned)} pending call(s) with: {reason}")
        for call in abandoned:
            call.callback(CallResult(error=reason))

    def _schedule_retry(self) -> None:
        self._cancel_retry()
        delay = self.config.reconnect_delay_seconds
        logger.info(f"Reconnecting to upstream API in {delay:.1f}s")
        self._retry_timer = asyncio.get_running_loop().call_later(delay, self._retry)

    def _retry(self) -> None:
        self._retry_timer = None
        if self._auto_reconnect:
            self._start_attempt()

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _report_status(self, error: Optional[BridgeError]) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(error)
        except Exception:
            logger.exception("Connection status callback failed")

    # --- messages ---

    def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        on_result: Optional[ResultCallback] = None,
    ) -> "asyncio.Future[CallResult]":
        """
        Send a request and return a future for its CallResult.

        The optional `on_result` callback receives the same CallResult.
        Failures (not connected, busy, send error, timeout, connection loss,
        upstream error response) are delivered as CallResult.error.
        """
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[CallResult]" = loop.create_future()

        def deliver(result: CallResult) -> None:
            if on_result is not None:
                try:
                    on_result(result)
                except Exception:
                    logger.exception(f"Result callback for '{method}' failed")
            if not future.done():
                future.set_result(result)

        if self._state != ConnectionState.CONNECTED:
            deliver(CallResult(error=NotConnectedError(f"Cannot call '{method}': not connected")))
            return future
        if self.awaiting_response:
            deliver(CallResult(error=SessionBusyError(
                f"Cannot call '{method}': waiting for response to call {self._calls.pending_ids[0]}"
            )))
            return future

        call_id = self._calls.next_id()
        message = dict(params or {})
        message["method"] = method
        message["id"] = call_id

        pending = PendingCall(call_id=call_id, method=method, callback=deliver)
        if self.config.call_timeout_seconds > 0:
            pending.timer = loop.call_later(
                self.config.call_timeout_seconds, self._call_timed_out, call_id
            )
        self._calls.add(pending)

        error = self._write(message)
        if error is not None:
            self._calls.pop(call_id)
            deliver(CallResult(error=error))
            if isinstance(error, TransportError):
                self._connection_failed(error)
        return future

    def notify(self, name: str, params: Optional[Dict[str, Any]] = None) -> Optional[BridgeError]:
        """Send a notification (no response expected). Returns an error or None."""
        if self._state != ConnectionState.CONNECTED:
            return NotConnectedError(f"Cannot send '{name}': not connected")

        message = dict(params or {})
        message["notification"] = name
        error = self._write(message)
        if isinstance(error, TransportError):
            self._connection_failed(error)
        return error

    def get_property(
        self,
        identity: str,
        query: Dict[str, Any],
        on_result: Optional[ResultCallback] = None,
    ) -> "asyncio.Future[CallResult]":
        return self.call("getProperty", {"dSUID": identity, "query": query}, on_result)

    def set_properties(
        self,
        identity: str,
        properties: Dict[str, Any],
        on_result: Optional[ResultCallback] = None,
    ) -> "asyncio.Future[CallResult]":
        return self.call("setProperty", {"dSUID": identity, "properties": properties}, on_result)

    def set_property(
        self,
        identity: str,
        path: str,
        value: Any,
        on_result: Optional[ResultCallback] = None,
    ) -> "asyncio.Future[CallResult]":
        """Set a single property; `path` may be dotted ("x-p44-bridge.started")."""
        return self.set_properties(identity, expand_property_path(path, value), on_result)

    def _write(self, message: Dict[str, Any]) -> Optional[BridgeError]:
        try:
            data = self._framer.encode(message)
        except (TypeError, ValueError) as e:
            return ProtocolError(f"Cannot encode message: {e}")
        except ProtocolError as e:
            return e

        if self._writer is None or self._writer.is_closing():
            return TransportError("Connection is closing")
        try:
            self._writer.write(data)
        except OSError as e:
            return TransportError(f"Write failed: {e}")

        logger.debug(f">>> {data[:-1].decode('utf-8', errors='replace')}")
        return None

    def _call_timed_out(self, call_id: str) -> None:
        call = self._calls.pop(call_id)
        if call is None:
            return
        logger.warning(f"Call {call_id} ({call.method}) timed out")
        call.callback(CallResult(error=CallTimeoutError(
            f"No response to '{call.method}' within {self.config.call_timeout_seconds}s"
        )))

    def _dispatch(self, frame: Frame) -> None:
        if frame.error is not None:
            logger.error(f"Dropping message: {frame.error}")
            return

        message = frame.message
        logger.debug(f"<<< {message}")

        if "id" in message:
            self._calls.resolve(message)
            return

        if self._notification_handler is None:
            logger.debug("No notification handler, dropping notification")
            return
        try:
            self._notification_handler(message)
        except Exception:
            logger.exception("Notification handler failed")
