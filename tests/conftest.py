"""
Shared fixtures: fake upstream API servers and sample device data.
"""

import asyncio
import json
import socketserver
import threading
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from unitbridge.config import ApiConfig

Responder = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


# =============================================================================
# Sample upstream data
# =============================================================================

def light_props(dsuid: str, name: str = "Light", value: float = 0.0, dimmer: bool = True,
                bridgeable: bool = True, active: bool = True) -> Dict[str, Any]:
    """Device properties of a light with one output channel."""
    return {
        "dSUID": dsuid,
        "name": name,
        "x-p44-zonename": "Living",
        "active": active,
        "x-p44-bridgeable": bridgeable,
        "vendorName": "plan44",
        "model": "Dimmer",
        "outputDescription": {"function": 1 if dimmer else 0, "x-p44-behaviourType": "light"},
        "outputSettings": {"groups": {"1": True}},
        "channelDescriptions": {"brightness": {"dsIndex": 0}},
        "channelStates": {"brightness": {"value": value, "age": 1.0}},
    }


def multi_sensor_props(dsuid: str, name: str = "Multi", temperature: float = 21.5,
                       contact: bool = False) -> Dict[str, Any]:
    """A switched plug with a temperature sensor, a contact and a motion input."""
    return {
        "dSUID": dsuid,
        "name": name,
        "active": True,
        "x-p44-bridgeable": True,
        "outputDescription": {"function": 0},
        "channelDescriptions": {"0": {"dsIndex": 0}},
        "channelStates": {"0": {"value": 100}},
        "sensorDescriptions": {"0": {"sensorType": 1}},
        "sensorStates": {"0": {"value": temperature}},
        "binaryInputDescriptions": {
            "0": {"inputType": 0},
            "1": {"inputType": 5},
        },
        "binaryInputStates": {"0": {"value": contact}, "1": {"value": False}},
    }


def root_result(*devices: Dict[str, Any]) -> Dict[str, Any]:
    """Result of the root getProperty query."""
    return {
        "dSUID": "ROOT-DSUID",
        "name": "Test Hub",
        "model": "hub",
        "x-p44-deviceHardwareId": "HW-1",
        "x-p44-vdcs": {
            "vdc1": {"x-p44-devices": {d["dSUID"]: d for d in devices}},
        },
    }


# =============================================================================
# asyncio fake upstream
# =============================================================================

class FakeUpstream:
    """
    Loopback upstream API server for Session and Bridge tests.

    Requests whose method has a responder are answered automatically; all
    received messages are recorded.
    """

    def __init__(self, delimiter: bytes = b"\n"):
        self.delimiter = delimiter
        self.port: Optional[int] = None
        self.received: List[Dict[str, Any]] = []
        self.responders: Dict[str, Responder] = {}
        self.connection_count = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: List[asyncio.StreamWriter] = []
        self._changed = asyncio.Event()

    def api_config(self, **overrides) -> ApiConfig:
        settings = dict(
            host="127.0.0.1",
            port=self.port,
            delimiter="nul" if self.delimiter == b"\x00" else "newline",
            reconnect_delay_seconds=0.05,
            connect_timeout_seconds=2.0,
            call_timeout_seconds=0,
        )
        settings.update(overrides)
        return ApiConfig(**settings)

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", self.port or 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        await self.drop_clients()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def drop_clients(self) -> None:
        writers, self._writers = self._writers, []
        for writer in writers:
            writer.close()
        for writer in writers:
            try:
                await writer.wait_closed()
            except OSError:
                pass

    @property
    def client_count(self) -> int:
        return len(self._writers)

    def send(self, message: Dict[str, Any]) -> None:
        self.send_raw(json.dumps(message).encode() + self.delimiter)

    def send_raw(self, data: bytes) -> None:
        for writer in self._writers:
            writer.write(data)

    def respond(self, request: Dict[str, Any], result: Any = None, **extra) -> None:
        message = {"id": request["id"], "result": result}
        message.update(extra)
        self.send(message)

    def requests(self, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.received if "method" in m and (method is None or m["method"] == method)]

    def notifications(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.received if "notification" in m and (name is None or m["notification"] == name)]

    async def wait_for(self, predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        """Wait until `predicate()` holds, re-checking whenever something arrives."""
        async def waiter():
            while not predicate():
                self._changed.clear()
                try:
                    await asyncio.wait_for(self._changed.wait(), 0.05)
                except asyncio.TimeoutError:
                    pass
        await asyncio.wait_for(waiter(), timeout)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        self.connection_count += 1
        self._changed.set()
        buffer = b""
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                buffer += data
                while self.delimiter in buffer:
                    raw, buffer = buffer.split(self.delimiter, 1)
                    if raw.strip():
                        self._on_message(json.loads(raw))
        except (ConnectionError, asyncio.CancelledError):
            pass
        finally:
            if writer in self._writers:
                self._writers.remove(writer)
                writer.close()
            self._changed.set()

    def _on_message(self, message: Dict[str, Any]) -> None:
        self.received.append(message)
        self._changed.set()
        responder = self.responders.get(message.get("method"))
        if responder is not None:
            reply = responder(message)
            if reply is not None:
                reply = dict(reply)
                reply["id"] = message["id"]
                self.send(reply)


@pytest_asyncio.fixture
async def upstream():
    server = FakeUpstream()
    await server.start()
    yield server
    await server.stop()


# =============================================================================
# Threaded fake upstream (for the blocking session and CLI)
# =============================================================================

class ThreadedUpstream:
    """
    Blocking-socket upstream server running in a background thread.

    `responders` map a method to a function returning the response
    (without id) or None for no answer. `before_response` messages are
    sent ahead of every response.
    """

    def __init__(self, delimiter: bytes = b"\n"):
        self.delimiter = delimiter
        self.responders: Dict[str, Responder] = {}
        self.before_response: List[Dict[str, Any]] = []
        self.received: List[Dict[str, Any]] = []
        owner = self

        class Handler(socketserver.BaseRequestHandler):
            def handle(self):
                buffer = b""
                while True:
                    try:
                        data = self.request.recv(65536)
                    except OSError:
                        return
                    if not data:
                        return
                    buffer += data
                    while owner.delimiter in buffer:
                        raw, buffer = buffer.split(owner.delimiter, 1)
                        if raw.strip():
                            owner._on_message(self.request, json.loads(raw))

        self._server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), Handler)
        self._server.daemon_threads = True
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    def _send(self, sock, message: Dict[str, Any]) -> None:
        sock.sendall(json.dumps(message).encode() + self.delimiter)

    def _on_message(self, sock, message: Dict[str, Any]) -> None:
        self.received.append(message)
        responder = self.responders.get(message.get("method"))
        if responder is None:
            return
        reply = responder(message)
        if reply is None:
            return
        for extra in self.before_response:
            self._send(sock, extra)
        reply = dict(reply)
        reply["id"] = message["id"]
        self._send(sock, reply)

    def api_config(self, **overrides) -> ApiConfig:
        settings = dict(host="127.0.0.1", port=self.port, connect_timeout_seconds=2.0, call_timeout_seconds=2.0)
        settings.update(overrides)
        return ApiConfig(**settings)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()


@pytest.fixture
def threaded_upstream():
    server = ThreadedUpstream()
    server.start()
    yield server
    server.stop()
