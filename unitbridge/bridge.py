"""
Bridge orchestrator.

Wires the upstream session, the slot registry, the device model and the
downstream runtime together:

    connect -> query root -> build node trees -> assign slots -> install units
    push notifications -> SyncCoordinator -> downstream runtime
    downstream writes  -> SyncCoordinator -> upstream session

After a reconnect the device list is queried again: known devices are
refreshed, newly bridgeable ones are added with live slot allocation.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .config import BridgeConfig
from .devices.builder import build_from_description, iter_device_descriptions, parse_bridge_info, parse_device
from .devices.description import DEVICE_PROPERTIES, ROOT_QUERY, BridgeInfo, DeviceDescription
from .devices.node import DeviceNode
from .downstream import DownstreamRuntime, LoggingRuntime
from .exceptions import BridgeError
from .registry.identity import IdentityRegistry
from .registry.store import JsonStore
from .sync.coordinator import SyncCoordinator
from .upstream.session import Session

logger = logging.getLogger(__name__)

ROOT_IDENTITY = "root"
STARTED_PROPERTY = "x-p44-bridge.started"
BRIDGED_PROPERTY = "x-p44-bridged"

# syslog severity (0..7) -> logging level
SYSLOG_LEVELS = {
    0: logging.CRITICAL,
    1: logging.CRITICAL,
    2: logging.CRITICAL,
    3: logging.ERROR,
    4: logging.WARNING,
    5: logging.INFO,
    6: logging.INFO,
    7: logging.DEBUG,
}


class BridgeState(str, Enum):
    """Lifecycle of the bridge."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Bridge:
    """
    Exposes bridgeable upstream devices as downstream units.

    All collaborators can be injected; missing ones are built from `config`.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        session: Optional[Session] = None,
        registry: Optional[IdentityRegistry] = None,
        runtime: Optional[DownstreamRuntime] = None,
        coordinator: Optional[SyncCoordinator] = None,
    ):
        self.config = config or BridgeConfig()
        self.session = session or Session(self.config.api)
        self.registry = registry or IdentityRegistry(
            JsonStore(self.config.store_path, self.config.registry.namespace),
            self.config.registry.capacity,
        )
        self.runtime = runtime or LoggingRuntime()
        self.coordinator = coordinator or SyncCoordinator(self.session, self.runtime)

        self.coordinator.on_new_bridgeable = self._on_new_bridgeable
        self.coordinator.on_global_notification = self._on_global_notification
        self.session.set_notification_handler(self.coordinator.handle_notification)

        self.info: Optional[BridgeInfo] = None
        self._state = BridgeState.STOPPED
        self._installed = False
        self._started: Optional[asyncio.Event] = None
        self._exit: Optional[asyncio.Future] = None
        self._tasks: Set[asyncio.Task] = set()
        self._pending_additions: Set[str] = set()

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def nodes(self) -> List[DeviceNode]:
        return self.coordinator.nodes

    # --- lifecycle ---

    async def start(self) -> None:
        """Connect upstream; devices are installed once the first query completes."""
        if self._state != BridgeState.STOPPED:
            return
        loop = asyncio.get_running_loop()
        self._state = BridgeState.STARTING
        self._started = asyncio.Event()
        self._exit = loop.create_future()
        logger.info(f"Starting bridge (upstream {self.config.api.host}:{self.config.api.port})")
        self.session.connect(self._connection_status)

    async def wait_started(self) -> None:
        """Wait until the initial installation is done."""
        if self._started is None:
            raise RuntimeError("Bridge not started")
        await self._started.wait()

    async def run(self) -> int:
        """Start and run until termination is requested. Returns the exit code."""
        await self.start()
        try:
            exit_code = await self._exit
        finally:
            await self.stop()
        return exit_code

    def request_termination(self, exit_code: int = 0) -> None:
        if self._exit is not None and not self._exit.done():
            logger.info(f"Termination requested (exit code {exit_code})")
            self._exit.set_result(exit_code)

    async def stop(self) -> None:
        if self._state in (BridgeState.STOPPED, BridgeState.STOPPING):
            return
        self._state = BridgeState.STOPPING
        logger.info("Stopping bridge...")

        if self.session.is_connected:
            self.session.set_property(ROOT_IDENTITY, STARTED_PROPERTY, False)

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.session.disconnect()
        self._state = BridgeState.STOPPED
        logger.info("Bridge stopped")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Bridge task failed: {error}", exc_info=error)

    # --- upstream connection ---

    def _connection_status(self, error: Optional[BridgeError]) -> None:
        if error is not None:
            logger.warning(f"Upstream connection problem: {error}")
            return
        if self._installed:
            logger.warning("Reconnected to upstream API, refreshing device state")
        self._spawn(self._on_connected())

    async def _on_connected(self) -> None:
        self.session.set_property(ROOT_IDENTITY, STARTED_PROPERTY, False)

        result = await self.query_upstream()
        if result is None:
            return

        if not self._installed:
            self.install_initial(result)
        else:
            self.refresh(result)

        self.session.set_property(ROOT_IDENTITY, STARTED_PROPERTY, True)
        self._state = BridgeState.RUNNING
        self._started.set()

    async def query_upstream(self) -> Optional[Dict[str, Any]]:
        """Query bridge info and all devices. None on failure (logged)."""
        call = await self.session.get_property(ROOT_IDENTITY, ROOT_QUERY)
        if not call.ok:
            logger.error(f"Device query failed: {call.error}")
            return None
        if not isinstance(call.result, dict):
            logger.error(f"Device query returned no result object: {call.message}")
            return None
        return call.result

    # --- installation ---

    def install_initial(self, result: Dict[str, Any]) -> List[DeviceNode]:
        """Initial pass: build all nodes, assign slots in one batch, install."""
        self.info = parse_bridge_info(result)
        logger.info(f"Upstream system: {self.info.name} ({self.info.model}, {self.info.dsuid})")

        nodes = []
        for desc, props in iter_device_descriptions(result):
            node = build_from_description(desc)
            if node is None:
                continue
            self.coordinator.apply_initial(node, props)
            nodes.append(node)

        installed = [node for node in self.registry.assign_nodes(nodes) if self._install(node)]
        self._installed = True
        logger.info(f"Installed {len(installed)} of {len(nodes)} bridgeable device(s)")
        return installed

    def _install(self, node: DeviceNode) -> bool:
        """Install a node (parent first, then sub-units) and mark it bridged upstream."""
        if not self.coordinator.register(node):
            return False

        error = self.runtime.install_unit(node.slot, node)
        if error is not None:
            logger.error(f"Cannot install {node.identity} at slot {node.slot}: {error}")
            return False
        node.installed = True

        for child in node.children:
            if child.slot is None:
                logger.error(f"Sub-unit {child.identity} has no slot, not installed")
                continue
            error = self.runtime.install_unit(child.slot, child)
            if error is not None:
                logger.error(f"Cannot install {child.identity} at slot {child.slot}: {error}")
                continue
            child.installed = True

        self.session.set_property(node.base_identity, BRIDGED_PROPERTY, True)
        return True

    def _add_described(self, desc: DeviceDescription, props: Dict[str, Any]) -> Optional[DeviceNode]:
        existing = self.coordinator.node_for(desc.dsuid)
        if existing is not None:
            return existing

        node = build_from_description(desc)
        if node is None:
            return None
        self.coordinator.apply_initial(node, props)
        if not self.registry.assign_additional(node):
            return None
        if not self._install(node):
            return None
        logger.info(f"Added device {node.identity} at slot {node.slot}")
        return node

    async def add_device(self, identity: str) -> Optional[DeviceNode]:
        """Query one upstream device and install it with live slot allocation."""
        self._pending_additions.add(identity)
        try:
            call = await self.session.get_property(identity, DEVICE_PROPERTIES)
            if not call.ok:
                logger.error(f"Cannot query new device {identity}: {call.error}")
                return None
            if not isinstance(call.result, dict):
                logger.error(f"Query for {identity} returned no properties")
                return None
            desc = parse_device(call.result)
            if desc is None:
                return None
            return self._add_described(desc, call.result)
        finally:
            self._pending_additions.discard(identity)

    def refresh(self, result: Dict[str, Any]) -> None:
        """Re-apply a fresh device query after reconnecting."""
        for desc, props in iter_device_descriptions(result):
            node = self.coordinator.node_for(desc.dsuid)
            if node is not None:
                self.coordinator.apply_push(node, props)
            elif desc.bridgeable:
                self._add_described(desc, props)

    def forget_device(self, identity: str) -> bool:
        """Release the slot of a device that is not in use this session."""
        return self.registry.forget(identity)

    # --- notifications ---

    def _on_new_bridgeable(self, identity: str) -> None:
        if not self._installed:
            logger.debug(f"Ignoring new device {identity} before initial installation")
            return
        if identity in self._pending_additions:
            return
        self._pending_additions.add(identity)
        self._spawn(self.add_device(identity))

    def _on_global_notification(self, name: str, message: Dict[str, Any]) -> None:
        if name == "terminate":
            exit_code = message.get("exitcode", 0)
            if not isinstance(exit_code, int) or isinstance(exit_code, bool):
                logger.error(f"Invalid exit code {exit_code!r}, using 0")
                exit_code = 0
            self.request_termination(exit_code)
        elif name == "loglevel":
            level = message.get("app")
            if isinstance(level, bool) or not isinstance(level, int) or level not in SYSLOG_LEVELS:
                logger.error(f"Invalid log level {level!r}, expected 0..7")
                return
            logging.getLogger().setLevel(SYSLOG_LEVELS[level])
            logger.info(f"Log level changed to {level}")
        else:
            logger.error(f"Unknown global notification '{name}'")
