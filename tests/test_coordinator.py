"""
Tests for SyncCoordinator: routing, echo prevention and derived attributes.
"""

from concurrent.futures import Future

import pytest

from conftest import light_props, multi_sensor_props
from unitbridge.devices.builder import build_from_description, parse_device
from unitbridge.devices.update import UpdateMode
from unitbridge.downstream import LoggingRuntime
from unitbridge.exceptions import NotConnectedError, UnknownUnitError, UpstreamCallError
from unitbridge.sync.coordinator import SyncCoordinator
from unitbridge.upstream.calls import CallResult


class FakeSession:
    """Records what the coordinator sends upstream."""

    def __init__(self):
        self.notified = []
        self.property_calls = []
        self.notify_error = None

    def notify(self, name, params=None):
        if self.notify_error is not None:
            return self.notify_error
        self.notified.append((name, params))
        return None

    def set_property(self, identity, path, value, on_result=None):
        future = Future()
        self.property_calls.append((identity, path, value, on_result))
        return future

    def channel_writes(self):
        return [params for name, params in self.notified if name == "setOutputChannelValue"]


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def runtime():
    return LoggingRuntime()


@pytest.fixture
def coordinator(session, runtime):
    return SyncCoordinator(session, runtime)


def install(coordinator, runtime, props, first_slot=0):
    """Build, fill and install a node tree at consecutive slots."""
    node = build_from_description(parse_device(props))
    coordinator.apply_initial(node, props)
    for offset, unit in enumerate(node.walk()):
        unit.slot = first_slot + offset
    assert coordinator.register(node)
    for unit in node.walk():
        runtime.install_unit(unit.slot, unit)
        unit.installed = True
    return node


def push(dsuid, **props):
    return {"notification": "pushNotification", "dSUID": dsuid, "changedproperties": props}


class TestInbound:
    """Tests for upstream -> downstream propagation."""

    def test_initial_state_is_cached_without_reports(self, coordinator, runtime):
        """Test apply_initial fills the cache silently."""
        node = install(coordinator, runtime, light_props("L1", value=50))
        assert node.attributes["current_level"] == 127
        assert node.attributes["on_off"] is True
        assert len(runtime.reports) == 0

    def test_push_reports_downstream_only(self, coordinator, session, runtime):
        """Test a pushed change reaches the runtime and is not sent back upstream."""
        node = install(coordinator, runtime, light_props("L1"))

        coordinator.handle_notification(push("L1", channelStates={"brightness": {"value": 100}}))

        assert node.attributes["current_level"] == 254
        assert node.attributes["on_off"] is True
        assert {(r.slot, r.attribute) for r in runtime.reports} == {(0, "on_off"), (0, "current_level")}
        assert session.notified == []

    def test_unchanged_value_is_not_reported(self, coordinator, runtime):
        """Test that repeating the cached value is a no-op."""
        install(coordinator, runtime, light_props("L1", value=0))

        coordinator.handle_notification(push("L1", channelStates={"brightness": {"value": 0}}))

        assert len(runtime.reports) == 0

    def test_forced_update_is_reported(self, coordinator, runtime):
        """Test forced updates are reported even when unchanged."""
        node = install(coordinator, runtime, light_props("L1", value=0))

        coordinator.update_attribute(node, "on_off", False, UpdateMode.from_upstream(forced=True))

        assert [(r.slot, r.attribute, r.value) for r in runtime.reports] == [(0, "on_off", False)]

    def test_composed_push_reaches_sub_units(self, coordinator, runtime):
        """Test a composed device forwards pushes to the right sub-unit."""
        node = install(coordinator, runtime, multi_sensor_props("M1", temperature=21.5))
        sensor = node.children[1]

        coordinator.handle_notification(push("M1", sensorStates={"0": {"value": 23.0}}))

        assert sensor.attributes["measured_value"] == 23.0
        assert [(r.slot, r.attribute, r.value) for r in runtime.reports] == [(2, "measured_value", 23.0)]

    def test_contact_change(self, coordinator, runtime):
        """Test binary input state changes."""
        node = install(coordinator, runtime, multi_sensor_props("M1", contact=False))

        coordinator.handle_notification(push("M1", binaryInputStates={"0": {"value": 1}}))

        assert node.children[2].attributes["state_value"] is True
        assert [(r.slot, r.attribute) for r in runtime.reports] == [(3, "state_value")]

    def test_rename_reaches_every_unit(self, coordinator, runtime):
        """Test a name change is reported for the parent and all sub-units."""
        install(coordinator, runtime, multi_sensor_props("M1"))

        coordinator.handle_notification(push("M1", name="Hallway"))

        assert sorted(r.slot for r in runtime.reports if r.attribute == "node_label") == [0, 1, 2, 3]

    def test_reachability_follows_active(self, coordinator, runtime):
        """Test active=false makes the unit unreachable."""
        node = install(coordinator, runtime, light_props("L1"))

        coordinator.handle_notification(push("L1", active=False))

        assert node.attributes["reachable"] is False
        assert [(r.attribute, r.value) for r in runtime.reports] == [("reachable", False)]

    def test_vanish_keeps_slot(self, coordinator, runtime):
        """Test a vanished device becomes unreachable but stays registered."""
        node = install(coordinator, runtime, multi_sensor_props("M1"))

        coordinator.handle_notification({"notification": "vanish", "dSUID": "M1"})

        assert all(unit.attributes["reachable"] is False for unit in node.walk())
        assert coordinator.node_for_slot(0) is node
        assert node.slot == 0

    def test_unknown_device_becoming_bridgeable(self, coordinator):
        """Test the callback for devices not yet bridged."""
        seen = []
        coordinator.on_new_bridgeable = seen.append

        coordinator.handle_notification(push("NEW", **{"x-p44-bridgeable": True}))
        coordinator.handle_notification(push("OTHER", name="x"))

        assert seen == ["NEW"]

    def test_global_notification(self, coordinator):
        """Test notifications without dSUID go to the global handler."""
        seen = []
        coordinator.on_global_notification = lambda name, msg: seen.append((name, msg.get("exitcode")))

        coordinator.handle_notification({"notification": "terminate", "exitcode": 3})

        assert seen == [("terminate", 3)]

    def test_global_notification_without_handler(self, coordinator):
        """Test global notifications are dropped when nobody listens."""
        coordinator.handle_notification({"notification": "loglevel", "app": 7})

    def test_uninstalled_node_is_not_reported(self, coordinator, runtime):
        """Test changes before installation only update the cache."""
        node = build_from_description(parse_device(light_props("L1")))
        node.slot = 0
        coordinator.register(node)

        coordinator.handle_notification(push("L1", name="Renamed"))

        assert node.attributes["node_label"] == "Renamed"
        assert len(runtime.reports) == 0


class TestOutbound:
    """Tests for downstream -> upstream propagation."""

    def test_write_on_off(self, coordinator, session, runtime):
        """Test switching on sends 100 % and is not echoed downstream."""
        node = install(coordinator, runtime, light_props("L1", value=0))

        error = coordinator.write_attribute(0, "on_off", True)

        assert error is None
        assert session.channel_writes() == [
            {"dSUID": "L1", "channel": 0, "value": 100.0, "transitionTime": 0, "apply_now": True}
        ]
        assert node.attributes["on_off"] is True
        assert len(runtime.reports) == 0

    def test_write_level_derives_on_off(self, coordinator, session, runtime):
        """Test a level write sends once and reports the derived on/off state."""
        node = install(coordinator, runtime, light_props("L1", value=0))

        error = coordinator.write_attribute(0, "current_level", 127, transition_time=2.5)

        assert error is None
        writes = session.channel_writes()
        assert len(writes) == 1
        assert writes[0]["value"] == pytest.approx(50.0)
        assert writes[0]["transitionTime"] == 2.5
        assert node.attributes["on_off"] is True
        assert [(r.slot, r.attribute, r.value) for r in runtime.reports] == [(0, "on_off", True)]

    def test_recommended_transition_time_is_default(self, coordinator, session, runtime):
        """Test writes without a transition time use the recommended one."""
        props = light_props("L1", value=0)
        props["outputDescription"]["x-p44-recommendedTransitionTime"] = 1.5
        install(coordinator, runtime, props)

        coordinator.write_attribute(0, "current_level", 100)
        coordinator.write_attribute(0, "current_level", 200, transition_time=0)

        assert [w["transitionTime"] for w in session.channel_writes()] == [1.5, 0]

    def test_suppressed_derivation(self, coordinator, session, runtime):
        """Test derivation can be switched off."""
        node = install(coordinator, runtime, light_props("L1", value=0))

        coordinator.update_attribute(node, "current_level", 200, UpdateMode.from_upstream().with_flags(
            suppress_derivation=True))

        assert node.attributes["on_off"] is False
        assert [r.attribute for r in runtime.reports] == ["current_level"]

    def test_defer_apply(self, coordinator, session, runtime):
        """Test deferred writes ask upstream not to apply yet."""
        install(coordinator, runtime, light_props("L1"))

        coordinator.write_attribute(0, "current_level", 254, defer_apply=True)

        assert session.channel_writes()[0]["apply_now"] is False

    def test_repeated_write_is_sent(self, coordinator, session, runtime):
        """Test a write of the cached value still reaches upstream."""
        install(coordinator, runtime, light_props("L1", value=0))

        coordinator.write_attribute(0, "on_off", False)

        assert len(session.channel_writes()) == 1

    def test_send_error_leaves_cache(self, coordinator, session, runtime):
        """Test a failed upstream send is returned and nothing changes."""
        node = install(coordinator, runtime, light_props("L1", value=0))
        session.notify_error = NotConnectedError("offline")

        error = coordinator.write_attribute(0, "current_level", 100)

        assert isinstance(error, NotConnectedError)
        assert node.attributes["current_level"] == 0
        assert node.attributes["on_off"] is False
        assert len(runtime.reports) == 0

    def test_label_updates_on_confirmation(self, coordinator, session, runtime):
        """Test renames go through setProperty and update the cache when confirmed."""
        node = install(coordinator, runtime, light_props("L1", name="Old"))

        assert coordinator.write_attribute(0, "node_label", "New") is None
        identity, path, value, on_result = session.property_calls[0]
        assert (identity, path, value) == ("L1", "name", "New")
        assert node.attributes["node_label"] == "Old"

        on_result(CallResult(message={"id": "1", "result": None}))
        assert node.attributes["node_label"] == "New"
        assert len(runtime.reports) == 0

    def test_label_rejected(self, coordinator, session, runtime):
        """Test a failed rename keeps the old label."""
        node = install(coordinator, runtime, light_props("L1", name="Old"))

        coordinator.write_attribute(0, "node_label", "New")
        session.property_calls[0][3](CallResult(error=UpstreamCallError("readonly")))

        assert node.attributes["node_label"] == "Old"

    def test_unknown_slot(self, coordinator):
        """Test writes to a slot without a unit."""
        assert isinstance(coordinator.write_attribute(9, "on_off", True), UnknownUnitError)
        assert isinstance(coordinator.identify(9, 5), UnknownUnitError)

    def test_read_only_attribute(self, coordinator, session, runtime):
        """Test sensor values cannot be written."""
        install(coordinator, runtime, multi_sensor_props("M1"))

        assert isinstance(coordinator.write_attribute(2, "measured_value", 5.0), UnknownUnitError)
        assert session.notified == []

    def test_read_attribute(self, coordinator, runtime):
        """Test reads come from the cache."""
        install(coordinator, runtime, multi_sensor_props("M1", temperature=19.0))

        assert coordinator.read_attribute(2, "measured_value") == 19.0
        with pytest.raises(UnknownUnitError):
            coordinator.read_attribute(2, "current_level")
        with pytest.raises(UnknownUnitError):
            coordinator.read_attribute(42, "on_off")

    def test_identify(self, coordinator, session, runtime):
        """Test identify uses the upstream device identity, -1 stops it."""
        install(coordinator, runtime, multi_sensor_props("M1"))

        coordinator.identify(2, 5)
        coordinator.identify(2, 0)

        assert session.notified == [
            ("identify", {"dSUID": "M1", "duration": 5}),
            ("identify", {"dSUID": "M1", "duration": -1}),
        ]


class TestRegistration:
    """Tests for the node registry."""

    def test_slot_conflict(self, coordinator, runtime):
        """Test a second node cannot take an occupied slot."""
        install(coordinator, runtime, light_props("L1"))
        other = build_from_description(parse_device(light_props("L2")))
        other.slot = 0

        assert not coordinator.register(other)
        assert coordinator.node_for("L2") is None
        assert coordinator.node_for_slot(0).identity == "L1"

    def test_lookup(self, coordinator, runtime):
        """Test lookup by identity and slot."""
        node = install(coordinator, runtime, multi_sensor_props("M1"), first_slot=4)

        assert coordinator.node_for("M1") is node
        assert coordinator.node_for("M1_sensor_0") is None
        assert coordinator.node_for_slot(6).identity == "M1_sensor_0"
        assert coordinator.nodes == [node]


class TestLoggingRuntime:
    """Tests for the in-memory downstream runtime."""

    def test_history_is_bounded(self):
        """Test a long-running runtime keeps only recent reports."""
        runtime = LoggingRuntime(history=100)
        node = build_from_description(parse_device(light_props("L1")))
        runtime.install_unit(0, node)

        for _ in range(10000):
            runtime.report_attribute_changed(0, "on_off")

        assert len(runtime.reports) == 100
        assert len(runtime.reports_for(0)) == 100

    def test_slot_taken_by_other_unit(self):
        """Test a slot cannot be installed twice with different units."""
        runtime = LoggingRuntime()
        runtime.install_unit(0, build_from_description(parse_device(light_props("L1"))))

        error = runtime.install_unit(0, build_from_description(parse_device(light_props("L2"))))

        assert error is not None
        assert list(runtime.install_order) == [(0, "L1")]
