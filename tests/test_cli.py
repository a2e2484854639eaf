"""
Tests for the command line interface.
"""

import pytest
from click.testing import CliRunner

from conftest import light_props, multi_sensor_props, root_result
from unitbridge.cli import main
from unitbridge.registry.identity import IdentityRegistry
from unitbridge.registry.store import JsonStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def registry(tmp_path):
    """Registry with L1 at slot 0 and L2 at slot 1, then a pass without L1."""
    registry = IdentityRegistry(JsonStore(tmp_path / "slots.json", "unitbridge/"), 32)
    registry.assign_pass(["L1", "L2"])
    registry.assign_pass(["L2"])
    return registry


class TestSlotsCommand:
    """Tests for `unitbridge slots`."""

    def test_shows_slots(self, runner, tmp_path, registry):
        """Test the slot table lists statuses and identities."""
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "slots"])

        assert result.exit_code == 0
        assert "L1" in result.output
        assert "L2" in result.output
        assert "unconfirmed" in result.output
        assert "confirmed" in result.output

    def test_empty(self, runner, tmp_path):
        """Test an empty data directory."""
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "slots"])

        assert result.exit_code == 0
        assert "0 of 32" in result.output


class TestForgetCommand:
    """Tests for `unitbridge forget`."""

    def test_forget_frees_slot(self, runner, tmp_path, registry):
        """Test forgetting an absent device frees its slot."""
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "forget", "L1"])

        assert result.exit_code == 0
        assert "Forgot L1" in result.output

        store = JsonStore(tmp_path / "slots.json", "unitbridge/")
        assert store.get("bindings/L1") is None
        assert store.get("slotmap") == " D"

    def test_forget_unknown(self, runner, tmp_path, registry):
        """Test forgetting an identity without binding fails."""
        result = runner.invoke(main, ["--data-dir", str(tmp_path), "forget", "NOPE"])

        assert result.exit_code == 1
        assert "No binding" in result.output


class TestProbeCommand:
    """Tests for `unitbridge probe`."""

    def test_probe_lists_devices(self, runner, tmp_path, threaded_upstream):
        """Test probe shows the mapping of every device."""
        threaded_upstream.responders["getProperty"] = lambda msg: {
            "result": root_result(light_props("L1"), multi_sensor_props("M1"), light_props("X9", bridgeable=False))
        }

        result = runner.invoke(main, [
            "--data-dir", str(tmp_path), "probe", "--host", "127.0.0.1", "--port", str(threaded_upstream.port),
        ])

        assert result.exit_code == 0
        assert "Test Hub" in result.output
        assert "dimmable_light" in result.output
        assert "composed" in result.output
        assert "X9" in result.output
        assert threaded_upstream.received[0]["query"]["x-p44-vdcs"] is not None

    def test_probe_query_error(self, runner, tmp_path, threaded_upstream):
        """Test an error response exits with status 1."""
        threaded_upstream.responders["getProperty"] = lambda msg: {"error": {"code": 1, "message": "nope"}}

        result = runner.invoke(main, [
            "--data-dir", str(tmp_path), "probe", "--port", str(threaded_upstream.port),
        ])

        assert result.exit_code == 1
        assert "Query failed" in result.output
