"""
Tests for the bridge state views.
"""

import pytest

from healthcore.core.models import BridgeStatus, DeviceDTO, PowerType, Sighting
from healthcore.core.state import BridgeState

from conftest import REGISTRY


def make_state() -> BridgeState:
    return BridgeState("test", REGISTRY)


class TestDiscoveredView:
    """Tests for scan sightings."""

    def test_latest_sighting_wins(self):
        state = make_state()
        state.begin_scan("call-1", False)

        state.record_sighting(Sighting("dev-1", "Test Thermostat", rssi=-80))
        device = state.record_sighting(Sighting("dev-1", "Test Thermostat", rssi=-55))

        assert len(state.devices_discovered) == 1
        assert state.devices_discovered["dev-1"] is device
        assert device.rssi == -55

    def test_connectable_latches(self):
        state = make_state()
        state.record_sighting(Sighting("dev-1", "Test Thermostat", connectable=True))
        device = state.record_sighting(Sighting("dev-1", "Test Thermostat", connectable=False))
        assert device.connectable is True

    def test_unknown_product_is_unsupported(self):
        state = make_state()
        device = state.record_sighting(Sighting("dev-9", "Toaster"))
        assert not device.is_supported
        assert device.power_type == PowerType.UNSUPPORTED
        assert device.to_dto().power_type == "unsupported"

    def test_sighting_without_id_ignored(self):
        state = make_state()
        assert state.record_sighting(Sighting("", "Test Thermostat")) is None
        assert state.devices_discovered == {}

    def test_begin_scan_clears_previous_results(self):
        state = make_state()
        state.record_sighting(Sighting("dev-1", "Test Thermostat"))
        state.begin_scan(None, False)
        assert state.devices_discovered == {}


class TestRegisteredView:
    """Tests for registry reconciliation."""

    def test_replace_registered_is_idempotent(self):
        state = make_state()
        dtos = [
            DeviceDTO(deviceID="dev-1", bridge="test", productName="Test Thermostat", room="kitchen"),
            DeviceDTO(deviceID="dev-2", bridge="test", productName="Test Window Sensor"),
        ]
        state.replace_registered(state.device_from_dto(d) for d in dtos)
        first = {k: (v.product_name, v.metadata) for k, v in state.devices_registered.items()}
        state.replace_registered(state.device_from_dto(d) for d in dtos)
        second = {k: (v.product_name, v.metadata) for k, v in state.devices_registered.items()}

        assert first == second
        assert state.devices_registered["dev-1"].metadata == {"room": "kitchen"}

    def test_update_metadata(self):
        state = make_state()
        state.add_registered(state.new_device("dev-1", "Test Thermostat"))
        assert len(state.update_metadata("dev-1", {"name": "Hall"})) == 1
        assert state.devices_registered["dev-1"].metadata == {"name": "Hall"}
        assert state.update_metadata("missing", {"name": "x"}) == []


class TestConnectedView:
    """Tests for handles and removal."""

    def test_mark_connected_requires_handle(self):
        state = make_state()
        device = state.new_device("dev-1", "Test Thermostat")
        with pytest.raises(ValueError):
            state.mark_connected(device)

    def test_connected_device_merges_registry_metadata(self):
        state = make_state()
        state.add_registered(state.new_device("dev-1", "Test Thermostat", metadata={"room": "hall"}))
        device = state.new_device("dev-1", "Test Thermostat")
        device.handle = object()
        state.mark_connected(device)
        assert state.get_connected("dev-1").metadata == {"room": "hall"}

    def test_remove_device_is_idempotent(self):
        state = make_state()
        device = state.new_device("dev-1", "Test Thermostat")
        device.handle = object()
        state.add_registered(device)
        state.mark_connected(device)

        assert state.remove_device("dev-1") is True
        assert device.handle is None
        assert state.remove_device("dev-1") is False
        assert not state.is_registered("dev-1")
        assert not state.is_connected("dev-1")

    def test_clear_connections(self):
        state = make_state()
        device = state.new_device("dev-1", "Test Thermostat")
        device.handle = object()
        state.mark_connected(device)
        state.record_sighting(Sighting("dev-2", "Test Thermostat"))

        dropped = state.clear_connections()
        assert dropped == [device]
        assert state.devices_connected == {}
        assert state.devices_discovered == {}

    def test_find_prefers_connected(self):
        state = make_state()
        registered = state.new_device("dev-1", "Test Thermostat")
        state.add_registered(registered)
        connected = state.new_device("dev-1", "Test Thermostat")
        connected.handle = object()
        state.mark_connected(connected)

        assert state.find("dev-1") is connected
        assert state.find(product_name="Test Thermostat") is connected
        assert state.find("missing") is None


class TestSnapshot:
    """Tests for the list payload."""

    def test_snapshot_has_no_handles(self):
        state = make_state()
        state.status = BridgeStatus.ONLINE
        device = state.new_device("dev-1", "Test Thermostat")
        device.handle = object()
        state.mark_connected(device)

        snapshot = state.snapshot()
        assert snapshot["devicesRegisteredAtServer"] == []
        assert snapshot["devicesDiscovered"] == []
        payload = snapshot["devicesConnected"][0]
        assert payload["deviceID"] == "dev-1"
        assert payload["powerType"] == "mains"
        assert "handle" not in payload
        assert [p["name"] for p in payload["properties"]] == ["temperature", "target", "mode"]
