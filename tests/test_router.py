"""
Tests for command routing on the bus.
"""

import asyncio
import json

import pytest

from healthcore.core.bus import BusMessage
from healthcore.core.errors import DeviceNotConnectedError, PropertyError
from healthcore.core.payloads import DeviceCommand, ListCommand, ScanCommand
from healthcore.core.router import MessageRouter, Topics, gather_batch

from conftest import FakeBus


def message(topic: str, payload) -> BusMessage:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return BusMessage(topic, body)


class TestParse:
    """Tests for inbound validation."""

    def setup_method(self):
        self.bus = FakeBus()
        self.router = MessageRouter("zigbee", self.bus)
        self.calls = []

        async def handler(command):
            self.calls.append(command)

        self.router.add_route("devices/scan", ScanCommand, handler, Topics.SCAN_STATUS)
        self.router.add_route("devices/list", ListCommand, handler, Topics.LIST)

    def test_valid_command(self):
        parsed = self.router.parse(message("zigbee/devices/scan", {"duration": 5, "callID": "c1"}))
        route, command = parsed
        assert route.command == "devices/scan"
        assert command.duration == 5
        assert command.call_id == "c1"

    def test_unknown_topic(self):
        assert self.router.parse(message("zigbee/devices/explode", {})) is None

    def test_other_bridge_topic(self):
        assert self.router.parse(message("lora/devices/scan", {"duration": 5})) is None

    def test_malformed_json(self):
        assert self.router.parse(message("zigbee/devices/scan", b"{not json")) is None

    def test_non_object_payload(self):
        assert self.router.parse(message("zigbee/devices/scan", [1, 2])) is None

    def test_schema_violation(self):
        assert self.router.parse(message("zigbee/devices/scan", {"duration": -1})) is None
        assert self.router.parse(message("zigbee/devices/scan", {})) is None

    def test_empty_payload(self):
        route, command = self.router.parse(BusMessage("zigbee/devices/list", b""))
        assert isinstance(command, ListCommand)

    def test_duplicate_route_rejected(self):
        with pytest.raises(ValueError):
            self.router.add_route("devices/scan", ScanCommand, None)


class TestDispatch:
    """Tests for handler failures at the router boundary."""

    @pytest.mark.asyncio
    async def test_bridge_error_becomes_error_reply(self):
        bus = FakeBus()
        router = MessageRouter("zigbee", bus)

        async def handler(command):
            raise DeviceNotConnectedError(command.device_id)

        router.add_route("devices/disconnect", DeviceCommand, handler, Topics.DISCONNECT)
        await router.dispatch(message("zigbee/devices/disconnect", {"deviceID": "dev-1", "callID": "c7"}))

        assert bus.published == [(Topics.DISCONNECT, {
            "bridge": "zigbee",
            "deviceID": "dev-1",
            "callID": "c7",
            "status": "error",
            "error": "Device dev-1 is not connected",
        })]

    @pytest.mark.asyncio
    async def test_no_reply_topic_no_reply(self):
        bus = FakeBus()
        router = MessageRouter("zigbee", bus)

        async def handler(command):
            raise DeviceNotConnectedError(command.device_id)

        router.add_route("devices/refresh", DeviceCommand, handler)
        await router.dispatch(message("zigbee/devices/refresh", {"deviceID": "dev-1"}))
        assert bus.published == []

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self):
        bus = FakeBus()
        router = MessageRouter("zigbee", bus)

        async def handler(command):
            raise RuntimeError("boom")

        router.add_route("devices/list", ListCommand, handler, Topics.LIST)
        await router.dispatch(message("zigbee/devices/list", {}))
        assert bus.published == []

    @pytest.mark.asyncio
    async def test_publish_adds_bridge_and_drops_none(self):
        bus = FakeBus()
        router = MessageRouter("lora", bus)
        await router.publish(Topics.CONNECT, {"deviceID": "d", "callID": None})
        assert bus.published == [(Topics.CONNECT, {"bridge": "lora", "deviceID": "d"})]

    @pytest.mark.asyncio
    async def test_run_dispatches_bus_messages(self):
        bus = FakeBus(incoming=[
            message("http/devices/list", {"callID": "a"}),
            message("http/devices/bogus", {}),
            message("http/devices/list", {"callID": "b"}),
        ])
        router = MessageRouter("http", bus)
        seen = []

        async def handler(command):
            seen.append(command.call_id)

        router.add_route("devices/list", ListCommand, handler, Topics.LIST)
        await router.run()
        for _ in range(5):
            await asyncio.sleep(0)

        assert bus.subscriptions == ["http/devices/#"]
        assert sorted(seen) == ["a", "b"]


class TestGatherBatch:
    """Tests for per-property batch isolation."""

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self):
        async def ok(value):
            await asyncio.sleep(0.01)
            return value

        async def fail():
            raise PropertyError("target", "read failed")

        succeeded, failed = await gather_batch({"a": ok(1), "b": fail(), "c": ok(3)})
        assert succeeded == {"a": 1, "c": 3}
        assert list(failed) == ["b"]
        assert isinstance(failed["b"], PropertyError)

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        assert await gather_batch({}) == ({}, {})
