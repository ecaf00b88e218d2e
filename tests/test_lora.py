"""
Tests for LoRa modem frames and the LoRa bridge.
"""

import asyncio

import pytest

from healthcore.bridges.lora.adapter import LoRaAdapter, ModemSettings, parse_frame
from healthcore.bridges.lora.bridge import LoRaBridge
from healthcore.bridges.lora.converters import FieldSlice
from healthcore.core.adapter import AdapterEventType
from healthcore.core.errors import PropertyError
from healthcore.core.models import BridgeStatus
from healthcore.core.payloads import DevicesCommand, ValuesGetCommand
from healthcore.core.router import Topics

from conftest import FakeBus, dto

DEVICE_ID = "LORAROBO00000001"


def frame(text: str) -> str:
    return "Data: (HEX:) " + " ".join(f"{b:02X}" for b in text.encode())


class TestFrames:
    """Tests for modem output parsing."""

    def test_parse_frame(self):
        assert parse_frame(frame(DEVICE_ID + "72")) == (DEVICE_ID, "72")

    def test_non_packet_lines(self):
        assert parse_frame("OK") is None
        assert parse_frame("+RSSI: -70") is None

    def test_bad_hex(self):
        assert parse_frame("Data: (HEX:) ZZ 01") is None

    def test_short_frame(self):
        assert parse_frame(frame("SHORT")) is None

    def test_modem_commands(self):
        commands = ModemSettings(frequency=868100000, spreading_factor=9).commands()
        assert commands[0] == "AT+FRE=868100000"
        assert commands[1] == "AT+SF=9"
        assert commands[-1] == "ATZ"


class TestAdapter:
    """Tests for frame routing in the adapter."""

    @pytest.mark.asyncio
    async def test_frames_from_connected_device(self):
        adapter = LoRaAdapter()
        bridge = LoRaBridge(adapter, FakeBus())
        device = bridge.state.new_device(DEVICE_ID, "Bulp LoRa-Robo 666")
        await adapter.connect(device)

        adapter.handle_line(frame(DEVICE_ID + "72"))

        event = adapter.events.get_nowait()
        assert event.type == AdapterEventType.VALUES
        assert event.values == {FieldSlice(0): "7", FieldSlice(1): "2"}
        assert await adapter.read(device, FieldSlice(1)) == "2"

    @pytest.mark.asyncio
    async def test_short_payload_skips_missing_fields(self):
        adapter = LoRaAdapter()
        bridge = LoRaBridge(adapter, FakeBus())
        device = bridge.state.new_device(DEVICE_ID, "Bulp LoRa-Robo 666")
        await adapter.connect(device)

        adapter.handle_line(frame(DEVICE_ID + "5"))
        assert adapter.events.get_nowait().values == {FieldSlice(0): "5"}
        with pytest.raises(PropertyError):
            await adapter.read(device, FieldSlice(1))

    @pytest.mark.asyncio
    async def test_read_before_first_frame(self):
        adapter = LoRaAdapter()
        bridge = LoRaBridge(adapter, FakeBus())
        device = bridge.state.new_device(DEVICE_ID, "Bulp LoRa-Robo 666")
        await adapter.connect(device)
        with pytest.raises(PropertyError):
            await adapter.read(device, FieldSlice(0))

    @pytest.mark.asyncio
    async def test_write_rejected(self):
        adapter = LoRaAdapter()
        bridge = LoRaBridge(adapter, FakeBus())
        device = bridge.state.new_device(DEVICE_ID, "Bulp LoRa-Robo 666")
        await adapter.connect(device)
        with pytest.raises(PropertyError):
            await adapter.write(device, FieldSlice(0), "1")

    @pytest.mark.asyncio
    async def test_oversized_line_discarded(self):
        adapter = LoRaAdapter()
        bridge = LoRaBridge(adapter, FakeBus())
        device = bridge.state.new_device(DEVICE_ID, "Bulp LoRa-Robo 666")
        await adapter.connect(device)
        adapter._reader = asyncio.StreamReader(limit=1024)
        adapter.go_online()

        adapter._reader.feed_data(b"x" * 5000)
        reading = asyncio.create_task(adapter._read_loop())
        await asyncio.sleep(0.01)
        assert not reading.done()

        adapter._reader.feed_data(b"\r\n" + frame(DEVICE_ID + "72").encode() + b"\r\n")
        adapter._reader.feed_eof()
        await asyncio.wait_for(reading, timeout=1.0)

        events = []
        while not adapter.events.empty():
            events.append(adapter.events.get_nowait())
        assert [e.type for e in events] == [
            AdapterEventType.ONLINE,
            AdapterEventType.VALUES,
            AdapterEventType.OFFLINE,
        ]
        assert events[1].values == {FieldSlice(0): "7", FieldSlice(1): "2"}

    def test_unknown_sender_ignored_outside_scan(self):
        adapter = LoRaAdapter()
        adapter.handle_line(frame(DEVICE_ID + "72"))
        assert adapter.events.empty()

    @pytest.mark.asyncio
    async def test_unknown_sender_sighted_during_scan(self):
        adapter = LoRaAdapter()
        adapter._reader = asyncio.StreamReader()
        sightings = adapter.discover(1.0)
        pending = asyncio.ensure_future(sightings.__anext__())
        await asyncio.sleep(0)

        adapter.handle_line(frame(DEVICE_ID + "72"))
        sighting = await asyncio.wait_for(pending, timeout=1.0)
        await sightings.aclose()

        assert sighting.device_id == DEVICE_ID
        assert sighting.connectable


class TestLoRaBridge:
    """Tests for the receive-only bridge."""

    @pytest.mark.asyncio
    async def test_registered_senders_publish_values(self):
        adapter = LoRaAdapter()
        bus = FakeBus()
        bridge = LoRaBridge(adapter, bus)
        bridge.state.status = BridgeStatus.ONLINE

        await bridge.handle_refresh(DevicesCommand.model_validate({
            "devices": [dto(DEVICE_ID, "Bulp LoRa-Robo 666", bridge="lora")],
        }))
        assert bridge.state.is_connected(DEVICE_ID)

        adapter.handle_line(frame(DEVICE_ID + "72"))
        await bridge.handle_event(adapter.events.get_nowait())

        assert bus.on(Topics.VALUES) == [{
            "bridge": "lora",
            "deviceID": DEVICE_ID,
            "values": {
                "heartrate": {"value": 7000, "valueAsNumeric": 7000},
                "color": {"value": "green", "valueAsNumeric": 2},
            },
        }]

        await bridge.handle_values_get(ValuesGetCommand.model_validate({"deviceID": DEVICE_ID, "values": ["color"]}))
        assert bus.on(Topics.VALUES)[-1]["values"] == {"color": {"value": "green", "valueAsNumeric": 2}}
