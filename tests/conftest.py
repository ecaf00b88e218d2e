"""
Shared test doubles: an in-memory bus, a scriptable adapter and a
thermostat product to drive the bridge with.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from healthcore.core.adapter import TransportAdapter
from healthcore.core.bridge import Bridge, BridgeSettings
from healthcore.core.bus import BusMessage, MessageBus
from healthcore.core.converters import Converter, ConverterRegistry
from healthcore.core.errors import GhostConnectionError, PropertyError
from healthcore.core.models import ConvertedValue, PowerType, Property, ValueType


class Thermostat(Converter):
    product_name = "Test Thermostat"
    vendor_name = "acme"
    power_type = PowerType.MAINS

    def declare(self) -> None:
        self.add("temp", Property("temperature", ValueType.NUMERIC, 0, notify=True))
        self.add("target", Property("target", ValueType.NUMERIC, 0, write=True))
        self.add("mode", Property("mode", ValueType.OPTIONS, ("heat", "off"), write=True))

    def get(self, prop, raw):
        if prop.name == "mode":
            return ConvertedValue(raw, None)
        return ConvertedValue(raw / 10, raw / 10)

    def set(self, prop, value):
        self.check_writable(prop, value)
        if prop.name == "mode":
            return value
        return int(round(value * 10))


class WindowSensor(Converter):
    product_name = "Test Window Sensor"
    vendor_name = "acme"
    power_type = PowerType.BATTERY

    def declare(self) -> None:
        self.add("open", Property("open", ValueType.OPTIONS, ("yes", "no"), notify=True))

    def get(self, prop, raw):
        return ConvertedValue("yes", 1) if raw else ConvertedValue("no", 0)


REGISTRY = ConverterRegistry([Thermostat, WindowSensor])


class FakeBus(MessageBus):
    """Records published messages; replays ``incoming`` to subscribers."""

    def __init__(self, incoming: Optional[List[BusMessage]] = None):
        self.published: List[Tuple[str, dict]] = []
        self.subscriptions: List[str] = []
        self.incoming = list(incoming or [])
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def publish(self, topic: str, payload: dict) -> None:
        self.published.append((topic, payload))

    async def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    async def messages(self):
        for message in self.incoming:
            yield message

    def on(self, topic: str) -> List[dict]:
        return [payload for t, payload in self.published if t == topic]


class YieldingBus(FakeBus):
    """FakeBus whose publish gives other tasks a turn, like a real broker."""

    async def publish(self, topic: str, payload: dict) -> None:
        await asyncio.sleep(0)
        await super().publish(topic, payload)


class FakeAdapter(TransportAdapter):
    """Adapter whose transport behaviour is set up per test."""

    def __init__(self, registry_implies_connection: bool = True):
        super().__init__("test")
        self.registry_implies_connection = registry_implies_connection
        self.values: Dict[Any, Any] = {}
        self.connect_errors: List[Exception] = []
        self.ghosts = set()
        self.read_errors = set()
        self.write_errors = set()
        self.sightings = []
        self.alive = True

        self.connect_calls: List[str] = []
        self.disconnect_calls: List[str] = []
        self.writes: Dict[Any, Any] = {}
        self.subscriptions: List[Tuple[str, Any]] = []
        self.forgotten: List[str] = []
        self.started = False

    async def start(self) -> None:
        self.started = True
        self.go_online()

    async def stop(self) -> None:
        self.started = False
        self.online = False

    async def discover(self, timeout: float):
        for sighting in self.sightings:
            await asyncio.sleep(0)
            yield sighting

    async def connect(self, device):
        self.connect_calls.append(device.device_id)
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        handle = f"link-{device.device_id}"
        if device.device_id in self.ghosts:
            raise GhostConnectionError(device.device_id, handle=handle)
        return handle

    async def read(self, device, address):
        if address in self.read_errors or address not in self.values:
            raise PropertyError(str(address), "read failed")
        return self.values[address]

    async def write(self, device, address, raw):
        if address in self.write_errors:
            raise PropertyError(str(address), "write failed")
        self.writes[address] = raw
        self.values[address] = raw

    async def subscribe_notify(self, device, address, on_change):
        self.subscriptions.append((device.device_id, address))

    async def disconnect(self, device):
        self.disconnect_calls.append(device.device_id)

    async def probe(self, device):
        return self.alive

    async def forget(self, device):
        self.forgotten.append(device.device_id)
        await super().forget(device)


class FakeBridge(Bridge):
    name = "test"

    def __init__(self, adapter, bus, settings=None):
        super().__init__(adapter, bus, REGISTRY, settings)


def make_bridge(registry_implies_connection: bool = True, **settings) -> Tuple[FakeBridge, FakeAdapter, FakeBus]:
    adapter = FakeAdapter(registry_implies_connection)
    bus = FakeBus()
    settings.setdefault("connect_retry_delay", 0)
    bridge = FakeBridge(adapter, bus, BridgeSettings(**settings))
    return bridge, adapter, bus


def dto(device_id: str, product_name: str = "Test Thermostat", bridge: str = "test", **extra) -> dict:
    return {"deviceID": device_id, "bridge": bridge, "productName": product_name, **extra}


async def wait_for_scan(bridge: Bridge, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while bridge.scanning and loop.time() < deadline:
        await asyncio.sleep(0.01)


@pytest.fixture
def bus():
    return FakeBus()
