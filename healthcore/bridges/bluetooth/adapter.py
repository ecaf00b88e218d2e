"""
Bluetooth Low Energy adapter (bleak).

Scans with BleakScanner, connects with BleakClient and maps the GATT
characteristics found during service discovery onto the product's
converter addresses. Works on every platform bleak supports; on macOS,
where CoreBluetooth hides hardware addresses, device IDs are derived from
the advertisement instead.
"""

import asyncio
import hashlib
import json
import logging
import platform
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Hashable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ...core.adapter import AdapterEvent, AdapterEventType, NotifyCallback, TransportAdapter
from ...core.errors import (
    DeviceNotConnectedError,
    GhostConnectionError,
    NegotiationError,
    PropertyError,
    TransportError,
)
from ...core.models import Device, Sighting
from .converters import STANDARD_PROPERTIES, normalize_uuid

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 20.0
DEFAULT_WATCHDOG_INTERVAL = 30.0
ADAPTER_CHECK_SECONDS = 0.5


def fingerprint(adv: AdvertisementData) -> str:
    """Stable ID for an advertisement: sha256 over name, services, manufacturer data and tx power."""
    manufacturer = b"".join(
        company.to_bytes(2, "little") + bytes(data)
        for company, data in sorted((adv.manufacturer_data or {}).items())
    )
    data = {
        "localName": adv.local_name or "",
        "serviceUuids": sorted(adv.service_uuids or []),
        "manufacturerData": manufacturer.hex(),
        "txPowerLevel": adv.tx_power,
    }
    return hashlib.sha256(json.dumps(data).encode("utf-8")).hexdigest()


def is_connectable(adv: AdvertisementData) -> bool:
    """Read the connectable flag where the backend reports it (CoreBluetooth); assume True otherwise."""
    platform_data = getattr(adv, "platform_data", None) or ()
    for item in platform_data:
        if isinstance(item, dict) and "kCBAdvDataIsConnectable" in item:
            return bool(item["kCBAdvDataIsConnectable"])
    return True


@dataclass
class BleLink:
    """Native handle of a connected BLE device."""
    client: BleakClient
    characteristics: Dict[str, BleakGATTCharacteristic] = field(default_factory=dict)


class BluetoothAdapter(TransportAdapter):
    """BLE central using bleak."""

    registry_implies_connection = False

    def __init__(
        self,
        bridge: str = "bluetooth",
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        watchdog_interval: float = DEFAULT_WATCHDOG_INTERVAL,
        fingerprint_ids: Optional[bool] = None,
        **kwargs,
    ):
        super().__init__(bridge, **kwargs)
        self.connect_timeout = connect_timeout
        self.watchdog_interval = watchdog_interval
        self.fingerprint_ids = platform.system() == "Darwin" if fingerprint_ids is None else fingerprint_ids

        self._scanner: Optional[BleakScanner] = None
        self._links: Dict[str, BleLink] = {}
        self._watchdog_task: Optional[asyncio.Task] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        logger.info("Starting BLE adapter")
        try:
            # Fails when the radio is missing or powered off
            scanner = BleakScanner()
            await scanner.start()
            await asyncio.sleep(ADAPTER_CHECK_SECONDS)
            await scanner.stop()
        except (BleakError, OSError) as e:
            raise TransportError(f"Bluetooth adapter unavailable: {e}")

        self.go_online()
        self._watchdog_task = asyncio.create_task(self._watchdog_loop())

    async def stop(self) -> None:
        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        await self.stop_discovery()

        for device_id, link in list(self._links.items()):
            try:
                await link.client.disconnect()
            except BleakError as e:
                logger.warning(f"Error disconnecting {device_id}: {e}")
        self._links.clear()
        self.online = False
        logger.info("BLE adapter stopped")

    async def _watchdog_loop(self) -> None:
        """Report links that dropped without a disconnect callback."""
        while True:
            await asyncio.sleep(self.watchdog_interval)
            for device_id, link in list(self._links.items()):
                if not link.client.is_connected:
                    logger.info(f"Watchdog: {device_id} lost its link")
                    self._links.pop(device_id, None)
                    self.emit(AdapterEvent(AdapterEventType.DISCONNECTED, device_id))

    # ========================================================================
    # Discovery
    # ========================================================================

    def sighting_from(self, device: BLEDevice, adv: AdvertisementData) -> Optional[Sighting]:
        name = adv.local_name or device.name or ""
        device_id = fingerprint(adv) if self.fingerprint_ids else device.address
        if not device_id or not device_id.strip() or not name.strip():
            return None
        return Sighting(
            device_id=device_id,
            product_name=name,
            rssi=adv.rssi,
            connectable=is_connectable(adv),
            native=device,
        )

    async def discover(self, timeout: float) -> AsyncIterator[Sighting]:
        queue: "asyncio.Queue[Sighting]" = asyncio.Queue()

        def on_detection(device: BLEDevice, adv: AdvertisementData) -> None:
            sighting = self.sighting_from(device, adv)
            if sighting is not None:
                queue.put_nowait(sighting)

        await self.stop_discovery()
        self._scanner = BleakScanner(detection_callback=on_detection)
        try:
            await self._scanner.start()
        except (BleakError, OSError) as e:
            self._scanner = None
            self.fault(f"Scanning failed: {e}")
            raise TransportError(f"Scanning failed: {e}")
        logger.info(f"BLE scan started for {timeout}s")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    sighting = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                yield sighting
        finally:
            await self.stop_discovery()

    async def stop_discovery(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
            logger.info("BLE scan stopped")
        except BleakError as e:
            logger.warning(f"Error stopping scan: {e}")

    # ========================================================================
    # Connections
    # ========================================================================

    def _disconnected_callback(self, device_id: str) -> Callable[[BleakClient], None]:
        def on_disconnect(client: BleakClient) -> None:
            if self._links.pop(device_id, None) is not None:
                logger.info(f"{device_id} disconnected")
            self.emit(AdapterEvent(AdapterEventType.DISCONNECTED, device_id))

        return on_disconnect

    async def connect(self, device: Device) -> BleLink:
        target = device.native if device.native is not None else device.device_id
        client = BleakClient(
            target,
            disconnected_callback=self._disconnected_callback(device.device_id),
            timeout=self.connect_timeout,
        )
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise NegotiationError(device.device_id, str(e) or type(e).__name__)

        link = BleLink(client)
        for service in client.services:
            for characteristic in service.characteristics:
                link.characteristics[normalize_uuid(characteristic.uuid)] = characteristic

        converter = device.converter
        usable = [
            uuid for uuid in link.characteristics
            if (converter is not None and converter.get_by_address(uuid) is not None)
            or uuid in STANDARD_PROPERTIES
        ]
        if not usable:
            raise GhostConnectionError(device.device_id, handle=link)

        logger.debug(f"{device.device_id}: {len(usable)} usable characteristics")
        self._links[device.device_id] = link
        return link

    def _link(self, device: Device) -> BleLink:
        link = device.handle or self._links.get(device.device_id)
        if link is None or not link.client.is_connected:
            raise DeviceNotConnectedError(device.device_id)
        return link

    def _characteristic(self, device: Device, address: Hashable) -> BleakGATTCharacteristic:
        uuid = normalize_uuid(address)
        characteristic = self._link(device).characteristics.get(uuid)
        if characteristic is None:
            raise PropertyError(uuid, f"not exposed by {device.device_id}")
        return characteristic

    async def read(self, device: Device, address: Hashable) -> bytes:
        characteristic = self._characteristic(device, address)
        try:
            return bytes(await self._link(device).client.read_gatt_char(characteristic))
        except (BleakError, asyncio.TimeoutError) as e:
            raise PropertyError(normalize_uuid(address), f"read failed: {e}")

    async def write(self, device: Device, address: Hashable, raw: Any) -> None:
        characteristic = self._characteristic(device, address)
        try:
            await self._link(device).client.write_gatt_char(characteristic, bytes(raw), response=True)
        except (BleakError, asyncio.TimeoutError) as e:
            raise PropertyError(normalize_uuid(address), f"write failed: {e}")

    async def subscribe_notify(self, device: Device, address: Hashable, on_change: NotifyCallback) -> None:
        uuid = normalize_uuid(address)
        characteristic = self._link(device).characteristics.get(uuid)
        if characteristic is None:
            logger.debug(f"{device.device_id} does not expose {uuid}")
            return
        if not {"notify", "indicate"} & set(characteristic.properties):
            logger.debug(f"{device.device_id}: {uuid} does not support notifications")
            return

        def on_notification(_sender: BleakGATTCharacteristic, data: bytearray) -> None:
            on_change(bytes(data))

        try:
            await self._link(device).client.start_notify(characteristic, on_notification)
        except (BleakError, asyncio.TimeoutError) as e:
            raise PropertyError(uuid, f"subscribe failed: {e}")

    async def disconnect(self, device: Device) -> None:
        link = device.handle or self._links.get(device.device_id)
        self._links.pop(device.device_id, None)
        if link is None or not link.client.is_connected:
            return
        try:
            await link.client.disconnect()
        except BleakError as e:
            raise TransportError(f"Disconnect of {device.device_id} failed: {e}")
