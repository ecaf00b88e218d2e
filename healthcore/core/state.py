"""
Bridge state: the three device views of one bridge process.

- devices_registered: the server's authoritative list for this bridge
- devices_connected: devices holding a live adapter handle
- devices_discovered: results of the current scan, latest sighting wins

Mutated only from router handlers and the adapter event drain, which share
one event loop.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .converters import ConverterRegistry
from .models import BridgeStatus, Device, DeviceDTO, Sighting

logger = logging.getLogger(__name__)


@dataclass
class BridgeState:
    bridge: str
    registry: ConverterRegistry = field(repr=False)
    status: BridgeStatus = BridgeStatus.OFFLINE
    devices_connected: Dict[str, Device] = field(default_factory=dict)
    devices_registered: Dict[str, Device] = field(default_factory=dict)
    devices_discovered: Dict[str, Device] = field(default_factory=dict)
    scan_call_id: Optional[str] = None
    registered_reconnect: bool = False

    @property
    def online(self) -> bool:
        return self.status == BridgeStatus.ONLINE

    def new_device(
        self,
        device_id: str,
        product_name: str = "",
        vendor_name: str = "",
        metadata: Optional[dict] = None,
    ) -> Device:
        """Build a device record with its converter resolved."""
        converter = self.registry.lookup(product_name)
        return Device(
            device_id=device_id,
            bridge=self.bridge,
            product_name=product_name or "",
            vendor_name=vendor_name or converter.vendor_name,
            converter=converter,
            metadata=dict(metadata or {}),
        )

    def device_from_dto(self, dto: DeviceDTO) -> Device:
        return self.new_device(
            dto.device_id,
            dto.product_name,
            dto.vendor_name,
            metadata=dto.model_extra or {},
        )

    # ========================================================================
    # Lookup
    # ========================================================================

    def is_registered(self, device_id: str) -> bool:
        return device_id in self.devices_registered

    def is_connected(self, device_id: str) -> bool:
        return device_id in self.devices_connected

    def get_connected(self, device_id: str) -> Optional[Device]:
        return self.devices_connected.get(device_id)

    def find(self, device_id: Optional[str] = None, product_name: Optional[str] = None) -> Optional[Device]:
        """Find a device by ID or product name, preferring the freshest view."""
        for view in (self.devices_connected, self.devices_discovered, self.devices_registered):
            if device_id and device_id in view:
                return view[device_id]
            if not device_id and product_name:
                for device in view.values():
                    if device.product_name == product_name:
                        return device
        return None

    # ========================================================================
    # Registered view
    # ========================================================================

    def replace_registered(self, devices: Iterable[Device]) -> None:
        self.devices_registered = {d.device_id: d for d in devices}
        logger.debug(f"{self.bridge}: {len(self.devices_registered)} devices registered at server")

    def add_registered(self, device: Device) -> None:
        self.devices_registered[device.device_id] = device

    def update_metadata(self, device_id: str, updates: dict) -> List[Device]:
        updated = []
        for view in (self.devices_registered, self.devices_connected):
            device = view.get(device_id)
            if device is not None and device not in updated:
                device.metadata.update(updates)
                updated.append(device)
        return updated

    # ========================================================================
    # Connected view
    # ========================================================================

    def mark_connected(self, device: Device) -> None:
        if device.handle is None:
            raise ValueError(f"Device {device.device_id} has no transport handle")
        registered = self.devices_registered.get(device.device_id)
        if registered is not None and registered is not device:
            device.metadata = {**registered.metadata, **device.metadata}
        self.devices_connected[device.device_id] = device

    def mark_disconnected(self, device_id: str) -> Optional[Device]:
        device = self.devices_connected.pop(device_id, None)
        if device is not None:
            device.handle = None
        return device

    def remove_device(self, device_id: str) -> bool:
        """Drop a device from every view. Removing an absent device is not an error."""
        connected = self.mark_disconnected(device_id)
        registered = self.devices_registered.pop(device_id, None)
        self.devices_discovered.pop(device_id, None)
        return connected is not None or registered is not None

    def clear_connections(self) -> List[Device]:
        """Forget every handle; used when the transport itself fails."""
        dropped = list(self.devices_connected.values())
        for device in dropped:
            device.handle = None
        self.devices_connected.clear()
        self.devices_discovered.clear()
        return dropped

    # ========================================================================
    # Discovery
    # ========================================================================

    def begin_scan(self, call_id: Optional[str], registered_reconnect: bool) -> None:
        self.devices_discovered = {}
        self.scan_call_id = call_id
        self.registered_reconnect = registered_reconnect

    def end_scan(self) -> None:
        self.scan_call_id = None
        self.registered_reconnect = False

    def record_sighting(self, sighting: Sighting) -> Optional[Device]:
        """Record a scan sighting; later sightings replace earlier ones, connectable latches."""
        if not sighting.device_id:
            return None
        previous = self.devices_discovered.get(sighting.device_id)
        product_name = sighting.product_name or (previous.product_name if previous else "")
        registered = self.devices_registered.get(sighting.device_id)
        if not product_name and registered is not None:
            product_name = registered.product_name

        device = self.new_device(sighting.device_id, product_name)
        device.rssi = sighting.rssi
        device.connectable = bool(sighting.connectable or (previous is not None and previous.connectable))
        device.native = sighting.native
        if registered is not None:
            device.metadata = dict(registered.metadata)

        # Re-inserting keeps the first-seen order
        self.devices_discovered[sighting.device_id] = device
        return device

    def snapshot(self) -> dict:
        return {
            "devicesRegisteredAtServer": [d.to_dto().to_payload() for d in self.devices_registered.values()],
            "devicesConnected": [d.to_dto().to_payload() for d in self.devices_connected.values()],
            "devicesDiscovered": [d.to_dto().to_payload() for d in self.devices_discovered.values()],
        }
