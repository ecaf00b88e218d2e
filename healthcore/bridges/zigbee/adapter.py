"""
Zigbee adapter (zigpy).

Runs a zigpy ControllerApplication on the configured radio (ZNP through
zigpy-znp or EZSP through bellows). The network itself tracks which
devices exist, so connecting a device means finding it in the network
database and listening on the clusters its converter uses. Presence of
mains powered devices is checked by reading the basic cluster.
"""

import asyncio
import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Hashable, List, Optional, Tuple

import zigpy.types as t
from zigpy.config import CONF_DATABASE, CONF_DEVICE, CONF_DEVICE_BAUDRATE, CONF_DEVICE_PATH
from zigpy.exceptions import ZigbeeException

from ...core.adapter import AdapterEvent, AdapterEventType, NotifyCallback, TransportAdapter
from ...core.errors import (
    DeviceNotConnectedError,
    GhostConnectionError,
    NegotiationError,
    PropertyError,
    TransportError,
)
from ...core.models import Device, Sighting
from .converters import BASIC_CLUSTER, COMMANDS, ZigbeeAddress, ZigbeeConverter

logger = logging.getLogger(__name__)

RADIOS = {
    "znp": "zigpy_znp.zigbee.application",
    "ezsp": "bellows.zigbee.application",
}

DEFAULT_REPORTING_TIMEOUT = 10.0
DEFAULT_PROBE_TIMEOUT = 5.0
DEFAULT_REQUEST_TIMEOUT = 10.0


def ieee_of(device_id: str) -> t.EUI64:
    return t.EUI64.convert(device_id)


@dataclass
class ZigbeeLink:
    """Native handle of a connected Zigbee device."""
    device: Any
    clusters: Dict[str, Any] = field(default_factory=dict)
    callbacks: Dict[ZigbeeAddress, NotifyCallback] = field(default_factory=dict)
    listeners: List[Tuple[Any, "_ClusterListener"]] = field(default_factory=list)

    def detach(self) -> None:
        """Stop forwarding reports; zigpy keeps the clusters across reconnects."""
        for cluster, listener in self.listeners:
            cluster.remove_listener(listener)
        self.listeners.clear()


class _ClusterListener:
    """Forwards attribute reports and cluster commands of one cluster."""

    def __init__(self, adapter: "ZigbeeAdapter", device_id: str, cluster: Any):
        self.adapter = adapter
        self.device_id = device_id
        self.cluster = cluster

    def attribute_updated(self, attrid: int, value: Any, *args) -> None:
        attribute = self.cluster.attributes.get(attrid)
        if attribute is None:
            return
        self.adapter.deliver(self.device_id, ZigbeeAddress(self.cluster.ep_attribute, attribute.name), value)

    def cluster_command(self, tsn: int, command_id: int, args: Any) -> None:
        command = self.cluster.server_commands.get(command_id) or self.cluster.client_commands.get(command_id)
        if command is None:
            return
        payload = {"command": command.name, "args": list(args) if isinstance(args, (list, tuple)) else [args]}
        self.adapter.deliver(self.device_id, ZigbeeAddress(self.cluster.ep_attribute, COMMANDS), payload)


class _ApplicationListener:
    """Network level events from the zigpy application."""

    def __init__(self, adapter: "ZigbeeAdapter"):
        self.adapter = adapter

    def device_joined(self, device: Any) -> None:
        device_id = str(device.ieee)
        logger.info(f"{device_id} joined the network")
        # New devices are announced once their interview completes
        if getattr(device, "is_initialized", False):
            self.adapter.emit(AdapterEvent(AdapterEventType.ANNOUNCE, device_id, product_name=device.model or ""))

    def device_initialized(self, device: Any) -> None:
        device_id = str(device.ieee)
        logger.info(f"{device_id} interviewed: {device.manufacturer} {device.model}")
        self.adapter.sighted(device)
        self.adapter.emit(AdapterEvent(
            AdapterEventType.ANNOUNCE,
            device_id,
            product_name=device.model or "",
            vendor_name=device.manufacturer or "",
        ))

    def device_left(self, device: Any) -> None:
        device_id = str(device.ieee)
        logger.info(f"{device_id} left the network")
        self.adapter.drop_link(device_id)
        self.adapter.emit(AdapterEvent(AdapterEventType.LEFT, device_id))

    def device_removed(self, device: Any) -> None:
        self.adapter.drop_link(str(device.ieee))

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.adapter.lost_connection(exc)


class ZigbeeAdapter(TransportAdapter):
    """Zigbee coordinator using zigpy."""

    registry_implies_connection = True

    def __init__(
        self,
        bridge: str = "zigbee",
        radio: str = "znp",
        path: str = "/dev/ttyUSB0",
        baudrate: int = 115200,
        database_path: str = "zigbee.db",
        reporting_timeout: float = DEFAULT_REPORTING_TIMEOUT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        **kwargs,
    ):
        super().__init__(bridge, **kwargs)
        if radio not in RADIOS:
            raise ValueError(f"Unknown Zigbee radio {radio!r}, expected one of {sorted(RADIOS)}")
        self.radio = radio
        self.path = path
        self.baudrate = baudrate
        self.database_path = database_path
        self.reporting_timeout = reporting_timeout
        self.probe_timeout = probe_timeout
        self.request_timeout = request_timeout

        self.app: Any = None
        self._links: Dict[str, ZigbeeLink] = {}
        self._listener = _ApplicationListener(self)
        self._sightings: Optional["asyncio.Queue[Sighting]"] = None

    @property
    def app_config(self) -> dict:
        return {
            CONF_DEVICE: {CONF_DEVICE_PATH: self.path, CONF_DEVICE_BAUDRATE: self.baudrate},
            CONF_DATABASE: self.database_path,
        }

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        try:
            module = importlib.import_module(RADIOS[self.radio])
        except ImportError as e:
            raise TransportError(f"Zigbee radio library for {self.radio!r} is not installed: {e}")
        logger.info(f"Starting Zigbee {self.radio} radio on {self.path}")
        try:
            self.app = await module.ControllerApplication.new(self.app_config, auto_form=True)
        except (ZigbeeException, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"Zigbee radio unavailable: {e}")
        self.app.add_listener(self._listener)
        self.go_online()

    async def stop(self) -> None:
        self.drop_links()
        app, self.app = self.app, None
        self.online = False
        if app is None:
            return
        try:
            await app.shutdown()
        except (ZigbeeException, OSError) as e:
            logger.warning(f"Error shutting down Zigbee radio: {e}")
        logger.info("Zigbee radio stopped")

    def lost_connection(self, exc: Optional[Exception]) -> None:
        logger.error(f"Zigbee radio connection lost: {exc}")
        self.drop_links()
        self.fault(f"Zigbee radio disconnected: {exc}" if exc else "Zigbee radio disconnected")

    # ========================================================================
    # Events
    # ========================================================================

    def deliver(self, device_id: str, address: ZigbeeAddress, raw: Any) -> None:
        link = self._links.get(device_id)
        if link is None:
            return
        callback = link.callbacks.get(address)
        if callback is None:
            logger.debug(f"{device_id}: no subscriber for {address.cluster}.{address.attribute}")
            return
        callback(raw)

    def sighted(self, device: Any) -> None:
        if self._sightings is None:
            return
        self._sightings.put_nowait(Sighting(
            device_id=str(device.ieee),
            product_name=device.model or "",
            connectable=True,
            native=device,
        ))

    def drop_link(self, device_id: str) -> None:
        link = self._links.pop(device_id, None)
        if link is not None:
            link.detach()

    def drop_links(self) -> None:
        for device_id in list(self._links):
            self.drop_link(device_id)

    # ========================================================================
    # Discovery
    # ========================================================================

    async def discover(self, timeout: float) -> AsyncIterator[Sighting]:
        """Open the network for joining; devices that finish their interview are sighted."""
        if self.app is None:
            raise TransportError("Zigbee radio not started")
        self._sightings = asyncio.Queue()
        try:
            await self.app.permit(time_s=int(timeout))
        except (ZigbeeException, asyncio.TimeoutError) as e:
            self._sightings = None
            raise TransportError(f"Permit join failed: {e}")
        logger.info(f"Joining permitted for {timeout}s")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    sighting = await asyncio.wait_for(self._sightings.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                yield sighting
        finally:
            self._sightings = None

    async def stop_discovery(self) -> None:
        self._sightings = None
        if self.app is None:
            return
        try:
            await self.app.permit(time_s=0)
        except (ZigbeeException, asyncio.TimeoutError) as e:
            logger.warning(f"Closing the network for joining failed: {e}")

    # ========================================================================
    # Connections
    # ========================================================================

    def _network_device(self, device_id: str) -> Any:
        if self.app is None:
            raise TransportError("Zigbee radio not started")
        try:
            return self.app.get_device(ieee=ieee_of(device_id))
        except (KeyError, ValueError):
            return None

    @staticmethod
    def clusters_of(zigpy_device: Any) -> Dict[str, Any]:
        """Clusters of every application endpoint keyed by their ep_attribute."""
        clusters: Dict[str, Any] = {}
        for endpoint_id, endpoint in zigpy_device.endpoints.items():
            if endpoint_id == 0:
                continue  # ZDO
            for cluster in list(endpoint.in_clusters.values()) + list(endpoint.out_clusters.values()):
                clusters.setdefault(cluster.ep_attribute, cluster)
        return clusters

    async def connect(self, device: Device) -> ZigbeeLink:
        converter = device.converter
        if not isinstance(converter, ZigbeeConverter):
            raise NegotiationError(device.device_id, f"no converter for {device.product_name!r}", retryable=False)

        zigpy_device = self._network_device(device.device_id)
        if zigpy_device is None:
            raise NegotiationError(device.device_id, "not in the network database", retryable=False)

        link = ZigbeeLink(zigpy_device, self.clusters_of(zigpy_device))
        usable = [a for a in converter.required_addresses() if a.cluster in link.clusters]
        if not usable:
            raise GhostConnectionError(device.device_id, handle=link)

        self.drop_link(device.device_id)
        for cluster in link.clusters.values():
            listener = _ClusterListener(self, device.device_id, cluster)
            cluster.add_listener(listener)
            link.listeners.append((cluster, listener))
        self._links[device.device_id] = link
        logger.debug(f"{device.device_id}: {len(usable)} usable attributes")
        return link

    def _link(self, device: Device) -> ZigbeeLink:
        link = self._links.get(device.device_id)
        if link is None:
            raise DeviceNotConnectedError(device.device_id)
        return link

    def _cluster(self, device: Device, address: ZigbeeAddress) -> Any:
        cluster = self._link(device).clusters.get(address.cluster)
        if cluster is None:
            raise PropertyError(address.cluster, f"cluster not exposed by {device.device_id}")
        return cluster

    async def read(self, device: Device, address: Hashable) -> Any:
        address = ZigbeeAddress(*address)
        if address.attribute == COMMANDS:
            raise PropertyError(address.cluster, "commands cannot be read")
        cluster = self._cluster(device, address)
        try:
            success, failure = await asyncio.wait_for(
                cluster.read_attributes([address.attribute], allow_cache=False),
                timeout=self.request_timeout,
            )
        except (ZigbeeException, asyncio.TimeoutError) as e:
            raise PropertyError(address.attribute, f"read failed: {e or 'timeout'}")
        if address.attribute not in success:
            raise PropertyError(address.attribute, f"read failed: {failure.get(address.attribute)}")
        return success[address.attribute]

    async def write(self, device: Device, address: Hashable, raw: Any) -> None:
        address = ZigbeeAddress(*address)
        cluster = self._cluster(device, address)
        converter = device.converter
        prop = converter.get_by_address(address)
        command = converter.command_for(prop, raw) if prop is not None else None
        try:
            if command is not None:
                name, kwargs = command
                await asyncio.wait_for(getattr(cluster, name)(**kwargs), timeout=self.request_timeout)
            else:
                await asyncio.wait_for(
                    cluster.write_attributes({address.attribute: raw}), timeout=self.request_timeout
                )
        except (ZigbeeException, asyncio.TimeoutError) as e:
            raise PropertyError(address.attribute, f"write failed: {e or 'timeout'}")

    async def subscribe_notify(self, device: Device, address: Hashable, on_change: NotifyCallback) -> None:
        address = ZigbeeAddress(*address)
        link = self._link(device)
        if address.cluster not in link.clusters:
            logger.debug(f"{device.device_id} has no {address.cluster} cluster")
            return
        link.callbacks[address] = on_change

        converter = device.converter
        for reporting in getattr(converter, "reporting", ()):
            if (reporting.cluster, reporting.attribute) != tuple(address):
                continue
            cluster = link.clusters[address.cluster]
            try:
                await asyncio.wait_for(cluster.bind(), timeout=self.reporting_timeout)
                await asyncio.wait_for(
                    cluster.configure_reporting(
                        reporting.attribute,
                        reporting.min_interval,
                        reporting.max_interval,
                        reporting.reportable_change,
                        manufacturer=converter.manufacturer_code,
                    ),
                    timeout=self.reporting_timeout,
                )
                logger.debug(f"{device.device_id}: reporting configured for {reporting.attribute}")
            except asyncio.TimeoutError:
                logger.warning(f"{device.device_id}: configuring reporting for {reporting.attribute} timed out")
            except ZigbeeException as e:
                logger.warning(f"{device.device_id}: configuring reporting for {reporting.attribute} failed: {e}")

    async def disconnect(self, device: Device) -> None:
        # Devices stay in the network; only our listeners stop forwarding
        self.drop_link(device.device_id)

    async def probe(self, device: Device) -> bool:
        zigpy_device = self._network_device(device.device_id)
        if zigpy_device is None:
            return False
        basic = self.clusters_of(zigpy_device).get(BASIC_CLUSTER)
        if basic is None:
            return False
        try:
            success, _ = await asyncio.wait_for(
                basic.read_attributes(["zcl_version"], allow_cache=False), timeout=self.probe_timeout
            )
        except (ZigbeeException, asyncio.TimeoutError):
            return False
        return "zcl_version" in success

    async def forget(self, device: Device) -> None:
        """Remove the device from the network."""
        self.drop_link(device.device_id)
        if self.app is None or self._network_device(device.device_id) is None:
            return
        try:
            await asyncio.wait_for(self.app.remove(ieee_of(device.device_id)), timeout=self.request_timeout)
        except (ZigbeeException, asyncio.TimeoutError) as e:
            raise TransportError(f"Removing {device.device_id} from the network failed: {e or 'timeout'}")
