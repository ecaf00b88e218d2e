"""
Bridge: one transport adapter, its state and the message router.

The Bridge registers a handler for every bus command, drains the adapter's
event channel, and applies one connection policy for every transport:

- negotiation faults marked retryable (timeouts, transient link errors) are
  retried up to ``connect_attempts`` times, ``connect_retry_delay`` apart
- a ghost connection is torn down with exactly one disconnect and is not
  retried; a later scan or reconnect may try the device again
- transport faults are never retried by the bridge
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Hashable, List, Optional, Set

from .adapter import AdapterEvent, AdapterEventType, TransportAdapter
from .bus import MessageBus
from .converters import ConverterRegistry
from .errors import (
    BridgeError,
    ConversionError,
    DeviceNotConnectedError,
    DeviceNotFoundError,
    GhostConnectionError,
    NegotiationError,
    PropertyError,
    TransportError,
)
from .models import BridgeStatus, Device, PowerType, Property
from .payloads import (
    ConnectCommand,
    CreateCommand,
    DeviceCommand,
    DevicesCommand,
    ListCommand,
    ScanCommand,
    UpdateCommand,
    ValuesGetCommand,
    ValuesSetCommand,
)
from .router import MessageRouter, Topics, gather_batch
from .state import BridgeState

logger = logging.getLogger(__name__)


@dataclass
class BridgeSettings:
    connect_attempts: int = 3
    connect_retry_delay: float = 1.0
    shutdown_wait_seconds: float = 5.0


class Bridge:
    """Base bridge; transports subclass it to add their own behaviour."""

    name: str = ""

    def __init__(
        self,
        adapter: TransportAdapter,
        bus: MessageBus,
        registry: ConverterRegistry,
        settings: Optional[BridgeSettings] = None,
    ):
        self.adapter = adapter
        self.bus = bus
        self.settings = settings or BridgeSettings()
        self.state = BridgeState(self.name, registry)
        self.router = MessageRouter(self.name, bus)

        self._scan_task: Optional[asyncio.Task] = None
        self._scan_lock = asyncio.Lock()
        self._drain_task: Optional[asyncio.Task] = None
        self._router_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._connecting: Set[str] = set()
        self._running = False

        self._register_routes()

    def _register_routes(self) -> None:
        add = self.router.add_route
        add("devices/scan", ScanCommand, self.handle_scan, Topics.SCAN_STATUS)
        add("devices/connect", ConnectCommand, self.handle_connect, Topics.CONNECT)
        add("devices/reconnect", DevicesCommand, self.handle_reconnect)
        add("devices/remove", DeviceCommand, self.handle_remove, Topics.REMOVE)
        add("devices/disconnect", DeviceCommand, self.handle_disconnect, Topics.DISCONNECT)
        add("devices/values/set", ValuesSetCommand, self.handle_values_set, Topics.VALUES)
        add("devices/values/get", ValuesGetCommand, self.handle_values_get, Topics.VALUES)
        add("devices/refresh", DevicesCommand, self.handle_refresh)
        add("devices/list", ListCommand, self.handle_list, Topics.LIST)
        add("devices/create", CreateCommand, self.handle_create)
        add("devices/update", UpdateCommand, self.handle_update, Topics.UPDATE)

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        await self.router.publish(topic, payload)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start the event drain and the adapter. The router is started by run()."""
        if self._running:
            return
        self._running = True
        logger.info(f"Starting {self.name} bridge")

        self._drain_task = asyncio.create_task(self._drain_events())
        try:
            await self.adapter.start()
        except TransportError as e:
            logger.error(f"{self.name} adapter failed to start: {e.message}")
            self.state.status = BridgeStatus.OFFLINE

    async def run(self) -> None:
        """Connect to the bus and serve until cancelled."""
        await self.bus.connect()
        await self.start()
        self._router_task = asyncio.create_task(self.router.run())
        try:
            await self._router_task
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        logger.info(f"Stopping {self.name} bridge")

        await self.cancel_scan()
        await self.router.stop()
        if self._router_task:
            self._router_task.cancel()
            try:
                await self._router_task
            except asyncio.CancelledError:
                pass

        for device in list(self.state.devices_connected.values()):
            await self._release(device)
        self.state.clear_connections()

        try:
            await asyncio.wait_for(self.adapter.stop(), timeout=self.settings.shutdown_wait_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} adapter did not stop within {self.settings.shutdown_wait_seconds}s")

        if self.state.online:
            self.state.status = BridgeStatus.OFFLINE
            await self.publish(Topics.BRIDGE_STATUS, {"status": BridgeStatus.OFFLINE.value})

        for task in [self._drain_task, *self._tasks]:
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks.clear()
        await self.bus.close()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run a background job owned by the bridge."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._job_done)
        return task

    def _job_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, BridgeError):
            logger.warning(f"{self.name}: {error.message}")
        elif error is not None:
            logger.error(f"{self.name}: background job failed", exc_info=error)

    # ========================================================================
    # Adapter events
    # ========================================================================

    async def _drain_events(self) -> None:
        while True:
            event = await self.adapter.events.get()
            try:
                await self.handle_event(event)
            except BridgeError as e:
                logger.warning(f"{self.name}: {event.type.value} event failed: {e.message}")
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"{self.name}: error handling {event.type.value} event")

    async def handle_event(self, event: AdapterEvent) -> None:
        if event.type == AdapterEventType.ONLINE:
            await self.on_online()
        elif event.type == AdapterEventType.OFFLINE:
            await self.on_transport_fault(event.error or "adapter offline")
        elif event.type == AdapterEventType.DISCONNECTED:
            await self.on_device_disconnected(event.device_id)
        elif event.type == AdapterEventType.VALUES:
            await self.on_values(event)
        elif event.type == AdapterEventType.ANNOUNCE:
            await self.on_announce(event)
        elif event.type == AdapterEventType.LEFT:
            await self.on_left(event)

    async def on_online(self) -> None:
        self.state.status = BridgeStatus.ONLINE
        logger.info(f"{self.name} bridge online")
        await self.publish(Topics.BRIDGE_STATUS, {"status": BridgeStatus.ONLINE.value})
        await self.publish(Topics.REFRESH, {})

    async def on_transport_fault(self, message: str) -> None:
        logger.error(f"{self.name} transport fault: {message}")
        await self.cancel_scan()
        dropped = self.state.clear_connections()
        if dropped:
            logger.error(f"{self.name}: dropped {len(dropped)} connections")
        self.state.status = BridgeStatus.OFFLINE
        await self.publish(Topics.BRIDGE_STATUS, {"status": BridgeStatus.OFFLINE.value, "error": message})

    async def on_device_disconnected(self, device_id: Optional[str]) -> None:
        if not device_id:
            return
        device = self.state.mark_disconnected(device_id)
        if device is None:
            return
        logger.info(f"{self.name}: {device_id} disconnected")
        await self.publish(Topics.DISCONNECT, {"deviceID": device_id, "status": "ok"})
        await self.after_disconnect(device)

    async def after_disconnect(self, device: Device) -> None:
        """Hook for unexpected disconnects."""

    async def on_values(self, event: AdapterEvent) -> None:
        device = self.state.get_connected(event.device_id or "")
        if device is None:
            logger.debug(f"{self.name}: values from unconnected device {event.device_id}")
            return
        values = self.convert_raw(device, event.values)
        if values:
            await self.publish(Topics.VALUES, {"deviceID": device.device_id, "values": values})

    async def on_announce(self, event: AdapterEvent) -> None:
        """A device joined or announced itself; ask the server to create it."""
        if not event.device_id:
            return
        if self.state.is_registered(event.device_id):
            registered = self.state.devices_registered[event.device_id]
            if not self.state.is_connected(event.device_id) and self.adapter.registry_implies_connection:
                await self.connect_device(registered)
            return

        device = self.state.new_device(event.device_id, event.product_name, event.vendor_name)
        if not device.is_supported:
            logger.warning(f"{self.name}: no converter for {event.product_name!r}, creating with no properties")
        await self.publish(Topics.CREATE, self.create_payload(device))

    async def on_left(self, event: AdapterEvent) -> None:
        if not event.device_id:
            return
        self.state.remove_device(event.device_id)
        await self.publish(Topics.REMOVE, {"deviceID": event.device_id, "status": "ok"})

    def create_payload(self, device: Device) -> Dict[str, Any]:
        return device.to_dto().to_payload()

    def convert_raw(self, device: Device, raw_values: Dict[Hashable, Any]) -> Dict[str, dict]:
        values: Dict[str, dict] = {}
        converter = device.converter
        if converter is None:
            return values
        for address, raw in raw_values.items():
            prop = converter.get_by_address(address)
            if prop is None:
                continue
            converted = converter.get(prop, raw)
            if converted is not None:
                values[prop.name] = converted.to_dict()
        return values

    # ========================================================================
    # Connections
    # ========================================================================

    async def connect_device(self, device: Device) -> Device:
        """Connect with the bridge-wide retry policy and subscribe to notifications."""
        current = self.state.get_connected(device.device_id)
        if current is not None:
            return current
        if device.device_id in self._connecting:
            raise NegotiationError(device.device_id, "connection already in progress", retryable=False)

        self._connecting.add(device.device_id)
        try:
            handle = await self._negotiate(device)
        finally:
            self._connecting.discard(device.device_id)

        device.handle = handle
        self.state.mark_connected(device)
        logger.info(f"{self.name}: connected {device.device_id} ({device.product_name})")
        await self._subscribe_notifications(device)
        return device

    async def _negotiate(self, device: Device) -> Any:
        attempts = max(1, self.settings.connect_attempts)
        handle = None
        for attempt in range(1, attempts + 1):
            try:
                handle = await self.adapter.connect(device)
                break
            except GhostConnectionError as e:
                logger.warning(f"{self.name}: ghost connection to {device.device_id}, disconnecting")
                device.handle = e.handle
                await self._release(device)
                raise
            except NegotiationError as e:
                if not e.retryable or attempt == attempts:
                    raise
                logger.info(f"{self.name}: {e.message}; retry {attempt}/{attempts - 1}")
                await asyncio.sleep(self.settings.connect_retry_delay)
        return handle

    async def _subscribe_notifications(self, device: Device) -> None:
        if device.converter is None:
            return
        for address, prop in device.converter.addresses():
            if not prop.notify:
                continue
            try:
                await self.adapter.subscribe_notify(device, address, self.adapter.notify_callback(device, address))
            except BridgeError as e:
                logger.warning(f"{self.name}: notify for {prop.name} on {device.device_id} failed: {e.message}")
            except asyncio.TimeoutError:
                logger.warning(f"{self.name}: notify for {prop.name} on {device.device_id} timed out")

    async def _release(self, device: Device) -> None:
        """Disconnect once and drop the handle; failures are logged."""
        try:
            await self.adapter.disconnect(device)
        except BridgeError as e:
            logger.warning(f"{self.name}: disconnect of {device.device_id} failed: {e.message}")
        finally:
            self.state.mark_disconnected(device.device_id)
            device.handle = None

    async def connect_registered(self) -> None:
        """Connect every registered device that is not connected yet."""
        pending = {
            device_id: self._connect_if_alive(device)
            for device_id, device in self.state.devices_registered.items()
            if not self.state.is_connected(device_id)
        }
        if not pending:
            return
        _, failed = await gather_batch(pending)
        for device_id, error in failed.items():
            logger.warning(f"{self.name}: could not connect {device_id}: {error}")

    async def _connect_if_alive(self, device: Device) -> Optional[Device]:
        if device.power_type == PowerType.MAINS and not await self.adapter.probe(device):
            logger.info(f"{self.name}: {device.device_id} did not answer the liveness probe")
            return None
        return await self.connect_device(device)

    def require_connected(self, device_id: str) -> Device:
        device = self.state.get_connected(device_id)
        if device is None:
            raise DeviceNotConnectedError(device_id)
        return device

    # ========================================================================
    # Property I/O
    # ========================================================================

    async def read_values(self, device: Device, names: Optional[List[str]] = None) -> Dict[str, dict]:
        converter = device.converter
        if converter is None:
            return {}
        if names:
            props = []
            for name in names:
                prop = converter.get_by_name(name)
                if prop is None or not prop.read:
                    logger.warning(f"{self.name}: {device.device_id} has no readable property {name!r}")
                    continue
                props.append(prop)
        else:
            props = [p for p in converter.properties if p.read]

        values, failed = await gather_batch({p.name: self._read_one(device, p) for p in props})
        for name, error in failed.items():
            logger.warning(f"{self.name}: reading {name} from {device.device_id} failed: {error}")
        return values

    async def _read_one(self, device: Device, prop: Property) -> dict:
        raw = await self.adapter.read(device, device.converter.address_of(prop.name))
        converted = device.converter.get(prop, raw)
        if converted is None:
            raise ConversionError(prop.name, "no value")
        return converted.to_dict()

    async def write_values(self, device: Device, values: Dict[str, Any]) -> List[str]:
        converter = device.converter
        operations = {}
        for name, value in values.items():
            prop = converter.get_by_name(name) if converter else None
            if prop is None:
                logger.warning(f"{self.name}: {device.device_id} has no property {name!r}")
                continue
            try:
                raw = converter.set(prop, value)
            except (ConversionError, PropertyError) as e:
                logger.warning(f"{self.name}: not writing {name} to {device.device_id}: {e.message}")
                continue
            operations[name] = self.adapter.write(device, converter.address_of(name), raw)

        written, failed = await gather_batch(operations)
        for name, error in failed.items():
            logger.warning(f"{self.name}: writing {name} to {device.device_id} failed: {error}")
        return list(written)

    # ========================================================================
    # Scanning
    # ========================================================================

    async def cancel_scan(self) -> None:
        task, self._scan_task = self._scan_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def scanning(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    async def start_scan(self, duration: float, call_id: Optional[str] = None, registered_reconnect: bool = False) -> None:
        if not self.state.online:
            raise TransportError(f"{self.name} bridge is offline")
        # At most one scan task; a newer scan cancels the running one first
        async with self._scan_lock:
            await self.cancel_scan()

            self.state.begin_scan(call_id, registered_reconnect)
            await self.publish(Topics.SCAN_STATUS, {"scanning": True, "duration": duration, "callID": call_id})
            self._scan_task = asyncio.create_task(self._run_scan(duration, call_id, registered_reconnect))

    async def _run_scan(self, duration: float, call_id: Optional[str], registered_reconnect: bool) -> None:
        try:
            await asyncio.wait_for(self._consume_sightings(duration, registered_reconnect), timeout=duration)
        except asyncio.TimeoutError:
            pass
        except BridgeError as e:
            logger.error(f"{self.name}: scan failed: {e.message}")
        except asyncio.CancelledError:
            await self._finish_scan(call_id, registered_reconnect, cancelled=True)
            raise
        await self._finish_scan(call_id, registered_reconnect)

    async def _consume_sightings(self, duration: float, registered_reconnect: bool) -> None:
        async with aclosing(self.adapter.discover(duration)) as sightings:
            async for sighting in sightings:
                device = self.state.record_sighting(sighting)
                if device is None:
                    continue
                logger.debug(f"{self.name}: sighted {device.device_id} ({device.product_name}, rssi {device.rssi})")
                if registered_reconnect and self.state.is_registered(device.device_id) \
                        and not self.state.is_connected(device.device_id) and device.connectable \
                        and device.device_id not in self._connecting:
                    self.spawn(self._reconnect_sighted(device))
        # Discovery may end early; the scan still lasts until its timer fires
        await asyncio.sleep(duration)

    async def _reconnect_sighted(self, device: Device) -> None:
        registered = self.state.devices_registered.get(device.device_id)
        if registered is not None:
            device.metadata = dict(registered.metadata)
        await self.connect_device(device)
        await self.publish(Topics.CONNECT, {"deviceID": device.device_id, "productName": device.product_name, "status": "ok"})

    async def _finish_scan(self, call_id: Optional[str], registered_reconnect: bool, cancelled: bool = False) -> None:
        try:
            await self.adapter.stop_discovery()
        except BridgeError as e:
            logger.warning(f"{self.name}: stopping discovery failed: {e.message}")

        if not cancelled and not registered_reconnect:
            for device in list(self.state.devices_discovered.values()):
                await self.publish(Topics.DISCOVER, {**device.to_dto().to_payload(), "callID": call_id})

        self.state.end_scan()
        status = {"scanning": False, "callID": call_id}
        if cancelled:
            status["cancelled"] = True
        await self.publish(Topics.SCAN_STATUS, status)
        if not cancelled:
            await self.after_scan(registered_reconnect)

    async def after_scan(self, registered_reconnect: bool) -> None:
        """Hook run when a scan's timer fires."""

    # ========================================================================
    # Command handlers
    # ========================================================================

    async def handle_scan(self, command: ScanCommand) -> None:
        await self.start_scan(command.duration, command.call_id, command.registered_reconnect)

    async def handle_connect(self, command: ConnectCommand) -> None:
        device = self.state.find(command.device_id, command.product_name)
        if device is None:
            raise DeviceNotFoundError(command.device_id or command.product_name)
        if device.connectable is False:
            raise NegotiationError(device.device_id, "device is not connectable", retryable=False)
        if not device.is_supported:
            logger.warning(f"{self.name}: no converter for {device.product_name!r}")

        device = await self.connect_device(device)
        if command.add_device_to_server:
            await self.publish(Topics.CREATE, self.create_payload(device))
        await self.publish(Topics.CONNECT, {
            "deviceID": device.device_id,
            "productName": device.product_name,
            "status": "ok",
            "callID": command.call_id,
        })

    async def handle_refresh(self, command: DevicesCommand) -> None:
        devices = [self.state.device_from_dto(dto) for dto in command.devices]
        self.state.replace_registered(devices)

        for device_id, device in list(self.state.devices_connected.items()):
            registered = self.state.devices_registered.get(device_id)
            if registered is None:
                logger.info(f"{self.name}: {device_id} is no longer registered, disconnecting")
                await self._release(device)
                await self.publish(Topics.DISCONNECT, {"deviceID": device_id, "status": "ok"})
            else:
                device.metadata = dict(registered.metadata)

        if self.adapter.registry_implies_connection and self.state.online:
            await self.connect_registered()
        await self.after_refresh()

    async def after_refresh(self) -> None:
        """Hook run after the registered view was replaced."""

    async def handle_reconnect(self, command: DevicesCommand) -> None:
        await self.handle_refresh(command)

    async def handle_remove(self, command: DeviceCommand) -> None:
        device = self.state.find(command.device_id)
        if device is not None:
            try:
                await self.adapter.forget(device)
            except BridgeError as e:
                logger.warning(f"{self.name}: forgetting {command.device_id} failed: {e.message}")
        self.state.remove_device(command.device_id)
        await self.publish(Topics.REMOVE, {"deviceID": command.device_id, "status": "ok", "callID": command.call_id})

    async def handle_disconnect(self, command: DeviceCommand) -> None:
        device = self.require_connected(command.device_id)
        await self._release(device)
        await self.publish(Topics.DISCONNECT, {"deviceID": command.device_id, "status": "ok", "callID": command.call_id})

    async def handle_values_set(self, command: ValuesSetCommand) -> None:
        device = self.require_connected(command.device_id)
        written = await self.write_values(device, command.values)
        values = await self.read_values(device, written) if written else {}
        await self.publish(Topics.VALUES, {"deviceID": device.device_id, "values": values, "callID": command.call_id})

    async def handle_values_get(self, command: ValuesGetCommand) -> None:
        device = self.require_connected(command.device_id)
        values = await self.read_values(device, command.values)
        await self.publish(Topics.VALUES, {"deviceID": device.device_id, "values": values, "callID": command.call_id})

    async def handle_list(self, command: ListCommand) -> None:
        await self.publish(Topics.LIST, {"callID": command.call_id, **self.state.snapshot()})

    async def handle_create(self, command: CreateCommand) -> None:
        if command.status != "ok":
            logger.warning(f"{self.name}: server did not create {command.device_id}: {command.error}")
            return

        known = self.state.find(command.device_id)
        product_name = command.product_name or (known.product_name if known else "")
        registered = self.state.new_device(command.device_id, product_name, command.vendor_name, command.metadata())
        self.state.add_registered(registered)
        logger.info(f"{self.name}: {command.device_id} created at server")

        connected = self.state.get_connected(command.device_id)
        if connected is not None:
            connected.metadata = {**connected.metadata, **registered.metadata}
        elif self.adapter.registry_implies_connection and self.state.online:
            try:
                await self.connect_device(registered)
            except NegotiationError as e:
                logger.warning(f"{self.name}: {e.message}")

    async def handle_update(self, command: UpdateCommand) -> None:
        updated = self.state.update_metadata(command.device_id, command.updates)
        if not updated:
            raise DeviceNotFoundError(command.device_id)
        await self.publish(Topics.UPDATE, {
            "deviceID": command.device_id,
            "updates": command.updates,
            "status": "ok",
            "callID": command.call_id,
        })
