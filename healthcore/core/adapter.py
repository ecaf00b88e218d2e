"""
Transport adapter interface.

An adapter owns the link to one transport and exposes it as discover,
connect, read, write, subscribe_notify and disconnect over native handles.
Everything the transport reports on its own (link lost, device joined,
values pushed, adapter powered off) is put on a bounded event channel that
the bridge drains in order on its event loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Hashable, Optional

from .models import Device, Sighting

logger = logging.getLogger(__name__)

DEFAULT_EVENT_QUEUE_SIZE = 1000

NotifyCallback = Callable[[Any], None]


class AdapterEventType(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"              # transport fault
    DISCONNECTED = "disconnected"    # one device lost its link
    VALUES = "values"                # raw values pushed by a device
    ANNOUNCE = "announce"            # a device asks to be created or rejoined
    LEFT = "left"                    # a device left the transport


@dataclass
class AdapterEvent:
    type: AdapterEventType
    device_id: Optional[str] = None
    product_name: str = ""
    vendor_name: str = ""
    # raw values keyed by wire address
    values: Dict[Hashable, Any] = field(default_factory=dict)
    error: Optional[str] = None


class TransportAdapter(ABC):
    """Base class for transport adapters."""

    # Registration at the server implies the device should be connected
    registry_implies_connection: bool = True
    # Adapter can run discover()
    supports_discovery: bool = True

    def __init__(self, bridge: str, queue_size: int = DEFAULT_EVENT_QUEUE_SIZE):
        self.bridge = bridge
        self.events: "asyncio.Queue[AdapterEvent]" = asyncio.Queue(maxsize=queue_size)
        self.online = False

    # ========================================================================
    # Event channel
    # ========================================================================

    def emit(self, event: AdapterEvent) -> None:
        try:
            self.events.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"{self.bridge}: event channel full, dropping {event.type.value} event")

    def go_online(self) -> None:
        self.online = True
        self.emit(AdapterEvent(AdapterEventType.ONLINE))

    def fault(self, message: str) -> None:
        """Report a transport fault; the bridge goes offline."""
        was_online = self.online
        self.online = False
        if was_online:
            self.emit(AdapterEvent(AdapterEventType.OFFLINE, error=message))

    def notify_callback(self, device: Device, address: Hashable) -> NotifyCallback:
        device_id = device.device_id

        def on_change(raw: Any) -> None:
            self.emit(AdapterEvent(AdapterEventType.VALUES, device_id, values={address: raw}))

        return on_change

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    # ========================================================================
    # Device operations
    # ========================================================================

    async def discover(self, timeout: float) -> AsyncIterator[Sighting]:
        """Yield sightings for ``timeout`` seconds. No-op by default."""
        return
        yield  # pragma: no cover

    async def stop_discovery(self) -> None:
        pass

    @abstractmethod
    async def connect(self, device: Device) -> Any:
        """
        Establish a live link and return the native handle.

        Raises GhostConnectionError when negotiation finds none of the
        converter's addresses; the caller tears the link down.
        """

    @abstractmethod
    async def read(self, device: Device, address: Hashable) -> Any:
        ...

    @abstractmethod
    async def write(self, device: Device, address: Hashable, raw: Any) -> None:
        ...

    async def subscribe_notify(self, device: Device, address: Hashable, on_change: NotifyCallback) -> None:
        pass

    @abstractmethod
    async def disconnect(self, device: Device) -> None:
        """Release the handle. Safe on an already disconnected device."""

    async def probe(self, device: Device) -> bool:
        """Liveness check for mains powered devices."""
        return True

    async def forget(self, device: Device) -> None:
        """Deregister a device from the transport itself."""
        await self.disconnect(device)
