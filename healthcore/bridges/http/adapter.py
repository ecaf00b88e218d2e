"""
Webhook adapter.

HTTP devices are never discovered: they call the bridge's webhook app,
which uvicorn serves on the event loop the bridge runs on. A device
counts as connected once the server registered it; its last pushed
values answer reads.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Optional

import uvicorn

from ...core.adapter import AdapterEvent, AdapterEventType, TransportAdapter
from ...core.errors import DeviceNotConnectedError, PropertyError, TransportError
from ...core.models import Device
from .app import create_app
from .converters import WebhookConverter

logger = logging.getLogger(__name__)

DEFAULT_STARTUP_TIMEOUT = 10.0


@dataclass
class WebhookLink:
    """Handle of a registered webhook device."""
    device_id: str
    converter: Optional[WebhookConverter] = None
    last_values: Dict[str, Any] = field(default_factory=dict)


class WebhookAdapter(TransportAdapter):
    """Webhook ingress served with FastAPI and uvicorn."""

    registry_implies_connection = True
    supports_discovery = False

    def __init__(
        self,
        bridge: str = "http",
        host: str = "0.0.0.0",
        port: int = 8104,
        api_key: Optional[str] = None,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        **kwargs,
    ):
        super().__init__(bridge, **kwargs)
        self.host = host
        self.port = port
        self.startup_timeout = startup_timeout
        self.app = create_app(self, api_key=api_key)

        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._links: Dict[str, WebhookLink] = {}

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._serve())

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while not self._server.started:
            if self._serve_task.done() or loop.time() > deadline:
                raise TransportError(f"Webhook server failed to start on {self.host}:{self.port}")
            await asyncio.sleep(0.05)

        logger.info(f"Webhook server listening on http://{self.host}:{self.port}")
        self.go_online()

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except (OSError, SystemExit) as e:
            logger.error(f"Webhook server stopped: {e}")
        if self.online:
            self.fault("webhook server stopped")

    async def stop(self) -> None:
        self.online = False
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            try:
                await self._serve_task
            except asyncio.CancelledError:
                pass
        self._server = None
        self._serve_task = None
        self._links.clear()
        logger.info("Webhook server stopped")

    # ========================================================================
    # Webhook calls
    # ========================================================================

    @property
    def connected_ids(self) -> List[str]:
        return list(self._links)

    def is_connected(self, device_id: str) -> bool:
        return device_id in self._links

    def validate(self, device_id: str, values: Dict[str, Any]) -> Optional[str]:
        """Error message for the first unacceptable value, or None."""
        link = self._links.get(device_id)
        if link is None:
            return f"Device {device_id} is not registered at server"
        if not values:
            return "No values given"
        if link.converter is None:
            return f"Device {device_id} is not supported"
        for name, value in values.items():
            problem = link.converter.validate(name, value)
            if problem:
                return problem
        return None

    def announce(self, device_id: str, product_name: str, vendor_name: str = "") -> None:
        self.emit(AdapterEvent(AdapterEventType.ANNOUNCE, device_id, product_name=product_name, vendor_name=vendor_name))

    def push(self, device_id: str, values: Dict[str, Any]) -> None:
        link = self._links.get(device_id)
        if link is None:
            return
        link.last_values.update(values)
        self.emit(AdapterEvent(AdapterEventType.VALUES, device_id, values=dict(values)))

    def leave(self, device_id: str) -> None:
        self._links.pop(device_id, None)
        self.emit(AdapterEvent(AdapterEventType.LEFT, device_id))

    # ========================================================================
    # Devices
    # ========================================================================

    async def connect(self, device: Device) -> WebhookLink:
        converter = device.converter if isinstance(device.converter, WebhookConverter) else None
        link = WebhookLink(device.device_id, converter)
        self._links[device.device_id] = link
        return link

    async def read(self, device: Device, address: Hashable) -> Any:
        link = self._links.get(device.device_id)
        if link is None:
            raise DeviceNotConnectedError(device.device_id)
        if address not in link.last_values:
            raise PropertyError(str(address), f"{device.device_id} has not pushed a value yet")
        return link.last_values[address]

    async def write(self, device: Device, address: Hashable, raw: Any) -> None:
        raise PropertyError(str(address), "webhook devices cannot be written to")

    async def disconnect(self, device: Device) -> None:
        self._links.pop(device.device_id, None)
