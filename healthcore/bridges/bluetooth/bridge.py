"""
Bluetooth bridge.

Registration does not imply connection here: a registered device is only
connected once it has been sighted by a reconnect scan and the GATT
negotiation succeeded. Devices that drop their link unexpectedly are
looked for again by a later reconnect scan.
"""

import asyncio
import logging
from typing import Optional

from ...core.bridge import Bridge, BridgeSettings
from ...core.bus import MessageBus
from ...core.models import Device
from ...core.payloads import DevicesCommand
from .adapter import BluetoothAdapter
from .converters import CONVERTERS

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_SCAN_SECONDS = 30.0
DEFAULT_RECONNECT_DELAY_SECONDS = 10.0
DEFAULT_RECONNECT_MAX_ATTEMPTS = 5


class BluetoothBridge(Bridge):
    name = "bluetooth"

    def __init__(
        self,
        adapter: BluetoothAdapter,
        bus: MessageBus,
        settings: Optional[BridgeSettings] = None,
        reconnect_scan_seconds: float = DEFAULT_RECONNECT_SCAN_SECONDS,
        reconnect_delay_seconds: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        reconnect_max_attempts: int = DEFAULT_RECONNECT_MAX_ATTEMPTS,
    ):
        super().__init__(adapter, bus, CONVERTERS, settings)
        self.reconnect_scan_seconds = reconnect_scan_seconds
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self.reconnect_max_attempts = reconnect_max_attempts

        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._reconnect_attempts = 0

    @property
    def missing_devices(self) -> list:
        """Registered devices without a live link."""
        return [
            device_id for device_id in self.state.devices_registered
            if not self.state.is_connected(device_id)
        ]

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    # ========================================================================
    # Reconnection
    # ========================================================================

    async def reconnect_scan(self) -> None:
        """Scan for registered devices and connect the ones that show up."""
        self.cancel_reconnect()
        if not self.state.online:
            logger.info("Bluetooth offline, skipping reconnect scan")
            return
        if self.scanning:
            logger.debug("Scan already running, retrying reconnect scan later")
            self.schedule_reconnect()
            return
        logger.info(f"Looking for {len(self.missing_devices)} registered devices")
        await self.start_scan(self.reconnect_scan_seconds, registered_reconnect=True)

    def schedule_reconnect(self) -> bool:
        """Arm the reconnect timer unless one is pending or attempts ran out."""
        if self._reconnect_timer is not None or not self._running:
            return False
        if self._reconnect_attempts >= self.reconnect_max_attempts:
            logger.warning(
                f"Giving up reconnecting after {self._reconnect_attempts} attempts: {self.missing_devices}"
            )
            return False

        self._reconnect_attempts += 1
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(self.reconnect_delay_seconds, self._reconnect_timer_fired)
        logger.info(
            f"Reconnect scan {self._reconnect_attempts}/{self.reconnect_max_attempts} "
            f"in {self.reconnect_delay_seconds}s"
        )
        return True

    def _reconnect_timer_fired(self) -> None:
        self._reconnect_timer = None
        self.spawn(self.reconnect_scan())

    def cancel_reconnect(self) -> None:
        timer, self._reconnect_timer = self._reconnect_timer, None
        if timer is not None:
            timer.cancel()

    # ========================================================================
    # Hooks
    # ========================================================================

    async def after_disconnect(self, device: Device) -> None:
        if self.state.is_registered(device.device_id):
            logger.info(f"Registered device {device.device_id} dropped its link")
            self.schedule_reconnect()

    async def after_scan(self, registered_reconnect: bool) -> None:
        if not registered_reconnect:
            return
        if self.missing_devices:
            self.schedule_reconnect()
        else:
            self._reconnect_attempts = 0

    async def after_refresh(self) -> None:
        if self.missing_devices:
            await self.reconnect_scan()

    async def on_transport_fault(self, message: str) -> None:
        self.cancel_reconnect()
        self._reconnect_attempts = 0
        await super().on_transport_fault(message)

    async def stop(self) -> None:
        self.cancel_reconnect()
        await super().stop()

    # ========================================================================
    # Commands
    # ========================================================================

    async def handle_reconnect(self, command: DevicesCommand) -> None:
        self._reconnect_attempts = 0
        await super().handle_reconnect(command)
