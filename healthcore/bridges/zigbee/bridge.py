"""
Zigbee bridge.

Devices registered at the server are part of the Zigbee network already,
so a registry refresh connects them right away: battery devices directly,
mains devices once they answer the liveness probe. Sleepy battery devices
cannot be polled; their values arrive as attribute reports only.
"""

import logging
from typing import Dict, List, Optional

from ...core.bridge import Bridge, BridgeSettings
from ...core.bus import MessageBus
from ...core.models import Device, PowerType
from .adapter import ZigbeeAdapter
from .converters import CONVERTERS

logger = logging.getLogger(__name__)


class ZigbeeBridge(Bridge):
    name = "zigbee"

    def __init__(self, adapter: ZigbeeAdapter, bus: MessageBus, settings: Optional[BridgeSettings] = None):
        super().__init__(adapter, bus, CONVERTERS, settings)

    async def read_values(self, device: Device, names: Optional[List[str]] = None) -> Dict[str, dict]:
        if device.power_type == PowerType.BATTERY:
            logger.info(f"{device.device_id} is battery powered and cannot be polled")
            return {}
        return await super().read_values(device, names)
