"""
LoRa bridge.

LoRa senders cannot be addressed, so every device registered at the
server counts as connected; its frames are converted and published as
they arrive.
"""

import logging
from typing import Optional

from ...core.bridge import Bridge, BridgeSettings
from ...core.bus import MessageBus
from .adapter import LoRaAdapter
from .converters import CONVERTERS

logger = logging.getLogger(__name__)


class LoRaBridge(Bridge):
    name = "lora"

    def __init__(self, adapter: LoRaAdapter, bus: MessageBus, settings: Optional[BridgeSettings] = None):
        super().__init__(adapter, bus, CONVERTERS, settings)
