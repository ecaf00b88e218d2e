"""
HTTP bridge.

Webhook devices push their values, so a device registered at the server
counts as connected as soon as the registry arrives.
"""

import logging
from typing import Optional

from ...core.bridge import Bridge, BridgeSettings
from ...core.bus import MessageBus
from .adapter import WebhookAdapter
from .converters import CONVERTERS

logger = logging.getLogger(__name__)


class HttpBridge(Bridge):
    name = "http"

    def __init__(self, adapter: WebhookAdapter, bus: MessageBus, settings: Optional[BridgeSettings] = None):
        super().__init__(adapter, bus, CONVERTERS, settings)
