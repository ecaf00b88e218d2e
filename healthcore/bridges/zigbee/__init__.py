"""Zigbee bridge (zigpy)."""

from .adapter import ZigbeeAdapter
from .bridge import ZigbeeBridge
from .converters import CONVERTERS

__all__ = ["ZigbeeAdapter", "ZigbeeBridge", "CONVERTERS"]
