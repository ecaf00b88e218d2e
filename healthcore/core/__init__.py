"""
Bridge framework shared by every transport.

- models: Device, Property and the bus DTO
- converters: Converter base class and the product registry
- adapter: TransportAdapter interface and its event channel
- state: BridgeState with the registered, connected and discovered views
- router: MessageRouter, the only component on the bus
- bridge: Bridge, the command handlers and connection policy
"""

from .adapter import AdapterEvent, AdapterEventType, TransportAdapter
from .bridge import Bridge, BridgeSettings
from .bus import BusMessage, MessageBus, MqttBus
from .converters import Converter, ConverterRegistry, UnsupportedConverter
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
from .models import BridgeStatus, ConvertedValue, Device, DeviceDTO, PowerType, Property, Sighting, ValueType
from .router import MessageRouter, Topics
from .state import BridgeState

__all__ = [
    "AdapterEvent",
    "AdapterEventType",
    "TransportAdapter",
    "Bridge",
    "BridgeSettings",
    "BusMessage",
    "MessageBus",
    "MqttBus",
    "Converter",
    "ConverterRegistry",
    "UnsupportedConverter",
    "BridgeError",
    "ConversionError",
    "DeviceNotConnectedError",
    "DeviceNotFoundError",
    "GhostConnectionError",
    "NegotiationError",
    "PropertyError",
    "TransportError",
    "BridgeStatus",
    "ConvertedValue",
    "Device",
    "DeviceDTO",
    "PowerType",
    "Property",
    "Sighting",
    "ValueType",
    "MessageRouter",
    "Topics",
    "BridgeState",
]
