"""
HealthCore Bridges

Transport bridges for a smart-building gateway. Each bridge owns one
transport (Bluetooth LE, Zigbee, LoRa or HTTP webhooks), converts device
values with product converters and reconciles its devices with the
coordination server over MQTT.

Example:
    >>> from healthcore.bridges import create_bridge
    >>> bridge = create_bridge("zigbee", get_config())
    >>> await bridge.run()
"""

__version__ = "1.0.0"

from .config import Config, get_config

__all__ = [
    "__version__",
    "Config",
    "get_config",
]
