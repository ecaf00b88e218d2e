"""LoRa bridge (serial AT-command modem)."""

from .adapter import LoRaAdapter, ModemSettings
from .bridge import LoRaBridge
from .converters import CONVERTERS

__all__ = ["LoRaAdapter", "LoRaBridge", "ModemSettings", "CONVERTERS"]
