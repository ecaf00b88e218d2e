"""Bluetooth Low Energy bridge (bleak)."""

from .adapter import BluetoothAdapter
from .bridge import BluetoothBridge
from .converters import CONVERTERS

__all__ = ["BluetoothAdapter", "BluetoothBridge", "CONVERTERS"]
