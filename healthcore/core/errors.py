"""
Error types shared by every bridge.

Handlers raise these; the message router catches them at its boundary,
logs them and answers the command with an error-shaped reply where the
command expects one.
"""

from typing import Any, Optional


class BridgeError(Exception):
    """Base error for bridge operations."""

    def __init__(self, message: str, code: str = "BRIDGE_ERROR", retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable

    def to_reply(self) -> dict:
        return {"status": "error", "error": self.message}


class TransportError(BridgeError):
    """The adapter lost its link to the transport (radio off, port closed)."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message, code="TRANSPORT_ERROR", retryable=retryable)


class NegotiationError(BridgeError):
    """A single device connection could not be established."""

    def __init__(self, device_id: str, message: str, retryable: bool = True):
        super().__init__(f"Connection to {device_id} failed: {message}", code="NEGOTIATION_ERROR", retryable=retryable)
        self.device_id = device_id


class GhostConnectionError(NegotiationError):
    """The link came up but exposed none of the converter's attributes."""

    def __init__(self, device_id: str, handle: Any = None):
        super().__init__(device_id, "no matching attributes after negotiation", retryable=False)
        # Link that was opened; the caller releases it
        self.handle = handle


class DeviceNotFoundError(BridgeError):
    def __init__(self, device_id: Optional[str]):
        super().__init__(f"Device {device_id} not found", code="DEVICE_NOT_FOUND")
        self.device_id = device_id


class DeviceNotConnectedError(BridgeError):
    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} is not connected", code="DEVICE_NOT_CONNECTED")
        self.device_id = device_id


class ConversionError(BridgeError):
    """A value could not be encoded or decoded for a property."""

    def __init__(self, property_name: str, message: str):
        super().__init__(f"{property_name}: {message}", code="CONVERSION_ERROR")
        self.property_name = property_name


class PropertyError(BridgeError):
    """A property is unknown or does not allow the requested access."""

    def __init__(self, property_name: str, message: str):
        super().__init__(f"{property_name}: {message}", code="PROPERTY_ERROR")
        self.property_name = property_name
