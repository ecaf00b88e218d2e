"""
LoRa converters.

A LoRa frame carries a 16 character device ID followed by a positional
payload. Properties are addressed by their slice of that payload.
"""

import logging
from typing import Any, Hashable, NamedTuple, Optional

from ...core.converters import Converter, ConverterRegistry
from ...core.models import ConvertedValue, Property, ValueType

logger = logging.getLogger(__name__)

DEVICE_ID_LENGTH = 16


class FieldSlice(NamedTuple):
    offset: int
    length: int = 1

    def take(self, payload: str) -> str:
        return payload[self.offset:self.offset + self.length]


def _as_int(raw: Any) -> Optional[int]:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None


class LoRaConverter(Converter):
    """Base for LoRa products with positional payloads."""

    def normalize_address(self, address: Hashable) -> Hashable:
        if isinstance(address, FieldSlice):
            return address
        if isinstance(address, int):
            return FieldSlice(address)
        return FieldSlice(*address)  # type: ignore[misc]


class BulpLoRaRobo666(LoRaConverter):
    product_name = "Bulp LoRa-Robo 666"
    vendor_name = "bulp"

    _COLORS = {1: "red", 2: "green"}

    def declare(self) -> None:
        self.add(FieldSlice(0), Property("heartrate", ValueType.INTEGER, 0))
        self.add(FieldSlice(1), Property("color", ValueType.OPTIONS, ("red", "green", "yellow")))

    def get(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        if not prop.read:
            return None
        number = _as_int(raw)
        if prop.name == "heartrate":
            if number is None:
                return ConvertedValue(None, None)
            return ConvertedValue(number * 1000, number * 1000)
        if prop.name == "color":
            color = self._COLORS.get(number, "yellow")
            return ConvertedValue(color, number)
        return None


CONVERTERS = ConverterRegistry([BulpLoRaRobo666])
