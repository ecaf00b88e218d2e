"""
Webhook converters.

Devices push JSON objects of ``{property: value}``; the wire address of a
property is its key in that object.
"""

import logging
from typing import Any, Optional

from ...core.converters import Converter, ConverterRegistry
from ...core.models import ConvertedValue, Property, ValueType

logger = logging.getLogger(__name__)


class WebhookConverter(Converter):
    """Base for webhook products; properties are addressed by their JSON key."""


class BulpWebRobo321(WebhookConverter):
    product_name = "Bulp Web-Robo 321"
    vendor_name = "bulp"

    _SWITCH = {1: "tapped", 2: "long_tapped"}

    def declare(self) -> None:
        self.add("voltage", Property("voltage", ValueType.INTEGER, 0))
        self.add("switch", Property("switch", ValueType.OPTIONS, ("tapped", "not_tapped", "long_tapped")))

    def get(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        if not prop.read:
            return None
        if prop.name == "voltage":
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                return ConvertedValue(None, None)
            return ConvertedValue(raw * 100, raw * 100)
        if prop.name == "switch":
            state = self._SWITCH.get(raw, "not_tapped")
            return ConvertedValue(state, raw if isinstance(raw, (int, float)) else None)
        return None


CONVERTERS = ConverterRegistry([BulpWebRobo321])
