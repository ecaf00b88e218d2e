"""
Zigbee converters.

Attributes are addressed by zigpy cluster name (``Cluster.ep_attribute``)
and attribute name, e.g. ``ZigbeeAddress("level", "current_level")``.
Client-side commands sent by remotes and sensors are addressed with the
pseudo attribute ``COMMANDS`` and arrive as ``{"command": name, "args": [...]}``.

Writes are expressed as attribute values so that ``get(set(v)) == v``; the
adapter turns them into cluster commands with ``command_for``.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, NamedTuple, Optional, Tuple

from ...core.converters import Converter, ConverterRegistry
from ...core.errors import ConversionError
from ...core.models import ConvertedValue, PowerType, Property, ValueType

logger = logging.getLogger(__name__)

COMMANDS = "__commands__"
BASIC_CLUSTER = "basic"

LEVEL_MIN = 0
LEVEL_MAX = 254


class ZigbeeAddress(NamedTuple):
    cluster: str
    attribute: str


@dataclass(frozen=True)
class ReportingConfig:
    """Attribute reporting requested from the device after it is connected."""
    cluster: str
    attribute: str
    min_interval: int
    max_interval: int
    reportable_change: int


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


def _on_off(raw: Any) -> ConvertedValue:
    if raw in (1, True, "on"):
        return ConvertedValue("on", 1)
    return ConvertedValue("off", 0)


def _command_name(raw: Any) -> Optional[str]:
    if isinstance(raw, dict):
        return raw.get("command")
    if isinstance(raw, str):
        return raw
    return None


class ZigbeeConverter(Converter):
    """Base for Zigbee products; every product exposes the basic cluster."""

    manufacturer_code: Optional[int] = None
    reporting: Tuple[ReportingConfig, ...] = ()

    def __init__(self):
        super().__init__()
        self.add(ZigbeeAddress(BASIC_CLUSTER, "zcl_version"),
                 Property("zclVersion", ValueType.INTEGER, 0))
        self.add(ZigbeeAddress(BASIC_CLUSTER, "manufacturer"),
                 Property("manufacturerName", ValueType.STRING, ""))
        self.add(ZigbeeAddress(BASIC_CLUSTER, "model"),
                 Property("productName", ValueType.STRING, ""))

    def normalize_address(self, address: Hashable) -> Hashable:
        if isinstance(address, ZigbeeAddress):
            return address
        cluster, attribute = address  # type: ignore[misc]
        return ZigbeeAddress(cluster, attribute)

    def required_addresses(self) -> List[Hashable]:
        return [a for a, _ in self.addresses() if a.cluster != BASIC_CLUSTER]

    def properties_of_cluster(self, cluster: str) -> Dict[str, Property]:
        return {a.attribute: p for a, p in self.addresses() if a.cluster == cluster}

    def get(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        if not prop.read:
            return None
        address = self.address_of(prop.name)
        if address is not None and address.cluster == BASIC_CLUSTER:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            numeric = raw if isinstance(raw, (int, float)) and not isinstance(raw, bool) else None
            return ConvertedValue(raw, numeric)
        return self.get_custom(prop, raw)

    def get_custom(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        return None

    def command_for(self, prop: Property, raw: Any) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Cluster command that writes ``raw``; None means a plain attribute write."""
        return None


class _LightConverter(ZigbeeConverter):
    """Shared on/off and level handling for lights."""

    power_type = PowerType.MAINS

    def get_custom(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        if prop.name == "state":
            return _on_off(raw)
        if prop.name in ("brightness", "hue", "saturation"):
            if raw is None:
                return ConvertedValue(None, None)
            return ConvertedValue(raw, raw)
        return None

    def set(self, prop: Property, value: Any) -> Any:
        self.check_writable(prop, value)
        if prop.name == "state":
            return 1 if value == "on" else 0
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConversionError(prop.name, f"expects a number, got {value!r}")
        level = int(value)
        if not LEVEL_MIN <= level <= LEVEL_MAX:
            raise ConversionError(prop.name, f"{level} is outside {LEVEL_MIN}..{LEVEL_MAX}")
        return level

    def command_for(self, prop: Property, raw: Any) -> Optional[Tuple[str, Dict[str, Any]]]:
        if prop.name == "state":
            return ("on" if raw == 1 else "off", {})
        if prop.name == "brightness":
            return ("move_to_level", {"level": raw, "transition_time": 0})
        if prop.name == "hue":
            return ("move_to_hue", {"hue": raw, "direction": 0, "transition_time": 0})
        if prop.name == "saturation":
            return ("move_to_saturation", {"saturation": raw, "transition_time": 0})
        return None


class IkeaTradfriBulbE27(_LightConverter):
    product_name = "TRADFRI bulb E27 WW 806lm"
    vendor_name = "IKEA of Sweden"

    def declare(self) -> None:
        self.add(ZigbeeAddress("on_off", "on_off"),
                 Property("state", ValueType.OPTIONS, ("on", "off"), write=True, notify=True))
        self.add(ZigbeeAddress("level", "current_level"),
                 Property("brightness", ValueType.INTEGER, 0, write=True, notify=True))


class PaulmannRGBWW(_LightConverter):
    product_name = "RGBWW"
    vendor_name = "Paulmann Licht GmbH"

    def declare(self) -> None:
        self.add(ZigbeeAddress("on_off", "on_off"),
                 Property("state", ValueType.OPTIONS, ("on", "off"), write=True, notify=True))
        self.add(ZigbeeAddress("level", "current_level"),
                 Property("brightness", ValueType.INTEGER, 0, write=True, notify=True))
        self.add(ZigbeeAddress("light_color", "current_hue"),
                 Property("hue", ValueType.INTEGER, 0, write=True, notify=True))
        self.add(ZigbeeAddress("light_color", "current_saturation"),
                 Property("saturation", ValueType.INTEGER, 0, write=True, notify=True))


class SonoffS26R2ZB(ZigbeeConverter):
    product_name = "S26R2ZB"
    vendor_name = "SONOFF"
    power_type = PowerType.MAINS

    def declare(self) -> None:
        self.add(ZigbeeAddress("on_off", "on_off"),
                 Property("power", ValueType.OPTIONS, ("on", "off"), write=True, notify=True))

    def get_custom(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        if prop.name == "power":
            return _on_off(raw)
        return None

    def set(self, prop: Property, value: Any) -> Any:
        self.check_writable(prop, value)
        return 1 if value == "on" else 0

    def command_for(self, prop: Property, raw: Any) -> Optional[Tuple[str, Dict[str, Any]]]:
        return ("on" if raw == 1 else "off", {})


class SonoffSNZB01P(ZigbeeConverter):
    """Wireless button; presses arrive as on/off cluster commands."""

    product_name = "SNZB-01P"
    vendor_name = "SONOFF"
    power_type = PowerType.BATTERY

    _PRESSES = {
        "toggle": ConvertedValue("pressed", 1),
        "off": ConvertedValue("long_pressed", 2),
        "on": ConvertedValue("double_pressed", 3),
    }

    def declare(self) -> None:
        self.add(ZigbeeAddress("on_off", COMMANDS),
                 Property("button", ValueType.OPTIONS,
                          ("pressed", "not_pressed", "long_pressed", "double_pressed"), notify=True))

    def get_custom(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        if prop.name != "button":
            return None
        return self._PRESSES.get(_command_name(raw), ConvertedValue("not_pressed", 0))


class EwelinkMS01(ZigbeeConverter):
    """Motion sensor reporting through IAS zone status change notifications."""

    product_name = "MS01"
    vendor_name = "eWeLink"
    power_type = PowerType.BATTERY

    def declare(self) -> None:
        self.add(ZigbeeAddress("ias_zone", COMMANDS),
                 Property("motion", ValueType.OPTIONS, ("yes", "no"), notify=True))

    def get_custom(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        if prop.name != "motion":
            return None
        zone_status = raw
        if isinstance(raw, dict):
            if raw.get("command") != "status_change_notification" or not raw.get("args"):
                return ConvertedValue("no", 0)
            zone_status = raw["args"][0]
        try:
            alarm = int(zone_status) & 1
        except (TypeError, ValueError):
            return ConvertedValue("no", 0)
        return ConvertedValue("yes", 1) if alarm else ConvertedValue("no", 0)


class IkeaVallhorn(ZigbeeConverter):
    product_name = "VALLHORN Wireless Motion Sensor"
    vendor_name = "IKEA of Sweden"
    power_type = PowerType.BATTERY
    manufacturer_code = 0x117C
    reporting = (
        ReportingConfig("occupancy", "occupancy", 0, 3600, 0),
        ReportingConfig("illuminance", "measured_value", 10, 3600, 5),
        ReportingConfig("power", "battery_percentage_remaining", 3600, 65000, 1),
        ReportingConfig("power", "battery_voltage", 3600, 65000, 1),
    )

    def declare(self) -> None:
        self.add(ZigbeeAddress("occupancy", "occupancy"),
                 Property("motion", ValueType.OPTIONS, ("yes", "no"), notify=True))
        self.add(ZigbeeAddress("illuminance", "measured_value"),
                 Property("illuminance", ValueType.NUMERIC, 0, notify=True))
        self.add(ZigbeeAddress("power", "battery_percentage_remaining"),
                 Property("battery", ValueType.NUMERIC, 0, notify=True))
        self.add(ZigbeeAddress("power", "battery_voltage"),
                 Property("voltage", ValueType.NUMERIC, 0, notify=True))

    def get_custom(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        if prop.name == "illuminance":
            lux = 0 if raw is None else _round(10 ** ((raw - 1) / 10000))
            return ConvertedValue(f"{lux} lux", lux)
        if raw is None:
            return None
        if prop.name == "motion":
            if isinstance(raw, bool) or not isinstance(raw, int):
                return None
            return ConvertedValue("yes", 1) if raw & 1 else ConvertedValue("no", 0)
        if prop.name == "battery":
            percent = _round(raw / 2)
            return ConvertedValue(f"{percent}%", percent)
        if prop.name == "voltage":
            volts = raw / 10
            return ConvertedValue(f"{volts:.1f}V", volts)
        return None


CONVERTERS = ConverterRegistry([
    IkeaTradfriBulbE27,
    PaulmannRGBWW,
    SonoffS26R2ZB,
    SonoffSNZB01P,
    EwelinkMS01,
    IkeaVallhorn,
])
