"""
Bluetooth Low Energy converters.

Characteristics are addressed by their UUID in compact form: the 16-bit
short form for SIG-assigned characteristics ("2a19") and the 32 hex digit
form without dashes for vendor characteristics. Every product also resolves
the standard GATT characteristics below, so a battery level or device
information string can be read from any device that exposes it.
"""

import logging
import struct
from enum import Enum
from typing import Any, Dict, Hashable, Optional, Tuple

from ...core.converters import Converter, ConverterRegistry
from ...core.errors import ConversionError, PropertyError
from ...core.models import ConvertedValue, PowerType, Property, ValueType

logger = logging.getLogger(__name__)

# Bluetooth base UUID 0000xxxx-0000-1000-8000-00805f9b34fb
BASE_UUID_PREFIX = "0000"
BASE_UUID_SUFFIX = "00001000800000805f9b34fb"


def normalize_uuid(uuid: Any) -> str:
    """Compact form of a characteristic UUID."""
    value = str(uuid).lower().replace("-", "").strip()
    if value.startswith("0x"):
        value = value[2:]
    if len(value) == 32 and value.startswith(BASE_UUID_PREFIX) and value.endswith(BASE_UUID_SUFFIX):
        return value[4:8]
    return value


class DataFormat(str, Enum):
    STRING = "String"
    UINT8 = "UInt8"
    UINT16 = "UInt16"
    UINT32 = "UInt32"
    SINT8 = "SInt8"
    SINT16 = "SInt16"
    SINT24 = "SInt24"
    BYTES = "Bytes"
    HEART_RATE = "HeartRate"


_STRUCT_FORMATS = {
    DataFormat.UINT8: "<B",
    DataFormat.UINT16: "<H",
    DataFormat.UINT32: "<I",
    DataFormat.SINT8: "<b",
    DataFormat.SINT16: "<h",
}


# ============================================================================
# Standard GATT characteristics
# ============================================================================

# uuid: (name, format, read, write, notify)
_STANDARD_TABLE: Dict[str, Tuple[str, DataFormat, bool, bool, bool]] = {
    # Generic Access
    "2a00": ("deviceName", DataFormat.STRING, True, False, False),
    "2a01": ("appearance", DataFormat.UINT16, True, False, False),
    "2a04": ("peripheralPreferredConnectionParameters", DataFormat.BYTES, True, False, False),
    "2aa6": ("centralAddressResolution", DataFormat.UINT8, True, False, False),
    # Device Information
    "2a29": ("manufacturerName", DataFormat.STRING, True, False, False),
    "2a24": ("modelNumber", DataFormat.STRING, True, False, False),
    "2a25": ("serialNumber", DataFormat.STRING, True, False, False),
    "2a27": ("hardwareRevision", DataFormat.STRING, True, False, False),
    "2a26": ("firmwareRevision", DataFormat.STRING, True, False, False),
    "2a28": ("softwareRevision", DataFormat.STRING, True, False, False),
    "2a23": ("systemId", DataFormat.BYTES, True, False, False),
    "2a50": ("pnpId", DataFormat.BYTES, True, False, False),
    # Battery
    "2a19": ("batteryLevel", DataFormat.UINT8, True, False, True),
    "2a1a": ("batteryPowerState", DataFormat.BYTES, True, False, True),
    "2a1b": ("batteryLevelState", DataFormat.UINT8, True, False, True),
    # Heart rate
    "2a37": ("heartRateMeasurement", DataFormat.HEART_RATE, True, False, True),
    "2a38": ("bodySensorLocation", DataFormat.UINT8, True, False, False),
    "2a39": ("heartRateControlPoint", DataFormat.UINT8, True, True, False),
    # Environmental sensing
    "2a6e": ("temperature", DataFormat.SINT16, True, False, True),
    "2a6f": ("humidity", DataFormat.UINT16, True, False, True),
    "2a6d": ("pressure", DataFormat.UINT32, True, False, True),
    "2a76": ("uvIndex", DataFormat.UINT8, True, False, True),
    "2a75": ("pollenConcentration", DataFormat.BYTES, True, False, True),
    "2a73": ("apparentWindDirection", DataFormat.UINT16, True, False, True),
    "2a72": ("apparentWindSpeed", DataFormat.UINT16, True, False, True),
    "2a7b": ("dewPoint", DataFormat.SINT8, True, False, True),
    "2a6c": ("elevation", DataFormat.SINT24, True, False, True),
    "2a74": ("gustFactor", DataFormat.UINT8, True, False, True),
    "2a7a": ("heatIndex", DataFormat.SINT8, True, False, True),
    "2a77": ("irradiance", DataFormat.UINT16, True, False, True),
    "2a78": ("rainfall", DataFormat.UINT16, True, False, True),
    # Health thermometer
    "2a1c": ("temperatureMeasurement", DataFormat.BYTES, False, False, True),
    "2a1d": ("temperatureType", DataFormat.UINT8, True, False, False),
    "2a1e": ("intermediateTemperature", DataFormat.BYTES, False, False, True),
    "2a21": ("measurementInterval", DataFormat.UINT16, True, True, True),
    # Blood pressure
    "2a35": ("bloodPressureMeasurement", DataFormat.BYTES, False, False, True),
    "2a49": ("bloodPressureFeature", DataFormat.UINT16, True, False, False),
    "2a36": ("intermediateCuffPressure", DataFormat.BYTES, False, False, True),
    # Glucose
    "2a18": ("glucoseMeasurement", DataFormat.BYTES, False, False, True),
    "2a34": ("glucoseMeasurementContext", DataFormat.BYTES, False, False, True),
    "2a51": ("glucoseFeature", DataFormat.UINT16, True, False, False),
    "2a52": ("recordAccessControlPoint", DataFormat.BYTES, False, True, True),
    # Pulse oximeter
    "2a5e": ("plxSpotCheckMeasurement", DataFormat.BYTES, False, False, True),
    "2a5f": ("plxContinuousMeasurement", DataFormat.BYTES, False, False, True),
    "2a60": ("plxFeatures", DataFormat.UINT16, True, False, False),
    # Weight scale and body composition
    "2a9d": ("weightMeasurement", DataFormat.BYTES, False, False, True),
    "2a9e": ("weightScaleFeature", DataFormat.UINT32, True, False, False),
    "2a9c": ("bodyCompositionMeasurement", DataFormat.BYTES, False, False, True),
    "2a9b": ("bodyCompositionFeature", DataFormat.UINT32, True, False, False),
}


def _standard_property(name: str, fmt: DataFormat, read: bool, write: bool, notify: bool) -> Property:
    if fmt == DataFormat.STRING:
        value_type, any_value = ValueType.STRING, ""
    elif fmt == DataFormat.BYTES:
        value_type, any_value = ValueType.STRING, ""
    elif fmt == DataFormat.HEART_RATE:
        value_type, any_value = ValueType.SUBPROPERTIES, {
            "heartRate": 0,
            "sensorContact": ["detected", "not_detected", "unsupported"],
        }
    else:
        value_type, any_value = ValueType.NUMERIC, 0
    return Property(name, value_type, any_value, read=read, write=write, notify=notify)


STANDARD_PROPERTIES: Dict[str, Property] = {
    uuid: _standard_property(*entry) for uuid, entry in _STANDARD_TABLE.items()
}
STANDARD_FORMATS: Dict[str, DataFormat] = {
    entry[0]: entry[1] for entry in _STANDARD_TABLE.values()
}
_STANDARD_BY_NAME: Dict[str, Tuple[str, Property]] = {
    prop.name: (uuid, prop) for uuid, prop in STANDARD_PROPERTIES.items()
}

_EMPTY = ConvertedValue(None, None)


def decode_standard(fmt: DataFormat, raw: Optional[bytes]) -> ConvertedValue:
    """Decode a standard characteristic value. Short buffers decode to an empty value."""
    if not raw:
        return _EMPTY
    data = bytes(raw)

    if fmt == DataFormat.STRING:
        return ConvertedValue(data.decode("utf-8", errors="replace").rstrip("\x00"), None)
    if fmt in _STRUCT_FORMATS:
        layout = _STRUCT_FORMATS[fmt]
        if len(data) < struct.calcsize(layout):
            return _EMPTY
        value = struct.unpack_from(layout, data)[0]
        return ConvertedValue(value, value)
    if fmt == DataFormat.SINT24:
        if len(data) < 3:
            return _EMPTY
        value = int.from_bytes(data[:3], "little", signed=True)
        return ConvertedValue(value, value)
    if fmt == DataFormat.HEART_RATE:
        return _decode_heart_rate(data)
    return ConvertedValue(data.hex(), None)


def encode_standard(fmt: DataFormat, value: Any) -> bytes:
    if fmt == DataFormat.STRING:
        return str(value).encode("utf-8")
    if fmt in _STRUCT_FORMATS:
        try:
            return struct.pack(_STRUCT_FORMATS[fmt], int(value))
        except (struct.error, TypeError, ValueError) as e:
            raise ConversionError(fmt.value, f"cannot encode {value!r}: {e}")
    if fmt == DataFormat.SINT24:
        try:
            return int(value).to_bytes(3, "little", signed=True)
        except (OverflowError, TypeError, ValueError) as e:
            raise ConversionError(fmt.value, f"cannot encode {value!r}: {e}")
    if fmt == DataFormat.BYTES:
        try:
            return bytes.fromhex(str(value))
        except ValueError as e:
            raise ConversionError(fmt.value, f"cannot encode {value!r}: {e}")
    raise ConversionError(fmt.value, "format cannot be written")


def _decode_heart_rate(data: bytes) -> ConvertedValue:
    # Heart Rate Measurement: flags byte, then UINT8 or UINT16 bpm
    flags = data[0]
    if flags & 0x01:
        if len(data) < 3:
            return _EMPTY
        heart_rate = struct.unpack_from("<H", data, 1)[0]
    else:
        if len(data) < 2:
            return _EMPTY
        heart_rate = data[1]

    if not flags & 0x04:
        contact = "unsupported"
    elif flags & 0x02:
        contact = "detected"
    else:
        contact = "not_detected"

    return ConvertedValue({"heartRate": heart_rate, "sensorContact": contact}, heart_rate)


# ============================================================================
# Converters
# ============================================================================

class BluetoothConverter(Converter):
    """Base for BLE products. Falls back to the standard GATT table."""

    def normalize_address(self, address: Hashable) -> Hashable:
        return normalize_uuid(address)

    def get_by_address(self, address: Hashable) -> Optional[Property]:
        prop = super().get_by_address(address)
        if prop is None:
            prop = STANDARD_PROPERTIES.get(normalize_uuid(address))
        return prop

    def get_by_name(self, name: str) -> Optional[Property]:
        prop = super().get_by_name(name)
        if prop is None and name in _STANDARD_BY_NAME:
            prop = _STANDARD_BY_NAME[name][1]
        return prop

    def address_of(self, name: str) -> Optional[Hashable]:
        address = super().address_of(name)
        if address is None and name in _STANDARD_BY_NAME:
            address = _STANDARD_BY_NAME[name][0]
        return address

    def is_standard(self, prop: Property) -> bool:
        return super().get_by_name(prop.name) is None and prop.name in STANDARD_FORMATS

    def get(self, prop: Property, raw: Any) -> Optional[ConvertedValue]:
        if not prop.read and not prop.notify:
            return None
        if self.is_standard(prop):
            return decode_standard(STANDARD_FORMATS[prop.name], raw)
        return self.get_custom(prop, bytes(raw) if raw else b"")

    def get_custom(self, prop: Property, data: bytes) -> Optional[ConvertedValue]:
        return None

    def set(self, prop: Property, value: Any) -> Any:
        if self.is_standard(prop):
            if not prop.write:
                raise PropertyError(prop.name, "property is not writable")
            return encode_standard(STANDARD_FORMATS[prop.name], value)
        self.check_writable(prop, value)
        return self.set_custom(prop, value)

    def set_custom(self, prop: Property, value: Any) -> bytes:
        raise PropertyError(prop.name, "property is not writable")


def _on_off(data: bytes) -> ConvertedValue:
    return ConvertedValue("on", 1) if data[0] == 1 else ConvertedValue("off", 0)


class BulpSensorBLE(BluetoothConverter):
    product_name = "bulp - Sensor BLE"
    vendor_name = "bulp"
    power_type = PowerType.MAINS

    def declare(self) -> None:
        self.add("19b10000e8f2537e4f6cd104768a1217",
                 Property("rotary_switch", ValueType.INTEGER, 0, notify=True))
        self.add("19b10000e8f2537e4f6cd104768a1219",
                 Property("button", ValueType.OPTIONS, ("pressed", "not_pressed"), notify=True))
        self.add("19b10000e8f2537e4f6cd104768a1218",
                 Property("speaker", ValueType.OPTIONS, ("on", "off"), write=True))
        self.add("19b10000e8f2537e4f6cd104768a1216",
                 Property("led", ValueType.OPTIONS, ("on", "off"), write=True))

    def get_custom(self, prop: Property, data: bytes) -> Optional[ConvertedValue]:
        if not data:
            return _EMPTY
        if prop.name == "rotary_switch":
            return ConvertedValue(data[0], data[0])
        if prop.name == "button":
            return ConvertedValue("pressed", 1) if data[0] == 1 else ConvertedValue("not_pressed", 0)
        if prop.name in ("speaker", "led"):
            return _on_off(data)
        return None

    def set_custom(self, prop: Property, value: Any) -> bytes:
        return bytes([1 if value == "on" else 0])


class BangleJS2(BluetoothConverter):
    product_name = "Bangle.js 5f2c"
    vendor_name = "Espruino"
    power_type = PowerType.BATTERY

    def declare(self) -> None:
        self.add("6e400002b5a3f393e0a9e50e24dcca9e",
                 Property("pulse", ValueType.INTEGER, 0, notify=True))

    def get_custom(self, prop: Property, data: bytes) -> Optional[ConvertedValue]:
        if prop.name != "pulse":
            return None
        if not data:
            return _EMPTY
        return ConvertedValue(data[0], data[0])


CONVERTERS = ConverterRegistry([BulpSensorBLE, BangleJS2])
