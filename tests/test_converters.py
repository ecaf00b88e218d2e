"""
Tests for product converters and the converter registry.
"""

import pytest

from healthcore.core.converters import ConverterRegistry, UnsupportedConverter
from healthcore.core.errors import ConversionError, PropertyError
from healthcore.core.models import PowerType
from healthcore.bridges.bluetooth.converters import (
    CONVERTERS as BLE_CONVERTERS,
    STANDARD_PROPERTIES,
    DataFormat,
    decode_standard,
    encode_standard,
    normalize_uuid,
)
from healthcore.bridges.http.converters import CONVERTERS as WEBHOOK_CONVERTERS
from healthcore.bridges.lora.converters import CONVERTERS as LORA_CONVERTERS, FieldSlice
from healthcore.bridges.zigbee.converters import (
    COMMANDS,
    CONVERTERS as ZIGBEE_CONVERTERS,
    ZigbeeAddress,
)

from conftest import REGISTRY, Thermostat

REGISTRIES = {
    "bluetooth": BLE_CONVERTERS,
    "zigbee": ZIGBEE_CONVERTERS,
    "lora": LORA_CONVERTERS,
    "http": WEBHOOK_CONVERTERS,
}

ON_OFF = ["on", "off"]
LEVELS = [0, 1, 127, 254]

# Every property that can be both written and read, with its legal domain
WRITABLE_DOMAINS = {
    ("bluetooth", "bulp - Sensor BLE", "speaker"): ON_OFF,
    ("bluetooth", "bulp - Sensor BLE", "led"): ON_OFF,
    ("bluetooth", "*", "measurementInterval"): [0, 1, 600, 65535],
    ("bluetooth", "*", "heartRateControlPoint"): [0, 1, 255],
    ("zigbee", "TRADFRI bulb E27 WW 806lm", "state"): ON_OFF,
    ("zigbee", "TRADFRI bulb E27 WW 806lm", "brightness"): LEVELS,
    ("zigbee", "RGBWW", "state"): ON_OFF,
    ("zigbee", "RGBWW", "brightness"): LEVELS,
    ("zigbee", "RGBWW", "hue"): LEVELS,
    ("zigbee", "RGBWW", "saturation"): LEVELS,
    ("zigbee", "S26R2ZB", "power"): ON_OFF,
}

OUT_OF_DOMAIN = [
    ("bluetooth", "bulp - Sensor BLE", "led", "blink"),
    ("bluetooth", "bulp - Sensor BLE", "measurementInterval", 65536),
    ("bluetooth", "bulp - Sensor BLE", "measurementInterval", -1),
    ("bluetooth", "Bangle.js 5f2c", "heartRateControlPoint", 256),
    ("zigbee", "RGBWW", "hue", 255),
    ("zigbee", "RGBWW", "saturation", -1),
    ("zigbee", "TRADFRI bulb E27 WW 806lm", "brightness", "bright"),
    ("zigbee", "S26R2ZB", "power", "toggle"),
]


def round_trip_cases():
    for (bridge, product, name), values in WRITABLE_DOMAINS.items():
        products = REGISTRIES[bridge].product_names if product == "*" else [product]
        for product_name in products:
            for value in values:
                yield pytest.param(bridge, product_name, name, value, id=f"{product_name}-{name}-{value}")


def readable_writable(bridge, converter):
    props = list(converter.properties)
    if bridge == "bluetooth":
        props += list(STANDARD_PROPERTIES.values())
    return {p.name for p in props if p.read and p.write}


class TestConverterRegistry:
    """Tests for product lookup."""

    def test_lookup_known_product(self):
        converter = REGISTRY.lookup("Test Thermostat")
        assert isinstance(converter, Thermostat)
        assert converter.supported
        assert REGISTRY.is_supported("Test Thermostat")

    def test_lookup_returns_fresh_instances(self):
        assert REGISTRY.lookup("Test Thermostat") is not REGISTRY.lookup("Test Thermostat")

    @pytest.mark.parametrize("name", ["Toaster 3000", "", None])
    def test_lookup_unknown_product(self, name):
        """Unknown, empty and missing names all resolve to the sentinel."""
        converter = REGISTRY.lookup(name)
        assert isinstance(converter, UnsupportedConverter)
        assert converter.power_type == PowerType.UNSUPPORTED
        assert converter.properties == []
        assert not REGISTRY.is_supported(name)

    def test_duplicate_product_rejected(self):
        with pytest.raises(ValueError):
            ConverterRegistry([Thermostat, Thermostat])

    def test_product_names(self):
        assert REGISTRY.product_names == ["Test Thermostat", "Test Window Sensor"]
        assert "Test Thermostat" in REGISTRY
        assert len(REGISTRY) == 2

    def test_unknown_address_resolves_to_none(self):
        converter = REGISTRY.lookup("Test Thermostat")
        assert converter.get_by_address("nope") is None
        assert converter.get_by_address("temp").name == "temperature"

    def test_write_checks(self):
        converter = REGISTRY.lookup("Test Thermostat")
        with pytest.raises(PropertyError):
            converter.set(converter.get_by_name("temperature"), 20)
        with pytest.raises(ConversionError):
            converter.set(converter.get_by_name("mode"), "cool")

    def test_validate(self):
        converter = REGISTRY.lookup("Test Thermostat")
        assert converter.validate("temperature", 21) is None
        assert converter.validate("humidity", 1) == 'Unknown property: "humidity"'
        assert "numeric" in converter.validate("temperature", "warm")
        assert "numeric" in converter.validate("temperature", True)


class TestBluetoothConverters:
    """Tests for GATT converters."""

    def test_normalize_uuid(self):
        assert normalize_uuid("00002A19-0000-1000-8000-00805F9B34FB") == "2a19"
        assert normalize_uuid("0x2A19") == "2a19"
        assert normalize_uuid("19B10000-E8F2-537E-4F6C-D104768A1217") == "19b10000e8f2537e4f6cd104768a1217"

    def test_standard_fallback(self):
        converter = BLE_CONVERTERS.lookup("Bangle.js 5f2c")
        prop = converter.get_by_address("00002a19-0000-1000-8000-00805f9b34fb")
        assert prop.name == "batteryLevel"
        assert converter.address_of("batteryLevel") == "2a19"
        assert converter.get(prop, b"\x55").value == 85

    def test_heart_rate(self):
        # 16 bit value, contact supported and detected
        value = decode_standard(DataFormat.HEART_RATE, bytes([0x07, 0x48, 0x00]))
        assert value.value == {"heartRate": 72, "sensorContact": "detected"}
        assert value.value_as_numeric == 72

        value = decode_standard(DataFormat.HEART_RATE, bytes([0x00, 60]))
        assert value.value == {"heartRate": 60, "sensorContact": "unsupported"}

    def test_short_buffers_decode_empty(self):
        assert decode_standard(DataFormat.UINT16, b"\x01").value is None
        assert decode_standard(DataFormat.HEART_RATE, b"\x01\x02").value is None
        assert decode_standard(DataFormat.UINT8, b"").value is None

    def test_standard_encoding(self):
        assert encode_standard(DataFormat.UINT16, 600) == b"\x58\x02"
        with pytest.raises(ConversionError):
            encode_standard(DataFormat.UINT8, 300)

    def test_sensor_ble(self):
        converter = BLE_CONVERTERS.lookup("bulp - Sensor BLE")
        assert converter.power_type == PowerType.MAINS

        led = converter.get_by_name("led")
        raw = converter.set(led, "on")
        assert raw == b"\x01"
        assert converter.get(led, raw).value == "on"

        button = converter.get_by_name("button")
        assert converter.get(button, b"\x01").value == "pressed"
        with pytest.raises(PropertyError):
            converter.set(button, "pressed")

    def test_read_only_standard_not_writable(self):
        converter = BLE_CONVERTERS.lookup("bulp - Sensor BLE")
        with pytest.raises(PropertyError):
            converter.set(converter.get_by_name("batteryLevel"), 50)


class TestZigbeeConverters:
    """Tests for Zigbee cluster converters."""

    def test_basic_cluster_on_every_product(self):
        converter = ZIGBEE_CONVERTERS.lookup("S26R2ZB")
        names = [p.name for p in converter.properties]
        assert {"zclVersion", "manufacturerName", "productName", "power"} <= set(names)
        assert converter.required_addresses() == [ZigbeeAddress("on_off", "on_off")]

    def test_light_brightness(self):
        converter = ZIGBEE_CONVERTERS.lookup("TRADFRI bulb E27 WW 806lm")
        brightness = converter.get_by_name("brightness")
        raw = converter.set(brightness, 128)
        assert converter.get(brightness, raw).value == 128
        assert converter.command_for(brightness, raw) == ("move_to_level", {"level": 128, "transition_time": 0})
        with pytest.raises(ConversionError):
            converter.set(brightness, 300)

    def test_light_state(self):
        converter = ZIGBEE_CONVERTERS.lookup("RGBWW")
        state = converter.get_by_name("state")
        assert converter.command_for(state, converter.set(state, "on")) == ("on", {})
        assert converter.get(state, False).value == "off"

    def test_button_commands(self):
        converter = ZIGBEE_CONVERTERS.lookup("SNZB-01P")
        button = converter.get_by_address(ZigbeeAddress("on_off", COMMANDS))
        assert converter.get(button, {"command": "toggle", "args": []}).value == "pressed"
        assert converter.get(button, {"command": "off", "args": []}).value == "long_pressed"
        assert converter.get(button, {"command": "on", "args": []}).value == "double_pressed"

    def test_ias_zone_motion(self):
        converter = ZIGBEE_CONVERTERS.lookup("MS01")
        motion = converter.get_by_name("motion")
        assert converter.get(motion, {"command": "status_change_notification", "args": [1, 0]}).value == "yes"
        assert converter.get(motion, {"command": "status_change_notification", "args": [0, 0]}).value == "no"

    def test_vallhorn(self):
        converter = ZIGBEE_CONVERTERS.lookup("VALLHORN Wireless Motion Sensor")
        assert converter.manufacturer_code == 0x117C
        assert converter.get(converter.get_by_name("illuminance"), 10001).value == "10 lux"
        assert converter.get(converter.get_by_name("battery"), 200).value == "100%"
        assert converter.get(converter.get_by_name("voltage"), 30).value == "3.0V"
        assert converter.get(converter.get_by_name("motion"), 1).value == "yes"


class TestLoRaConverters:
    """Tests for positional LoRa payloads."""

    def test_robo(self):
        converter = LORA_CONVERTERS.lookup("Bulp LoRa-Robo 666")
        heartrate = converter.get_by_address(FieldSlice(0))
        color = converter.get_by_address(1)

        assert converter.get(heartrate, "7").to_dict() == {"value": 7000, "valueAsNumeric": 7000}
        assert converter.get(color, "1").value == "red"
        assert converter.get(color, "2").value == "green"
        assert converter.get(color, "9").value == "yellow"
        assert converter.get(heartrate, "x").value is None

    def test_field_slice(self):
        assert FieldSlice(2, 3).take("abcdefg") == "cde"
        assert FieldSlice(10).take("abc") == ""


class TestWebhookConverters:
    """Tests for webhook JSON values."""

    def test_robo(self):
        converter = WEBHOOK_CONVERTERS.lookup("Bulp Web-Robo 321")
        voltage = converter.get_by_address("voltage")
        switch = converter.get_by_address("switch")

        assert converter.get(voltage, 3).to_dict() == {"value": 300, "valueAsNumeric": 300}
        assert converter.get(switch, 1).value == "tapped"
        assert converter.get(switch, 2).value == "long_tapped"
        assert converter.get(switch, 0).value == "not_tapped"


class TestRoundTrip:
    """Writing a value and reading the written raw value back yields the value."""

    @pytest.mark.parametrize("bridge, product, name, value", list(round_trip_cases()))
    def test_set_then_get(self, bridge, product, name, value):
        converter = REGISTRIES[bridge].lookup(product)
        prop = converter.get_by_name(name)
        raw = converter.set(prop, value)
        assert converter.get(prop, raw).value == value

    @pytest.mark.parametrize("bridge", sorted(REGISTRIES))
    def test_every_writable_property_covered(self, bridge):
        registry = REGISTRIES[bridge]
        for product in registry.product_names:
            covered = {n for (b, p, n) in WRITABLE_DOMAINS if b == bridge and p in (product, "*")}
            assert readable_writable(bridge, registry.lookup(product)) <= covered, product

    @pytest.mark.parametrize("bridge, product, name, value", OUT_OF_DOMAIN)
    def test_out_of_domain_rejected(self, bridge, product, name, value):
        converter = REGISTRIES[bridge].lookup(product)
        with pytest.raises(ConversionError):
            converter.set(converter.get_by_name(name), value)
