"""
Transport bridges.

Each subpackage holds the converters, the transport adapter and the
bridge of one transport. ``create_bridge`` wires one of them to the MQTT
broker from configuration; the transport stack is imported only for the
bridge that is created.
"""

import importlib
import logging
from typing import Optional

from ..config import BRIDGES, Config
from ..core.bridge import Bridge, BridgeSettings
from ..core.bus import MessageBus, MqttBus
from ..core.converters import ConverterRegistry

logger = logging.getLogger(__name__)


def load_converters(name: str) -> ConverterRegistry:
    """Converter registry of one bridge."""
    if name not in BRIDGES:
        raise ValueError(f"Unknown bridge {name!r}, expected one of {', '.join(BRIDGES)}")
    return importlib.import_module(f".{name}.converters", __name__).CONVERTERS


def create_bus(name: str, config: Config) -> MqttBus:
    broker = config.broker
    return MqttBus(
        broker.host,
        broker.port,
        username=broker.username,
        password=broker.password,
        client_id=f"healthcore-{name}",
        reconnect_interval=broker.reconnect_interval_seconds,
        max_reconnect_attempts=broker.max_reconnect_attempts,
    )


def create_bridge(name: str, config: Config, bus: Optional[MessageBus] = None) -> Bridge:
    """Build the bridge called ``name`` with its adapter and bus."""
    if name not in BRIDGES:
        raise ValueError(f"Unknown bridge {name!r}, expected one of {', '.join(BRIDGES)}")

    bus = bus or create_bus(name, config)
    settings = BridgeSettings(
        connect_attempts=config.connect_attempts,
        connect_retry_delay=config.connect_retry_delay_seconds,
        shutdown_wait_seconds=config.shutdown_wait_seconds,
    )

    if name == "bluetooth":
        from .bluetooth import BluetoothAdapter, BluetoothBridge

        ble = config.bluetooth
        adapter = BluetoothAdapter(
            connect_timeout=ble.connect_timeout_seconds,
            watchdog_interval=ble.watchdog_interval_seconds,
            fingerprint_ids=ble.fingerprint_ids,
        )
        return BluetoothBridge(
            adapter,
            bus,
            settings,
            reconnect_scan_seconds=ble.reconnect_scan_seconds,
            reconnect_delay_seconds=ble.reconnect_delay_seconds,
            reconnect_max_attempts=ble.reconnect_max_attempts,
        )

    if name == "zigbee":
        from .zigbee import ZigbeeAdapter, ZigbeeBridge

        zigbee = config.zigbee
        database = zigbee.database_path
        if not database.startswith("/"):
            config.ensure_data_dir()
            database = str(config.data_dir / database)
        adapter = ZigbeeAdapter(
            radio=zigbee.radio,
            path=zigbee.path,
            baudrate=zigbee.baudrate,
            database_path=database,
            reporting_timeout=zigbee.reporting_timeout_seconds,
            probe_timeout=zigbee.probe_timeout_seconds,
        )
        return ZigbeeBridge(adapter, bus, settings)

    if name == "lora":
        from .lora import LoRaAdapter, LoRaBridge, ModemSettings

        lora = config.lora
        modem = ModemSettings(
            frequency=lora.frequency,
            spreading_factor=lora.spreading_factor,
            bandwidth=lora.bandwidth,
            power=lora.power,
            crc=lora.crc,
            rx_mode=lora.rx_mode,
        )
        adapter = LoRaAdapter(
            path=lora.path,
            baudrate=lora.baudrate,
            modem=modem,
            command_pause=lora.command_pause_seconds,
        )
        return LoRaBridge(adapter, bus, settings)

    from .http import HttpBridge, WebhookAdapter

    webhook = config.webhook
    adapter = WebhookAdapter(host=webhook.host, port=webhook.port, api_key=webhook.api_key)
    return HttpBridge(adapter, bus, settings)
