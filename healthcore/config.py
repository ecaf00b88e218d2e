"""
Configuration management for HealthCore bridges.

Handles:
- Message broker connection
- Per-transport adapter settings
- Bridge timing (retries, reconnect scans, shutdown)

Values come from ``config.json`` in the data directory when present and
are then overridden by ``HEALTHCORE_*`` environment variables.
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import logging

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".healthcore"

DEFAULT_BROKER_PORT = 1883
DEFAULT_WEBHOOK_PORT = 8104

BRIDGES = ("bluetooth", "zigbee", "lora", "http")


class _Section:
    """to_dict/from_dict for flat config dataclasses."""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict):
        # Filter to only known fields to handle config evolution
        known_fields = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in known_fields}
        return cls(**filtered)


@dataclass
class BrokerConfig(_Section):
    """MQTT broker connection."""
    host: str = "localhost"
    port: int = DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    reconnect_interval_seconds: float = 5.0
    max_reconnect_attempts: int = 5


@dataclass
class BluetoothConfig(_Section):
    connect_timeout_seconds: float = 20.0
    watchdog_interval_seconds: float = 30.0
    reconnect_scan_seconds: float = 30.0
    reconnect_delay_seconds: float = 10.0
    reconnect_max_attempts: int = 5
    fingerprint_ids: Optional[bool] = None  # None = only on macOS


@dataclass
class ZigbeeConfig(_Section):
    radio: str = "znp"  # znp (zigpy-znp) or ezsp (bellows)
    path: str = "/dev/ttyUSB0"
    baudrate: int = 115200
    database_path: str = "zigbee.db"
    reporting_timeout_seconds: float = 10.0
    probe_timeout_seconds: float = 5.0


@dataclass
class LoRaConfig(_Section):
    path: str = "/dev/ttyUSB1"
    baudrate: int = 115200
    frequency: int = 868500000
    spreading_factor: int = 7
    bandwidth: int = 0
    power: int = 22
    crc: int = 1
    rx_mode: int = 0
    command_pause_seconds: float = 0.3


@dataclass
class WebhookConfig(_Section):
    host: str = "0.0.0.0"
    port: int = DEFAULT_WEBHOOK_PORT
    api_key: Optional[str] = None


# env var -> (section, key, type)
ENV_OVERRIDES: Dict[str, tuple] = {
    "HEALTHCORE_BROKER_HOST": ("broker", "host", str),
    "HEALTHCORE_BROKER_PORT": ("broker", "port", int),
    "HEALTHCORE_BROKER_USERNAME": ("broker", "username", str),
    "HEALTHCORE_BROKER_PASSWORD": ("broker", "password", str),
    "HEALTHCORE_SERIAL_PATH": ("lora", "path", str),
    "HEALTHCORE_SERIAL_BAUDRATE": ("lora", "baudrate", int),
    "HEALTHCORE_ZIGBEE_RADIO": ("zigbee", "radio", str),
    "HEALTHCORE_ZIGBEE_PATH": ("zigbee", "path", str),
    "HEALTHCORE_ZIGBEE_DATABASE": ("zigbee", "database_path", str),
    "HEALTHCORE_WEBHOOK_HOST": ("webhook", "host", str),
    "HEALTHCORE_WEBHOOK_PORT": ("webhook", "port", int),
    "HEALTHCORE_WEBHOOK_API_KEY": ("webhook", "api_key", str),
}


@dataclass
class Config:
    """
    Main HealthCore bridge configuration.

    Stored at ~/.healthcore/config.json
    """
    # Paths
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    # Components
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    bluetooth: BluetoothConfig = field(default_factory=BluetoothConfig)
    zigbee: ZigbeeConfig = field(default_factory=ZigbeeConfig)
    lora: LoRaConfig = field(default_factory=LoRaConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)

    # Bridge behaviour
    connect_attempts: int = 3
    connect_retry_delay_seconds: float = 1.0
    shutdown_wait_seconds: float = 5.0

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    def ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict:
        return {
            "broker": self.broker.to_dict(),
            "bluetooth": self.bluetooth.to_dict(),
            "zigbee": self.zigbee.to_dict(),
            "lora": self.lora.to_dict(),
            "webhook": self.webhook.to_dict(),
            "connect_attempts": self.connect_attempts,
            "connect_retry_delay_seconds": self.connect_retry_delay_seconds,
            "shutdown_wait_seconds": self.shutdown_wait_seconds,
        }

    def save(self) -> None:
        """Save configuration to disk."""
        self.ensure_data_dir()

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.debug(f"Configuration saved to {self.config_path}")

    @classmethod
    def from_dict(cls, data: dict, data_dir: Optional[Path] = None) -> "Config":
        config = cls(
            data_dir=data_dir or DEFAULT_DATA_DIR,
            connect_attempts=data.get("connect_attempts", 3),
            connect_retry_delay_seconds=data.get("connect_retry_delay_seconds", 1.0),
            shutdown_wait_seconds=data.get("shutdown_wait_seconds", 5.0),
        )
        if "broker" in data:
            config.broker = BrokerConfig.from_dict(data["broker"])
        if "bluetooth" in data:
            config.bluetooth = BluetoothConfig.from_dict(data["bluetooth"])
        if "zigbee" in data:
            config.zigbee = ZigbeeConfig.from_dict(data["zigbee"])
        if "lora" in data:
            config.lora = LoRaConfig.from_dict(data["lora"])
        if "webhook" in data:
            config.webhook = WebhookConfig.from_dict(data["webhook"])
        return config

    @classmethod
    def load(cls, data_dir: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Load configuration from disk, then apply environment overrides."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        config_path = data_dir / "config.json"

        if config_path.exists():
            with open(config_path, 'r') as f:
                config = cls.from_dict(json.load(f), data_dir=data_dir)
        else:
            config = cls(data_dir=data_dir)

        config.apply_env(os.environ if environ is None else environ)
        return config

    def apply_env(self, environ: Mapping[str, str]) -> None:
        """Override settings from HEALTHCORE_* variables."""
        for name, (section, key, cast) in ENV_OVERRIDES.items():
            raw = environ.get(name)
            if raw is None or raw == "":
                continue
            try:
                value: Any = cast(raw)
            except ValueError:
                logger.warning(f"Ignoring {name}={raw!r}: expected {cast.__name__}")
                continue
            setattr(getattr(self, section), key, value)
            logger.debug(f"{section}.{key} set from {name}")


# Global config instance
_config: Optional[Config] = None


def get_config(data_dir: Optional[Path] = None) -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load(data_dir)
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
