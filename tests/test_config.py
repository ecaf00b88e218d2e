"""
Tests for configuration, the bridge factory and the CLI.
"""

import json
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from healthcore.bridges import create_bridge, load_converters
from healthcore.bridges.bluetooth import BluetoothBridge
from healthcore.bridges.http import HttpBridge
from healthcore.bridges.lora import LoRaBridge
from healthcore.bridges.zigbee import ZigbeeBridge
from healthcore.cli import main
from healthcore.config import Config, get_config, reset_config, set_config

from conftest import FakeBus


class TestConfig:
    """Tests for loading and saving configuration."""

    def test_defaults(self):
        config = Config()
        assert config.broker.port == 1883
        assert config.webhook.port == 8104
        assert config.zigbee.radio == "znp"
        assert config.connect_attempts == 3

    def test_save_and_load(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            data_dir = Path(tmpdir)
            config = Config(data_dir=data_dir)
            config.broker.host = "mqtt.local"
            config.lora.spreading_factor = 9
            config.save()

            loaded = Config.load(data_dir, environ={})
            assert loaded.broker.host == "mqtt.local"
            assert loaded.lora.spreading_factor == 9
            assert loaded.to_dict() == config.to_dict()

    def test_unknown_keys_ignored(self):
        config = Config.from_dict({
            "broker": {"host": "b", "keepalive": 30},
            "zigbee": {"radio": "ezsp"},
            "connect_attempts": 5,
        })
        assert config.broker.host == "b"
        assert config.zigbee.radio == "ezsp"
        assert config.connect_attempts == 5

    def test_environment_overrides(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = Config.load(Path(tmpdir), environ={
                "HEALTHCORE_BROKER_HOST": "broker.example",
                "HEALTHCORE_BROKER_PORT": "8883",
                "HEALTHCORE_SERIAL_PATH": "/dev/ttyACM0",
                "HEALTHCORE_WEBHOOK_PORT": "not-a-port",
            })
        assert config.broker.host == "broker.example"
        assert config.broker.port == 8883
        assert config.lora.path == "/dev/ttyACM0"
        # Invalid values are skipped
        assert config.webhook.port == 8104

    def test_global_config(self):
        reset_config()
        config = Config(data_dir=Path("/tmp/healthcore-test"))
        set_config(config)
        assert get_config() is config
        reset_config()


class TestBridgeFactory:
    """Tests for building bridges from configuration."""

    @pytest.mark.parametrize("name, cls", [
        ("bluetooth", BluetoothBridge),
        ("zigbee", ZigbeeBridge),
        ("lora", LoRaBridge),
        ("http", HttpBridge),
    ])
    def test_create_bridge(self, name, cls):
        with tempfile.TemporaryDirectory() as tmpdir:
            bus = FakeBus()
            bridge = create_bridge(name, Config(data_dir=Path(tmpdir)), bus=bus)
            assert isinstance(bridge, cls)
            assert bridge.name == name
            assert bridge.bus is bus
            assert bridge.router.subscription == f"{name}/devices/#"

    def test_settings_from_config(self):
        config = Config(connect_attempts=7, connect_retry_delay_seconds=0.5)
        config.lora.path = "/dev/ttyS3"
        bridge = create_bridge("lora", config, bus=FakeBus())
        assert bridge.settings.connect_attempts == 7
        assert bridge.settings.connect_retry_delay == 0.5
        assert bridge.adapter.path == "/dev/ttyS3"

    def test_unknown_bridge(self):
        with pytest.raises(ValueError):
            create_bridge("thread", Config(), bus=FakeBus())
        with pytest.raises(ValueError):
            load_converters("thread")

    def test_load_converters(self):
        assert "RGBWW" in load_converters("zigbee")
        assert "Bulp Web-Robo 321" in load_converters("http")


class TestCli:
    """Tests for the command line."""

    def test_config_masks_secrets(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = CliRunner(env={"HEALTHCORE_BROKER_PASSWORD": "hunter2"})
            result = runner.invoke(main, ["config", "--data-dir", tmpdir, "--save"])

            assert result.exit_code == 0
            assert "broker.host" in result.output
            assert "hunter2" not in result.output
            saved = json.loads((Path(tmpdir) / "config.json").read_text())
            assert saved["broker"]["password"] == "hunter2"
        reset_config()

    def test_converters(self):
        runner = CliRunner()
        result = runner.invoke(main, ["converters", "lora"])
        assert result.exit_code == 0
        assert "lora" in result.output

    def test_run_rejects_unknown_bridge(self):
        runner = CliRunner()
        result = runner.invoke(main, ["run", "thread"])
        assert result.exit_code != 0
