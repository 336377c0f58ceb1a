"""Tests for DiscoveryInbox."""

import pytest

from openbus_discovery.config import BridgeConfig, BridgeConfigManager
from openbus_discovery.const import (
    CONFIG_PROPERTY_SERIAL_PORT,
    PROPERTY_FIRMWARE_VERSION,
    PROPERTY_ZIGBEEID,
    THING_TYPE_DONGLE,
)
from openbus_discovery.discovery import DeviceIdentity, DiscoveryEvent
from openbus_discovery.inbox import DiscoveryInbox


def make_event(device_id=42, endpoint="COM3", firmware="1.2.3"):
    return DiscoveryEvent(
        identity=DeviceIdentity(device_id, firmware, endpoint),
        thing_type=THING_TYPE_DONGLE,
        label=f"ZigBee USB Dongle (ID={device_id}, {endpoint}, v={firmware})",
        properties={
            CONFIG_PROPERTY_SERIAL_PORT: endpoint,
            PROPERTY_FIRMWARE_VERSION: firmware,
            PROPERTY_ZIGBEEID: str(device_id),
        },
    )


@pytest.fixture
def temp_config_dir(tmp_path):
    """Create a temporary configuration directory."""
    return str(tmp_path)


@pytest.fixture
def config_manager(temp_config_dir):
    """Create a bridge configuration manager."""
    return BridgeConfigManager(temp_config_dir)


class TestDiscoveryInbox:
    """Tests for inbox handling of discovery results."""

    def test_new_entry(self):
        """Test a discovery result becomes an inbox entry."""
        inbox = DiscoveryInbox()

        inbox.on_discovered(make_event())

        assert inbox.results == [make_event()]
        assert inbox.get("openwebnet:dongle:42") == make_event()

    def test_same_device_other_port(self):
        """Test one entry per device id across transports."""
        inbox = DiscoveryInbox()

        inbox.on_discovered(make_event(endpoint="COM3"))
        inbox.on_discovered(make_event(endpoint="COM4"))

        assert len(inbox.results) == 1
        assert inbox.results[0].properties[CONFIG_PROPERTY_SERIAL_PORT] == "COM4"

    def test_different_devices(self):
        """Test distinct device ids create distinct entries."""
        inbox = DiscoveryInbox()

        inbox.on_discovered(make_event(42))
        inbox.on_discovered(make_event(43, endpoint="COM4"))

        assert [event.uid for event in inbox.results] == [
            "openwebnet:dongle:42",
            "openwebnet:dongle:43",
        ]

    def test_remove(self):
        """Test removing an entry."""
        inbox = DiscoveryInbox()
        inbox.on_discovered(make_event())

        assert inbox.remove("openwebnet:dongle:42") is True
        assert inbox.remove("openwebnet:dongle:42") is False
        assert inbox.results == []

    def test_ignore(self):
        """Test ignored devices are not added again."""
        inbox = DiscoveryInbox()
        inbox.on_discovered(make_event())

        assert inbox.ignore("openwebnet:dongle:42") is True
        inbox.on_discovered(make_event())

        assert inbox.results == []

    def test_approve(self, config_manager):
        """Test approving stores a bridge configuration."""
        inbox = DiscoveryInbox(config_manager)
        inbox.on_discovered(make_event())

        config = inbox.approve("openwebnet:dongle:42", name="Living room")

        assert config == BridgeConfig(
            identifier="openwebnet:dongle:42",
            name="Living room",
            serial_port="COM3",
            firmware_version="1.2.3",
            device_id=42,
        )
        assert config_manager.get("openwebnet:dongle:42") == config
        assert inbox.results == []

    def test_approve_default_name(self):
        """Test the entry label is used when no name is given."""
        inbox = DiscoveryInbox()
        inbox.on_discovered(make_event())

        config = inbox.approve("openwebnet:dongle:42")

        assert config.name == make_event().label

    def test_approve_unknown(self):
        """Test approving a missing entry returns None."""
        inbox = DiscoveryInbox()

        assert inbox.approve("openwebnet:dongle:42") is None

    def test_configured_bridge_skipped(self, config_manager):
        """Test devices already configured are not added to the inbox."""
        inbox = DiscoveryInbox(config_manager)
        inbox.on_discovered(make_event())
        inbox.approve("openwebnet:dongle:42")

        inbox.on_discovered(make_event())

        assert inbox.results == []
