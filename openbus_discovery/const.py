"""
Constants for bus discovery.

:copyright: (c) 2025 by Jack Powell.
:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

from typing import Final

BINDING_ID: Final = "openwebnet"

# Thing types
THING_TYPE_DONGLE: Final = f"{BINDING_ID}:dongle"
THING_TYPE_GATEWAY: Final = f"{BINDING_ID}:gateway"

BRIDGE_SUPPORTED_THING_TYPES: Final[frozenset[str]] = frozenset(
    {THING_TYPE_DONGLE, THING_TYPE_GATEWAY}
)

# Labels
THING_LABEL_DONGLE: Final = "ZigBee USB Dongle"
THING_LABEL_GATEWAY: Final = "BTicino Gateway"

# Property bag keys
CONFIG_PROPERTY_SERIAL_PORT: Final = "serialPort"
PROPERTY_FIRMWARE_VERSION: Final = "firmwareVersion"
PROPERTY_ZIGBEEID: Final = "zigbeeid"

# Timing (seconds)
DISCOVERY_TIMEOUT: Final = 30
BACKOFF_SEC: Final = 2
BACKOFF_MAX: Final = 30

# Timers may fire up to one clock tick early (about 15 ms on Windows)
TIMER_TOLERANCE: Final = 0.05
