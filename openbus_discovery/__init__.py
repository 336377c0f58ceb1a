"""
Bus discovery for smart-home bridge integrations.

This package discovers bridge devices (such as a ZigBee USB dongle) behind a
transport link: it connects the transport, issues identification requests,
correlates the asynchronous replies and reports each physical device once per
connection session.

Dependencies
------------
- pyee: event emitters for transports and discovery scans
- pyserial / pyserial-asyncio: serial dongle transport
- ucapi: cover entity attributes for channel state mapping

:copyright: (c) 2025 by Jack Powell.
:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

from .config import BaseConfigManager, BridgeConfig, BridgeConfigManager, get_config_path
from .correlator import IdentityCorrelator, PendingRequest, RequestKind
from .discovery import (
    BaseDiscovery,
    BusDiscovery,
    DeviceIdentity,
    DiscoveryEvent,
    DiscoverySink,
    DiscoveryState,
    DiscoveryStateMachine,
    ScanEvents,
)
from .handler import StateChannelHandler
from .inbox import DiscoveryInbox
from .transport import (
    BaseTransportLink,
    ConnectionErrorKind,
    NoTransportFoundError,
    PersistentTransportLink,
    SerialTransportLink,
    TransportError,
    TransportEvents,
)

__all__ = [
    "BaseConfigManager",
    "BridgeConfig",
    "BridgeConfigManager",
    "get_config_path",
    "IdentityCorrelator",
    "PendingRequest",
    "RequestKind",
    "BaseDiscovery",
    "BusDiscovery",
    "DeviceIdentity",
    "DiscoveryEvent",
    "DiscoverySink",
    "DiscoveryState",
    "DiscoveryStateMachine",
    "ScanEvents",
    "StateChannelHandler",
    "DiscoveryInbox",
    "BaseTransportLink",
    "ConnectionErrorKind",
    "NoTransportFoundError",
    "PersistentTransportLink",
    "SerialTransportLink",
    "TransportError",
    "TransportEvents",
]

__version__ = "1.0.0"
