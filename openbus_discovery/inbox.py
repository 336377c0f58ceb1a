"""
Discovery inbox.

Collects discovery results from any number of state machines, keeping a single
entry per physical device, and turns approved entries into bridge configurations.

:copyright: (c) 2025 by Jack Powell.
:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

from __future__ import annotations

import logging

from .config import BridgeConfig, BridgeConfigManager
from .const import CONFIG_PROPERTY_SERIAL_PORT
from .discovery import DiscoveryEvent

_LOG = logging.getLogger(__name__)


class DiscoveryInbox:
    """
    Discovery sink shared by several discovery state machines.

    Entries are keyed by the value of the result's representation property,
    so the same device seen through different transports appears once. A
    repeated announcement replaces the stored entry.
    """

    def __init__(self, config_manager: BridgeConfigManager | None = None):
        """
        Create inbox.

        :param config_manager: Store receiving approved bridges
        """
        self._config_manager = config_manager
        self._results: dict[str, DiscoveryEvent] = {}
        self._ignored: set[str] = set()

    @property
    def results(self) -> list[DiscoveryEvent]:
        """Return the pending inbox entries."""
        return list(self._results.values())

    @staticmethod
    def _key(event: DiscoveryEvent) -> str:
        return str(event.properties.get(event.representation_property, event.identifier))

    def on_discovered(self, event: DiscoveryEvent) -> None:
        """Add or refresh an inbox entry."""
        if self._config_manager is not None and self._config_manager.contains(event.uid):
            _LOG.debug("Bridge %s is already configured, skipping", event.uid)
            return
        if event.uid in self._ignored:
            _LOG.debug("Bridge %s is ignored, skipping", event.uid)
            return

        key = self._key(event)
        if key in self._results:
            _LOG.debug("Updating inbox entry %s", event.uid)
        else:
            _LOG.info("New inbox entry: %s", event.label)
        self._results[key] = event

    def get(self, uid: str) -> DiscoveryEvent | None:
        """Return the inbox entry with the thing UID."""
        for event in self._results.values():
            if event.uid == uid:
                return event
        return None

    def remove(self, uid: str) -> bool:
        """
        Drop the inbox entry with the thing UID.

        :return: True if an entry was removed
        """
        event = self.get(uid)
        if event is None:
            return False
        del self._results[self._key(event)]
        return True

    def ignore(self, uid: str) -> bool:
        """
        Drop the entry and ignore future announcements of it.

        :return: True if an entry was removed
        """
        self._ignored.add(uid)
        return self.remove(uid)

    def approve(self, uid: str, name: str | None = None) -> BridgeConfig | None:
        """
        Turn an inbox entry into a bridge configuration.

        :param uid: Thing UID of the entry
        :param name: Bridge name, defaults to the entry label
        :return: The new configuration, or None if there is no such entry
        """
        event = self.get(uid)
        if event is None:
            _LOG.warning("Cannot approve %s: not in inbox", uid)
            return None

        config = BridgeConfig(
            identifier=event.uid,
            name=name or event.label,
            serial_port=str(event.properties.get(CONFIG_PROPERTY_SERIAL_PORT, "")),
            firmware_version=event.identity.firmware_version,
            device_id=event.identity.id,
        )
        if self._config_manager is not None:
            self._config_manager.add_or_update(config)
        self.remove(uid)
        _LOG.info("Approved bridge %s", uid)
        return config
