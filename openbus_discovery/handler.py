"""
Channel state mapping for cloud shutter devices.

Device kinds differ only in which protocol state feeds a channel, so a single
handler is configured with a channel-name to state-name map instead of one
subclass per kind.

:copyright: (c) 2025 by Jack Powell.
:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

import logging
from typing import Any, Iterable, Mapping

from ucapi import cover

_LOG = logging.getLogger(__name__)

# Channels
CONTROL = "control"
ORIENTATION = "orientation"

ROLLERSHUTTER_STATE_NAMES: Mapping[str, str] = {
    CONTROL: "core:ClosureState",
}
AWNING_STATE_NAMES: Mapping[str, str] = {
    CONTROL: "core:DeploymentState",
}
PERGOLA_STATE_NAMES: Mapping[str, str] = {
    CONTROL: "core:TargetClosureState",
}
EXTERIOR_VENETIAN_BLIND_STATE_NAMES: Mapping[str, str] = {
    CONTROL: "core:ClosureState",
    ORIENTATION: "core:SlateOrientationState",
}

STATE_NAMES_BY_KIND: Mapping[str, Mapping[str, str]] = {
    "rollershutter": ROLLERSHUTTER_STATE_NAMES,
    "awning": AWNING_STATE_NAMES,
    "pergola": PERGOLA_STATE_NAMES,
    "exteriorvenetianblind": EXTERIOR_VENETIAN_BLIND_STATE_NAMES,
}


def _percent(value: Any) -> int | None:
    try:
        return max(0, min(100, int(value)))
    except (TypeError, ValueError):
        return None


class StateChannelHandler:
    """Map protocol states of a device to its channels."""

    def __init__(self, state_names: Mapping[str, str]):
        """
        Create handler.

        :param state_names: Channel name to protocol state name
        """
        self._state_names = dict(state_names)
        self._channels = {state: channel for channel, state in self._state_names.items()}

    @classmethod
    def for_kind(cls, kind: str) -> "StateChannelHandler":
        """
        Create the handler for a device kind (e.g. "pergola").

        :raises KeyError: If the kind is unknown
        """
        return cls(STATE_NAMES_BY_KIND[kind.lower()])

    @property
    def state_names(self) -> dict[str, str]:
        """Return the channel to state name map."""
        return dict(self._state_names)

    def state_name(self, channel: str) -> str | None:
        """Return the protocol state feeding a channel."""
        return self._state_names.get(channel)

    def channel_for(self, state_name: str) -> str | None:
        """Return the channel fed by a protocol state."""
        return self._channels.get(state_name)

    def map_states(self, states: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
        """
        Map device states to channel values.

        :param states: Device states as ``{"name": ..., "value": ...}`` items
        :return: Channel name to value, only for mapped states
        """
        values: dict[str, Any] = {}
        for state in states:
            channel = self.channel_for(state.get("name", ""))
            if channel is not None:
                values[channel] = state.get("value")
        return values

    def cover_attributes(
        self, states: Iterable[Mapping[str, Any]]
    ) -> dict[cover.Attributes, Any]:
        """
        Convert device states to cover entity attributes.

        The control channel carries a closure percentage (100 = fully closed),
        the cover position is its inverse. Orientation maps to tilt position.
        """
        values = self.map_states(states)
        attributes: dict[cover.Attributes, Any] = {}

        closure = _percent(values.get(CONTROL))
        if closure is not None:
            attributes[cover.Attributes.POSITION] = 100 - closure
            attributes[cover.Attributes.STATE] = (
                cover.States.CLOSED if closure == 100 else cover.States.OPEN
            )
        elif CONTROL in values:
            _LOG.debug("Ignoring invalid closure value: %r", values[CONTROL])

        orientation = _percent(values.get(ORIENTATION))
        if orientation is not None:
            attributes[cover.Attributes.TILT_POSITION] = orientation

        return attributes
