"""Tests for StateChannelHandler."""

import pytest
from ucapi import cover

from openbus_discovery.handler import (
    CONTROL,
    ORIENTATION,
    PERGOLA_STATE_NAMES,
    StateChannelHandler,
)


class TestStateChannelHandler:
    """Tests for channel to state mapping."""

    @pytest.mark.parametrize(
        "kind,state_name",
        [
            ("rollershutter", "core:ClosureState"),
            ("awning", "core:DeploymentState"),
            ("pergola", "core:TargetClosureState"),
            ("Pergola", "core:TargetClosureState"),
            ("exteriorvenetianblind", "core:ClosureState"),
        ],
    )
    def test_for_kind(self, kind, state_name):
        """Test presets select the control state per device kind."""
        handler = StateChannelHandler.for_kind(kind)

        assert handler.state_name(CONTROL) == state_name

    def test_unknown_kind(self):
        """Test an unknown kind raises KeyError."""
        with pytest.raises(KeyError):
            StateChannelHandler.for_kind("garagedoor")

    def test_state_names_copy(self):
        """Test the exposed map cannot alter the handler."""
        handler = StateChannelHandler(PERGOLA_STATE_NAMES)

        handler.state_names[CONTROL] = "core:ClosureState"

        assert handler.state_name(CONTROL) == "core:TargetClosureState"
        assert handler.state_name(ORIENTATION) is None

    def test_map_states(self):
        """Test only mapped states produce channel values."""
        handler = StateChannelHandler.for_kind("exteriorvenetianblind")

        values = handler.map_states(
            [
                {"name": "core:ClosureState", "value": 30},
                {"name": "core:SlateOrientationState", "value": 45},
                {"name": "core:StatusState", "value": "available"},
            ]
        )

        assert values == {CONTROL: 30, ORIENTATION: 45}

    def test_cover_attributes_open(self):
        """Test closure maps to an inverted cover position."""
        handler = StateChannelHandler.for_kind("pergola")

        attributes = handler.cover_attributes(
            [{"name": "core:TargetClosureState", "value": 25}]
        )

        assert attributes == {
            cover.Attributes.POSITION: 75,
            cover.Attributes.STATE: cover.States.OPEN,
        }

    def test_cover_attributes_closed(self):
        """Test full closure reports a closed cover."""
        handler = StateChannelHandler.for_kind("rollershutter")

        attributes = handler.cover_attributes([{"name": "core:ClosureState", "value": 100}])

        assert attributes[cover.Attributes.POSITION] == 0
        assert attributes[cover.Attributes.STATE] == cover.States.CLOSED

    def test_cover_attributes_tilt(self):
        """Test orientation maps to tilt position."""
        handler = StateChannelHandler.for_kind("exteriorvenetianblind")

        attributes = handler.cover_attributes(
            [
                {"name": "core:ClosureState", "value": 150},
                {"name": "core:SlateOrientationState", "value": "60"},
            ]
        )

        assert attributes[cover.Attributes.POSITION] == 0
        assert attributes[cover.Attributes.TILT_POSITION] == 60

    def test_cover_attributes_invalid(self):
        """Test invalid values are ignored."""
        handler = StateChannelHandler.for_kind("awning")

        assert handler.cover_attributes([{"name": "core:DeploymentState", "value": "n/a"}]) == {}
        assert handler.cover_attributes([]) == {}
