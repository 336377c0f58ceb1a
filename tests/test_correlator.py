"""Tests for IdentityCorrelator."""

from dataclasses import dataclass
from unittest.mock import Mock

import pytest

from openbus_discovery.correlator import IdentityCorrelator, PendingRequest, RequestKind


@dataclass
class GatewayReply:
    """Attribute based payload."""

    device_id: int | None = None
    firmware_version: str | None = None


class FakeClock:
    """Manually advanced clock."""

    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def transport():
    """Transport mock recording sent requests."""
    return Mock()


class TestIdentityCorrelator:
    """Tests for request tracking and reply correlation."""

    def test_request_identity(self, transport):
        """Test both requests are sent and recorded."""
        clock = FakeClock()
        correlator = IdentityCorrelator(transport, clock=clock)

        correlator.request_identity()

        assert [c.args[0] for c in transport.send.call_args_list] == [
            RequestKind.FIRMWARE_VERSION,
            RequestKind.MAC_ADDRESS,
        ]
        assert correlator.pending == [
            PendingRequest(RequestKind.FIRMWARE_VERSION, 100.0),
            PendingRequest(RequestKind.MAC_ADDRESS, 100.0),
        ]

    def test_rerequest_replaces_entries(self, transport):
        """Test requesting again does not duplicate pending entries."""
        clock = FakeClock()
        correlator = IdentityCorrelator(transport, clock=clock)
        correlator.request_identity()
        clock.now = 105.0

        correlator.request_identity()

        assert len(correlator.pending) == 2
        assert all(request.issued_at == 105.0 for request in correlator.pending)
        assert transport.send.call_count == 4

    def test_id_reply_resolves(self, transport):
        """Test an id-bearing payload resolves and clears pending entries."""
        correlator = IdentityCorrelator(transport)
        correlator.request_identity()

        assert correlator.on_message({"device_id": 42}) == 42
        assert correlator.pending == []

    def test_firmware_only_reply(self, transport):
        """Test a firmware-only payload keeps requests pending."""
        correlator = IdentityCorrelator(transport)
        correlator.request_identity()

        assert correlator.on_message({"firmware_version": "1.2.3"}) is None
        assert correlator.firmware_version == "1.2.3"
        assert len(correlator.pending) == 2

    def test_attribute_payload(self, transport):
        """Test payload objects with attributes are inspected."""
        correlator = IdentityCorrelator(transport)

        assert correlator.on_message(GatewayReply(firmware_version="3.1")) is None
        assert correlator.on_message(GatewayReply(device_id=7)) == 7
        assert correlator.firmware_version == "3.1"

    def test_payload_with_both_fields(self, transport):
        """Test a payload carrying id and firmware resolves both."""
        correlator = IdentityCorrelator(transport)

        assert correlator.on_message({"device_id": "12", "firmware_version": "2.0"}) == 12
        assert correlator.firmware_version == "2.0"

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            "*#13**12##",
            b"\x00\x01",
            {},
            {"device_id": 0},
            {"device_id": "not-a-number"},
            {"device_id": None},
            {"device_id": True},
            {"device_id": [1]},
        ],
    )
    def test_ignored_payloads(self, transport, payload):
        """Test payloads without a usable id are ignored."""
        correlator = IdentityCorrelator(transport)
        correlator.request_identity()

        assert correlator.on_message(payload) is None
        assert len(correlator.pending) == 2

    def test_reset(self, transport):
        """Test reset clears pending entries and firmware."""
        correlator = IdentityCorrelator(transport)
        correlator.request_identity()
        correlator.on_message({"firmware_version": "1.0"})

        correlator.reset()

        assert correlator.pending == []
        assert correlator.firmware_version is None

    def test_expired_disabled_without_timeout(self, transport):
        """Test nothing expires when no timeout is configured."""
        clock = FakeClock()
        correlator = IdentityCorrelator(transport, clock=clock)
        correlator.request_identity()
        clock.now = 10_000.0

        assert correlator.request_timeout is None
        assert correlator.expired() == []
        assert len(correlator.pending) == 2

    def test_expired(self, transport):
        """Test old requests expire and are removed."""
        clock = FakeClock()
        correlator = IdentityCorrelator(transport, request_timeout=5.0, clock=clock)
        correlator.request(RequestKind.FIRMWARE_VERSION)
        clock.now = 103.0
        correlator.request(RequestKind.MAC_ADDRESS)

        assert correlator.expired(now=104.0) == []

        clock.now = 105.0
        expired = correlator.expired()

        assert [request.kind for request in expired] == [RequestKind.FIRMWARE_VERSION]
        assert [request.kind for request in correlator.pending] == [RequestKind.MAC_ADDRESS]

    def test_expired_with_tolerance(self, transport):
        """Test requests just short of the timeout expire within the tolerance."""
        clock = FakeClock()
        correlator = IdentityCorrelator(transport, request_timeout=5.0, clock=clock)
        correlator.request_identity()
        clock.now = 104.99

        assert correlator.expired() == []
        assert len(correlator.expired(tolerance=0.05)) == 2
        assert correlator.pending == []

    def test_custom_extraction(self, transport):
        """Test vendor payloads via overridden extraction hooks."""

        class FrameCorrelator(IdentityCorrelator):
            def extract_device_id(self, payload):
                if isinstance(payload, str) and payload.startswith("*#13**12*"):
                    return int(payload[9:-2])
                return None

        correlator = FrameCorrelator(transport)

        assert correlator.on_message("*#13**16*1*2*3##") is None
        assert correlator.on_message("*#13**12*4242##") == 4242
