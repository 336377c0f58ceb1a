"""
Identity correlation for bus discovery.

Tracks outstanding identification requests and matches them with the
asynchronous replies arriving from the bus.

:copyright: (c) 2025 by Jack Powell.
:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from .transport import BaseTransportLink

_LOG = logging.getLogger(__name__)


class RequestKind(Enum):
    """Identification requests understood by a bus device."""

    FIRMWARE_VERSION = "firmware_version"
    MAC_ADDRESS = "mac_address"


@dataclass(frozen=True)
class PendingRequest:
    """An identification request waiting for its reply."""

    kind: RequestKind
    issued_at: float


def _lookup(payload: Any, key: str) -> Any:
    if isinstance(payload, Mapping):
        return payload.get(key)
    return getattr(payload, key, None)


class IdentityCorrelator:
    """
    Correlate identification replies with pending requests.

    Every inbound payload is inspected until one carries a device id. Payloads
    without an id (for example a firmware-only reply) leave the requests
    pending. Override ``extract_device_id`` and ``extract_firmware_version`` to
    read vendor specific payloads; the defaults look for ``device_id`` and
    ``firmware_version`` keys or attributes.

    Pending requests only expire when ``request_timeout`` is set.
    """

    def __init__(
        self,
        transport: BaseTransportLink,
        request_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Create correlator instance.

        :param transport: Transport used to send identification requests
        :param request_timeout: Seconds after which a pending request expires, None to disable
        :param clock: Monotonic clock returning seconds
        """
        self._transport = transport
        self._request_timeout = request_timeout
        self._clock = clock
        self._pending: dict[RequestKind, PendingRequest] = {}
        self._firmware_version: str | None = None

    @property
    def request_timeout(self) -> float | None:
        """Return the pending request timeout in seconds."""
        return self._request_timeout

    @property
    def pending(self) -> list[PendingRequest]:
        """Return the outstanding requests."""
        return list(self._pending.values())

    @property
    def firmware_version(self) -> str | None:
        """Return the firmware version seen since the last reset."""
        return self._firmware_version

    def request_identity(self) -> None:
        """Request firmware version and MAC address from the device."""
        self.request(RequestKind.FIRMWARE_VERSION, RequestKind.MAC_ADDRESS)

    def request(self, *kinds: RequestKind) -> None:
        """
        Send the given requests and record them as pending.

        A request of a kind that is already pending replaces the old entry.

        :param kinds: Requests to send, in order
        """
        for kind in kinds:
            self._pending[kind] = PendingRequest(kind, self._clock())
            self._transport.send(kind)

    def on_message(self, payload: Any) -> int | None:
        """
        Inspect an inbound payload.

        :param payload: Message payload from the transport
        :return: The resolved non-zero device id, or None if the payload carries none
        """
        firmware_version = self.extract_firmware_version(payload)
        if firmware_version:
            self._firmware_version = firmware_version

        device_id = self.extract_device_id(payload)
        if not device_id:
            return None

        _LOG.debug(
            "Resolved device id %d (pending: %s)",
            device_id,
            [request.kind.name for request in self._pending.values()],
        )
        self._pending.clear()
        return device_id

    def expired(self, now: float | None = None, tolerance: float = 0.0) -> list[PendingRequest]:
        """
        Remove and return the pending requests older than the timeout.

        :param now: Current clock value, defaults to the correlator clock
        :param tolerance: Seconds short of the timeout still counted as expired
        :return: Expired requests (empty when no timeout is configured)
        """
        if self._request_timeout is None:
            return []

        now = self._clock() if now is None else now
        deadline = self._request_timeout - tolerance
        expired = [
            request
            for request in self._pending.values()
            if now - request.issued_at >= deadline
        ]
        for request in expired:
            del self._pending[request.kind]
        return expired

    def reset(self) -> None:
        """Forget pending requests and the captured firmware version."""
        self._pending.clear()
        self._firmware_version = None

    def extract_device_id(self, payload: Any) -> int | None:
        """
        Extract the device id embedded in a payload.

        :param payload: Message payload
        :return: Device id, or None if absent, zero or malformed
        """
        value = _lookup(payload, "device_id")
        if value is None or isinstance(value, bool):
            return None
        try:
            device_id = int(value)
        except (TypeError, ValueError):
            _LOG.debug("Ignoring malformed device id: %r", value)
            return None
        return device_id or None

    def extract_firmware_version(self, payload: Any) -> str | None:
        """
        Extract the firmware version embedded in a payload.

        :param payload: Message payload
        :return: Firmware version, or None if absent
        """
        value = _lookup(payload, "firmware_version")
        if value is None or value == "":
            return None
        return str(value)
