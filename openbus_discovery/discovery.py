"""
Bus discovery for smart-home bridges.

Connects a transport link, issues identification requests, correlates the
asynchronous replies and emits a single discovery result per physical device
and connection session.

Provides:
- DiscoveryStateMachine: event driven discovery of one transport
- BaseDiscovery / BusDiscovery: awaitable scan with timeout
- DiscoveryEvent, DeviceIdentity: discovery result structures
- DiscoverySink: consumer protocol for discovery results

:copyright: (c) 2025 by Jack Powell.
:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from asyncio import AbstractEventLoop
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Mapping, Protocol

from pyee.asyncio import AsyncIOEventEmitter

from .const import (
    BRIDGE_SUPPORTED_THING_TYPES,
    CONFIG_PROPERTY_SERIAL_PORT,
    DISCOVERY_TIMEOUT,
    PROPERTY_FIRMWARE_VERSION,
    PROPERTY_ZIGBEEID,
    THING_LABEL_DONGLE,
    THING_TYPE_DONGLE,
    TIMER_TOLERANCE,
)
from .correlator import IdentityCorrelator
from .transport import BaseTransportLink, ConnectionErrorKind, TransportEvents

_LOG = logging.getLogger(__name__)


class DiscoveryState(Enum):
    """States of a discovery session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED_UNIDENTIFIED = "connected_unidentified"
    IDENTIFIED = "identified"


class ScanEvents(IntEnum):
    """Scan signals emitted by the state machine."""

    SCAN_STARTED = 0
    SCAN_STOPPED = 1
    SCAN_FAILED = 2
    DISCOVERED = 3


@dataclass(frozen=True)
class DeviceIdentity:
    """Identity of the device behind a transport. An id of 0 means unknown."""

    id: int = 0
    firmware_version: str | None = None
    connected_endpoint: str = ""

    @property
    def is_known(self) -> bool:
        """Return True once the device id has been resolved."""
        return self.id != 0


@dataclass(frozen=True)
class DiscoveryEvent:
    """
    A discovered device, ready for the inbox.

    All discovery sinks receive this structure.
    """

    identity: DeviceIdentity
    """Resolved identity of the device"""

    thing_type: str
    """Thing type of the discovered device"""

    label: str
    """Human-readable label"""

    properties: Mapping[str, Any] = field(default_factory=dict)
    """Property bag (serial port, firmware version, device id), read-only"""

    representation_property: str = PROPERTY_ZIGBEEID
    """Property that identifies the physical device across results"""

    def __post_init__(self):
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))

    @property
    def identifier(self) -> str:
        """Return the stable, string encoded device id."""
        return str(self.identity.id)

    @property
    def uid(self) -> str:
        """Return the thing UID of the discovered device."""
        return f"{self.thing_type}:{self.identifier}"

    def __repr__(self):
        return f"DiscoveryEvent(uid={self.uid}, label={self.label})"


class DiscoverySink(Protocol):
    """Consumer of discovery results."""

    def on_discovered(self, event: DiscoveryEvent) -> None:
        """
        Receive a discovery result.

        :param event: The discovered device
        """


class DiscoveryStateMachine:
    """
    Discovery state machine for a single transport link.

    IDLE -> CONNECTING -> CONNECTED_UNIDENTIFIED -> IDENTIFIED, and back to IDLE
    on stop, connection error, close or disconnect.

    At most one DiscoveryEvent is emitted per resolved device id and connection
    session. Calling ``start()`` again while identified re-announces the same
    device.

    ``stop()`` silences transport events until the next ``start()``. A session
    ended by the transport (error, close, disconnect) returns to IDLE but keeps
    listening, so a later reconnect re-identifies the device.
    """

    def __init__(
        self,
        transport: BaseTransportLink,
        sink: DiscoverySink,
        correlator: IdentityCorrelator | None = None,
        thing_type: str = THING_TYPE_DONGLE,
        label: str = THING_LABEL_DONGLE,
        supported_thing_types: frozenset[str] = BRIDGE_SUPPORTED_THING_TYPES,
        identify_timeout: float | None = None,
        identify_retries: int = 0,
        loop: AbstractEventLoop | None = None,
    ):
        """
        Create discovery state machine.

        :param transport: Transport link to discover through
        :param sink: Receiver of discovery results
        :param correlator: Identity correlator, created for the transport if None
        :param thing_type: Thing type of discovered devices
        :param label: Label prefix of discovered devices
        :param supported_thing_types: Thing types reported for registration
        :param identify_timeout: Seconds to wait for identification replies, None to wait forever
        :param identify_retries: Times to re-issue timed out requests before failing the scan
        :param loop: Event loop
        """
        self._loop: AbstractEventLoop = loop or asyncio.get_running_loop()
        self.events = AsyncIOEventEmitter(self._loop)
        self._transport = transport
        self._sink = sink
        self._correlator = correlator or IdentityCorrelator(
            transport, request_timeout=identify_timeout, clock=self._loop.time
        )
        self._thing_type = thing_type
        self._label = label
        self._supported_thing_types = supported_thing_types
        self._identify_retries = identify_retries
        self._identify_attempts = 0
        self._identify_timer: asyncio.TimerHandle | None = None
        self._state = DiscoveryState.IDLE
        self._identity = DeviceIdentity()
        self._listening = False

        self._handlers = {
            TransportEvents.CONNECTED: self._on_connected,
            TransportEvents.CONNECTION_ERROR: self._on_connection_error,
            TransportEvents.CONNECTION_CLOSED: self._on_connection_closed,
            TransportEvents.DISCONNECTED: self._on_disconnected,
            TransportEvents.RECONNECTED: self._on_reconnected,
            TransportEvents.MESSAGE: self._on_message,
        }
        for event, handler in self._handlers.items():
            self._transport.events.on(event, handler)

    @property
    def log_id(self) -> str:
        """Return a log identifier for the state machine."""
        return f"BridgeDiscovery[{self._transport.endpoint or '-'}]"

    @property
    def state(self) -> DiscoveryState:
        """Return the current state."""
        return self._state

    @property
    def identity(self) -> DeviceIdentity:
        """Return the current device identity."""
        return self._identity

    @property
    def correlator(self) -> IdentityCorrelator:
        """Return the identity correlator."""
        return self._correlator

    def get_supported_device_kinds(self) -> frozenset[str]:
        """Return the thing types this discovery can produce."""
        return self._supported_thing_types

    def start(self) -> None:
        """Start (or restart) a discovery session."""
        _LOG.info("[%s] Starting scan", self.log_id)
        self._listening = True
        self.events.emit(ScanEvents.SCAN_STARTED)

        if not self._transport.is_connected:
            if self._state is DiscoveryState.CONNECTING:
                _LOG.debug("[%s] Connection already in progress", self.log_id)
                return
            _LOG.debug("[%s] Transport not connected, connecting", self.log_id)
            self._set_state(DiscoveryState.CONNECTING)
            self._transport.connect()
            return

        if self._identity.is_known:
            _LOG.debug(
                "[%s] Transport already connected, device id is %d",
                self.log_id,
                self._identity.id,
            )
            self._set_state(DiscoveryState.IDENTIFIED)
            self._announce()
            return

        _LOG.debug("[%s] Transport already connected, requesting identity", self.log_id)
        self._identity = replace(
            self._identity, connected_endpoint=self._transport.endpoint or ""
        )
        self._identify_attempts = 0
        self._request_identity()
        self._set_state(DiscoveryState.CONNECTED_UNIDENTIFIED)

    def stop(self) -> None:
        """
        Stop the discovery session.

        The transport is left as it is. A resolved identity is kept while the
        transport stays connected so the next ``start()`` can re-announce it.
        """
        self._listening = False
        self._cancel_identify_timer()
        self._correlator.reset()
        if self._state is DiscoveryState.IDLE:
            return
        _LOG.debug("[%s] Stopping scan", self.log_id)
        self._set_state(DiscoveryState.IDLE)
        self.events.emit(ScanEvents.SCAN_STOPPED)

    def detach(self) -> None:
        """Stop and unsubscribe from the transport events."""
        self.stop()
        for event, handler in self._handlers.items():
            self._transport.events.remove_listener(event, handler)

    def _set_state(self, state: DiscoveryState) -> None:
        if state is not self._state:
            _LOG.debug(
                "[%s] %s -> %s", self.log_id, self._state.name, state.name
            )
            self._state = state

    def _request_identity(self) -> None:
        self._correlator.request_identity()
        self._schedule_identify_timeout()

    def _build_event(self) -> DiscoveryEvent:
        identity = self._identity
        firmware = identity.firmware_version or "unknown"
        return DiscoveryEvent(
            identity=identity,
            thing_type=self._thing_type,
            label=(
                f"{self._label} (ID={identity.id}, "
                f"{identity.connected_endpoint}, v={firmware})"
            ),
            properties={
                CONFIG_PROPERTY_SERIAL_PORT: identity.connected_endpoint,
                PROPERTY_FIRMWARE_VERSION: identity.firmware_version,
                PROPERTY_ZIGBEEID: identity.id,
            },
            representation_property=PROPERTY_ZIGBEEID,
        )

    def _announce(self) -> None:
        event = self._build_event()
        _LOG.info("[%s] Device discovered: %s", self.log_id, event.label)
        try:
            self._sink.on_discovered(event)
        except Exception as err:  # pylint: disable=broad-exception-caught
            _LOG.error("[%s] Discovery sink error: %s", self.log_id, err)
        self.events.emit(ScanEvents.DISCOVERED, event)

    def _end_session(self, reason: str | None = None) -> None:
        """Reset identity and return to IDLE, signalling the caller if a scan was active."""
        self._cancel_identify_timer()
        self._correlator.reset()
        self._identity = DeviceIdentity()
        was_active = self._state is not DiscoveryState.IDLE
        self._set_state(DiscoveryState.IDLE)

        if self._listening and was_active:
            if reason is not None:
                self.events.emit(ScanEvents.SCAN_FAILED, reason)
            self.events.emit(ScanEvents.SCAN_STOPPED)

    # ─────────────────────────────────────────────────────────────────
    # Transport event handlers
    # ─────────────────────────────────────────────────────────────────

    def _on_connected(self, endpoint: str | None) -> None:
        if not self._listening:
            _LOG.debug("[%s] Not scanning, ignoring connect", self.log_id)
            return
        if self._state is DiscoveryState.IDENTIFIED:
            _LOG.debug("[%s] Already identified, ignoring connect", self.log_id)
            return

        _LOG.info("[%s] Transport connected on %s", self.log_id, endpoint)
        self._identity = DeviceIdentity(connected_endpoint=endpoint or "")
        self._identify_attempts = 0
        self._request_identity()
        self._set_state(DiscoveryState.CONNECTED_UNIDENTIFIED)

    def _on_connection_error(self, kind: ConnectionErrorKind, reason: str) -> None:
        if self._listening:
            if kind is ConnectionErrorKind.NO_TRANSPORT_FOUND:
                _LOG.info("[%s] No serial ports found", self.log_id)
            else:
                _LOG.warning(
                    "[%s] Connection error: %s - %s", self.log_id, kind.name, reason
                )

        failure = None if kind is ConnectionErrorKind.NO_TRANSPORT_FOUND else reason
        self._end_session(failure)

    def _on_connection_closed(self) -> None:
        _LOG.debug("[%s] Connection closed", self.log_id)
        self._end_session()

    def _on_disconnected(self) -> None:
        if self._listening:
            _LOG.warning("[%s] Transport disconnected", self.log_id)
        self._end_session(ConnectionErrorKind.UNEXPECTED_DISCONNECT.name)

    def _on_reconnected(self) -> None:
        _LOG.warning("[%s] Transport reconnected", self.log_id)

    def _on_message(self, payload: Any) -> None:
        if not self._listening:
            return
        if self._state is DiscoveryState.IDENTIFIED:
            _LOG.debug(
                "[%s] Device id already known (%d), ignoring message",
                self.log_id,
                self._identity.id,
            )
            return
        if self._state is not DiscoveryState.CONNECTED_UNIDENTIFIED:
            return

        device_id = self._correlator.on_message(payload)
        if device_id is None:
            return

        self._cancel_identify_timer()
        self._identity = replace(
            self._identity,
            id=device_id,
            firmware_version=self._correlator.firmware_version,
        )
        _LOG.debug("[%s] Device id is set: %d", self.log_id, device_id)
        self._set_state(DiscoveryState.IDENTIFIED)
        self._announce()

    # ─────────────────────────────────────────────────────────────────
    # Identification timeout
    # ─────────────────────────────────────────────────────────────────

    def _schedule_identify_timeout(self) -> None:
        self._cancel_identify_timer()
        timeout = self._correlator.request_timeout
        if timeout is None:
            return
        self._identify_timer = self._loop.call_later(timeout, self._on_identify_timeout)

    def _cancel_identify_timer(self) -> None:
        if self._identify_timer is not None:
            self._identify_timer.cancel()
            self._identify_timer = None

    def _on_identify_timeout(self) -> None:
        self._identify_timer = None
        if self._state is not DiscoveryState.CONNECTED_UNIDENTIFIED:
            return

        expired = self._correlator.expired(tolerance=TIMER_TOLERANCE)
        if not expired:
            self._schedule_identify_timeout()
            return

        if self._identify_attempts < self._identify_retries:
            self._identify_attempts += 1
            _LOG.warning(
                "[%s] Identification timed out, retrying (%d/%d)",
                self.log_id,
                self._identify_attempts,
                self._identify_retries,
            )
            self._correlator.request(*(request.kind for request in expired))
            self._schedule_identify_timeout()
            return

        _LOG.warning("[%s] Identification timed out", self.log_id)
        self._correlator.reset()
        self._set_state(DiscoveryState.IDLE)
        self.events.emit(ScanEvents.SCAN_FAILED, "identification timed out")
        self.events.emit(ScanEvents.SCAN_STOPPED)


class BaseDiscovery(ABC):
    """
    Base class for device discovery.

    Provides a common interface for awaitable discovery runs.
    """

    def __init__(self, timeout: float = DISCOVERY_TIMEOUT):
        """
        Initialize discovery.

        :param timeout: Discovery timeout in seconds
        """
        self.timeout = timeout
        self._discovered_devices: list[DiscoveryEvent] = []

    @property
    def devices(self) -> list[DiscoveryEvent]:
        """
        Get the devices found by the most recent call to discover().

        :return: List of discovered devices
        """
        return self._discovered_devices

    @abstractmethod
    async def discover(self) -> list[DiscoveryEvent]:
        """
        Perform device discovery.

        :return: List of discovered devices
        """

    def clear(self) -> None:
        """Clear the list of discovered devices."""
        self._discovered_devices.clear()


class BusDiscovery(BaseDiscovery):
    """
    Scan a transport link for its bridge device.

    Each ``discover()`` call runs one discovery session: it ends when the device
    is identified, the scan stops (e.g. no serial port) or the timeout elapses.
    Results are also forwarded to an optional downstream sink such as an inbox.
    """

    def __init__(
        self,
        transport: BaseTransportLink,
        timeout: float = DISCOVERY_TIMEOUT,
        sink: DiscoverySink | None = None,
        **machine_kwargs: Any,
    ):
        """
        Initialize bus discovery.

        :param transport: Transport link to scan
        :param timeout: Discovery timeout in seconds
        :param sink: Optional downstream sink receiving every result
        :param machine_kwargs: Extra arguments for DiscoveryStateMachine
        """
        super().__init__(timeout)
        self._transport = transport
        self._sink = sink
        self._machine_kwargs = machine_kwargs
        self._machine: DiscoveryStateMachine | None = None
        self._done: asyncio.Event | None = None

    @property
    def state_machine(self) -> DiscoveryStateMachine | None:
        """Return the state machine, created on first discover()."""
        return self._machine

    def on_discovered(self, event: DiscoveryEvent) -> None:
        """Collect a discovery result and end the running scan."""
        self._discovered_devices[:] = [
            device for device in self._discovered_devices if device.uid != event.uid
        ]
        self._discovered_devices.append(event)
        try:
            if self._sink is not None:
                self._sink.on_discovered(event)
        finally:
            if self._done is not None:
                self._done.set()

    def _on_scan_stopped(self) -> None:
        if self._done is not None:
            self._done.set()

    async def discover(self) -> list[DiscoveryEvent]:
        """
        Run one discovery session.

        :return: List of discovered devices
        """
        if self._machine is None:
            self._machine = DiscoveryStateMachine(
                self._transport, self, **self._machine_kwargs
            )
            self._machine.events.on(ScanEvents.SCAN_STOPPED, self._on_scan_stopped)

        _LOG.info(
            "Starting bus discovery (endpoint: %s, timeout: %ss)",
            self._transport.endpoint or "auto",
            self.timeout,
        )

        self._discovered_devices.clear()
        self._done = asyncio.Event()
        self._machine.start()

        try:
            await asyncio.wait_for(self._done.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            _LOG.debug("Bus discovery timed out")
        finally:
            self._done = None
            self._machine.stop()

        _LOG.info(
            "Bus discovery complete: found %d device(s)",
            len(self._discovered_devices),
        )
        return self._discovered_devices
