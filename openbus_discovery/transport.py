"""
Transport links for bus discovery.

A transport link is a connectable bus or gateway (for example a serial USB
dongle). It is driven fire-and-forget: ``connect()`` and ``send()`` never block
and never raise for connection problems. Results arrive on the ``events``
emitter as :class:`TransportEvents`.

Provides:
- BaseTransportLink: the capability consumed by the discovery state machine
- PersistentTransportLink: connection loop with exponential backoff
- SerialTransportLink: line/frame oriented serial dongle transport

:copyright: (c) 2025 by Jack Powell.
:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from asyncio import AbstractEventLoop
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, Mapping

import serial_asyncio
from pyee.asyncio import AsyncIOEventEmitter
from serial.tools import list_ports

from .const import BACKOFF_MAX, BACKOFF_SEC

if TYPE_CHECKING:
    from .correlator import RequestKind

_LOG = logging.getLogger(__name__)


class TransportEvents(IntEnum):
    """Events emitted by a transport link."""

    CONNECTED = 0
    CONNECTION_ERROR = 1
    CONNECTION_CLOSED = 2
    DISCONNECTED = 3
    RECONNECTED = 4
    MESSAGE = 5


class ConnectionErrorKind(IntEnum):
    """Classification of connection failures."""

    NO_TRANSPORT_FOUND = 0
    CONNECTION_FAILED = 1
    UNEXPECTED_DISCONNECT = 2


class TransportError(Exception):
    """Base error raised by transport implementations."""


class NoTransportFoundError(TransportError):
    """No capable transport (e.g. no serial port) is available."""


class BaseTransportLink(ABC):
    """
    Base class for all transport links.

    Event payloads:
    - CONNECTED: endpoint (str)
    - CONNECTION_ERROR: kind (ConnectionErrorKind), reason (str)
    - CONNECTION_CLOSED, DISCONNECTED, RECONNECTED: no arguments
    - MESSAGE: payload (Any)
    """

    def __init__(self, loop: AbstractEventLoop | None = None):
        """
        Create transport link instance.

        :param loop: Event loop
        """
        self._loop: AbstractEventLoop = loop or asyncio.get_running_loop()
        self.events = AsyncIOEventEmitter(self._loop)

    @property
    def log_id(self) -> str:
        """Return a log identifier for the transport."""
        return f"{type(self).__name__}[{self.endpoint or '-'}]"

    @property
    @abstractmethod
    def endpoint(self) -> str | None:
        """Return the connected endpoint (e.g. serial port), if any."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Return True if the transport is currently connected."""

    @abstractmethod
    def connect(self) -> None:
        """
        Start connecting.

        Must not block. The outcome is reported through CONNECTED or
        CONNECTION_ERROR events.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the transport."""

    @abstractmethod
    def send(self, kind: RequestKind) -> None:
        """
        Send a request to the bus without waiting for the reply.

        :param kind: The request to send
        """


class PersistentTransportLink(BaseTransportLink):
    """
    Base class for transports holding a persistent connection.

    Runs a connection task that opens the connection, pumps inbound messages
    into MESSAGE events and reconnects with exponential backoff when the
    connection is lost. ``NoTransportFoundError`` ends the task since there is
    nothing to retry against.
    """

    def __init__(
        self,
        loop: AbstractEventLoop | None = None,
        reconnect: bool = True,
        backoff_sec: float = BACKOFF_SEC,
        backoff_max: float = BACKOFF_MAX,
    ):
        """
        Initialize persistent transport link.

        :param loop: Event loop
        :param reconnect: Reconnect after connection loss or failure (default: True)
        :param backoff_sec: Initial reconnection delay in seconds
        :param backoff_max: Maximum reconnection delay in seconds
        """
        super().__init__(loop)
        self._connection: Any = None
        self._endpoint: str | None = None
        self._connection_task: asyncio.Task | None = None
        self._send_tasks: set[asyncio.Task] = set()
        self._stop_reconnect = asyncio.Event()
        self._reconnect_enabled = reconnect
        self._backoff_sec = backoff_sec
        self._backoff_max = backoff_max
        self._backoff_current = backoff_sec

    @property
    def endpoint(self) -> str | None:
        """Return the endpoint of the current (or last) connection."""
        return self._endpoint

    @property
    def is_connected(self) -> bool:
        """Return True if the transport has an open connection."""
        return self._connection is not None

    def connect(self) -> None:
        """Start the connection task unless it is already running."""
        if self._connection_task and not self._connection_task.done():
            _LOG.debug("[%s] Connection task already running", self.log_id)
            return

        _LOG.debug("[%s] Starting connection task", self.log_id)
        self._stop_reconnect.clear()
        self._backoff_current = self._backoff_sec
        self._connection_task = self._loop.create_task(self._connection_loop())

    async def disconnect(self) -> None:
        """
        Stop the connection task and close the connection.

        CONNECTION_CLOSED is emitted when a connection was open or a
        connection attempt was still running.
        """
        _LOG.debug("[%s] Disconnecting", self.log_id)
        self._stop_reconnect.set()
        task_running = self._connection_task is not None and not self._connection_task.done()
        was_active = self.is_connected or task_running

        if task_running:
            self._connection_task.cancel()
            try:
                await self._connection_task
            except asyncio.CancelledError:
                pass
        self._connection_task = None

        await self._close()
        if was_active:
            self.events.emit(TransportEvents.CONNECTION_CLOSED)

    def send(self, kind: RequestKind) -> None:
        """Schedule a request write on the open connection."""
        if not self.is_connected:
            _LOG.warning(
                "[%s] Cannot send %s request: not connected", self.log_id, kind.name
            )
            return

        task = self._loop.create_task(self._send(kind))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send(self, kind: RequestKind) -> None:
        try:
            await self.write_request(kind)
            _LOG.debug("[%s] Sent %s request", self.log_id, kind.name)
        except Exception as err:  # pylint: disable=broad-exception-caught
            _LOG.error("[%s] Failed to send %s request: %s", self.log_id, kind.name, err)

    async def _close(self) -> None:
        if self._connection is None:
            return
        try:
            await self.close_connection()
        except Exception as err:  # pylint: disable=broad-exception-caught
            _LOG.debug("[%s] Error closing connection: %s", self.log_id, err)
        self._connection = None

    async def _connection_loop(self) -> None:
        """Connection loop with automatic reconnection."""
        was_connected = False

        while not self._stop_reconnect.is_set():
            try:
                _LOG.debug("[%s] Opening connection", self.log_id)
                self._connection = await self.open_connection()
            except NoTransportFoundError as err:
                _LOG.debug("[%s] No transport found: %s", self.log_id, err)
                self.events.emit(
                    TransportEvents.CONNECTION_ERROR,
                    ConnectionErrorKind.NO_TRANSPORT_FOUND,
                    str(err),
                )
                break
            except Exception as err:  # pylint: disable=broad-exception-caught
                _LOG.warning("[%s] Connection error: %s", self.log_id, err)
                self.events.emit(
                    TransportEvents.CONNECTION_ERROR,
                    ConnectionErrorKind.CONNECTION_FAILED,
                    str(err),
                )
                if not self._reconnect_enabled:
                    break
                await self._wait_backoff()
                continue

            self._backoff_current = self._backoff_sec
            _LOG.info("[%s] Connected", self.log_id)
            if was_connected:
                self.events.emit(TransportEvents.RECONNECTED)
            was_connected = True
            self.events.emit(TransportEvents.CONNECTED, self._endpoint)

            closed_by_peer = await self._message_loop()
            await self._close()

            if closed_by_peer:
                _LOG.debug("[%s] Connection closed by peer", self.log_id)
                self.events.emit(TransportEvents.CONNECTION_CLOSED)
            else:
                self.events.emit(TransportEvents.DISCONNECTED)

            if not self._reconnect_enabled:
                break
            await self._wait_backoff()

    async def _message_loop(self) -> bool:
        """
        Pump inbound messages into MESSAGE events.

        :return: True if the peer closed the connection, False on read error
        """
        while not self._stop_reconnect.is_set():
            try:
                message = await self.read_message()
            except Exception as err:  # pylint: disable=broad-exception-caught
                _LOG.warning("[%s] Connection lost: %s", self.log_id, err)
                return False

            if message is None:
                return True
            self.events.emit(TransportEvents.MESSAGE, message)
        return True

    async def _wait_backoff(self) -> None:
        if self._stop_reconnect.is_set():
            return
        _LOG.debug(
            "[%s] Reconnecting in %s seconds", self.log_id, self._backoff_current
        )
        try:
            await asyncio.wait_for(
                self._stop_reconnect.wait(), timeout=self._backoff_current
            )
        except asyncio.TimeoutError:
            pass
        self._backoff_current = min(self._backoff_current * 2, self._backoff_max)

    @abstractmethod
    async def open_connection(self) -> Any:
        """
        Open the connection and set ``self._endpoint``.

        Raise NoTransportFoundError when no usable transport exists.

        :return: Connection object
        """

    @abstractmethod
    async def close_connection(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def read_message(self) -> Any:
        """
        Receive the next inbound message.

        :return: Message payload, or None when the peer closed the connection
        """

    @abstractmethod
    async def write_request(self, kind: RequestKind) -> None:
        """
        Write a request to the open connection.

        :param kind: The request to write
        """


class SerialTransportLink(PersistentTransportLink):
    """
    Serial dongle transport.

    Uses the configured port or the first port reported by pyserial (optionally
    restricted to a USB VID/PID). Frames are split on ``terminator``. Request
    bytes come from ``requests``; inbound frames are decoded as ASCII and passed
    through ``frame_parser`` when one is given.
    """

    def __init__(
        self,
        port: str | None = None,
        baudrate: int = 19200,
        requests: Mapping[RequestKind, bytes] | None = None,
        frame_parser: Callable[[str], Any] | None = None,
        terminator: bytes = b"\n",
        usb_vid: int | None = None,
        usb_pid: int | None = None,
        loop: AbstractEventLoop | None = None,
        reconnect: bool = True,
        backoff_sec: float = BACKOFF_SEC,
        backoff_max: float = BACKOFF_MAX,
    ):
        """
        Initialize serial transport.

        :param port: Serial port to use, None to scan available ports
        :param baudrate: Serial baud rate
        :param requests: Encoded bytes for each request kind
        :param frame_parser: Optional converter from a decoded frame to a payload
        :param terminator: Frame terminator
        :param usb_vid: Only consider ports with this USB vendor id
        :param usb_pid: Only consider ports with this USB product id
        :param loop: Event loop
        :param reconnect: Reconnect after connection loss or failure
        :param backoff_sec: Initial reconnection delay in seconds
        :param backoff_max: Maximum reconnection delay in seconds
        """
        super().__init__(loop, reconnect, backoff_sec, backoff_max)
        self._port = port
        self._baudrate = baudrate
        self._requests = dict(requests or {})
        self._frame_parser = frame_parser
        self._terminator = terminator
        self._usb_vid = usb_vid
        self._usb_pid = usb_pid
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    def _port_matches(self, port_info: Any) -> bool:
        if self._usb_vid is not None and port_info.vid != self._usb_vid:
            return False
        if self._usb_pid is not None and port_info.pid != self._usb_pid:
            return False
        return True

    async def find_port(self) -> str:
        """
        Return the first candidate serial port.

        :raises NoTransportFoundError: If no port matches
        """
        ports = await asyncio.to_thread(list_ports.comports)
        candidates = [info.device for info in ports if self._port_matches(info)]
        _LOG.debug("[%s] Candidate serial ports: %s", self.log_id, candidates)
        if not candidates:
            raise NoTransportFoundError("No serial ports found")
        return candidates[0]

    async def open_connection(self) -> Any:
        port = self._port or await self.find_port()
        _LOG.debug(
            "[%s] Opening serial port %s @ %d baud", self.log_id, port, self._baudrate
        )
        self._reader, self._writer = await serial_asyncio.open_serial_connection(
            url=port, baudrate=self._baudrate
        )
        self._endpoint = port
        return self._writer

    async def close_connection(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is not None:
            writer.close()
            await writer.wait_closed()

    async def read_message(self) -> Any:
        if self._reader is None:
            return None

        while True:
            try:
                raw = await self._reader.readuntil(self._terminator)
            except asyncio.IncompleteReadError:
                return None

            frame = raw.decode("ascii", errors="ignore").strip()
            if not frame:
                continue
            _LOG.debug("[%s] RX: %s", self.log_id, frame)
            if self._frame_parser is None:
                return frame
            try:
                return self._frame_parser(frame)
            except (TypeError, ValueError) as err:
                _LOG.debug("[%s] Ignoring malformed frame %s: %s", self.log_id, frame, err)

    async def write_request(self, kind: RequestKind) -> None:
        data = self._requests.get(kind)
        if data is None:
            raise TransportError(f"No encoding configured for {kind.name} request")
        if self._writer is None:
            raise TransportError("Serial port is not open")
        self._writer.write(data)
        await self._writer.drain()
