"""Local transport channels: serial port and Bluetooth RFCOMM socket.

Both share the same open sequence (see :class:`LocalChannel`): fail fast on
an unusable adapter, take the connection gate, quiesce discovery, then try
the channel's candidate strategies in priority order.
"""

from __future__ import annotations

import logging
import socket
import struct
from abc import abstractmethod
from typing import Any, Callable, List, Optional

import serial

from .config import is_valid_mac, normalize_mac
from .device_lock import DeviceLock
from .errors import ChannelIOError, ConfigurationError
from .establish import ConnectionAttempt, clamp_timeout_ms, connect_first
from .gate import ConnectionGate, default_gate
from .implementations import BlueZAdapter, RealClock, SerialPortAdapter
from .interfaces import AdapterInterface, ClockInterface, TransportChannel

logger = logging.getLogger(__name__)

DISCOVERY_STOP_WAIT_S = 0.5
DISCOVERY_POLL_S = 0.05
SETTLE_DELAY_S = 0.2

# Linux <bluetooth/bluetooth.h>; not exported by the socket module.
SOL_BLUETOOTH = 274
BT_SECURITY = 4
BT_SECURITY_LOW = 1
BT_SECURITY_MEDIUM = 2

LEGACY_RFCOMM_CHANNEL = 1


class LocalChannel(TransportChannel):
    """
    Base for channels that connect through a local adapter.

    Subclasses provide the ordered candidate list and bind/unbind the
    streams of whichever candidate won.
    """

    def __init__(
        self,
        target: str,
        adapter: AdapterInterface,
        gate: Optional[ConnectionGate] = None,
        clock: Optional[ClockInterface] = None,
        connect_timeout_ms: Optional[int] = None,
        lock_device: bool = False,
    ):
        self._target = target
        self._adapter = adapter
        self._gate = gate or default_gate()
        self._clock = clock or RealClock()
        self._timeout_ms = clamp_timeout_ms(connect_timeout_ms)
        self._lock = DeviceLock(target) if lock_device else None

    @property
    def target(self) -> str:
        return self._target

    @property
    def connect_timeout_ms(self) -> int:
        return self._timeout_ms

    @abstractmethod
    def _validate_target(self) -> None:
        """Raise ConfigurationError for an unusable target address."""

    @abstractmethod
    def _attempts(self) -> List[ConnectionAttempt]:
        """Candidate strategies, highest priority first."""

    @abstractmethod
    def _bind(self, handle: Any) -> None:
        """Adopt a connected handle and bind its streams."""

    def _check_adapter(self) -> None:
        if not self._adapter.is_available():
            raise ConfigurationError(f"Adapter for {self._target} not available")
        if not self._adapter.is_enabled():
            raise ConfigurationError(f"Adapter for {self._target} is disabled")

    def _quiesce_discovery(self) -> None:
        if self._adapter.is_discovering(DISCOVERY_STOP_WAIT_S):
            logger.debug("Cancelling discovery before connecting to %s", self._target)
            self._adapter.cancel_discovery()
            deadline = self._clock.monotonic() + DISCOVERY_STOP_WAIT_S
            while True:
                # each state query may only spend what is left of the wait
                remaining = deadline - self._clock.monotonic()
                if remaining <= 0 or not self._adapter.is_discovering(remaining):
                    break
                self._clock.sleep(DISCOVERY_POLL_S)
        self._clock.sleep(SETTLE_DELAY_S)

    def open(self) -> None:
        if self.is_open:
            return
        # a dropped link still holds its handle and streams
        self._unbind()

        self._validate_target()
        self._check_adapter()

        if self._lock is not None and not self._lock.acquire():
            raise ChannelIOError(f"{self._target} is in use by another process")

        try:
            with self._gate:
                self._quiesce_discovery()
                handle = connect_first(self._target, self._attempts(), self._clock, self._timeout_ms)
                self._bind(handle)
        except BaseException:
            if self._lock is not None:
                self._lock.release()
            raise

    def close(self) -> None:
        self._unbind()
        if self._lock is not None:
            self._lock.release()

    @abstractmethod
    def _unbind(self) -> None:
        """Close streams and handle, swallowing errors."""


def _close_quietly(what: str, closer: Optional[Callable[[], None]]) -> None:
    if closer is None:
        return
    try:
        closer()
    except Exception as e:
        logger.debug("Error closing %s: %s", what, e)


def _rfcomm_socket() -> socket.socket:
    if not hasattr(socket, "AF_BLUETOOTH"):
        raise ChannelIOError("Bluetooth sockets are not supported on this platform")
    return socket.socket(socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)


class BluetoothChannel(LocalChannel):
    """
    Bluetooth Classic RFCOMM (SPP) link.

    Candidates, in order: authenticated socket on the SPP channel,
    unauthenticated socket on the same channel, plain socket on the
    legacy fixed channel 1.
    """

    def __init__(
        self,
        mac: str,
        channel: int = LEGACY_RFCOMM_CHANNEL,
        adapter: Optional[AdapterInterface] = None,
        gate: Optional[ConnectionGate] = None,
        clock: Optional[ClockInterface] = None,
        connect_timeout_ms: Optional[int] = None,
        lock_device: bool = False,
        socket_factory: Callable[[], Any] = _rfcomm_socket,
    ):
        mac = mac.strip() if mac else ""
        super().__init__(
            normalize_mac(mac) if is_valid_mac(mac) else mac,
            adapter or BlueZAdapter(),
            gate=gate,
            clock=clock,
            connect_timeout_ms=connect_timeout_ms,
            lock_device=lock_device,
        )
        self._channel = channel
        self._socket_factory = socket_factory
        self._sock = None
        self._in = None
        self._out = None

    @property
    def is_open(self) -> bool:
        if self._sock is None or self._in is None or self._out is None:
            return False
        try:
            self._sock.getpeername()
        except OSError:
            return False
        return True

    def _validate_target(self) -> None:
        if not is_valid_mac(self._target):
            raise ConfigurationError(f"Invalid Bluetooth address: {self._target!r}")

    def _make_socket(self, security: Optional[int]):
        sock = self._socket_factory()
        if security is not None:
            try:
                sock.setsockopt(SOL_BLUETOOTH, BT_SECURITY, struct.pack("BB", security, 0))
            except OSError:
                sock.close()
                raise
        return sock

    def _attempts(self) -> List[ConnectionAttempt]:
        def attempt(name: str, channel: int, security: Optional[int]) -> ConnectionAttempt:
            return ConnectionAttempt(
                name=name,
                create=lambda: self._make_socket(security),
                connect=lambda sock: sock.connect((self._target, channel)),
                close=self._force_close,
                is_connected=self._peer_connected,
            )

        return [
            attempt("secure", self._channel, BT_SECURITY_MEDIUM),
            attempt("insecure", self._channel, BT_SECURITY_LOW),
            attempt(f"legacy-channel-{LEGACY_RFCOMM_CHANNEL}", LEGACY_RFCOMM_CHANNEL, None),
        ]

    @staticmethod
    def _peer_connected(sock) -> bool:
        try:
            sock.getpeername()
            return True
        except OSError:
            return False

    @staticmethod
    def _force_close(sock) -> None:
        # shutdown() is what wakes a connect() blocked in another thread
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    def _bind(self, sock) -> None:
        self._sock = sock
        self._in = sock.makefile("rb", buffering=0)
        self._out = sock.makefile("wb", buffering=0)

    def _unbind(self) -> None:
        _close_quietly("input stream", self._in.close if self._in else None)
        _close_quietly("output stream", self._out.close if self._out else None)
        _close_quietly("socket", self._sock.close if self._sock else None)
        self._in = None
        self._out = None
        self._sock = None

    def read_byte(self) -> int:
        stream = self._in
        if stream is None:
            raise ChannelIOError("Input stream not available")
        try:
            data = stream.read(1)
        except OSError as e:
            raise ChannelIOError(f"Read from {self._target} failed: {e}") from e
        if not data:
            raise ChannelIOError("End of stream")
        return data[0] & 0xFF

    def write_bytes(self, buffer: bytes, offset: int = 0, length: Optional[int] = None) -> None:
        stream = self._out
        if stream is None:
            raise ChannelIOError("Output stream not available")
        end = len(buffer) if length is None else offset + length
        try:
            stream.write(bytes(buffer[offset:end]))
            stream.flush()
        except OSError as e:
            raise ChannelIOError(f"Write to {self._target} failed: {e}") from e

    def flush(self) -> None:
        pass

    def flush_input(self) -> None:
        pass


class SerialChannel(LocalChannel):
    """
    Serial port link (USB dock or an OS-bound rfcomm tty).

    Candidates, in order: exclusive open, shared open.
    """

    def __init__(
        self,
        port: str,
        baud: int = 115200,
        adapter: Optional[AdapterInterface] = None,
        gate: Optional[ConnectionGate] = None,
        clock: Optional[ClockInterface] = None,
        connect_timeout_ms: Optional[int] = None,
        lock_device: bool = False,
        serial_factory: Callable[..., Any] = serial.Serial,
    ):
        port = port.strip() if port else ""
        super().__init__(
            port,
            adapter or SerialPortAdapter(port),
            gate=gate,
            clock=clock,
            connect_timeout_ms=connect_timeout_ms,
            lock_device=lock_device,
        )
        self._baud = baud
        self._serial_factory = serial_factory
        self._serial = None

    @property
    def is_open(self) -> bool:
        if self._serial is None:
            return False
        try:
            return bool(self._serial.is_open)
        except Exception:
            return False

    def _validate_target(self) -> None:
        if not self._target:
            raise ConfigurationError("Serial port name is empty")

    def _make_port(self, exclusive: Optional[bool]):
        # Unopened until connect(); timeout=None makes read() block.
        port = self._serial_factory()
        port.port = self._target
        port.baudrate = self._baud
        port.timeout = None
        port.write_timeout = None
        if exclusive is not None:
            port.exclusive = exclusive
        return port

    def _attempts(self) -> List[ConnectionAttempt]:
        def attempt(name: str, exclusive: Optional[bool]) -> ConnectionAttempt:
            return ConnectionAttempt(
                name=name,
                create=lambda: self._make_port(exclusive),
                connect=lambda port: port.open(),
                close=lambda port: port.close(),
                is_connected=lambda port: bool(port.is_open),
            )

        return [attempt("exclusive", True), attempt("shared", None)]

    def _bind(self, port) -> None:
        self._serial = port

    def _unbind(self) -> None:
        _close_quietly("serial port", self._serial.close if self._serial else None)
        self._serial = None

    def read_byte(self) -> int:
        port = self._serial
        if port is None:
            raise ChannelIOError("Input stream not available")
        try:
            data = port.read(1)
        except (serial.SerialException, OSError, TypeError) as e:
            # pyserial raises TypeError when the port is closed under a reader
            raise ChannelIOError(f"Read from {self._target} failed: {e}") from e
        if not data:
            raise ChannelIOError("End of stream")
        return data[0] & 0xFF

    def write_bytes(self, buffer: bytes, offset: int = 0, length: Optional[int] = None) -> None:
        port = self._serial
        if port is None:
            raise ChannelIOError("Output stream not available")
        end = len(buffer) if length is None else offset + length
        try:
            port.write(bytes(buffer[offset:end]))
            port.flush()
        except (serial.SerialException, OSError) as e:
            raise ChannelIOError(f"Write to {self._target} failed: {e}") from e

    def flush(self) -> None:
        if self._serial is not None:
            self._serial.reset_output_buffer()

    def flush_input(self) -> None:
        if self._serial is not None:
            self._serial.reset_input_buffer()
