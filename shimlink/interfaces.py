"""
Interfaces for shimlink

Abstract base classes that define contracts for all pluggable components.
This enables dependency injection and mock-based testing without hardware.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConnectionState(Enum):
    """Session connection states as seen by consumers."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STREAMING = "streaming"
    ERROR = "error"


class TransportKind(Enum):
    """Which channel implementation a session is built on."""
    SERIAL = "serial"
    BLUETOOTH = "bluetooth"
    RELAY = "relay"


class BoardKind(Enum):
    """Expansion board attached to the sensor."""
    UNKNOWN = "unknown"
    EXG = "exg"
    IMU = "imu"


@dataclass(frozen=True)
class BoardDetectionResult:
    """Outcome of one expansion board probe. Advisory only."""
    ok: bool
    kind: BoardKind
    raw_id: str = ""


@dataclass
class PortInfo:
    """Information about a serial port."""
    device: str
    description: str
    hwid: str


class TransportChannel(ABC):
    """
    Byte-level link to the sensor.

    Implementations:
    - SerialChannel: pyserial port
    - BluetoothChannel: RFCOMM socket
    - RelayChannel: binary data plane of a bridge session
    - MockTransportChannel: for unit testing without hardware

    ``is_open`` is true only while the link reports connected and both
    directions are bound.
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True if the channel is connected and both streams are bound."""

    @abstractmethod
    def open(self) -> None:
        """Open the channel. No-op if already open."""

    @abstractmethod
    def close(self) -> None:
        """Close the channel. Never raises; safe to call repeatedly."""

    @abstractmethod
    def read_byte(self) -> int:
        """Block for one byte. Raises ChannelIOError on EOF or unbound stream."""

    @abstractmethod
    def write_bytes(self, buffer: bytes, offset: int = 0, length: Optional[int] = None) -> None:
        """Write ``buffer[offset:offset+length]`` and flush it to the wire."""

    @abstractmethod
    def flush(self) -> None:
        """Flush pending output (no-op where the channel has no buffering)."""

    @abstractmethod
    def flush_input(self) -> None:
        """Discard pending input (no-op where the channel has no buffering)."""

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class AdapterInterface(ABC):
    """
    Local radio/port adapter the channel connects through.

    Discovery state matters for Bluetooth: an inquiry scan in progress
    slows down or breaks RFCOMM connects, so it is cancelled first.
    """

    @abstractmethod
    def is_available(self) -> bool:
        """True if the adapter (or port) exists on this host."""

    @abstractmethod
    def is_enabled(self) -> bool:
        """True if the adapter is powered on / usable."""

    @abstractmethod
    def is_discovering(self, timeout: Optional[float] = None) -> bool:
        """True while a discovery scan is running. ``timeout`` bounds the query."""

    @abstractmethod
    def cancel_discovery(self) -> None:
        """Ask the adapter to stop scanning."""


class ClockInterface(ABC):
    """
    Abstract interface for time operations.

    Enables deterministic testing of time-dependent logic.
    """

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds from a monotonic clock."""

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        """Sleep for specified duration."""


class ExpansionBoardCapability(ABC):
    """
    Optional capability a driver adapter implements when it can report
    the expansion board identifier directly.
    """

    @abstractmethod
    def refresh_board_id(self) -> None:
        """Ask the firmware to (re)send the expansion board identifier."""

    @abstractmethod
    def get_board_id(self) -> Optional[str]:
        """Last identifier received from the firmware, or None/empty."""


class FirmwareDriver(ABC):
    """
    Legacy firmware-command surface wrapped by the session.

    The concrete driver lives outside this package. It owns the framing
    of the device's command protocol on top of a TransportChannel and
    reports each decoded data packet as a mapping of calibrated signal
    name to value through ``packet_callback``.
    """

    packet_callback = None

    @abstractmethod
    def connect(self) -> None:
        pass

    @abstractmethod
    def disconnect(self) -> None:
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    def start_streaming(self) -> None:
        pass

    @abstractmethod
    def stop_streaming(self) -> None:
        pass

    @abstractmethod
    def write_sensors(self, bitmap: int) -> None:
        pass

    @abstractmethod
    def write_sampling_rate(self, hz: float) -> None:
        pass

    @abstractmethod
    def write_accel_range(self, value: int) -> None:
        pass

    @abstractmethod
    def write_gyro_range(self, value: int) -> None:
        pass

    @abstractmethod
    def write_mag_range(self, value: int) -> None:
        pass

    @abstractmethod
    def set_low_power_accel(self, enabled: bool) -> None:
        pass

    @abstractmethod
    def set_low_power_gyro(self, enabled: bool) -> None:
        pass

    @abstractmethod
    def set_low_power_mag(self, enabled: bool) -> None:
        pass

    @abstractmethod
    def write_internal_exp_power(self, enabled: bool) -> None:
        pass

    @abstractmethod
    def write_exg_configuration(self, chip1: bytes, chip2: bytes) -> None:
        pass

    @abstractmethod
    def read_calibration_parameters(self, scope: str) -> None:
        pass

    @abstractmethod
    def inquiry(self) -> None:
        pass

    @abstractmethod
    def get_firmware_version(self) -> str:
        pass
