"""
Mock implementations for testing.

These classes implement the abstract interfaces with in-memory behavior
suitable for unit testing without hardware.
"""

from typing import Any, Dict, List, Optional, Tuple
from collections import deque
import threading
import time

from .errors import ChannelIOError
from .gate import ConnectionGate
from .interfaces import (
    AdapterInterface, ClockInterface, ExpansionBoardCapability,
    FirmwareDriver, TransportChannel,
)


class MockTransportChannel(TransportChannel):
    """
    Mock byte channel for testing.

    Test code can inject data with inject_bytes() and read sent data with get_sent().
    """

    def __init__(self):
        self._is_open = False
        self._rx: deque = deque()
        self._tx: List[bytes] = []
        self._fail_on_open: Optional[BaseException] = None
        self.open_count = 0
        self.close_count = 0

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self) -> None:
        if self._is_open:
            return
        self.open_count += 1
        if self._fail_on_open is not None:
            raise self._fail_on_open
        self._is_open = True

    def close(self) -> None:
        self.close_count += 1
        self._is_open = False

    def read_byte(self) -> int:
        if not self._is_open:
            raise ChannelIOError("Input stream not available")
        if not self._rx:
            raise ChannelIOError("End of stream")
        return self._rx.popleft()

    def write_bytes(self, buffer: bytes, offset: int = 0, length: Optional[int] = None) -> None:
        if not self._is_open:
            raise ChannelIOError("Output stream not available")
        end = len(buffer) if length is None else offset + length
        self._tx.append(bytes(buffer[offset:end]))

    def flush(self) -> None:
        pass

    def flush_input(self) -> None:
        self._rx.clear()

    # Test helper methods

    def inject_bytes(self, data: bytes) -> None:
        """Queue bytes for read_byte()."""
        self._rx.extend(data)

    def get_sent(self) -> List[bytes]:
        """Get all data sent via write_bytes() (for testing)."""
        return self._tx.copy()

    def set_fail_on_open(self, error: Optional[BaseException]) -> None:
        """Make open() raise ``error`` (None restores normal behavior)."""
        self._fail_on_open = error


class MockClock(ClockInterface):
    """
    Controllable clock for testing.

    sleep() advances time instantly instead of blocking, and records the
    requested durations.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._lock = threading.Lock()
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        with self._lock:
            return self._now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self._now += seconds

    def advance(self, seconds: float) -> None:
        """Advance time by specified amount."""
        with self._lock:
            self._now += seconds

    @property
    def total_slept(self) -> float:
        with self._lock:
            return sum(self.sleeps)


class MockBluetoothAdapter(AdapterInterface):
    """
    Mock adapter for testing.

    When ``discovering`` is set, cancel_discovery() stops the scan after
    ``stop_after_polls`` further is_discovering() calls. The adapter also
    counts how many threads are inside the discovery step at once.
    """

    def __init__(
        self,
        available: bool = True,
        enabled: bool = True,
        discovering: bool = False,
        stop_after_polls: int = 0,
        cancel_hold_s: float = 0.0,
    ):
        self.available = available
        self.enabled = enabled
        self.discovering = discovering
        self.stop_after_polls = stop_after_polls
        self.cancel_hold_s = cancel_hold_s
        self.cancel_calls = 0
        self.query_timeouts: List[Optional[float]] = []
        self.max_concurrent_cancels = 0
        self._pending_polls: Optional[int] = None
        self._inside = 0
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return self.available

    def is_enabled(self) -> bool:
        return self.enabled

    def is_discovering(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            self.query_timeouts.append(timeout)
            if self._pending_polls is not None:
                if self._pending_polls <= 0:
                    self.discovering = False
                    self._pending_polls = None
                else:
                    self._pending_polls -= 1
            return self.discovering

    def cancel_discovery(self) -> None:
        with self._lock:
            self.cancel_calls += 1
            self._inside += 1
            self.max_concurrent_cancels = max(self.max_concurrent_cancels, self._inside)
            self._pending_polls = self.stop_after_polls
        try:
            if self.cancel_hold_s:
                time.sleep(self.cancel_hold_s)
        finally:
            with self._lock:
                self._inside -= 1


class InstrumentedGate(ConnectionGate):
    """
    ConnectionGate that records the order of acquire/release events.
    """

    def __init__(self, capacity: int = 1, name: str = "instrumented"):
        super().__init__(capacity=capacity, name=name)
        self.events: List[Tuple[str, str]] = []
        self._events_lock = threading.Lock()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        ok = super().acquire(timeout)
        if ok:
            with self._events_lock:
                self.events.append(("acquire", threading.current_thread().name))
        return ok

    def release(self) -> None:
        with self._events_lock:
            self.events.append(("release", threading.current_thread().name))
        super().release()


class MockFirmwareDriver(FirmwareDriver, ExpansionBoardCapability):
    """
    Mock legacy driver for testing.

    Every command is recorded in ``calls`` as ``(name, args)``. Use
    emit_packet() to push a signal map through ``packet_callback``.
    """

    def __init__(self, channel: Optional[TransportChannel] = None, board_id: str = "",
                 firmware_version: str = "3.2.3"):
        self.channel = channel
        self.board_id = board_id
        self.firmware_version = firmware_version
        self.calls: List[Tuple[str, tuple]] = []
        self._connected = False
        self._fail_on_connect: Optional[BaseException] = None

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def set_fail_on_connect(self, error: Optional[BaseException]) -> None:
        self._fail_on_connect = error

    def emit_packet(self, signals: Dict[str, Any]) -> None:
        if self.packet_callback is not None:
            self.packet_callback(signals)

    def connect(self) -> None:
        self._record("connect")
        if self._fail_on_connect is not None:
            raise self._fail_on_connect
        self._connected = True

    def disconnect(self) -> None:
        self._record("disconnect")
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def start_streaming(self) -> None:
        self._record("start_streaming")

    def stop_streaming(self) -> None:
        self._record("stop_streaming")

    def write_sensors(self, bitmap: int) -> None:
        self._record("write_sensors", bitmap)

    def write_sampling_rate(self, hz: float) -> None:
        self._record("write_sampling_rate", hz)

    def write_accel_range(self, value: int) -> None:
        self._record("write_accel_range", value)

    def write_gyro_range(self, value: int) -> None:
        self._record("write_gyro_range", value)

    def write_mag_range(self, value: int) -> None:
        self._record("write_mag_range", value)

    def set_low_power_accel(self, enabled: bool) -> None:
        self._record("set_low_power_accel", enabled)

    def set_low_power_gyro(self, enabled: bool) -> None:
        self._record("set_low_power_gyro", enabled)

    def set_low_power_mag(self, enabled: bool) -> None:
        self._record("set_low_power_mag", enabled)

    def write_internal_exp_power(self, enabled: bool) -> None:
        self._record("write_internal_exp_power", enabled)

    def write_exg_configuration(self, chip1: bytes, chip2: bytes) -> None:
        self._record("write_exg_configuration", chip1, chip2)

    def read_calibration_parameters(self, scope: str) -> None:
        self._record("read_calibration_parameters", scope)

    def inquiry(self) -> None:
        self._record("inquiry")

    def get_firmware_version(self) -> str:
        return self.firmware_version

    def refresh_board_id(self) -> None:
        self._record("refresh_board_id")

    def get_board_id(self) -> Optional[str]:
        return self.board_id
