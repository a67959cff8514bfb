"""Tests for shimlink/channels.py with fake sockets and serial ports."""

from __future__ import annotations

import io
import struct
import threading
import time

import pytest
import serial

from shimlink import establish
from shimlink.channels import (
    BT_SECURITY,
    BT_SECURITY_LOW,
    BT_SECURITY_MEDIUM,
    SETTLE_DELAY_S,
    SOL_BLUETOOTH,
    BluetoothChannel,
    SerialChannel,
)
from shimlink.errors import ChannelIOError, ConfigurationError
from shimlink.mocks import InstrumentedGate, MockBluetoothAdapter, MockClock

MAC = "00:06:66:AA:BB:CC"


class RecordingWriter:
    def __init__(self):
        self.data = bytearray()
        self.flushes = 0
        self.closed = False

    def write(self, data):
        self.data.extend(data)
        return len(data)

    def flush(self):
        self.flushes += 1

    def close(self):
        self.closed = True


class FakeSocket:
    """RFCOMM socket stand-in. ``behavior``: ok, refuse, hang, not_connected."""

    def __init__(self, behavior="ok", incoming=b"", connect_delay=0.0):
        self.behavior = behavior
        self.incoming = incoming
        self.connect_delay = connect_delay
        self.options = []
        self.connected_to = None
        self.closed = False
        self.shut_down = False
        self.writer = None
        self._unblock = threading.Event()

    def setsockopt(self, level, option, value):
        self.options.append((level, option, value))

    def connect(self, address):
        if self.connect_delay:
            time.sleep(self.connect_delay)
        if self.behavior == "refuse":
            raise ConnectionRefusedError(f"refused {address}")
        if self.behavior == "hang":
            self._unblock.wait(5)
            raise OSError("connect aborted")
        self.connected_to = address

    def getpeername(self):
        if self.closed or self.connected_to is None or self.behavior == "not_connected":
            raise OSError(107, "Transport endpoint is not connected")
        return self.connected_to

    def shutdown(self, how):
        self.shut_down = True
        self._unblock.set()

    def close(self):
        self.closed = True
        self._unblock.set()

    def makefile(self, mode, buffering=None):
        if "r" in mode:
            return io.BytesIO(self.incoming)
        self.writer = RecordingWriter()
        return self.writer


class SocketFactory:
    def __init__(self, *behaviors, incoming=b"", connect_delay=0.0):
        self.behaviors = list(behaviors) or ["ok"]
        self.incoming = incoming
        self.connect_delay = connect_delay
        self.created = []

    def __call__(self):
        behavior = self.behaviors.pop(0) if len(self.behaviors) > 1 else self.behaviors[0]
        sock = FakeSocket(behavior, self.incoming, self.connect_delay)
        self.created.append(sock)
        return sock


def bt_channel(factory, adapter=None, clock=None, **kwargs):
    return BluetoothChannel(
        MAC,
        adapter=adapter or MockBluetoothAdapter(),
        gate=kwargs.pop("gate", None) or InstrumentedGate(),
        clock=clock or MockClock(),
        socket_factory=factory,
        **kwargs,
    )


class TestBluetoothStrategyOrder:
    def test_secure_first(self):
        factory = SocketFactory("ok")
        ch = bt_channel(factory, channel=5)
        ch.open()
        assert ch.is_open
        assert len(factory.created) == 1
        sock = factory.created[0]
        assert sock.options == [(SOL_BLUETOOTH, BT_SECURITY, struct.pack("BB", BT_SECURITY_MEDIUM, 0))]
        assert sock.connected_to == (MAC, 5)
        ch.close()

    def test_falls_back_insecure_then_legacy(self):
        factory = SocketFactory("refuse", "refuse", "ok")
        clock = MockClock()
        ch = bt_channel(factory, clock=clock, channel=5)
        ch.open()

        secure, insecure, legacy = factory.created
        assert secure.options[0][2] == struct.pack("BB", BT_SECURITY_MEDIUM, 0)
        assert insecure.options[0][2] == struct.pack("BB", BT_SECURITY_LOW, 0)
        assert legacy.options == []
        assert legacy.connected_to == (MAC, 1)
        assert secure.closed and insecure.closed
        assert secure.shut_down
        assert clock.sleeps == [SETTLE_DELAY_S, 0.2, 0.2]
        ch.close()

    def test_unconnected_socket_counts_as_failure(self):
        factory = SocketFactory("not_connected", "ok")
        ch = bt_channel(factory)
        ch.open()
        assert len(factory.created) == 2
        assert factory.created[0].closed
        ch.close()

    def test_all_strategies_fail(self):
        factory = SocketFactory("refuse")
        ch = bt_channel(factory)
        with pytest.raises(ChannelIOError) as exc_info:
            ch.open()
        assert MAC in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)
        assert len(factory.created) == 3
        assert all(s.closed for s in factory.created)
        assert not ch.is_open

    def test_hung_connect_is_abandoned(self, monkeypatch):
        monkeypatch.setattr(establish, "MIN_CONNECT_TIMEOUT_MS", 50)
        factory = SocketFactory("hang", "ok")
        ch = bt_channel(factory, connect_timeout_ms=50)
        ch.open()
        assert factory.created[0].shut_down
        assert ch.is_open
        ch.close()


class TestBluetoothPreconditions:
    def test_invalid_mac(self):
        factory = SocketFactory()
        ch = BluetoothChannel("not-a-mac", adapter=MockBluetoothAdapter(), clock=MockClock(),
                              socket_factory=factory)
        with pytest.raises(ConfigurationError):
            ch.open()
        assert factory.created == []

    def test_adapter_unavailable(self):
        factory = SocketFactory()
        ch = bt_channel(factory, adapter=MockBluetoothAdapter(available=False))
        with pytest.raises(ConfigurationError, match="not available"):
            ch.open()
        assert factory.created == []

    def test_adapter_disabled(self):
        factory = SocketFactory()
        ch = bt_channel(factory, adapter=MockBluetoothAdapter(enabled=False))
        with pytest.raises(ConfigurationError, match="disabled"):
            ch.open()

    def test_mac_is_normalized(self):
        ch = BluetoothChannel("00-06-66-aa-bb-cc", adapter=MockBluetoothAdapter(),
                              clock=MockClock(), socket_factory=SocketFactory())
        assert ch.target == MAC


class TestDiscovery:
    def test_discovery_cancelled_before_connect(self):
        adapter = MockBluetoothAdapter(discovering=True, stop_after_polls=2)
        clock = MockClock()
        ch = bt_channel(SocketFactory(), adapter=adapter, clock=clock)
        ch.open()
        assert adapter.cancel_calls == 1
        assert clock.sleeps == [0.05, 0.05, SETTLE_DELAY_S]
        ch.close()

    def test_discovery_wait_is_bounded(self):
        adapter = MockBluetoothAdapter(discovering=True, stop_after_polls=10_000)
        clock = MockClock()
        ch = bt_channel(SocketFactory(), adapter=adapter, clock=clock)
        ch.open()
        polls = clock.sleeps[:-1]
        assert 0.5 <= sum(polls) <= 0.56
        assert clock.sleeps[-1] == SETTLE_DELAY_S
        ch.close()

    def test_state_queries_share_the_wait_budget(self):
        adapter = MockBluetoothAdapter(discovering=True, stop_after_polls=10_000)
        ch = bt_channel(SocketFactory(), adapter=adapter, clock=MockClock())
        ch.open()
        first, *polls = adapter.query_timeouts
        assert first == 0.5
        assert polls
        assert all(0 < t <= 0.5 for t in polls)
        assert polls == sorted(polls, reverse=True)
        ch.close()

    def test_settle_delay_without_discovery(self):
        adapter = MockBluetoothAdapter()
        clock = MockClock()
        ch = bt_channel(SocketFactory(), adapter=adapter, clock=clock)
        ch.open()
        assert adapter.cancel_calls == 0
        assert clock.sleeps == [SETTLE_DELAY_S]
        ch.close()


class TestConcurrentOpen:
    def test_gate_serializes_opens(self):
        gate = InstrumentedGate()
        adapter = MockBluetoothAdapter(discovering=True, cancel_hold_s=0.02)
        clock = MockClock()
        channels = [
            BluetoothChannel(mac, adapter=adapter, gate=gate, clock=clock,
                             socket_factory=SocketFactory("ok", connect_delay=0.05))
            for mac in ("00:06:66:00:00:01", "00:06:66:00:00:02")
        ]
        errors = []

        def opener(ch):
            try:
                ch.open()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=opener, args=(ch,), name=f"open-{i}")
                   for i, ch in enumerate(channels)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert errors == []
        assert gate.max_concurrency_seen == 1
        assert adapter.max_concurrent_cancels <= 1
        assert [kind for kind, _ in gate.events] == ["acquire", "release", "acquire", "release"]
        assert all(ch.is_open for ch in channels)
        for ch in channels:
            ch.close()


class TestBluetoothIO:
    def test_read_bytes_then_eof(self):
        ch = bt_channel(SocketFactory(incoming=b"\x01\xff"))
        ch.open()
        assert ch.read_byte() == 1
        assert ch.read_byte() == 255
        with pytest.raises(ChannelIOError, match="End of stream"):
            ch.read_byte()
        ch.close()

    def test_read_before_open(self):
        ch = bt_channel(SocketFactory())
        with pytest.raises(ChannelIOError):
            ch.read_byte()
        with pytest.raises(ChannelIOError):
            ch.write_bytes(b"x")

    def test_write_slice_and_flush(self):
        factory = SocketFactory()
        ch = bt_channel(factory)
        ch.open()
        ch.write_bytes(b"abcdef", 2, 3)
        ch.write_bytes(b"xy")
        writer = factory.created[0].writer
        assert bytes(writer.data) == b"cdexy"
        assert writer.flushes == 2
        ch.close()

    def test_close_is_idempotent(self):
        factory = SocketFactory()
        ch = bt_channel(factory)
        ch.open()
        ch.close()
        ch.close()
        assert not ch.is_open
        assert factory.created[0].closed
        assert factory.created[0].writer.closed
        with pytest.raises(ChannelIOError):
            ch.read_byte()

    def test_open_twice_is_noop(self):
        factory = SocketFactory()
        ch = bt_channel(factory)
        ch.open()
        ch.open()
        assert len(factory.created) == 1
        ch.close()

    def test_reopen_after_drop_closes_old_socket(self):
        factory = SocketFactory()
        ch = bt_channel(factory)
        ch.open()
        first = factory.created[0]
        first.connected_to = None
        assert not ch.is_open

        ch.open()
        assert ch.is_open
        assert len(factory.created) == 2
        assert first.closed
        assert first.writer.closed
        ch.close()
        assert factory.created[1].closed

    def test_context_manager(self):
        factory = SocketFactory()
        with bt_channel(factory) as ch:
            assert ch.is_open
        assert factory.created[0].closed


class TestDeviceLocking:
    def test_second_holder_rejected(self):
        first = bt_channel(SocketFactory(), lock_device=True)
        second = bt_channel(SocketFactory(), lock_device=True)
        first.open()
        try:
            with pytest.raises(ChannelIOError, match="in use"):
                second.open()
        finally:
            first.close()
        second.open()
        second.close()

    def test_lock_released_when_open_fails(self):
        failing = bt_channel(SocketFactory("refuse"), lock_device=True)
        with pytest.raises(ChannelIOError):
            failing.open()
        ok = bt_channel(SocketFactory(), lock_device=True)
        ok.open()
        ok.close()


class FakeSerial:
    """pyserial stand-in. Exclusive opens fail when ``busy``."""

    instances = []

    def __init__(self, busy=False, incoming=b""):
        self.busy = busy
        self.port = None
        self.baudrate = None
        self.timeout = "unset"
        self.write_timeout = "unset"
        self.exclusive = None
        self.is_open = False
        self._rx = bytearray(incoming)
        self.written = bytearray()
        self.resets = []
        FakeSerial.instances.append(self)

    def open(self):
        if self.busy and self.exclusive:
            raise serial.SerialException("Could not exclusively lock port")
        self.is_open = True

    def close(self):
        self.is_open = False

    def read(self, size=1):
        if not self.is_open:
            raise serial.PortNotOpenError()
        data = bytes(self._rx[:size])
        del self._rx[:size]
        return data

    def write(self, data):
        self.written.extend(data)
        return len(data)

    def flush(self):
        pass

    def reset_input_buffer(self):
        self.resets.append("input")

    def reset_output_buffer(self):
        self.resets.append("output")


def serial_channel(factory, **kwargs):
    return SerialChannel(
        "/dev/ttyFAKE0",
        baud=kwargs.pop("baud", 115200),
        adapter=kwargs.pop("adapter", None) or MockBluetoothAdapter(),
        gate=InstrumentedGate(),
        clock=MockClock(),
        serial_factory=factory,
        **kwargs,
    )


class TestSerialChannel:
    def setup_method(self):
        FakeSerial.instances = []

    def test_exclusive_first(self):
        ch = serial_channel(lambda: FakeSerial())
        ch.open()
        port = FakeSerial.instances[0]
        assert len(FakeSerial.instances) == 1
        assert port.exclusive is True
        assert port.port == "/dev/ttyFAKE0"
        assert port.baudrate == 115200
        assert port.timeout is None
        assert ch.is_open
        ch.close()
        assert not port.is_open

    def test_shared_fallback(self):
        ch = serial_channel(lambda: FakeSerial(busy=True))
        ch.open()
        exclusive, shared = FakeSerial.instances
        assert exclusive.exclusive is True and not exclusive.is_open
        assert shared.exclusive is None and shared.is_open
        ch.close()

    def test_io(self):
        ch = serial_channel(lambda: FakeSerial(incoming=b"\x07"))
        ch.open()
        assert ch.read_byte() == 7
        with pytest.raises(ChannelIOError):
            ch.read_byte()
        ch.write_bytes(b"hello", 1, 2)
        ch.flush()
        ch.flush_input()
        port = FakeSerial.instances[0]
        assert bytes(port.written) == b"el"
        assert port.resets == ["output", "input"]
        ch.close()

    def test_read_after_close(self):
        ch = serial_channel(lambda: FakeSerial())
        ch.open()
        ch.close()
        with pytest.raises(ChannelIOError):
            ch.read_byte()

    def test_empty_port_name(self):
        ch = SerialChannel("  ", adapter=MockBluetoothAdapter(), clock=MockClock(),
                           serial_factory=lambda: FakeSerial())
        with pytest.raises(ConfigurationError):
            ch.open()

    def test_missing_port(self):
        ch = serial_channel(lambda: FakeSerial(), adapter=MockBluetoothAdapter(available=False))
        with pytest.raises(ConfigurationError):
            ch.open()
        assert FakeSerial.instances == []
