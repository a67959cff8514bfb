"""Relay bridge session.

Talks to a relay process that owns the actual Bluetooth link and
republishes the sensor over a WebSocket. The handshake mirrors the local
transport's lifecycle::

    connect():  socket -> hello (hard) -> open (soft, 8x) -> set_config (soft)
    start():    open again if needed -> start (hard)
    stop():     stop (best effort)
    disconnect(): stop, close, tear down the socket (never raises)

One receive task owns the socket for its whole life. Sends from callers
are serialized by a lock.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import websockets

from ..config import RelayEndpoint, SensorFlags, is_valid_mac, normalize_mac
from ..decoder import SampleRecord, decode_json_sample, decode_raw_frame
from ..errors import ChannelIOError, ConfigurationError, HandshakeError, NotConnectedError
from . import protocol
from .protocol import MessageType

logger = logging.getLogger(__name__)

SampleListener = Callable[[SampleRecord], None]
BinaryListener = Callable[[bytes], None]


class BridgeState(Enum):
    DISCONNECTED = "disconnected"
    SOCKET_CONNECTING = "socket_connecting"
    HELLO_PENDING = "hello_pending"
    SUBSCRIBING = "subscribing"
    CONFIGURING = "configuring"
    READY = "ready"
    STREAMING = "streaming"
    STOPPING = "stopping"
    CLOSED = "closed"


class PendingAcks:
    """
    Acknowledgment waiters, keyed by command kind.

    At most one request per command kind is outstanding at a time. Arming
    a kind again cancels the previous waiter; whoever was awaiting it sees
    no result and falls onto its timeout path.
    """

    HELLO = "hello"
    OPEN = "open"
    CONFIG = "config"
    START = "start"
    SAMPLING_RATE = "sampling_rate"

    # Kinds resolved negatively when the relay reports an error.
    FAIL_ON_ERROR = (OPEN, CONFIG, START, SAMPLING_RATE)

    def __init__(self):
        self._waiters: Dict[str, asyncio.Future] = {}

    def arm(self, kind: str) -> asyncio.Future:
        previous = self._waiters.get(kind)
        if previous is not None and not previous.done():
            previous.cancel()
        future = asyncio.get_running_loop().create_future()
        self._waiters[kind] = future
        return future

    def pending(self, kind: str) -> bool:
        future = self._waiters.get(kind)
        return future is not None and not future.done()

    def resolve(self, kind: str, value: Any) -> bool:
        """Complete the waiter for ``kind``. False if none was pending."""
        future = self._waiters.get(kind)
        if future is None or future.done():
            return False
        future.set_result(value)
        return True

    def fail(self, kinds=FAIL_ON_ERROR) -> None:
        for kind in kinds:
            self.resolve(kind, -1.0 if kind == self.SAMPLING_RATE else False)

    def cancel_all(self) -> None:
        for future in self._waiters.values():
            if not future.done():
                future.cancel()
        self._waiters.clear()


async def _wait(future: asyncio.Future, timeout: float) -> Any:
    """Result of ``future``, or None on timeout or if it was replaced."""
    done, _ = await asyncio.wait({future}, timeout=timeout)
    if future in done and not future.cancelled():
        return future.result()
    return None


class BridgeSession:
    """
    One relay connection for one target device.

    Args:
        endpoint: Relay WebSocket endpoint.
        mac: Bluetooth address of the device the relay should stream.
        sensors: Initial sensor toggles pushed with ``set_config``.
        sampling_rate: Initial sampling rate pushed with ``set_config``.
        connect: Coroutine factory opening the socket; defaults to
            ``websockets.connect``.
    """

    HELLO_TIMEOUT_S = 3.0
    OPEN_TIMEOUT_S = 0.6
    OPEN_ATTEMPTS = 8
    CONFIG_TIMEOUT_S = 6.0
    START_TIMEOUT_S = 12.0
    SAMPLING_RATE_TIMEOUT_S = 6.0
    PING_INTERVAL_S = 15
    STATS_INTERVAL_S = 1.0

    def __init__(
        self,
        endpoint: RelayEndpoint,
        mac: str,
        sensors: Optional[SensorFlags] = None,
        sampling_rate: float = 51.2,
        connect: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self._endpoint = endpoint
        self._mac = normalize_mac(mac) if is_valid_mac(mac) else mac
        self._sensors = sensors or SensorFlags()
        self._sampling_rate = sampling_rate
        self._connect = connect or websockets.connect

        self._ws = None
        self._rx_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._acks = PendingAcks()

        self._state = BridgeState.DISCONNECTED
        self._connected = False
        self._subscribed = False
        self._streaming = False
        self._exg_mode = ""
        self._last_error = ""

        self._sample_listeners: List[SampleListener] = []
        self._binary_listeners: List[BinaryListener] = []
        self.on_exg_mode: Optional[Callable[[str], None]] = None

        self._stats_started = 0.0
        self._stats_frames = 0
        self._stats_bytes = 0

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    @property
    def streaming(self) -> bool:
        return self._streaming

    @property
    def mac(self) -> str:
        return self._mac

    @property
    def endpoint(self) -> RelayEndpoint:
        return self._endpoint

    @property
    def sensors(self) -> SensorFlags:
        return self._sensors

    @property
    def sampling_rate(self) -> float:
        return self._sampling_rate

    @property
    def exg_mode(self) -> str:
        return self._exg_mode

    @property
    def last_error(self) -> str:
        return self._last_error

    def add_sample_listener(self, listener: SampleListener) -> None:
        self._sample_listeners.append(listener)

    def remove_sample_listener(self, listener: SampleListener) -> None:
        if listener in self._sample_listeners:
            self._sample_listeners.remove(listener)

    def add_binary_listener(self, listener: BinaryListener) -> None:
        self._binary_listeners.append(listener)

    def remove_binary_listener(self, listener: BinaryListener) -> None:
        if listener in self._binary_listeners:
            self._binary_listeners.remove(listener)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the socket and run the handshake.

        Raises:
            ConfigurationError: target MAC is invalid.
            ChannelIOError: the socket could not be opened.
            HandshakeError: ``hello`` was rejected or not acknowledged.
        """
        if self._connected:
            return
        if not is_valid_mac(self._mac):
            raise ConfigurationError(f"Invalid relay target address: {self._mac!r}")

        url = self._endpoint.url
        self._state = BridgeState.SOCKET_CONNECTING
        logger.info("Connecting to relay %s for %s", url, self._mac)
        try:
            ws = await self._connect(url, ping_interval=self.PING_INTERVAL_S)
        except Exception as e:
            self._state = BridgeState.DISCONNECTED
            raise ChannelIOError(f"Unable to connect to relay {url}: {e}") from e

        self._ws = ws
        self._connected = True
        self._rx_task = asyncio.create_task(self._receive_loop(ws))

        try:
            self._state = BridgeState.HELLO_PENDING
            future = self._acks.arm(PendingAcks.HELLO)
            await self._send(protocol.hello())
            if not await _wait(future, self.HELLO_TIMEOUT_S):
                raise HandshakeError("hello_ack timeout/failed")

            self._state = BridgeState.SUBSCRIBING
            self._subscribed = False
            await self.ensure_subscribed()

            self._state = BridgeState.CONFIGURING
            await self.push_config()
            await self._send(protocol.get_config(self._mac))
        except BaseException:
            await self._close_socket()
            self._state = BridgeState.DISCONNECTED
            raise

        self._state = BridgeState.READY
        logger.info("Relay session ready for %s", self._mac)

    async def ensure_subscribed(self) -> bool:
        """Ask the relay to subscribe to the target, retrying a few times.

        Returns whether the relay confirmed. Callers go on regardless: the
        relay may still be bringing its own link up, and ``start`` asks
        again.
        """
        if self._subscribed:
            return True
        for attempt in range(1, self.OPEN_ATTEMPTS + 1):
            future = self._acks.arm(PendingAcks.OPEN)
            await self._send(protocol.open_device(self._mac))
            await _wait(future, self.OPEN_TIMEOUT_S)
            if self._subscribed:
                logger.debug("Subscribed to %s on attempt %d", self._mac, attempt)
                return True
        logger.warning(
            "Relay did not confirm subscription to %s after %d attempts; continuing",
            self._mac, self.OPEN_ATTEMPTS,
        )
        return False

    async def push_config(
        self,
        sensors: Optional[SensorFlags] = None,
        sampling_rate: Optional[float] = None,
    ) -> bool:
        """Send ``set_config``. A negative or missing ack is only logged."""
        if sensors is not None:
            self._sensors = sensors
        if sampling_rate is not None:
            self._sampling_rate = sampling_rate

        future = self._acks.arm(PendingAcks.CONFIG)
        await self._send(protocol.set_config(self._sensors, self._sampling_rate))
        ok = await _wait(future, self.CONFIG_TIMEOUT_S)
        if ok is None:
            logger.warning("No config_ack from relay within %.0f ms", self.CONFIG_TIMEOUT_S * 1000)
        elif not ok:
            logger.warning("Relay rejected config: %s", self._last_error or "no reason given")
        return bool(ok)

    async def start_streaming(self) -> None:
        """Start the stream. Raises HandshakeError without a positive ``start_ack``."""
        if not self._connected:
            await self.connect()

        await self.ensure_subscribed()

        future = self._acks.arm(PendingAcks.START)
        await self._send(protocol.start(self._mac))
        if not await _wait(future, self.START_TIMEOUT_S):
            raise HandshakeError("start_ack timeout/failed")

        self._streaming = True
        self._state = BridgeState.STREAMING
        logger.info("Relay streaming %s", self._mac)

    async def stop_streaming(self) -> None:
        if self._ws is None:
            return
        self._state = BridgeState.STOPPING
        try:
            await self._send(protocol.stop())
        except Exception as e:
            logger.debug("Sending stop failed: %s", e)
        self._streaming = False
        if self._connected:
            self._state = BridgeState.READY

    async def set_sampling_rate(self, hz: float) -> float:
        """Ask the relay for ``hz``; returns the rate the firmware applied.

        Raises:
            NotConnectedError: no relay connection.
            TimeoutError: no ack within 6 s.
            HandshakeError: the relay refused or applied nothing.
        """
        if hz <= 0:
            raise ValueError(f"Sampling rate must be positive: {hz}")
        if not self._connected:
            raise NotConnectedError("Relay session is not connected")

        future = self._acks.arm(PendingAcks.SAMPLING_RATE)
        await self._send(protocol.set_sampling_rate(self._mac, hz))
        applied = await _wait(future, self.SAMPLING_RATE_TIMEOUT_S)
        if applied is None:
            raise TimeoutError("set_sampling_rate_ack timeout")
        if applied <= 0:
            raise HandshakeError("set_sampling_rate failed")
        self._sampling_rate = applied
        logger.info("Relay applied sampling rate %.4f Hz (requested %.4f)", applied, hz)
        return applied

    async def disconnect(self) -> None:
        """Stop, close and tear down. Never raises."""
        try:
            await self.stop_streaming()
            if self._ws is not None:
                try:
                    await self._send(protocol.close())
                except Exception as e:
                    logger.debug("Sending close failed: %s", e)
            await self._close_socket()
        except Exception as e:
            logger.warning("Error during relay disconnect: %s", e)
        self._state = BridgeState.CLOSED
        logger.info("Relay session for %s closed", self._mac)

    async def send_binary(self, data: bytes) -> None:
        """Send a binary data-plane frame."""
        async with self._send_lock:
            if self._ws is None:
                raise NotConnectedError("Relay session is not connected")
            await self._ws.send(bytes(data))

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    async def _send(self, msg: dict) -> None:
        text = protocol.encode(msg)
        async with self._send_lock:
            if self._ws is None:
                raise NotConnectedError("Relay session is not connected")
            logger.debug("-> %s", text)
            await self._ws.send(text)

    async def _close_socket(self) -> None:
        self._connected = False
        self._streaming = False
        self._subscribed = False

        ws, self._ws = self._ws, None
        task, self._rx_task = self._rx_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Closing relay socket: %s", e)
        self._acks.cancel_all()

    async def _receive_loop(self, ws) -> None:
        self._stats_started = time.monotonic()
        try:
            async for frame in ws:
                self._count(frame)
                try:
                    self._handle_frame(frame)
                except Exception:
                    logger.exception("Error handling relay frame")
        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Relay connection closed: %s", e)
        except OSError as e:
            logger.warning("Relay receive loop stopped: %s", e)
        finally:
            self._connected = False
            self._streaming = False
            if self._state is not BridgeState.CLOSED:
                self._state = BridgeState.DISCONNECTED

    def _count(self, frame: Union[str, bytes]) -> None:
        self._stats_frames += 1
        self._stats_bytes += len(frame)
        now = time.monotonic()
        elapsed = now - self._stats_started
        if elapsed >= self.STATS_INTERVAL_S:
            logger.debug(
                "rx %d frames, %d bytes in %.1fs",
                self._stats_frames, self._stats_bytes, elapsed,
            )
            self._stats_started = now
            self._stats_frames = 0
            self._stats_bytes = 0

    def _handle_frame(self, frame: Union[str, bytes]) -> None:
        text = protocol.as_text(frame)
        if text is None:
            self._handle_binary(bytes(frame))
            return
        msg = protocol.parse(text)
        if msg is None:
            logger.debug("Ignoring non-control frame: %.80s", text)
            return
        self._dispatch(msg)

    def _handle_binary(self, data: bytes) -> None:
        logger.debug("<- binary %d bytes: %s", len(data), data[:16].hex())
        for listener in list(self._binary_listeners):
            try:
                listener(data)
            except Exception:
                logger.exception("Binary listener failed")
        record = decode_raw_frame(data)
        if record is not None:
            self._publish(record)

    def _dispatch(self, msg: dict) -> None:
        kind = msg["type"]
        if kind != MessageType.SAMPLE.value:
            logger.debug("<- %s", msg)

        if kind == MessageType.HELLO_ACK.value:
            self._acks.resolve(PendingAcks.HELLO, protocol.ack_ok(msg))
        elif kind == MessageType.OPEN_ACK.value:
            ok = protocol.ack_ok(msg)
            self._subscribed = ok
            self._acks.resolve(PendingAcks.OPEN, ok)
        elif kind == MessageType.CONFIG_ACK.value:
            ok = protocol.ack_ok(msg)
            if not ok and protocol.error_text(msg):
                self._last_error = protocol.error_text(msg)
            self._acks.resolve(PendingAcks.CONFIG, ok)
        elif kind == MessageType.START_ACK.value:
            self._acks.resolve(PendingAcks.START, protocol.ack_ok(msg))
        elif kind == MessageType.SET_SAMPLING_RATE_ACK.value:
            self._acks.resolve(PendingAcks.SAMPLING_RATE, protocol.applied_rate(msg))
        elif kind == MessageType.CONFIG_CHANGED.value:
            self._apply_remote_config(msg.get("cfg"))
        elif kind == MessageType.SAMPLE.value:
            self._publish(decode_json_sample(msg))
        elif kind == MessageType.ERROR.value:
            self._last_error = protocol.error_text(msg)
            logger.warning("Relay error: %s", self._last_error or "(no message)")
            self._acks.fail()
        else:
            logger.debug("Unhandled relay message type %r", kind)

    def _apply_remote_config(self, cfg: Any) -> None:
        if not isinstance(cfg, dict):
            return
        self._sensors = dataclasses.replace(SensorFlags.from_wire(cfg), exg=self._sensors.exg)

        rate = cfg.get("SamplingRate")
        if isinstance(rate, (int, float)) and not isinstance(rate, bool) and rate > 0:
            self._sampling_rate = float(rate)

        mode = cfg.get("exg_mode")
        if isinstance(mode, str):
            normalized = mode.strip().lower()
            if normalized != self._exg_mode:
                self._exg_mode = normalized
                logger.info("Relay EXG mode: %s", normalized or "(none)")
                if self.on_exg_mode is not None:
                    self.on_exg_mode(normalized)

    def _publish(self, record: SampleRecord) -> None:
        if not record.has_any_value():
            return
        for listener in list(self._sample_listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("Sample listener failed")
