"""
Consumer-facing sensor session.

SensorSession hides which transport is in use. Local transports (serial,
Bluetooth) hand the open channel to the external firmware driver; the
relay transport talks to a BridgeSession through RelayChannel. Either
way, subscribers receive decoded SampleRecords.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from functools import partial
from typing import Any, Callable, List, Optional

from .channels import BluetoothChannel, SerialChannel
from .config import DeviceConfig, SensorFlags
from .decoder import SampleRecord, decode_signal_map
from .driver import configure_driver, quantize_sampling_rate, sensor_bitmap
from .errors import ChannelIOError, ConfigurationError, NotConnectedError
from .gate import ConnectionGate
from .implementations import RealClock
from .interfaces import (
    BoardDetectionResult,
    ClockInterface,
    ConnectionState,
    FirmwareDriver,
    TransportChannel,
    TransportKind,
)
from .probe import ExpansionBoardProbe, classify_board
from .relay_channel import RelayChannel

logger = logging.getLogger(__name__)

SampleCallback = Callable[[SampleRecord], None]
Dispatcher = Callable[[Callable[[], None]], None]
DriverFactory = Callable[[TransportChannel], FirmwareDriver]


def create_channel(
    config: DeviceConfig,
    gate: Optional[ConnectionGate] = None,
    clock: Optional[ClockInterface] = None,
) -> TransportChannel:
    """Build the channel implementation ``config.transport`` names."""
    if config.transport == TransportKind.SERIAL:
        return SerialChannel(
            config.address,
            baud=config.baud,
            gate=gate,
            clock=clock,
            connect_timeout_ms=config.connect_timeout_ms,
            lock_device=config.lock_device,
        )
    if config.transport == TransportKind.BLUETOOTH:
        return BluetoothChannel(
            config.address,
            channel=config.rfcomm_channel,
            gate=gate,
            clock=clock,
            connect_timeout_ms=config.connect_timeout_ms,
            lock_device=config.lock_device,
        )
    if config.transport == TransportKind.RELAY:
        return RelayChannel(
            config.relay_endpoint,
            config.target_mac,
            sensors=config.sensors,
            sampling_rate=config.sampling_rate,
        )
    raise ConfigurationError(f"Unknown transport: {config.transport!r}")


class Subscription:
    """Handle returned by :meth:`SensorSession.subscribe`."""

    def __init__(self, session: "SensorSession", callback: SampleCallback):
        self._session = session
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._active = False
            self._session._remove_subscription(self)

    def _deliver(self, record: SampleRecord) -> None:
        if self._active:
            self._callback(record)


class SensorSession:
    """
    One sensor, one transport, any number of sample subscribers.

    Args:
        config: Device and stream configuration.
        driver_factory: Wraps an open local channel in the firmware
            driver. Required for serial and Bluetooth transports.
        channel_factory: Overrides :func:`create_channel` (tests).
        gate: Connection gate shared by local channels.
        clock: Clock used for configuration settle delays.
        dispatcher: Runs each subscriber call; defaults to calling inline
            on the receive thread. Pass e.g. ``loop.call_soon_threadsafe``
            to move delivery onto another thread.
        probe: Expansion board probe.
    """

    def __init__(
        self,
        config: DeviceConfig,
        driver_factory: Optional[DriverFactory] = None,
        channel_factory: Optional[Callable[[DeviceConfig], TransportChannel]] = None,
        gate: Optional[ConnectionGate] = None,
        clock: Optional[ClockInterface] = None,
        dispatcher: Optional[Dispatcher] = None,
        probe: Optional[ExpansionBoardProbe] = None,
    ):
        self._config = config
        self._driver_factory = driver_factory
        self._clock = clock or RealClock()
        self._channel_factory = channel_factory or (
            lambda cfg: create_channel(cfg, gate=gate, clock=self._clock)
        )
        self._dispatcher = dispatcher
        self._probe = probe or ExpansionBoardProbe(self._clock)

        self._lock = threading.RLock()
        # separate from _lock: delivery runs on the receive thread while
        # start_streaming() may hold _lock waiting on that same thread
        self._subs_lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self._channel: Optional[TransportChannel] = None
        self._driver: Optional[FirmwareDriver] = None
        self._state = ConnectionState.DISCONNECTED
        self.on_exg_mode: Optional[Callable[[str], None]] = None

    @property
    def config(self) -> DeviceConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.STREAMING)

    @property
    def is_streaming(self) -> bool:
        return self._state == ConnectionState.STREAMING

    @property
    def channel(self) -> Optional[TransportChannel]:
        return self._channel

    @property
    def driver(self) -> Optional[FirmwareDriver]:
        return self._driver

    @property
    def _is_relay(self) -> bool:
        return self._config.transport == TransportKind.RELAY

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def connect(self) -> None:
        """Connect, or raise after releasing everything partially opened."""
        with self._lock:
            if self.is_connected:
                return
            self._config.validate()
            if not self._is_relay and self._driver_factory is None:
                raise ConfigurationError(
                    f"{self._config.transport.value} transport needs a firmware driver factory"
                )

            self._state = ConnectionState.CONNECTING
            logger.info("Connecting %s over %s (%s)",
                        self._config.device_id, self._config.transport.value, self._config.address)
            try:
                self._channel = self._channel_factory(self._config)
                self._channel.open()
                if self._is_relay:
                    self._attach_relay()
                else:
                    self._attach_driver()
            except BaseException:
                self._teardown()
                self._state = ConnectionState.ERROR
                raise

            self._state = ConnectionState.CONNECTED
            logger.info("Connected %s", self._config.device_id)

    def _attach_relay(self) -> None:
        bridge = self._channel.session
        bridge.add_sample_listener(self._deliver)
        bridge.on_exg_mode = self._on_exg_mode
        if bridge.exg_mode:
            # config_changed can land before the callback is wired
            self._on_exg_mode(bridge.exg_mode)

    def _attach_driver(self) -> None:
        driver = self._driver_factory(self._channel)
        driver.packet_callback = self._on_packet
        self._driver = driver
        driver.connect()
        if not driver.is_connected():
            raise ChannelIOError(f"Firmware driver did not connect to {self._config.address}")
        try:
            logger.info("Firmware version: %s", driver.get_firmware_version())
        except Exception as e:
            logger.debug("Firmware version query failed: %s", e)

    def disconnect(self) -> None:
        """Stop and release everything. Never raises."""
        with self._lock:
            if self._state == ConnectionState.STREAMING:
                self.stop_streaming()
            self._teardown()
            self._state = ConnectionState.DISCONNECTED
            logger.info("Disconnected %s", self._config.device_id)

    def _teardown(self) -> None:
        driver, self._driver = self._driver, None
        channel, self._channel = self._channel, None
        if driver is not None:
            driver.packet_callback = None
            try:
                driver.disconnect()
            except Exception as e:
                logger.warning("Driver disconnect failed: %s", e)
        if channel is not None:
            bridge = getattr(channel, "session", None)
            if bridge is not None:
                bridge.remove_sample_listener(self._deliver)
                bridge.on_exg_mode = None
            try:
                channel.close()
            except Exception as e:
                logger.warning("Channel close failed: %s", e)

    def start_streaming(self) -> None:
        with self._lock:
            self._require_connected()
            if self._state == ConnectionState.STREAMING:
                return
            if self._is_relay:
                self._channel.call(self._channel.session.start_streaming())
            else:
                applied = configure_driver(self._driver, self._config, self._clock.sleep)
                self._config.sampling_rate = applied
                self._driver.start_streaming()
            self._state = ConnectionState.STREAMING
            logger.info("Streaming %s", self._config.device_id)

    def stop_streaming(self) -> None:
        """Best effort; failures are logged."""
        with self._lock:
            if self._state != ConnectionState.STREAMING:
                return
            try:
                if self._is_relay and self._channel.in_loop_thread:
                    self._channel.post(self._channel.session.stop_streaming())
                elif self._is_relay:
                    self._channel.call(self._channel.session.stop_streaming())
                else:
                    self._driver.stop_streaming()
            except Exception as e:
                logger.warning("Stop streaming failed: %s", e)
            self._state = ConnectionState.CONNECTED

    def _require_connected(self) -> None:
        if not self.is_connected:
            raise NotConnectedError(f"{self._config.device_id} is not connected")

    # -------------------------------------------------------------------
    # Samples
    # -------------------------------------------------------------------

    def subscribe(self, callback: SampleCallback) -> Subscription:
        sub = Subscription(self, callback)
        with self._subs_lock:
            self._subscriptions.append(sub)
        return sub

    def _remove_subscription(self, sub: Subscription) -> None:
        with self._subs_lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def _on_packet(self, signals: Any) -> None:
        try:
            record = decode_signal_map(signals)
        except Exception:
            logger.exception("Cannot decode driver packet")
            return
        self._deliver(record)

    def _deliver(self, record: SampleRecord) -> None:
        if not record.has_any_value():
            return
        with self._subs_lock:
            subs = list(self._subscriptions)
        for sub in subs:
            try:
                if self._dispatcher is not None:
                    self._dispatcher(partial(self._safe_call, sub, record))
                else:
                    sub._deliver(record)
            except Exception:
                logger.exception("Sample subscriber failed")

    @staticmethod
    def _safe_call(sub: Subscription, record: SampleRecord) -> None:
        try:
            sub._deliver(record)
        except Exception:
            logger.exception("Sample subscriber failed")

    def _on_exg_mode(self, mode: str) -> None:
        if self.on_exg_mode is not None:
            self.on_exg_mode(mode)

    # -------------------------------------------------------------------
    # Board detection
    # -------------------------------------------------------------------

    def detect_board(self) -> BoardDetectionResult:
        """Advisory; UNKNOWN when not connected or on any failure."""
        if not self.is_connected:
            return classify_board(None)
        target = self._channel.session if self._is_relay else self._driver
        return self._probe.detect(target)

    # -------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------

    def set_sampling_rate(self, hz: float) -> float:
        """Apply the nearest supported rate and return it."""
        with self._lock:
            if self._is_relay and self.is_connected:
                applied = self._channel.call(self._channel.session.set_sampling_rate(hz))
                self._config.sampling_rate = applied
                return applied

            _, applied = quantize_sampling_rate(hz)
            self._config.sampling_rate = applied
            if self._state == ConnectionState.STREAMING:
                # the firmware only takes a new rate with sensors off
                self._driver.stop_streaming()
                self._clock.sleep(0.15)
                configure_driver(self._driver, self._config, self._clock.sleep)
                self._driver.start_streaming()
            elif self.is_connected:
                self._driver.write_sampling_rate(applied)
            return applied

    def set_sensors(self, flags: SensorFlags) -> None:
        with self._lock:
            self._config.sensors = flags
            if not self.is_connected:
                return
            if self._is_relay:
                self._channel.call(self._channel.session.push_config(sensors=flags))
            elif self._state == ConnectionState.CONNECTED:
                self._driver.write_sensors(sensor_bitmap(flags))

    def set_sensor_enabled(self, name: str, enabled: bool) -> None:
        names = {f.name for f in dataclasses.fields(SensorFlags)}
        if name not in names:
            raise ConfigurationError(f"Unknown sensor: {name!r}")
        self.set_sensors(dataclasses.replace(self._config.sensors, **{name: bool(enabled)}))

    def set_accel_range(self, value: int) -> None:
        self._config.accel_range = value
        if self._local_connected():
            self._driver.write_accel_range(value)

    def set_gyro_range(self, value: int) -> None:
        self._config.gyro_range = value
        if self._local_connected():
            self._driver.write_gyro_range(value)

    def set_mag_range(self, value: int) -> None:
        self._config.mag_range = value
        if self._local_connected():
            self._driver.write_mag_range(value)

    def set_low_power(
        self,
        accel: Optional[bool] = None,
        gyro: Optional[bool] = None,
        mag: Optional[bool] = None,
    ) -> None:
        if accel is not None:
            self._config.low_power_accel = accel
            if self._local_connected():
                self._driver.set_low_power_accel(accel)
        if gyro is not None:
            self._config.low_power_gyro = gyro
            if self._local_connected():
                self._driver.set_low_power_gyro(gyro)
        if mag is not None:
            self._config.low_power_mag = mag
            if self._local_connected():
                self._driver.set_low_power_mag(mag)

    def set_exg_bytes(self, chip1: bytes, chip2: bytes) -> None:
        for name, value in (("chip1", chip1), ("chip2", chip2)):
            if len(value) != 10:
                raise ConfigurationError(f"EXG {name} configuration must be 10 bytes, got {len(value)}")
        self._config.exg_chip1 = bytes(chip1)
        self._config.exg_chip2 = bytes(chip2)
        if self._local_connected():
            self._driver.write_exg_configuration(self._config.exg_chip1, self._config.exg_chip2)

    def set_internal_exp_power(self, enabled: bool) -> None:
        self._config.internal_exp_power = enabled
        if self._local_connected():
            self._driver.write_internal_exp_power(enabled)

    def _local_connected(self) -> bool:
        if self._is_relay:
            if self.is_connected:
                logger.debug("Setting stored locally; the relay has no message for it")
            return False
        return self._driver is not None and self.is_connected

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False
