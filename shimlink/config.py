"""Device and session configuration.

A :class:`DeviceConfig` can be built in code, loaded from a YAML file with
:func:`load_config`, and overridden per field from ``SHIMLINK_<FIELD>``
environment variables.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from .errors import ConfigurationError
from .interfaces import TransportKind

logger = logging.getLogger(__name__)

ENV_PREFIX = "SHIMLINK_"

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}([:-][0-9A-Fa-f]{2}){5}$")


def is_valid_mac(address: str) -> bool:
    return bool(address) and bool(_MAC_RE.match(address.strip()))


def normalize_mac(address: str) -> str:
    return address.strip().replace("-", ":").upper()


@dataclass
class SensorFlags:
    """Per-sensor-family enable toggles."""
    low_noise_accelerometer: bool = True
    wide_range_accelerometer: bool = True
    gyroscope: bool = True
    magnetometer: bool = True
    pressure_temperature: bool = True
    battery: bool = True
    ext_a6: bool = True
    ext_a7: bool = True
    ext_a15: bool = True
    exg: bool = False

    # Key names used on the relay wire, in message order.
    WIRE_KEYS = (
        ("low_noise_accelerometer", "EnableLowNoiseAccelerometer"),
        ("wide_range_accelerometer", "EnableWideRangeAccelerometer"),
        ("gyroscope", "EnableGyroscope"),
        ("magnetometer", "EnableMagnetometer"),
        ("pressure_temperature", "EnablePressureTemperature"),
        ("battery", "EnableBattery"),
        ("ext_a6", "EnableExtA6"),
        ("ext_a7", "EnableExtA7"),
        ("ext_a15", "EnableExtA15"),
    )

    def to_wire(self) -> dict[str, bool]:
        return {wire: bool(getattr(self, attr)) for attr, wire in self.WIRE_KEYS}

    @classmethod
    def from_wire(cls, cfg: dict[str, Any]) -> "SensorFlags":
        """Build flags from a relay ``cfg`` object; anything but literal true is off."""
        return cls(**{attr: cfg.get(wire) is True for attr, wire in cls.WIRE_KEYS})


@dataclass
class RelayEndpoint:
    """WebSocket endpoint of the relay process."""
    host: str = "192.168.43.1"
    port: int = 8787
    path: str = "/"

    @property
    def url(self) -> str:
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"ws://{self.host}:{self.port}{path}"

    @classmethod
    def parse(cls, address: str) -> "RelayEndpoint":
        """Parse ``host[:port][/path]`` (an optional ``ws://`` prefix is ignored)."""
        text = address.strip()
        if text.startswith("ws://"):
            text = text[len("ws://"):]
        if not text:
            raise ConfigurationError("Relay address is empty")

        hostport, sep, path = text.partition("/")
        host, _, port_text = hostport.partition(":")
        if not host:
            raise ConfigurationError(f"Relay address has no host: {address!r}")
        port = cls.port
        if port_text:
            try:
                port = int(port_text)
            except ValueError:
                raise ConfigurationError(f"Relay port is not a number: {address!r}")
        if not 0 < port < 65536:
            raise ConfigurationError(f"Relay port out of range: {port}")
        return cls(host=host, port=port, path="/" + path if sep else "/")


@dataclass
class DeviceConfig:
    """Everything needed to reach and configure one sensor."""
    device_id: str = "shimmer"
    transport: TransportKind = TransportKind.SERIAL
    # Serial port name, Bluetooth MAC, or relay host:port/path.
    address: str = ""
    # Device MAC the relay should subscribe to (relay transport only).
    target_mac: str = ""
    baud: int = 115200
    rfcomm_channel: int = 1
    sampling_rate: float = 51.2
    sensors: SensorFlags = field(default_factory=SensorFlags)
    accel_range: int = 0
    gyro_range: int = 0
    mag_range: int = 1
    low_power_accel: bool = False
    low_power_gyro: bool = False
    low_power_mag: bool = False
    exg_chip1: Optional[bytes] = None
    exg_chip2: Optional[bytes] = None
    internal_exp_power: bool = False
    connect_timeout_ms: int = 8000
    lock_device: bool = False

    @property
    def relay_endpoint(self) -> RelayEndpoint:
        return RelayEndpoint.parse(self.address)

    def validate(self) -> None:
        """Raise ConfigurationError if the target cannot be valid."""
        if self.sampling_rate <= 0:
            raise ConfigurationError(f"Sampling rate must be positive: {self.sampling_rate}")
        if self.transport == TransportKind.SERIAL:
            if not self.address.strip():
                raise ConfigurationError("Serial port name is empty")
        elif self.transport == TransportKind.BLUETOOTH:
            if not is_valid_mac(self.address):
                raise ConfigurationError(f"Invalid Bluetooth address: {self.address!r}")
            if not 1 <= self.rfcomm_channel <= 30:
                raise ConfigurationError(f"RFCOMM channel out of range: {self.rfcomm_channel}")
        elif self.transport == TransportKind.RELAY:
            RelayEndpoint.parse(self.address)
            if not is_valid_mac(self.target_mac):
                raise ConfigurationError(f"Invalid relay target address: {self.target_mac!r}")
        for name, value in (("exg_chip1", self.exg_chip1), ("exg_chip2", self.exg_chip2)):
            if value is not None and len(value) != 10:
                raise ConfigurationError(f"{name} must be 10 bytes, got {len(value)}")


def _coerce(value: Any, current: Any, name: str) -> Any:
    """Convert a YAML/env value to the type of the field's current value."""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, TransportKind):
        try:
            return TransportKind(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unknown transport: {value!r}")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if name in ("exg_chip1", "exg_chip2"):
        if value is None:
            return None
        if isinstance(value, str):
            return bytes.fromhex(value)
        return bytes(value)
    return value if value is None else str(value)


def _apply(cfg: DeviceConfig, values: dict[str, Any], source: str) -> None:
    known = {f.name for f in dataclasses.fields(DeviceConfig)}
    for key, value in values.items():
        if key == "sensors":
            if not isinstance(value, dict):
                raise ConfigurationError(f"{source}: 'sensors' must be a mapping")
            flags = dataclasses.asdict(cfg.sensors)
            for flag, enabled in value.items():
                if flag not in flags:
                    raise ConfigurationError(f"{source}: unknown sensor '{flag}'")
                flags[flag] = _coerce(enabled, True, flag)
            cfg.sensors = SensorFlags(**flags)
            continue
        if key not in known:
            raise ConfigurationError(f"{source}: unknown setting '{key}'")
        try:
            setattr(cfg, key, _coerce(value, getattr(cfg, key), key))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{source}: bad value for '{key}': {e}")


def load_config(path: Optional[str] = None, environ: Optional[dict[str, str]] = None) -> DeviceConfig:
    """Load a DeviceConfig from YAML, then apply environment overrides.

    Environment variables are named ``SHIMLINK_<FIELD>`` (upper case), e.g.
    ``SHIMLINK_ADDRESS`` or ``SHIMLINK_SAMPLING_RATE``.
    """
    cfg = DeviceConfig()

    if path:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path}: top level must be a mapping")
        _apply(cfg, data, path)

    env = os.environ if environ is None else environ
    overrides = {}
    for f in dataclasses.fields(DeviceConfig):
        if f.name == "sensors":
            continue
        key = ENV_PREFIX + f.name.upper()
        if key in env:
            overrides[f.name] = env[key]
    if overrides:
        logger.debug("Config overrides from environment: %s", sorted(overrides))
        _apply(cfg, overrides, "environment")

    return cfg
