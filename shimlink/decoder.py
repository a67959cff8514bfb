"""Sample decoding into a normalized :class:`SampleRecord`.

Three input shapes are understood:

- relay ``sample`` messages (parsed JSON objects),
- the raw 10-byte binary frame some relays send on the data plane:
  ``<uint32 timestamp><int16 ax><int16 ay><int16 az>``, little-endian,
- calibrated signal maps reported by the legacy firmware driver.

Every channel group is independently optional.
"""

from __future__ import annotations

import logging
import math
import struct
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

RAW_FRAME_FMT = "<Ihhh"
RAW_FRAME_SIZE = struct.calcsize(RAW_FRAME_FMT)  # 10
ACCEL_SCALE = 16384.0  # counts per g


@dataclass(frozen=True)
class Vector3:
    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None

    def has_any_value(self) -> bool:
        return self.x is not None or self.y is not None or self.z is not None


@dataclass(frozen=True)
class SampleRecord:
    """One decoded sample. ``None`` means the channel was not reported."""
    timestamp: int = 0
    low_noise_accel: Optional[Vector3] = None
    wide_range_accel: Optional[Vector3] = None
    gyro: Optional[Vector3] = None
    mag: Optional[Vector3] = None
    temperature: Optional[float] = None
    pressure: Optional[float] = None
    battery_voltage: Optional[float] = None
    ext_a6: Optional[float] = None
    ext_a7: Optional[float] = None
    ext_a15: Optional[float] = None
    exg1: Optional[float] = None
    exg2: Optional[float] = None

    def has_any_value(self) -> bool:
        """True if at least one channel holds a number."""
        for f in fields(self):
            if f.name == "timestamp":
                continue
            value = getattr(self, f.name)
            if isinstance(value, Vector3):
                if value.has_any_value():
                    return True
            elif value is not None:
                return True
        return False

    def to_dict(self) -> dict[str, Any]:
        """Flat JSON-friendly view; absent channels are omitted."""
        out: dict[str, Any] = {"ts": self.timestamp}
        for f in fields(self):
            if f.name == "timestamp":
                continue
            value = getattr(self, f.name)
            if isinstance(value, Vector3):
                axes = {k: v for k, v in (("x", value.x), ("y", value.y), ("z", value.z)) if v is not None}
                if axes:
                    out[f.name] = axes
            elif value is not None:
                out[f.name] = value
        return out


def _number(value: Any) -> Optional[float]:
    # bool is an int subclass but never a sample value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return float(value)


def _field(obj: Any, name: str) -> Optional[float]:
    if not isinstance(obj, dict):
        return None
    return _number(obj.get(name))


def _vector(obj: Any) -> Optional[Vector3]:
    vec = Vector3(_field(obj, "x"), _field(obj, "y"), _field(obj, "z"))
    return vec if vec.has_any_value() else None


def _timestamp(value: Any) -> int:
    number = _number(value)
    if number is None:
        return 0
    return max(0, int(number))


def decode_json_sample(msg: Mapping[str, Any]) -> SampleRecord:
    """Decode a relay ``sample`` message."""
    ext = msg.get("ext")

    exg1 = _number(msg.get("exg1"))
    if exg1 is None:
        exg1 = _number(msg.get("Exg1"))
    exg2 = _number(msg.get("exg2"))
    if exg2 is None:
        exg2 = _number(msg.get("Exg2"))

    return SampleRecord(
        timestamp=_timestamp(msg.get("ts")),
        low_noise_accel=_vector(msg.get("lna")),
        wide_range_accel=_vector(msg.get("wra")),
        gyro=_vector(msg.get("gyro")),
        mag=_vector(msg.get("mag")),
        temperature=_number(msg.get("temp")),
        pressure=_number(msg.get("press")),
        battery_voltage=_number(msg.get("vbatt")),
        ext_a6=_field(ext, "a6"),
        ext_a7=_field(ext, "a7"),
        ext_a15=_field(ext, "a15"),
        exg1=exg1,
        exg2=exg2,
    )


def decode_raw_frame(payload: bytes) -> Optional[SampleRecord]:
    """Decode the 10-byte accelerometer frame.

    Returns None for frames shorter than 10 bytes; they are incomplete, not
    errors. Bytes past the first 10 are ignored.
    """
    if payload is None or len(payload) < RAW_FRAME_SIZE:
        return None
    ts, ax, ay, az = struct.unpack_from(RAW_FRAME_FMT, payload, 0)
    return SampleRecord(
        timestamp=ts,
        low_noise_accel=Vector3(ax / ACCEL_SCALE, ay / ACCEL_SCALE, az / ACCEL_SCALE),
    )


# Shimmer3 calibrated signal names as reported by the legacy driver.
SIGNAL_TIMESTAMP = "System Timestamp"

_VECTOR_SIGNALS = {
    "low_noise_accel": ("Low Noise Accelerometer X", "Low Noise Accelerometer Y", "Low Noise Accelerometer Z"),
    "wide_range_accel": ("Wide Range Accelerometer X", "Wide Range Accelerometer Y", "Wide Range Accelerometer Z"),
    "gyro": ("Gyroscope X", "Gyroscope Y", "Gyroscope Z"),
    "mag": ("Magnetometer X", "Magnetometer Y", "Magnetometer Z"),
}

# First name present wins; firmware revisions disagree on EXG naming.
_SCALAR_SIGNALS = {
    "temperature": ("Temperature",),
    "pressure": ("Pressure",),
    "battery_voltage": ("VSenseBatt", "V Sense Batt"),
    "ext_a6": ("External ADC A6",),
    "ext_a7": ("External ADC A7",),
    "ext_a15": ("External ADC A15",),
    "exg1": (
        "EXG_CH1", "EXG1 CH1", "EXG1_CH1", "EXG CH1",
        "ECG_CH1", "ECG CH1", "EMG_CH1", "EMG CH1",
        "ECG RA-LL", "ECG LL-RA", "ECG_RA-LL", "ECG_LL-RA",
    ),
    "exg2": (
        "EXG_CH2", "EXG2 CH1", "EXG2_CH1", "EXG CH2",
        "ECG_CH2", "ECG CH2", "EMG_CH2", "EMG CH2",
        "ECG LA-RA", "ECG_RA-LA", "ECG_LA-RA",
    ),
}


def decode_signal_map(signals: Mapping[str, Any]) -> SampleRecord:
    """Decode a ``{signal name: calibrated value}`` packet from the driver."""
    values: dict[str, Any] = {"timestamp": _timestamp(signals.get(SIGNAL_TIMESTAMP))}

    for attr, (nx, ny, nz) in _VECTOR_SIGNALS.items():
        vec = Vector3(_number(signals.get(nx)), _number(signals.get(ny)), _number(signals.get(nz)))
        values[attr] = vec if vec.has_any_value() else None

    for attr, names in _SCALAR_SIGNALS.items():
        values[attr] = None
        for name in names:
            number = _number(signals.get(name))
            if number is not None:
                values[attr] = number
                break

    return SampleRecord(**values)
