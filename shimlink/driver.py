"""
Legacy firmware driver glue.

The firmware-command driver itself is external (see
:class:`shimlink.interfaces.FirmwareDriver`). This module holds what the
session needs around it: the Shimmer3 sensor bitmap, sampling-rate
quantization, and the ordered configuration sequence the firmware
expects before ``start_streaming``.
"""

from __future__ import annotations

import enum
import logging
from typing import Callable, Tuple

from .config import DeviceConfig, SensorFlags
from .interfaces import FirmwareDriver

logger = logging.getLogger(__name__)

BASE_CLOCK_HZ = 32768.0

# Settle delays between configuration steps (seconds).
STOP_SETTLE_S = 0.15
SENSORS_OFF_SETTLE_S = 0.15
SAMPLING_RATE_SETTLE_S = 0.18
RANGES_SETTLE_S = 0.15
SENSORS_ON_SETTLE_S = 0.18
INQUIRY_SETTLE_S = 0.35
CALIBRATION_SETTLE_S = 0.25


class SensorBitmap(enum.IntFlag):
    """Shimmer3 ``WriteSensors`` bits."""
    A_ACCEL = 0x80
    MPU9150_GYRO = 0x40
    LSM303DLHC_MAG = 0x20
    EXG1_24BIT = 0x10
    EXG2_24BIT = 0x08
    EXT_A7 = 0x02
    EXT_A6 = 0x01
    VBATT = 0x2000
    D_ACCEL = 0x1000
    EXT_A15 = 0x0800
    BMP180_PRESSURE = 0x40000


_FLAG_BITS = (
    ("low_noise_accelerometer", SensorBitmap.A_ACCEL),
    ("wide_range_accelerometer", SensorBitmap.D_ACCEL),
    ("gyroscope", SensorBitmap.MPU9150_GYRO),
    ("magnetometer", SensorBitmap.LSM303DLHC_MAG),
    ("pressure_temperature", SensorBitmap.BMP180_PRESSURE),
    ("battery", SensorBitmap.VBATT),
    ("ext_a6", SensorBitmap.EXT_A6),
    ("ext_a7", SensorBitmap.EXT_A7),
    ("ext_a15", SensorBitmap.EXT_A15),
    ("exg", SensorBitmap.EXG1_24BIT | SensorBitmap.EXG2_24BIT),
)


def sensor_bitmap(flags: SensorFlags) -> int:
    bitmap = 0
    for attr, bits in _FLAG_BITS:
        if getattr(flags, attr):
            bitmap |= bits
    return int(bitmap)


def quantize_sampling_rate(hz: float) -> Tuple[int, float]:
    """
    Nearest rate the firmware can produce.

    The firmware divides a 32768 Hz clock, so the applied rate is
    ``32768 / round(32768 / hz)``.

    Returns:
        (divider, applied_hz)
    """
    if hz <= 0:
        raise ValueError(f"Sampling rate must be positive: {hz}")
    # round half away from zero; Python's round() is banker's rounding
    divider = max(1, int(BASE_CLOCK_HZ / hz + 0.5))
    return divider, BASE_CLOCK_HZ / divider


def configure_driver(
    driver: FirmwareDriver,
    config: DeviceConfig,
    sleep: Callable[[float], None],
) -> float:
    """
    Push ``config`` to the firmware in the order it needs.

    Sensors are switched off first so no partial packets arrive while the
    rate and ranges change. Returns the applied sampling rate.
    """
    driver.stop_streaming()
    sleep(STOP_SETTLE_S)

    driver.write_sensors(0)
    sleep(SENSORS_OFF_SETTLE_S)

    _, applied = quantize_sampling_rate(config.sampling_rate)
    driver.write_sampling_rate(applied)
    sleep(SAMPLING_RATE_SETTLE_S)

    driver.write_accel_range(config.accel_range)
    driver.write_gyro_range(config.gyro_range)
    driver.write_mag_range(config.mag_range)
    driver.set_low_power_accel(config.low_power_accel)
    driver.set_low_power_gyro(config.low_power_gyro)
    driver.set_low_power_mag(config.low_power_mag)
    driver.write_internal_exp_power(config.internal_exp_power)
    if config.exg_chip1 is not None and config.exg_chip2 is not None:
        driver.write_exg_configuration(config.exg_chip1, config.exg_chip2)
    sleep(RANGES_SETTLE_S)

    bitmap = sensor_bitmap(config.sensors)
    driver.write_sensors(bitmap)
    sleep(SENSORS_ON_SETTLE_S)

    driver.inquiry()
    sleep(INQUIRY_SETTLE_S)

    driver.read_calibration_parameters("All")
    sleep(CALIBRATION_SETTLE_S)

    logger.info("Driver configured: sensors=0x%05x rate=%.4f Hz", bitmap, applied)
    return applied
